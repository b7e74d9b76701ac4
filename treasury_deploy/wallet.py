"""
Signing key storage for the deployment pipeline.
CRITICAL: secret key bytes are never logged or included in error messages.

Key files use the Solana CLI format: a JSON array of the 64 secret-key bytes,
written with owner-only permissions (0600) inside an owner-only directory (0700).
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

import base58
from solders.keypair import Keypair

from treasury_deploy.errors import CorruptKeyError, PersistenceError
from treasury_deploy.logging_utils import short_address

logger = logging.getLogger(__name__)

KEY_FILE_MODE = 0o600
KEY_DIR_MODE = 0o700
SECRET_KEY_LENGTH = 64


@dataclass(frozen=True)
class WalletKey:
    """A signing identity. Only the public address is ever rendered."""
    public_address: str
    keypair: Keypair = field(repr=False, compare=False)

    @classmethod
    def from_keypair(cls, keypair: Keypair) -> WalletKey:
        return cls(public_address=str(keypair.pubkey()), keypair=keypair)


def _decode_key_file(path: Path) -> Keypair:
    try:
        raw = path.read_text(encoding="utf-8").strip()
    except OSError as e:
        raise PersistenceError(f"Cannot read key file: {type(e).__name__}", str(path)) from None

    try:
        if raw.startswith("["):
            data = json.loads(raw)
            if not isinstance(data, list) or len(data) != SECRET_KEY_LENGTH:
                raise ValueError("expected 64-byte array")
            secret = bytes(data)
        else:
            secret = base58.b58decode(raw)
            if len(secret) != SECRET_KEY_LENGTH:
                raise ValueError("expected 64-byte base58 secret")
        return Keypair.from_bytes(secret)
    except Exception as e:
        # Never chain the original exception, its message may echo key bytes
        raise CorruptKeyError(
            f"Key file does not contain a valid keypair ({type(e).__name__})", str(path)
        ) from None


def _fsync_directory(directory: Path) -> None:
    if os.name != "posix":
        return
    fd = os.open(str(directory), os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def write_secret_file(path: Union[str, Path], keypair: Keypair) -> Path:
    """
    Durably write a keypair's secret to ``path`` with owner-only permissions.

    The write goes to a temporary sibling first and is renamed into place, so a
    crash leaves either no file or a complete one. An existing file holding a
    different key is never overwritten.

    Raises:
        PersistenceError: if any part of the write fails
    """
    path = Path(path)
    if path.exists():
        existing = _decode_key_file(path)
        if existing.pubkey() != keypair.pubkey():
            raise PersistenceError("Refusing to overwrite a different key", str(path))
        return path

    tmp_path = path.with_name(f".{path.name}.tmp")
    try:
        path.parent.mkdir(mode=KEY_DIR_MODE, parents=True, exist_ok=True)
        fd = os.open(str(tmp_path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, KEY_FILE_MODE)
        try:
            os.write(fd, json.dumps(list(bytes(keypair))).encode("utf-8"))
            os.fsync(fd)
        finally:
            os.close(fd)
        os.chmod(tmp_path, KEY_FILE_MODE)
        os.replace(tmp_path, path)
        _fsync_directory(path.parent)
    except OSError as e:
        try:
            tmp_path.unlink()
        except OSError:
            pass
        raise PersistenceError(f"Failed to persist key file: {type(e).__name__}", str(path)) from None
    return path


class WalletProvider:
    """Loads signing keys from disk, generating and persisting them on first use."""

    def load(self, path: Union[str, Path]) -> WalletKey:
        """Load an existing key. Raises PersistenceError if the file is missing."""
        path = Path(path)
        if not path.exists():
            raise PersistenceError("Key file not found", str(path))
        return WalletKey.from_keypair(_decode_key_file(path))

    def load_or_create(self, path: Union[str, Path]) -> WalletKey:
        """
        Return the key stored at ``path``, generating one if none exists.

        Raises:
            CorruptKeyError: file exists but is not a keypair
            PersistenceError: a new key could not be written; it is discarded
        """
        path = Path(path)
        if path.exists():
            wallet = WalletKey.from_keypair(_decode_key_file(path))
            logger.info(f"Loaded wallet {short_address(wallet.public_address)} from {path}")
            return wallet

        keypair = Keypair()
        try:
            write_secret_file(path, keypair)
        except PersistenceError:
            del keypair
            raise
        wallet = WalletKey.from_keypair(keypair)
        logger.info(f"Generated wallet {short_address(wallet.public_address)} at {path} (mode 600)")
        return wallet


def export_secret_b58(wallet: WalletKey) -> str:
    """Base58 secret for import into an external secrets vault."""
    return base58.b58encode(bytes(wallet.keypair)).decode("utf-8")
