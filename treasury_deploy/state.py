"""
Deployment record: the pipeline's single-writer checkpoint store.

The record is a JSON object whose fields accumulate as stages complete. Every
stage reads it back from disk instead of trusting in-memory results from a
previous process, so each stage can run as its own invocation.

Guarantees:
- Merge never deletes a field (``None`` in an update means "leave as is")
- Identity fields (treasury address, create key, creator, mint) never change once set
- Re-applying an identical update leaves the file content unchanged
- Writes go to a temp file and are renamed into place, so readers never see a
  partial record
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from filelock import FileLock, Timeout as FileLockTimeout

from treasury_deploy.errors import InvariantViolationError, MalformedStateError, PersistenceError

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    PROVISIONED = "provisioned"
    MINT_CREATED = "mint_created"
    SUPPLY_MINTED = "supply_minted"
    DISTRIBUTED = "distributed"
    FUNDED = "funded"


class SubmissionStatus(str, Enum):
    """Outcome of a transaction tracked by a deployment checkpoint."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    FAILED = "failed"


# Python attribute -> JSON key
JSON_KEYS: Dict[str, str] = {
    "treasury_address": "treasuryAddress",
    "vault_address": "vaultAddress",
    "treasury_create_key": "treasuryCreateKey",
    "treasury_create_key_path": "treasuryCreateKeyPath",
    "creator_address": "creatorAddress",
    "threshold": "threshold",
    "member_addresses": "memberAddresses",
    "treasury_name": "treasuryName",
    "network": "network",
    "timestamp": "timestamp",
    "asset_mint": "assetMint",
    "asset_mint_key_path": "assetMintKeyPath",
    "asset_decimals": "assetDecimals",
    "asset_name": "assetName",
    "asset_symbol": "assetSymbol",
    "asset_total_supply": "assetTotalSupply",
    "asset_supply_minted": "assetSupplyMinted",
    "holder_account": "holderAccount",
    "treasury_asset_account": "treasuryAssetAccount",
    "treasury_asset_amount": "treasuryAssetAmount",
    "treasury_native_balance": "treasuryNativeBalance",
    "last_funded_at": "lastFundedAt",
    "last_funding_signature": "lastFundingSignature",
    "last_funding_valid_until": "lastFundingValidUntil",
    "funding_status": "fundingStatus",
    "last_mint_signature": "lastMintSignature",
    "last_mint_valid_until": "lastMintValidUntil",
    "mint_status": "mintStatus",
    "last_distribution_signature": "lastDistributionSignature",
    "last_distribution_valid_until": "lastDistributionValidUntil",
    "distribution_status": "distributionStatus",
}

IMMUTABLE_KEYS = ("treasuryAddress", "treasuryCreateKey", "creatorAddress", "assetMint")

_INT_KEYS = {
    "threshold",
    "assetDecimals",
    "assetTotalSupply",
    "treasuryAssetAmount",
    "treasuryNativeBalance",
    "lastFundingValidUntil",
    "lastMintValidUntil",
    "lastDistributionValidUntil",
}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class DeploymentState:
    treasury_address: Optional[str] = None
    vault_address: Optional[str] = None
    treasury_create_key: Optional[str] = None
    treasury_create_key_path: Optional[str] = None
    creator_address: Optional[str] = None
    threshold: Optional[int] = None
    member_addresses: Optional[List[str]] = None
    treasury_name: Optional[str] = None
    network: Optional[str] = None
    timestamp: Optional[str] = None
    asset_mint: Optional[str] = None
    asset_mint_key_path: Optional[str] = None
    asset_decimals: Optional[int] = None
    asset_name: Optional[str] = None
    asset_symbol: Optional[str] = None
    asset_total_supply: Optional[int] = None
    asset_supply_minted: Optional[bool] = None
    holder_account: Optional[str] = None
    treasury_asset_account: Optional[str] = None
    treasury_asset_amount: Optional[int] = None
    treasury_native_balance: Optional[int] = None
    last_funded_at: Optional[str] = None
    last_funding_signature: Optional[str] = None
    last_funding_valid_until: Optional[int] = None
    funding_status: Optional[str] = None
    last_mint_signature: Optional[str] = None
    last_mint_valid_until: Optional[int] = None
    mint_status: Optional[str] = None
    last_distribution_signature: Optional[str] = None
    last_distribution_valid_until: Optional[int] = None
    distribution_status: Optional[str] = None
    # Keys written by other tools are carried through untouched
    extras: Dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DeploymentState:
        if not isinstance(data, Mapping):
            raise MalformedStateError("Deployment record is not a JSON object")
        validate_record(data)
        known = {attr: data.get(key) for attr, key in JSON_KEYS.items()}
        if known["member_addresses"] is not None:
            known["member_addresses"] = list(known["member_addresses"])
        extras = {k: v for k, v in data.items() if k not in JSON_KEYS.values()}
        return cls(**known, extras=extras)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.extras)
        for f in fields(self):
            if f.name == "extras":
                continue
            value = getattr(self, f.name)
            if value is not None:
                data[JSON_KEYS[f.name]] = value
        return data

    def completed_stages(self) -> List[Stage]:
        done = []
        if self.treasury_address:
            done.append(Stage.PROVISIONED)
        if self.asset_mint:
            done.append(Stage.MINT_CREATED)
        if self.asset_supply_minted:
            done.append(Stage.SUPPLY_MINTED)
        if self.treasury_asset_account:
            done.append(Stage.DISTRIBUTED)
        if self.last_funded_at:
            done.append(Stage.FUNDED)
        return done

    def is_complete(self, stage: Stage) -> bool:
        return stage in self.completed_stages()


def _check_type(data: Mapping[str, Any], key: str) -> None:
    value = data.get(key)
    if value is None:
        return
    if key in _INT_KEYS:
        if isinstance(value, bool) or not isinstance(value, int):
            raise MalformedStateError(f"'{key}' must be an integer")
    elif key == "memberAddresses":
        if not isinstance(value, list) or not all(isinstance(m, str) for m in value):
            raise MalformedStateError("'memberAddresses' must be a list of addresses")
    elif key == "assetSupplyMinted":
        if not isinstance(value, bool):
            raise MalformedStateError("'assetSupplyMinted' must be a boolean")
    elif not isinstance(value, str):
        raise MalformedStateError(f"'{key}' must be a string")


def validate_record(data: Mapping[str, Any]) -> None:
    """Type checks plus the membership invariants of a deployment record."""
    for key in JSON_KEYS.values():
        _check_type(data, key)

    threshold = data.get("threshold")
    members = data.get("memberAddresses")
    creator = data.get("creatorAddress")
    if threshold is not None and threshold < 1:
        raise InvariantViolationError(f"threshold must be >= 1 (got {threshold})")
    if members is not None:
        if threshold is not None and threshold > len(members):
            raise InvariantViolationError(
                f"threshold {threshold} exceeds member count {len(members)}"
            )
        if creator is not None and creator not in members:
            raise InvariantViolationError("creator is not in the member list")


def merge_record(existing: Mapping[str, Any], update: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Field-by-field merge of ``update`` into ``existing``.

    ``None`` values are ignored, nothing is removed, and identity fields may
    only be set once. ``timestamp`` is refreshed only when something changed.
    """
    merged = dict(existing)
    changed = False
    for key, value in update.items():
        if value is None or key == "timestamp":
            continue
        current = merged.get(key)
        if key in IMMUTABLE_KEYS and current is not None and current != value:
            raise InvariantViolationError(
                f"'{key}' is already set to {current}; refusing to overwrite with {value}"
            )
        if current != value:
            merged[key] = value
            changed = True

    if changed or "timestamp" not in merged:
        merged["timestamp"] = update.get("timestamp") or utc_now_iso()
    validate_record(merged)
    return merged


class DeploymentStateStore:
    """
    JSON checkpoint file with atomic rewrite.

    Usage:
        store = DeploymentStateStore(Path("multisig-deployment.json"))
        state = store.load()            # None when no deployment exists yet
        state = store.save({"assetMint": "..."})
    """

    def __init__(self, path: Union[str, Path], lock_timeout: float = 10.0):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self._lock = FileLock(str(self.lock_path), timeout=lock_timeout)

    def _read_raw(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        try:
            content = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise PersistenceError(f"Could not read deployment record: {e}", str(self.path)) from e
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise MalformedStateError(f"Deployment record is not valid JSON: {e}", str(self.path)) from e
        if not isinstance(data, dict):
            raise MalformedStateError("Deployment record is not a JSON object", str(self.path))
        return data

    def _write_raw(self, data: Dict[str, Any]) -> None:
        tmp_name = None
        try:
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=str(self.path.parent),
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_name = tmp.name
                json.dump(data, tmp, indent=2)
                tmp.write("\n")
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, self.path)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise PersistenceError(f"Could not write deployment record: {e}", str(self.path)) from e

    def load(self) -> Optional[DeploymentState]:
        """Return the persisted record, or None if no deployment exists yet."""
        data = self._read_raw()
        if data is None:
            return None
        try:
            return DeploymentState.from_dict(data)
        except InvariantViolationError as e:
            raise MalformedStateError(f"Deployment record violates invariants: {e}", str(self.path)) from e

    def save(self, update: Mapping[str, Any]) -> DeploymentState:
        """Merge ``update`` into the record (creating it if absent) and rewrite atomically."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Could not create state directory: {e}", str(self.path)) from e
        try:
            with self._lock:
                existing = self._read_raw() or {}
                merged = merge_record(existing, update)
                if merged != existing:
                    self._write_raw(merged)
                    logger.debug(f"Deployment record updated: {sorted(k for k in update if update[k] is not None)}")
        except FileLockTimeout as e:
            raise PersistenceError(
                f"Deployment record is locked by another writer ({self.lock_path})", str(self.path)
            ) from e
        return DeploymentState.from_dict(merged)
