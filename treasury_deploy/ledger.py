"""Ledger client capability: balances, account reads, submit-and-confirm."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence, TypeVar

from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment, Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction
from solders.transaction_status import TransactionConfirmationStatus

from treasury_deploy.errors import (
    ConfirmationTimeoutError,
    LedgerUnavailableError,
    OnChainRejectionError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class SubmittedTransaction:
    """A signed transaction accepted by the RPC node but not yet confirmed."""
    signature: str
    last_valid_block_height: int


@dataclass(frozen=True)
class TransactionReceipt:
    signature: str
    slot: Optional[int] = None
    last_valid_block_height: Optional[int] = None


class SignatureState(str, Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    PROCESSING = "processing"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class SignatureStatus:
    state: SignatureState
    error: Optional[str] = None
    slot: Optional[int] = None


OnSent = Callable[[SubmittedTransaction], None]


class LedgerClient(Protocol):
    """What the pipeline needs from the ledger. Amounts are lamports / base units."""

    async def get_balance(self, address: str) -> int: ...

    async def get_token_balance(self, account: str) -> Optional[int]: ...

    async def get_account_data(self, address: str) -> Optional[bytes]: ...

    async def get_multiple_account_data(self, addresses: Sequence[str]) -> List[Optional[bytes]]: ...

    async def get_slot(self) -> int: ...

    async def get_block_height(self) -> int: ...

    async def get_minimum_rent_exemption(self, size: int) -> int: ...

    async def estimate_fee(self, instructions: Sequence[Instruction], payer: str) -> int: ...

    async def submit(
        self,
        instructions: Sequence[Instruction],
        signers: Sequence[Keypair],
        *,
        on_sent: Optional[OnSent] = None,
    ) -> TransactionReceipt: ...

    async def signature_status(self, signature: str) -> SignatureStatus: ...


def derive_program_address(seeds: Sequence[bytes], program_id: str) -> str:
    """Deterministic program-derived address for ``seeds`` under ``program_id``."""
    address, _bump = Pubkey.find_program_address(list(seeds), Pubkey.from_string(program_id))
    return str(address)


def describe_rejection(error: Optional[str]) -> Optional[str]:
    """Return a short, human-readable hint for common Solana errors."""
    if not error:
        return None

    lower = error.lower()
    if "alreadyprocessed" in lower or "already been processed" in lower:
        return "Transaction already processed; check on-chain state before re-running."
    if "blockhash" in lower:
        return "Blockhash expired before the transaction landed."
    if "insufficientfunds" in lower or "insufficient funds" in lower or "insufficient lamports" in lower:
        return "Insufficient funds for fee or transfer."
    if "accountalreadyinuse" in lower or "already in use" in lower:
        return "Account already exists; it may have been created by an earlier run."
    if "invalidaccountdata" in lower:
        return "Invalid account data; verify mint/account ownership."
    if "uninitializedaccount" in lower:
        return "Account not initialized; create the associated token account first."
    if "owner does not match" in lower or "ownermismatch" in lower:
        return "Signer is not the authority for this account."
    if "signatureverificationfailed" in lower or "missing signature" in lower:
        return "Signature verification failed; a required signer is missing."

    match = re.search(r"(?:InstructionErrorCustom\(|custom program error: 0x)([0-9a-fA-F]+)", error)
    if match:
        return f"Custom program error {match.group(1)}; program-specific constraint failed."
    return None


def is_insufficient_funds(error: Optional[str]) -> bool:
    if not error:
        return False
    lower = error.lower()
    return any(
        marker in lower
        for marker in ("insufficientfunds", "insufficient funds", "insufficient lamports")
    )


class SolanaLedgerClient:
    """LedgerClient backed by solana-py's AsyncClient.

    Mutating calls are submitted exactly once. There is no resend loop here:
    a plain transfer has no idempotency key, so a duplicate send could move
    funds twice.
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        commitment: Commitment = Confirmed,
        confirm_timeout_seconds: float = 30.0,
        fallback_fee_lamports: int = 5_000,
        poll_interval: float = 0.5,
        client: Optional[AsyncClient] = None,
    ):
        self.rpc_url = rpc_url
        self._commitment = commitment
        self._confirm_timeout = confirm_timeout_seconds
        self._fallback_fee = fallback_fee_lamports
        self._poll_interval = poll_interval
        self._client = client or AsyncClient(rpc_url, commitment=commitment)

    async def __aenter__(self) -> SolanaLedgerClient:
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.close()

    async def _read(self, what: str, call: Callable[[], Awaitable[T]]) -> T:
        try:
            return await call()
        except (SolanaRpcException, RPCException) as e:
            raise LedgerUnavailableError(f"RPC read failed ({what}): {e}", {"rpc_url": self.rpc_url}) from e

    async def get_balance(self, address: str) -> int:
        resp = await self._read("getBalance", lambda: self._client.get_balance(Pubkey.from_string(address)))
        return int(resp.value)

    async def get_account_data(self, address: str) -> Optional[bytes]:
        resp = await self._read(
            "getAccountInfo", lambda: self._client.get_account_info(Pubkey.from_string(address))
        )
        if resp.value is None:
            return None
        return bytes(resp.value.data)

    async def get_multiple_account_data(self, addresses: Sequence[str]) -> List[Optional[bytes]]:
        if not addresses:
            return []
        keys = [Pubkey.from_string(a) for a in addresses]
        resp = await self._read("getMultipleAccounts", lambda: self._client.get_multiple_accounts(keys))
        return [bytes(acct.data) if acct is not None else None for acct in resp.value]

    async def get_token_balance(self, account: str) -> Optional[int]:
        if await self.get_account_data(account) is None:
            return None
        resp = await self._read(
            "getTokenAccountBalance",
            lambda: self._client.get_token_account_balance(Pubkey.from_string(account)),
        )
        return int(resp.value.amount)

    async def get_slot(self) -> int:
        resp = await self._read("getSlot", self._client.get_slot)
        return int(resp.value)

    async def get_block_height(self) -> int:
        resp = await self._read("getBlockHeight", self._client.get_block_height)
        return int(resp.value)

    async def get_minimum_rent_exemption(self, size: int) -> int:
        resp = await self._read(
            "getMinimumBalanceForRentExemption",
            lambda: self._client.get_minimum_balance_for_rent_exemption(size),
        )
        return int(resp.value)

    async def estimate_fee(self, instructions: Sequence[Instruction], payer: str) -> int:
        blockhash_resp = await self._read("getLatestBlockhash", self._client.get_latest_blockhash)
        message = Message.new_with_blockhash(
            list(instructions), Pubkey.from_string(payer), blockhash_resp.value.blockhash
        )
        try:
            resp = await self._client.get_fee_for_message(message)
        except (SolanaRpcException, RPCException) as e:
            logger.warning(f"Fee estimate failed, using fallback {self._fallback_fee}: {e}")
            return self._fallback_fee
        return int(resp.value) if resp.value is not None else self._fallback_fee

    async def _send(self, instructions: Sequence[Instruction], signers: Sequence[Keypair]) -> SubmittedTransaction:
        if not signers:
            raise ValueError("at least one signer (the fee payer) is required")

        blockhash_resp = await self._read("getLatestBlockhash", self._client.get_latest_blockhash)
        blockhash = blockhash_resp.value.blockhash
        last_valid = int(blockhash_resp.value.last_valid_block_height)

        message = Message.new_with_blockhash(list(instructions), signers[0].pubkey(), blockhash)
        tx = Transaction.new_unsigned(message)
        tx.sign(list(signers), blockhash)

        opts = TxOpts(skip_preflight=False, preflight_commitment=self._commitment)
        try:
            resp = await self._client.send_raw_transaction(bytes(tx), opts=opts)
        except RPCException as e:
            error = str(e)
            raise OnChainRejectionError(
                f"Transaction rejected: {describe_rejection(error) or error}",
                reason=error,
                hint=describe_rejection(error),
            ) from e
        except SolanaRpcException as e:
            # Transport failed mid-send; the transaction may or may not have
            # reached the cluster, so report it as an unconfirmed submission.
            signature = str(tx.signatures[0])
            logger.error(f"Send of {signature[:16]}... failed in transport: {e}")
            raise ConfirmationTimeoutError(signature, 0, last_valid) from e

        signature = str(resp.value)
        logger.info(f"Transaction sent: {signature[:16]}...")
        return SubmittedTransaction(signature=signature, last_valid_block_height=last_valid)

    async def _confirm(self, submitted: SubmittedTransaction) -> TransactionReceipt:
        """Poll the signature until confirmed, failed, or the timeout elapses."""
        start = time.monotonic()
        poll_count = 0

        while time.monotonic() - start < self._confirm_timeout:
            status = await self.signature_status(submitted.signature)
            if status.state is SignatureState.FAILED:
                raise OnChainRejectionError(
                    f"Transaction {submitted.signature[:16]}... failed on-chain: {status.error}",
                    reason=status.error,
                    hint=describe_rejection(status.error),
                )
            if status.state is SignatureState.CONFIRMED:
                logger.info(f"Transaction {submitted.signature[:16]}... confirmed (slot {status.slot})")
                return TransactionReceipt(
                    signature=submitted.signature,
                    slot=status.slot,
                    last_valid_block_height=submitted.last_valid_block_height,
                )

            poll_count += 1
            await asyncio.sleep(min(self._poll_interval * (1.2 ** min(poll_count, 10)), 2.0))

        logger.warning(
            f"Transaction {submitted.signature[:16]}... confirmation timeout after {self._confirm_timeout:.0f}s"
        )
        raise ConfirmationTimeoutError(
            submitted.signature, self._confirm_timeout, submitted.last_valid_block_height
        )

    async def submit(
        self,
        instructions: Sequence[Instruction],
        signers: Sequence[Keypair],
        *,
        on_sent: Optional[OnSent] = None,
    ) -> TransactionReceipt:
        """
        Sign with ``signers`` (first one pays fees), send once, wait for confirmation.

        ``on_sent`` runs after the node accepted the transaction and before
        waiting, so callers can checkpoint the signature.
        """
        submitted = await self._send(instructions, signers)
        if on_sent is not None:
            on_sent(submitted)
        return await self._confirm(submitted)

    async def signature_status(self, signature: str) -> SignatureStatus:
        resp = await self._read(
            "getSignatureStatuses",
            lambda: self._client.get_signature_statuses(
                [Signature.from_string(signature)], search_transaction_history=True
            ),
        )
        value = resp.value[0] if resp.value else None
        if value is None:
            return SignatureStatus(SignatureState.UNKNOWN)
        if value.err is not None:
            return SignatureStatus(SignatureState.FAILED, error=str(value.err), slot=value.slot)
        if value.confirmation_status in (
            TransactionConfirmationStatus.Confirmed,
            TransactionConfirmationStatus.Finalized,
        ):
            return SignatureStatus(SignatureState.CONFIRMED, slot=value.slot)
        return SignatureStatus(SignatureState.PROCESSING, slot=value.slot)
