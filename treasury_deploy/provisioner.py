"""TreasuryProvisioner: creates the threshold-signature treasury and checks what landed."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from treasury_deploy.errors import InvariantViolationError, OnChainRejectionError
from treasury_deploy.preconditions import PreconditionChecker
from treasury_deploy.squads import MultisigAccount, TreasuryMetadata, TreasuryProgram
from treasury_deploy.logging_utils import short_address
from treasury_deploy.wallet import WalletKey

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TreasuryAccount:
    address: str
    vault_address: str
    threshold: int
    # Requested order, creator first
    members: List[str]
    transaction_index: int
    create_key: WalletKey = field(repr=False, compare=False)
    adopted: bool = False


def validate_membership(creator: str, threshold: int, additional_members: Sequence[str]) -> List[str]:
    """
    Full member list (creator first) for a treasury request.

    Raises:
        InvariantViolationError: threshold out of range, duplicate or invalid member
    """
    members = [creator, *additional_members]
    if threshold < 1:
        raise InvariantViolationError(f"threshold must be >= 1 (got {threshold})")
    if threshold > len(members):
        raise InvariantViolationError(
            f"threshold {threshold} exceeds member count {len(members)} (creator + {len(additional_members)})"
        )
    for member in members:
        try:
            Pubkey.from_string(member)
        except ValueError:
            raise InvariantViolationError(f"'{member}' is not a valid address") from None
    if len(set(members)) != len(members):
        raise InvariantViolationError("member list contains duplicates")
    return members


def check_confirmed_account(
    account: MultisigAccount, threshold: int, members: Sequence[str]
) -> None:
    """Compare the on-chain account with the request. Member order is not significant on-chain."""
    if account.threshold != threshold:
        raise InvariantViolationError(
            f"Treasury {account.address} has threshold {account.threshold}, requested {threshold}"
        )
    if sorted(account.members) != sorted(members):
        missing = sorted(set(members) - set(account.members))
        unexpected = sorted(set(account.members) - set(members))
        raise InvariantViolationError(
            f"Treasury {account.address} member list differs from request",
            {"missing": missing, "unexpected": unexpected},
        )


class TreasuryProvisioner:
    """
    Creates the treasury through the treasury program.

    The create key determines the treasury address. When the caller passes a
    previously persisted create key whose treasury already exists, the existing
    account is verified and returned instead of submitting a second creation.
    """

    def __init__(
        self,
        program: TreasuryProgram,
        preconditions: PreconditionChecker,
        min_balance_lamports: int,
    ):
        self._program = program
        self._preconditions = preconditions
        self._min_balance = min_balance_lamports

    async def create_treasury(
        self,
        creator: WalletKey,
        threshold: int,
        additional_members: Sequence[str],
        metadata: TreasuryMetadata,
        create_key: Optional[WalletKey] = None,
    ) -> TreasuryAccount:
        members = validate_membership(creator.public_address, threshold, additional_members)
        if create_key is None:
            # Caller is responsible for persisting the returned key
            create_key = WalletKey.from_keypair(Keypair())

        address = self._program.multisig_address(create_key.public_address)
        vault = self._program.vault_address(address)

        existing = await self._program.get_multisig(address)
        if existing is not None:
            logger.info(f"Treasury {short_address(address)} already exists for this create key; adopting it")
            check_confirmed_account(existing, threshold, members)
            return self._result(existing, vault, members, create_key, adopted=True)

        await self._preconditions.require_minimum_balance(creator.public_address, self._min_balance)

        try:
            account = await self._program.create_multisig(
                creator, threshold, create_key.public_address, members, metadata
            )
        except OnChainRejectionError as e:
            logger.error(f"Treasury creation rejected: {e.reason or e.message}")
            raise

        check_confirmed_account(account, threshold, members)
        logger.info(
            f"Treasury created: {short_address(account.address)} "
            f"({account.threshold}-of-{len(account.members)}), vault {short_address(vault)}"
        )
        return self._result(account, vault, members, create_key)

    @staticmethod
    def _result(
        account: MultisigAccount,
        vault: str,
        members: List[str],
        create_key: WalletKey,
        adopted: bool = False,
    ) -> TreasuryAccount:
        return TreasuryAccount(
            address=account.address,
            vault_address=vault,
            threshold=account.threshold,
            members=list(members),
            transaction_index=account.transaction_index,
            create_key=create_key,
            adopted=adopted,
        )
