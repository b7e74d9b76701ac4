"""AssetIssuer: creates the fungible asset, mints its supply and distributes it.

All amounts are integers in the asset's smallest unit. Callers scale whole
units by ``10 ** decimals``; nothing in here guesses a scale.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from solders.keypair import Keypair

from treasury_deploy.errors import (
    InvariantViolationError,
    MintAuthorityError,
    MintCreationError,
    OnChainRejectionError,
)
from treasury_deploy.ledger import OnSent, TransactionReceipt
from treasury_deploy.logging_utils import short_address
from treasury_deploy.preconditions import PreconditionChecker
from treasury_deploy.spl_asset import AssetProgram, MintInfo
from treasury_deploy.wallet import WalletKey

logger = logging.getLogger(__name__)

MAX_DECIMALS = 255


@dataclass(frozen=True)
class IssuedAsset:
    mint_id: str
    holder_account: str
    decimals: int
    supply_minted: int


@dataclass(frozen=True)
class Distribution:
    destination_account: str
    amount: int
    account_created: bool
    receipt: TransactionReceipt


class AssetIssuer:
    def __init__(
        self,
        program: AssetProgram,
        preconditions: PreconditionChecker,
        min_balance_lamports: int = 0,
    ):
        self._program = program
        self._preconditions = preconditions
        self._min_balance = min_balance_lamports

    async def create_asset_mint(
        self, authority: WalletKey, decimals: int, mint_key: Optional[WalletKey] = None
    ) -> MintInfo:
        """
        Create the asset identity controlled by ``authority``.

        A mint that already exists at ``mint_key``'s address is adopted when its
        authority and decimals match.
        """
        if not 0 <= decimals <= MAX_DECIMALS:
            raise ValueError(f"decimals out of range: {decimals}")
        if mint_key is None:
            mint_key = WalletKey.from_keypair(Keypair())
        mint_id = mint_key.public_address

        existing = await self._program.get_mint(mint_id)
        if existing is not None:
            if existing.mint_authority != authority.public_address or existing.decimals != decimals:
                raise InvariantViolationError(
                    f"Mint {mint_id} exists with authority {existing.mint_authority} and "
                    f"{existing.decimals} decimals; expected {authority.public_address} and {decimals}"
                )
            logger.info(f"Mint {short_address(mint_id)} already exists; adopting it")
            return existing

        if self._min_balance:
            await self._preconditions.require_minimum_balance(authority.public_address, self._min_balance)

        try:
            await self._program.create_mint(
                authority, mint_key, authority.public_address, authority.public_address, decimals
            )
        except OnChainRejectionError as e:
            raise MintCreationError(
                f"Mint creation rejected: {e.hint or e.reason or e.message}", e.reason, e.hint
            ) from e

        created = await self._program.get_mint(mint_id)
        if created is None:
            raise MintCreationError(f"Mint {mint_id} not found after confirmed creation")
        logger.info(f"Mint created: {short_address(mint_id)}")
        return created

    async def mint_supply(
        self,
        mint_id: str,
        authority: WalletKey,
        total_supply: int,
        on_sent: Optional[OnSent] = None,
    ) -> IssuedAsset:
        """
        Mint up to ``total_supply`` base units into the authority's holder account.

        ``on_sent`` is passed to the ledger so the caller can checkpoint the
        minting signature before confirmation is awaited.
        """
        if total_supply <= 0:
            raise ValueError("total supply must be positive")
        mint = await self._program.get_mint(mint_id)
        if mint is None:
            raise InvariantViolationError(f"Mint {mint_id} does not exist")

        holder, _ = await self._program.get_or_create_associated_account(
            authority, mint_id, authority.public_address
        )

        remaining = total_supply - mint.supply
        if remaining <= 0:
            logger.info(f"Mint {short_address(mint_id)} already has supply {mint.supply}; nothing to mint")
            return IssuedAsset(mint_id, holder, mint.decimals, mint.supply)

        try:
            await self._program.mint_to(mint_id, holder, authority, remaining, on_sent=on_sent)
        except OnChainRejectionError as e:
            raise MintAuthorityError(
                f"Minting rejected: {e.hint or e.reason or e.message}", e.reason, e.hint
            ) from e

        logger.info(f"Minted {remaining} base units to {short_address(holder)}")
        return IssuedAsset(mint_id, holder, mint.decimals, total_supply)

    async def issue_asset(
        self,
        authority: WalletKey,
        decimals: int,
        total_supply: int,
        mint_key: Optional[WalletKey] = None,
    ) -> IssuedAsset:
        """Create the mint and mint ``total_supply`` (base units) to ``authority``."""
        mint = await self.create_asset_mint(authority, decimals, mint_key)
        return await self.mint_supply(mint.address, authority, total_supply)

    async def distribute(
        self,
        mint_id: str,
        from_authority: WalletKey,
        to_address: str,
        amount: int,
        create_account_if_missing: bool,
        on_sent: Optional[OnSent] = None,
    ) -> Distribution:
        """
        Transfer ``amount`` base units to ``to_address``'s holder account.

        ``to_address`` may be a program-derived address (a treasury vault).

        Raises:
            InsufficientAssetBalanceError: source account holds less than ``amount``
            InvariantViolationError: destination account missing and creation not allowed
        """
        if amount <= 0:
            raise ValueError("amount must be positive")
        mint = await self._program.get_mint(mint_id)
        if mint is None:
            raise InvariantViolationError(f"Mint {mint_id} does not exist")

        source = self._program.associated_account(mint_id, from_authority.public_address)
        destination = self._program.associated_account(mint_id, to_address, allow_off_curve=True)

        await self._preconditions.require_minimum_asset_balance(source, amount)

        created = False
        if await self._program.get_token_balance(destination) is None:
            if not create_account_if_missing:
                raise InvariantViolationError(
                    f"Holder account {destination} for {to_address} does not exist"
                )
            destination, created = await self._program.get_or_create_associated_account(
                from_authority, mint_id, to_address, allow_off_curve=True
            )

        receipt = await self._program.transfer(
            mint_id, source, destination, from_authority, amount, mint.decimals, on_sent=on_sent
        )
        logger.info(f"Transferred {amount} base units to {short_address(destination)}")
        return Distribution(destination, amount, created, receipt)
