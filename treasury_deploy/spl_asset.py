"""Asset program capability bound to SPL Token and the Associated Token Account program."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

from borsh_construct import Bool, CStruct, U8, U32, U64
from construct import Bytes, ConstructError
from solders.pubkey import Pubkey
from solders.system_program import CreateAccountParams, create_account
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    InitializeMintParams,
    MintToParams,
    TransferCheckedParams,
    create_associated_token_account,
    get_associated_token_address,
    initialize_mint,
    mint_to,
    transfer_checked,
)

from treasury_deploy.errors import InvariantViolationError
from treasury_deploy.ledger import LedgerClient, OnSent, TransactionReceipt
from treasury_deploy.logging_utils import short_address
from treasury_deploy.wallet import WalletKey

logger = logging.getLogger(__name__)

MINT_ACCOUNT_SIZE = 82

MINT_LAYOUT = CStruct(
    "mint_authority_option" / U32,
    "mint_authority" / Bytes(32),
    "supply" / U64,
    "decimals" / U8,
    "is_initialized" / Bool,
    "freeze_authority_option" / U32,
    "freeze_authority" / Bytes(32),
)


@dataclass(frozen=True)
class MintInfo:
    address: str
    decimals: int
    supply: int
    mint_authority: Optional[str]
    freeze_authority: Optional[str]


class AssetProgram(Protocol):
    def associated_account(self, mint: str, owner: str, allow_off_curve: bool = False) -> str: ...

    async def create_mint(
        self,
        payer: WalletKey,
        mint_key: WalletKey,
        authority: str,
        freeze_authority: Optional[str],
        decimals: int,
    ) -> TransactionReceipt: ...

    async def get_mint(self, mint: str) -> Optional[MintInfo]: ...

    async def get_or_create_associated_account(
        self, payer: WalletKey, mint: str, owner: str, allow_off_curve: bool = False
    ) -> Tuple[str, bool]: ...

    async def mint_to(
        self,
        mint: str,
        destination: str,
        authority: WalletKey,
        amount: int,
        on_sent: Optional[OnSent] = None,
    ) -> TransactionReceipt: ...

    async def transfer(
        self,
        mint: str,
        source: str,
        destination: str,
        owner: WalletKey,
        amount: int,
        decimals: int,
        on_sent: Optional[OnSent] = None,
    ) -> TransactionReceipt: ...

    async def get_token_balance(self, account: str) -> Optional[int]: ...


def decode_mint(address: str, data: bytes) -> MintInfo:
    if len(data) < MINT_ACCOUNT_SIZE:
        raise InvariantViolationError(f"Account {address} is not a token mint")
    try:
        mint = MINT_LAYOUT.parse(data[:MINT_ACCOUNT_SIZE])
    except ConstructError as e:
        raise InvariantViolationError(f"Mint {address} could not be decoded: {e}") from e
    if not mint.is_initialized:
        raise InvariantViolationError(f"Mint {address} is not initialized")
    return MintInfo(
        address=address,
        decimals=mint.decimals,
        supply=mint.supply,
        mint_authority=str(Pubkey.from_bytes(mint.mint_authority)) if mint.mint_authority_option else None,
        freeze_authority=str(Pubkey.from_bytes(mint.freeze_authority)) if mint.freeze_authority_option else None,
    )


class SplAssetProgram:
    """AssetProgram over a LedgerClient."""

    def __init__(self, ledger: LedgerClient):
        self._ledger = ledger

    def associated_account(self, mint: str, owner: str, allow_off_curve: bool = False) -> str:
        owner_key = Pubkey.from_string(owner)
        if not allow_off_curve and not owner_key.is_on_curve():
            raise ValueError(
                f"Owner {owner} is off-curve (a program-derived address); pass allow_off_curve=True"
            )
        return str(get_associated_token_address(owner_key, Pubkey.from_string(mint)))

    async def create_mint(
        self,
        payer: WalletKey,
        mint_key: WalletKey,
        authority: str,
        freeze_authority: Optional[str],
        decimals: int,
    ) -> TransactionReceipt:
        rent = await self._ledger.get_minimum_rent_exemption(MINT_ACCOUNT_SIZE)
        mint_pubkey = mint_key.keypair.pubkey()
        instructions = [
            create_account(
                CreateAccountParams(
                    from_pubkey=payer.keypair.pubkey(),
                    to_pubkey=mint_pubkey,
                    lamports=rent,
                    space=MINT_ACCOUNT_SIZE,
                    owner=TOKEN_PROGRAM_ID,
                )
            ),
            initialize_mint(
                InitializeMintParams(
                    decimals=decimals,
                    program_id=TOKEN_PROGRAM_ID,
                    mint=mint_pubkey,
                    mint_authority=Pubkey.from_string(authority),
                    freeze_authority=Pubkey.from_string(freeze_authority) if freeze_authority else None,
                )
            ),
        ]
        logger.info(f"Creating mint {short_address(str(mint_pubkey))} ({decimals} decimals)")
        return await self._ledger.submit(instructions, [payer.keypair, mint_key.keypair])

    async def get_mint(self, mint: str) -> Optional[MintInfo]:
        data = await self._ledger.get_account_data(mint)
        if data is None:
            return None
        return decode_mint(mint, data)

    async def get_or_create_associated_account(
        self, payer: WalletKey, mint: str, owner: str, allow_off_curve: bool = False
    ) -> Tuple[str, bool]:
        """Return (account address, created)."""
        account = self.associated_account(mint, owner, allow_off_curve)
        if await self._ledger.get_account_data(account) is not None:
            return account, False

        ix = create_associated_token_account(
            payer=payer.keypair.pubkey(),
            owner=Pubkey.from_string(owner),
            mint=Pubkey.from_string(mint),
        )
        logger.info(f"Creating token account {short_address(account)} for owner {short_address(owner)}")
        await self._ledger.submit([ix], [payer.keypair])
        return account, True

    async def mint_to(
        self,
        mint: str,
        destination: str,
        authority: WalletKey,
        amount: int,
        on_sent: Optional[OnSent] = None,
    ) -> TransactionReceipt:
        ix = mint_to(
            MintToParams(
                program_id=TOKEN_PROGRAM_ID,
                mint=Pubkey.from_string(mint),
                dest=Pubkey.from_string(destination),
                mint_authority=authority.keypair.pubkey(),
                amount=amount,
            )
        )
        return await self._ledger.submit([ix], [authority.keypair], on_sent=on_sent)

    async def transfer(
        self,
        mint: str,
        source: str,
        destination: str,
        owner: WalletKey,
        amount: int,
        decimals: int,
        on_sent: Optional[OnSent] = None,
    ) -> TransactionReceipt:
        ix = transfer_checked(
            TransferCheckedParams(
                program_id=TOKEN_PROGRAM_ID,
                source=Pubkey.from_string(source),
                mint=Pubkey.from_string(mint),
                dest=Pubkey.from_string(destination),
                owner=owner.keypair.pubkey(),
                amount=amount,
                decimals=decimals,
            )
        )
        return await self._ledger.submit([ix], [owner.keypair], on_sent=on_sent)

    async def get_token_balance(self, account: str) -> Optional[int]:
        return await self._ledger.get_token_balance(account)
