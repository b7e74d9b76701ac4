"""
Treasury program capability bound to the Squads v3 multisig program.

There is no Python SDK for Squads, so instructions and account layouts are
built directly with borsh-construct, the same way anchorpy-generated clients
lay out Anchor accounts:

    instruction data = sha256("global:<name>")[:8] + borsh(args)
    account data     = sha256("account:<Name>")[:8] + borsh(fields)

PDAs (program id SMPLecH534NA9acpos4G7xY3bsychFobuYeAA9aT7QT):
    multisig    = ["squad", create_key, "multisig"]
    authority   = ["squad", multisig, u32le(authority_index), "authority"]
    transaction = ["squad", multisig, u32le(transaction_index), "transaction"]
"""

from __future__ import annotations

import hashlib
import json
import logging
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import List, Optional, Protocol, Sequence

from borsh_construct import Bool, CStruct, String, U8, U16, U32, Vec
from construct import Bytes, ConstructError
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID

from treasury_deploy.errors import InvariantViolationError, OnChainRejectionError
from treasury_deploy.ledger import LedgerClient, derive_program_address
from treasury_deploy.logging_utils import short_address
from treasury_deploy.wallet import WalletKey

logger = logging.getLogger(__name__)

SQUADS_PROGRAM_ID = "SMPLecH534NA9acpos4G7xY3bsychFobuYeAA9aT7QT"
DEFAULT_AUTHORITY_INDEX = 1
# getMultipleAccounts limit
_MAX_ACCOUNTS_PER_REQUEST = 100

PublicKey = Bytes(32)


def anchor_discriminator(namespace: str, name: str) -> bytes:
    return hashlib.sha256(f"{namespace}:{name}".encode("utf-8")).digest()[:8]


CREATE_DISCRIMINATOR = anchor_discriminator("global", "create")
MS_ACCOUNT_DISCRIMINATOR = anchor_discriminator("account", "Ms")
MS_TRANSACTION_DISCRIMINATOR = anchor_discriminator("account", "MsTransaction")

CREATE_ARGS_LAYOUT = CStruct(
    "threshold" / U16,
    "create_key" / PublicKey,
    "members" / Vec(PublicKey),
    "meta" / String,
)

MS_LAYOUT = CStruct(
    "threshold" / U16,
    "authority_index" / U16,
    "transaction_index" / U32,
    "ms_change_index" / U32,
    "bump" / U8,
    "create_key" / PublicKey,
    "allow_external_execute" / Bool,
    "keys" / Vec(PublicKey),
)

MS_TRANSACTION_LAYOUT = CStruct(
    "creator" / PublicKey,
    "ms" / PublicKey,
    "transaction_index" / U32,
    "authority_index" / U32,
    "authority_bump" / U8,
    "status" / U8,
    "instruction_index" / U8,
    "bump" / U8,
    "approved" / Vec(PublicKey),
    "rejected" / Vec(PublicKey),
    "cancelled" / Vec(PublicKey),
    "executed_index" / U8,
)


class ProposalStatus(IntEnum):
    DRAFT = 0
    ACTIVE = 1
    EXECUTE_READY = 2
    EXECUTED = 3
    REJECTED = 4
    CANCELLED = 5

    @property
    def is_pending(self) -> bool:
        return self in (ProposalStatus.DRAFT, ProposalStatus.ACTIVE, ProposalStatus.EXECUTE_READY)


@dataclass(frozen=True)
class TreasuryMetadata:
    name: str
    description: str = ""
    image_url: str = ""

    def to_meta_json(self) -> str:
        return json.dumps(
            {"name": self.name, "description": self.description, "image": self.image_url},
            separators=(",", ":"),
        )


@dataclass(frozen=True)
class MultisigAccount:
    """Decoded treasury account. ``members`` is in on-chain (sorted) order."""
    address: str
    threshold: int
    members: List[str]
    transaction_index: int
    authority_index: int = DEFAULT_AUTHORITY_INDEX
    create_key: Optional[str] = None


@dataclass(frozen=True)
class ProposalInfo:
    address: str
    transaction_index: int
    status: ProposalStatus
    creator: str
    approvals: int = 0
    rejections: int = 0


class TreasuryProgram(Protocol):
    def multisig_address(self, create_key: str) -> str: ...

    def vault_address(self, multisig: str, authority_index: int = DEFAULT_AUTHORITY_INDEX) -> str: ...

    async def create_multisig(
        self,
        creator: WalletKey,
        threshold: int,
        create_key: str,
        members: Sequence[str],
        metadata: TreasuryMetadata,
    ) -> MultisigAccount: ...

    async def get_multisig(self, address: str) -> Optional[MultisigAccount]: ...

    async def get_pending_transactions(self, address: str) -> List[ProposalInfo]: ...


def _u32le(value: int) -> bytes:
    return struct.pack("<I", value)


def _b58(raw: bytes) -> str:
    return str(Pubkey.from_bytes(bytes(raw)))


def build_create_instruction(
    creator: str,
    multisig: str,
    threshold: int,
    create_key: str,
    members: Sequence[str],
    metadata: TreasuryMetadata,
    program_id: str = SQUADS_PROGRAM_ID,
) -> Instruction:
    data = CREATE_DISCRIMINATOR + CREATE_ARGS_LAYOUT.build(
        {
            "threshold": threshold,
            "create_key": bytes(Pubkey.from_string(create_key)),
            "members": [bytes(Pubkey.from_string(m)) for m in members],
            "meta": metadata.to_meta_json(),
        }
    )
    accounts = [
        AccountMeta(Pubkey.from_string(multisig), is_signer=False, is_writable=True),
        AccountMeta(Pubkey.from_string(creator), is_signer=True, is_writable=True),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(Pubkey.from_string(program_id), data, accounts)


def decode_multisig(address: str, data: bytes) -> MultisigAccount:
    if data[:8] != MS_ACCOUNT_DISCRIMINATOR:
        raise InvariantViolationError(f"Account {address} is not a Squads multisig")
    try:
        ms = MS_LAYOUT.parse(data[8:])
    except ConstructError as e:
        raise InvariantViolationError(f"Multisig account {address} could not be decoded: {e}") from e
    return MultisigAccount(
        address=address,
        threshold=ms.threshold,
        members=[_b58(k) for k in ms["keys"]],
        transaction_index=ms.transaction_index,
        authority_index=ms.authority_index,
        create_key=_b58(ms.create_key),
    )


def decode_proposal(address: str, data: bytes) -> Optional[ProposalInfo]:
    """Decode a transaction account; None if it is not one."""
    if data[:8] != MS_TRANSACTION_DISCRIMINATOR:
        return None
    try:
        tx = MS_TRANSACTION_LAYOUT.parse(data[8:])
        status = ProposalStatus(tx.status)
    except (ConstructError, ValueError) as e:
        logger.warning(f"Skipping undecodable transaction account {short_address(address)}: {e}")
        return None
    return ProposalInfo(
        address=address,
        transaction_index=tx.transaction_index,
        status=status,
        creator=_b58(tx.creator),
        approvals=len(tx.approved),
        rejections=len(tx.rejected),
    )


class SquadsTreasuryProgram:
    """TreasuryProgram over a LedgerClient."""

    def __init__(self, ledger: LedgerClient, program_id: str = SQUADS_PROGRAM_ID):
        self._ledger = ledger
        self.program_id = program_id

    def multisig_address(self, create_key: str) -> str:
        return derive_program_address(
            [b"squad", bytes(Pubkey.from_string(create_key)), b"multisig"], self.program_id
        )

    def vault_address(self, multisig: str, authority_index: int = DEFAULT_AUTHORITY_INDEX) -> str:
        return derive_program_address(
            [b"squad", bytes(Pubkey.from_string(multisig)), _u32le(authority_index), b"authority"],
            self.program_id,
        )

    def transaction_address(self, multisig: str, transaction_index: int) -> str:
        return derive_program_address(
            [b"squad", bytes(Pubkey.from_string(multisig)), _u32le(transaction_index), b"transaction"],
            self.program_id,
        )

    async def create_multisig(
        self,
        creator: WalletKey,
        threshold: int,
        create_key: str,
        members: Sequence[str],
        metadata: TreasuryMetadata,
    ) -> MultisigAccount:
        address = self.multisig_address(create_key)
        ix = build_create_instruction(
            creator.public_address, address, threshold, create_key, members, metadata, self.program_id
        )
        logger.info(
            f"Creating multisig {short_address(address)} ({threshold}-of-{len(members)}) "
            f"from create key {short_address(create_key)}"
        )
        receipt = await self._ledger.submit([ix], [creator.keypair])

        account = await self.get_multisig(address)
        if account is None:
            raise OnChainRejectionError(
                f"Create transaction {receipt.signature} confirmed but multisig {address} is missing",
                reason="account not found after confirmation",
            )
        return account

    async def get_multisig(self, address: str) -> Optional[MultisigAccount]:
        data = await self._ledger.get_account_data(address)
        if data is None:
            return None
        return decode_multisig(address, data)

    async def get_pending_transactions(self, address: str) -> List[ProposalInfo]:
        account = await self.get_multisig(address)
        if account is None or account.transaction_index == 0:
            return []

        tx_addresses = [
            self.transaction_address(address, idx) for idx in range(1, account.transaction_index + 1)
        ]
        pending: List[ProposalInfo] = []
        for start in range(0, len(tx_addresses), _MAX_ACCOUNTS_PER_REQUEST):
            chunk = tx_addresses[start:start + _MAX_ACCOUNTS_PER_REQUEST]
            for tx_address, data in zip(chunk, await self._ledger.get_multiple_account_data(chunk)):
                if data is None:
                    continue
                proposal = decode_proposal(tx_address, data)
                if proposal is not None and proposal.status.is_pending:
                    pending.append(proposal)
        return pending
