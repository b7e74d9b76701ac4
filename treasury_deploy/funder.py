"""TreasuryFunder: native-currency transfer into the treasury vault."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer

from treasury_deploy.errors import OnChainRejectionError, TransferRejectedError
from treasury_deploy.ledger import LedgerClient, OnSent, TransactionReceipt, is_insufficient_funds
from treasury_deploy.logging_utils import short_address
from treasury_deploy.preconditions import PreconditionChecker
from treasury_deploy.wallet import WalletKey

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FundingResult:
    receipt: TransactionReceipt
    amount: int
    fee_estimate: int
    destination_balance: int


class TreasuryFunder:
    """
    Sends a single native transfer and waits for confirmation.

    A plain transfer carries no idempotency key, so a timed-out transfer is
    reported and never resent from here.
    """

    def __init__(self, ledger: LedgerClient, preconditions: PreconditionChecker):
        self._ledger = ledger
        self._preconditions = preconditions

    async def transfer_native(
        self,
        from_wallet: WalletKey,
        to_address: str,
        amount: int,
        on_sent: Optional[OnSent] = None,
    ) -> FundingResult:
        """
        Move ``amount`` lamports from ``from_wallet`` to ``to_address``.

        Raises:
            InsufficientFundsError: balance below amount plus estimated fee
            TransferRejectedError: the ledger refused the transfer
            ConfirmationTimeoutError: outcome unknown, check on-chain before re-running
        """
        if amount <= 0:
            raise ValueError("amount must be positive")

        ix = transfer(
            TransferParams(
                from_pubkey=from_wallet.keypair.pubkey(),
                to_pubkey=Pubkey.from_string(to_address),
                lamports=amount,
            )
        )
        fee = await self._ledger.estimate_fee([ix], from_wallet.public_address)
        await self._preconditions.require_minimum_balance(from_wallet.public_address, amount + fee)

        logger.info(
            f"Transferring {amount} lamports {short_address(from_wallet.public_address)} -> "
            f"{short_address(to_address)} (fee ~{fee})"
        )
        try:
            receipt = await self._ledger.submit([ix], [from_wallet.keypair], on_sent=on_sent)
        except TransferRejectedError:
            raise
        except OnChainRejectionError as e:
            if is_insufficient_funds(e.reason):
                message = "Transfer rejected: insufficient funds at submission time"
            else:
                message = f"Transfer rejected: {e.hint or e.reason or e.message}"
            raise TransferRejectedError(message, e.reason, e.hint) from e

        balance = await self._ledger.get_balance(to_address)
        logger.info(f"Transfer confirmed: {receipt.signature[:16]}..., destination balance {balance}")
        return FundingResult(receipt=receipt, amount=amount, fee_estimate=fee, destination_balance=balance)
