"""Tests for TreasuryFunder."""

import pytest

from fakes import FEE, new_address
from treasury_deploy.errors import (
    ConfirmationTimeoutError,
    InsufficientFundsError,
    TransferRejectedError,
)
from treasury_deploy.funder import TreasuryFunder

SOL = 1_000_000_000


@pytest.fixture
def funder(ledger, preconditions):
    return TreasuryFunder(ledger, preconditions)


class TestTransferNative:
    @pytest.mark.asyncio
    async def test_moves_lamports_and_reports_balance(self, funder, deployer, chain):
        vault = new_address()
        result = await funder.transfer_native(deployer, vault, int(1.5 * SOL))

        assert chain.balances[vault] == int(1.5 * SOL)
        assert chain.balances[deployer.public_address] == 10 * SOL - int(1.5 * SOL) - FEE
        assert result.destination_balance == int(1.5 * SOL)
        assert result.fee_estimate == FEE
        assert result.receipt.signature

    @pytest.mark.asyncio
    async def test_gate_includes_fee(self, funder, deployer, chain, ledger):
        chain.balances[deployer.public_address] = SOL
        with pytest.raises(InsufficientFundsError) as exc_info:
            await funder.transfer_native(deployer, new_address(), SOL)
        assert exc_info.value.required == SOL + FEE
        assert ledger.submissions == []

    @pytest.mark.asyncio
    async def test_exact_amount_plus_fee_passes(self, funder, deployer, chain):
        chain.balances[deployer.public_address] = SOL + FEE
        await funder.transfer_native(deployer, new_address(), SOL)
        assert chain.balances[deployer.public_address] == 0

    @pytest.mark.asyncio
    async def test_submission_time_rejection(self, funder, deployer, chain):
        chain.reject_next_submit = "Transfer: insufficient lamports 10, need 20"
        with pytest.raises(TransferRejectedError, match="insufficient funds"):
            await funder.transfer_native(deployer, new_address(), SOL)

    @pytest.mark.asyncio
    async def test_other_rejection_is_transfer_rejected(self, funder, deployer, chain):
        chain.reject_next_submit = "Blockhash not found"
        with pytest.raises(TransferRejectedError):
            await funder.transfer_native(deployer, new_address(), SOL)

    @pytest.mark.asyncio
    async def test_timeout_is_reported_not_retried(self, funder, deployer, chain, ledger):
        chain.timeout_next_submit = True
        sent = []
        with pytest.raises(ConfirmationTimeoutError) as exc_info:
            await funder.transfer_native(deployer, new_address(), SOL, on_sent=sent.append)

        assert len(ledger.submissions) == 1
        assert sent[0].signature == exc_info.value.signature

    @pytest.mark.asyncio
    async def test_non_positive_amount_rejected(self, funder, deployer):
        with pytest.raises(ValueError):
            await funder.transfer_native(deployer, new_address(), 0)
