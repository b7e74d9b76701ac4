"""Tests for TreasuryProvisioner."""

import pytest
from solders.keypair import Keypair

from fakes import new_address
from treasury_deploy.errors import InsufficientFundsError, InvariantViolationError, OnChainRejectionError
from treasury_deploy.provisioner import TreasuryProvisioner, validate_membership
from treasury_deploy.squads import TreasuryMetadata
from treasury_deploy.wallet import WalletKey

METADATA = TreasuryMetadata("Kira DAO Treasury", "test", "https://kiraos.live/logo.png")


@pytest.fixture
def provisioner(treasury_program, preconditions):
    return TreasuryProvisioner(treasury_program, preconditions, 100_000_000)


class TestCreateTreasury:
    @pytest.mark.asyncio
    async def test_three_of_five(self, provisioner, deployer, members, chain):
        account = await provisioner.create_treasury(deployer, 3, members, METADATA)

        assert account.threshold == 3
        assert len(account.members) == 5
        assert account.members[0] == deployer.public_address
        assert account.address in chain.multisigs
        assert account.vault_address != account.address
        assert chain.create_multisig_calls == 1

    @pytest.mark.asyncio
    async def test_generates_create_key_when_not_given(self, provisioner, deployer, members, treasury_program):
        account = await provisioner.create_treasury(deployer, 2, members, METADATA)
        assert account.address == treasury_program.multisig_address(account.create_key.public_address)

    @pytest.mark.asyncio
    async def test_uses_supplied_create_key(self, provisioner, deployer, members, treasury_program):
        create_key = WalletKey.from_keypair(Keypair())
        account = await provisioner.create_treasury(deployer, 2, members, METADATA, create_key=create_key)
        assert account.create_key is create_key
        assert account.address == treasury_program.multisig_address(create_key.public_address)

    @pytest.mark.asyncio
    async def test_threshold_above_member_count_rejected(self, provisioner, deployer, chain):
        with pytest.raises(InvariantViolationError):
            await provisioner.create_treasury(deployer, 3, [new_address()], METADATA)
        assert chain.create_multisig_calls == 0

    @pytest.mark.asyncio
    async def test_underfunded_creator_never_submits(self, provisioner, members, chain):
        poor = WalletKey.from_keypair(Keypair())
        chain.balances[poor.public_address] = 1_000

        with pytest.raises(InsufficientFundsError):
            await provisioner.create_treasury(poor, 3, members, METADATA)
        assert chain.create_multisig_calls == 0

    @pytest.mark.asyncio
    async def test_program_rejection_propagates(self, provisioner, deployer, members, chain):
        chain.reject_create = "custom program error: 0x1771"
        with pytest.raises(OnChainRejectionError):
            await provisioner.create_treasury(deployer, 3, members, METADATA)

    @pytest.mark.asyncio
    async def test_confirmed_threshold_mismatch_is_invariant_violation(self, provisioner, deployer, members, chain):
        chain.tamper_threshold = 2
        with pytest.raises(InvariantViolationError, match="threshold"):
            await provisioner.create_treasury(deployer, 3, members, METADATA)

    @pytest.mark.asyncio
    async def test_existing_treasury_for_create_key_is_adopted(self, provisioner, deployer, members, chain):
        create_key = WalletKey.from_keypair(Keypair())
        first = await provisioner.create_treasury(deployer, 3, members, METADATA, create_key=create_key)
        second = await provisioner.create_treasury(deployer, 3, members, METADATA, create_key=create_key)

        assert second.address == first.address
        assert second.adopted is True
        assert chain.create_multisig_calls == 1

    @pytest.mark.asyncio
    async def test_adopting_a_treasury_with_other_members_fails(self, provisioner, deployer, members, chain):
        create_key = WalletKey.from_keypair(Keypair())
        await provisioner.create_treasury(deployer, 3, members, METADATA, create_key=create_key)

        other = [new_address() for _ in range(4)]
        with pytest.raises(InvariantViolationError):
            await provisioner.create_treasury(deployer, 3, other, METADATA, create_key=create_key)


class TestMembershipValidation:
    def test_creator_first(self):
        creator, m2 = new_address(), new_address()
        assert validate_membership(creator, 2, [m2]) == [creator, m2]

    @pytest.mark.parametrize("threshold,extra", [(0, 1), (2, 0), (5, 3)])
    def test_threshold_out_of_range(self, threshold, extra):
        with pytest.raises(InvariantViolationError):
            validate_membership(new_address(), threshold, [new_address() for _ in range(extra)])

    def test_creator_listed_twice(self):
        creator = new_address()
        with pytest.raises(InvariantViolationError, match="duplicates"):
            validate_membership(creator, 1, [creator])

    def test_invalid_address(self):
        with pytest.raises(InvariantViolationError, match="valid address"):
            validate_membership(new_address(), 1, ["not-an-address"])
