"""Tests for AssetIssuer: mint creation, supply minting and distribution."""

import pytest
from solders.keypair import Keypair

from fakes import new_address
from treasury_deploy.errors import (
    InsufficientAssetBalanceError,
    InvariantViolationError,
    MintAuthorityError,
    MintCreationError,
)
from treasury_deploy.issuer import AssetIssuer
from treasury_deploy.wallet import WalletKey

SCALE = 10 ** 9


@pytest.fixture
def issuer(asset_program, preconditions):
    return AssetIssuer(asset_program, preconditions, min_balance_lamports=50_000_000)


@pytest.fixture
def vault(treasury_program):
    return treasury_program.vault_address(new_address())


class TestIssueAsset:
    @pytest.mark.asyncio
    async def test_full_supply_lands_in_holder_account(self, issuer, deployer, asset_program):
        issued = await issuer.issue_asset(deployer, 9, 1_000_000 * SCALE)

        assert await asset_program.get_token_balance(issued.holder_account) == 1_000_000 * SCALE
        assert issued.decimals == 9
        assert issued.holder_account == asset_program.associated_account(
            issued.mint_id, deployer.public_address
        )

    @pytest.mark.asyncio
    async def test_mint_is_controlled_by_authority(self, issuer, deployer, chain):
        issued = await issuer.issue_asset(deployer, 6, 100)
        mint = chain.mints[issued.mint_id]
        assert mint.mint_authority == deployer.public_address
        assert mint.decimals == 6

    @pytest.mark.asyncio
    async def test_amounts_are_never_rescaled(self, issuer, deployer, asset_program):
        issued = await issuer.issue_asset(deployer, 9, 1_000_000)
        assert await asset_program.get_token_balance(issued.holder_account) == 1_000_000

    @pytest.mark.asyncio
    async def test_creation_rejection_is_mint_creation_error(self, issuer, deployer, chain):
        chain.reject_mint_creation = "insufficient lamports"
        with pytest.raises(MintCreationError):
            await issuer.issue_asset(deployer, 9, 1)

    @pytest.mark.asyncio
    async def test_wrong_authority_is_mint_authority_error(self, issuer, deployer, chain):
        mint = await issuer.create_asset_mint(deployer, 9)
        impostor = WalletKey.from_keypair(Keypair())
        chain.balances[impostor.public_address] = 10_000_000
        with pytest.raises(MintAuthorityError):
            await issuer.mint_supply(mint.address, impostor, 10)

    @pytest.mark.asyncio
    async def test_existing_mint_is_adopted(self, issuer, deployer, chain):
        mint_key = WalletKey.from_keypair(Keypair())
        await issuer.create_asset_mint(deployer, 9, mint_key)
        await issuer.create_asset_mint(deployer, 9, mint_key)
        assert chain.create_mint_calls == 1

    @pytest.mark.asyncio
    async def test_existing_mint_with_other_decimals_fails(self, issuer, deployer):
        mint_key = WalletKey.from_keypair(Keypair())
        await issuer.create_asset_mint(deployer, 9, mint_key)
        with pytest.raises(InvariantViolationError):
            await issuer.create_asset_mint(deployer, 6, mint_key)

    @pytest.mark.asyncio
    async def test_minting_again_tops_up_only(self, issuer, deployer, chain, asset_program):
        issued = await issuer.issue_asset(deployer, 9, 500)
        again = await issuer.mint_supply(issued.mint_id, deployer, 500)

        assert chain.mint_to_calls == 1
        assert again.supply_minted == 500
        assert await asset_program.get_token_balance(issued.holder_account) == 500


class TestDistribute:
    @pytest.mark.asyncio
    async def test_creates_destination_then_transfers(self, issuer, deployer, vault, asset_program):
        issued = await issuer.issue_asset(deployer, 9, 1_000_000 * SCALE)
        destination = asset_program.associated_account(issued.mint_id, vault, allow_off_curve=True)
        assert await asset_program.get_token_balance(destination) is None

        result = await issuer.distribute(issued.mint_id, deployer, vault, 500_000 * SCALE, True)

        assert result.account_created is True
        assert result.destination_account == destination
        assert await asset_program.get_token_balance(destination) == 500_000 * SCALE
        assert await asset_program.get_token_balance(issued.holder_account) == 500_000 * SCALE

    @pytest.mark.asyncio
    async def test_missing_destination_without_creation_fails(self, issuer, deployer, vault, chain):
        issued = await issuer.issue_asset(deployer, 9, 1_000)
        with pytest.raises(InvariantViolationError):
            await issuer.distribute(issued.mint_id, deployer, vault, 10, False)
        assert chain.token_transfer_calls == 0

    @pytest.mark.asyncio
    async def test_insufficient_asset_balance(self, issuer, deployer, vault, chain):
        issued = await issuer.issue_asset(deployer, 9, 1_000)
        with pytest.raises(InsufficientAssetBalanceError) as exc_info:
            await issuer.distribute(issued.mint_id, deployer, vault, 1_001, True)
        assert exc_info.value.observed == 1_000
        assert exc_info.value.required == 1_001
        assert chain.token_transfer_calls == 0

    def test_off_curve_owner_requires_opt_in(self, asset_program, vault):
        with pytest.raises(ValueError, match="off-curve"):
            asset_program.associated_account(new_address(), vault)
