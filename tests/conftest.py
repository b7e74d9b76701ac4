"""
Shared fixtures for the treasury deployment tests.

Everything runs against the in-memory chain in fakes.py; no test talks to a
real cluster.
"""

from pathlib import Path

import pytest

from fakes import FakeAssetProgram, FakeChain, FakeLedger, FakeTreasuryProgram, new_address
from treasury_deploy.config import LAMPORTS_PER_SOL, DeployConfig
from treasury_deploy.pipeline import DeploymentPipeline
from treasury_deploy.preconditions import PreconditionChecker
from treasury_deploy.state import DeploymentStateStore
from treasury_deploy.wallet import WalletKey, WalletProvider


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def ledger(chain) -> FakeLedger:
    return FakeLedger(chain)


@pytest.fixture
def treasury_program(chain, ledger) -> FakeTreasuryProgram:
    return FakeTreasuryProgram(chain, ledger)


@pytest.fixture
def asset_program(chain, ledger) -> FakeAssetProgram:
    return FakeAssetProgram(chain, ledger)


@pytest.fixture
def preconditions(ledger) -> PreconditionChecker:
    return PreconditionChecker(ledger)


@pytest.fixture
def config(tmp_path: Path) -> DeployConfig:
    return DeployConfig(
        wallet_path=tmp_path / "wallets" / "deployer.json",
        create_key_path=tmp_path / "wallets" / "treasury-create-key.json",
        mint_key_path=tmp_path / "wallets" / "asset-mint.json",
        state_path=tmp_path / "multisig-deployment.json",
        log_dir=tmp_path / "logs",
    )


@pytest.fixture
def store(config) -> DeploymentStateStore:
    return DeploymentStateStore(config.state_path)


@pytest.fixture
def deployer(config, chain) -> WalletKey:
    """Deployer wallet on disk holding 10 SOL."""
    wallet = WalletProvider().load_or_create(config.wallet_path)
    chain.balances[wallet.public_address] = 10 * LAMPORTS_PER_SOL
    return wallet


@pytest.fixture
def members():
    return [new_address() for _ in range(4)]


@pytest.fixture
def pipeline(config, ledger, treasury_program, asset_program, store) -> DeploymentPipeline:
    return DeploymentPipeline(config, ledger, treasury_program, asset_program, store=store)
