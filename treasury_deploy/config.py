"""Deployment configuration.

Built once at the entry point from environment variables and then handed to
every component. Components never read the environment themselves.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional, Tuple

from treasury_deploy.errors import ConfigurationError

LAMPORTS_PER_SOL = 1_000_000_000


class Network(str, Enum):
    DEVNET = "devnet"
    TESTNET = "testnet"
    MAINNET = "mainnet-beta"

    @property
    def rpc_url(self) -> str:
        return RPC_ENDPOINTS[self]

    @property
    def explorer_suffix(self) -> str:
        return "" if self is Network.MAINNET else f"?cluster={self.value}"

    @classmethod
    def parse(cls, value: str) -> "Network":
        key = (value or "").strip().lower()
        alias = NETWORK_ALIASES.get(key, key)
        for network in cls:
            if network.value == alias:
                return network
        raise ConfigurationError(
            f"Unknown network '{value}' (expected one of: devnet, testnet, mainnet-beta)"
        )


RPC_ENDPOINTS = {
    Network.DEVNET: "https://api.devnet.solana.com",
    Network.TESTNET: "https://api.testnet.solana.com",
    Network.MAINNET: "https://api.mainnet-beta.solana.com",
}

NETWORK_ALIASES = {
    "dev": "devnet",
    "test": "testnet",
    "main": "mainnet-beta",
    "mainnet": "mainnet-beta",
}


def _split_members(raw: str) -> Tuple[str, ...]:
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class DeployConfig:
    network: Network = Network.DEVNET
    rpc_url_override: Optional[str] = None

    # Local files
    wallet_path: Path = Path("wallets/deployer.json")
    create_key_path: Path = Path("wallets/treasury-create-key.json")
    mint_key_path: Path = Path("wallets/asset-mint.json")
    state_path: Path = Path("multisig-deployment.json")
    log_dir: Path = Path("logs")
    log_level: str = "INFO"

    # Treasury shape
    threshold: int = 3
    member_count: int = 5
    additional_members: Tuple[str, ...] = field(default_factory=tuple)
    treasury_name: str = "Kira DAO Treasury"
    treasury_description: str = "On-chain treasury for Kira DAO"
    treasury_image_url: str = "https://kiraos.live/logo.png"

    # Balance gates (lamports)
    min_provision_lamports: int = 100_000_000
    min_issue_lamports: int = 50_000_000
    funding_lamports: int = 1_500_000_000
    fallback_fee_lamports: int = 5_000

    # Asset (whole units; scaled by 10**decimals where minted)
    asset_name: str = "Kira DAO Test Token"
    asset_symbol: str = "tKIRA"
    asset_decimals: int = 9
    asset_total_supply: int = 1_000_000
    asset_treasury_allocation: int = 500_000

    confirm_timeout_seconds: float = 30.0
    soak_iterations: int = 10

    def __post_init__(self) -> None:
        if self.threshold < 1:
            raise ConfigurationError(f"threshold must be >= 1 (got {self.threshold})")
        if self.member_count < self.threshold:
            raise ConfigurationError(
                f"threshold {self.threshold} exceeds member count {self.member_count}"
            )
        if len(self.additional_members) > self.member_count - 1:
            raise ConfigurationError(
                f"{len(self.additional_members)} additional members configured but "
                f"member count is {self.member_count} (creator included)"
            )
        if not 0 <= self.asset_decimals <= 18:
            raise ConfigurationError(f"asset decimals out of range: {self.asset_decimals}")
        if self.asset_total_supply <= 0:
            raise ConfigurationError("asset total supply must be positive")
        if not 0 < self.asset_treasury_allocation <= self.asset_total_supply:
            raise ConfigurationError(
                "treasury allocation must be positive and not exceed total supply"
            )
        for name in (
            "min_provision_lamports",
            "min_issue_lamports",
            "fallback_fee_lamports",
        ):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must not be negative")
        if self.funding_lamports <= 0:
            raise ConfigurationError(f"funding amount must be positive (got {self.funding_lamports})")
        if self.confirm_timeout_seconds <= 0:
            raise ConfigurationError("confirmation timeout must be positive")
        if self.soak_iterations < 1:
            raise ConfigurationError("soak iterations must be >= 1")

    @property
    def rpc_url(self) -> str:
        return self.rpc_url_override or self.network.rpc_url

    @property
    def asset_scale(self) -> int:
        return 10 ** self.asset_decimals

    @property
    def asset_supply_base_units(self) -> int:
        return self.asset_total_supply * self.asset_scale

    @property
    def asset_treasury_base_units(self) -> int:
        return self.asset_treasury_allocation * self.asset_scale

    @property
    def placeholder_member_count(self) -> int:
        """Members still missing after the creator and explicit members."""
        return self.member_count - 1 - len(self.additional_members)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> DeployConfig:
        env = os.environ if environ is None else environ

        def _int(name: str, default: int) -> int:
            raw = env.get(name, "").strip()
            if not raw:
                return default
            try:
                return int(raw.replace("_", ""))
            except ValueError:
                raise ConfigurationError(f"{name} must be an integer (got '{raw}')") from None

        def _float(name: str, default: float) -> float:
            raw = env.get(name, "").strip()
            if not raw:
                return default
            try:
                return float(raw)
            except ValueError:
                raise ConfigurationError(f"{name} must be a number (got '{raw}')") from None

        defaults = cls()
        return cls(
            network=Network.parse(env.get("SOLANA_NETWORK", "devnet")),
            rpc_url_override=env.get("SOLANA_RPC_URL") or None,
            wallet_path=Path(env.get("TREASURY_WALLET_PATH") or defaults.wallet_path),
            create_key_path=Path(env.get("TREASURY_CREATE_KEY_PATH") or defaults.create_key_path),
            mint_key_path=Path(env.get("TREASURY_MINT_KEY_PATH") or defaults.mint_key_path),
            state_path=Path(env.get("TREASURY_STATE_PATH") or defaults.state_path),
            log_dir=Path(env.get("TREASURY_LOG_DIR") or defaults.log_dir),
            log_level=env.get("TREASURY_LOG_LEVEL") or defaults.log_level,
            threshold=_int("TREASURY_THRESHOLD", defaults.threshold),
            member_count=_int("TREASURY_MEMBER_COUNT", defaults.member_count),
            additional_members=_split_members(env.get("TREASURY_MEMBERS", "")),
            treasury_name=env.get("TREASURY_NAME") or defaults.treasury_name,
            treasury_description=env.get("TREASURY_DESCRIPTION") or defaults.treasury_description,
            treasury_image_url=env.get("TREASURY_IMAGE_URL") or defaults.treasury_image_url,
            min_provision_lamports=_int("TREASURY_MIN_PROVISION_LAMPORTS", defaults.min_provision_lamports),
            min_issue_lamports=_int("TREASURY_MIN_ISSUE_LAMPORTS", defaults.min_issue_lamports),
            funding_lamports=_int("TREASURY_FUNDING_LAMPORTS", defaults.funding_lamports),
            fallback_fee_lamports=_int("TREASURY_FALLBACK_FEE_LAMPORTS", defaults.fallback_fee_lamports),
            asset_name=env.get("ASSET_NAME") or defaults.asset_name,
            asset_symbol=env.get("ASSET_SYMBOL") or defaults.asset_symbol,
            asset_decimals=_int("ASSET_DECIMALS", defaults.asset_decimals),
            asset_total_supply=_int("ASSET_TOTAL_SUPPLY", defaults.asset_total_supply),
            asset_treasury_allocation=_int("ASSET_TREASURY_ALLOCATION", defaults.asset_treasury_allocation),
            confirm_timeout_seconds=_float("TREASURY_CONFIRM_TIMEOUT_SECONDS", defaults.confirm_timeout_seconds),
            soak_iterations=_int("TREASURY_SOAK_ITERATIONS", defaults.soak_iterations),
        )
