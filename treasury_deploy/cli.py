"""treasury-deploy command line entry point. One sub-command per pipeline stage."""

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, TypeVar

from dotenv import load_dotenv

from treasury_deploy import report
from treasury_deploy.config import DeployConfig
from treasury_deploy.errors import DeploymentError
from treasury_deploy.ledger import SolanaLedgerClient
from treasury_deploy.logging_utils import setup_logging
from treasury_deploy.pipeline import DeploymentPipeline
from treasury_deploy.state import DeploymentStateStore
from treasury_deploy.wallet import WalletProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _print_status(level: str, message: str) -> None:
    print(f"[{level}] {message}")


def _print_lines(lines: List[str]) -> None:
    for line in lines:
        print(line)


def _with_pipeline(config: DeployConfig, action: Callable[[DeploymentPipeline], Awaitable[T]]) -> T:
    async def _run() -> T:
        async with SolanaLedgerClient(
            config.rpc_url,
            confirm_timeout_seconds=config.confirm_timeout_seconds,
            fallback_fee_lamports=config.fallback_fee_lamports,
        ) as ledger:
            return await action(DeploymentPipeline.for_ledger(config, ledger))

    return asyncio.run(_run())


def cmd_wallet(config: DeployConfig) -> int:
    wallet = WalletProvider().load_or_create(config.wallet_path)
    _print_lines(report.render_wallet(wallet.public_address, str(config.wallet_path)))
    return 0


def cmd_provision(config: DeployConfig) -> int:
    state = _with_pipeline(config, lambda p: p.provision())
    _print_lines(report.render_state(state))
    return 0


def cmd_issue(config: DeployConfig) -> int:
    state = _with_pipeline(config, lambda p: p.issue_asset())
    _print_lines(report.render_state(state))
    return 0


def cmd_fund(config: DeployConfig) -> int:
    state = _with_pipeline(config, lambda p: p.fund())
    _print_status("OK", f"Treasury vault balance: {report.format_sol(state.treasury_native_balance)}")
    return 0


def cmd_verify(config: DeployConfig) -> int:
    result = _with_pipeline(config, lambda p: p.verify())
    _print_lines(report.render_verification(result))
    return 0 if result.passed else 1


def cmd_soak(config: DeployConfig) -> int:
    result = _with_pipeline(config, lambda p: p.soak())
    _print_lines(report.render_soak(result))
    return 0 if result.passed else 1


def cmd_status(config: DeployConfig) -> int:
    _print_lines(report.render_state(DeploymentStateStore(config.state_path).load()))
    return 0


def cmd_run(config: DeployConfig) -> int:
    summary = _with_pipeline(config, lambda p: p.run_all())
    _print_lines(report.render_run(summary))
    return 0 if summary.verification is None or summary.verification.passed else 1


def cmd_export_create_key(config: DeployConfig) -> int:
    async def _export(pipeline: DeploymentPipeline) -> str:
        return pipeline.export_create_key()

    secret = _with_pipeline(config, _export)
    _print_status("WARN", "Treasury create key secret (base58). Store it in a secrets vault, then clear your terminal.")
    print(secret)
    return 0


COMMANDS = {
    "wallet": (cmd_wallet, "Create or show the deployer wallet."),
    "provision": (cmd_provision, "Create the multisig treasury."),
    "issue": (cmd_issue, "Create the asset, mint its supply and fund the treasury allocation."),
    "fund": (cmd_fund, "Transfer the configured SOL amount to the treasury vault."),
    "verify": (cmd_verify, "Run read-only checks against the deployment."),
    "soak": (cmd_soak, "Repeat read-only queries and report latency."),
    "status": (cmd_status, "Show completed stages from the deployment record."),
    "run": (cmd_run, "Run every remaining stage in order, then verify."),
    "export-create-key": (cmd_export_create_key, "Print the treasury create key for offline custody."),
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="treasury-deploy",
        description="Provision, fund and verify a Squads multisig treasury with an SPL asset. "
        "Settings come from environment variables (SOLANA_NETWORK selects the cluster).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    for name, (func, help_text) in COMMANDS.items():
        sub = subparsers.add_parser(name, help=help_text)
        sub.set_defaults(func=func)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    load_dotenv(override=False)

    try:
        config = DeployConfig.from_env()
    except DeploymentError as e:
        _print_status("ERROR", f"Configuration: {e}")
        return 1

    setup_logging(config.log_level, config.log_dir)
    logger.info(f"treasury-deploy {args.command} on {config.network.value} ({config.rpc_url})")

    try:
        return args.func(config)
    except DeploymentError as e:
        logger.error(f"{args.command} failed [{e.code}]: {e}", exc_info=True)
        _print_status("ERROR", f"{e.code}: {e}")
        hint = e.details.get("hint")
        if hint:
            _print_status("HINT", hint)
        return 1
    except Exception as e:
        logger.exception(f"{args.command} failed unexpectedly: {e}")
        _print_status("ERROR", f"Unexpected failure: {type(e).__name__}: {e}")
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
