"""Human-readable rendering of pipeline results. No business logic lives here."""

from __future__ import annotations

from typing import List, Optional

from treasury_deploy.config import LAMPORTS_PER_SOL, Network
from treasury_deploy.pipeline import STAGE_ORDER, RunSummary
from treasury_deploy.state import DeploymentState
from treasury_deploy.verification import SoakReport, VerificationReport


def solscan_account_url(address: str, network: Network) -> str:
    return f"https://solscan.io/account/{address}{network.explorer_suffix}"


def solscan_token_url(mint: str, network: Network) -> str:
    return f"https://solscan.io/token/{mint}{network.explorer_suffix}"


def squads_url(multisig: str, network: Network) -> Optional[str]:
    if network is Network.DEVNET:
        return f"https://devnet.squads.so/multisig/{multisig}"
    return None


def format_sol(lamports: Optional[int]) -> str:
    if lamports is None:
        return "-"
    return f"{lamports / LAMPORTS_PER_SOL:.4f} SOL"


def format_asset(amount: Optional[int], decimals: Optional[int], symbol: Optional[str] = None) -> str:
    if amount is None:
        return "-"
    scale = 10 ** (decimals or 0)
    whole = f"{amount / scale:,.{min(decimals or 0, 4)}f}"
    return f"{whole} {symbol}" if symbol else whole


def render_wallet(address: str, path: str) -> List[str]:
    return [
        f"Wallet address: {address}",
        f"Key file:       {path} (mode 600)",
        "Keep the key file private and backed up; fund this address before provisioning.",
    ]


def render_state(state: Optional[DeploymentState]) -> List[str]:
    if state is None:
        return ["No deployment recorded yet."]

    network = Network.parse(state.network) if state.network else Network.DEVNET
    done = set(state.completed_stages())
    lines = ["Stages:"]
    for stage in STAGE_ORDER:
        lines.append(f"  [{'x' if stage in done else ' '}] {stage.value}")

    lines.append("")
    lines.append(f"Network:    {network.value}")
    if state.treasury_address:
        lines.append(f"Treasury:   {state.treasury_address}")
        lines.append(f"Vault:      {state.vault_address or '-'}")
        lines.append(
            f"Threshold:  {state.threshold}-of-{len(state.member_addresses or [])}"
        )
        for i, member in enumerate(state.member_addresses or [], start=1):
            marker = " (creator)" if member == state.creator_address else ""
            lines.append(f"  member {i}: {member}{marker}")
        lines.append(f"Explorer:   {solscan_account_url(state.treasury_address, network)}")
        squads = squads_url(state.treasury_address, network)
        if squads:
            lines.append(f"Squads UI:  {squads}")
    if state.asset_mint:
        lines.append(f"Asset:      {state.asset_name or '-'} ({state.asset_symbol or '-'})")
        lines.append(f"Mint:       {state.asset_mint}")
        lines.append(f"Decimals:   {state.asset_decimals}")
        lines.append(f"Token page: {solscan_token_url(state.asset_mint, network)}")
    if state.treasury_asset_account:
        lines.append(
            f"Treasury asset account: {state.treasury_asset_account} holds "
            f"{format_asset(state.treasury_asset_amount, state.asset_decimals, state.asset_symbol)}"
        )
    if state.last_funded_at or state.funding_status:
        lines.append(
            f"Funding:    {state.funding_status or '-'}, balance "
            f"{format_sol(state.treasury_native_balance)}, last funded {state.last_funded_at or '-'}"
        )
    if state.treasury_create_key:
        lines.append("")
        lines.append(
            f"Create key {state.treasury_create_key} is stored at {state.treasury_create_key_path}; "
            "export it to a secrets vault."
        )
    return lines


def render_verification(report: VerificationReport) -> List[str]:
    lines = []
    for check in report.checks:
        tag = "INFO" if check.informational else ("PASS" if check.passed else "FAIL")
        lines.append(f"[{tag}] {check.name}: {check.detail}")
    if report.transaction_index is not None:
        lines.append(f"Transaction index: {report.transaction_index}")
    lines.append("Verification " + ("passed" if report.passed else f"FAILED ({len(report.failures)} check(s))"))
    return lines


def render_soak(report: SoakReport) -> List[str]:
    lines = [f"Soak check: {report.iterations} iteration(s)"]
    for name, stats in report.operations.items():
        lines.append(
            f"  {name:<15} n={stats.count:<4} min={stats.min_ms:.1f}ms mean={stats.mean_ms:.1f}ms "
            f"p95={stats.p95_ms:.1f}ms max={stats.max_ms:.1f}ms"
        )
    lines.append(
        f"Success rate: {report.success_rate:.1%} ({report.successes}/{report.attempts})"
    )
    for error in report.errors[:10]:
        lines.append(f"  error: {error}")
    return lines


def render_run(summary: RunSummary) -> List[str]:
    lines = []
    if summary.skipped:
        lines.append(f"Already complete: {', '.join(summary.skipped)}")
    if summary.ran:
        lines.append(f"Completed now:    {', '.join(summary.ran)}")
    lines.append("")
    lines.extend(render_state(summary.state))
    if summary.verification is not None:
        lines.append("")
        lines.extend(render_verification(summary.verification))
    return lines
