"""
Read-only verification of a deployment, plus a soak check.

Nothing in this module submits a transaction. Independent reads are issued
concurrently and only combined after all of them complete.
"""

from __future__ import annotations

import asyncio
import logging
import statistics
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from treasury_deploy.errors import DeploymentError
from treasury_deploy.ledger import LedgerClient
from treasury_deploy.preconditions import PreconditionChecker
from treasury_deploy.spl_asset import AssetProgram
from treasury_deploy.squads import TreasuryProgram
from treasury_deploy.state import DeploymentState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckResult:
    name: str
    passed: bool
    detail: str
    informational: bool = False


@dataclass
class VerificationReport:
    checks: List[CheckResult] = field(default_factory=list)
    pending_proposals: Optional[int] = None
    transaction_index: Optional[int] = None

    @property
    def passed(self) -> bool:
        return bool(self.checks) and all(c.passed for c in self.checks)

    @property
    def failures(self) -> List[CheckResult]:
        return [c for c in self.checks if not c.passed]


@dataclass(frozen=True)
class LatencyStats:
    count: int
    min_ms: float
    mean_ms: float
    p95_ms: float
    max_ms: float

    @classmethod
    def from_samples(cls, samples_ms: List[float]) -> LatencyStats:
        if not samples_ms:
            return cls(0, 0.0, 0.0, 0.0, 0.0)
        if len(samples_ms) >= 2:
            p95 = statistics.quantiles(samples_ms, n=20, method="inclusive")[-1]
        else:
            p95 = samples_ms[0]
        return cls(
            count=len(samples_ms),
            min_ms=min(samples_ms),
            mean_ms=statistics.fmean(samples_ms),
            p95_ms=p95,
            max_ms=max(samples_ms),
        )


@dataclass
class SoakReport:
    iterations: int
    operations: Dict[str, LatencyStats] = field(default_factory=dict)
    attempts: int = 0
    successes: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        return self.successes / self.attempts if self.attempts else 0.0

    @property
    def passed(self) -> bool:
        return self.attempts > 0 and self.successes == self.attempts


class VerificationRunner:
    def __init__(
        self,
        ledger: LedgerClient,
        treasury_program: TreasuryProgram,
        asset_program: AssetProgram,
        preconditions: PreconditionChecker,
    ):
        self._ledger = ledger
        self._treasury = treasury_program
        self._assets = asset_program
        self._preconditions = preconditions

    def _vault(self, state: DeploymentState) -> str:
        return state.vault_address or self._treasury.vault_address(state.treasury_address)

    def _treasury_asset_account(self, state: DeploymentState) -> Optional[str]:
        if not state.asset_mint:
            return None
        return state.treasury_asset_account or self._assets.associated_account(
            state.asset_mint, self._vault(state), allow_off_curve=True
        )

    async def verify(self, state: DeploymentState) -> VerificationReport:
        """Run every read-only check against the persisted deployment."""
        report = VerificationReport()
        if not state.treasury_address:
            report.checks.append(CheckResult("treasury_exists", False, "no treasury recorded in deployment state"))
            return report

        vault = self._vault(state)
        asset_account = self._treasury_asset_account(state)

        async def _asset_balance() -> Optional[int]:
            if asset_account is None:
                return None
            return await self._ledger.get_token_balance(asset_account)

        account, native, asset_balance, pending = await asyncio.gather(
            self._treasury.get_multisig(state.treasury_address),
            self._preconditions.check_minimum_balance(vault, 1),
            _asset_balance(),
            self._treasury.get_pending_transactions(state.treasury_address),
        )

        if account is None:
            report.checks.append(
                CheckResult("treasury_exists", False, f"no multisig account at {state.treasury_address}")
            )
        else:
            report.transaction_index = account.transaction_index
            report.checks.append(CheckResult("treasury_exists", True, f"multisig {account.address}"))
            report.checks.append(
                CheckResult(
                    "threshold_matches",
                    account.threshold == state.threshold,
                    f"on-chain {account.threshold}, recorded {state.threshold}",
                )
            )
            recorded = sorted(state.member_addresses or [])
            report.checks.append(
                CheckResult(
                    "members_match",
                    sorted(account.members) == recorded,
                    f"{len(account.members)} on-chain, {len(recorded)} recorded",
                )
            )
            creator_ok = bool(state.creator_address) and state.creator_address in account.members
            report.checks.append(
                CheckResult("creator_is_member", creator_ok, f"creator {state.creator_address}")
            )

        report.checks.append(
            CheckResult(
                "treasury_native_balance",
                native.satisfied,
                f"vault {vault} holds {native.observed_balance} lamports",
            )
        )

        if state.asset_mint:
            observed = asset_balance or 0
            report.checks.append(
                CheckResult(
                    "treasury_asset_balance",
                    observed > 0,
                    f"account {asset_account} holds {observed} base units",
                )
            )

        report.pending_proposals = len(pending)
        report.checks.append(
            CheckResult(
                "pending_proposals",
                True,
                f"{len(pending)} pending proposal(s)",
                informational=True,
            )
        )

        for check in report.checks:
            log = logger.info if check.passed else logger.warning
            log(f"{'PASS' if check.passed else 'FAIL'} {check.name}: {check.detail}")
        return report

    async def soak_check(self, state: DeploymentState, iterations: int) -> SoakReport:
        """
        Repeat read-only queries ``iterations`` times and collect latency statistics.

        Failed reads are counted, not raised. Correctness is not asserted here.
        """
        if iterations < 1:
            raise ValueError("iterations must be >= 1")

        balance_targets = [a for a in (state.treasury_address, state.vault_address, state.creator_address) if a]
        token_targets = [a for a in (state.holder_account, state.treasury_asset_account) if a]

        async def _balances() -> None:
            await asyncio.gather(*(self._ledger.get_balance(a) for a in balance_targets))

        async def _token_balances() -> None:
            await asyncio.gather(*(self._ledger.get_token_balance(a) for a in token_targets))

        operations: Dict[str, Callable[[], Awaitable[object]]] = {"get_slot": self._ledger.get_slot}
        if balance_targets:
            operations["balances"] = _balances
        if token_targets:
            operations["token_balances"] = _token_balances

        samples: Dict[str, List[float]] = {name: [] for name in operations}
        report = SoakReport(iterations=iterations)

        for i in range(iterations):
            for name, operation in operations.items():
                report.attempts += 1
                start = time.perf_counter()
                try:
                    await operation()
                except DeploymentError as e:
                    report.errors.append(f"iteration {i + 1} {name}: {e}")
                    logger.warning(f"Soak read {name} failed on iteration {i + 1}: {e}")
                    continue
                samples[name].append((time.perf_counter() - start) * 1000)
                report.successes += 1

        report.operations = {name: LatencyStats.from_samples(s) for name, s in samples.items()}
        logger.info(
            f"Soak check: {report.successes}/{report.attempts} reads succeeded "
            f"({report.success_rate:.0%}) over {iterations} iteration(s)"
        )
        return report
