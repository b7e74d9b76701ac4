"""Balance gate run immediately before every irreversible, fee-consuming step.

Gate mode raises InsufficientFundsError; advisory mode (used by verification)
only records the result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from treasury_deploy.errors import InsufficientAssetBalanceError, InsufficientFundsError
from treasury_deploy.ledger import LedgerClient
from treasury_deploy.logging_utils import short_address

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreconditionResult:
    address: str
    observed_balance: int
    required_minimum: int
    satisfied: bool
    asset_account: bool = False


class PreconditionChecker:
    """Reads a balance and compares it with a declared minimum."""

    def __init__(self, ledger: LedgerClient) -> None:
        self._ledger = ledger
        self._advisories: List[PreconditionResult] = []

    @property
    def advisories(self) -> List[PreconditionResult]:
        return list(self._advisories)

    async def _evaluate(
        self,
        address: str,
        minimum: int,
        read: Callable[[str], Awaitable[Optional[int]]],
        asset_account: bool,
    ) -> PreconditionResult:
        if minimum < 0:
            raise ValueError(f"minimum must be non-negative (got {minimum})")
        observed = await read(address) or 0
        return PreconditionResult(
            address=address,
            observed_balance=observed,
            required_minimum=minimum,
            satisfied=observed >= minimum,
            asset_account=asset_account,
        )

    async def require_minimum_balance(self, address: str, minimum: int) -> PreconditionResult:
        """Native balance gate. Raises InsufficientFundsError when observed < minimum."""
        result = await self._evaluate(address, minimum, self._ledger.get_balance, False)
        if not result.satisfied:
            log.error(
                f"Balance gate failed for {short_address(address)}: "
                f"{result.observed_balance} < {minimum} lamports"
            )
            raise InsufficientFundsError(result.observed_balance, minimum, address)
        log.info(f"Balance gate passed for {short_address(address)}: {result.observed_balance} >= {minimum}")
        return result

    async def require_minimum_asset_balance(self, account: str, minimum: int) -> PreconditionResult:
        """Asset balance gate. A missing account counts as a zero balance."""
        result = await self._evaluate(account, minimum, self._ledger.get_token_balance, True)
        if not result.satisfied:
            raise InsufficientAssetBalanceError(result.observed_balance, minimum, account)
        return result

    async def check_minimum_balance(self, address: str, minimum: int) -> PreconditionResult:
        """Advisory variant: never raises, records the result."""
        result = await self._evaluate(address, minimum, self._ledger.get_balance, False)
        self._advisories.append(result)
        if not result.satisfied:
            log.warning(
                f"Advisory: {short_address(address)} holds {result.observed_balance}, below {minimum}"
            )
        return result
