"""Exception hierarchy for the treasury deployment pipeline.

Every failure is fatal to the step that raised it. Nothing here is retried
automatically: each mutating ledger call costs a fee, and a blind resubmission
can double-spend or create a second treasury.
"""
from typing import Any, Dict, Optional


class DeploymentError(Exception):
    """Base exception for all deployment errors."""
    code: str = "DEPLOY_000"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class ConfigurationError(DeploymentError):
    """Invalid or incomplete deployment configuration."""
    code = "CFG_001"


class PersistenceError(DeploymentError):
    """Local key or state file could not be read or written."""
    code = "STORE_001"

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message, {"path": path})
        self.path = path


class CorruptKeyError(PersistenceError):
    """Key file exists but does not decode to a valid keypair."""
    code = "STORE_002"


class MalformedStateError(PersistenceError):
    """Deployment record exists but is not a valid JSON object."""
    code = "STORE_003"


class InsufficientFundsError(DeploymentError):
    """Balance gate failed before an irreversible step."""
    code = "FUNDS_001"

    def __init__(self, observed: int, required: int, address: Optional[str] = None):
        super().__init__(
            f"Insufficient balance: observed {observed}, required {required}",
            {"observed": observed, "required": required, "address": address},
        )
        self.observed = observed
        self.required = required
        self.address = address


class InsufficientAssetBalanceError(InsufficientFundsError):
    """Asset holder account holds fewer units than requested."""
    code = "FUNDS_002"


class OnChainRejectionError(DeploymentError):
    """The ledger or a program refused a mutating request."""
    code = "CHAIN_001"

    def __init__(self, message: str, reason: Optional[str] = None, hint: Optional[str] = None):
        super().__init__(message, {"reason": reason, "hint": hint})
        self.reason = reason
        self.hint = hint


class TransferRejectedError(OnChainRejectionError):
    """Native transfer refused at submission time."""
    code = "CHAIN_002"


class MintCreationError(OnChainRejectionError):
    """Asset mint could not be created."""
    code = "CHAIN_003"


class MintAuthorityError(OnChainRejectionError):
    """Minting refused, usually a wrong mint authority."""
    code = "CHAIN_004"


class InvariantViolationError(DeploymentError):
    """On-chain result disagrees with what was requested or persisted."""
    code = "INV_001"


class ConfirmationTimeoutError(DeploymentError):
    """Transaction submitted but confirmation was not observed in time.

    The outcome is unknown. The transaction may still land, so callers must
    re-check on-chain state before deciding to resubmit.
    """
    code = "CHAIN_005"

    def __init__(
        self,
        signature: str,
        timeout_seconds: float,
        last_valid_block_height: Optional[int] = None,
    ):
        super().__init__(
            f"Transaction {signature} not confirmed within {timeout_seconds:.0f}s; "
            "verify on-chain state before re-running",
            {
                "signature": signature,
                "timeout_seconds": timeout_seconds,
                "last_valid_block_height": last_valid_block_height,
            },
        )
        self.signature = signature
        self.timeout_seconds = timeout_seconds
        self.last_valid_block_height = last_valid_block_height


class LedgerUnavailableError(DeploymentError):
    """RPC transport failure while talking to the ledger."""
    code = "RPC_001"


class StageOrderError(DeploymentError):
    """A stage was invoked before the stages it depends on completed."""
    code = "PIPE_001"
