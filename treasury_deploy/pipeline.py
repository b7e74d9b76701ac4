"""
Deployment pipeline: named stages run in a fixed order.

Each stage starts by reloading the deployment record from disk and skips the
work whose result is already recorded there. Keys that determine on-chain
addresses (treasury create key, asset mint key) are persisted, and their public
halves recorded, before the creating transaction is sent. A re-run after a
crash or a confirmation timeout therefore finds the same address and adopts
the account if it landed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from solders.keypair import Keypair

from treasury_deploy.config import DeployConfig, Network
from treasury_deploy.errors import (
    ConfigurationError,
    ConfirmationTimeoutError,
    InvariantViolationError,
    OnChainRejectionError,
    StageOrderError,
)
from treasury_deploy.funder import TreasuryFunder
from treasury_deploy.issuer import AssetIssuer
from treasury_deploy.ledger import LedgerClient, OnSent, SignatureState, SubmittedTransaction
from treasury_deploy.logging_utils import StageContext, short_address
from treasury_deploy.preconditions import PreconditionChecker
from treasury_deploy.provisioner import TreasuryProvisioner, validate_membership
from treasury_deploy.spl_asset import AssetProgram
from treasury_deploy.squads import TreasuryMetadata, TreasuryProgram
from treasury_deploy.state import DeploymentState, DeploymentStateStore, Stage, SubmissionStatus, utc_now_iso
from treasury_deploy.verification import SoakReport, VerificationReport, VerificationRunner
from treasury_deploy.wallet import WalletKey, WalletProvider, export_secret_b58

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Checkpoint:
    """State keys that track one transaction whose confirmation may be missed."""

    label: str
    signature_key: str
    valid_until_key: str
    status_key: str


FUNDING = Checkpoint("funding transfer", "lastFundingSignature", "lastFundingValidUntil", "fundingStatus")
SUPPLY_MINT = Checkpoint("supply mint", "lastMintSignature", "lastMintValidUntil", "mintStatus")
DISTRIBUTION = Checkpoint(
    "treasury distribution", "lastDistributionSignature", "lastDistributionValidUntil", "distributionStatus"
)

STAGE_ORDER = (
    Stage.PROVISIONED,
    Stage.MINT_CREATED,
    Stage.SUPPLY_MINTED,
    Stage.DISTRIBUTED,
    Stage.FUNDED,
)


@dataclass
class RunSummary:
    state: DeploymentState
    verification: Optional[VerificationReport] = None
    ran: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


class DeploymentPipeline:
    """
    Wires the components together around one deployment record.

    Usage:
        async with SolanaLedgerClient(config.rpc_url) as ledger:
            pipeline = DeploymentPipeline.for_ledger(config, ledger)
            await pipeline.provision()
    """

    def __init__(
        self,
        config: DeployConfig,
        ledger: LedgerClient,
        treasury_program: TreasuryProgram,
        asset_program: AssetProgram,
        store: Optional[DeploymentStateStore] = None,
        wallets: Optional[WalletProvider] = None,
    ):
        self.config = config
        self.ledger = ledger
        self.treasury_program = treasury_program
        self.asset_program = asset_program
        self.store = store or DeploymentStateStore(config.state_path)
        self.wallets = wallets or WalletProvider()

        self.preconditions = PreconditionChecker(ledger)
        self.provisioner = TreasuryProvisioner(
            treasury_program, self.preconditions, config.min_provision_lamports
        )
        self.issuer = AssetIssuer(asset_program, self.preconditions, config.min_issue_lamports)
        self.funder = TreasuryFunder(ledger, self.preconditions)
        self.verifier = VerificationRunner(ledger, treasury_program, asset_program, self.preconditions)

    @classmethod
    def for_ledger(cls, config: DeployConfig, ledger: LedgerClient) -> DeploymentPipeline:
        from treasury_deploy.spl_asset import SplAssetProgram
        from treasury_deploy.squads import SquadsTreasuryProgram

        return cls(config, ledger, SquadsTreasuryProgram(ledger), SplAssetProgram(ledger))

    # -- helpers ---------------------------------------------------------

    def _load(self) -> DeploymentState:
        state = self.store.load() or DeploymentState()
        if state.network and state.network != self.config.network.value:
            raise ConfigurationError(
                f"Deployment record belongs to {state.network}, configured network is "
                f"{self.config.network.value}"
            )
        return state

    def _require(self, state: DeploymentState, stage: Stage) -> None:
        if not state.is_complete(stage):
            raise StageOrderError(
                f"Stage '{stage.value}' has not completed yet; run the earlier stages first",
                {"completed": [s.value for s in state.completed_stages()]},
            )

    def _deployer(self, state: DeploymentState) -> WalletKey:
        wallet = self.wallets.load(self.config.wallet_path)
        if state.creator_address and wallet.public_address != state.creator_address:
            raise InvariantViolationError(
                f"Wallet {wallet.public_address} is not the recorded creator {state.creator_address}"
            )
        return wallet

    def _load_recorded_key(self, path: str, expected: str, what: str) -> WalletKey:
        key = self.wallets.load(path)
        if key.public_address != expected:
            raise InvariantViolationError(
                f"{what} at {path} is {key.public_address}, deployment record expects {expected}"
            )
        return key

    def _vault(self, state: DeploymentState) -> str:
        return state.vault_address or self.treasury_program.vault_address(state.treasury_address)

    def _deployment_id(self, state: DeploymentState) -> str:
        return state.treasury_address or state.treasury_create_key or "new"

    def _additional_members(self) -> List[str]:
        members = list(self.config.additional_members)
        missing = self.config.placeholder_member_count
        if missing <= 0:
            return members
        if self.config.network is Network.MAINNET:
            raise ConfigurationError(
                f"{missing} treasury member(s) missing; set TREASURY_MEMBERS on mainnet"
            )
        placeholders = [str(Keypair().pubkey()) for _ in range(missing)]
        logger.warning(
            f"Generated {missing} placeholder member(s) with discarded keys; "
            "rotate in real member wallets before holding real value"
        )
        return members + placeholders

    # -- stages ----------------------------------------------------------

    def ensure_wallet(self) -> WalletKey:
        with StageContext("wallet"):
            return self.wallets.load_or_create(self.config.wallet_path)

    async def provision(self) -> DeploymentState:
        state = self._load()
        with StageContext("provision", self._deployment_id(state)):
            if state.is_complete(Stage.PROVISIONED):
                logger.info(f"Treasury already provisioned at {short_address(state.treasury_address)}; skipping")
                return state

            creator = self._deployer(state)

            if state.treasury_create_key:
                create_key_path = state.treasury_create_key_path or str(self.config.create_key_path)
                create_key = self._load_recorded_key(create_key_path, state.treasury_create_key, "Create key")
                members = state.member_addresses or [creator.public_address, *self._additional_members()]
                logger.info("Resuming provisioning with the recorded create key and member list")
            else:
                create_key_path = str(self.config.create_key_path)
                create_key = self.wallets.load_or_create(create_key_path)
                members = [creator.public_address, *self._additional_members()]
            validate_membership(creator.public_address, self.config.threshold, members[1:])

            # Recorded before submission: these fix the treasury address and membership
            self.store.save(
                {
                    "treasuryCreateKey": create_key.public_address,
                    "treasuryCreateKeyPath": create_key_path,
                    "creatorAddress": creator.public_address,
                    "threshold": self.config.threshold,
                    "memberAddresses": members,
                    "treasuryName": self.config.treasury_name,
                    "network": self.config.network.value,
                }
            )

            metadata = TreasuryMetadata(
                name=self.config.treasury_name,
                description=self.config.treasury_description,
                image_url=self.config.treasury_image_url,
            )
            account = await self.provisioner.create_treasury(
                creator, self.config.threshold, members[1:], metadata, create_key=create_key
            )
            state = self.store.save(
                {
                    "treasuryAddress": account.address,
                    "vaultAddress": account.vault_address,
                    "threshold": account.threshold,
                    "memberAddresses": account.members,
                }
            )
            logger.info(
                f"Treasury {short_address(account.address)} recorded; export the create key with "
                "'treasury-deploy export-create-key' and store it in a secrets vault"
            )
            return state

    async def issue_asset(self) -> DeploymentState:
        state = self._load()
        self._require(state, Stage.PROVISIONED)
        with StageContext("issue", self._deployment_id(state)):
            authority = self._deployer(state)

            if not state.is_complete(Stage.MINT_CREATED):
                if state.asset_mint_key_path:
                    mint_key = self.wallets.load(state.asset_mint_key_path)
                else:
                    mint_key = self.wallets.load_or_create(self.config.mint_key_path)
                    state = self.store.save({"assetMintKeyPath": str(self.config.mint_key_path)})
                mint = await self.issuer.create_asset_mint(authority, self.config.asset_decimals, mint_key)
                state = self.store.save(
                    {
                        "assetMint": mint.address,
                        "assetDecimals": mint.decimals,
                        "assetName": self.config.asset_name,
                        "assetSymbol": self.config.asset_symbol,
                        "assetTotalSupply": self.config.asset_total_supply,
                    }
                )
            else:
                logger.info(f"Mint {short_address(state.asset_mint)} already created; skipping")

            if not state.is_complete(Stage.SUPPLY_MINTED):
                state = await self._mint_supply(state, authority)
            else:
                logger.info("Supply already minted; skipping")

            if not state.is_complete(Stage.DISTRIBUTED):
                state = await self._distribute_to_treasury(state, authority)
            else:
                logger.info(
                    f"Treasury allocation already distributed to {short_address(state.treasury_asset_account)}; skipping"
                )
            return state

    async def _mint_supply(self, state: DeploymentState, authority: WalletKey) -> DeploymentState:
        # Supply is read on-chain after reconciliation, so a landed mint is not repeated
        landed = await self._resolve_pending(state, SUPPLY_MINT)
        issued = await self._submit_checkpointed(
            SUPPLY_MINT,
            lambda on_sent: self.issuer.mint_supply(
                state.asset_mint, authority, self.config.asset_supply_base_units, on_sent=on_sent
            ),
        )
        update = {"holderAccount": issued.holder_account, "assetSupplyMinted": True}
        if landed:
            update[SUPPLY_MINT.status_key] = SubmissionStatus.CONFIRMED.value
        return self.store.save(update)

    async def _distribute_to_treasury(self, state: DeploymentState, authority: WalletKey) -> DeploymentState:
        target = self.config.asset_treasury_base_units
        vault = self._vault(state)
        account = self.asset_program.associated_account(state.asset_mint, vault, allow_off_curve=True)
        landed = await self._resolve_pending(state, DISTRIBUTION)

        current = await self.asset_program.get_token_balance(account) or 0
        if current < target:
            await self._submit_checkpointed(
                DISTRIBUTION,
                lambda on_sent: self.issuer.distribute(
                    state.asset_mint, authority, vault, target - current, True, on_sent=on_sent
                ),
            )
            current = await self.asset_program.get_token_balance(account) or 0
        else:
            logger.info(f"Treasury asset account already holds {current}; no transfer needed")

        update = {"treasuryAssetAccount": account, "treasuryAssetAmount": current}
        if landed:
            update[DISTRIBUTION.status_key] = SubmissionStatus.CONFIRMED.value
        return self.store.save(update)

    async def _resolve_pending(self, state: DeploymentState, checkpoint: Checkpoint) -> bool:
        """True if a pending transaction for ``checkpoint`` landed, False if none is pending or it never will."""
        record = state.to_dict()
        if record.get(checkpoint.status_key) != SubmissionStatus.PENDING.value:
            return False
        if not record.get(checkpoint.signature_key):
            return False
        return await self._reconcile(record, checkpoint)

    async def _reconcile(self, record: Dict[str, Any], checkpoint: Checkpoint) -> bool:
        """
        Resolve a transaction whose confirmation was never observed.

        Returns True if it landed, False if it can never land and a new one may
        be sent. Raises ConfirmationTimeoutError while the outcome is still open.
        """
        signature = record[checkpoint.signature_key]
        status = await self.ledger.signature_status(signature)

        if status.state is SignatureState.CONFIRMED:
            logger.info(f"Earlier {checkpoint.label} {signature[:16]}... landed; completing bookkeeping")
            return True

        if status.state is SignatureState.FAILED:
            logger.warning(f"Earlier {checkpoint.label} {signature[:16]}... failed on-chain: {status.error}")
            self.store.save({checkpoint.status_key: SubmissionStatus.FAILED.value})
            return False

        valid_until = record.get(checkpoint.valid_until_key)
        height = await self.ledger.get_block_height()
        if status.state is SignatureState.PROCESSING or valid_until is None or height <= valid_until:
            logger.warning(
                f"Earlier {checkpoint.label} {signature[:16]}... still unresolved "
                f"(block height {height}, valid until {valid_until})"
            )
            raise ConfirmationTimeoutError(signature, self.config.confirm_timeout_seconds, valid_until)

        logger.warning(
            f"Earlier {checkpoint.label} {signature[:16]}... expired unseen "
            f"(block height {height} > {valid_until}); it can no longer land"
        )
        self.store.save({checkpoint.status_key: SubmissionStatus.EXPIRED.value})
        return False

    async def _submit_checkpointed(
        self, checkpoint: Checkpoint, send: Callable[[OnSent], Awaitable[T]]
    ) -> T:
        """
        Run ``send`` with an ``on_sent`` hook that records the signature as pending.

        The record is written before confirmation is awaited, so a timeout or a
        crash leaves the signature behind for ``_reconcile``.
        """
        sent: List[SubmittedTransaction] = []

        def _record_pending(submitted: SubmittedTransaction) -> None:
            self.store.save(
                {
                    checkpoint.signature_key: submitted.signature,
                    checkpoint.valid_until_key: submitted.last_valid_block_height,
                    checkpoint.status_key: SubmissionStatus.PENDING.value,
                }
            )

        def _on_sent(submitted: SubmittedTransaction) -> None:
            sent.append(submitted)
            _record_pending(submitted)

        try:
            result = await send(_on_sent)
        except ConfirmationTimeoutError as e:
            if not sent:
                _record_pending(SubmittedTransaction(e.signature, e.last_valid_block_height or 0))
            raise
        except OnChainRejectionError:
            if sent:
                self.store.save({checkpoint.status_key: SubmissionStatus.FAILED.value})
            raise

        if sent:
            self.store.save({checkpoint.status_key: SubmissionStatus.CONFIRMED.value})
        return result

    def _record_funded(self, balance: int) -> DeploymentState:
        return self.store.save(
            {
                FUNDING.status_key: SubmissionStatus.CONFIRMED.value,
                "lastFundedAt": utc_now_iso(),
                "treasuryNativeBalance": balance,
            }
        )

    async def fund(self, force: bool = False) -> DeploymentState:
        """Send the configured native amount to the treasury vault.

        Runs after the asset stage. Skipped when already funded unless
        ``force`` is set.
        """
        state = self._load()
        self._require(state, Stage.DISTRIBUTED)
        with StageContext("fund", self._deployment_id(state)):
            vault = self._vault(state)
            pending = state.funding_status == SubmissionStatus.PENDING.value and state.last_funding_signature
            if pending:
                if await self._reconcile(state.to_dict(), FUNDING):
                    return self._record_funded(await self.ledger.get_balance(vault))
            elif state.is_complete(Stage.FUNDED) and not force:
                logger.info(f"Treasury already funded at {state.last_funded_at}; skipping")
                return state

            wallet = self._deployer(state)
            result = await self._submit_checkpointed(
                FUNDING,
                lambda on_sent: self.funder.transfer_native(
                    wallet, vault, self.config.funding_lamports, on_sent=on_sent
                ),
            )
            return self._record_funded(result.destination_balance)

    async def verify(self) -> VerificationReport:
        state = self._load()
        with StageContext("verify", self._deployment_id(state)):
            return await self.verifier.verify(state)

    async def soak(self, iterations: Optional[int] = None) -> SoakReport:
        state = self._load()
        with StageContext("soak", self._deployment_id(state)):
            return await self.verifier.soak_check(state, iterations or self.config.soak_iterations)

    def status(self) -> DeploymentState:
        return self._load()

    def export_create_key(self) -> str:
        """Base58 secret of the treasury create key, for an external secrets vault."""
        state = self._load()
        if not state.treasury_create_key:
            raise StageOrderError("No treasury create key recorded; run provisioning first")
        path = state.treasury_create_key_path or str(self.config.create_key_path)
        return export_secret_b58(self._load_recorded_key(path, state.treasury_create_key, "Create key"))

    async def run_all(self) -> RunSummary:
        """Run every stage not yet recorded as complete, then verify."""
        self.ensure_wallet()
        before = set(self._load().completed_stages())

        await self.provision()
        await self.issue_asset()
        await self.fund()
        report = await self.verify()

        state = self._load()
        after = set(state.completed_stages())
        return RunSummary(
            state=state,
            verification=report,
            ran=[s.value for s in STAGE_ORDER if s in after - before],
            skipped=[s.value for s in STAGE_ORDER if s in before],
        )
