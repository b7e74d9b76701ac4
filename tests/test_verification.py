"""Tests for VerificationRunner.verify and soak_check."""

import dataclasses

import pytest

from fakes import new_address
from treasury_deploy.squads import ProposalInfo, ProposalStatus
from treasury_deploy.verification import LatencyStats, VerificationRunner


@pytest.fixture
def runner(ledger, treasury_program, asset_program, preconditions):
    return VerificationRunner(ledger, treasury_program, asset_program, preconditions)


async def _deploy(pipeline, deployer):
    await pipeline.provision()
    await pipeline.issue_asset()
    await pipeline.fund()
    return pipeline.status()


def _checks(report):
    return {c.name: c for c in report.checks}


class TestVerify:
    @pytest.mark.asyncio
    async def test_complete_deployment_passes(self, runner, pipeline, deployer):
        state = await _deploy(pipeline, deployer)

        report = await runner.verify(state)

        assert report.passed, report.failures
        assert set(_checks(report)) == {
            "treasury_exists",
            "threshold_matches",
            "members_match",
            "creator_is_member",
            "treasury_native_balance",
            "treasury_asset_balance",
            "pending_proposals",
        }
        assert report.pending_proposals == 0
        assert report.transaction_index == 0

    @pytest.mark.asyncio
    async def test_missing_treasury_fails(self, runner, pipeline):
        report = await runner.verify(pipeline.status())
        assert not report.passed
        assert _checks(report)["treasury_exists"].passed is False

    @pytest.mark.asyncio
    async def test_unfunded_vault_fails_without_raising(self, runner, pipeline, deployer, preconditions):
        state = await pipeline.provision()

        report = await runner.verify(state)

        checks = _checks(report)
        assert checks["treasury_native_balance"].passed is False
        assert "treasury_asset_balance" not in checks
        assert preconditions.advisories[-1].satisfied is False

    @pytest.mark.asyncio
    async def test_member_mismatch_detected(self, runner, pipeline, deployer, chain):
        state = await _deploy(pipeline, deployer)
        account = chain.multisigs[state.treasury_address]
        chain.multisigs[state.treasury_address] = dataclasses.replace(
            account, members=account.members[:-1] + [new_address()]
        )

        checks = _checks(await runner.verify(state))
        assert checks["members_match"].passed is False
        assert checks["threshold_matches"].passed is True

    @pytest.mark.asyncio
    async def test_pending_proposals_are_informational(self, runner, pipeline, deployer, chain):
        state = await _deploy(pipeline, deployer)
        chain.proposals[state.treasury_address] = [
            ProposalInfo("tx1", 1, ProposalStatus.ACTIVE, deployer.public_address),
            ProposalInfo("tx2", 2, ProposalStatus.EXECUTED, deployer.public_address),
        ]

        report = await runner.verify(state)

        assert report.pending_proposals == 1
        assert _checks(report)["pending_proposals"].informational
        assert report.passed

    @pytest.mark.asyncio
    async def test_verify_does_not_mutate(self, runner, pipeline, deployer, chain, ledger):
        state = await _deploy(pipeline, deployer)
        balances = dict(chain.balances)
        submissions = len(ledger.submissions)

        await runner.verify(state)

        assert chain.balances == balances
        assert len(ledger.submissions) == submissions


class TestSoak:
    @pytest.mark.asyncio
    async def test_collects_stats_per_operation(self, runner, pipeline, deployer):
        state = await _deploy(pipeline, deployer)

        report = await runner.soak_check(state, 5)

        assert set(report.operations) == {"get_slot", "balances", "token_balances"}
        assert all(stats.count == 5 for stats in report.operations.values())
        assert report.success_rate == 1.0
        assert report.passed

    @pytest.mark.asyncio
    async def test_failed_reads_are_counted(self, runner, pipeline, deployer, chain):
        state = await pipeline.provision()
        chain.fail_reads = 1

        report = await runner.soak_check(state, 3)

        assert report.attempts == 6
        assert report.successes == 5
        assert not report.passed
        assert len(report.errors) == 1

    @pytest.mark.asyncio
    async def test_iterations_must_be_positive(self, runner, pipeline):
        with pytest.raises(ValueError):
            await runner.soak_check(pipeline.status(), 0)


class TestLatencyStats:
    def test_from_samples(self):
        stats = LatencyStats.from_samples([float(i) for i in range(1, 101)])
        assert stats.count == 100
        assert stats.min_ms == 1.0
        assert stats.max_ms == 100.0
        assert stats.mean_ms == pytest.approx(50.5)
        assert 94.0 <= stats.p95_ms <= 96.0

    def test_single_sample(self):
        stats = LatencyStats.from_samples([3.0])
        assert stats.p95_ms == 3.0

    def test_empty(self):
        assert LatencyStats.from_samples([]).count == 0
