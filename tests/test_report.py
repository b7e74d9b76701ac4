"""Tests for the human-readable renderers."""

import pytest

from treasury_deploy import report
from treasury_deploy.config import Network
from treasury_deploy.verification import CheckResult, VerificationReport


class TestFormatting:
    @pytest.mark.parametrize(
        "lamports,expected",
        [(None, "-"), (0, "0.0000 SOL"), (1_500_000_000, "1.5000 SOL")],
    )
    def test_format_sol(self, lamports, expected):
        assert report.format_sol(lamports) == expected

    def test_format_asset(self):
        assert report.format_asset(500_000 * 10 ** 9, 9, "tKIRA") == "500,000.0000 tKIRA"
        assert report.format_asset(42, 0) == "42"
        assert report.format_asset(None, 9) == "-"

    def test_explorer_links(self):
        assert report.solscan_account_url("abc", Network.MAINNET) == "https://solscan.io/account/abc"
        assert report.solscan_token_url("abc", Network.DEVNET).endswith("?cluster=devnet")
        assert report.squads_url("abc", Network.DEVNET) == "https://devnet.squads.so/multisig/abc"
        assert report.squads_url("abc", Network.MAINNET) is None


class TestRenderers:
    @pytest.mark.asyncio
    async def test_state_after_full_run(self, pipeline, deployer):
        summary = await pipeline.run_all()
        lines = report.render_run(summary)
        text = "\n".join(lines)

        assert "Completed now:" in text
        assert "[x] funded" in text
        assert f"{deployer.public_address} (creator)" in text
        assert "Verification passed" in text

    def test_failed_verification_counts_failures(self):
        result = VerificationReport(
            checks=[
                CheckResult("treasury_exists", True, "ok"),
                CheckResult("threshold_matches", False, "2 != 3"),
                CheckResult("pending_proposals", True, "0 pending", informational=True),
            ]
        )
        lines = report.render_verification(result)
        assert lines[0] == "[PASS] treasury_exists: ok"
        assert "[FAIL] threshold_matches: 2 != 3" in lines
        assert "[INFO] pending_proposals: 0 pending" in lines
        assert lines[-1] == "Verification FAILED (1 check(s))"
