"""
Tests for the deployment record store.

Covers:
    - Scenario: separate saves accumulate (treasuryAddress then assetMint)
    - Idempotent merge
    - Monotonic accumulation, None never deletes
    - Identity fields are immutable
    - Atomic rewrite and malformed-file handling
    - Completed stage markers
"""

import json
import os

import pytest

from treasury_deploy.errors import InvariantViolationError, MalformedStateError, PersistenceError
from treasury_deploy.state import DeploymentState, DeploymentStateStore, Stage, merge_record


# ─── Load / save ─────────────────────────────────────────────────────────────

class TestLoadSave:
    def test_load_missing_returns_none(self, store):
        assert store.load() is None

    def test_saves_accumulate(self, store):
        store.save({"treasuryAddress": "A"})
        store.save({"assetMint": "B"})

        state = store.load()
        assert state.treasury_address == "A"
        assert state.asset_mint == "B"

    def test_save_creates_parent_directory(self, tmp_path):
        store = DeploymentStateStore(tmp_path / "nested" / "dir" / "state.json")
        store.save({"network": "devnet"})
        assert store.load().network == "devnet"

    def test_file_is_plain_json_with_camel_case_keys(self, store):
        store.save({"treasuryAddress": "A", "memberAddresses": ["c", "m"], "creatorAddress": "c", "threshold": 2})
        data = json.loads(store.path.read_text(encoding="utf-8"))
        assert data["treasuryAddress"] == "A"
        assert data["memberAddresses"] == ["c", "m"]
        assert "timestamp" in data

    def test_unknown_keys_are_preserved(self, store):
        store.path.write_text(json.dumps({"treasuryAddress": "A", "operatorNote": "hi"}), encoding="utf-8")
        store.save({"assetMint": "B"})

        data = json.loads(store.path.read_text(encoding="utf-8"))
        assert data["operatorNote"] == "hi"
        assert store.load().extras == {"operatorNote": "hi"}


# ─── Merge semantics ─────────────────────────────────────────────────────────

class TestMerge:
    def test_idempotent_merge(self, store):
        update = {"treasuryAddress": "A", "threshold": 1, "memberAddresses": ["c"], "creatorAddress": "c"}
        store.save(update)
        once = store.path.read_text(encoding="utf-8")
        store.save(update)
        twice = store.path.read_text(encoding="utf-8")
        assert once == twice

    def test_none_does_not_delete(self, store):
        store.save({"treasuryAddress": "A", "assetMint": "B"})
        state = store.save({"assetMint": None, "holderAccount": "H"})
        assert state.asset_mint == "B"
        assert state.holder_account == "H"

    def test_fields_accumulate_across_steps(self, store):
        steps = [
            {"treasuryAddress": "A", "creatorAddress": "c", "memberAddresses": ["c", "m"], "threshold": 2},
            {"assetMint": "M", "assetDecimals": 9},
            {"treasuryAssetAccount": "T", "treasuryAssetAmount": 5},
            {"treasuryNativeBalance": 10, "lastFundedAt": "2026-01-01T00:00:00+00:00"},
        ]
        seen = {}
        for update in steps:
            store.save(update)
            seen.update(update)
            data = store.load().to_dict()
            for key, value in seen.items():
                assert data[key] == value

    def test_mutable_field_can_be_updated(self, store):
        store.save({"treasuryNativeBalance": 10})
        assert store.save({"treasuryNativeBalance": 20}).treasury_native_balance == 20

    def test_treasury_address_is_immutable(self, store):
        store.save({"treasuryAddress": "A"})
        with pytest.raises(InvariantViolationError):
            store.save({"treasuryAddress": "Z"})
        assert store.load().treasury_address == "A"

    def test_same_treasury_address_is_accepted(self, store):
        store.save({"treasuryAddress": "A"})
        assert store.save({"treasuryAddress": "A"}).treasury_address == "A"

    def test_timestamp_only_changes_with_content(self):
        existing = {"treasuryAddress": "A", "timestamp": "t0"}
        assert merge_record(existing, {"treasuryAddress": "A"})["timestamp"] == "t0"
        assert merge_record(existing, {"assetMint": "B"})["timestamp"] != "t0"

    def test_membership_invariants_enforced(self, store):
        with pytest.raises(InvariantViolationError):
            store.save({"creatorAddress": "c", "memberAddresses": ["x", "y"], "threshold": 1})
        with pytest.raises(InvariantViolationError):
            store.save({"creatorAddress": "c", "memberAddresses": ["c"], "threshold": 2})
        assert store.load() is None


# ─── Durability ─────────────────────────────────────────────────────────────

class TestDurability:
    def test_malformed_json_raises(self, store):
        store.path.write_text("{not json", encoding="utf-8")
        with pytest.raises(MalformedStateError):
            store.load()

    def test_non_object_raises(self, store):
        store.path.write_text("[1, 2]", encoding="utf-8")
        with pytest.raises(MalformedStateError):
            store.load()

    def test_wrong_field_type_raises(self, store):
        store.path.write_text(json.dumps({"threshold": "three"}), encoding="utf-8")
        with pytest.raises(MalformedStateError):
            store.load()

    def test_failed_write_keeps_previous_record(self, store, monkeypatch):
        store.save({"treasuryAddress": "A"})
        before = store.path.read_text(encoding="utf-8")

        def _fail_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", _fail_replace)
        with pytest.raises(PersistenceError):
            store.save({"assetMint": "B"})
        monkeypatch.undo()

        assert store.path.read_text(encoding="utf-8") == before
        leftovers = [p.name for p in store.path.parent.iterdir() if p.name.endswith(".tmp")]
        assert leftovers == []


# ─── Stage markers ──────────────────────────────────────────────────────────

class TestStages:
    def test_empty_state_has_no_stages(self):
        assert DeploymentState().completed_stages() == []

    def test_stages_follow_fields(self):
        state = DeploymentState.from_dict(
            {"treasuryAddress": "A", "assetMint": "M", "assetSupplyMinted": True}
        )
        assert state.completed_stages() == [Stage.PROVISIONED, Stage.MINT_CREATED, Stage.SUPPLY_MINTED]
        assert not state.is_complete(Stage.FUNDED)

    def test_round_trip_preserves_fields(self):
        data = {"treasuryAddress": "A", "assetDecimals": 9, "memberAddresses": ["a"], "creatorAddress": "a", "threshold": 1}
        assert DeploymentState.from_dict(data).to_dict() == data
