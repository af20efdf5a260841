#!/usr/bin/env python3
"""
Tests for the quarantine gate.

Tests coverage of:
- Default-deny on first fetch and the blocked-attempt trail
- Decisions per approval state, including configurable policies
- Fail-open / fail-closed when the store is unavailable
- Request path parsing (scoped names, tarballs, admin bypass)
"""

from unittest.mock import MagicMock, patch

import pytest

from cordon.blocked_log import BlockedAttemptLog
from cordon.errors import StoreIOError
from cordon.gate import GatePolicy, QuarantineGate, artifact_package
from cordon.models import ApprovalStatus
from cordon.store import ApprovalStore

pytestmark = pytest.mark.core


@pytest.fixture
def store(quarantine_dir):
    return ApprovalStore(quarantine_dir)


@pytest.fixture
def blocked_log(quarantine_dir):
    return BlockedAttemptLog(quarantine_dir)


@pytest.fixture
def gate(store, blocked_log):
    return QuarantineGate(store, blocked_log)


class TestFirstFetch:

    def test_denied(self, gate):
        decision = gate.check("lodash", ip="10.1.1.1", user_agent="npm/10")
        assert decision.allowed is False
        assert decision.status == ApprovalStatus.BLOCKED
        assert decision.error == "Package not approved"
        assert "lodash" in decision.message

    def test_creates_exactly_one_record_and_attempt(self, gate, store, blocked_log):
        gate.check("lodash", ip="10.1.1.1", user_agent="npm/10")

        records = store.list_all()
        assert len(records) == 1
        assert records[0][0] == "lodash"
        assert records[0][1].status == ApprovalStatus.PENDING

        attempts = blocked_log.list()
        assert len(attempts) == 1
        assert attempts[0].package == "lodash"
        assert attempts[0].ip == "10.1.1.1"
        assert attempts[0].user_agent == "npm/10"

    def test_response_body(self, gate):
        body = gate.check("lodash").to_response()
        assert body == {
            "error": "Package not approved",
            "message": "Package lodash is pending approval. Contact your administrator.",
            "package": "lodash",
        }


class TestDecisions:

    def test_pending_denied_without_log(self, gate, store, blocked_log):
        store.register_request("lodash")
        decision = gate.check("lodash")
        assert decision.allowed is False
        assert decision.status == ApprovalStatus.PENDING
        assert decision.error == "Package under review"
        assert blocked_log.list() == []

    def test_pending_denial_logged_when_enabled(self, store, blocked_log):
        gate = QuarantineGate(store, blocked_log, GatePolicy(log_pending_denials=True))
        store.register_request("lodash")
        gate.check("lodash")
        assert [a.package for a in blocked_log.list()] == ["lodash"]

    def test_approved_allowed(self, gate, store, blocked_log):
        store.register_request("lodash")
        store.approve("lodash")
        decision = gate.check("lodash")
        assert decision.allowed is True
        assert decision.status == ApprovalStatus.APPROVED
        assert blocked_log.list() == []

    def test_rejected_denied_by_default(self, gate, store, blocked_log):
        store.register_request("lodash")
        store.reject("lodash")
        decision = gate.check("lodash")
        assert decision.allowed is False
        assert decision.error == "Package rejected"
        assert len(blocked_log.list()) == 1

    def test_rejected_allowed_when_policy_off(self, store, blocked_log):
        gate = QuarantineGate(store, blocked_log, GatePolicy(deny_rejected=False))
        store.register_request("lodash")
        store.reject("lodash")
        assert gate.check("lodash").allowed is True
        assert blocked_log.list() == []

    def test_repeated_fetch_does_not_duplicate_record(self, gate, store):
        for _ in range(3):
            gate.check("lodash")
        assert len(store.list_all()) == 1

    def test_disabled_gate_allows_without_touching_store(self, store, blocked_log):
        gate = QuarantineGate(store, blocked_log, enabled=False)
        assert gate.check("lodash").allowed is True
        assert store.list_all() == []


class TestStoreFailure:

    def test_fail_open(self, gate, store, blocked_log):
        store.db_path.write_text("{corrupt")
        decision = gate.check("lodash")
        assert decision.allowed is True
        assert decision.failed_open is True
        assert blocked_log.list() == []

    def test_fail_closed(self, store, blocked_log):
        gate = QuarantineGate(store, blocked_log, GatePolicy(fail_open_on_store_error=False))
        store.db_path.write_text("{corrupt")
        decision = gate.check("lodash")
        assert decision.allowed is False
        assert decision.error == "Package status unavailable"

    def test_any_exception_fails_open(self, blocked_log):
        store = MagicMock()
        store.get_status.side_effect = RuntimeError("disk on fire")
        gate = QuarantineGate(store, blocked_log)
        assert gate.check("lodash").allowed is True

    def test_log_failure_does_not_change_decision(self, gate, blocked_log):
        with patch.object(blocked_log, "record", side_effect=StoreIOError("full")):
            decision = gate.check("lodash")
        assert decision.allowed is False
        assert decision.error == "Package not approved"


class TestIntercept:

    def test_tarball_fetch_gated(self, gate, store):
        decision = gate.intercept("GET", "/lodash/-/lodash-4.17.21.tgz", ip="1.2.3.4")
        assert decision is not None
        assert decision.allowed is False
        assert store.get("lodash") is not None

    def test_non_artifact_request_passes(self, gate, store):
        assert gate.intercept("GET", "/-/v1/search?text=x") is None
        assert gate.intercept("PUT", "/lodash") is None
        assert store.list_all() == []


class TestArtifactPackage:

    @pytest.mark.parametrize("method,path,expected", [
        ("GET", "/lodash", "lodash"),
        ("GET", "/lodash/4.17.21", "lodash"),
        ("GET", "/lodash/-/lodash-4.17.21.tgz", "lodash"),
        ("GET", "/@scope/pkg", "@scope/pkg"),
        ("GET", "/@scope%2fpkg", "@scope/pkg"),
        ("GET", "/@scope%2Fpkg/-/pkg-1.0.0.tgz", "@scope/pkg"),
        ("GET", "/@scope/pkg/-/pkg-1.0.0.tgz", "@scope/pkg"),
        ("GET", "/lodash?write=true", "lodash"),
        ("get", "/lodash", "lodash"),
        ("GET", "/-/quarantine/requests", None),
        ("GET", "/-/ping", None),
        ("GET", "/", None),
        ("GET", "/@scope", None),
        ("POST", "/lodash", None),
        ("HEAD", "/lodash", None),
    ])
    def test_parse(self, method, path, expected):
        assert artifact_package(method, path) == expected


class TestGatePolicy:

    def test_from_config(self, config):
        cfg = config.model_copy(update={"deny_rejected": False, "log_pending_denials": True})
        policy = GatePolicy.from_config(cfg)
        assert policy == GatePolicy(
            deny_rejected=False, log_pending_denials=True, fail_open_on_store_error=True
        )
