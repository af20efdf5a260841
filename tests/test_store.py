#!/usr/bin/env python3
"""
Tests for the approval store and its JSON document layer.

Tests coverage of:
- Lazy registration on first status lookup
- Idempotent request registration
- Approve / reject transitions and timestamps
- Scan result recording and assessment lookup
- Corrupt and future-version documents
"""

import json
import threading

import pytest

from cordon.errors import AssessmentUnavailableError, PackageNotFoundError, StoreIOError
from cordon.models import (
    ApprovalStatus,
    PackageRecord,
    RiskSeverity,
    RiskType,
    ScanResults,
    SecurityRisk,
)
from cordon.storage import JsonDocument
from cordon.store import ApprovalStore

pytestmark = pytest.mark.core


@pytest.fixture
def store(quarantine_dir):
    return ApprovalStore(quarantine_dir)


def _read_db(store: ApprovalStore) -> dict:
    return json.loads(store.db_path.read_text())


def _results(name: str, score: int = 60) -> ScanResults:
    return ScanResults(
        package_name=name,
        scanned_at="2026-01-01T00:00:00+00:00",
        risks=[SecurityRisk(RiskType.SUSPICIOUS_SCRIPT, RiskSeverity.HIGH, "postinstall")],
        risk_score=score,
        scan_duration_ms=12,
    )


class TestGetStatus:
    """First-fetch registration through get_status."""

    def test_unseen_package_reports_blocked(self, store):
        assert store.get_status("lodash") == ApprovalStatus.BLOCKED

    def test_unseen_package_is_registered_pending(self, store):
        store.get_status("lodash")
        record = store.get("lodash")
        assert record is not None
        assert record.status == ApprovalStatus.PENDING
        assert record.risk_score == 0
        assert record.requested_at

    def test_second_lookup_reports_pending(self, store):
        store.get_status("lodash")
        assert store.get_status("lodash") == ApprovalStatus.PENDING

    def test_lookup_of_known_package_does_not_rewrite(self, store):
        store.get_status("lodash")
        mtime = store.db_path.stat().st_mtime_ns
        store.get_status("lodash")
        assert store.db_path.stat().st_mtime_ns == mtime

    def test_scoped_name_stored_verbatim(self, store):
        store.get_status("@scope/pkg")
        assert "@scope/pkg" in _read_db(store)["packages"]

    def test_missing_directory_is_created(self, tmp_path):
        store = ApprovalStore(tmp_path / "does" / "not" / "exist")
        assert store.get_status("a") == ApprovalStatus.BLOCKED
        assert store.db_path.exists()


class TestRegisterRequest:
    """Idempotent registration."""

    def test_creates_once(self, store):
        assert store.register_request("left-pad", requested_by="cli") is True
        assert store.register_request("left-pad", requested_by="cli") is False
        assert len(store.list_all()) == 1

    def test_keeps_original_record(self, store):
        store.register_request("left-pad")
        first = store.get("left-pad").requested_at
        store.register_request("left-pad")
        assert store.get("left-pad").requested_at == first

    def test_does_not_reset_approved(self, store):
        store.register_request("left-pad")
        store.approve("left-pad")
        store.register_request("left-pad")
        assert store.get("left-pad").status == ApprovalStatus.APPROVED

    def test_requested_by_persisted(self, store):
        store.register_request("left-pad", requested_by="autoscan")
        assert _read_db(store)["packages"]["left-pad"]["requestedBy"] == "autoscan"


class TestTransitions:
    """approve / reject."""

    def test_approve_sets_status_and_timestamp(self, store):
        store.register_request("express")
        record = store.approve("express")
        assert record.status == ApprovalStatus.APPROVED
        assert record.approved_at
        assert store.get_status("express") == ApprovalStatus.APPROVED

    def test_reject_sets_status_and_timestamp(self, store):
        store.register_request("express")
        record = store.reject("express")
        assert record.status == ApprovalStatus.REJECTED
        assert record.rejected_at
        assert "rejectedAt" in _read_db(store)["packages"]["express"]

    def test_reject_after_approve(self, store):
        store.register_request("express")
        store.approve("express")
        store.reject("express")
        record = store.get("express")
        assert record.status == ApprovalStatus.REJECTED
        assert record.approved_at and record.rejected_at

    def test_approve_unknown_raises(self, store):
        with pytest.raises(PackageNotFoundError):
            store.approve("ghost")

    def test_approve_unknown_leaves_store_unchanged(self, store):
        store.register_request("express")
        before = store.db_path.read_text()
        with pytest.raises(PackageNotFoundError):
            store.approve("ghost")
        assert store.db_path.read_text() == before
        assert store.get("ghost") is None

    def test_reject_unknown_raises(self, store):
        with pytest.raises(PackageNotFoundError):
            store.reject("ghost")

    def test_reject_if_pending(self, store):
        store.register_request("express")
        assert store.reject_if_pending("express") is True
        assert store.get("express").status == ApprovalStatus.REJECTED

    def test_reject_if_pending_keeps_approval(self, store):
        store.register_request("express")
        store.approve("express")
        before = store.db_path.read_text()
        assert store.reject_if_pending("express") is False
        assert store.db_path.read_text() == before
        assert store.get("express").status == ApprovalStatus.APPROVED


class TestScanRecording:
    """record_scan and get_assessment."""

    def test_record_scan_keeps_status(self, store):
        store.register_request("evil")
        store.record_scan("evil", _results("evil"))
        record = store.get("evil")
        assert record.status == ApprovalStatus.PENDING
        assert record.risk_score == 60
        assert record.scanned_at == "2026-01-01T00:00:00+00:00"

    def test_record_scan_unknown_raises(self, store):
        with pytest.raises(PackageNotFoundError):
            store.record_scan("ghost", _results("ghost"))

    def test_assessment_round_trip(self, store):
        store.register_request("evil")
        store.record_scan("evil", _results("evil"))
        assessment = store.get_assessment("evil")
        assert assessment["package"] == "evil"
        assert assessment["riskScore"] == 60
        assert assessment["scannedAt"] == "2026-01-01T00:00:00+00:00"
        risks = assessment["scanResults"]["risks"]
        assert risks[0]["type"] == "suspicious-script"
        assert risks[0]["severity"] == "high"

    def test_assessment_unknown_package(self, store):
        with pytest.raises(AssessmentUnavailableError):
            store.get_assessment("ghost")

    def test_assessment_before_scan(self, store):
        store.register_request("fresh")
        with pytest.raises(AssessmentUnavailableError):
            store.get_assessment("fresh")

    def test_score_clamped_on_record(self, store):
        store.register_request("evil")
        store.record_scan("evil", _results("evil", score=250))
        assert store.get("evil").risk_score == 100


class TestDocumentIntegrity:
    """Corrupt, foreign and concurrent access."""

    def test_non_utf8_document_raises(self, store):
        store.db_path.write_bytes(b"\xff\xfe garbage")
        with pytest.raises(StoreIOError):
            store.list_all()
        with pytest.raises(StoreIOError):
            store.get_status("a")

    def test_corrupt_document_raises(self, store):
        store.db_path.write_text("{not json")
        with pytest.raises(StoreIOError):
            store.get_status("a")

    def test_corrupt_document_is_not_overwritten(self, store):
        store.db_path.write_text("{not json")
        with pytest.raises(StoreIOError):
            store.register_request("a")
        assert store.db_path.read_text() == "{not json"

    def test_non_object_document_raises(self, store):
        store.db_path.write_text("[]")
        with pytest.raises(StoreIOError):
            store.list_all()

    def test_newer_schema_version_refused(self, store):
        store.db_path.write_text(json.dumps({"packages": {}, "version": 2}))
        with pytest.raises(StoreIOError):
            store.get_status("a")

    def test_version_written(self, store):
        store.register_request("a")
        assert _read_db(store)["version"] == ApprovalStore.SCHEMA_VERSION

    def test_concurrent_first_fetches_register_once(self, store):
        barrier = threading.Barrier(8)
        statuses = []

        def fetch():
            barrier.wait()
            statuses.append(store.get_status("racy"))

        threads = [threading.Thread(target=fetch) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert statuses.count(ApprovalStatus.BLOCKED) == 1
        assert statuses.count(ApprovalStatus.PENDING) == 7

    def test_concurrent_registrations_all_persist(self, store):
        names = [f"pkg-{i}" for i in range(20)]
        threads = [threading.Thread(target=store.register_request, args=(n,)) for n in names]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sorted(n for n, _ in store.list_all()) == sorted(names)


class TestJsonDocument:
    """Transaction semantics of the storage layer."""

    def test_missing_file_yields_default(self, tmp_path):
        doc = JsonDocument(tmp_path / "x.json", lambda: {"items": []})
        assert doc.load() == {"items": []}
        assert not (tmp_path / "x.json").exists()

    def test_clean_transaction_does_not_write(self, tmp_path):
        doc = JsonDocument(tmp_path / "x.json", dict)
        with doc.transaction() as txn:
            txn.data["a"] = 1
        assert not (tmp_path / "x.json").exists()

    def test_dirty_transaction_writes(self, tmp_path):
        doc = JsonDocument(tmp_path / "x.json", dict)
        with doc.transaction() as txn:
            txn.data["a"] = 1
            txn.mark_dirty()
        assert doc.load() == {"a": 1}

    def test_exception_discards_changes(self, tmp_path):
        doc = JsonDocument(tmp_path / "x.json", dict)
        with pytest.raises(RuntimeError):
            with doc.transaction() as txn:
                txn.data["a"] = 1
                txn.mark_dirty()
                raise RuntimeError("boom")
        assert doc.load() == {}

    def test_no_temp_files_left(self, tmp_path):
        doc = JsonDocument(tmp_path / "x.json", dict)
        with doc.transaction() as txn:
            txn.data["a"] = 1
            txn.mark_dirty()
        leftovers = [p.name for p in tmp_path.iterdir() if "_tmp_" in p.name]
        assert leftovers == []


class TestPackageRecord:
    """Persisted shape of a record."""

    def test_unset_optionals_omitted(self):
        record = PackageRecord(status=ApprovalStatus.PENDING, requested_at="t")
        assert record.to_dict() == {"status": "pending", "requestedAt": "t", "riskScore": 0}

    def test_from_dict_tolerates_missing_score(self):
        record = PackageRecord.from_dict({"status": "approved", "requestedAt": "t"})
        assert record.risk_score == 0
        assert record.status == ApprovalStatus.APPROVED
