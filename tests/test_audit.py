"""
Tests for carerelay.audit -- Append-Only, Hash-Chained Audit Log.

Covers: append + chain verification, tamper detection, query filtering,
export format, content redaction, and concurrent append ordering.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

from carerelay.audit import AuditEntry, AuditEventType, AuditLog, redact_content


def _make_entry(
    actor_id: str = "U-subject",
    actor_role: str = "SUBJECT",
    event_type: AuditEventType = AuditEventType.RELAY_CONFIRMED,
    target_entity: str = "U-caregiver",
    metadata: dict | None = None,
) -> AuditEntry:
    return AuditEntry(
        actor_id=actor_id,
        actor_role=actor_role,
        event_type=event_type,
        target_entity=target_entity,
        metadata=metadata or {},
    )


# ---------------------------------------------------------------------------
# 1. Append + chain verification
# ---------------------------------------------------------------------------

class TestAppendAndChainVerification:
    def test_append_single_entry(self):
        log = AuditLog()
        appended = log.append(_make_entry())
        assert appended.previous_hash == ""
        assert len(log) == 1

    def test_append_multiple_entries_builds_chain(self):
        log = AuditLog()
        e1 = log.append(_make_entry(actor_id="a1"))
        e2 = log.append(_make_entry(actor_id="a2"))
        e3 = log.append(_make_entry(actor_id="a3"))

        assert e1.previous_hash == ""
        assert e2.previous_hash == e1.compute_hash()
        assert e3.previous_hash == e2.compute_hash()

    def test_chain_verification_passes_for_valid_log(self):
        log = AuditLog()
        for i in range(5):
            log.append(_make_entry(actor_id=f"a{i}"))
        assert log.verify_chain() == (True, None)

    def test_empty_log_verifies(self):
        assert AuditLog().verify_chain() == (True, None)

    def test_record_builds_entry_with_metadata(self):
        log = AuditLog()
        entry = log.record(
            AuditEventType.RELAY_PROPOSED,
            actor_id="U-caregiver",
            actor_role="CAREGIVER",
            target_entity="U-caregiver:U-subject",
            version=1,
            text="Mother reports dizziness",
        )
        assert entry.event_type == AuditEventType.RELAY_PROPOSED
        assert entry.metadata == {"version": 1, "text": "Mother reports dizziness"}
        assert len(log) == 1


# ---------------------------------------------------------------------------
# 2. Tamper detection
# ---------------------------------------------------------------------------

class TestTamperDetection:
    def test_modified_entry_breaks_chain(self):
        log = AuditLog()
        log.append(_make_entry(actor_id="a1"))
        log.append(_make_entry(actor_id="a2"))
        log.append(_make_entry(actor_id="a3"))

        log._entries[1].metadata["text"] = "tampered"

        valid, broken_at = log.verify_chain()
        assert valid is False
        assert broken_at == 1

    def test_modified_first_entry_detected(self):
        log = AuditLog()
        log.append(_make_entry(actor_id="a1"))
        log.append(_make_entry(actor_id="a2"))

        log._entries[0].actor_id = "someone_else"

        valid, broken_at = log.verify_chain()
        assert valid is False
        assert broken_at == 0

    def test_export_reports_broken_chain(self):
        log = AuditLog()
        log.append(_make_entry())
        log.append(_make_entry())
        log._entries[1].target_entity = "elsewhere"

        export = log.export_for_review()
        assert export["export_metadata"]["chain_integrity"] == "BROKEN_AT_INDEX_1"


# ---------------------------------------------------------------------------
# 3. Query filtering
# ---------------------------------------------------------------------------

class TestQuery:
    def test_filter_by_event_type(self):
        log = AuditLog()
        log.append(_make_entry(event_type=AuditEventType.RELAY_PROPOSED))
        log.append(_make_entry(event_type=AuditEventType.RELAY_CONFIRMED))
        log.append(_make_entry(event_type=AuditEventType.RELAY_PROPOSED))

        results = log.query(event_type=AuditEventType.RELAY_PROPOSED)
        assert len(results) == 2

    def test_filter_by_actor(self):
        log = AuditLog()
        log.append(_make_entry(actor_id="U-subject"))
        log.append(_make_entry(actor_id="U-caregiver"))

        results = log.query(actor_id="U-caregiver")
        assert [e.actor_id for e in results] == ["U-caregiver"]

    def test_filter_by_time_range(self):
        log = AuditLog()
        now = datetime.now(timezone.utc)
        old = _make_entry()
        old.timestamp = now - timedelta(days=2)
        log.append(old)
        log.append(_make_entry())

        results = log.query(time_start=now - timedelta(hours=1))
        assert len(results) == 1

    def test_query_returns_copies(self):
        log = AuditLog()
        log.append(_make_entry(metadata={"version": 1}))

        log.query()[0].metadata["version"] = 99

        assert log.query()[0].metadata["version"] == 1
        assert log.verify_chain() == (True, None)


# ---------------------------------------------------------------------------
# 4. Export + redaction
# ---------------------------------------------------------------------------

class TestExport:
    def test_export_structure(self):
        log = AuditLog()
        log.append(_make_entry())
        export = log.export_for_review()

        meta = export["export_metadata"]
        assert meta["entry_count"] == 1
        assert meta["chain_integrity"] == "VALID"
        assert "exported_at" in meta
        assert export["entries"][0]["event_type"] == "RELAY_CONFIRMED"
        assert isinstance(export["entries"][0]["timestamp"], str)

    def test_export_redacts_relayed_text(self):
        log = AuditLog()
        log.append(_make_entry(metadata={"text": "Mother reports dizziness", "version": 2}))

        entry = log.export_for_review()["entries"][0]
        assert entry["metadata"]["text"] == "[REDACTED 24 chars]"
        assert entry["metadata"]["version"] == 2

    def test_export_does_not_alter_stored_entries(self):
        log = AuditLog()
        log.append(_make_entry(metadata={"text": "secret"}))
        log.export_for_review()
        assert log.query()[0].metadata["text"] == "secret"


class TestRedactContent:
    def test_nested_content_is_redacted(self):
        redacted = redact_content({"detail": {"previous_text": "abc", "count": 3}})
        assert redacted == {"detail": {"previous_text": "[REDACTED 3 chars]", "count": 3}}

    def test_non_content_keys_pass_through(self):
        metadata = {"fields": ["tone"], "version": 4}
        assert redact_content(metadata) == metadata


# ---------------------------------------------------------------------------
# 5. Concurrency
# ---------------------------------------------------------------------------

class TestConcurrentAppend:
    def test_concurrent_appends_form_single_chain(self):
        log = AuditLog()

        def worker(n: int) -> None:
            for i in range(20):
                log.append(_make_entry(actor_id=f"w{n}-{i}"))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(log) == 100
        assert log.verify_chain() == (True, None)
