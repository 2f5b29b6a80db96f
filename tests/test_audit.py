from datetime import timedelta, timezone

import pytest

from conftest import BASE_TIME
from ocloud_rollback_audit import AuditLog
from ocloud_rollback_errors import AuditLogError
from ocloud_rollback_models import RollbackEvent, RollbackOutcome, TriggeredBy


def event(minutes, lineage="ocloud/ocloud-app", outcome=RollbackOutcome.SUCCEEDED, **kwargs):
    return RollbackEvent(
        lineage=lineage,
        from_revision=kwargs.pop("from_revision", 5),
        to_revision=kwargs.pop("to_revision", 4),
        triggered_by=kwargs.pop("triggered_by", TriggeredBy.AUTOMATED),
        outcome=outcome,
        timestamp=BASE_TIME + timedelta(minutes=minutes),
        **kwargs,
    )


def test_query_returns_events_in_time_order(audit):
    for minutes in (30, 10, 20):
        audit.append(event(minutes))

    times = [e.timestamp for e in audit.query()]

    assert times == sorted(times)
    assert times[0] == BASE_TIME + timedelta(minutes=10)


def test_same_timestamp_keeps_append_order(audit):
    first = event(0, outcome=RollbackOutcome.INITIATED)
    second = event(0, outcome=RollbackOutcome.SUCCEEDED)
    audit.append(first)
    audit.append(second)

    assert [e.event_id for e in audit.query()] == [first.event_id, second.event_id]


def test_query_range_is_half_open(audit):
    for minutes in (0, 10, 20, 30):
        audit.append(event(minutes))

    found = list(audit.query(BASE_TIME + timedelta(minutes=10), BASE_TIME + timedelta(minutes=30)))

    assert [e.timestamp for e in found] == [
        BASE_TIME + timedelta(minutes=10),
        BASE_TIME + timedelta(minutes=20),
    ]


def test_query_filters_by_lineage(audit):
    audit.append(event(0, lineage="ocloud/app-a"))
    audit.append(event(1, lineage="ocloud/app-b"))

    assert [e.lineage for e in audit.query(lineage="ocloud/app-b")] == ["ocloud/app-b"]


def test_query_is_restartable(audit):
    for minutes in range(5):
        audit.append(event(minutes))

    query = audit.query()

    assert len(list(query)) == 5
    assert len(list(query)) == 5


def test_query_iterates_past_one_batch(audit):
    for minutes in range(300):
        audit.append(event(minutes))

    assert len(list(audit.query())) == 300


def test_round_trip_preserves_fields(audit):
    original = event(5, triggered_by=TriggeredBy.MANUAL, outcome=RollbackOutcome.FAILED,
                     reason="rollback-rejected", from_revision=7, to_revision=3)
    audit.append(original)

    (stored,) = list(audit.query())

    assert stored == original
    assert stored.timestamp.tzinfo == timezone.utc


def test_events_survive_reopen(tmp_path):
    path = str(tmp_path / "audit.duckdb")
    log = AuditLog(path)
    log.append(event(0))
    log.close()

    reopened = AuditLog(path)
    try:
        assert len(list(reopened.query())) == 1
        reopened.append(event(1))
        assert len(list(reopened.query())) == 2
    finally:
        reopened.close()


def test_duplicate_event_id_is_an_error(audit):
    original = event(0)
    audit.append(original)

    with pytest.raises(AuditLogError):
        audit.append(original)


def test_append_after_close_is_an_error():
    log = AuditLog(":memory:")
    log.close()

    with pytest.raises(AuditLogError):
        log.append(event(0))
