from datetime import datetime, timedelta, timezone

import pytest

from timekeeper.core.errors import ConflictError
from timekeeper.database import SessionLocal
from timekeeper.models.time_entry import EntryStatus
from timekeeper.services import side_effects, time_engine

T0 = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


class ExplodingSink(side_effects.NotificationSink, side_effects.BroadcastSink, side_effects.StatsCache):
    def notify_users(self, *args, **kwargs):
        raise RuntimeError("smtp down")

    def broadcast_entry_change(self, *args, **kwargs):
        raise RuntimeError("socket closed")

    def invalidate_stats(self, *args, **kwargs):
        raise RuntimeError("cache unreachable")


@pytest.fixture
def worker(company_factory, user_factory, project_factory):
    company = company_factory()
    user = user_factory(company_id=company.id)
    user_factory(company_id=company.id, role="MANAGER", name="Manager")
    project = project_factory(company_id=company.id)
    return company, user, project


def test_effects_wait_for_the_callers_commit(worker, recording_sink):
    company, user, project = worker

    db = SessionLocal()
    try:
        time_engine.create_entry(company.id, user.id, "EMPLOYEE", user.id, project.id, now=T0, db=db)
        assert recording_sink.calls == []
        db.commit()
    finally:
        db.close()

    assert recording_sink.names() == ["broadcast_entry_change", "broadcast_stats_invalidate", "invalidate_stats"]


def test_effects_are_dropped_on_rollback(worker, recording_sink):
    company, user, project = worker

    db = SessionLocal()
    try:
        time_engine.create_entry(company.id, user.id, "EMPLOYEE", user.id, project.id, now=T0, db=db)
        db.rollback()
        db.commit()
    finally:
        db.close()

    assert recording_sink.calls == []


def test_failed_transition_emits_nothing(worker, recording_sink):
    company, user, project = worker
    time_engine.create_entry(company.id, user.id, "EMPLOYEE", user.id, project.id, now=T0)
    recording_sink.calls.clear()

    with pytest.raises(ConflictError):
        time_engine.create_entry(company.id, user.id, "EMPLOYEE", user.id, project.id, now=T0)
    assert recording_sink.calls == []


def test_stop_notifies_reviewers_other_than_the_owner(worker, recording_sink):
    company, user, project = worker
    entry = time_engine.create_entry(company.id, user.id, "EMPLOYEE", user.id, project.id, now=T0)
    time_engine.stop_entry(entry.id, company.id, user.id, "EMPLOYEE", now=T0 + timedelta(minutes=5))

    notified = [args for name, args in recording_sink.calls if name == "notify_users"]
    assert len(notified) == 1
    reviewer_ids, event_type = notified[0][0], notified[0][1]
    assert user.id not in reviewer_ids
    assert len(reviewer_ids) == 1
    assert event_type == "TIME_ENTRY_SUBMITTED"


def test_failing_sinks_never_fail_the_transition(worker, caplog):
    company, user, project = worker
    sink = ExplodingSink()
    side_effects.configure_side_effects(notifier=sink, broadcaster=sink, stats_cache=sink)

    entry = time_engine.create_entry(company.id, user.id, "EMPLOYEE", user.id, project.id, now=T0)
    with caplog.at_level("WARNING"):
        stopped = time_engine.stop_entry(entry.id, company.id, user.id, "EMPLOYEE", now=T0 + timedelta(minutes=5))

    assert stopped.status == EntryStatus.STOPPED
    assert "Side effect failed" in caplog.text
