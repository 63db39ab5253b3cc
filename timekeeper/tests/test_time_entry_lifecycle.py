from datetime import datetime, timedelta, timezone

import pytest

from timekeeper.core.errors import ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from timekeeper.database import SessionLocal
from timekeeper.models.activity import Activity
from timekeeper.models.time_entry import ApprovalStatus, EntryStatus, TimeEntry
from timekeeper.services import time_engine
from timekeeper.services.duration import as_utc

T0 = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


def _reload(entry_id: str) -> TimeEntry:
    db = SessionLocal()
    try:
        return db.get(TimeEntry, entry_id)
    finally:
        db.close()


def _activity_types(entry_id: str) -> list:
    db = SessionLocal()
    try:
        rows = (
            db.query(Activity.type)
            .filter(Activity.time_entry_id == entry_id)
            .order_by(Activity.id.asc())
            .all()
        )
        return [r[0] for r in rows]
    finally:
        db.close()


def _set_approval(entry_id: str, approval_status: str) -> None:
    db = SessionLocal()
    try:
        db.get(TimeEntry, entry_id).approval_status = approval_status
        db.commit()
    finally:
        db.close()


@pytest.fixture
def tenant(company_factory, user_factory, project_factory):
    company = company_factory()
    employee = user_factory(company_id=company.id)
    admin = user_factory(company_id=company.id, role="ADMIN", name="Admin")
    project = project_factory(company_id=company.id)
    return company, employee, admin, project


def _start(tenant, at=T0):
    company, employee, _, project = tenant
    return time_engine.create_entry(
        company.id, employee.id, "EMPLOYEE", employee.id, project.id, start_time=at, now=at
    )


def test_pause_resume_stop_accumulates_only_worked_time(tenant):
    company, employee, _, _ = tenant
    entry = _start(tenant)
    assert entry.status == EntryStatus.RUNNING
    assert entry.duration == 0
    assert entry.approval_status == ApprovalStatus.PENDING

    paused = time_engine.pause_entry(entry.id, company.id, employee.id, "EMPLOYEE", now=T0 + timedelta(seconds=300))
    assert paused.status == EntryStatus.PAUSED
    assert paused.duration == 300
    assert paused.end_time is None

    resumed = time_engine.resume_entry(entry.id, company.id, employee.id, "EMPLOYEE", now=T0 + timedelta(seconds=400))
    assert resumed.status == EntryStatus.RUNNING
    assert as_utc(resumed.start_time) == T0 + timedelta(seconds=400)

    stopped = time_engine.stop_entry(entry.id, company.id, employee.id, "EMPLOYEE", now=T0 + timedelta(seconds=700))
    assert stopped.status == EntryStatus.STOPPED
    assert stopped.duration == 600

    row = _reload(entry.id)
    assert row.duration == 600
    assert as_utc(row.end_time) == T0 + timedelta(seconds=700)
    assert row.approval_status == ApprovalStatus.PENDING
    assert _activity_types(entry.id) == ["START", "PAUSE", "RESUME", "STOP"]


def test_stopping_a_paused_entry_keeps_the_frozen_duration(tenant):
    company, employee, _, _ = tenant
    entry = _start(tenant)
    time_engine.pause_entry(entry.id, company.id, employee.id, "EMPLOYEE", now=T0 + timedelta(seconds=90))

    stopped = time_engine.stop_entry(entry.id, company.id, employee.id, "EMPLOYEE", now=T0 + timedelta(hours=3))
    assert stopped.duration == 90


def test_invalid_transitions(tenant):
    company, employee, _, _ = tenant
    entry = _start(tenant)

    with pytest.raises(InvalidStateError):
        time_engine.resume_entry(entry.id, company.id, employee.id, "EMPLOYEE", now=T0 + timedelta(seconds=5))

    time_engine.stop_entry(entry.id, company.id, employee.id, "EMPLOYEE", now=T0 + timedelta(seconds=10))

    with pytest.raises(InvalidStateError):
        time_engine.stop_entry(entry.id, company.id, employee.id, "EMPLOYEE", now=T0 + timedelta(seconds=20))
    with pytest.raises(InvalidStateError):
        time_engine.pause_entry(entry.id, company.id, employee.id, "EMPLOYEE", now=T0 + timedelta(seconds=20))

    assert _reload(entry.id).duration == 10


def test_create_validation(tenant, project_factory, user_factory):
    company, employee, admin, project = tenant

    with pytest.raises(ValidationError):
        time_engine.create_entry(company.id, employee.id, "EMPLOYEE", employee.id, None, now=T0)

    with pytest.raises(ValidationError):
        time_engine.create_entry(
            company.id, employee.id, "EMPLOYEE", employee.id, project.id,
            start_time=T0 + timedelta(hours=1, seconds=1), now=T0,
        )

    archived = project_factory(company_id=company.id, name="Old", is_archived=True)
    with pytest.raises(ValidationError):
        time_engine.create_entry(company.id, employee.id, "EMPLOYEE", employee.id, archived.id, now=T0)

    with pytest.raises(NotFoundError):
        time_engine.create_entry(company.id, employee.id, "EMPLOYEE", employee.id, 987654, now=T0)

    with pytest.raises(ForbiddenError):
        time_engine.create_entry(company.id, employee.id, "EMPLOYEE", admin.id, project.id, now=T0)

    inactive = user_factory(company_id=company.id, is_active=False)
    with pytest.raises(ValidationError):
        time_engine.create_entry(company.id, admin.id, "ADMIN", inactive.id, project.id, now=T0)

    # Up to one hour ahead is tolerated.
    entry = time_engine.create_entry(
        company.id, employee.id, "EMPLOYEE", employee.id, project.id,
        start_time=T0 + timedelta(minutes=59), now=T0,
    )
    assert entry.status == EntryStatus.RUNNING


def test_privileged_actor_may_create_without_project_for_others(tenant):
    company, employee, admin, _ = tenant
    entry = time_engine.create_entry(company.id, admin.id, "ADMIN", employee.id, None, now=T0)
    assert entry.user_id == employee.id
    assert entry.project_id is None


def test_deactivated_admin_cannot_create_for_others(tenant, user_factory):
    company, employee, _, project = tenant
    retired = user_factory(company_id=company.id, role="ADMIN", name="Retired", is_active=False)
    with pytest.raises(ValidationError):
        time_engine.create_entry(company.id, retired.id, "ADMIN", employee.id, project.id, now=T0)

    with pytest.raises(NotFoundError):
        time_engine.create_entry(company.id, 987654, "ADMIN", employee.id, project.id, now=T0)


def test_stopping_before_a_future_start_keeps_end_after_start(tenant):
    company, employee, _, project = tenant
    entry = time_engine.create_entry(
        company.id, employee.id, "EMPLOYEE", employee.id, project.id,
        start_time=T0 + timedelta(minutes=30), now=T0,
    )

    stopped = time_engine.stop_entry(entry.id, company.id, employee.id, "EMPLOYEE", now=T0 + timedelta(minutes=1))
    assert stopped.duration == 0
    assert as_utc(stopped.end_time) > as_utc(stopped.start_time)

    updated = time_engine.update_entry(
        entry.id, {"description": "fix typo"}, company.id, employee.id, "EMPLOYEE", now=T0 + timedelta(minutes=2)
    )
    assert updated.description == "fix typo"


def test_ownership_and_company_scope(tenant, company_factory, user_factory):
    company, employee, admin, _ = tenant
    colleague = user_factory(company_id=company.id, name="Colleague")
    entry = _start(tenant)

    with pytest.raises(ForbiddenError):
        time_engine.pause_entry(entry.id, company.id, colleague.id, "EMPLOYEE", now=T0 + timedelta(seconds=5))

    other = company_factory(name="Other")
    outsider = user_factory(company_id=other.id, role="ADMIN")
    with pytest.raises(NotFoundError):
        time_engine.stop_entry(entry.id, other.id, outsider.id, "ADMIN", now=T0 + timedelta(seconds=5))

    stopped = time_engine.stop_entry(entry.id, company.id, admin.id, "ADMIN", now=T0 + timedelta(seconds=30))
    assert stopped.duration == 30


def test_update_stops_running_entry_with_explicit_end(tenant):
    company, employee, _, _ = tenant
    entry = _start(tenant)

    updated = time_engine.update_entry(
        entry.id,
        {"status": "STOPPED", "end_time": T0 + timedelta(seconds=900)},
        company.id, employee.id, "EMPLOYEE",
        now=T0 + timedelta(seconds=1000),
    )
    assert updated.status == EntryStatus.STOPPED
    assert updated.duration == 900
    assert as_utc(updated.end_time) == T0 + timedelta(seconds=900)
    assert _activity_types(entry.id) == ["START", "STOP"]


def test_update_range_of_stopped_entry_recomputes_duration(tenant):
    company, employee, _, _ = tenant
    entry = _start(tenant)
    time_engine.stop_entry(entry.id, company.id, employee.id, "EMPLOYEE", now=T0 + timedelta(seconds=600))

    updated = time_engine.update_entry(
        entry.id, {"start_time": T0 + timedelta(seconds=120)},
        company.id, employee.id, "EMPLOYEE", now=T0 + timedelta(seconds=1000),
    )
    assert updated.duration == 480

    with pytest.raises(ValidationError):
        time_engine.update_entry(
            entry.id, {"end_time": T0},
            company.id, employee.id, "EMPLOYEE", now=T0 + timedelta(seconds=1000),
        )

    with pytest.raises(ValidationError):
        time_engine.update_entry(
            entry.id, {"duration": -5},
            company.id, employee.id, "EMPLOYEE", now=T0 + timedelta(seconds=1000),
        )


def test_reopening_a_stopped_entry_clears_end_time(tenant):
    company, employee, _, _ = tenant
    entry = _start(tenant)
    time_engine.stop_entry(entry.id, company.id, employee.id, "EMPLOYEE", now=T0 + timedelta(seconds=60))

    reopened = time_engine.update_entry(
        entry.id, {"status": "RUNNING"},
        company.id, employee.id, "EMPLOYEE", now=T0 + timedelta(seconds=100),
    )
    assert reopened.status == EntryStatus.RUNNING
    assert reopened.end_time is None
    assert as_utc(reopened.start_time) == T0 + timedelta(seconds=100)
    assert reopened.duration == 60


def test_reviewed_entry_timing_is_locked(tenant):
    company, employee, _, _ = tenant
    entry = _start(tenant)
    time_engine.stop_entry(entry.id, company.id, employee.id, "EMPLOYEE", now=T0 + timedelta(seconds=60))
    _set_approval(entry.id, ApprovalStatus.APPROVED)

    with pytest.raises(InvalidStateError):
        time_engine.update_entry(
            entry.id, {"duration": 10},
            company.id, employee.id, "EMPLOYEE", now=T0 + timedelta(seconds=100),
        )

    updated = time_engine.update_entry(
        entry.id, {"description": "Client call"},
        company.id, employee.id, "EMPLOYEE", now=T0 + timedelta(seconds=100),
    )
    assert updated.description == "Client call"
    assert updated.duration == 60


def test_employee_cannot_clear_project(tenant):
    company, employee, _, _ = tenant
    entry = _start(tenant)
    with pytest.raises(ValidationError):
        time_engine.update_entry(
            entry.id, {"project_id": None},
            company.id, employee.id, "EMPLOYEE", now=T0 + timedelta(seconds=10),
        )


def test_update_rejects_unknown_fields(tenant):
    company, employee, _, _ = tenant
    entry = _start(tenant)
    with pytest.raises(ValidationError):
        time_engine.update_entry(
            entry.id, {"approval_status": "APPROVED"},
            company.id, employee.id, "EMPLOYEE", now=T0 + timedelta(seconds=10),
        )


def test_remove_rules(tenant):
    company, employee, admin, _ = tenant
    entry = _start(tenant)
    time_engine.stop_entry(entry.id, company.id, employee.id, "EMPLOYEE", now=T0 + timedelta(seconds=60))
    _set_approval(entry.id, ApprovalStatus.APPROVED)

    with pytest.raises(InvalidStateError):
        time_engine.remove_entry(entry.id, company.id, employee.id, "EMPLOYEE")

    assert time_engine.remove_entry(entry.id, company.id, admin.id, "ADMIN") == {"id": entry.id, "deleted": True}
    assert _reload(entry.id) is None

    pending = _start(tenant, at=T0 + timedelta(hours=1))
    assert time_engine.remove_entry(pending.id, company.id, employee.id, "EMPLOYEE")["deleted"] is True
    with pytest.raises(NotFoundError):
        time_engine.remove_entry(pending.id, company.id, employee.id, "EMPLOYEE")


def test_employee_listing_is_limited_to_own_entries(tenant, user_factory):
    company, employee, admin, project = tenant
    colleague = user_factory(company_id=company.id, name="Colleague")
    _start(tenant)
    time_engine.create_entry(company.id, colleague.id, "EMPLOYEE", colleague.id, project.id, now=T0)

    own = time_engine.list_entries(company.id, employee.id, "EMPLOYEE")
    assert [e.user_id for e in own] == [employee.id]

    with pytest.raises(ForbiddenError):
        time_engine.list_entries(company.id, employee.id, "EMPLOYEE", user_id=colleague.id)

    everything = time_engine.list_entries(company.id, admin.id, "ADMIN")
    assert {e.user_id for e in everything} == {employee.id, colleague.id}
    assert len(time_engine.list_active_entries(company.id, admin.id, "ADMIN")) == 2


def test_activity_log_is_scoped_and_windowed(tenant, user_factory, company_factory):
    company, employee, admin, project = tenant
    colleague = user_factory(company_id=company.id, name="Colleague")
    entry = _start(tenant)
    time_engine.pause_entry(entry.id, company.id, employee.id, "EMPLOYEE", now=T0 + timedelta(minutes=5))
    time_engine.resume_entry(entry.id, company.id, employee.id, "EMPLOYEE", now=T0 + timedelta(minutes=10))
    time_engine.stop_entry(entry.id, company.id, employee.id, "EMPLOYEE", now=T0 + timedelta(minutes=15))
    time_engine.create_entry(company.id, colleague.id, "EMPLOYEE", colleague.id, project.id, now=T0 + timedelta(minutes=20))

    own = time_engine.list_activities(company.id, employee.id, "EMPLOYEE")
    assert [a.type for a in own] == ["STOP", "RESUME", "PAUSE", "START"]
    assert {a.time_entry_id for a in own} == {entry.id}

    with pytest.raises(ForbiddenError):
        time_engine.list_activities(company.id, employee.id, "EMPLOYEE", user_id=colleague.id)

    everyone = time_engine.list_activities(company.id, admin.id, "ADMIN")
    assert len(everyone) == 5

    window = time_engine.list_activities(
        company.id, admin.id, "ADMIN",
        since=T0 + timedelta(minutes=5), until=T0 + timedelta(minutes=10),
    )
    assert [a.type for a in window] == ["RESUME", "PAUSE"]

    with pytest.raises(ValidationError):
        time_engine.list_activities(company.id, admin.id, "ADMIN", since=T0 + timedelta(hours=1), until=T0)

    other = company_factory(name="Other")
    with pytest.raises(NotFoundError):
        time_engine.list_activities(other.id, admin.id, "ADMIN", user_id=employee.id)
    assert time_engine.list_activities(other.id, admin.id, "ADMIN") == []
