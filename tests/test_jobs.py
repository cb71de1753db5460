import threading

import pytest

from fieldservice.errors import (
    InvalidTransition,
    JobClosed,
    JobNotFound,
    UnauthorizedTechnician,
)
from fieldservice.jobs import LIFECYCLE, JobRegistry, allowed_next, sort_by_priority
from fieldservice.models import JobLocation, JobPriority, JobStatus, JobUpdate
from fieldservice.notifications import NotificationHub
from tests.factories import Clock, make_job_fields

TECH = "tech-1"


def _assigned_job(jobs: JobRegistry, employee_id: str = TECH):
    job = jobs.create_job(make_job_fields())
    return jobs.assign(job.id, employee_id, "Arun")


def _walk_to(jobs: JobRegistry, job_id: str, target: JobStatus) -> None:
    for status in LIFECYCLE[1 : LIFECYCLE.index(target) + 1]:
        jobs.transition(job_id, status, employee_id=TECH)


def _timeline_statuses(jobs: JobRegistry, job_id: str) -> list[JobStatus]:
    return [entry.status for entry in jobs.get_timeline(job_id)]


def test_create_job_starts_assigned_with_creation_entry(
    jobs: JobRegistry, clock: Clock
) -> None:
    job = jobs.create_job(make_job_fields())

    assert job.id.startswith("job_")
    assert job.status == JobStatus.ASSIGNED
    assert job.assigned_to is None
    assert job.created_at == clock.now

    timeline = jobs.get_timeline(job.id)
    assert len(timeline) == 1
    assert timeline[0].status == JobStatus.ASSIGNED
    assert timeline[0].note == "Job created"
    assert jobs.get_job(job.id) == job


def test_job_ids_are_unique(jobs: JobRegistry) -> None:
    ids = {jobs.create_job(make_job_fields()).id for _ in range(50)}
    assert len(ids) == 50


def test_create_job_notifies(jobs: JobRegistry, hub: NotificationHub) -> None:
    calls = []
    hub.subscribe(lambda: calls.append(1))

    jobs.create_job(make_job_fields())

    assert calls == [1]


def test_full_lifecycle_stamps_each_timestamp_once(
    jobs: JobRegistry, clock: Clock
) -> None:
    job = _assigned_job(jobs)

    stamps = {}
    for status in LIFECYCLE[1:]:
        clock.advance(60)
        jobs.transition(job.id, status, employee_id=TECH)
        stamps[status] = clock.now

    done = jobs.get_job(job.id)
    assert done.status == JobStatus.COMPLETED
    assert done.accepted_at == stamps[JobStatus.ACCEPTED]
    assert done.started_at == stamps[JobStatus.EN_ROUTE]
    assert done.arrived_at == stamps[JobStatus.ARRIVED]
    assert done.completed_at == stamps[JobStatus.COMPLETED]
    assert _timeline_statuses(jobs, job.id) == list(LIFECYCLE)


def test_same_status_update_appends_nothing_and_keeps_stamp(
    jobs: JobRegistry, clock: Clock
) -> None:
    job = _assigned_job(jobs)
    jobs.transition(job.id, JobStatus.ACCEPTED, employee_id=TECH)
    accepted_at = jobs.get_job(job.id).accepted_at

    clock.advance(300)
    jobs.transition(job.id, JobStatus.ACCEPTED, employee_id=TECH, notes="on my way")

    job = jobs.get_job(job.id)
    assert job.accepted_at == accepted_at
    assert job.notes == "on my way"
    assert _timeline_statuses(jobs, job.id) == [
        JobStatus.ASSIGNED,
        JobStatus.ACCEPTED,
    ]


def test_status_change_note_lands_in_timeline(jobs: JobRegistry) -> None:
    job = _assigned_job(jobs)
    jobs.transition(job.id, JobStatus.ACCEPTED, employee_id=TECH, notes="10 min")

    assert jobs.get_timeline(job.id)[-1].note == "10 min"


def test_skipping_a_state_is_rejected_without_side_effects(
    jobs: JobRegistry,
) -> None:
    job = _assigned_job(jobs)

    with pytest.raises(InvalidTransition):
        jobs.transition(job.id, JobStatus.ARRIVED, employee_id=TECH)

    assert jobs.get_job(job.id).status == JobStatus.ASSIGNED
    assert _timeline_statuses(jobs, job.id) == [JobStatus.ASSIGNED]


def test_moving_backwards_is_rejected(jobs: JobRegistry) -> None:
    job = _assigned_job(jobs)
    _walk_to(jobs, job.id, JobStatus.ARRIVED)

    with pytest.raises(InvalidTransition):
        jobs.transition(job.id, JobStatus.EN_ROUTE, employee_id=TECH)

    assert jobs.get_job(job.id).status == JobStatus.ARRIVED


@pytest.mark.parametrize("status", LIFECYCLE[:-1])
def test_cancel_is_reachable_from_every_open_state(
    jobs: JobRegistry, status: JobStatus
) -> None:
    job = _assigned_job(jobs)
    _walk_to(jobs, job.id, status)

    jobs.transition(job.id, JobStatus.CANCELLED, employee_id=TECH)

    assert jobs.get_job(job.id).status == JobStatus.CANCELLED
    assert _timeline_statuses(jobs, job.id)[-1] == JobStatus.CANCELLED


def test_allowed_next_follows_lifecycle() -> None:
    assert allowed_next(JobStatus.ASSIGNED) == {
        JobStatus.ACCEPTED,
        JobStatus.CANCELLED,
    }
    assert allowed_next(JobStatus.RETURNING) == {
        JobStatus.COMPLETED,
        JobStatus.CANCELLED,
    }
    assert allowed_next(JobStatus.COMPLETED) == frozenset()
    assert allowed_next(JobStatus.CANCELLED) == frozenset()


def test_wrong_technician_never_mutates(jobs: JobRegistry, hub: NotificationHub) -> None:
    job = _assigned_job(jobs)
    calls = []
    hub.subscribe(lambda: calls.append(1))

    with pytest.raises(UnauthorizedTechnician):
        jobs.transition(job.id, JobStatus.ACCEPTED, employee_id="tech-2", notes="x")

    after = jobs.get_job(job.id)
    assert after == job
    assert _timeline_statuses(jobs, job.id) == [JobStatus.ASSIGNED]
    assert calls == []


def test_transition_after_assigned_requires_technician_id(
    jobs: JobRegistry,
) -> None:
    job = _assigned_job(jobs)
    jobs.transition(job.id, JobStatus.ACCEPTED, employee_id=TECH)

    with pytest.raises(UnauthorizedTechnician):
        jobs.transition(job.id, JobStatus.EN_ROUTE)
    with pytest.raises(UnauthorizedTechnician):
        jobs.transition(job.id, JobStatus.CANCELLED)


def test_dispatcher_may_cancel_before_acceptance(jobs: JobRegistry) -> None:
    job = jobs.create_job(make_job_fields())

    jobs.transition(job.id, JobStatus.CANCELLED)

    assert jobs.get_job(job.id).status == JobStatus.CANCELLED


def test_unassigned_job_cannot_be_progressed(jobs: JobRegistry) -> None:
    # created jobs are labelled assigned before anyone is assigned
    job = jobs.create_job(make_job_fields())

    with pytest.raises(UnauthorizedTechnician):
        jobs.transition(job.id, JobStatus.EN_ROUTE, employee_id=TECH)
    with pytest.raises(UnauthorizedTechnician):
        jobs.update_job(job.id, JobUpdate(status=JobStatus.ACCEPTED))
    jobs.assign(job.id, TECH, "Arun")
    with pytest.raises(UnauthorizedTechnician):
        jobs.update_job(job.id, JobUpdate(status=JobStatus.ACCEPTED))

    assert _timeline_statuses(jobs, job.id) == [JobStatus.ASSIGNED]


def test_transition_unknown_job_raises(jobs: JobRegistry) -> None:
    with pytest.raises(JobNotFound):
        jobs.transition("nope", JobStatus.ACCEPTED, employee_id=TECH)


def test_update_unknown_job_is_silent_noop(
    jobs: JobRegistry, hub: NotificationHub
) -> None:
    calls = []
    hub.subscribe(lambda: calls.append(1))

    assert jobs.update_job("nope", JobUpdate(notes="hello")) is None
    assert calls == []
    assert jobs.get_all_jobs() == []


def test_update_job_applies_only_set_fields(jobs: JobRegistry) -> None:
    job = jobs.create_job(make_job_fields(notes="gate code 42"))

    updated = jobs.update_job(
        job.id,
        JobUpdate(
            priority=JobPriority.URGENT,
            location=JobLocation(lat=13.05, lng=80.25, address="Mylapore"),
        ),
    )

    assert updated.priority == JobPriority.URGENT
    assert updated.location.address == "Mylapore"
    assert updated.notes == "gate code 42"
    assert updated.customer_name == job.customer_name


def test_update_job_cannot_move_an_accepted_job(
    jobs: JobRegistry, hub: NotificationHub
) -> None:
    job = _assigned_job(jobs)
    _walk_to(jobs, job.id, JobStatus.ACCEPTED)
    before = jobs.get_job(job.id)
    calls = []
    hub.subscribe(lambda: calls.append(1))

    for status in (JobStatus.EN_ROUTE, JobStatus.CANCELLED):
        with pytest.raises(UnauthorizedTechnician):
            jobs.update_job(job.id, JobUpdate(status=status, notes="skip ahead"))

    assert jobs.get_job(job.id) == before
    assert _timeline_statuses(jobs, job.id) == [
        JobStatus.ASSIGNED,
        JobStatus.ACCEPTED,
    ]
    assert calls == []


def test_update_job_may_cancel_before_acceptance(jobs: JobRegistry) -> None:
    job = _assigned_job(jobs)

    cancelled = jobs.update_job(
        job.id, JobUpdate(status=JobStatus.CANCELLED, notes="customer called off")
    )

    assert cancelled.status == JobStatus.CANCELLED
    timeline = jobs.get_timeline(job.id)
    assert [e.status for e in timeline] == [JobStatus.ASSIGNED, JobStatus.CANCELLED]
    assert timeline[-1].note == "customer called off"


def test_update_job_same_status_with_notes_is_allowed(jobs: JobRegistry) -> None:
    job = _assigned_job(jobs)
    _walk_to(jobs, job.id, JobStatus.EN_ROUTE)

    updated = jobs.update_job(
        job.id, JobUpdate(status=JobStatus.EN_ROUTE, notes="traffic on Anna Salai")
    )

    assert updated.notes == "traffic on Anna Salai"
    assert len(jobs.get_timeline(job.id)) == 3


def test_update_job_ignores_nulls_except_notes(jobs: JobRegistry) -> None:
    job = jobs.create_job(make_job_fields(notes="gate code 42"))

    updated = jobs.update_job(
        job.id,
        JobUpdate(
            customer_name=None,
            priority=None,
            location=None,
            status=None,
            notes=None,
        ),
    )

    assert updated.customer_name == job.customer_name
    assert updated.priority == job.priority
    assert updated.location == job.location
    assert updated.status == JobStatus.ASSIGNED
    assert updated.notes is None
    # stored jobs stay sortable
    assert sort_by_priority(jobs.get_all_jobs()) == [updated]


def test_closed_job_only_accepts_notes(jobs: JobRegistry) -> None:
    job = _assigned_job(jobs)
    jobs.transition(job.id, JobStatus.CANCELLED, employee_id=TECH)

    jobs.update_job(job.id, JobUpdate(notes="customer sold the bike"))
    assert jobs.get_job(job.id).notes == "customer sold the bike"

    with pytest.raises(JobClosed):
        jobs.update_job(job.id, JobUpdate(priority=JobPriority.HIGH))
    with pytest.raises(JobClosed):
        jobs.transition(job.id, JobStatus.ACCEPTED, employee_id=TECH)


def test_assign_sets_assignee_without_new_timeline_entry(jobs: JobRegistry) -> None:
    job = jobs.create_job(make_job_fields())

    assigned = jobs.assign(job.id, TECH, "Arun")
    reassigned = jobs.assign(job.id, "tech-2", "Bala")

    assert assigned.assigned_to == TECH
    assert reassigned.assigned_to == "tech-2"
    assert reassigned.assigned_to_name == "Bala"
    assert reassigned.status == JobStatus.ASSIGNED
    assert _timeline_statuses(jobs, job.id) == [JobStatus.ASSIGNED]


def test_assign_after_acceptance_is_rejected(jobs: JobRegistry) -> None:
    job = _assigned_job(jobs)
    jobs.transition(job.id, JobStatus.ACCEPTED, employee_id=TECH)

    with pytest.raises(InvalidTransition):
        jobs.assign(job.id, "tech-2", "Bala")

    after = jobs.get_job(job.id)
    assert after.assigned_to == TECH
    assert after.status == JobStatus.ACCEPTED


def test_assign_closed_or_unknown_job(jobs: JobRegistry) -> None:
    job = _assigned_job(jobs)
    jobs.transition(job.id, JobStatus.CANCELLED, employee_id=TECH)

    with pytest.raises(JobClosed):
        jobs.assign(job.id, "tech-2", "Bala")
    with pytest.raises(JobNotFound):
        jobs.assign("nope", "tech-2", "Bala")


def test_queries_filter_by_employee_and_activity(jobs: JobRegistry) -> None:
    a = _assigned_job(jobs, "tech-1")
    b = _assigned_job(jobs, "tech-1")
    c = _assigned_job(jobs, "tech-2")
    jobs.transition(b.id, JobStatus.CANCELLED, employee_id="tech-1")

    assert {j.id for j in jobs.get_jobs_by_employee("tech-1")} == {a.id, b.id}
    assert [j.id for j in jobs.get_jobs_by_employee("tech-1", active_only=True)] == [
        a.id
    ]
    assert {j.id for j in jobs.get_active_jobs()} == {a.id, c.id}
    assert len(jobs.get_all_jobs()) == 3


def test_timeline_of_unknown_job_is_empty(jobs: JobRegistry) -> None:
    assert jobs.get_timeline("nope") == []


def test_timeline_is_a_copy(jobs: JobRegistry) -> None:
    job = jobs.create_job(make_job_fields())
    jobs.get_timeline(job.id).clear()
    assert len(jobs.get_timeline(job.id)) == 1


def test_sort_by_priority_urgent_first_then_oldest(
    jobs: JobRegistry, clock: Clock
) -> None:
    low = jobs.create_job(make_job_fields(priority=JobPriority.LOW))
    clock.advance(1)
    urgent_new = jobs.create_job(make_job_fields(priority=JobPriority.URGENT))
    clock.advance(1)
    high = jobs.create_job(make_job_fields(priority=JobPriority.HIGH))
    urgent_old = urgent_new.model_copy(
        update={"id": "older", "created_at": urgent_new.created_at.replace(hour=8)}
    )

    ordered = sort_by_priority([low, urgent_new, high, urgent_old])

    assert [j.id for j in ordered] == [urgent_old.id, urgent_new.id, high.id, low.id]


def test_concurrent_transitions_record_one_entry(jobs: JobRegistry) -> None:
    job = _assigned_job(jobs)
    barrier = threading.Barrier(8)
    outcomes = []

    def accept() -> None:
        barrier.wait()
        try:
            jobs.transition(job.id, JobStatus.ACCEPTED, employee_id=TECH)
            outcomes.append("ok")
        except InvalidTransition:
            outcomes.append("rejected")

    threads = [threading.Thread(target=accept) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 8
    assert _timeline_statuses(jobs, job.id) == [
        JobStatus.ASSIGNED,
        JobStatus.ACCEPTED,
    ]


def test_clear_drops_jobs_and_timelines(jobs: JobRegistry) -> None:
    job = jobs.create_job(make_job_fields())
    jobs.clear()

    assert jobs.get_job(job.id) is None
    assert jobs.get_timeline(job.id) == []
