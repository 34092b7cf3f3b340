import datetime as dt

from sqlalchemy import select

from medcycle.models.detector_run import DetectorRun, MissedDoseScanMark
from medcycle.schemas.schema_event import EventFilter
from medcycle.services.missed_dose_detector import Candidate, DetectorReport, MissedDoseDetector, deadline_for

from conftest import PATIENT, daily_command

AT_0800 = dt.datetime(2025, 1, 6, 8, 0)


def _create(orchestrator, **kw):
    return orchestrator.create_command(PATIENT, daily_command(**kw)).data.id


def _missed(orchestrator, command_id):
    return orchestrator.tx.run(
        lambda db: orchestrator.event_log.query_events(
            db, EventFilter(command_id=command_id, event_types=["dose_missed"])
        )
    )


def test_missed_dose_is_recorded_once(orchestrator, detector, clock, dispatcher):
    command_id = _create(orchestrator)
    clock.set(dt.datetime(2025, 1, 6, 8, 45))

    first = detector.run()
    second = detector.run()

    assert (first.candidates, first.missed, first.failed, first.completed) == (1, 1, 0, True)
    assert (second.candidates, second.missed) == (0, 0)

    missed = _missed(orchestrator, command_id)
    assert len(missed) == 1
    assert missed[0].scheduled_date_time == AT_0800
    assert missed[0].grace_period_minutes == 30
    assert missed[0].details["gracePeriodEnd"] == "2025-01-06T08:30:00"
    assert dispatcher.types()[-1] == "dose_missed"


def test_nothing_happens_inside_the_grace_period(orchestrator, detector, clock):
    command_id = _create(orchestrator)
    clock.set(dt.datetime(2025, 1, 6, 8, 30))

    report = detector.run()

    assert (report.candidates, report.not_due, report.missed) == (1, 1, 0)
    assert _missed(orchestrator, command_id) == []

    # not marked, so the next run looks again
    clock.set(dt.datetime(2025, 1, 6, 8, 31))
    assert detector.run().missed == 1


def test_taken_dose_is_never_a_candidate(orchestrator, detector, clock):
    command_id = _create(orchestrator)
    clock.set(dt.datetime(2025, 1, 6, 8, 10))
    orchestrator.take_dose(PATIENT, command_id, AT_0800)
    clock.set(dt.datetime(2025, 1, 6, 9, 0))

    report = detector.run()

    assert report.candidates == 0
    assert _missed(orchestrator, command_id) == []


def test_take_landing_between_fetch_and_check_wins(orchestrator, detector, clock):
    command_id = _create(orchestrator)
    now = dt.datetime(2025, 1, 6, 8, 45)
    clock.set(now)

    batch = detector.tx.run(lambda db: detector._fetch_batch(db, now, None))
    assert len(batch) == 1

    orchestrator.take_dose(PATIENT, command_id, AT_0800)

    report = DetectorReport(run_id=detector.tx.run(lambda db: detector._start_run(db, now)), started_at=now)
    detector._handle(batch[0], now, report)

    assert (report.resolved, report.missed) == (1, 0)
    status = orchestrator.occurrence_status(PATIENT, command_id, AT_0800).data.status
    assert status == "dose_taken"


def test_late_take_after_missed_derives_taken(orchestrator, detector, clock):
    command_id = _create(orchestrator)
    clock.set(dt.datetime(2025, 1, 6, 8, 45))
    detector.run()

    orchestrator.take_dose(PATIENT, command_id, AT_0800)

    occurrence = orchestrator.occurrence_status(PATIENT, command_id, AT_0800).data
    assert occurrence.status == "dose_taken"
    assert [e.event_type for e in occurrence.events] == ["dose_scheduled", "dose_missed", "dose_taken"]


def test_paused_command_is_suppressed(orchestrator, detector, clock, session_factory):
    command_id = _create(orchestrator)
    orchestrator.pause(PATIENT, command_id, "hospital stay")
    clock.set(dt.datetime(2025, 1, 6, 9, 0))

    report = detector.run()

    assert (report.suppressed, report.missed) == (1, 0)
    assert _missed(orchestrator, command_id) == []
    with session_factory() as db:
        mark = db.execute(select(MissedDoseScanMark)).scalars().one()
    assert mark.outcome == "suppressed"
    assert detector.run().candidates == 0


def test_dose_removed_from_schedule_is_suppressed(orchestrator, detector, clock):
    command_id = _create(orchestrator)
    clock.set(dt.datetime(2025, 1, 6, 7, 30))
    orchestrator.update_command(PATIENT, command_id, {"schedule": {"times": ["09:00"]}}, 1)
    clock.set(dt.datetime(2025, 1, 6, 8, 45))

    report = detector.run()

    assert (report.suppressed, report.missed) == (1, 0)


def test_snooze_pushes_the_deadline(orchestrator, detector, clock):
    command_id = _create(orchestrator)
    clock.set(dt.datetime(2025, 1, 6, 8, 20))
    orchestrator.snooze_dose(PATIENT, command_id, AT_0800, 30)

    # deadline = snoozedUntil 08:50 + 30 min grace
    clock.set(dt.datetime(2025, 1, 6, 9, 15))
    assert detector.run().missed == 0

    clock.set(dt.datetime(2025, 1, 6, 9, 21))
    report = detector.run()
    assert report.missed == 1
    assert _missed(orchestrator, command_id)[0].details["gracePeriodEnd"] == "2025-01-06T09:20:00"


def test_deadline_uses_the_snapshot():
    candidate = Candidate("e1", "c1", PATIENT, AT_0800, 45, ("default_standard_noon",))

    assert deadline_for(candidate, None) == dt.datetime(2025, 1, 6, 8, 45)
    assert deadline_for(candidate, dt.datetime(2025, 1, 6, 8, 30)) == dt.datetime(2025, 1, 6, 9, 15)
    # a snooze that ends early never shortens the grace period
    assert deadline_for(candidate, dt.datetime(2025, 1, 6, 7, 0)) == dt.datetime(2025, 1, 6, 8, 45)


def test_candidate_cap_resumes_on_the_next_run(orchestrator, clock, dispatcher):
    _create(orchestrator, times=("08:00", "08:15"))
    capped = MissedDoseDetector(
        orchestrator.tx, orchestrator.command_store, orchestrator.event_log, dispatcher, clock,
        max_candidates_per_run=1,
    )
    clock.set(dt.datetime(2025, 1, 6, 9, 30))

    first = capped.run()
    second = capped.run()
    third = capped.run()

    assert (first.missed, first.completed) == (1, False)
    assert (second.missed, second.completed) == (1, True)
    assert (third.candidates, third.completed) == (0, True)


def test_time_budget_stops_the_run(orchestrator, clock, dispatcher):
    _create(orchestrator)
    no_time = MissedDoseDetector(
        orchestrator.tx, orchestrator.command_store, orchestrator.event_log, dispatcher, clock,
        time_budget_seconds=-1,
    )
    clock.set(dt.datetime(2025, 1, 6, 9, 0))

    report = no_time.run()

    assert (report.candidates, report.completed) == (0, False)


def test_failing_candidate_does_not_stop_the_batch(orchestrator, detector, clock, monkeypatch):
    broken_id = _create(orchestrator, name="Broken")
    healthy_id = _create(orchestrator, name="Healthy")
    clock.set(dt.datetime(2025, 1, 6, 8, 45))

    original = detector.event_log.latest_snooze

    def flaky(db, command_id, when):
        if command_id == broken_id:
            raise RuntimeError("disk on fire")
        return original(db, command_id, when)

    monkeypatch.setattr(detector.event_log, "latest_snooze", flaky)
    report = detector.run()

    assert (report.failed, report.missed) == (1, 1)
    assert report.errors[0].command_id == broken_id
    assert report.to_dict()["errors"][0]["error"] == "RuntimeError: disk on fire"
    assert len(_missed(orchestrator, healthy_id)) == 1
    assert _missed(orchestrator, broken_id) == []


def test_lookback_window(orchestrator, detector, clock):
    command_id = _create(orchestrator)
    # 08:00 on Jan 6 is older than 72 hours by now
    clock.set(dt.datetime(2025, 1, 9, 9, 0))

    report = detector.run()

    missed_at = sorted(e.scheduled_date_time for e in _missed(orchestrator, command_id))
    assert report.missed == 3
    assert AT_0800 not in missed_at


def test_each_run_is_recorded(orchestrator, detector, clock, session_factory):
    _create(orchestrator)
    clock.set(dt.datetime(2025, 1, 6, 8, 45))

    report = detector.run()

    with session_factory() as db:
        run = db.get(DetectorRun, report.run_id)
    assert run.finished_at == dt.datetime(2025, 1, 6, 8, 45)
    assert (run.candidates, run.missed, run.completed) == (1, 1, True)
