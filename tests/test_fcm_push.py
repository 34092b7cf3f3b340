import datetime as dt
from types import SimpleNamespace

import pytest
from firebase_admin import exceptions, messaging

from medcycle.models.push_token import PushToken
from medcycle.schemas.schema_event import EventFilter
from medcycle.services import fcm_push
from medcycle.services.fcm_push import (
    MAX_CONSECUTIVE_FAILURES,
    FcmDispatcher,
    active_tokens,
    deactivate_token,
    register_token,
    send_to_patient,
)

from conftest import OTHER_PATIENT, PATIENT, daily_command

NOW = dt.datetime(2025, 1, 6, 8, 45)


class FakeFcm:
    """Stands in for messaging.send_each_for_multicast; outcomes are consumed per token."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.messages = []

    def __call__(self, message):
        self.messages.append(message)
        responses = []
        for _ in message.tokens:
            exc = self.outcomes.pop(0) if self.outcomes else None
            responses.append(SimpleNamespace(success=exc is None, exception=exc))
        ok = sum(1 for r in responses if r.success)
        return SimpleNamespace(responses=responses, success_count=ok, failure_count=len(responses) - ok)


@pytest.fixture
def fake_fcm(monkeypatch):
    def install(*outcomes):
        fake = FakeFcm(*outcomes)
        monkeypatch.setattr(fcm_push.messaging, "send_each_for_multicast", fake)
        return fake

    return install


def _tokens(session_factory, patient_id=PATIENT):
    with session_factory() as db:
        return [(t.token, t.is_active, t.failure_count, t.deactivated_reason) for t in
                db.query(PushToken).filter(PushToken.patient_id == patient_id).order_by(PushToken.id)]


def test_register_moves_a_known_token_to_the_new_patient(session_factory):
    with session_factory() as db:
        register_token(db, PATIENT, "token-aaaaaaaa", NOW, "android")
        deactivate_token(db, PATIENT, "token-aaaaaaaa")
        register_token(db, OTHER_PATIENT, "token-aaaaaaaa", NOW, "pager")
        db.commit()

        assert active_tokens(db, PATIENT) == []
        [row] = active_tokens(db, OTHER_PATIENT)
    assert (row.platform, row.deactivated_reason) == ("unknown", None)


def test_deactivate_only_touches_the_callers_active_token(session_factory):
    with session_factory() as db:
        register_token(db, PATIENT, "token-aaaaaaaa", NOW)
        db.commit()

        assert deactivate_token(db, OTHER_PATIENT, "token-aaaaaaaa") == 0
        assert deactivate_token(db, PATIENT, "token-aaaaaaaa") == 1
        assert deactivate_token(db, PATIENT, "token-aaaaaaaa") == 0
        db.commit()


def test_send_updates_token_bookkeeping(session_factory, fake_fcm):
    fake = fake_fcm(
        None,
        messaging.UnregisteredError("app uninstalled"),
        exceptions.UnavailableError("try later"),
    )
    with session_factory() as db:
        for token in ("token-good-1111", "token-dead-2222", "token-flaky-333"):
            register_token(db, PATIENT, token, NOW)
        db.commit()

        result = send_to_patient(db, PATIENT, messaging.Notification(title="t", body="b"), {"k": "v"}, NOW)
        db.commit()

    assert (result.sent, result.failed, result.deactivated) == (1, 2, 1)
    assert len(fake.messages) == 1
    assert _tokens(session_factory) == [
        ("token-good-1111", True, 0, None),
        ("token-dead-2222", False, 1, "unregistered"),
        ("token-flaky-333", True, 1, None),
    ]


def test_repeated_transient_failures_drop_the_token(session_factory, fake_fcm):
    fake_fcm(*[exceptions.UnavailableError("try later")] * MAX_CONSECUTIVE_FAILURES)
    with session_factory() as db:
        register_token(db, PATIENT, "token-flaky-333", NOW)
        db.commit()
        for _ in range(MAX_CONSECUTIVE_FAILURES):
            send_to_patient(db, PATIENT, messaging.Notification(title="t", body="b"), {}, NOW)
        db.commit()

    assert _tokens(session_factory) == [("token-flaky-333", False, MAX_CONSECUTIVE_FAILURES, "too_many_failures")]


def test_no_tokens_means_no_request(session_factory, fake_fcm):
    fake = fake_fcm()
    with session_factory() as db:
        result = send_to_patient(db, PATIENT, messaging.Notification(title="t", body="b"), {}, NOW)

    assert result.sent == 0
    assert fake.messages == []


def test_dispatcher_renders_the_missed_dose(orchestrator, session_factory, clock, fake_fcm, monkeypatch):
    monkeypatch.setattr(fcm_push, "firebase_ready", lambda: True)
    fake = fake_fcm()
    created = orchestrator.create_command(PATIENT, daily_command(name="Metformin"))
    with session_factory() as db:
        register_token(db, PATIENT, "token-good-1111", NOW)
        db.commit()

    events = orchestrator.query_events(PATIENT, EventFilter(command_id=created.data.id)).data
    scheduled = next(e for e in events if e.event_type == "dose_scheduled")
    missed = scheduled.model_copy(update={"event_type": "dose_missed"})

    FcmDispatcher(session_factory, clock).dispatch(missed, [PATIENT])

    [message] = fake.messages
    assert message.notification.title == "Missed dose"
    assert message.notification.body == "Metformin scheduled for 08:00 was not taken."
    assert message.data["eventType"] == "dose_missed"
    assert message.data["commandId"] == created.data.id
