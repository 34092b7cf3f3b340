import datetime as dt

import jwt
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import medcycle.models  # noqa: F401
from medcycle.config.settings import Settings, settings
from medcycle.db.database import Base, build_engine
from medcycle.main import create_app
from medcycle.services.factory import build_services

PATIENT = "patient-1"
OTHER_PATIENT = "patient-2"

# Monday, not a holiday
MONDAY_0700 = dt.datetime(2025, 1, 6, 7, 0)


class FixedClock:
    def __init__(self, now: dt.datetime):
        self.current = now

    def now(self) -> dt.datetime:
        return self.current

    def set(self, value: dt.datetime) -> None:
        self.current = value

    def advance(self, **kwargs) -> None:
        self.current += dt.timedelta(**kwargs)


class RecordingDispatcher:
    def __init__(self):
        self.sent = []

    def dispatch(self, event, recipients):
        self.sent.append((event, list(recipients)))

    def types(self):
        return [event.event_type for event, _ in self.sent]


class FailingDispatcher:
    def dispatch(self, event, recipients):
        raise RuntimeError("push provider down")


def make_token(sub: str = PATIENT, secret: str = None) -> str:
    return jwt.encode(
        {"sub": sub, "exp": dt.datetime.now(dt.timezone.utc) + dt.timedelta(hours=1)},
        secret or settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )


def daily_command(times=("08:00",), name="Lisinopril", medication_type="standard", **schedule):
    body = {
        "medication": {"name": name, "dosage": "10mg", "medicationType": medication_type},
        "schedule": {"frequency": "daily", "times": list(times), "startDate": "2025-01-06", **schedule},
    }
    return body


@pytest.fixture
def test_settings():
    return Settings(_env_file=None, conflict_retry_backoff_seconds=0.0, cascade_chunk_size=500)


@pytest.fixture
def engine():
    engine = build_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    # objects returned from tx.run() are inspected after commit
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture
def clock():
    return FixedClock(MONDAY_0700)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def services(test_settings, session_factory, dispatcher, clock):
    return build_services(test_settings, session_factory, dispatcher, clock)


@pytest.fixture
def orchestrator(services):
    return services.orchestrator


@pytest.fixture
def detector(services):
    return services.detector


@pytest.fixture
def tx(orchestrator):
    return orchestrator.tx


@pytest.fixture
def client(session_factory, dispatcher, clock):
    app = create_app(
        session_factory=session_factory, dispatcher=dispatcher, clock=clock, start_scheduler=False
    )
    with TestClient(app) as c:
        yield c


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {make_token()}"}
