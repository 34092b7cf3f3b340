# medcycle/services/factory.py
"""Wires the engine together from Settings. Tests build their own with fixed clocks."""
from __future__ import annotations

from typing import NamedTuple, Optional

from medcycle.config.settings import Settings
from medcycle.services.clock import SystemClock
from medcycle.services.command_store import CommandStore
from medcycle.services.event_log import EventLog
from medcycle.services.fcm_push import FcmDispatcher, firebase_ready
from medcycle.services.grace_config import GraceConfigRepository
from medcycle.services.missed_dose_detector import MissedDoseDetector
from medcycle.services.notification_dispatch import BackgroundDispatcher, LoggingDispatcher
from medcycle.services.orchestrator import MedicationOrchestrator
from medcycle.services.transactions import TransactionManager


class Services(NamedTuple):
    orchestrator: MedicationOrchestrator
    detector: MissedDoseDetector


def build_services(settings: Settings, session_factory, dispatcher=None, clock=None) -> Services:
    clock = clock or SystemClock(settings.timezone)
    dispatcher = dispatcher or LoggingDispatcher()

    command_store = CommandStore(clock)
    event_log = EventLog(clock)
    tx = TransactionManager(
        session_factory,
        command_store,
        event_log,
        max_writes_per_transaction=settings.cascade_chunk_size,
        retry_attempts=settings.conflict_retry_attempts,
        retry_backoff_seconds=settings.conflict_retry_backoff_seconds,
    )

    orchestrator = MedicationOrchestrator(
        tx,
        command_store,
        event_log,
        GraceConfigRepository(),
        dispatcher,
        clock,
        horizon_days=settings.horizon_days,
    )
    detector = MissedDoseDetector(
        tx,
        command_store,
        event_log,
        dispatcher,
        clock,
        lookback_hours=settings.detector_lookback_hours,
        batch_size=settings.detector_batch_size,
        max_candidates_per_run=settings.detector_max_candidates_per_run,
        time_budget_seconds=settings.detector_time_budget_seconds,
    )
    return Services(orchestrator, detector)


def default_dispatcher(settings: Settings, session_factory, clock=None, firebase: Optional[bool] = None):
    """FCM when Firebase is initialised, log-only otherwise; always off the request thread."""
    use_fcm = firebase_ready() if firebase is None else firebase
    if use_fcm:
        delegate = FcmDispatcher(session_factory, clock or SystemClock(settings.timezone))
    else:
        delegate = LoggingDispatcher()
    return BackgroundDispatcher(delegate, max_workers=settings.dispatch_workers)
