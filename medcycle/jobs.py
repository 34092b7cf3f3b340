# medcycle/jobs.py
"""
Scheduled jobs. main.py registers them on the app scheduler; the same
functions can be run once from cron:

    python -m medcycle.jobs missed-doses
    python -m medcycle.jobs extend-horizon
"""
import argparse
import json
import logging

from medcycle.config.settings import settings
from medcycle.db.database import SessionLocal
from medcycle.services.factory import build_services, default_dispatcher
from medcycle.services.fcm_push import init_firebase

logger = logging.getLogger(__name__)


def missed_dose_job(detector):
    """Every 15 minutes. A failed run is logged; the next run picks up what is left."""
    try:
        report = detector.run()
        if report.missed:
            logger.info("[scheduler] missed doses recorded=%d", report.missed)
        return report
    except Exception:
        logger.exception("[scheduler error][missed_dose]")
        return None


def horizon_job(orchestrator):
    """Daily: keep future dose_scheduled events topped up."""
    try:
        return orchestrator.extend_horizons()
    except Exception:
        logger.exception("[scheduler error][horizon]")
        return None


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="medcycle.jobs")
    parser.add_argument("job", choices=["missed-doses", "extend-horizon"])
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    init_firebase(settings.firebase_key_path)
    dispatcher = default_dispatcher(settings, SessionLocal)
    services = build_services(settings, SessionLocal, dispatcher)

    try:
        if args.job == "missed-doses":
            report = missed_dose_job(services.detector)
            if report is None:
                return 1
            print(json.dumps(report.to_dict(), ensure_ascii=False))
            return 0 if report.failed == 0 else 2

        result = horizon_job(services.orchestrator)
    finally:
        # queued pushes are sent before the process exits
        dispatcher.shutdown(wait=True)

    if result is None:
        return 1
    print(json.dumps(result, ensure_ascii=False))
    return 0 if result["failed"] == 0 else 2


if __name__ == "__main__":
    raise SystemExit(main())
