# medcycle/models/__init__.py
from medcycle.models.medication_command import MedicationCommand
from medcycle.models.medication_event import MedicationEvent
from medcycle.models.detector_run import DetectorRun, MissedDoseScanMark
from medcycle.models.grace_period_config import GracePeriodSetting
from medcycle.models.push_token import PushToken
