import datetime as dt

import pytest

from medcycle.schemas.schema_grace import GracePeriodConfig
from medcycle.services.errors import ValidationError
from medcycle.services.grace_period import (
    calculate_grace_period,
    classify_medication_type,
    is_holiday,
    resolve_time_slot,
    us_federal_holidays,
    validate_grace_config,
)

WEEKDAY_0800 = dt.datetime(2025, 1, 6, 8, 0)    # Monday
SATURDAY_0800 = dt.datetime(2025, 1, 11, 8, 0)
JULY_4_0800 = dt.datetime(2025, 7, 4, 8, 0)     # Friday, federal holiday


def test_critical_morning_weekday_is_15():
    result = calculate_grace_period("critical", "morning", WEEKDAY_0800, GracePeriodConfig())

    assert result.grace_period_minutes == 15
    assert result.applied_rules == ["default_critical_morning"]
    assert result.grace_period_end_date_time == dt.datetime(2025, 1, 6, 8, 15)


def test_critical_morning_saturday_is_22():
    result = calculate_grace_period("critical", "morning", SATURDAY_0800, GracePeriodConfig())

    # 15 * 1.5 = 22.5, truncated
    assert result.grace_period_minutes == 22
    assert "weekend_multiplier" in result.applied_rules


def test_holiday_multiplier_on_weekday_holiday():
    result = calculate_grace_period("standard", "morning", JULY_4_0800, GracePeriodConfig())

    assert result.grace_period_minutes == 60
    assert result.applied_rules[-1] == "holiday_multiplier"


def test_holiday_on_weekend_uses_larger_multiplier_only():
    config = GracePeriodConfig(holidays=[SATURDAY_0800.date()])

    result = calculate_grace_period("critical", "morning", SATURDAY_0800, config)

    assert result.grace_period_minutes == 30
    assert "holiday_multiplier" in result.applied_rules
    assert "weekend_multiplier" not in result.applied_rules


def test_weekend_wins_when_configured_larger():
    config = GracePeriodConfig(holidays=[SATURDAY_0800.date()], weekend_multiplier=3.0)

    result = calculate_grace_period("critical", "morning", SATURDAY_0800, config)

    assert result.grace_period_minutes == 45
    assert result.applied_rules[-1] == "weekend_multiplier"


def test_neutral_weekend_beats_a_shrinking_holiday():
    config = GracePeriodConfig(weekend_multiplier=1.0, holiday_multiplier=0.5)
    # Saturday and Independence Day
    july_4_2026 = dt.datetime(2026, 7, 4, 8, 0)

    result = calculate_grace_period("standard", "morning", july_4_2026, config)

    assert result.grace_period_minutes == 30
    assert result.applied_rules == ["default_standard_morning"]


def test_shrinking_multipliers_still_pick_the_larger():
    config = GracePeriodConfig(holidays=[SATURDAY_0800.date()], weekend_multiplier=0.8, holiday_multiplier=0.5)

    result = calculate_grace_period("standard", "morning", SATURDAY_0800, config)

    assert result.grace_period_minutes == 24
    assert result.applied_rules == ["default_standard_morning", "weekend_multiplier"]


def test_prn_is_always_zero():
    result = calculate_grace_period("prn", "bedtime", SATURDAY_0800, GracePeriodConfig())

    assert result.grace_period_minutes == 0
    assert result.applied_rules == ["default_prn_bedtime", "prn_zero"]
    assert result.grace_period_end_date_time == SATURDAY_0800


def test_medication_override_beats_patient_override():
    config = GracePeriodConfig(
        medication_overrides={"cmd-1": 50},
        patient_overrides={"standard": {"morning": 40}},
    )

    with_med = calculate_grace_period("standard", "morning", WEEKDAY_0800, config, medication_id="cmd-1")
    without_med = calculate_grace_period("standard", "morning", WEEKDAY_0800, config, medication_id="cmd-2")

    assert with_med.grace_period_minutes == 50
    assert with_med.applied_rules == ["default_standard_morning", "medication_override"]
    assert without_med.grace_period_minutes == 40
    assert without_med.applied_rules == ["default_standard_morning", "patient_override"]


def test_override_is_still_scaled_on_weekend():
    config = GracePeriodConfig(patient_overrides={"standard": {"morning": 40}})

    result = calculate_grace_period("standard", "morning", SATURDAY_0800, config)

    assert result.grace_period_minutes == 60


def test_identical_inputs_identical_output():
    config = GracePeriodConfig(patient_overrides={"vitamin": {"noon": 100}})
    when = dt.datetime(2025, 3, 15, 12, 30)

    first = calculate_grace_period("vitamin", "noon", when, config)
    second = calculate_grace_period("vitamin", "noon", when, config)

    assert first == second


def test_unknown_type_or_slot_is_rejected():
    with pytest.raises(ValidationError):
        calculate_grace_period("antibiotic", "morning", WEEKDAY_0800, GracePeriodConfig())
    with pytest.raises(ValidationError):
        calculate_grace_period("standard", "brunch", WEEKDAY_0800, GracePeriodConfig())


@pytest.mark.parametrize(
    "hhmm, slot",
    [("04:00", "morning"), ("10:59", "morning"), ("11:00", "noon"), ("16:30", "evening"),
     ("21:00", "bedtime"), ("02:15", "bedtime")],
)
def test_time_slot_boundaries(hhmm, slot):
    assert resolve_time_slot(hhmm) == slot


def test_classification_keywords():
    assert classify_medication_type("Insulin glargine") == "critical"
    assert classify_medication_type("Vitamin D3") == "vitamin"
    assert classify_medication_type("Cetirizine") == "standard"
    assert classify_medication_type("Ibuprofen", is_prn=True) == "prn"
    assert classify_medication_type("Ibuprofen", frequency="as_needed") == "prn"


def test_federal_holiday_calendar():
    holidays = us_federal_holidays(2025)

    assert dt.date(2025, 1, 20) in holidays    # MLK day, 3rd Monday
    assert dt.date(2025, 5, 26) in holidays    # Memorial day, last Monday
    assert dt.date(2025, 11, 27) in holidays   # Thanksgiving
    assert is_holiday(dt.date(2025, 12, 25))
    assert not is_holiday(dt.date(2025, 1, 6))
    assert not is_holiday(dt.date(2025, 12, 25), holidays=[])


def test_validate_config_reports_every_problem():
    config = GracePeriodConfig(
        medication_overrides={"cmd-1": 600},
        weekend_multiplier=9.0,
        time_slots={"morning": {"start": "4am", "end": "10:59"}},
    )

    errors = validate_grace_config(config)

    assert len(errors) == 3
    assert validate_grace_config(GracePeriodConfig()) == []
