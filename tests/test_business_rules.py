"""Cálculos puros das regras de negócio."""
from datetime import datetime

import pytest

from clinica import business_rules as br
from clinica.models import AppointmentStatus, AppointmentType, PatientClassification


@pytest.mark.parametrize(
    "hours,expected",
    [(48, 0.0), (24, 0.0), (23.9, 30.0), (12, 30.0), (11, 50.0), (2, 50.0), (1.9, 100.0), (0, 100.0)],
)
def test_cancellation_fee_tiers(hours, expected):
    assert br.calculate_cancellation_fee(hours, 100.0) == expected


def test_cancellation_fee_is_rounded_to_cents():
    assert br.calculate_cancellation_fee(13, 99.99) == 30.0


def test_rescheduling_fee_free_after_48h():
    assert br.calculate_rescheduling_fee(48, 150.0) == 0.0
    assert br.calculate_rescheduling_fee(47, 150.0) == 30.0


def test_can_reschedule_limits():
    assert br.can_reschedule(0, 10)
    assert not br.can_reschedule(2, 10)
    assert not br.can_reschedule(0, 1)
    assert br.can_reschedule(4, 10, max_reschedules=5)


def test_priority_score_components():
    assert br.calculate_priority_score(AppointmentType.CONSULTATION, PatientClassification.REGULAR) == 5
    assert br.calculate_priority_score(AppointmentType.EMERGENCY, PatientClassification.VIP, 9) == 10 + 5 + 3
    assert br.calculate_priority_score("CONSULTATION", "NEW_PATIENT", 6) == 3 + 1


def test_priority_waiting_bonus_is_capped():
    base = br.calculate_priority_score(AppointmentType.CONSULTATION, PatientClassification.REGULAR)
    assert br.calculate_priority_score(AppointmentType.CONSULTATION, PatientClassification.REGULAR, 5, 47) == base + 1
    assert br.calculate_priority_score(AppointmentType.CONSULTATION, PatientClassification.REGULAR, 5, 500) == base + 3


@pytest.mark.parametrize(
    "value,expected",
    [("07:00", True), ("06:59", False), ("11:59", True), ("12:00", False), ("12:59", False), ("13:00", True),
     ("19:00", True), ("19:01", False)],
)
def test_business_hour_boundaries(value, expected):
    assert br.is_business_hour(value) is expected


def test_fits_business_hours_checks_whole_interval():
    day = datetime(2026, 3, 4)
    assert br.fits_business_hours(day.replace(hour=11, minute=30), day.replace(hour=12))
    assert not br.fits_business_hours(day.replace(hour=11, minute=45), day.replace(hour=12, minute=15))
    assert not br.fits_business_hours(day.replace(hour=18, minute=45), day.replace(hour=19, minute=15))
    assert br.fits_business_hours(day.replace(hour=13), day.replace(hour=13, minute=30))


def test_overlaps_lunch():
    day = datetime(2026, 3, 4)
    assert br.overlaps_lunch(day.replace(hour=11, minute=45), day.replace(hour=12, minute=15))
    assert not br.overlaps_lunch(day.replace(hour=13), day.replace(hour=13, minute=30))


def test_specialty_lookup_ignores_accents_and_case():
    assert br.normalize_specialty_name("Clínica Geral") == "CLINICA_GERAL"
    assert br.get_specialty_config("cardiologia").duration == 45
    assert br.get_specialty_config("Especialidade Nova") == br.SPECIALTY_CONFIG["CLINICA_GERAL"]


def test_default_duration():
    assert br.default_duration("Neurologia") == 50
    assert br.default_duration("Acupuntura", AppointmentType.FOLLOW_UP) == 25
    assert br.default_duration("Acupuntura") == 30


def test_required_buffer_combines_type_and_classification():
    # 15 x 1.0 x 1.0
    assert br.required_buffer("Cardiologia", AppointmentType.CONSULTATION) == 15
    # 15 x 0.5 x 0.5
    assert br.required_buffer("Cardiologia", AppointmentType.EMERGENCY, PatientClassification.VIP) == 4
    # 10 x 1.2 x 1.2
    assert br.required_buffer("Clínica Geral", AppointmentType.ROUTINE_CHECKUP, PatientClassification.NEW_PATIENT) == 14


def test_effective_duration():
    assert br.effective_duration(30, 10, 1.2) == 42


def test_max_advance_booking_days():
    assert br.max_advance_booking_days("Pediatria", PatientClassification.REGULAR) == 30
    assert br.max_advance_booking_days("Cardiologia", PatientClassification.NEW_PATIENT) == 60
    assert br.max_advance_booking_days("Pediatria", PatientClassification.VIP) == 180


def test_status_transitions():
    assert br.can_transition(AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED)
    assert br.can_transition("CONFIRMED", "NO_SHOW")
    assert br.can_transition(AppointmentStatus.RESCHEDULED, AppointmentStatus.SCHEDULED)
    assert not br.can_transition(AppointmentStatus.SCHEDULED, AppointmentStatus.NO_SHOW)
    assert not br.can_transition(AppointmentStatus.SCHEDULED, AppointmentStatus.COMPLETED)
    for status in AppointmentStatus:
        assert not br.can_transition(AppointmentStatus.COMPLETED, status)


def test_hours_until_truncates():
    now = datetime(2026, 3, 2, 7, 0)
    assert br.hours_until(datetime(2026, 3, 2, 9, 59), now) == 2
    assert br.hours_until(datetime(2026, 3, 2, 6, 30), now) == 0
    assert br.hours_until(datetime(2026, 3, 2, 5, 0), now) == -2
