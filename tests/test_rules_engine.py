"""Validação de agendamento, cancelamento e remarcação sem banco."""
from datetime import datetime, timedelta

import pytest

from clinica.models import AppointmentStatus, AppointmentType, PatientClassification
from clinica.rules_engine import (
    AppointmentInfo,
    AvailabilityWindow,
    BookingContext,
    BookingRequest,
    BusySlot,
    DoctorInfo,
    PatientInfo,
    RuleResult,
    SpecialtyInfo,
    apply_emergency_overrides,
    requires_confirmation,
    validate_booking,
    validate_cancellation,
    validate_patient_eligibility,
    validate_rescheduling,
)

NOW = datetime(2026, 3, 2, 7, 0)
WEDNESDAY_10 = datetime(2026, 3, 4, 10, 0)


def make_request(**overrides):
    data = dict(
        patient_id="p1",
        doctor_id="d1",
        specialty_id="s1",
        scheduled_at=WEDNESDAY_10,
        duration=30,
        appointment_type=AppointmentType.CONSULTATION,
        urgency_level=5,
        reason="Dor lombar",
    )
    data.update(overrides)
    return BookingRequest(**data)


def make_context(**overrides):
    data = dict(
        patient=PatientInfo("p1", PatientClassification.REGULAR, previous_appointments=1),
        doctor=DoctorInfo("d1"),
        specialty=SpecialtyInfo("s1", "Clínica Geral", 30),
        doctor_schedule=(),
        emergencies_today=0,
    )
    data.update(overrides)
    return BookingContext(**data)


def codes(result):
    return {v.code for v in result.errors}


def test_valid_booking_has_no_violations():
    result = validate_booking(make_request(), make_context(), NOW)

    assert result.is_valid
    assert result.violations == []


def test_booking_in_the_past_is_rejected():
    result = validate_booking(make_request(scheduled_at=NOW - timedelta(hours=1)), make_context(), NOW)

    assert "PAST_APPOINTMENT_BOOKING" in codes(result)


def test_booking_needs_one_hour_notice():
    result = validate_booking(make_request(scheduled_at=NOW + timedelta(minutes=30)), make_context(), NOW)

    assert "INSUFFICIENT_BOOKING_TIME" in codes(result)


def test_booking_beyond_advance_limit():
    result = validate_booking(make_request(scheduled_at=WEDNESDAY_10 + timedelta(days=61)), make_context(), NOW)

    assert "ADVANCE_BOOKING_EXCEEDED" in codes(result)


def test_vip_ignores_specialty_advance_limit():
    context = make_context(patient=PatientInfo("p1", PatientClassification.VIP, previous_appointments=1))
    result = validate_booking(make_request(scheduled_at=WEDNESDAY_10 + timedelta(days=100)), context, NOW)

    assert result.is_valid


@pytest.mark.parametrize("start", [datetime(2026, 3, 4, 6, 30), datetime(2026, 3, 4, 11, 45), datetime(2026, 3, 4, 18, 45)])
def test_booking_outside_business_hours(start):
    result = validate_booking(make_request(scheduled_at=start), make_context(), NOW)

    assert "OUTSIDE_BUSINESS_HOURS" in codes(result)


def test_same_day_cutoff_warning():
    now = datetime(2026, 3, 4, 8, 30)
    result = validate_booking(make_request(scheduled_at=datetime(2026, 3, 4, 15, 0)), make_context(), now)

    assert result.is_valid
    assert any(w.rule == "SAME_DAY_CUTOFF" and w.impact == "LOW" for w in result.warnings)


def test_patient_eligibility_rules():
    assert "PATIENT_NOT_FOUND" in codes(validate_patient_eligibility(None))
    assert "PATIENT_SUSPENDED" in codes(validate_patient_eligibility(PatientInfo("p1", suspended=True)))
    assert "NO_SHOW_LIMIT_EXCEEDED" in codes(validate_patient_eligibility(PatientInfo("p1", no_shows_last_30_days=3)))

    warned = validate_patient_eligibility(PatientInfo("p1", no_shows_last_30_days=2))
    assert warned.is_valid
    assert [w.rule for w in warned.warnings] == ["NO_SHOW_WARNING"]


def test_new_patient_gets_pre_screening_warning():
    result = validate_patient_eligibility(PatientInfo("p1", PatientClassification.NEW_PATIENT))

    assert result.is_valid
    assert any(w.rule == "PRE_SCREENING" for w in result.warnings)


def test_doctor_rules():
    inactive = validate_booking(make_request(), make_context(doctor=DoctorInfo("d1", is_active=False)), NOW)
    assert "DOCTOR_INACTIVE" in codes(inactive)

    closed = make_context(
        doctor=DoctorInfo("d1", accepts_new_patients=False),
        patient=PatientInfo("p1", previous_appointments=0),
    )
    assert "NOT_ACCEPTING_NEW_PATIENTS" in codes(validate_booking(make_request(), closed, NOW))

    returning = make_context(doctor=DoctorInfo("d1", accepts_new_patients=False))
    assert validate_booking(make_request(), returning, NOW).is_valid


def test_doctor_availability_window():
    monday_only = DoctorInfo("d1", availability=(AvailabilityWindow(0, "08:00", "12:00"),))
    result = validate_booking(make_request(), make_context(doctor=monday_only), NOW)
    assert "DOCTOR_UNAVAILABLE" in codes(result)

    wednesday = DoctorInfo("d1", availability=(AvailabilityWindow(2, "08:00", "12:00"),))
    assert validate_booking(make_request(), make_context(doctor=wednesday), NOW).is_valid


def test_duration_bounds_and_long_duration_warning():
    assert "INVALID_DURATION" in codes(validate_booking(make_request(duration=10), make_context(), NOW))
    assert "INVALID_DURATION" in codes(validate_booking(make_request(duration=121), make_context(), NOW))

    long = validate_booking(make_request(duration=90), make_context(), NOW)
    assert long.is_valid
    assert any(w.rule == "DURATION_LIMIT" and w.impact == "MEDIUM" for w in long.warnings)


def test_inactive_specialty():
    context = make_context(specialty=SpecialtyInfo("s1", "Clínica Geral", 30, is_active=False))

    assert "SPECIALTY_INACTIVE" in codes(validate_booking(make_request(), context, NOW))


def test_consultation_requires_reason():
    result = validate_booking(make_request(reason="  "), make_context(), NOW)

    assert "REASON_REQUIRED" in codes(result)


def test_routine_checkup_needs_24h():
    request = make_request(appointment_type=AppointmentType.ROUTINE_CHECKUP, scheduled_at=datetime(2026, 3, 2, 15, 0))

    assert "SAME_DAY_BOOKING_PROHIBITED" in codes(validate_booking(request, make_context(), NOW))


def test_overlapping_slot_is_rejected():
    busy = (BusySlot(WEDNESDAY_10 - timedelta(minutes=15), WEDNESDAY_10 + timedelta(minutes=15), "a1"),)
    result = validate_booking(make_request(), make_context(doctor_schedule=busy), NOW)

    assert "SLOT_CAPACITY_EXCEEDED" in codes(result)
    assert result.errors[0].details == {"conflicts": ["a1"]}


def test_overbooking_allowed_for_pediatrics():
    busy = (BusySlot(WEDNESDAY_10, WEDNESDAY_10 + timedelta(minutes=40), "a1"),)
    context = make_context(specialty=SpecialtyInfo("s1", "Pediatria", 40), doctor_schedule=busy)
    result = validate_booking(make_request(), context, NOW)

    assert result.is_valid
    assert any(w.rule == "OVERBOOKING" for w in result.warnings)


def test_buffer_warning_for_adjacent_appointment():
    busy = (BusySlot(WEDNESDAY_10 - timedelta(minutes=30), WEDNESDAY_10 - timedelta(minutes=5), "a1"),)
    result = validate_booking(make_request(), make_context(doctor_schedule=busy), NOW)

    assert result.is_valid
    assert any(w.rule == "BUFFER_TIME" for w in result.warnings)


def test_emergency_overrides_capacity():
    busy = (BusySlot(WEDNESDAY_10, WEDNESDAY_10 + timedelta(minutes=30), "a1"),)
    request = make_request(appointment_type=AppointmentType.EMERGENCY, urgency_level=9, duration=45)
    result = validate_booking(request, make_context(doctor_schedule=busy), NOW)

    assert result.is_valid
    assert any(v.code == "SLOT_CAPACITY_EXCEEDED" and v.severity == "WARNING" for v in result.violations)
    assert any(w.rule == "EMERGENCY_OVERRIDE" and w.impact == "HIGH" for w in result.warnings)


def test_low_urgency_emergency_keeps_capacity_error():
    busy = (BusySlot(WEDNESDAY_10, WEDNESDAY_10 + timedelta(minutes=30), "a1"),)
    request = make_request(appointment_type=AppointmentType.EMERGENCY, urgency_level=7, duration=45)

    assert "SLOT_CAPACITY_EXCEEDED" in codes(validate_booking(request, make_context(doctor_schedule=busy), NOW))


def test_emergency_capacity_per_day():
    request = make_request(appointment_type=AppointmentType.EMERGENCY, urgency_level=5, duration=45)

    assert "EMERGENCY_CAPACITY_EXCEEDED" in codes(validate_booking(request, make_context(emergencies_today=3), NOW))


def test_critical_emergency_outside_hours_suggests_modification():
    request = make_request(
        appointment_type=AppointmentType.EMERGENCY, urgency_level=9, duration=45,
        scheduled_at=datetime(2026, 3, 4, 20, 0),
    )
    result = validate_booking(request, make_context(), NOW)

    assert "OUTSIDE_BUSINESS_HOURS" in codes(result)
    modification = result.modification("allow_outside_business_hours")
    assert modification is not None
    assert modification.required is False


def test_apply_emergency_overrides_below_threshold_is_noop():
    result = RuleResult()
    result.error("SLOT_CAPACITY", "SLOT_CAPACITY_EXCEEDED", "ocupado")

    assert apply_emergency_overrides(result, 5).errors


def test_requires_confirmation():
    quiet = RuleResult()
    assert not requires_confirmation(quiet, make_request(), NOW)
    assert requires_confirmation(quiet, make_request(scheduled_at=NOW + timedelta(hours=5)), NOW)
    assert requires_confirmation(quiet, make_request(appointment_type=AppointmentType.EMERGENCY), NOW)

    warned = RuleResult()
    warned.warn("NO_SHOW_WARNING", "faltas", "HIGH")
    assert requires_confirmation(warned, make_request(), NOW)


def appointment(**overrides):
    data = dict(id="a1", scheduled_at=WEDNESDAY_10, status=AppointmentStatus.SCHEDULED, fee=150.0)
    data.update(overrides)
    return AppointmentInfo(**data)


def test_cancellation_fee_modification():
    result = validate_cancellation(appointment(), WEDNESDAY_10 - timedelta(hours=10))

    assert result.is_valid
    fee = result.modification("cancellation_fee")
    assert fee.suggested_value == 75.0
    assert fee.required is True


def test_free_cancellation_has_no_fee():
    assert validate_cancellation(appointment(), NOW).modification("cancellation_fee") is None


@pytest.mark.parametrize(
    "status,code",
    [
        (AppointmentStatus.COMPLETED, "COMPLETED_APPOINTMENT_CANCELLATION"),
        (AppointmentStatus.CANCELLED, "ALREADY_CANCELLED"),
        (AppointmentStatus.NO_SHOW, "INVALID_STATUS_TRANSITION"),
    ],
)
def test_cancellation_status_errors(status, code):
    assert code in codes(validate_cancellation(appointment(status=status), NOW))


def test_cancelling_past_appointment():
    result = validate_cancellation(appointment(), WEDNESDAY_10 + timedelta(hours=1))

    assert "PAST_APPOINTMENT_CANCELLATION" in codes(result)


def test_cancellation_warnings():
    result = validate_cancellation(appointment(rescheduled_from=WEDNESDAY_10 - timedelta(days=1)), NOW, recent_no_shows=2)

    assert {w.rule for w in result.warnings} == {"RECURRING_CANCELLATION", "NO_SHOW_RISK"}


def test_rescheduling_limit_by_classification():
    new_patient = make_context(patient=PatientInfo("p1", PatientClassification.NEW_PATIENT, previous_appointments=1))
    request = make_request(scheduled_at=WEDNESDAY_10 + timedelta(days=1))

    result = validate_rescheduling(appointment(reschedule_count=1), request, new_patient, NOW)
    assert "RESCHEDULE_LIMIT_EXCEEDED" in codes(result)

    assert validate_rescheduling(appointment(reschedule_count=1), request, make_context(), NOW).is_valid


def test_rescheduling_notice_and_same_day():
    request = make_request(scheduled_at=datetime(2026, 3, 4, 15, 0))

    late = validate_rescheduling(appointment(), request, make_context(), datetime(2026, 3, 4, 8, 30))
    assert "INSUFFICIENT_RESCHEDULE_NOTICE" in codes(late)

    same_day = validate_rescheduling(appointment(), request, make_context(), datetime(2026, 3, 4, 7, 0))
    assert "SAME_DAY_RESCHEDULE_PROHIBITED" in codes(same_day)


def test_rescheduling_fee_within_48h():
    request = make_request(scheduled_at=WEDNESDAY_10 + timedelta(days=1))
    result = validate_rescheduling(appointment(), request, make_context(), WEDNESDAY_10 - timedelta(hours=24))

    assert result.is_valid
    assert result.modification("rescheduling_fee").suggested_value == 30.0


def test_rescheduling_confirmed_appointment_is_invalid():
    request = make_request(scheduled_at=WEDNESDAY_10 + timedelta(days=1))
    result = validate_rescheduling(appointment(status=AppointmentStatus.CONFIRMED), request, make_context(), NOW)

    assert "INVALID_STATUS_TRANSITION" in codes(result)


def test_rescheduling_validates_new_slot():
    request = make_request(scheduled_at=datetime(2026, 3, 5, 12, 15))
    result = validate_rescheduling(appointment(), request, make_context(), NOW)

    assert "OUTSIDE_BUSINESS_HOURS" in codes(result)
