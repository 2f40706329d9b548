"""
Regras de negócio da agenda: tabelas de configuração e cálculos puros.

Nada aqui acessa o banco. Os serviços e o motor de regras (rules_engine.py)
consultam estas tabelas para duração por especialidade, intervalos entre
consultas, taxas de cancelamento/remarcação, limites de remarcação,
pontuação de prioridade e horário comercial.
"""
from __future__ import annotations

import math
import unicodedata
from dataclasses import dataclass
from datetime import datetime, time

from .models import AppointmentStatus, AppointmentType, PatientClassification


# =========================
# Tabelas de configuração
# =========================
@dataclass(frozen=True)
class SpecialtyConfig:
    duration: int
    buffer_time: int
    allow_overbooking: bool
    max_advance_booking_days: int
    requires_equipment: bool


SPECIALTY_CONFIG: dict[str, SpecialtyConfig] = {
    "CLINICA_GERAL": SpecialtyConfig(30, 10, False, 60, False),
    "CARDIOLOGIA": SpecialtyConfig(45, 15, False, 90, True),
    "PEDIATRIA": SpecialtyConfig(40, 10, True, 30, False),
    "DERMATOLOGIA": SpecialtyConfig(30, 5, False, 45, True),
    "GINECOLOGIA": SpecialtyConfig(45, 15, False, 60, True),
    "OFTALMOLOGIA": SpecialtyConfig(35, 10, False, 30, True),
    "ORTOPEDIA": SpecialtyConfig(40, 15, False, 45, False),
    "NEUROLOGIA": SpecialtyConfig(50, 20, False, 90, True),
}

DEFAULT_SPECIALTY = "CLINICA_GERAL"


@dataclass(frozen=True)
class AppointmentTypeConfig:
    base_duration: int
    buffer_multiplier: float
    allow_same_day: bool
    requires_reason: bool
    priority: int | None = None
    override_capacity: bool = False


APPOINTMENT_TYPE_CONFIG: dict[AppointmentType, AppointmentTypeConfig] = {
    AppointmentType.CONSULTATION: AppointmentTypeConfig(30, 1.0, True, True),
    AppointmentType.FOLLOW_UP: AppointmentTypeConfig(25, 0.8, True, False),
    AppointmentType.EMERGENCY: AppointmentTypeConfig(45, 0.5, True, True, priority=1, override_capacity=True),
    AppointmentType.ROUTINE_CHECKUP: AppointmentTypeConfig(35, 1.2, False, False),
}


@dataclass(frozen=True)
class CancellationPolicy:
    free_cancellation_hours: int = 24
    partial_fee_hours: int = 12
    full_fee_hours: int = 2
    fee_free: float = 0.0
    fee_partial: float = 0.3
    fee_moderate: float = 0.5
    fee_full: float = 1.0


CANCELLATION_POLICY = CancellationPolicy()


@dataclass(frozen=True)
class ReschedulingRules:
    max_reschedules_per_appointment: int = 2
    free_reschedule_hours: int = 48
    same_day_reschedule_allowed: bool = False
    min_notice_hours: int = 2
    fee_rate: float = 0.2


RESCHEDULING_RULES = ReschedulingRules()


@dataclass(frozen=True)
class EmergencyRules:
    max_daily_emergency_slots: int = 3
    emergency_buffer_percentage: float = 0.15
    auto_override_capacity: bool = True
    priority_score_threshold: int = 8
    outside_hours_urgency: int = 9


EMERGENCY_RULES = EmergencyRules()


@dataclass(frozen=True)
class QueueConfig:
    max_queue_size_per_doctor: int = 50
    max_queue_size_per_specialty: int = 200
    notification_intervals: tuple[int, ...] = (24, 12, 6, 2)
    auto_remove_after_hours: int = 72
    priority_decay_hours: int = 24


QUEUE_CONFIG = QueueConfig()


@dataclass(frozen=True)
class TimeConstraints:
    business_start_time: str = "07:00"
    business_end_time: str = "19:00"
    lunch_start_time: str = "12:00"
    lunch_end_time: str = "13:00"
    min_slot_duration: int = 15
    max_slot_duration: int = 120
    booking_advance_limit_days: int = 180
    same_day_cutoff_hour: int = 8
    min_booking_notice_hours: int = 1


TIME_CONSTRAINTS = TimeConstraints()


@dataclass(frozen=True)
class ClassificationRules:
    max_reschedules: int
    priority_score: int
    advance_booking_days: int
    allow_overbooking: bool
    buffer_time_reduction: float
    requires_pre_screening: bool = False


PATIENT_CLASSIFICATION: dict[PatientClassification, ClassificationRules] = {
    PatientClassification.VIP: ClassificationRules(5, 10, 365, True, 0.5),
    PatientClassification.REGULAR: ClassificationRules(2, 5, 90, False, 1.0),
    PatientClassification.NEW_PATIENT: ClassificationRules(1, 3, 60, False, 1.2, requires_pre_screening=True),
}


@dataclass(frozen=True)
class NoShowPolicy:
    strikes_before_suspension: int = 3
    suspension_period_days: int = 30
    automatic_reminder_hours: tuple[int, ...] = (24, 4, 1)
    confirmation_required_hours: int = 24
    late_arrival_tolerance_minutes: int = 15
    eligibility_window_days: int = 30
    risk_window_days: int = 90


NO_SHOW_POLICY = NoShowPolicy()


@dataclass(frozen=True)
class RoomType:
    capacity: int
    equipment_required: tuple[str, ...]


@dataclass(frozen=True)
class ResourceConfig:
    room_types: dict[str, RoomType]
    equipment_booking_buffer: int = 30
    room_cleaning_time: int = 15


RESOURCE_CONFIG = ResourceConfig(
    room_types={
        "CONSULTATION": RoomType(1, ()),
        "PROCEDURE": RoomType(1, ("medical_equipment",)),
        "EMERGENCY": RoomType(1, ("emergency_kit",)),
        "CARDIOLOGY": RoomType(1, ("ecg", "ultrasound")),
        "RADIOLOGY": RoomType(1, ("xray", "ultrasound")),
    }
)


@dataclass(frozen=True)
class SchedulingPreferences:
    optimal_utilization_target: float = 0.85
    patient_preference_weight: float = 0.3
    doctor_preference_weight: float = 0.4
    efficiency_weight: float = 0.3
    max_consecutive_appointments: int = 8
    preferred_break_duration: int = 15


SCHEDULING_PREFERENCES = SchedulingPreferences()


@dataclass(frozen=True)
class LeaveManagement:
    advance_notice_days: int = 30
    emergency_leave_approval_hours: int = 4
    max_consecutive_days_off: int = 14
    holiday_advance_booking_restriction: bool = True


LEAVE_MANAGEMENT = LeaveManagement()


# =========================
# Helpers de tempo
# =========================
def parse_hhmm(value: str) -> int:
    """'HH:MM' -> minutos desde meia-noite."""
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def minutes_of_day(moment: datetime | time) -> int:
    return moment.hour * 60 + moment.minute


def clinic_now() -> datetime:
    """Relógio de parede da clínica (datetime ingênuo, sem microssegundos)."""
    return datetime.now().replace(microsecond=0)


def hours_until(moment: datetime, now: datetime) -> int:
    """Horas inteiras entre now e moment, truncadas em direção a zero (negativo no passado)."""
    return int((moment - now).total_seconds() / 3600)


# =========================
# Lookups
# =========================
def normalize_specialty_name(name: str) -> str:
    decomposed = unicodedata.normalize("NFKD", name)
    ascii_name = "".join(c for c in decomposed if not unicodedata.combining(c))
    return "_".join(ascii_name.upper().split())


def get_specialty_config(specialty_name: str) -> SpecialtyConfig:
    """Especialidades sem configuração própria usam a de Clínica Geral."""
    return SPECIALTY_CONFIG.get(normalize_specialty_name(specialty_name or ""), SPECIALTY_CONFIG[DEFAULT_SPECIALTY])


def get_appointment_type_config(appointment_type: AppointmentType | str) -> AppointmentTypeConfig:
    return APPOINTMENT_TYPE_CONFIG[AppointmentType(appointment_type)]


def get_classification_rules(classification: PatientClassification | str) -> ClassificationRules:
    return PATIENT_CLASSIFICATION[PatientClassification(classification)]


# =========================
# Taxas
# =========================
def cancellation_fee_rate(hours_before_appointment: float) -> float:
    p = CANCELLATION_POLICY
    if hours_before_appointment >= p.free_cancellation_hours:
        return p.fee_free
    if hours_before_appointment >= p.partial_fee_hours:
        return p.fee_partial
    if hours_before_appointment >= p.full_fee_hours:
        return p.fee_moderate
    return p.fee_full


def calculate_cancellation_fee(hours_before_appointment: float, appointment_fee: float) -> float:
    """
    Taxa de cancelamento por antecedência:
    - >= 24h: grátis
    - >= 12h: 30%
    - >= 2h : 50%
    - < 2h  : 100%
    """
    return round(appointment_fee * cancellation_fee_rate(hours_before_appointment), 2)


def calculate_rescheduling_fee(hours_before_appointment: float, appointment_fee: float) -> float:
    if hours_before_appointment >= RESCHEDULING_RULES.free_reschedule_hours:
        return 0.0
    return round(appointment_fee * RESCHEDULING_RULES.fee_rate, 2)


def can_reschedule(
    reschedule_count: int,
    hours_before_appointment: float,
    max_reschedules: int = RESCHEDULING_RULES.max_reschedules_per_appointment,
) -> bool:
    if reschedule_count >= max_reschedules:
        return False
    if hours_before_appointment < RESCHEDULING_RULES.min_notice_hours:
        return False
    return True


# =========================
# Prioridade
# =========================
def calculate_priority_score(
    appointment_type: AppointmentType | str,
    patient_classification: PatientClassification | str,
    urgency_level: int = 5,
    waiting_time_hours: float = 0,
) -> int:
    """
    Pontuação = base da classificação + bônus emergência (5)
    + bônus urgência (3 se > 7, 1 se > 5) + 1 ponto por dia de espera (máx. 3).
    """
    base_score = get_classification_rules(patient_classification).priority_score
    type_bonus = 5 if AppointmentType(appointment_type) is AppointmentType.EMERGENCY else 0
    if urgency_level > 7:
        urgency_bonus = 3
    elif urgency_level > 5:
        urgency_bonus = 1
    else:
        urgency_bonus = 0
    waiting_bonus = min(math.floor(max(waiting_time_hours, 0) / QUEUE_CONFIG.priority_decay_hours), 3)
    return base_score + type_bonus + urgency_bonus + waiting_bonus


# =========================
# Horário comercial
# =========================
def is_business_hour(value: str | time | datetime) -> bool:
    """Entre 07:00 e 19:00 (inclusive) e fora do almoço [12:00, 13:00)."""
    t = parse_hhmm(value) if isinstance(value, str) else minutes_of_day(value)
    tc = TIME_CONSTRAINTS
    return (
        parse_hhmm(tc.business_start_time) <= t <= parse_hhmm(tc.business_end_time)
        and (t < parse_hhmm(tc.lunch_start_time) or t >= parse_hhmm(tc.lunch_end_time))
    )


def fits_business_hours(start: datetime, end: datetime) -> bool:
    """O intervalo [start, end) cabe inteiro no expediente, no mesmo dia e sem invadir o almoço."""
    if end <= start or start.date() != end.date():
        return False
    tc = TIME_CONSTRAINTS
    s, e = minutes_of_day(start), minutes_of_day(end)
    if s < parse_hhmm(tc.business_start_time) or e > parse_hhmm(tc.business_end_time):
        return False
    return e <= parse_hhmm(tc.lunch_start_time) or s >= parse_hhmm(tc.lunch_end_time)


def overlaps_lunch(start: datetime, end: datetime) -> bool:
    tc = TIME_CONSTRAINTS
    return minutes_of_day(start) < parse_hhmm(tc.lunch_end_time) and minutes_of_day(end) > parse_hhmm(tc.lunch_start_time)


def is_optimal_time(moment: datetime) -> bool:
    # manhã (9-11h) e início da tarde (14-16h)
    return 9 <= moment.hour <= 11 or 14 <= moment.hour <= 16


# =========================
# Durações
# =========================
def effective_duration(base_duration: int, buffer_time: int, buffer_multiplier: float) -> int:
    return base_duration + round(buffer_time * buffer_multiplier)


def required_buffer(
    specialty_name: str,
    appointment_type: AppointmentType | str,
    classification: PatientClassification | str = PatientClassification.REGULAR,
) -> int:
    """Intervalo mínimo antes da consulta: buffer da especialidade x tipo x classificação do paciente."""
    spec = get_specialty_config(specialty_name)
    type_cfg = get_appointment_type_config(appointment_type)
    reduction = get_classification_rules(classification).buffer_time_reduction
    return round(spec.buffer_time * type_cfg.buffer_multiplier * reduction)


def default_duration(specialty_name: str, appointment_type: AppointmentType | str | None = None) -> int:
    """Duração padrão: a da especialidade; sem configuração, a base do tipo de consulta."""
    normalized = normalize_specialty_name(specialty_name or "")
    if normalized in SPECIALTY_CONFIG:
        return SPECIALTY_CONFIG[normalized].duration
    if appointment_type is not None:
        return get_appointment_type_config(appointment_type).base_duration
    return SPECIALTY_CONFIG[DEFAULT_SPECIALTY].duration


def max_advance_booking_days(specialty_name: str, classification: PatientClassification | str) -> int:
    """
    Limite de antecedência: o menor entre especialidade, classificação e o teto global.
    Pacientes VIP não ficam presos ao limite da especialidade.
    """
    rules = get_classification_rules(classification)
    limit = min(rules.advance_booking_days, TIME_CONSTRAINTS.booking_advance_limit_days)
    if PatientClassification(classification) is PatientClassification.VIP:
        return limit
    return min(limit, get_specialty_config(specialty_name).max_advance_booking_days)


# =========================
# Transições de status
# =========================
STATUS_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.PENDING: frozenset({AppointmentStatus.SCHEDULED, AppointmentStatus.CANCELLED}),
    AppointmentStatus.SCHEDULED: frozenset(
        {AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED, AppointmentStatus.RESCHEDULED}
    ),
    AppointmentStatus.CONFIRMED: frozenset(
        {AppointmentStatus.IN_PROGRESS, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW}
    ),
    AppointmentStatus.IN_PROGRESS: frozenset({AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED}),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset({AppointmentStatus.RESCHEDULED}),
    AppointmentStatus.NO_SHOW: frozenset({AppointmentStatus.RESCHEDULED}),
    AppointmentStatus.RESCHEDULED: frozenset({AppointmentStatus.SCHEDULED}),
}


def can_transition(current: AppointmentStatus | str, new: AppointmentStatus | str) -> bool:
    return AppointmentStatus(new) in STATUS_TRANSITIONS[AppointmentStatus(current)]
