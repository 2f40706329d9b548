"""
Motor de regras da agenda.

Recebe "fotografias" imutáveis (paciente, médico, especialidade, agenda do
médico) montadas pelos serviços e devolve um RuleResult com violações,
avisos e modificações sugeridas. Não acessa o banco: quem chama decide o que
fazer com o resultado (services.py levanta RuleViolationError se houver ERROR).
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Literal

from . import business_rules as br
from .logging_config import get_logger
from .models import AppointmentStatus, AppointmentType, PatientClassification

log = get_logger(__name__)

Severity = Literal["ERROR", "WARNING", "INFO"]
Impact = Literal["LOW", "MEDIUM", "HIGH"]


# =========================
# Resultado
# =========================
@dataclass(frozen=True)
class RuleViolation:
    rule: str
    severity: Severity
    message: str
    code: str
    details: dict[str, Any] | None = None


@dataclass(frozen=True)
class RuleWarning:
    rule: str
    message: str
    impact: Impact
    suggestion: str | None = None


@dataclass(frozen=True)
class RuleModification:
    field: str
    original_value: Any
    suggested_value: Any
    reason: str
    required: bool


@dataclass
class RuleResult:
    violations: list[RuleViolation] = field(default_factory=list)
    warnings: list[RuleWarning] = field(default_factory=list)
    modifications: list[RuleModification] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def errors(self) -> list[RuleViolation]:
        return [v for v in self.violations if v.severity == "ERROR"]

    def has_code(self, code: str) -> bool:
        return any(v.code == code for v in self.violations)

    def modification(self, field_name: str) -> RuleModification | None:
        return next((m for m in self.modifications if m.field == field_name), None)

    def error(self, rule: str, code: str, message: str, **details: Any) -> None:
        self.violations.append(RuleViolation(rule, "ERROR", message, code, details or None))

    def warn(self, rule: str, message: str, impact: Impact, suggestion: str | None = None) -> None:
        self.warnings.append(RuleWarning(rule, message, impact, suggestion))

    def merge(self, other: "RuleResult") -> "RuleResult":
        self.violations.extend(other.violations)
        self.warnings.extend(other.warnings)
        self.modifications.extend(other.modifications)
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "violations": [asdict(v) for v in self.violations],
            "warnings": [asdict(w) for w in self.warnings],
            "modifications": [asdict(m) for m in self.modifications],
        }


# =========================
# Entradas
# =========================
@dataclass(frozen=True)
class PatientInfo:
    id: str
    classification: PatientClassification = PatientClassification.REGULAR
    suspended: bool = False
    no_shows_last_30_days: int = 0
    no_shows_last_90_days: int = 0
    previous_appointments: int = 0


@dataclass(frozen=True)
class AvailabilityWindow:
    day_of_week: int  # 0=segunda
    start_time: str
    end_time: str

    def contains(self, start: datetime, end: datetime) -> bool:
        return (
            start.weekday() == self.day_of_week
            and start.date() == end.date()
            and br.parse_hhmm(self.start_time) <= br.minutes_of_day(start)
            and br.minutes_of_day(end) <= br.parse_hhmm(self.end_time)
        )


@dataclass(frozen=True)
class DoctorInfo:
    id: str
    is_active: bool = True
    accepts_new_patients: bool = True
    availability: tuple[AvailabilityWindow, ...] = ()


@dataclass(frozen=True)
class SpecialtyInfo:
    id: str
    name: str
    duration: int = 30
    is_active: bool = True


@dataclass(frozen=True)
class BusySlot:
    start: datetime
    end: datetime
    appointment_id: str | None = None


@dataclass(frozen=True)
class BookingRequest:
    patient_id: str
    doctor_id: str
    specialty_id: str
    scheduled_at: datetime
    duration: int
    appointment_type: AppointmentType = AppointmentType.CONSULTATION
    urgency_level: int = 5
    reason: str | None = None

    @property
    def end(self) -> datetime:
        return self.scheduled_at + timedelta(minutes=self.duration)

    @property
    def is_emergency(self) -> bool:
        return self.appointment_type is AppointmentType.EMERGENCY


@dataclass(frozen=True)
class BookingContext:
    """Tudo o que o motor precisa saber do banco para validar um agendamento."""
    patient: PatientInfo | None
    doctor: DoctorInfo | None
    specialty: SpecialtyInfo | None
    doctor_schedule: tuple[BusySlot, ...] = ()
    emergencies_today: int = 0


@dataclass(frozen=True)
class AppointmentInfo:
    id: str
    scheduled_at: datetime
    status: AppointmentStatus
    fee: float = 0.0
    reschedule_count: int = 0
    rescheduled_from: datetime | None = None

    @classmethod
    def from_model(cls, appointment) -> "AppointmentInfo":
        return cls(
            id=appointment.id,
            scheduled_at=appointment.scheduled_at,
            status=appointment.status,
            fee=float(appointment.fee or 0),
            reschedule_count=appointment.reschedule_count,
            rescheduled_from=appointment.rescheduled_from,
        )


# =========================
# Agendamento
# =========================
def validate_booking(request: BookingRequest, context: BookingContext, now: datetime) -> RuleResult:
    result = RuleResult()
    result.merge(_timing_rules(request, context, now))
    result.merge(validate_patient_eligibility(context.patient))
    result.merge(_doctor_rules(request, context))
    result.merge(_specialty_rules(request, context))
    result.merge(_appointment_type_rules(request, now))
    result.merge(_capacity_rules(request, context))

    if request.is_emergency:
        result = apply_emergency_overrides(result, request.urgency_level)

    log.info(
        "booking_validated",
        patient_id=request.patient_id,
        doctor_id=request.doctor_id,
        is_valid=result.is_valid,
        violations=len(result.violations),
        warnings=len(result.warnings),
    )
    return result


def _timing_rules(request: BookingRequest, context: BookingContext, now: datetime) -> RuleResult:
    result = RuleResult()
    start, end = request.scheduled_at, request.end
    classification = context.patient.classification if context.patient else PatientClassification.REGULAR
    specialty_name = context.specialty.name if context.specialty else br.DEFAULT_SPECIALTY

    max_days = br.max_advance_booking_days(specialty_name, classification)
    if (start - now) > timedelta(days=max_days):
        result.error(
            "ADVANCE_BOOKING_LIMIT",
            "ADVANCE_BOOKING_EXCEEDED",
            f"Não é possível agendar com mais de {max_days} dias de antecedência.",
            max_days=max_days,
        )

    if start < now:
        result.error("MINIMUM_BOOKING_TIME", "PAST_APPOINTMENT_BOOKING", "Não é possível agendar no passado.")
    elif br.hours_until(start, now) < br.TIME_CONSTRAINTS.min_booking_notice_hours and not request.is_emergency:
        result.error(
            "MINIMUM_BOOKING_TIME",
            "INSUFFICIENT_BOOKING_TIME",
            "Agendamentos exigem pelo menos 1 hora de antecedência.",
        )

    if not br.fits_business_hours(start, end):
        result.error(
            "BUSINESS_HOURS",
            "OUTSIDE_BUSINESS_HOURS",
            "O horário deve estar dentro do expediente (07:00-19:00, fora do almoço 12:00-13:00).",
        )

    if start.date() == now.date() and now.hour >= br.TIME_CONSTRAINTS.same_day_cutoff_hour:
        result.warn(
            "SAME_DAY_CUTOFF",
            "Agendamento para o mesmo dia após o horário de corte.",
            "LOW",
            "Confirmar disponibilidade do paciente por telefone",
        )
    return result


def validate_patient_eligibility(patient: PatientInfo | None) -> RuleResult:
    result = RuleResult()
    if patient is None:
        result.error("PATIENT_EXISTS", "PATIENT_NOT_FOUND", "Paciente não encontrado.")
        return result

    if patient.suspended:
        result.error("PATIENT_STATUS", "PATIENT_SUSPENDED", "Conta do paciente suspensa.")

    strikes = br.NO_SHOW_POLICY.strikes_before_suspension
    if patient.no_shows_last_30_days >= strikes:
        result.error(
            "NO_SHOW_LIMIT",
            "NO_SHOW_LIMIT_EXCEEDED",
            "Paciente excedeu o limite de faltas.",
            no_show_count=patient.no_shows_last_30_days,
            limit=strikes,
        )
    elif patient.no_shows_last_30_days >= strikes - 1:
        result.warn("NO_SHOW_WARNING", "Paciente próximo do limite de faltas.", "HIGH", "Exigir confirmação da consulta")

    if br.get_classification_rules(patient.classification).requires_pre_screening:
        result.warn("PRE_SCREENING", "Paciente novo: realizar triagem antes da consulta.", "LOW")
    return result


def _doctor_rules(request: BookingRequest, context: BookingContext) -> RuleResult:
    result = RuleResult()
    doctor = context.doctor
    if doctor is None:
        result.error("DOCTOR_EXISTS", "DOCTOR_NOT_FOUND", "Médico não encontrado.")
        return result

    if not doctor.is_active:
        result.error("DOCTOR_ACTIVE", "DOCTOR_INACTIVE", "Médico inativo.")

    if not doctor.accepts_new_patients and context.patient and context.patient.previous_appointments == 0:
        result.error("NEW_PATIENTS", "NOT_ACCEPTING_NEW_PATIENTS", "Médico não está aceitando novos pacientes.")

    if doctor.availability and not any(w.contains(request.scheduled_at, request.end) for w in doctor.availability):
        result.error("DOCTOR_AVAILABILITY", "DOCTOR_UNAVAILABLE", "Médico não atende neste dia/horário.")
    return result


def _specialty_rules(request: BookingRequest, context: BookingContext) -> RuleResult:
    result = RuleResult()
    specialty = context.specialty
    if specialty is None:
        result.error("SPECIALTY_EXISTS", "SPECIALTY_NOT_FOUND", "Especialidade não encontrada.")
        return result

    if not specialty.is_active:
        result.error("SPECIALTY_ACTIVE", "SPECIALTY_INACTIVE", "Especialidade inativa.")

    tc = br.TIME_CONSTRAINTS
    if not tc.min_slot_duration <= request.duration <= tc.max_slot_duration:
        result.error(
            "DURATION_LIMIT",
            "INVALID_DURATION",
            f"A duração deve estar entre {tc.min_slot_duration} e {tc.max_slot_duration} minutos.",
            duration=request.duration,
        )
    elif request.duration > br.get_specialty_config(specialty.name).duration * 2:
        result.warn(
            "DURATION_LIMIT",
            "Duração muito longa para esta especialidade.",
            "MEDIUM",
            "Considere dividir em mais de uma consulta",
        )
    return result


def _appointment_type_rules(request: BookingRequest, now: datetime) -> RuleResult:
    result = RuleResult()
    type_cfg = br.get_appointment_type_config(request.appointment_type)
    label = request.appointment_type.value

    if not type_cfg.allow_same_day and br.hours_until(request.scheduled_at, now) < 24:
        result.error(
            "SAME_DAY_BOOKING",
            "SAME_DAY_BOOKING_PROHIBITED",
            f"Consultas do tipo {label} não podem ser agendadas com menos de 24h.",
        )

    if type_cfg.requires_reason and not (request.reason or "").strip():
        result.error("REASON_REQUIRED", "REASON_REQUIRED", f"O motivo é obrigatório para consultas do tipo {label}.")
    return result


def _capacity_rules(request: BookingRequest, context: BookingContext) -> RuleResult:
    result = RuleResult()
    start, end = request.scheduled_at, request.end

    overlapping = [b for b in context.doctor_schedule if b.start < end and b.end > start]
    if overlapping:
        if _overbooking_allowed(context):
            result.warn("OVERBOOKING", "Horário já ocupado: encaixe permitido.", "MEDIUM")
        else:
            result.error(
                "SLOT_CAPACITY",
                "SLOT_CAPACITY_EXCEEDED",
                "O médico já possui consulta neste horário.",
                conflicts=[b.appointment_id for b in overlapping],
            )

    if request.is_emergency and context.emergencies_today >= br.EMERGENCY_RULES.max_daily_emergency_slots:
        result.error(
            "EMERGENCY_CAPACITY",
            "EMERGENCY_CAPACITY_EXCEEDED",
            "Limite diário de encaixes de emergência atingido.",
            limit=br.EMERGENCY_RULES.max_daily_emergency_slots,
        )

    if context.specialty and context.patient and not overlapping:
        buffer = br.required_buffer(context.specialty.name, request.appointment_type, context.patient.classification)
        gap = timedelta(minutes=buffer)
        too_close = any(
            (b.end <= start and start - b.end < gap) or (b.start >= end and b.start - end < gap)
            for b in context.doctor_schedule
        )
        if too_close:
            result.warn(
                "BUFFER_TIME",
                f"Intervalo menor que {buffer} minutos em relação a outra consulta.",
                "MEDIUM",
                "Escolha um horário com intervalo adequado",
            )
    return result


def _overbooking_allowed(context: BookingContext) -> bool:
    if context.specialty and br.get_specialty_config(context.specialty.name).allow_overbooking:
        return True
    if context.patient and br.get_classification_rules(context.patient.classification).allow_overbooking:
        return True
    return False


def apply_emergency_overrides(result: RuleResult, urgency_level: int) -> RuleResult:
    """
    Emergência com urgência >= 8: violações de capacidade/encaixe viram WARNING.
    Fora do expediente com urgência >= 9 só gera uma modificação sugerida.
    """
    rules = br.EMERGENCY_RULES
    if urgency_level < rules.priority_score_threshold:
        return result

    capacity = [v for v in result.violations if "CAPACITY" in v.code or "OVERBOOKING" in v.code]
    if capacity and rules.auto_override_capacity:
        result.violations = [
            replace(v, severity="WARNING") if v in capacity else v for v in result.violations
        ]
        result.warn(
            "EMERGENCY_OVERRIDE",
            "Restrições de capacidade ignoradas para emergência.",
            "HIGH",
            "Reorganizar a agenda do médico",
        )

    if urgency_level >= rules.outside_hours_urgency and any("BUSINESS_HOURS" in v.code for v in result.violations):
        result.modifications.append(
            RuleModification(
                field="allow_outside_business_hours",
                original_value=False,
                suggested_value=True,
                reason="Emergência crítica",
                required=False,
            )
        )
    return result


def requires_confirmation(result: RuleResult, request: BookingRequest, now: datetime) -> bool:
    if any(w.impact == "HIGH" for w in result.warnings):
        return True
    if request.is_emergency:
        return True
    return br.hours_until(request.scheduled_at, now) < br.NO_SHOW_POLICY.confirmation_required_hours


# =========================
# Cancelamento
# =========================
def validate_cancellation(appointment: AppointmentInfo, now: datetime, recent_no_shows: int = 0) -> RuleResult:
    result = RuleResult()
    hours_before = br.hours_until(appointment.scheduled_at, now)

    if appointment.status is AppointmentStatus.COMPLETED:
        result.error(
            "CANCELLATION_STATUS", "COMPLETED_APPOINTMENT_CANCELLATION", "Não é possível cancelar consulta concluída."
        )
    elif appointment.status is AppointmentStatus.CANCELLED:
        result.error("CANCELLATION_STATUS", "ALREADY_CANCELLED", "Consulta já cancelada.")
    elif not br.can_transition(appointment.status, AppointmentStatus.CANCELLED):
        result.error(
            "CANCELLATION_STATUS",
            "INVALID_STATUS_TRANSITION",
            f"Não é possível cancelar consulta com status {appointment.status.value}.",
        )

    if appointment.scheduled_at < now:
        result.error("CANCELLATION_TIMING", "PAST_APPOINTMENT_CANCELLATION", "Não é possível cancelar consulta passada.")

    fee = br.calculate_cancellation_fee(max(hours_before, 0), appointment.fee)
    if fee > 0:
        result.modifications.append(
            RuleModification(
                field="cancellation_fee",
                original_value=0.0,
                suggested_value=fee,
                reason=f"Cancelamento com menos de {br.CANCELLATION_POLICY.free_cancellation_hours}h de antecedência",
                required=True,
            )
        )

    if appointment.rescheduled_from:
        result.warn("RECURRING_CANCELLATION", "Esta consulta já havia sido remarcada.", "MEDIUM")

    if recent_no_shows >= br.NO_SHOW_POLICY.strikes_before_suspension - 1:
        result.warn(
            "NO_SHOW_RISK",
            "Paciente com faltas recentes.",
            "HIGH",
            "Exigir confirmação nos próximos agendamentos",
        )
    return result


# =========================
# Remarcação
# =========================
def validate_rescheduling(
    appointment: AppointmentInfo,
    request: BookingRequest,
    context: BookingContext,
    now: datetime,
) -> RuleResult:
    """
    request descreve o novo horário; context.doctor_schedule não deve conter a própria consulta.
    Aviso prévio e taxa só valem quando o horário original ainda está ativo.
    """
    result = RuleResult()
    classification = context.patient.classification if context.patient else PatientClassification.REGULAR
    max_reschedules = br.get_classification_rules(classification).max_reschedules

    if not br.can_transition(appointment.status, AppointmentStatus.RESCHEDULED):
        result.error(
            "RESCHEDULE_STATUS",
            "INVALID_STATUS_TRANSITION",
            f"Não é possível remarcar consulta com status {appointment.status.value}.",
        )

    if appointment.reschedule_count >= max_reschedules:
        result.error(
            "MAX_RESCHEDULES",
            "RESCHEDULE_LIMIT_EXCEEDED",
            "Limite de remarcações atingido.",
            limit=max_reschedules,
        )

    if appointment.status is AppointmentStatus.SCHEDULED:
        hours_original = br.hours_until(appointment.scheduled_at, now)
        hours_new = br.hours_until(request.scheduled_at, now)

        if hours_original < br.RESCHEDULING_RULES.min_notice_hours:
            result.error(
                "RESCHEDULE_NOTICE",
                "INSUFFICIENT_RESCHEDULE_NOTICE",
                "Antecedência insuficiente para remarcar.",
                minimum_hours=br.RESCHEDULING_RULES.min_notice_hours,
            )

        if not br.RESCHEDULING_RULES.same_day_reschedule_allowed and hours_new < 24 and hours_original < 24:
            result.error(
                "SAME_DAY_RESCHEDULE",
                "SAME_DAY_RESCHEDULE_PROHIBITED",
                "Remarcação no mesmo dia não é permitida.",
            )

        fee = br.calculate_rescheduling_fee(max(hours_original, 0), appointment.fee)
        if fee > 0:
            result.modifications.append(
                RuleModification(
                    field="rescheduling_fee",
                    original_value=0.0,
                    suggested_value=fee,
                    reason=f"Remarcação com menos de {br.RESCHEDULING_RULES.free_reschedule_hours}h de antecedência",
                    required=True,
                )
            )

    return result.merge(validate_booking(request, context, now))
