"""
Casos de uso da agenda.

Cada operação abre uma sessão (db_session), monta o contexto a partir do
banco, pede a validação ao motor de regras (rules_engine) e só então grava.
Violações ERROR viram RuleViolationError com o RuleResult em `details`.

Horários de consulta são datetimes ingênuos no relógio da clínica;
`now` pode ser injetado para testes.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.orm import Session

from . import business_rules as br
from .auth_models import UserStatus
from .auth_service import suspension_active
from .db import db_session
from .errors import ConflictError, DomainError, ForbiddenError, NotFoundError, RuleViolationError, reject_nulls
from .logging_config import get_logger
from .models import (
    ACTIVE_STATUSES,
    Appointment,
    AppointmentStatus,
    AppointmentType,
    Doctor,
    Notification,
    NotificationType,
    Patient,
    PaymentStatus,
    Specialty,
    WaitlistEntry,
)
from .pricing import calculate_consultation_price, get_pricing_config
from .rules_engine import (
    AppointmentInfo,
    AvailabilityWindow,
    BookingContext,
    BookingRequest,
    BusySlot,
    DoctorInfo,
    PatientInfo,
    RuleResult,
    SpecialtyInfo,
    requires_confirmation,
    validate_booking,
    validate_cancellation,
    validate_rescheduling,
)

log = get_logger(__name__)

WAITLIST_REASON = "Vaga liberada da lista de espera"


def _fmt(moment: datetime) -> str:
    return moment.strftime("%d/%m/%Y %H:%M")


# =========================
# DTO
# =========================
@dataclass(frozen=True)
class BookingOutcome:
    ok: bool
    appointment_id: str | None
    waitlisted: bool
    message: str
    confirmation_required: bool = False
    waitlist_entry_id: int | None = None
    warnings: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def appointment_to_dict(a: Appointment) -> dict[str, Any]:
    return {
        "id": a.id,
        "patient_id": a.patient_id,
        "patient_name": a.patient.user.full_name if a.patient else None,
        "doctor_id": a.doctor_id,
        "doctor_name": a.doctor.user.full_name if a.doctor else None,
        "specialty_id": a.specialty_id,
        "specialty": a.specialty.name if a.specialty else None,
        "scheduled_at": a.scheduled_at.isoformat(),
        "end_time": a.end_time.isoformat(),
        "duration": a.duration,
        "type": a.type.value,
        "status": a.status.value,
        "urgency_level": a.urgency_level,
        "reason": a.reason,
        "symptoms": a.symptoms,
        "notes": a.notes,
        "diagnosis": a.diagnosis,
        "prescription": a.prescription,
        "fee": a.fee,
        "cancellation_fee": a.cancellation_fee,
        "rescheduling_fee": a.rescheduling_fee,
        "payment_status": a.payment_status.value,
        "reschedule_count": a.reschedule_count,
        "rescheduled_from": a.rescheduled_from.isoformat() if a.rescheduled_from else None,
        "confirmation_required": a.confirmation_required,
        "cancelled_at": a.cancelled_at.isoformat() if a.cancelled_at else None,
        "cancel_reason": a.cancel_reason,
    }


# =========================
# Contexto para o motor de regras
# =========================
def _count(s: Session, *conditions) -> int:
    return s.scalar(select(func.count()).select_from(Appointment).where(*conditions)) or 0


def _day_bounds(moment: datetime | date) -> tuple[datetime, datetime]:
    day = moment.date() if isinstance(moment, datetime) else moment
    start = datetime.combine(day, datetime.min.time())
    return start, start + timedelta(days=1)


def _patient_info(s: Session, patient: Patient, doctor_id: str, now: datetime, exclude_id: str | None) -> PatientInfo:
    def no_shows(days: int) -> int:
        return _count(
            s,
            Appointment.patient_id == patient.id,
            Appointment.status == AppointmentStatus.NO_SHOW,
            Appointment.scheduled_at >= now - timedelta(days=days),
        )

    history = [
        Appointment.patient_id == patient.id,
        Appointment.doctor_id == doctor_id,
        Appointment.status != AppointmentStatus.CANCELLED,
    ]
    if exclude_id:
        history.append(Appointment.id != exclude_id)

    return PatientInfo(
        id=patient.id,
        classification=patient.classification,
        suspended=suspension_active(patient.user, now),
        no_shows_last_30_days=no_shows(br.NO_SHOW_POLICY.eligibility_window_days),
        no_shows_last_90_days=no_shows(br.NO_SHOW_POLICY.risk_window_days),
        previous_appointments=_count(s, *history),
    )


def _doctor_info(doctor: Doctor) -> DoctorInfo:
    return DoctorInfo(
        id=doctor.id,
        is_active=doctor.is_active,
        accepts_new_patients=doctor.accepts_new_patients,
        availability=tuple(
            AvailabilityWindow(w.day_of_week, w.start_time, w.end_time) for w in doctor.availability if w.is_active
        ),
    )


def _doctor_schedule(
    s: Session, doctor_id: str, start: datetime, end: datetime, exclude_id: str | None = None
) -> list[Appointment]:
    """Consultas ativas do médico que encostam em [start, end)."""
    q = select(Appointment).where(
        Appointment.doctor_id == doctor_id,
        Appointment.status.in_(ACTIVE_STATUSES),
        Appointment.scheduled_at < end,
        Appointment.end_time > start,
    )
    if exclude_id:
        q = q.where(Appointment.id != exclude_id)
    return list(s.scalars(q.order_by(Appointment.scheduled_at)))


def _booking_context(
    s: Session,
    patient: Patient | None,
    doctor: Doctor | None,
    specialty: Specialty | None,
    request: BookingRequest,
    now: datetime,
    exclude_id: str | None = None,
) -> BookingContext:
    day_start, day_end = _day_bounds(request.scheduled_at)
    schedule: tuple[BusySlot, ...] = ()
    emergencies = 0
    if doctor:
        schedule = tuple(
            BusySlot(a.scheduled_at, a.end_time, a.id)
            for a in _doctor_schedule(s, doctor.id, day_start, day_end, exclude_id)
        )
        conditions = [
            Appointment.doctor_id == doctor.id,
            Appointment.type == AppointmentType.EMERGENCY,
            Appointment.status.in_(ACTIVE_STATUSES),
            Appointment.scheduled_at >= day_start,
            Appointment.scheduled_at < day_end,
        ]
        if exclude_id:
            conditions.append(Appointment.id != exclude_id)
        emergencies = _count(s, *conditions)

    return BookingContext(
        patient=_patient_info(s, patient, request.doctor_id, now, exclude_id) if patient else None,
        doctor=_doctor_info(doctor) if doctor else None,
        specialty=SpecialtyInfo(specialty.id, specialty.name, specialty.duration, specialty.is_active)
        if specialty
        else None,
        doctor_schedule=schedule,
        emergencies_today=emergencies,
    )


def _default_duration(specialty: Specialty, appointment_type: AppointmentType) -> int:
    """Tabela da especialidade quando existe; senão a duração cadastrada; emergência usa a base do tipo."""
    if appointment_type is AppointmentType.EMERGENCY:
        return br.get_appointment_type_config(appointment_type).base_duration
    if br.normalize_specialty_name(specialty.name) in br.SPECIALTY_CONFIG:
        return br.get_specialty_config(specialty.name).duration
    return specialty.duration or br.default_duration(specialty.name, appointment_type)


def _get_appointment(s: Session, appointment_id: str) -> Appointment:
    a = s.get(Appointment, appointment_id)
    if not a:
        raise NotFoundError("Consulta não encontrada.", code="APPOINTMENT_NOT_FOUND")
    return a


def _check_transition(a: Appointment, new_status: AppointmentStatus) -> None:
    if not br.can_transition(a.status, new_status):
        raise DomainError(
            f"Transição de status inválida: {a.status.value} -> {new_status.value}.",
            code="INVALID_STATUS_TRANSITION",
            details={"from": a.status.value, "to": new_status.value},
        )


def _raise_if_invalid(result: RuleResult, message: str) -> None:
    if not result.is_valid:
        raise RuleViolationError(message, details=result.to_dict())


# =========================
# Notificações da consulta
# =========================
def _notify(s: Session, kind: NotificationType, message: str, a: Appointment | None = None,
            patient_id: str | None = None, scheduled_for: datetime | None = None) -> None:
    s.add(
        Notification(
            type=kind,
            message=message,
            appointment_id=a.id if a else None,
            patient_id=a.patient_id if a else patient_id,
            scheduled_for=scheduled_for,
        )
    )


def _schedule_reminders(s: Session, a: Appointment, now: datetime) -> None:
    for hours in br.NO_SHOW_POLICY.automatic_reminder_hours:
        when = a.scheduled_at - timedelta(hours=hours)
        if when > now:
            _notify(
                s,
                NotificationType.REMINDER,
                f"Lembrete: consulta em {_fmt(a.scheduled_at)} ({hours}h).",
                a,
                scheduled_for=when,
            )


def _drop_pending_reminders(s: Session, a: Appointment) -> None:
    s.execute(
        delete(Notification).where(
            Notification.appointment_id == a.id,
            Notification.type == NotificationType.REMINDER,
            Notification.sent_at.is_(None),
        )
    )


# =========================
# Agendamento (caso de uso principal)
# =========================
def _insert_appointment(
    s: Session,
    request: BookingRequest,
    result: RuleResult,
    doctor: Doctor,
    specialty: Specialty,
    now: datetime,
    symptoms: str | None = None,
    notes: str | None = None,
) -> Appointment:
    price = calculate_consultation_price(doctor.consultation_fee, specialty.price, get_pricing_config(s))
    a = Appointment(
        patient_id=request.patient_id,
        doctor_id=request.doctor_id,
        specialty_id=specialty.id,
        scheduled_at=request.scheduled_at,
        end_time=request.end,
        duration=request.duration,
        type=request.appointment_type,
        status=AppointmentStatus.SCHEDULED,
        urgency_level=request.urgency_level,
        reason=request.reason,
        symptoms=symptoms,
        notes=notes,
        fee=price.final_price,
        confirmation_required=requires_confirmation(result, request, now),
    )
    s.add(a)
    s.flush()
    _notify(s, NotificationType.CONFIRMATION, f"Consulta agendada para {_fmt(a.scheduled_at)}.", a)
    _schedule_reminders(s, a, now)
    return a


def book_appointment(
    patient_id: str,
    doctor_id: str,
    scheduled_at: datetime,
    appointment_type: AppointmentType | str = AppointmentType.CONSULTATION,
    specialty_id: str | None = None,
    duration: int | None = None,
    urgency_level: int = 5,
    reason: str | None = None,
    symptoms: str | None = None,
    notes: str | None = None,
    join_waitlist_if_full: bool = False,
    now: datetime | None = None,
) -> BookingOutcome:
    """
    Agenda uma consulta.
    - duração padrão vem da configuração da especialidade
    - valor vem da precificação (médico ou especialidade)
    - horário ocupado: opcionalmente entra na lista de espera
    - gera notificação de confirmação e lembretes
    """
    now = now or br.clinic_now()
    appointment_type = AppointmentType(appointment_type)
    if not 1 <= urgency_level <= 10:
        raise DomainError("Urgência deve estar entre 1 e 10.", code="INVALID_URGENCY")

    with db_session() as s:
        patient = s.get(Patient, patient_id)
        if not patient:
            raise NotFoundError("Paciente não encontrado.", code="PATIENT_NOT_FOUND")
        doctor = s.get(Doctor, doctor_id)
        if not doctor:
            raise NotFoundError("Médico não encontrado.", code="DOCTOR_NOT_FOUND")
        specialty = s.get(Specialty, specialty_id) if specialty_id else doctor.specialty
        if not specialty:
            raise NotFoundError("Especialidade não encontrada.", code="SPECIALTY_NOT_FOUND")

        request = BookingRequest(
            patient_id=patient.id,
            doctor_id=doctor.id,
            specialty_id=specialty.id,
            scheduled_at=scheduled_at,
            duration=duration or _default_duration(specialty, appointment_type),
            appointment_type=appointment_type,
            urgency_level=urgency_level,
            reason=reason,
        )
        result = validate_booking(request, _booking_context(s, patient, doctor, specialty, request, now), now)

        if not result.is_valid:
            only_full = {v.code for v in result.errors} == {"SLOT_CAPACITY_EXCEEDED"}
            if join_waitlist_if_full and only_full:
                entry = _add_waitlist_entry(
                    s, patient, specialty.id, doctor.id, appointment_type, urgency_level,
                    reason or f"Pedido para {_fmt(scheduled_at)} (horário ocupado).", now,
                )
                return BookingOutcome(
                    True, None, True, "Horário ocupado: paciente incluído na lista de espera.",
                    waitlist_entry_id=entry.id,
                )
            log.info("booking_rejected", patient_id=patient_id, doctor_id=doctor_id,
                     codes=[v.code for v in result.errors])
            raise RuleViolationError("Agendamento viola regras de negócio.", details=result.to_dict())

        a = _insert_appointment(s, request, result, doctor, specialty, now, symptoms, notes)
        log.info(
            "appointment_booked",
            appointment_id=a.id,
            patient_id=patient_id,
            doctor_id=doctor_id,
            scheduled_at=a.scheduled_at.isoformat(),
            type=a.type.value,
            fee=a.fee,
        )
        return BookingOutcome(
            True,
            a.id,
            False,
            "Consulta agendada.",
            confirmation_required=a.confirmation_required,
            warnings=[asdict(w) for w in result.warnings],
        )


# =========================
# Consulta / listagem
# =========================
def get_appointment(appointment_id: str) -> dict[str, Any]:
    with db_session() as s:
        return appointment_to_dict(_get_appointment(s, appointment_id))


def list_appointments(
    patient_id: str | None = None,
    doctor_id: str | None = None,
    specialty_id: str | None = None,
    status: AppointmentStatus | str | None = None,
    appointment_type: AppointmentType | str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[dict[str, Any]], int]:
    filters = []
    if patient_id:
        filters.append(Appointment.patient_id == patient_id)
    if doctor_id:
        filters.append(Appointment.doctor_id == doctor_id)
    if specialty_id:
        filters.append(Appointment.specialty_id == specialty_id)
    if status:
        filters.append(Appointment.status == AppointmentStatus(status))
    if appointment_type:
        filters.append(Appointment.type == AppointmentType(appointment_type))
    if date_from:
        filters.append(Appointment.scheduled_at >= date_from)
    if date_to:
        filters.append(Appointment.scheduled_at <= date_to)

    q = select(Appointment).where(and_(*filters)) if filters else select(Appointment)
    with db_session() as s:
        total = s.scalar(select(func.count()).select_from(q.subquery())) or 0
        rows = s.scalars(q.order_by(Appointment.scheduled_at.asc()).offset((page - 1) * limit).limit(limit))
        return [appointment_to_dict(a) for a in rows], total


def daily_agenda(doctor_id: str, day: date) -> list[dict[str, Any]]:
    start, end = _day_bounds(day)
    with db_session() as s:
        if not s.get(Doctor, doctor_id):
            raise NotFoundError("Médico não encontrado.", code="DOCTOR_NOT_FOUND")
        q = (
            select(Appointment)
            .where(
                and_(
                    Appointment.doctor_id == doctor_id,
                    Appointment.scheduled_at >= start,
                    Appointment.scheduled_at < end,
                    Appointment.status != AppointmentStatus.CANCELLED,
                )
            )
            .order_by(Appointment.scheduled_at.asc())
        )
        return [
            {
                "id": a.id,
                "start": a.scheduled_at.strftime("%H:%M"),
                "end": a.end_time.strftime("%H:%M"),
                "status": a.status.value,
                "type": a.type.value,
                "patient": a.patient.user.full_name,
                "reason": a.reason,
                "confirmation_required": a.confirmation_required,
            }
            for a in s.scalars(q)
        ]


def update_appointment(appointment_id: str, **changes: Any) -> dict[str, Any]:
    allowed = {"reason", "symptoms", "notes", "urgency_level"}
    unknown = set(changes) - allowed
    if unknown:
        raise DomainError(f"Campos não editáveis: {', '.join(sorted(unknown))}", code="INVALID_FIELDS")
    reject_nulls(changes, "urgency_level")
    if "urgency_level" in changes and not 1 <= int(changes["urgency_level"]) <= 10:
        raise DomainError("Urgência deve estar entre 1 e 10.", code="INVALID_URGENCY")

    with db_session() as s:
        a = _get_appointment(s, appointment_id)
        for key, value in changes.items():
            setattr(a, key, value)
        s.flush()
        return appointment_to_dict(a)


# =========================
# Transições de status
# =========================
def update_appointment_status(
    appointment_id: str,
    new_status: AppointmentStatus | str,
    reason: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Cancelamento e falta seguem pelos casos de uso próprios (taxa, suspensão, lista de espera)."""
    new_status = AppointmentStatus(new_status)
    if new_status is AppointmentStatus.CANCELLED:
        return cancel_appointment(appointment_id, reason, now=now)["appointment"]
    if new_status is AppointmentStatus.NO_SHOW:
        return mark_no_show(appointment_id, now=now)["appointment"]
    if new_status is AppointmentStatus.RESCHEDULED:
        raise DomainError("Use a remarcação para mudar o horário.", code="USE_RESCHEDULE")

    with db_session() as s:
        a = _get_appointment(s, appointment_id)
        _check_transition(a, new_status)
        a.status = new_status
        if new_status is AppointmentStatus.CONFIRMED:
            a.confirmation_required = False
        s.flush()
        log.info("appointment_status_changed", appointment_id=a.id, status=new_status.value)
        return appointment_to_dict(a)


def complete_appointment(
    appointment_id: str,
    doctor_id: str,
    diagnosis: str | None = None,
    prescription: str | None = None,
    notes: str | None = None,
) -> dict[str, Any]:
    with db_session() as s:
        a = _get_appointment(s, appointment_id)
        if a.doctor_id != doctor_id:
            raise ForbiddenError("Somente o médico da consulta pode concluí-la.", code="NOT_ASSIGNED_DOCTOR")
        if a.status is not AppointmentStatus.IN_PROGRESS:
            raise DomainError(
                "Somente consultas em andamento podem ser concluídas.",
                code="INVALID_STATUS_TRANSITION",
                details={"from": a.status.value, "to": AppointmentStatus.COMPLETED.value},
            )
        a.status = AppointmentStatus.COMPLETED
        a.diagnosis = diagnosis
        a.prescription = prescription
        if notes:
            a.notes = notes
        s.flush()
        log.info("appointment_completed", appointment_id=a.id, doctor_id=doctor_id)
        return appointment_to_dict(a)


# =========================
# Cancelamento
# =========================
def _recent_no_shows(s: Session, patient_id: str, now: datetime, days: int) -> int:
    return _count(
        s,
        Appointment.patient_id == patient_id,
        Appointment.status == AppointmentStatus.NO_SHOW,
        Appointment.scheduled_at >= now - timedelta(days=days),
    )


def quote_cancellation(appointment_id: str, now: datetime | None = None) -> dict[str, Any]:
    """Simula o cancelamento sem gravar nada."""
    now = now or br.clinic_now()
    with db_session() as s:
        a = _get_appointment(s, appointment_id)
        recent = _recent_no_shows(s, a.patient_id, now, br.NO_SHOW_POLICY.risk_window_days)
        result = validate_cancellation(AppointmentInfo.from_model(a), now, recent)
        fee = result.modification("cancellation_fee")
        return {
            "appointment_id": a.id,
            "hours_before": br.hours_until(a.scheduled_at, now),
            "cancellation_fee": fee.suggested_value if fee else 0.0,
            "result": result.to_dict(),
        }


def cancel_appointment(
    appointment_id: str,
    reason: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Cancela a consulta:
    - aplica a taxa conforme antecedência
    - consulta paga: estorna o valor menos a taxa
    - tenta promover alguém da lista de espera para o horário liberado
    """
    now = now or br.clinic_now()
    with db_session() as s:
        a = _get_appointment(s, appointment_id)
        recent = _recent_no_shows(s, a.patient_id, now, br.NO_SHOW_POLICY.risk_window_days)
        result = validate_cancellation(AppointmentInfo.from_model(a), now, recent)
        _raise_if_invalid(result, "Cancelamento viola regras de negócio.")

        fee = result.modification("cancellation_fee")
        a.cancellation_fee = fee.suggested_value if fee else 0.0
        refund = 0.0
        if a.payment_status is PaymentStatus.PAID:
            refund = round(max(a.fee - a.cancellation_fee, 0.0), 2)
            if refund > 0:
                a.payment_status = PaymentStatus.REFUNDED

        a.status = AppointmentStatus.CANCELLED
        a.cancelled_at = now
        a.cancel_reason = reason
        _drop_pending_reminders(s, a)
        _notify(s, NotificationType.CANCELLATION, f"Consulta cancelada. Motivo: {reason or 'n/d'}", a)
        s.flush()

        promoted = _promote_from_waitlist(s, a.doctor, a.specialty, a.scheduled_at, a.duration, now)
        log.info(
            "appointment_cancelled",
            appointment_id=a.id,
            cancellation_fee=a.cancellation_fee,
            refund=refund,
            promoted_appointment_id=promoted.id if promoted else None,
        )
        return {
            "appointment": appointment_to_dict(a),
            "cancellation_fee": a.cancellation_fee,
            "refund_amount": refund,
            "warnings": [asdict(w) for w in result.warnings],
            "promoted_appointment_id": promoted.id if promoted else None,
        }


# =========================
# Remarcação
# =========================
def reschedule_appointment(
    appointment_id: str,
    new_start: datetime,
    reason: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Move a consulta no lugar (mesmo id): RESCHEDULED -> SCHEDULED, contador +1, taxa se < 48h."""
    now = now or br.clinic_now()
    with db_session() as s:
        a = _get_appointment(s, appointment_id)
        request = BookingRequest(
            patient_id=a.patient_id,
            doctor_id=a.doctor_id,
            specialty_id=a.specialty_id,
            scheduled_at=new_start,
            duration=a.duration,
            appointment_type=a.type,
            urgency_level=a.urgency_level,
            reason=a.reason or reason,
        )
        context = _booking_context(s, a.patient, a.doctor, a.specialty, request, now, exclude_id=a.id)
        result = validate_rescheduling(AppointmentInfo.from_model(a), request, context, now)
        _raise_if_invalid(result, "Remarcação viola regras de negócio.")

        old_start, was_active = a.scheduled_at, a.status in ACTIVE_STATUSES
        if a.status is AppointmentStatus.CANCELLED:
            # consulta reaberta: taxa de cancelamento cai e o valor estornado volta a ser devido
            a.cancellation_fee = 0.0
            if a.payment_status is PaymentStatus.REFUNDED:
                a.payment_status = PaymentStatus.PENDING
        fee = result.modification("rescheduling_fee")
        if fee:
            a.rescheduling_fee = round((a.rescheduling_fee or 0.0) + fee.suggested_value, 2)

        a.rescheduled_from = old_start
        a.scheduled_at = new_start
        a.end_time = request.end
        a.reschedule_count += 1
        a.status = AppointmentStatus.SCHEDULED
        a.confirmation_required = requires_confirmation(result, request, now)
        a.cancelled_at = None
        a.cancel_reason = None
        if reason:
            a.notes = f"{a.notes}\n{reason}" if a.notes else reason

        _drop_pending_reminders(s, a)
        _notify(
            s,
            NotificationType.RESCHEDULE,
            f"Consulta remarcada de {_fmt(old_start)} para {_fmt(new_start)}.",
            a,
        )
        _schedule_reminders(s, a, now)
        s.flush()

        promoted = None
        if was_active:
            promoted = _promote_from_waitlist(s, a.doctor, a.specialty, old_start, a.duration, now)

        log.info(
            "appointment_rescheduled",
            appointment_id=a.id,
            old_start=old_start.isoformat(),
            new_start=new_start.isoformat(),
            reschedule_count=a.reschedule_count,
            rescheduling_fee=a.rescheduling_fee,
        )
        return {
            "appointment": appointment_to_dict(a),
            "rescheduling_fee": fee.suggested_value if fee else 0.0,
            "warnings": [asdict(w) for w in result.warnings],
            "promoted_appointment_id": promoted.id if promoted else None,
        }


# =========================
# Faltas
# =========================
def mark_no_show(appointment_id: str, now: datetime | None = None) -> dict[str, Any]:
    """
    Registra falta após a tolerância de atraso.
    3 faltas em 30 dias suspendem o paciente por 30 dias.
    """
    now = now or br.clinic_now()
    policy = br.NO_SHOW_POLICY
    with db_session() as s:
        a = _get_appointment(s, appointment_id)
        _check_transition(a, AppointmentStatus.NO_SHOW)
        if now < a.scheduled_at + timedelta(minutes=policy.late_arrival_tolerance_minutes):
            raise DomainError(
                f"A falta só pode ser registrada {policy.late_arrival_tolerance_minutes} minutos após o horário.",
                code="NO_SHOW_TOO_EARLY",
            )

        a.status = AppointmentStatus.NO_SHOW
        _drop_pending_reminders(s, a)
        _notify(s, NotificationType.NO_SHOW, f"Falta registrada na consulta de {_fmt(a.scheduled_at)}.", a)
        s.flush()

        strikes = _recent_no_shows(s, a.patient_id, now, policy.eligibility_window_days)
        suspended = strikes >= policy.strikes_before_suspension
        if suspended:
            user = a.patient.user
            user.status = UserStatus.SUSPENDED
            user.suspended_until = now + timedelta(days=policy.suspension_period_days)
            log.warning("patient_suspended", patient_id=a.patient_id, no_shows=strikes,
                        until=user.suspended_until.isoformat())

        log.info("appointment_no_show", appointment_id=a.id, patient_id=a.patient_id, no_shows=strikes)
        return {"appointment": appointment_to_dict(a), "no_show_count": strikes, "patient_suspended": suspended}


# =========================
# Horários disponíveis
# =========================
def _slot_score(start: datetime, busy: list[Appointment], buffer: int,
                preferred_minutes: list[int], is_emergency: bool, now: datetime) -> float:
    score = 0.5
    if preferred_minutes and any(abs(br.minutes_of_day(start) - m) <= 30 for m in preferred_minutes):
        score += 0.3
    if br.is_optimal_time(start):
        score += 0.1
    if is_emergency and (start - now) <= timedelta(hours=4):
        score += 0.2
    # agenda compacta: encosta em outra consulta respeitando o intervalo
    gap = timedelta(minutes=buffer)
    if any(timedelta(0) <= start - b.end_time <= gap + timedelta(minutes=15) for b in busy):
        score += 0.1
    return round(min(score, 1.0), 2)


def available_slots(
    doctor_id: str,
    day: date,
    appointment_type: AppointmentType | str = AppointmentType.CONSULTATION,
    duration: int | None = None,
    preferred_times: list[str] | None = None,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """
    Gera horários livres do dia:
    - janelas da grade do médico (ou expediente 07:00-19:00 sem grade)
    - pula almoço, passado/antecedência mínima e conflitos
    - ordena pela pontuação (maior primeiro) e depois pelo horário
    """
    now = now or br.clinic_now()
    appointment_type = AppointmentType(appointment_type)
    is_emergency = appointment_type is AppointmentType.EMERGENCY

    with db_session() as s:
        doctor = s.get(Doctor, doctor_id)
        if not doctor:
            raise NotFoundError("Médico não encontrado.", code="DOCTOR_NOT_FOUND")
        specialty_name = doctor.specialty.name if doctor.specialty else br.DEFAULT_SPECIALTY
        if duration is None:
            duration = _default_duration(doctor.specialty, appointment_type) if doctor.specialty \
                else br.default_duration(specialty_name, appointment_type)

        # só janelas ativas contam; sem nenhuma, vale o expediente
        active = [w for w in doctor.availability if w.is_active]
        windows = [(w.start_time, w.end_time, w.slot_duration) for w in active if w.day_of_week == day.weekday()]
        if not active:
            tc = br.TIME_CONSTRAINTS
            windows = [(tc.business_start_time, tc.business_end_time, br.RESOURCE_CONFIG.room_cleaning_time)]

        day_start, day_end = _day_bounds(day)
        busy = _doctor_schedule(s, doctor.id, day_start, day_end)
        type_cfg = br.get_appointment_type_config(appointment_type)
        buffer = br.required_buffer(specialty_name, appointment_type)
        min_notice = timedelta(hours=0 if is_emergency else br.TIME_CONSTRAINTS.min_booking_notice_hours)
        preferred = [br.parse_hhmm(t) for t in preferred_times or []]

        slots: dict[datetime, dict[str, Any]] = {}
        for start_hhmm, end_hhmm, step in windows:
            cursor = day_start + timedelta(minutes=br.parse_hhmm(start_hhmm))
            window_end = day_start + timedelta(minutes=br.parse_hhmm(end_hhmm))
            while cursor + timedelta(minutes=duration) <= window_end:
                start, end = cursor, cursor + timedelta(minutes=duration)
                cursor += timedelta(minutes=step)
                if start < now + min_notice or not br.fits_business_hours(start, end):
                    continue
                if any(b.scheduled_at < end and b.end_time > start for b in busy):
                    continue
                slots[start] = {
                    "start": start.isoformat(),
                    "end": end.isoformat(),
                    "duration": duration,
                    "effective_duration": br.effective_duration(
                        duration, br.get_specialty_config(specialty_name).buffer_time, type_cfg.buffer_multiplier
                    ),
                    "is_optimal": br.is_optimal_time(start),
                    "score": _slot_score(start, busy, buffer, preferred, is_emergency, now),
                }

        return sorted(slots.values(), key=lambda x: (-x["score"], x["start"]))


# =========================
# Lista de espera
# =========================
def waitlist_to_dict(e: WaitlistEntry, now: datetime) -> dict[str, Any]:
    return {
        "id": e.id,
        "patient_id": e.patient_id,
        "specialty_id": e.specialty_id,
        "doctor_id": e.doctor_id,
        "appointment_type": e.appointment_type.value,
        "urgency_level": e.urgency_level,
        "priority_score": e.priority_score,
        "current_priority": _current_priority(e, now),
        "reason": e.reason,
        "created_at": e.created_at.isoformat(),
    }


def _current_priority(e: WaitlistEntry, now: datetime) -> int:
    waiting = max((now - e.created_at).total_seconds() / 3600, 0)
    return br.calculate_priority_score(e.appointment_type, e.patient.classification, e.urgency_level, waiting)


def _add_waitlist_entry(
    s: Session,
    patient: Patient,
    specialty_id: str,
    doctor_id: str | None,
    appointment_type: AppointmentType,
    urgency_level: int,
    reason: str | None,
    now: datetime,
) -> WaitlistEntry:
    q = br.QUEUE_CONFIG
    duplicate = s.execute(
        select(WaitlistEntry.id).where(
            WaitlistEntry.patient_id == patient.id,
            WaitlistEntry.specialty_id == specialty_id,
            WaitlistEntry.doctor_id.is_(None) if doctor_id is None else WaitlistEntry.doctor_id == doctor_id,
        )
    ).first()
    if duplicate:
        raise ConflictError("Paciente já está na lista de espera.", code="ALREADY_IN_WAITLIST")

    if doctor_id:
        per_doctor = s.scalar(
            select(func.count()).select_from(WaitlistEntry).where(WaitlistEntry.doctor_id == doctor_id)
        ) or 0
        if per_doctor >= q.max_queue_size_per_doctor:
            raise ConflictError("Lista de espera do médico cheia.", code="WAITLIST_FULL")
    per_specialty = s.scalar(
        select(func.count()).select_from(WaitlistEntry).where(WaitlistEntry.specialty_id == specialty_id)
    ) or 0
    if per_specialty >= q.max_queue_size_per_specialty:
        raise ConflictError("Lista de espera da especialidade cheia.", code="WAITLIST_FULL")

    entry = WaitlistEntry(
        patient_id=patient.id,
        specialty_id=specialty_id,
        doctor_id=doctor_id,
        appointment_type=appointment_type,
        urgency_level=urgency_level,
        priority_score=br.calculate_priority_score(appointment_type, patient.classification, urgency_level, 0),
        reason=reason,
        created_at=now,
    )
    s.add(entry)
    s.flush()
    _notify(
        s,
        NotificationType.WAITLIST,
        "Você entrou na lista de espera: avisaremos quando surgir uma vaga.",
        patient_id=patient.id,
    )
    log.info("waitlist_joined", entry_id=entry.id, patient_id=patient.id, priority=entry.priority_score)
    return entry


def join_waitlist(
    patient_id: str,
    specialty_id: str,
    doctor_id: str | None = None,
    appointment_type: AppointmentType | str = AppointmentType.CONSULTATION,
    urgency_level: int = 5,
    reason: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or br.clinic_now()
    if not 1 <= urgency_level <= 10:
        raise DomainError("Urgência deve estar entre 1 e 10.", code="INVALID_URGENCY")
    with db_session() as s:
        patient = s.get(Patient, patient_id)
        if not patient:
            raise NotFoundError("Paciente não encontrado.", code="PATIENT_NOT_FOUND")
        if not s.get(Specialty, specialty_id):
            raise NotFoundError("Especialidade não encontrada.", code="SPECIALTY_NOT_FOUND")
        if doctor_id and not s.get(Doctor, doctor_id):
            raise NotFoundError("Médico não encontrado.", code="DOCTOR_NOT_FOUND")
        entry = _add_waitlist_entry(
            s, patient, specialty_id, doctor_id, AppointmentType(appointment_type), urgency_level, reason, now
        )
        return waitlist_to_dict(entry, now)


def _ranked_waitlist(s: Session, specialty_id: str, doctor_id: str | None, now: datetime) -> list[WaitlistEntry]:
    """Maior prioridade atual primeiro; empate: quem entrou antes."""
    cutoff = now - timedelta(hours=br.QUEUE_CONFIG.auto_remove_after_hours)
    q = select(WaitlistEntry).where(WaitlistEntry.specialty_id == specialty_id, WaitlistEntry.created_at > cutoff)
    if doctor_id:
        q = q.where(or_(WaitlistEntry.doctor_id.is_(None), WaitlistEntry.doctor_id == doctor_id))
    entries = list(s.scalars(q))
    return sorted(entries, key=lambda e: (-_current_priority(e, now), e.created_at, e.id))


def list_waitlist(specialty_id: str, doctor_id: str | None = None, now: datetime | None = None) -> list[dict[str, Any]]:
    now = now or br.clinic_now()
    with db_session() as s:
        return [waitlist_to_dict(e, now) for e in _ranked_waitlist(s, specialty_id, doctor_id, now)]


def leave_waitlist(entry_id: int) -> bool:
    with db_session() as s:
        e = s.get(WaitlistEntry, entry_id)
        if not e:
            return False
        s.delete(e)
        return True


def purge_expired_waitlist(now: datetime | None = None) -> int:
    now = now or br.clinic_now()
    cutoff = now - timedelta(hours=br.QUEUE_CONFIG.auto_remove_after_hours)
    with db_session() as s:
        removed = s.execute(delete(WaitlistEntry).where(WaitlistEntry.created_at <= cutoff)).rowcount or 0
        if removed:
            log.info("waitlist_purged", removed=removed)
        return removed


def _promote_from_waitlist(
    s: Session,
    doctor: Doctor,
    specialty: Specialty,
    start: datetime,
    duration: int,
    now: datetime,
) -> Appointment | None:
    """
    Quando um horário é liberado, agenda o primeiro da lista de espera
    que passe nas regras de agendamento. O pedido atendido sai da lista.
    """
    end = start + timedelta(minutes=duration)
    if start <= now or _doctor_schedule(s, doctor.id, start, end):
        return None

    for entry in _ranked_waitlist(s, specialty.id, doctor.id, now):
        request = BookingRequest(
            patient_id=entry.patient_id,
            doctor_id=doctor.id,
            specialty_id=specialty.id,
            scheduled_at=start,
            duration=duration,
            appointment_type=entry.appointment_type,
            urgency_level=entry.urgency_level,
            reason=entry.reason or WAITLIST_REASON,
        )
        context = _booking_context(s, entry.patient, doctor, specialty, request, now)
        result = validate_booking(request, context, now)
        if not result.is_valid:
            log.info("waitlist_candidate_skipped", entry_id=entry.id, codes=[v.code for v in result.errors])
            continue

        a = _insert_appointment(s, request, result, doctor, specialty, now, notes=WAITLIST_REASON)
        _notify(
            s,
            NotificationType.WAITLIST_PROMOTED,
            f"Surgiu uma vaga: consulta marcada para {_fmt(start)}.",
            a,
        )
        s.delete(entry)
        s.flush()
        log.info("waitlist_promoted", entry_id=entry.id, appointment_id=a.id, patient_id=entry.patient_id)
        return a
    return None
