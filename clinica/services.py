"""
Casos de uso de cadastro: especialidades, médicos, pacientes e notificações.

Os casos de uso da agenda (agendar, cancelar, remarcar, lista de espera)
ficam em scheduling.py.
"""
from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, Iterable

from sqlalchemy import func, or_, select

from . import business_rules as br
from .auth_models import User, UserRole
from .auth_service import add_user, user_to_dict
from .cpf import validate_crm
from .db import db_session
from .errors import ConflictError, DomainError, NotFoundError, reject_nulls
from .logging_config import get_logger
from .models import (
    Appointment,
    Doctor,
    DoctorAvailability,
    Notification,
    Patient,
    PatientClassification,
    Specialty,
    utcnow,
)

log = get_logger(__name__)

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


# =========================
# Serialização
# =========================
def specialty_to_dict(sp: Specialty) -> dict[str, Any]:
    cfg = br.get_specialty_config(sp.name)
    return {
        "id": sp.id,
        "name": sp.name,
        "description": sp.description,
        "duration": sp.duration,
        "price": sp.price,
        "is_active": sp.is_active,
        "buffer_time": cfg.buffer_time,
        "max_advance_booking_days": cfg.max_advance_booking_days,
    }


def doctor_to_dict(d: Doctor) -> dict[str, Any]:
    return {
        "id": d.id,
        "user_id": d.user_id,
        "name": d.user.full_name,
        "email": d.user.email,
        "crm": d.crm,
        "specialty_id": d.specialty_id,
        "specialty": d.specialty.name if d.specialty else None,
        "consultation_fee": d.consultation_fee,
        "experience_years": d.experience_years,
        "is_active": d.is_active,
        "accepts_new_patients": d.accepts_new_patients,
        "availability": [
            {
                "day_of_week": w.day_of_week,
                "start_time": w.start_time,
                "end_time": w.end_time,
                "slot_duration": w.slot_duration,
            }
            for w in sorted(d.availability, key=lambda w: (w.day_of_week, w.start_time))
            if w.is_active
        ],
    }


def patient_to_dict(p: Patient) -> dict[str, Any]:
    return {
        "id": p.id,
        "user": user_to_dict(p.user),
        "classification": p.classification.value,
        "date_of_birth": p.date_of_birth.isoformat() if p.date_of_birth else None,
        "insurance": p.insurance,
        "emergency_contact_name": p.emergency_contact_name,
        "emergency_contact_phone": p.emergency_contact_phone,
    }


def notification_to_dict(n: Notification) -> dict[str, Any]:
    return {
        "id": n.id,
        "type": n.type.value,
        "message": n.message,
        "appointment_id": n.appointment_id,
        "patient_id": n.patient_id,
        "created_at": n.created_at.isoformat(),
        "scheduled_for": n.scheduled_for.isoformat() if n.scheduled_for else None,
        "sent_at": n.sent_at.isoformat() if n.sent_at else None,
    }


# =========================
# Especialidades
# =========================
def _validate_specialty_fields(name: str | None, duration: int | None, price: float | None) -> None:
    if name is not None and len(name.strip()) < 2:
        raise DomainError("O nome da especialidade deve ter pelo menos 2 caracteres.", code="INVALID_NAME")
    tc = br.TIME_CONSTRAINTS
    if duration is not None and not tc.min_slot_duration <= duration <= tc.max_slot_duration:
        raise DomainError(
            f"A duração deve estar entre {tc.min_slot_duration} e {tc.max_slot_duration} minutos.",
            code="INVALID_DURATION",
        )
    if price is not None and price < 0:
        raise DomainError("O preço não pode ser negativo.", code="INVALID_PRICE")


def _name_taken(s, name: str, exclude_id: str | None = None) -> bool:
    q = select(Specialty.id).where(func.lower(Specialty.name) == name.strip().lower())
    if exclude_id:
        q = q.where(Specialty.id != exclude_id)
    return s.execute(q).first() is not None


def list_specialties(
    search: str | None = None,
    active: bool | None = True,
    page: int = 1,
    limit: int = 50,
) -> tuple[list[dict[str, Any]], int]:
    q = select(Specialty)
    if active is not None:
        q = q.where(Specialty.is_active.is_(active))
    if search:
        q = q.where(func.lower(Specialty.name).like(f"%{search.strip().lower()}%"))

    with db_session() as s:
        total = s.scalar(select(func.count()).select_from(q.subquery())) or 0
        rows = s.scalars(q.order_by(Specialty.name).offset((page - 1) * limit).limit(limit))
        return [specialty_to_dict(sp) for sp in rows], total


def get_specialty(specialty_id: str) -> dict[str, Any]:
    with db_session() as s:
        sp = s.get(Specialty, specialty_id)
        if not sp:
            raise NotFoundError("Especialidade não encontrada.", code="SPECIALTY_NOT_FOUND")
        return specialty_to_dict(sp)


def create_specialty(
    name: str,
    description: str | None = None,
    duration: int | None = None,
    price: float | None = None,
    is_active: bool = True,
) -> dict[str, Any]:
    """Sem duração informada usa a da tabela de configuração da especialidade."""
    _validate_specialty_fields(name, duration, price)
    name = name.strip()
    with db_session() as s:
        if _name_taken(s, name):
            raise ConflictError("Especialidade já cadastrada.", code="SPECIALTY_ALREADY_EXISTS")
        sp = Specialty(
            name=name,
            description=description,
            duration=duration or br.get_specialty_config(name).duration,
            price=price,
            is_active=is_active,
        )
        s.add(sp)
        s.flush()
        log.info("specialty_created", specialty_id=sp.id, name=sp.name)
        return specialty_to_dict(sp)


def update_specialty(specialty_id: str, **changes: Any) -> dict[str, Any]:
    allowed = {"name", "description", "duration", "price", "is_active"}
    unknown = set(changes) - allowed
    if unknown:
        raise DomainError(f"Campos não editáveis: {', '.join(sorted(unknown))}", code="INVALID_FIELDS")
    reject_nulls(changes, "name", "duration", "is_active")
    _validate_specialty_fields(changes.get("name"), changes.get("duration"), changes.get("price"))

    with db_session() as s:
        sp = s.get(Specialty, specialty_id)
        if not sp:
            raise NotFoundError("Especialidade não encontrada.", code="SPECIALTY_NOT_FOUND")
        if changes.get("name"):
            if _name_taken(s, changes["name"], exclude_id=sp.id):
                raise ConflictError("Especialidade já cadastrada.", code="SPECIALTY_ALREADY_EXISTS")
            changes["name"] = changes["name"].strip()
        for key, value in changes.items():
            setattr(sp, key, value)
        s.flush()
        return specialty_to_dict(sp)


def delete_specialty(specialty_id: str) -> None:
    with db_session() as s:
        sp = s.get(Specialty, specialty_id)
        if not sp:
            raise NotFoundError("Especialidade não encontrada.", code="SPECIALTY_NOT_FOUND")
        doctors = s.scalar(select(func.count()).select_from(Doctor).where(Doctor.specialty_id == specialty_id)) or 0
        if doctors:
            raise ConflictError(
                "Especialidade possui médicos vinculados.",
                code="SPECIALTY_IN_USE",
                details={"doctors": doctors},
            )
        appointments = s.scalar(
            select(func.count()).select_from(Appointment).where(Appointment.specialty_id == specialty_id)
        ) or 0
        if appointments:
            raise ConflictError("Especialidade possui consultas registradas.", code="SPECIALTY_IN_USE")
        s.delete(sp)
        log.info("specialty_deleted", specialty_id=specialty_id)


def doctors_by_specialty(specialty_id: str, only_active: bool = True) -> list[dict[str, Any]]:
    with db_session() as s:
        if not s.get(Specialty, specialty_id):
            raise NotFoundError("Especialidade não encontrada.", code="SPECIALTY_NOT_FOUND")
        q = select(Doctor).join(User, User.id == Doctor.user_id).where(Doctor.specialty_id == specialty_id)
        if only_active:
            q = q.where(Doctor.is_active.is_(True))
        return [doctor_to_dict(d) for d in s.scalars(q.order_by(User.full_name))]


# =========================
# Médicos
# =========================
def create_doctor(
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    crm: str,
    specialty_id: str,
    consultation_fee: float | None = None,
    experience_years: int | None = None,
    phone: str | None = None,
    cpf: str | None = None,
    accepts_new_patients: bool = True,
) -> dict[str, Any]:
    crm = (crm or "").strip().upper()
    if not validate_crm(crm):
        raise DomainError("CRM inválido (formato 123456/SP).", code="INVALID_CRM")
    if consultation_fee is not None and consultation_fee < 0:
        raise DomainError("O valor da consulta não pode ser negativo.", code="INVALID_PRICE")

    with db_session() as s:
        sp = s.get(Specialty, specialty_id)
        if not sp:
            raise NotFoundError("Especialidade não encontrada.", code="SPECIALTY_NOT_FOUND")
        if not sp.is_active:
            raise DomainError("Especialidade inativa.", code="SPECIALTY_INACTIVE")
        if s.execute(select(Doctor.id).where(Doctor.crm == crm)).first():
            raise ConflictError("CRM já cadastrado.", code="CRM_ALREADY_EXISTS")

        u = add_user(s, email, password, first_name, last_name, role=UserRole.DOCTOR, phone=phone, cpf=cpf)
        d = Doctor(
            user_id=u.id,
            crm=crm,
            specialty_id=sp.id,
            consultation_fee=consultation_fee,
            experience_years=experience_years,
            accepts_new_patients=accepts_new_patients,
        )
        s.add(d)
        s.flush()
        s.refresh(d)
        log.info("doctor_created", doctor_id=d.id, crm=crm, specialty=sp.name)
        return doctor_to_dict(d)


def get_doctor(doctor_id: str) -> dict[str, Any]:
    with db_session() as s:
        d = s.get(Doctor, doctor_id)
        if not d:
            raise NotFoundError("Médico não encontrado.", code="DOCTOR_NOT_FOUND")
        return doctor_to_dict(d)


def get_doctor_by_user(user_id: str) -> Doctor | None:
    with db_session() as s:
        return s.scalars(select(Doctor).where(Doctor.user_id == user_id)).first()


def list_doctors(specialty_id: str | None = None, only_active: bool = True) -> list[dict[str, Any]]:
    q = select(Doctor).join(User, User.id == Doctor.user_id)
    if specialty_id:
        q = q.where(Doctor.specialty_id == specialty_id)
    if only_active:
        q = q.where(Doctor.is_active.is_(True))
    with db_session() as s:
        return [doctor_to_dict(d) for d in s.scalars(q.order_by(User.full_name))]


def set_doctor_availability(doctor_id: str, windows: Iterable[dict[str, Any]]) -> dict[str, Any]:
    """Substitui a grade semanal do médico (day_of_week 0=segunda)."""
    parsed = []
    for w in windows:
        day, start, end = int(w["day_of_week"]), w["start_time"], w["end_time"]
        slot = int(w.get("slot_duration") or 30)
        if not 0 <= day <= 6:
            raise DomainError("day_of_week deve estar entre 0 e 6.", code="INVALID_AVAILABILITY")
        if not (_HHMM.match(start) and _HHMM.match(end)) or br.parse_hhmm(start) >= br.parse_hhmm(end):
            raise DomainError(f"Janela inválida: {start}-{end}.", code="INVALID_AVAILABILITY")
        if not br.TIME_CONSTRAINTS.min_slot_duration <= slot <= br.TIME_CONSTRAINTS.max_slot_duration:
            raise DomainError("slot_duration fora dos limites.", code="INVALID_AVAILABILITY")
        parsed.append(DoctorAvailability(day_of_week=day, start_time=start, end_time=end, slot_duration=slot))

    with db_session() as s:
        d = s.get(Doctor, doctor_id)
        if not d:
            raise NotFoundError("Médico não encontrado.", code="DOCTOR_NOT_FOUND")
        d.availability.clear()
        d.availability.extend(parsed)
        s.flush()
        return doctor_to_dict(d)


def update_doctor(doctor_id: str, **changes: Any) -> dict[str, Any]:
    allowed = {"specialty_id", "consultation_fee", "experience_years", "is_active", "accepts_new_patients"}
    unknown = set(changes) - allowed
    if unknown:
        raise DomainError(f"Campos não editáveis: {', '.join(sorted(unknown))}", code="INVALID_FIELDS")
    reject_nulls(changes, "is_active", "accepts_new_patients")

    with db_session() as s:
        d = s.get(Doctor, doctor_id)
        if not d:
            raise NotFoundError("Médico não encontrado.", code="DOCTOR_NOT_FOUND")
        if changes.get("specialty_id") and not s.get(Specialty, changes["specialty_id"]):
            raise NotFoundError("Especialidade não encontrada.", code="SPECIALTY_NOT_FOUND")
        for key, value in changes.items():
            setattr(d, key, value)
        s.flush()
        s.refresh(d)
        return doctor_to_dict(d)


# =========================
# Pacientes
# =========================
def create_patient(
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    cpf: str,
    phone: str | None = None,
    date_of_birth: date | None = None,
    classification: PatientClassification = PatientClassification.NEW_PATIENT,
    insurance: str | None = None,
    emergency_contact_name: str | None = None,
    emergency_contact_phone: str | None = None,
) -> dict[str, Any]:
    if not cpf:
        raise DomainError("CPF é obrigatório para pacientes.", code="CPF_REQUIRED")
    if date_of_birth and date_of_birth > date.today():
        raise DomainError("Data de nascimento no futuro.", code="INVALID_BIRTH_DATE")

    with db_session() as s:
        u = add_user(s, email, password, first_name, last_name, role=UserRole.PATIENT, phone=phone, cpf=cpf)
        p = Patient(
            user_id=u.id,
            classification=PatientClassification(classification),
            date_of_birth=date_of_birth,
            insurance=insurance,
            emergency_contact_name=emergency_contact_name,
            emergency_contact_phone=emergency_contact_phone,
        )
        s.add(p)
        s.flush()
        s.refresh(p)
        log.info("patient_created", patient_id=p.id, classification=p.classification.value)
        return patient_to_dict(p)


def get_patient(patient_id: str) -> dict[str, Any]:
    with db_session() as s:
        p = s.get(Patient, patient_id)
        if not p:
            raise NotFoundError("Paciente não encontrado.", code="PATIENT_NOT_FOUND")
        return patient_to_dict(p)


def get_patient_by_user(user_id: str) -> Patient | None:
    with db_session() as s:
        return s.scalars(select(Patient).where(Patient.user_id == user_id)).first()


def list_patients(search: str | None = None, page: int = 1, limit: int = 20) -> tuple[list[dict[str, Any]], int]:
    q = select(Patient).join(User, User.id == Patient.user_id)
    if search:
        term = f"%{search.strip().lower()}%"
        digits = re.sub(r"\D", "", search)
        conditions = [func.lower(User.full_name).like(term), func.lower(User.email).like(term)]
        if digits:
            conditions.append(User.cpf.like(f"%{digits}%"))
        q = q.where(or_(*conditions))

    with db_session() as s:
        total = s.scalar(select(func.count()).select_from(q.subquery())) or 0
        rows = s.scalars(q.order_by(User.full_name).offset((page - 1) * limit).limit(limit))
        return [patient_to_dict(p) for p in rows], total


def update_patient(patient_id: str, **changes: Any) -> dict[str, Any]:
    allowed = {"classification", "date_of_birth", "insurance", "emergency_contact_name", "emergency_contact_phone"}
    unknown = set(changes) - allowed
    if unknown:
        raise DomainError(f"Campos não editáveis: {', '.join(sorted(unknown))}", code="INVALID_FIELDS")
    reject_nulls(changes, "classification")

    with db_session() as s:
        p = s.get(Patient, patient_id)
        if not p:
            raise NotFoundError("Paciente não encontrado.", code="PATIENT_NOT_FOUND")
        if "classification" in changes:
            changes["classification"] = PatientClassification(changes["classification"])
        for key, value in changes.items():
            setattr(p, key, value)
        s.flush()
        return patient_to_dict(p)


# =========================
# Notificações (simulação do envio externo)
# =========================
def pending_notifications(limit: int = 50, now: datetime | None = None) -> list[dict[str, Any]]:
    """Notificações ainda não enviadas cujo horário já chegou (lembretes futuros ficam de fora)."""
    now = now or br.clinic_now()
    with db_session() as s:
        q = (
            select(Notification)
            .where(
                Notification.sent_at.is_(None),
                or_(Notification.scheduled_for.is_(None), Notification.scheduled_for <= now),
            )
            .order_by(Notification.created_at.asc(), Notification.id.asc())
            .limit(limit)
        )
        return [notification_to_dict(n) for n in s.scalars(q)]


def mark_notification_sent(notification_id: int) -> bool:
    with db_session() as s:
        n = s.get(Notification, notification_id)
        if not n or n.sent_at is not None:
            return False
        n.sent_at = utcnow()
        return True


def patient_notifications(patient_id: str, limit: int = 50) -> list[dict[str, Any]]:
    with db_session() as s:
        q = (
            select(Notification)
            .where(Notification.patient_id == patient_id)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(limit)
        )
        return [notification_to_dict(n) for n in s.scalars(q)]
