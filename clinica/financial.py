from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import and_, func, select, true

from .db import db_session
from .errors import DomainError, NotFoundError, reject_nulls
from .logging_config import get_logger
from .models import (
    Appointment,
    Doctor,
    FinancialStatus,
    FinancialTransaction,
    Patient,
    PaymentStatus,
    TransactionType,
    utcnow,
)

log = get_logger(__name__)

AMOUNT_TOLERANCE = 0.01

# status da transação -> status de pagamento da consulta vinculada
_PAYMENT_STATUS = {
    FinancialStatus.PENDING: PaymentStatus.PENDING,
    FinancialStatus.CONFIRMED: PaymentStatus.PENDING,
    FinancialStatus.PAID: PaymentStatus.PAID,
    FinancialStatus.PARTIAL: PaymentStatus.PARTIAL,
    FinancialStatus.CANCELLED: PaymentStatus.CANCELLED,
    FinancialStatus.REFUNDED: PaymentStatus.REFUNDED,
}


def validate_financial_amounts(
    gross_amount: float | None = None,
    discount_amount: float | None = None,
    tax_amount: float | None = None,
    net_amount: float | None = None,
) -> list[str]:
    """
    Valores não podem ser negativos e, quando informado, o líquido deve
    bater com bruto - desconto - imposto (tolerância de 1 centavo).
    Retorna a lista de erros (vazia = ok).
    """
    errors: list[str] = []
    for name, value in (
        ("gross_amount", gross_amount),
        ("discount_amount", discount_amount),
        ("tax_amount", tax_amount),
        ("net_amount", net_amount),
    ):
        if value is not None and value < 0:
            errors.append(f"{name} não pode ser negativo")

    if gross_amount is None:
        return errors
    expected = gross_amount - (discount_amount or 0) - (tax_amount or 0)
    if expected < -AMOUNT_TOLERANCE:
        errors.append("discount_amount + tax_amount excedem gross_amount")
    if net_amount is not None:
        if abs(net_amount - expected) > AMOUNT_TOLERANCE:
            errors.append("net_amount não confere com gross_amount - discount_amount - tax_amount")
    return errors


def compute_net_amount(gross_amount: float, discount_amount: float = 0.0, tax_amount: float = 0.0) -> float:
    return round(gross_amount - discount_amount - tax_amount, 2)


def transaction_to_dict(t: FinancialTransaction) -> dict[str, Any]:
    return {
        "id": t.id,
        "patient_id": t.patient_id,
        "doctor_id": t.doctor_id,
        "appointment_id": t.appointment_id,
        "transaction_type": t.transaction_type.value,
        "status": t.status.value,
        "gross_amount": t.gross_amount,
        "discount_amount": t.discount_amount,
        "tax_amount": t.tax_amount,
        "net_amount": t.net_amount,
        "payment_method": t.payment_method,
        "installments": t.installments,
        "due_date": t.due_date.isoformat() if t.due_date else None,
        "payment_date": t.payment_date.isoformat() if t.payment_date else None,
        "description": t.description,
        "notes": t.notes,
        "created_by": t.created_by,
        "created_at": t.created_at.isoformat(),
    }


def create_transaction(
    patient_id: str,
    gross_amount: float,
    transaction_type: TransactionType = TransactionType.RECEIPT,
    discount_amount: float = 0.0,
    tax_amount: float = 0.0,
    net_amount: float | None = None,
    doctor_id: str | None = None,
    appointment_id: str | None = None,
    payment_method: str | None = None,
    installments: int = 1,
    due_date: datetime | None = None,
    description: str | None = None,
    notes: str | None = None,
    created_by: str | None = None,
) -> dict[str, Any]:
    errors = validate_financial_amounts(gross_amount, discount_amount, tax_amount, net_amount)
    if errors:
        raise DomainError("Valores financeiros inválidos.", code="INVALID_AMOUNTS", details=errors)
    if installments < 1:
        raise DomainError("Número de parcelas inválido.", code="INVALID_INSTALLMENTS")

    with db_session() as s:
        if not s.get(Patient, patient_id):
            raise NotFoundError("Paciente não encontrado.", code="PATIENT_NOT_FOUND")
        if doctor_id and not s.get(Doctor, doctor_id):
            raise NotFoundError("Médico não encontrado.", code="DOCTOR_NOT_FOUND")

        appointment = None
        if appointment_id:
            appointment = s.get(Appointment, appointment_id)
            if not appointment:
                raise NotFoundError("Consulta não encontrada.", code="APPOINTMENT_NOT_FOUND")
            if appointment.patient_id != patient_id:
                raise DomainError("A consulta não pertence a este paciente.", code="APPOINTMENT_PATIENT_MISMATCH")
            doctor_id = doctor_id or appointment.doctor_id

        t = FinancialTransaction(
            patient_id=patient_id,
            doctor_id=doctor_id,
            appointment_id=appointment_id,
            transaction_type=TransactionType(transaction_type),
            status=FinancialStatus.PENDING,
            gross_amount=gross_amount,
            discount_amount=discount_amount,
            tax_amount=tax_amount,
            net_amount=compute_net_amount(gross_amount, discount_amount, tax_amount),
            payment_method=payment_method,
            installments=installments,
            due_date=due_date,
            description=description,
            notes=notes,
            created_by=created_by,
        )
        s.add(t)
        if appointment:
            appointment.payment_status = PaymentStatus.PENDING
        s.flush()

        log.info(
            "transaction_created",
            transaction_id=t.id,
            patient_id=patient_id,
            transaction_type=t.transaction_type.value,
            net_amount=t.net_amount,
        )
        return transaction_to_dict(t)


_UPDATABLE = ("payment_method", "installments", "due_date", "payment_date", "description", "notes")


def update_transaction(transaction_id: str, status: FinancialStatus | str | None = None, **changes: Any) -> dict[str, Any]:
    """Atualiza campos editáveis; mudança de status reflete no pagamento da consulta vinculada."""
    unknown = set(changes) - set(_UPDATABLE) - {"gross_amount", "discount_amount", "tax_amount"}
    if unknown:
        raise DomainError(f"Campos não editáveis: {', '.join(sorted(unknown))}", code="INVALID_FIELDS")
    reject_nulls(changes, "gross_amount", "discount_amount", "tax_amount", "installments")

    with db_session() as s:
        t = s.get(FinancialTransaction, transaction_id)
        if not t:
            raise NotFoundError("Transação não encontrada.", code="TRANSACTION_NOT_FOUND")

        if {"gross_amount", "discount_amount", "tax_amount"} & set(changes):
            gross = changes.pop("gross_amount", t.gross_amount)
            discount = changes.pop("discount_amount", t.discount_amount)
            tax = changes.pop("tax_amount", t.tax_amount)
            errors = validate_financial_amounts(gross, discount, tax)
            if errors:
                raise DomainError("Valores financeiros inválidos.", code="INVALID_AMOUNTS", details=errors)
            t.gross_amount, t.discount_amount, t.tax_amount = gross, discount, tax
            t.net_amount = compute_net_amount(gross, discount, tax)

        for key, value in changes.items():
            setattr(t, key, value)

        if status is not None:
            t.status = FinancialStatus(status)
            if t.status is FinancialStatus.PAID and t.payment_date is None:
                t.payment_date = utcnow()
            if t.appointment_id:
                appointment = s.get(Appointment, t.appointment_id)
                if appointment:
                    appointment.payment_status = _PAYMENT_STATUS[t.status]

        s.flush()
        log.info("transaction_updated", transaction_id=t.id, status=t.status.value)
        return transaction_to_dict(t)


def get_transaction(transaction_id: str) -> dict[str, Any]:
    with db_session() as s:
        t = s.get(FinancialTransaction, transaction_id)
        if not t:
            raise NotFoundError("Transação não encontrada.", code="TRANSACTION_NOT_FOUND")
        return transaction_to_dict(t)


def list_transactions(
    patient_id: str | None = None,
    doctor_id: str | None = None,
    status: FinancialStatus | str | None = None,
    transaction_type: TransactionType | str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[dict[str, Any]], int]:
    filters = []
    if patient_id:
        filters.append(FinancialTransaction.patient_id == patient_id)
    if doctor_id:
        filters.append(FinancialTransaction.doctor_id == doctor_id)
    if status:
        filters.append(FinancialTransaction.status == FinancialStatus(status))
    if transaction_type:
        filters.append(FinancialTransaction.transaction_type == TransactionType(transaction_type))
    if date_from:
        filters.append(FinancialTransaction.created_at >= date_from)
    if date_to:
        filters.append(FinancialTransaction.created_at <= date_to)

    where = and_(*filters) if filters else true()
    with db_session() as s:
        total = s.scalar(select(func.count()).select_from(FinancialTransaction).where(where)) or 0
        rows = s.scalars(
            select(FinancialTransaction)
            .where(where)
            .order_by(FinancialTransaction.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return [transaction_to_dict(t) for t in rows], total


def cash_balance() -> float:
    """Recebimentos pagos/confirmados menos pagamentos pagos."""
    with db_session() as s:
        received = s.scalar(
            select(func.coalesce(func.sum(FinancialTransaction.net_amount), 0)).where(
                FinancialTransaction.transaction_type == TransactionType.RECEIPT,
                FinancialTransaction.status.in_([FinancialStatus.PAID, FinancialStatus.CONFIRMED]),
            )
        )
        paid = s.scalar(
            select(func.coalesce(func.sum(FinancialTransaction.net_amount), 0)).where(
                FinancialTransaction.transaction_type == TransactionType.PAYMENT,
                FinancialTransaction.status == FinancialStatus.PAID,
            )
        )
        return round(float(received or 0) - float(paid or 0), 2)
