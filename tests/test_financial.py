"""Transações financeiras e conciliação de valores."""
import pytest

from clinica import financial, scheduling
from clinica.errors import DomainError, NotFoundError
from clinica.models import FinancialStatus, TransactionType


def test_amounts_reconcile():
    assert financial.validate_financial_amounts(100.0, 10.0, 5.0, 85.0) == []
    assert financial.validate_financial_amounts(100.0, 10.0, 5.0, 85.009) == []


def test_amount_errors():
    assert financial.validate_financial_amounts(100.0, 10.0, 5.0, 80.0) == [
        "net_amount não confere com gross_amount - discount_amount - tax_amount"
    ]
    assert "gross_amount não pode ser negativo" in financial.validate_financial_amounts(-1.0)
    assert "discount_amount + tax_amount excedem gross_amount" in financial.validate_financial_amounts(50.0, 40.0, 20.0)


def test_create_transaction_computes_net(patient):
    t = financial.create_transaction(patient["id"], 150.0, discount_amount=10.0, tax_amount=5.0, payment_method="PIX")

    assert t["net_amount"] == 135.0
    assert t["status"] == "PENDING"
    assert t["transaction_type"] == "RECEIPT"


def test_create_transaction_rejects_mismatched_net(patient):
    with pytest.raises(DomainError) as exc:
        financial.create_transaction(patient["id"], 150.0, discount_amount=10.0, net_amount=100.0)

    assert exc.value.code == "INVALID_AMOUNTS"
    assert exc.value.details


def test_create_transaction_requires_existing_patient():
    with pytest.raises(NotFoundError):
        financial.create_transaction("missing", 100.0)


def test_appointment_must_belong_to_patient(make_patient, book):
    owner, other = make_patient(), make_patient()
    appointment_id = book(owner["id"])

    with pytest.raises(DomainError) as exc:
        financial.create_transaction(other["id"], 150.0, appointment_id=appointment_id)

    assert exc.value.code == "APPOINTMENT_PATIENT_MISMATCH"


def test_paid_status_propagates_to_appointment(patient, book, doctor):
    appointment_id = book(patient["id"])
    t = financial.create_transaction(patient["id"], 150.0, appointment_id=appointment_id)
    assert t["doctor_id"] == doctor["id"]

    paid = financial.update_transaction(t["id"], FinancialStatus.PAID)

    assert paid["payment_date"] is not None
    assert scheduling.get_appointment(appointment_id)["payment_status"] == "PAID"

    financial.update_transaction(t["id"], "REFUNDED")
    assert scheduling.get_appointment(appointment_id)["payment_status"] == "REFUNDED"


def test_update_transaction_recomputes_net(patient):
    t = financial.create_transaction(patient["id"], 100.0)

    updated = financial.update_transaction(t["id"], discount_amount=20.0, notes="Desconto convênio")

    assert updated["net_amount"] == 80.0
    assert updated["notes"] == "Desconto convênio"


def test_update_transaction_rejects_unknown_fields(patient):
    t = financial.create_transaction(patient["id"], 100.0)

    with pytest.raises(DomainError) as exc:
        financial.update_transaction(t["id"], patient_id="other")

    assert exc.value.code == "INVALID_FIELDS"


def test_update_transaction_rejects_null_amounts(patient):
    t = financial.create_transaction(patient["id"], 100.0)

    with pytest.raises(DomainError) as exc:
        financial.update_transaction(t["id"], gross_amount=None, payment_method=None)

    assert exc.value.details == {"fields": ["gross_amount"]}
    assert financial.get_transaction(t["id"])["gross_amount"] == 100.0


def test_list_transactions_filters(make_patient):
    first, second = make_patient(), make_patient()
    financial.create_transaction(first["id"], 100.0)
    financial.create_transaction(first["id"], 50.0, transaction_type=TransactionType.PAYMENT)
    financial.create_transaction(second["id"], 70.0)

    rows, total = financial.list_transactions(patient_id=first["id"])
    assert total == 2
    assert {r["patient_id"] for r in rows} == {first["id"]}

    rows, total = financial.list_transactions(transaction_type="RECEIPT")
    assert total == 2

    _, total = financial.list_transactions()
    assert total == 3


def test_cash_balance(patient):
    receipt = financial.create_transaction(patient["id"], 150.0, discount_amount=15.0)
    payment = financial.create_transaction(patient["id"], 50.0, transaction_type=TransactionType.PAYMENT)
    financial.create_transaction(patient["id"], 999.0)  # pendente: não entra

    financial.update_transaction(receipt["id"], FinancialStatus.PAID)
    financial.update_transaction(payment["id"], FinancialStatus.PAID)

    assert financial.cash_balance() == 85.0


def test_get_transaction(patient):
    t = financial.create_transaction(patient["id"], 80.0, description="Retorno")

    assert financial.get_transaction(t["id"])["description"] == "Retorno"
    with pytest.raises(NotFoundError):
        financial.get_transaction("missing")
