"""Fixtures compartilhadas: SQLite em memória recriado a cada teste."""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["LOG_FORMAT"] = "json"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["CONSULTATION_PRICING_MODE"] = "specialty"
os.environ["TAX_RATE"] = "0"

from datetime import datetime  # noqa: E402

import pytest  # noqa: E402

from clinica import scheduling, services  # noqa: E402
from clinica.db import drop_db, init_db  # noqa: E402
from clinica.logging_config import setup_logging  # noqa: E402
from clinica.models import AppointmentStatus, PatientClassification  # noqa: E402

setup_logging(log_level="INFO", log_format="json")

# segunda-feira, 02/03/2026 07:00
NOW = datetime(2026, 3, 2, 7, 0)
# quarta-feira, 04/03/2026 10:00 (51h depois de NOW)
WEDNESDAY_10 = datetime(2026, 3, 4, 10, 0)

VALID_CPFS = ["52998224725", "11144477735", "39053344705", "12345678909", "98765432100"]


@pytest.fixture(autouse=True)
def fresh_db():
    drop_db()
    init_db()
    yield


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def slot():
    return WEDNESDAY_10


@pytest.fixture
def specialty():
    return services.create_specialty("Clínica Geral", description="Atendimento geral", price=150.0)


@pytest.fixture
def doctor(specialty):
    return services.create_doctor(
        email="ana.silva@clinica.com.br",
        password="senha12345",
        first_name="Ana",
        last_name="Silva",
        crm="123456/SP",
        specialty_id=specialty["id"],
        consultation_fee=200.0,
    )


@pytest.fixture
def make_patient():
    """Fábrica de pacientes, cada um com um CPF válido diferente."""
    cpfs = iter(VALID_CPFS)
    counter = iter(range(1, 100))

    def _make(classification=PatientClassification.REGULAR, **kwargs):
        n = next(counter)
        return services.create_patient(
            email=f"paciente{n}@clinica.com.br",
            password="senha12345",
            first_name="Paciente",
            last_name=f"Numero {n}",
            cpf=next(cpfs),
            classification=classification,
            **kwargs,
        )

    return _make


@pytest.fixture
def patient(make_patient):
    return make_patient()


@pytest.fixture
def book(doctor):
    """Agenda consulta com o médico padrão em NOW; devolve o id da consulta."""

    def _book(patient_id, when=WEDNESDAY_10, **kwargs):
        kwargs.setdefault("reason", "Dor de cabeça recorrente")
        kwargs.setdefault("now", NOW)
        outcome = scheduling.book_appointment(patient_id, doctor["id"], when, **kwargs)
        assert outcome.ok
        return outcome.appointment_id

    return _book


@pytest.fixture
def confirm():
    def _confirm(appointment_id):
        return scheduling.update_appointment_status(appointment_id, AppointmentStatus.CONFIRMED)

    return _confirm
