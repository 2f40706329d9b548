"""Especialidades, médicos, pacientes e notificações."""
from datetime import date, timedelta

import pytest

from clinica import scheduling, services
from clinica.errors import ConflictError, DomainError, NotFoundError
from clinica.models import PatientClassification


# =========================
# Especialidades
# =========================
def test_create_specialty_uses_configured_duration():
    sp = services.create_specialty("Cardiologia", price=280.0)

    assert sp["duration"] == 45
    assert sp["buffer_time"] == 15
    assert sp["max_advance_booking_days"] == 90


def test_specialty_name_must_be_unique_case_insensitive(specialty):
    with pytest.raises(ConflictError) as exc:
        services.create_specialty("clínica geral")

    assert exc.value.code == "SPECIALTY_ALREADY_EXISTS"


@pytest.mark.parametrize(
    "kwargs,code",
    [
        ({"name": "X"}, "INVALID_NAME"),
        ({"name": "Ortopedia", "duration": 10}, "INVALID_DURATION"),
        ({"name": "Ortopedia", "duration": 150}, "INVALID_DURATION"),
        ({"name": "Ortopedia", "price": -5}, "INVALID_PRICE"),
    ],
)
def test_create_specialty_validation(kwargs, code):
    with pytest.raises(DomainError) as exc:
        services.create_specialty(**kwargs)

    assert exc.value.code == code


def test_list_specialties_search_and_active_flag(specialty):
    services.create_specialty("Dermatologia", is_active=False)
    services.create_specialty("Neurologia")

    rows, total = services.list_specialties()
    assert total == 2
    assert [r["name"] for r in rows] == ["Clínica Geral", "Neurologia"]

    rows, total = services.list_specialties(search="derma", active=None)
    assert total == 1
    assert rows[0]["is_active"] is False

    rows, total = services.list_specialties(active=None, page=2, limit=2)
    assert total == 3
    assert len(rows) == 1


def test_update_specialty(specialty):
    updated = services.update_specialty(specialty["id"], price=180.0, description="Geral e preventiva")

    assert updated["price"] == 180.0
    assert updated["description"] == "Geral e preventiva"


@pytest.mark.parametrize(
    "changes,fields",
    [
        ({"name": None}, ["name"]),
        ({"duration": None, "is_active": None}, ["duration", "is_active"]),
    ],
)
def test_update_specialty_rejects_null_required_fields(specialty, changes, fields):
    with pytest.raises(DomainError) as exc:
        services.update_specialty(specialty["id"], **changes)

    assert exc.value.code == "VALIDATION_ERROR"
    assert exc.value.details == {"fields": fields}


def test_update_specialty_clears_optional_price(specialty):
    assert services.update_specialty(specialty["id"], price=None)["price"] is None


def test_delete_specialty_refused_while_doctors_reference_it(doctor, specialty):
    with pytest.raises(ConflictError) as exc:
        services.delete_specialty(specialty["id"])

    assert exc.value.code == "SPECIALTY_IN_USE"


def test_delete_unused_specialty():
    sp = services.create_specialty("Oftalmologia")

    services.delete_specialty(sp["id"])

    with pytest.raises(NotFoundError):
        services.get_specialty(sp["id"])


def test_doctors_by_specialty(doctor, specialty):
    doctors = services.doctors_by_specialty(specialty["id"])

    assert [d["id"] for d in doctors] == [doctor["id"]]
    assert doctors[0]["name"] == "Ana Silva"


# =========================
# Médicos
# =========================
def test_create_doctor(doctor, specialty):
    assert doctor["crm"] == "123456/SP"
    assert doctor["specialty_id"] == specialty["id"]
    assert doctor["availability"] == []


def test_create_doctor_rejects_bad_or_duplicate_crm(doctor, specialty):
    base = dict(password="senha12345", first_name="Rui", last_name="Costa", specialty_id=specialty["id"])

    with pytest.raises(DomainError) as exc:
        services.create_doctor(email="rui@clinica.com.br", crm="12-SP", **base)
    assert exc.value.code == "INVALID_CRM"

    with pytest.raises(ConflictError) as exc:
        services.create_doctor(email="rui@clinica.com.br", crm="123456/sp", **base)
    assert exc.value.code == "CRM_ALREADY_EXISTS"


def test_create_doctor_requires_active_specialty():
    sp = services.create_specialty("Ginecologia", is_active=False)

    with pytest.raises(DomainError) as exc:
        services.create_doctor(
            email="bia@clinica.com.br", password="senha12345", first_name="Bia", last_name="Lima",
            crm="654321/RJ", specialty_id=sp["id"],
        )

    assert exc.value.code == "SPECIALTY_INACTIVE"


def test_set_doctor_availability_replaces_windows(doctor):
    services.set_doctor_availability(doctor["id"], [{"day_of_week": 0, "start_time": "08:00", "end_time": "12:00"}])
    updated = services.set_doctor_availability(
        doctor["id"],
        [
            {"day_of_week": 2, "start_time": "08:00", "end_time": "12:00"},
            {"day_of_week": 2, "start_time": "14:00", "end_time": "18:00", "slot_duration": 20},
        ],
    )

    assert [(w["day_of_week"], w["start_time"]) for w in updated["availability"]] == [(2, "08:00"), (2, "14:00")]


@pytest.mark.parametrize(
    "window",
    [
        {"day_of_week": 7, "start_time": "08:00", "end_time": "12:00"},
        {"day_of_week": 1, "start_time": "12:00", "end_time": "08:00"},
        {"day_of_week": 1, "start_time": "8h", "end_time": "12:00"},
    ],
)
def test_set_doctor_availability_validation(doctor, window):
    with pytest.raises(DomainError) as exc:
        services.set_doctor_availability(doctor["id"], [window])

    assert exc.value.code == "INVALID_AVAILABILITY"


def test_update_doctor(doctor):
    updated = services.update_doctor(doctor["id"], accepts_new_patients=False, experience_years=12)

    assert updated["accepts_new_patients"] is False
    assert updated["experience_years"] == 12


def test_update_doctor_rejects_null_flags(doctor):
    with pytest.raises(DomainError) as exc:
        services.update_doctor(doctor["id"], is_active=None, accepts_new_patients=None)

    assert exc.value.details == {"fields": ["accepts_new_patients", "is_active"]}
    assert services.get_doctor(doctor["id"])["is_active"] is True


# =========================
# Pacientes
# =========================
def test_create_patient_defaults():
    p = services.create_patient(
        email="Maria.Souza@Clinica.com.br", password="senha12345", first_name="Maria", last_name="Souza",
        cpf="52998224725",
    )

    assert p["classification"] == "NEW_PATIENT"
    assert p["user"]["email"] == "maria.souza@clinica.com.br"
    assert p["user"]["cpf"] == "529.982.247-25"
    assert p["user"]["role"] == "PATIENT"


def test_patient_cpf_must_be_valid_and_unique(patient):
    base = dict(password="senha12345", first_name="Outro", last_name="Paciente")

    with pytest.raises(DomainError) as exc:
        services.create_patient(email="outro@clinica.com.br", cpf="123.456.789-00", **base)
    assert exc.value.code == "INVALID_CPF"

    # mesmo CPF do fixture, agora formatado
    with pytest.raises(ConflictError) as exc:
        services.create_patient(email="outro@clinica.com.br", cpf="529.982.247-25", **base)
    assert exc.value.code == "CPF_ALREADY_EXISTS"


def test_patient_email_must_be_unique(patient):
    with pytest.raises(ConflictError) as exc:
        services.create_patient(
            email="PACIENTE1@clinica.com.br", password="senha12345", first_name="A", last_name="B",
            cpf="11144477735",
        )

    assert exc.value.code == "EMAIL_ALREADY_EXISTS"


def test_patient_birth_date_cannot_be_in_future():
    with pytest.raises(DomainError) as exc:
        services.create_patient(
            email="bebe@clinica.com.br", password="senha12345", first_name="Bebê", last_name="Futuro",
            cpf="11144477735", date_of_birth=date.today() + timedelta(days=1),
        )

    assert exc.value.code == "INVALID_BIRTH_DATE"


def test_list_patients_search_by_cpf_digits(make_patient):
    first = make_patient()
    make_patient()

    rows, total = services.list_patients(search="529.982")

    assert total == 1
    assert rows[0]["id"] == first["id"]


def test_update_patient_classification(patient):
    updated = services.update_patient(patient["id"], classification="VIP", insurance="Unimed")

    assert updated["classification"] == PatientClassification.VIP.value
    assert updated["insurance"] == "Unimed"


def test_update_patient_rejects_null_classification(patient):
    with pytest.raises(DomainError) as exc:
        services.update_patient(patient["id"], classification=None)

    assert exc.value.code == "VALIDATION_ERROR"
    assert services.get_patient(patient["id"])["classification"] == "REGULAR"


def test_update_patient_rejects_unknown_fields(patient):
    with pytest.raises(DomainError) as exc:
        services.update_patient(patient["id"], cpf="11144477735")

    assert exc.value.code == "INVALID_FIELDS"


# =========================
# Notificações
# =========================
def test_booking_creates_confirmation_and_reminders(patient, book, now, slot):
    book(patient["id"])

    due = services.pending_notifications(now=now)
    assert [n["type"] for n in due] == ["CONFIRMATION"]

    later = services.pending_notifications(now=slot)
    assert sorted(n["type"] for n in later) == ["CONFIRMATION", "REMINDER", "REMINDER", "REMINDER"]


def test_mark_notification_sent(patient, book, now):
    book(patient["id"])
    notification = services.pending_notifications(now=now)[0]

    assert services.mark_notification_sent(notification["id"]) is True
    assert services.mark_notification_sent(notification["id"]) is False
    assert services.pending_notifications(now=now) == []


def test_patient_notifications(patient, book, now):
    appointment_id = book(patient["id"])
    scheduling.cancel_appointment(appointment_id, "Viagem", now=now)

    notes = services.patient_notifications(patient["id"])

    assert notes[0]["type"] == "CANCELLATION"
    assert {n["type"] for n in notes} == {"CONFIRMATION", "CANCELLATION"}
