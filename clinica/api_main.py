from __future__ import annotations

import time
from dataclasses import asdict
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, Literal

import structlog
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from pydantic import BaseModel, EmailStr, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import business_rules as br
from . import config, financial, scheduling, services
from .auth_models import User, UserRole, UserStatus
from .auth_security import create_user_token, get_subject
from .auth_service import (
    authenticate,
    deactivate_user,
    get_user,
    get_user_by_id,
    list_users,
    suspension_active,
    update_user,
)
from .db import db_session, init_db
from .errors import DomainError, ForbiddenError, NotFoundError
from .logging_config import generate_request_id, get_logger, setup_logging
from .models import (
    AppointmentStatus,
    AppointmentType,
    FinancialStatus,
    PatientClassification,
    TransactionType,
)
from .pricing import calculate_consultation_price, format_currency, get_pricing_config, update_pricing_config
from .seed import seed_base

log = get_logger(__name__)

# OAuth2 Bearer (Authorization: Bearer <token>)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{config.API_PREFIX}/auth/login")

STAFF = (UserRole.ADMIN, UserRole.RECEPTIONIST)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # cria tabelas e seed base (idempotente)
    setup_logging()
    init_db()
    seed_base()
    log.info("api_started", prefix=config.API_PREFIX)
    yield


app = FastAPI(title="Clínica API", version="1.0.0", lifespan=lifespan)
api = APIRouter(prefix=config.API_PREFIX)


# =========================
# Envelope de resposta
# =========================
def ok(data: Any = None, meta: dict | None = None, pagination: dict | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {"success": True, "data": data}
    if meta is not None:
        body["meta"] = meta
    if pagination is not None:
        body["pagination"] = pagination
    return body


def paginated(rows: list, total: int, page: int, limit: int) -> dict[str, Any]:
    pages = (total + limit - 1) // limit if limit else 0
    return ok(rows, pagination={"page": page, "limit": limit, "total": total, "total_pages": pages})


def _error(status_code: int, code: str, message: str, details: Any = None) -> JSONResponse:
    error: dict[str, Any] = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"success": False, "error": jsonable_encoder(error)})


_HTTP_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
}


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    log.info("domain_error", code=exc.code, status=exc.status_code, path=request.url.path)
    return _error(exc.status_code, exc.code, exc.message, exc.details)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    response = _error(exc.status_code, _HTTP_CODES.get(exc.status_code, "HTTP_ERROR"), str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error(status.HTTP_400_BAD_REQUEST, "VALIDATION_ERROR", "Dados inválidos.", exc.errors())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    log.exception("unhandled_error", path=request.url.path)
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "INTERNAL_ERROR", "Erro interno.")


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or generate_request_id()
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)
    started = time.perf_counter()
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    log.info(
        "request_completed",
        method=request.method,
        path=request.url.path,
        status=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 1),
    )
    return response


# =========================
# Schemas
# =========================
class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"


class PatientIn(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    cpf: str
    phone: str | None = None
    date_of_birth: date | None = None
    insurance: str | None = None
    emergency_contact_name: str | None = None
    emergency_contact_phone: str | None = None


class StaffPatientIn(PatientIn):
    classification: PatientClassification = PatientClassification.NEW_PATIENT


class PatientUpdateIn(BaseModel):
    classification: PatientClassification | None = None
    date_of_birth: date | None = None
    insurance: str | None = None
    emergency_contact_name: str | None = None
    emergency_contact_phone: str | None = None


class UserUpdateIn(BaseModel):
    email: EmailStr | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    cpf: str | None = None
    role: UserRole | None = None
    status: UserStatus | None = None


class DoctorIn(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    crm: str
    specialty_id: str
    consultation_fee: float | None = Field(default=None, ge=0)
    experience_years: int | None = Field(default=None, ge=0)
    phone: str | None = None
    cpf: str | None = None
    accepts_new_patients: bool = True


class DoctorUpdateIn(BaseModel):
    specialty_id: str | None = None
    consultation_fee: float | None = Field(default=None, ge=0)
    experience_years: int | None = Field(default=None, ge=0)
    is_active: bool | None = None
    accepts_new_patients: bool | None = None


class AvailabilityWindowIn(BaseModel):
    day_of_week: int = Field(..., ge=0, le=6)
    start_time: str
    end_time: str
    slot_duration: int = 30


class SpecialtyIn(BaseModel):
    name: str = Field(..., min_length=2)
    description: str | None = None
    duration: int | None = Field(default=None, ge=15, le=120)
    price: float | None = Field(default=None, ge=0)
    is_active: bool = True


class SpecialtyUpdateIn(BaseModel):
    name: str | None = Field(default=None, min_length=2)
    description: str | None = None
    duration: int | None = Field(default=None, ge=15, le=120)
    price: float | None = Field(default=None, ge=0)
    is_active: bool | None = None


class AppointmentIn(BaseModel):
    patient_id: str | None = None  # paciente logado: ignorado
    doctor_id: str
    scheduled_at: datetime
    type: AppointmentType = AppointmentType.CONSULTATION
    specialty_id: str | None = None
    duration: int | None = Field(default=None, ge=15, le=120)
    urgency_level: int = Field(default=5, ge=1, le=10)
    reason: str | None = None
    symptoms: str | None = None
    notes: str | None = None
    join_waitlist_if_full: bool = False


class AppointmentUpdateIn(BaseModel):
    reason: str | None = None
    symptoms: str | None = None
    notes: str | None = None
    urgency_level: int | None = Field(default=None, ge=1, le=10)


class StatusIn(BaseModel):
    status: AppointmentStatus
    reason: str | None = None


class CancelIn(BaseModel):
    reason: str | None = None


class RescheduleIn(BaseModel):
    new_start: datetime
    reason: str | None = None


class CompleteIn(BaseModel):
    diagnosis: str | None = None
    prescription: str | None = None
    notes: str | None = None


class WaitlistIn(BaseModel):
    patient_id: str | None = None
    specialty_id: str
    doctor_id: str | None = None
    appointment_type: AppointmentType = AppointmentType.CONSULTATION
    urgency_level: int = Field(default=5, ge=1, le=10)
    reason: str | None = None


class TransactionIn(BaseModel):
    patient_id: str
    gross_amount: float = Field(..., ge=0)
    transaction_type: TransactionType = TransactionType.RECEIPT
    discount_amount: float = Field(default=0.0, ge=0)
    tax_amount: float = Field(default=0.0, ge=0)
    net_amount: float | None = Field(default=None, ge=0)
    doctor_id: str | None = None
    appointment_id: str | None = None
    payment_method: str | None = None
    installments: int = Field(default=1, ge=1)
    due_date: datetime | None = None
    description: str | None = Field(default=None, max_length=500)
    notes: str | None = Field(default=None, max_length=1000)


class TransactionUpdateIn(BaseModel):
    status: FinancialStatus | None = None
    gross_amount: float | None = Field(default=None, ge=0)
    discount_amount: float | None = Field(default=None, ge=0)
    tax_amount: float | None = Field(default=None, ge=0)
    payment_method: str | None = None
    installments: int | None = Field(default=None, ge=1)
    due_date: datetime | None = None
    payment_date: datetime | None = None
    description: str | None = Field(default=None, max_length=500)
    notes: str | None = Field(default=None, max_length=1000)


class PricingConfigIn(BaseModel):
    consultation_pricing_mode: Literal["doctor", "specialty"] | None = None
    default_currency: str | None = Field(default=None, min_length=3, max_length=3)
    tax_rate: float | None = Field(default=None, ge=0)


def _set_fields(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(exclude_unset=True)


# =========================
# Dependências auth
# =========================
def get_current_user(token: str = Depends(oauth2_scheme)) -> User:
    """
    Usuário do token:
    - token inválido, expirado ou de usuário removido: 401
    - conta inativa: 401 (precisa novo login depois de reativada)
    - suspensão em vigor: 403 ACCOUNT_SUSPENDED, mesmo com token emitido antes dela
    """
    user_id = get_subject(token.strip().strip("\"'"))
    u = get_user_by_id(user_id) if user_id else None
    if u is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token inválido ou expirado")
    if suspension_active(u):
        until = u.suspended_until.strftime("%d/%m/%Y") if u.suspended_until else "liberação manual"
        raise ForbiddenError(f"Conta suspensa até {until}.", code="ACCOUNT_SUSPENDED")
    if u.status is UserStatus.INACTIVE:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Conta inativa")
    return u


def require_roles(*roles: UserRole):
    def dependency(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            raise ForbiddenError("Permissão insuficiente.", code="INSUFFICIENT_PERMISSIONS")
        return user

    return dependency


def _own_patient_id(user: User) -> str:
    p = services.get_patient_by_user(user.id)
    if not p:
        raise NotFoundError("Perfil de paciente não encontrado.", code="PATIENT_NOT_FOUND")
    return p.id


def _own_doctor_id(user: User) -> str:
    d = services.get_doctor_by_user(user.id)
    if not d:
        raise NotFoundError("Perfil de médico não encontrado.", code="DOCTOR_NOT_FOUND")
    return d.id


def _check_appointment_access(user: User, appointment: dict[str, Any]) -> None:
    if user.role is UserRole.PATIENT and appointment["patient_id"] != _own_patient_id(user):
        raise ForbiddenError("Acesso negado a esta consulta.")
    if user.role is UserRole.DOCTOR and appointment["doctor_id"] != _own_doctor_id(user):
        raise ForbiddenError("Acesso negado a esta consulta.")


# =========================
# Health
# =========================
@app.get("/health")
def health() -> dict[str, Any]:
    return ok({"status": "ok"})


# =========================
# AUTH
# =========================
@api.post("/auth/register", status_code=status.HTTP_201_CREATED)
def register(payload: PatientIn) -> dict[str, Any]:
    """Cadastro público de paciente."""
    return ok(services.create_patient(**payload.model_dump()))


@api.post("/auth/login", response_model=TokenOut)
def login(form: OAuth2PasswordRequestForm = Depends()) -> TokenOut:
    u = authenticate(form.username, form.password)
    if not u:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Credenciais inválidas")

    token = create_user_token(u)
    return TokenOut(access_token=token)


@api.get("/auth/me")
def me(user: User = Depends(get_current_user)) -> dict[str, Any]:
    return ok(get_user(user.id))


# =========================
# Usuários (ADMIN)
# =========================
@api.get("/users")
def api_list_users(
    role: UserRole | None = None,
    user_status: UserStatus | None = Query(default=None, alias="status"),
    search: str | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(require_roles(UserRole.ADMIN)),
) -> dict[str, Any]:
    rows, total = list_users(role, user_status, search, page, limit)
    return paginated(rows, total, page, limit)


@api.get("/users/{user_id}")
def api_get_user(user_id: str, user: User = Depends(require_roles(UserRole.ADMIN))) -> dict[str, Any]:
    return ok(get_user(user_id))


@api.patch("/users/{user_id}")
def api_update_user(
    user_id: str, payload: UserUpdateIn, user: User = Depends(require_roles(UserRole.ADMIN))
) -> dict[str, Any]:
    return ok(update_user(user_id, **_set_fields(payload)))


@api.delete("/users/{user_id}")
def api_deactivate_user(user_id: str, user: User = Depends(require_roles(UserRole.ADMIN))) -> dict[str, Any]:
    return ok(deactivate_user(user_id))


# =========================
# Pacientes
# =========================
@api.post("/patients", status_code=status.HTTP_201_CREATED)
def api_create_patient(payload: StaffPatientIn, user: User = Depends(require_roles(*STAFF))) -> dict[str, Any]:
    return ok(services.create_patient(**payload.model_dump()))


@api.get("/patients")
def api_list_patients(
    search: str | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(require_roles(*STAFF, UserRole.DOCTOR)),
) -> dict[str, Any]:
    rows, total = services.list_patients(search, page, limit)
    return paginated(rows, total, page, limit)


@api.get("/patients/{patient_id}")
def api_get_patient(patient_id: str, user: User = Depends(get_current_user)) -> dict[str, Any]:
    if user.role is UserRole.PATIENT and patient_id != _own_patient_id(user):
        raise ForbiddenError("Acesso negado a este paciente.")
    return ok(services.get_patient(patient_id))


@api.patch("/patients/{patient_id}")
def api_update_patient(
    patient_id: str, payload: PatientUpdateIn, user: User = Depends(require_roles(*STAFF))
) -> dict[str, Any]:
    return ok(services.update_patient(patient_id, **_set_fields(payload)))


# =========================
# Médicos
# =========================
@api.post("/doctors", status_code=status.HTTP_201_CREATED)
def api_create_doctor(payload: DoctorIn, user: User = Depends(require_roles(UserRole.ADMIN))) -> dict[str, Any]:
    return ok(services.create_doctor(**payload.model_dump()))


@api.get("/doctors")
def api_list_doctors(specialty_id: str | None = None) -> dict[str, Any]:
    return ok(services.list_doctors(specialty_id))


@api.get("/doctors/{doctor_id}")
def api_get_doctor(doctor_id: str) -> dict[str, Any]:
    return ok(services.get_doctor(doctor_id))


@api.patch("/doctors/{doctor_id}")
def api_update_doctor(
    doctor_id: str, payload: DoctorUpdateIn, user: User = Depends(require_roles(UserRole.ADMIN))
) -> dict[str, Any]:
    return ok(services.update_doctor(doctor_id, **_set_fields(payload)))


@api.put("/doctors/{doctor_id}/availability")
def api_set_availability(
    doctor_id: str,
    payload: list[AvailabilityWindowIn],
    user: User = Depends(require_roles(UserRole.ADMIN, UserRole.DOCTOR)),
) -> dict[str, Any]:
    if user.role is UserRole.DOCTOR and doctor_id != _own_doctor_id(user):
        raise ForbiddenError("Médicos só alteram a própria agenda.")
    return ok(services.set_doctor_availability(doctor_id, [w.model_dump() for w in payload]))


@api.get("/doctors/{doctor_id}/slots")
def api_slots(
    doctor_id: str,
    day: date = Query(..., alias="date"),
    appointment_type: AppointmentType = Query(AppointmentType.CONSULTATION, alias="type"),
    duration: int | None = Query(default=None, ge=15, le=120),
    preferred: list[str] = Query(default=[]),
) -> dict[str, Any]:
    slots = scheduling.available_slots(doctor_id, day, appointment_type, duration, preferred)
    return ok(slots, meta={"count": len(slots)})


@api.get("/doctors/{doctor_id}/agenda")
def api_agenda(
    doctor_id: str,
    day: date = Query(..., alias="date"),
    user: User = Depends(require_roles(*STAFF, UserRole.DOCTOR)),
) -> dict[str, Any]:
    if user.role is UserRole.DOCTOR and doctor_id != _own_doctor_id(user):
        raise ForbiddenError("Médicos só consultam a própria agenda.")
    return ok(scheduling.daily_agenda(doctor_id, day))


# =========================
# Especialidades
# =========================
@api.get("/specialties")
def api_list_specialties(
    search: str | None = None,
    active: bool | None = True,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
) -> dict[str, Any]:
    rows, total = services.list_specialties(search, active, page, limit)
    return paginated(rows, total, page, limit)


@api.get("/specialties/{specialty_id}")
def api_get_specialty(specialty_id: str) -> dict[str, Any]:
    return ok(services.get_specialty(specialty_id))


@api.get("/specialties/{specialty_id}/doctors")
def api_specialty_doctors(specialty_id: str) -> dict[str, Any]:
    return ok(services.doctors_by_specialty(specialty_id))


@api.post("/specialties", status_code=status.HTTP_201_CREATED)
def api_create_specialty(payload: SpecialtyIn, user: User = Depends(require_roles(UserRole.ADMIN))) -> dict[str, Any]:
    return ok(services.create_specialty(**payload.model_dump()))


@api.patch("/specialties/{specialty_id}")
def api_update_specialty(
    specialty_id: str, payload: SpecialtyUpdateIn, user: User = Depends(require_roles(UserRole.ADMIN))
) -> dict[str, Any]:
    return ok(services.update_specialty(specialty_id, **_set_fields(payload)))


@api.delete("/specialties/{specialty_id}")
def api_delete_specialty(specialty_id: str, user: User = Depends(require_roles(UserRole.ADMIN))) -> dict[str, Any]:
    services.delete_specialty(specialty_id)
    return ok({"id": specialty_id, "deleted": True})


# =========================
# Consultas
# =========================
@api.post("/appointments", status_code=status.HTTP_201_CREATED)
def api_book(payload: AppointmentIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    if user.role is UserRole.PATIENT:
        patient_id = _own_patient_id(user)
    elif user.role in STAFF:
        if not payload.patient_id:
            raise DomainError("patient_id é obrigatório.", code="PATIENT_REQUIRED")
        patient_id = payload.patient_id
    else:
        raise ForbiddenError("Médicos não agendam consultas por esta rota.")

    outcome = scheduling.book_appointment(
        patient_id=patient_id,
        doctor_id=payload.doctor_id,
        scheduled_at=payload.scheduled_at,
        appointment_type=payload.type,
        specialty_id=payload.specialty_id,
        duration=payload.duration,
        urgency_level=payload.urgency_level,
        reason=payload.reason,
        symptoms=payload.symptoms,
        notes=payload.notes,
        join_waitlist_if_full=payload.join_waitlist_if_full,
    )
    data = outcome.to_dict()
    if outcome.appointment_id:
        data["appointment"] = scheduling.get_appointment(outcome.appointment_id)
    return ok(data)


@api.get("/appointments")
def api_list_appointments(
    patient_id: str | None = None,
    doctor_id: str | None = None,
    specialty_id: str | None = None,
    appointment_status: AppointmentStatus | None = Query(default=None, alias="status"),
    appointment_type: AppointmentType | None = Query(default=None, alias="type"),
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(get_current_user),
) -> dict[str, Any]:
    if user.role is UserRole.PATIENT:
        patient_id = _own_patient_id(user)
    elif user.role is UserRole.DOCTOR:
        doctor_id = _own_doctor_id(user)
    rows, total = scheduling.list_appointments(
        patient_id, doctor_id, specialty_id, appointment_status, appointment_type, date_from, date_to, page, limit
    )
    return paginated(rows, total, page, limit)


@api.get("/appointments/{appointment_id}")
def api_get_appointment(appointment_id: str, user: User = Depends(get_current_user)) -> dict[str, Any]:
    a = scheduling.get_appointment(appointment_id)
    _check_appointment_access(user, a)
    return ok(a)


@api.patch("/appointments/{appointment_id}")
def api_update_appointment(
    appointment_id: str, payload: AppointmentUpdateIn, user: User = Depends(get_current_user)
) -> dict[str, Any]:
    _check_appointment_access(user, scheduling.get_appointment(appointment_id))
    return ok(scheduling.update_appointment(appointment_id, **_set_fields(payload)))


@api.patch("/appointments/{appointment_id}/status")
def api_update_status(
    appointment_id: str, payload: StatusIn, user: User = Depends(get_current_user)
) -> dict[str, Any]:
    _check_appointment_access(user, scheduling.get_appointment(appointment_id))
    # paciente só confirma ou cancela
    if user.role is UserRole.PATIENT and payload.status not in (AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED):
        raise ForbiddenError("Pacientes só podem confirmar ou cancelar.")
    return ok(scheduling.update_appointment_status(appointment_id, payload.status, payload.reason))


@api.get("/appointments/{appointment_id}/cancellation-quote")
def api_cancellation_quote(appointment_id: str, user: User = Depends(get_current_user)) -> dict[str, Any]:
    _check_appointment_access(user, scheduling.get_appointment(appointment_id))
    return ok(scheduling.quote_cancellation(appointment_id))


@api.post("/appointments/{appointment_id}/cancel")
def api_cancel(appointment_id: str, payload: CancelIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    _check_appointment_access(user, scheduling.get_appointment(appointment_id))
    return ok(scheduling.cancel_appointment(appointment_id, payload.reason))


@api.post("/appointments/{appointment_id}/reschedule")
def api_reschedule(
    appointment_id: str, payload: RescheduleIn, user: User = Depends(get_current_user)
) -> dict[str, Any]:
    _check_appointment_access(user, scheduling.get_appointment(appointment_id))
    return ok(scheduling.reschedule_appointment(appointment_id, payload.new_start, payload.reason))


@api.post("/appointments/{appointment_id}/complete")
def api_complete(
    appointment_id: str, payload: CompleteIn, user: User = Depends(require_roles(UserRole.DOCTOR))
) -> dict[str, Any]:
    return ok(scheduling.complete_appointment(appointment_id, _own_doctor_id(user), **payload.model_dump()))


@api.post("/appointments/{appointment_id}/no-show")
def api_no_show(
    appointment_id: str, user: User = Depends(require_roles(*STAFF, UserRole.DOCTOR))
) -> dict[str, Any]:
    _check_appointment_access(user, scheduling.get_appointment(appointment_id))
    return ok(scheduling.mark_no_show(appointment_id))


# =========================
# Lista de espera
# =========================
@api.post("/waitlist", status_code=status.HTTP_201_CREATED)
def api_join_waitlist(payload: WaitlistIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    if user.role is UserRole.PATIENT:
        patient_id = _own_patient_id(user)
    elif user.role in STAFF and payload.patient_id:
        patient_id = payload.patient_id
    else:
        raise DomainError("patient_id é obrigatório.", code="PATIENT_REQUIRED")
    return ok(
        scheduling.join_waitlist(
            patient_id,
            payload.specialty_id,
            payload.doctor_id,
            payload.appointment_type,
            payload.urgency_level,
            payload.reason,
        )
    )


@api.get("/waitlist")
def api_list_waitlist(
    specialty_id: str,
    doctor_id: str | None = None,
    user: User = Depends(require_roles(*STAFF, UserRole.DOCTOR)),
) -> dict[str, Any]:
    return ok(scheduling.list_waitlist(specialty_id, doctor_id))


@api.delete("/waitlist/{entry_id}")
def api_leave_waitlist(entry_id: int, user: User = Depends(require_roles(*STAFF))) -> dict[str, Any]:
    if not scheduling.leave_waitlist(entry_id):
        raise NotFoundError("Pedido não encontrado na lista de espera.", code="WAITLIST_ENTRY_NOT_FOUND")
    return ok({"id": entry_id, "deleted": True})


@api.post("/waitlist/purge")
def api_purge_waitlist(user: User = Depends(require_roles(UserRole.ADMIN))) -> dict[str, Any]:
    return ok({"removed": scheduling.purge_expired_waitlist()})


# =========================
# Financeiro
# =========================
@api.post("/financial/transactions", status_code=status.HTTP_201_CREATED)
def api_create_transaction(payload: TransactionIn, user: User = Depends(require_roles(*STAFF))) -> dict[str, Any]:
    return ok(financial.create_transaction(**payload.model_dump(), created_by=user.id))


@api.get("/financial/transactions")
def api_list_transactions(
    patient_id: str | None = None,
    doctor_id: str | None = None,
    tx_status: FinancialStatus | None = Query(default=None, alias="status"),
    transaction_type: TransactionType | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(require_roles(*STAFF)),
) -> dict[str, Any]:
    rows, total = financial.list_transactions(
        patient_id, doctor_id, tx_status, transaction_type, date_from, date_to, page, limit
    )
    return paginated(rows, total, page, limit)


@api.get("/financial/transactions/{transaction_id}")
def api_get_transaction(transaction_id: str, user: User = Depends(require_roles(*STAFF))) -> dict[str, Any]:
    return ok(financial.get_transaction(transaction_id))


@api.patch("/financial/transactions/{transaction_id}")
def api_update_transaction(
    transaction_id: str, payload: TransactionUpdateIn, user: User = Depends(require_roles(*STAFF))
) -> dict[str, Any]:
    fields = _set_fields(payload)
    return ok(financial.update_transaction(transaction_id, fields.pop("status", None), **fields))


@api.get("/financial/balance")
def api_balance(user: User = Depends(require_roles(UserRole.ADMIN))) -> dict[str, Any]:
    balance = financial.cash_balance()
    return ok({"balance": balance, "formatted": format_currency(balance)})


# =========================
# Preços
# =========================
@api.get("/pricing/config")
def api_pricing_config(user: User = Depends(require_roles(*STAFF))) -> dict[str, Any]:
    with db_session() as s:
        return ok(asdict(get_pricing_config(s)))


@api.put("/pricing/config")
def api_update_pricing(payload: PricingConfigIn, user: User = Depends(require_roles(UserRole.ADMIN))) -> dict[str, Any]:
    with db_session() as s:
        return ok(asdict(update_pricing_config(s, **_set_fields(payload))))


@api.get("/pricing/quote")
def api_price_quote(doctor_id: str, specialty_id: str | None = None) -> dict[str, Any]:
    doctor = services.get_doctor(doctor_id)
    specialty = services.get_specialty(specialty_id or doctor["specialty_id"])
    with db_session() as s:
        price = calculate_consultation_price(doctor["consultation_fee"], specialty["price"], get_pricing_config(s))
    data = dict(asdict(price), formatted=format_currency(price.final_price, price.currency))
    return ok(data)


# =========================
# Regras (calculadoras)
# =========================
@api.get("/rules/cancellation-fee")
def api_rule_cancellation_fee(hours_before: float = Query(...), fee: float = Query(..., ge=0)) -> dict[str, Any]:
    return ok({"fee": br.calculate_cancellation_fee(hours_before, fee), "rate": br.cancellation_fee_rate(hours_before)})


@api.get("/rules/priority-score")
def api_rule_priority(
    appointment_type: AppointmentType = AppointmentType.CONSULTATION,
    classification: PatientClassification = PatientClassification.REGULAR,
    urgency_level: int = Query(5, ge=1, le=10),
    waiting_hours: float = Query(0, ge=0),
) -> dict[str, Any]:
    score = br.calculate_priority_score(appointment_type, classification, urgency_level, waiting_hours)
    return ok({"priority_score": score})


@api.get("/rules/business-hours")
def api_rule_business_hours(time_of_day: str = Query(..., alias="time", pattern=r"^\d{2}:\d{2}$")) -> dict[str, Any]:
    return ok({"time": time_of_day, "is_business_hour": br.is_business_hour(time_of_day)})


# =========================
# Notificações
# =========================
@api.get("/notifications/pending")
def api_pending_notifications(
    limit: int = Query(50, ge=1, le=200), user: User = Depends(require_roles(*STAFF))
) -> dict[str, Any]:
    return ok(services.pending_notifications(limit=limit))


@api.post("/notifications/{notification_id}/sent")
def api_mark_sent(notification_id: int, user: User = Depends(require_roles(*STAFF))) -> dict[str, Any]:
    if not services.mark_notification_sent(notification_id):
        raise NotFoundError("Notificação não encontrada ou já enviada.", code="NOTIFICATION_NOT_FOUND")
    return ok({"id": notification_id, "sent": True})


@api.get("/notifications/me")
def api_my_notifications(user: User = Depends(require_roles(UserRole.PATIENT))) -> dict[str, Any]:
    return ok(services.patient_notifications(_own_patient_id(user)))


app.include_router(api)
