from __future__ import annotations

from datetime import datetime
from typing import Any

from email_validator import EmailNotValidError, validate_email
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from . import business_rules as br
from .auth_models import User, UserRole, UserStatus
from .auth_security import hash_password, verify_password
from .cpf import clean_cpf, format_cpf, validate_cpf
from .db import db_session
from .errors import ConflictError, DomainError, NotFoundError, reject_nulls
from .logging_config import get_logger

log = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8


def normalize_email(email: str) -> str:
    try:
        return validate_email((email or "").strip(), check_deliverability=False).normalized.lower()
    except EmailNotValidError as e:
        raise DomainError(f"Email inválido: {e}", code="INVALID_EMAIL") from e


def user_to_dict(u: User) -> dict[str, Any]:
    return {
        "id": u.id,
        "email": u.email,
        "first_name": u.first_name,
        "last_name": u.last_name,
        "full_name": u.full_name,
        "phone": u.phone,
        "cpf": format_cpf(u.cpf) if u.cpf else None,
        "role": u.role.value,
        "status": u.status.value,
        "suspended_until": u.suspended_until.isoformat() if u.suspended_until else None,
        "created_at": u.created_at.isoformat(),
    }


def _check_cpf_available(s: Session, cpf: str, exclude_user_id: str | None = None) -> str:
    if not validate_cpf(cpf):
        raise DomainError("CPF inválido.", code="INVALID_CPF")
    digits = clean_cpf(cpf)
    # registros antigos podem ter o CPF gravado formatado
    q = select(User.id).where(or_(User.cpf == digits, User.cpf == format_cpf(digits)))
    if exclude_user_id:
        q = q.where(User.id != exclude_user_id)
    if s.execute(q).first():
        raise ConflictError("CPF já cadastrado.", code="CPF_ALREADY_EXISTS")
    return digits


def add_user(
    s: Session,
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    role: UserRole = UserRole.PATIENT,
    phone: str | None = None,
    cpf: str | None = None,
    status: UserStatus = UserStatus.ACTIVE,
) -> User:
    """Cria o usuário na sessão informada (sem commit)."""
    email = normalize_email(email)
    first_name, last_name = (first_name or "").strip(), (last_name or "").strip()
    if not first_name or not last_name:
        raise DomainError("Nome e sobrenome são obrigatórios.", code="NAME_REQUIRED")
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise DomainError(f"A senha deve ter pelo menos {MIN_PASSWORD_LENGTH} caracteres.", code="WEAK_PASSWORD")

    if s.execute(select(User.id).where(func.lower(User.email) == email)).first():
        raise ConflictError("Email já cadastrado.", code="EMAIL_ALREADY_EXISTS")
    digits = _check_cpf_available(s, cpf) if cpf else None

    u = User(
        email=email,
        password_hash=hash_password(password),
        first_name=first_name,
        last_name=last_name,
        full_name=f"{first_name} {last_name}",
        phone=phone,
        cpf=digits,
        role=UserRole(role),
        status=UserStatus(status),
    )
    s.add(u)
    s.flush()
    return u


def create_user(email: str, password: str, first_name: str, last_name: str, **kwargs: Any) -> str:
    with db_session() as s:
        u = add_user(s, email, password, first_name, last_name, **kwargs)
        log.info("user_created", user_id=u.id, role=u.role.value)
        return u.id


def suspension_active(u: User, now: datetime | None = None) -> bool:
    """Suspensão sem data de fim vale até ser levantada manualmente; horários no relógio da clínica."""
    if u.status is not UserStatus.SUSPENDED:
        return False
    return u.suspended_until is None or u.suspended_until > (now or br.clinic_now())


def authenticate(email: str, password: str, now: datetime | None = None) -> User | None:
    try:
        email = normalize_email(email)
    except DomainError:
        return None

    with db_session() as s:
        u = s.execute(select(User).where(User.email == email)).scalar_one_or_none()
        if not u or not verify_password(password, u.password_hash):
            return None
        # suspensão vencida é levantada no próximo login
        if u.status is UserStatus.SUSPENDED and not suspension_active(u, now):
            u.status = UserStatus.ACTIVE
            u.suspended_until = None
            log.info("suspension_lifted", user_id=u.id)
        if not u.is_active:
            log.info("login_refused", user_id=u.id, status=u.status.value)
            return None
        return u


def get_user_by_id(user_id: str) -> User | None:
    with db_session() as s:
        return s.get(User, user_id)


def get_user(user_id: str) -> dict[str, Any]:
    u = get_user_by_id(user_id)
    if not u:
        raise NotFoundError("Usuário não encontrado.", code="USER_NOT_FOUND")
    return user_to_dict(u)


def list_users(
    role: UserRole | str | None = None,
    status: UserStatus | str | None = None,
    search: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[dict[str, Any]], int]:
    q = select(User)
    if role:
        q = q.where(User.role == UserRole(role))
    if status:
        q = q.where(User.status == UserStatus(status))
    if search:
        term = f"%{search.strip().lower()}%"
        q = q.where(or_(func.lower(User.full_name).like(term), func.lower(User.email).like(term)))

    with db_session() as s:
        total = s.scalar(select(func.count()).select_from(q.subquery())) or 0
        rows = s.scalars(q.order_by(User.full_name).offset((page - 1) * limit).limit(limit))
        return [user_to_dict(u) for u in rows], total


def update_user(user_id: str, **changes: Any) -> dict[str, Any]:
    allowed = {"first_name", "last_name", "phone", "cpf", "email", "status", "role"}
    unknown = set(changes) - allowed
    if unknown:
        raise DomainError(f"Campos não editáveis: {', '.join(sorted(unknown))}", code="INVALID_FIELDS")
    reject_nulls(changes, "email", "first_name", "last_name", "role", "status")

    with db_session() as s:
        u = s.get(User, user_id)
        if not u:
            raise NotFoundError("Usuário não encontrado.", code="USER_NOT_FOUND")

        if changes.get("email"):
            email = normalize_email(changes["email"])
            clash = s.execute(select(User.id).where(User.email == email, User.id != user_id)).first()
            if clash:
                raise ConflictError("Email já cadastrado.", code="EMAIL_ALREADY_EXISTS")
            u.email = email
        if changes.get("cpf"):
            u.cpf = _check_cpf_available(s, changes["cpf"], exclude_user_id=user_id)
        for key in ("first_name", "last_name", "phone"):
            if changes.get(key) is not None:
                setattr(u, key, changes[key].strip())
        if changes.get("status"):
            u.status = UserStatus(changes["status"])
        if changes.get("role"):
            u.role = UserRole(changes["role"])
        u.full_name = f"{u.first_name} {u.last_name}"

        s.flush()
        log.info("user_updated", user_id=u.id, fields=sorted(changes))
        return user_to_dict(u)


def deactivate_user(user_id: str) -> dict[str, Any]:
    return update_user(user_id, status=UserStatus.INACTIVE)
