from __future__ import annotations

from sqlalchemy import func, select

from . import config
from .auth_models import User, UserRole
from .auth_service import add_user
from .db import db_session
from .logging_config import get_logger
from .models import Specialty, SystemConfiguration
from .pricing import default_pricing_config, update_pricing_config

log = get_logger(__name__)

# nome, duração (min), preço
SPECIALTIES = [
    ("Clínica Geral", 30, 150.0),
    ("Cardiologia", 45, 280.0),
    ("Pediatria", 40, 200.0),
    ("Dermatologia", 30, 220.0),
    ("Ginecologia", 45, 250.0),
    ("Oftalmologia", 35, 230.0),
    ("Ortopedia", 40, 240.0),
    ("Neurologia", 50, 320.0),
]


def seed_base() -> None:
    """
    Popula dados mínimos (idempotente):
    - especialidades com duração e preço
    - configuração de preços
    - usuário administrador
    """
    with db_session() as s:
        for name, duration, price in SPECIALTIES:
            exists = s.execute(select(Specialty.id).where(func.lower(Specialty.name) == name.lower())).first()
            if exists is None:
                s.add(Specialty(name=name, duration=duration, price=price, is_active=True))

        if s.get(SystemConfiguration, "CONSULTATION_PRICING_MODE") is None:
            defaults = default_pricing_config()
            update_pricing_config(s, defaults.consultation_pricing_mode, defaults.default_currency, defaults.tax_rate)

        admin = s.execute(select(User.id).where(User.email == config.ADMIN_EMAIL.lower())).first()
        if admin is None:
            add_user(s, config.ADMIN_EMAIL, config.ADMIN_PASSWORD, "Administrador", "Sistema", role=UserRole.ADMIN)

        s.flush()
    log.info("seed_completed", specialties=len(SPECIALTIES))
