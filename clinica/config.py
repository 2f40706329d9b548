from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# SQLite em arquivo na raiz do projeto quando DATABASE_URL não estiver definida
DB_PATH = Path(__file__).resolve().parents[1] / "clinica.sqlite"
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DB_PATH}")
DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

API_PREFIX = os.getenv("API_PREFIX", "/api/v1")

# Em produção: sempre definir JWT_SECRET
JWT_SECRET = os.getenv("JWT_SECRET", "CHANGE_ME_DEV_SECRET")
JWT_ALG = "HS256"
JWT_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", "60"))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "json")  # json | console

# Padrões das chaves de preço gravadas em system_configurations
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "BRL")
TAX_RATE = float(os.getenv("TAX_RATE", "0"))
CONSULTATION_PRICING_MODE = os.getenv("CONSULTATION_PRICING_MODE", "specialty")
DEFAULT_CONSULTATION_PRICE = float(os.getenv("DEFAULT_CONSULTATION_PRICE", "150.0"))

# Administrador criado pelo seed (somente se ainda não existir)
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@clinica.com.br")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin12345")
