"""Validação de CPF e CRM."""
from __future__ import annotations

import re

_NON_DIGITS = re.compile(r"\D")
_CRM_RE = re.compile(r"^\d{4,6}/[A-Z]{2}$")


def clean_cpf(cpf: str) -> str:
    return _NON_DIGITS.sub("", cpf or "")


def format_cpf(cpf: str) -> str:
    """000.000.000-00; entradas que não têm 11 dígitos voltam inalteradas."""
    digits = clean_cpf(cpf)
    if len(digits) != 11:
        return cpf
    return f"{digits[:3]}.{digits[3:6]}.{digits[6:9]}-{digits[9:]}"


def _check_digit(digits: str) -> int:
    weight = len(digits) + 1
    total = sum(int(d) * (weight - i) for i, d in enumerate(digits))
    remainder = (total * 10) % 11
    return 0 if remainder == 10 else remainder


def validate_cpf(cpf: str) -> bool:
    digits = clean_cpf(cpf)
    if len(digits) != 11:
        return False
    # 000.000.000-00, 111.111.111-11 ... passam no dígito mas são inválidos
    if digits == digits[0] * 11:
        return False
    return _check_digit(digits[:9]) == int(digits[9]) and _check_digit(digits[:10]) == int(digits[10])


def validate_crm(crm: str) -> bool:
    """Formato 123456/SP (4 a 6 dígitos, barra, UF)."""
    return bool(_CRM_RE.match((crm or "").strip().upper()))
