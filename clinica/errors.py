from __future__ import annotations

from typing import Any


class DomainError(ValueError):
    """
    Erro de regra de negócio levantado pelos serviços.
    A API converte em {success: false, error: {code, message, details}}.
    """
    status_code = 400
    code = "DOMAIN_ERROR"

    def __init__(self, message: str, code: str | None = None, details: Any = None, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details is not None:
            error["details"] = self.details
        return error


class NotFoundError(DomainError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(DomainError):
    status_code = 409
    code = "CONFLICT"


class ForbiddenError(DomainError):
    status_code = 403
    code = "FORBIDDEN"


class RuleViolationError(DomainError):
    """Validação do motor de regras com pelo menos uma violação ERROR."""
    status_code = 422
    code = "BUSINESS_RULE_VIOLATION"


def reject_nulls(changes: dict[str, Any], *fields: str) -> None:
    """Atualização parcial: campo omitido não muda, mas null em coluna obrigatória é erro de entrada."""
    nulls = sorted(f for f in fields if f in changes and changes[f] is None)
    if nulls:
        raise DomainError(
            f"Campos não podem ser nulos: {', '.join(nulls)}",
            code="VALIDATION_ERROR",
            details={"fields": nulls},
        )
