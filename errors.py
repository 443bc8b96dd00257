"""Taxonomía de errores del núcleo de garantía.

Cada error tiene un 'kind' estable que la API devuelve tal cual, y el código
HTTP con el que se expone. Todos se lanzan antes de aplicar cualquier mutación.
"""


class EscrowError(Exception):
    """Error base con tipo estable y código HTTP."""
    kind = 'ESCROW_ERROR'
    status_code = 400

    def __init__(self, message: str, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self):
        payload = {'error': self.kind, 'detail': self.message}
        payload.update(self.extra)
        return payload


class ValidationError(EscrowError):
    """Entrada malformada o fuera de rango (p. ej. monto bajo el mínimo)."""
    kind = 'VALIDATION_ERROR'
    status_code = 400


class AuthorizationError(EscrowError):
    kind = 'AUTHORIZATION_ERROR'
    status_code = 403


class NotFoundError(EscrowError):
    kind = 'NOT_FOUND'
    status_code = 404


class ConflictError(EscrowError):
    """Carrera perdida, sala llena, staff completo o transición terminal."""
    kind = 'CONFLICT'
    status_code = 409


class InsufficientBalanceError(EscrowError):
    kind = 'INSUFFICIENT_BALANCE'
    status_code = 402


class AccountFrozenError(EscrowError):
    """Retiro bloqueado por congelación; incluye el motivo de la congelación."""
    kind = 'ACCOUNT_FROZEN'
    status_code = 423
