"""Calculadora de comisiones de plataforma.

Funciones puras sin estado. Se usa aritmética Decimal sin redondeo para que
las identidades vendedor + comisión == monto se cumplan exactamente.
"""

from decimal import Decimal
from typing import NamedTuple
from errors import ValidationError
from models import FeeBearer

HUNDRED = Decimal('100')
TWO = Decimal('2')


class FeeBreakdown(NamedTuple):
    fee_amount: Decimal
    seller_receives: Decimal
    buyer_payable: Decimal


def _as_decimal(value, name: str) -> Decimal:
    try:
        return value if isinstance(value, Decimal) else Decimal(str(value))
    except ArithmeticError as e:
        raise ValidationError(f"{name} must be numeric") from e


# normalize_fee_bearer: Acepta 'buyer' | 'seller' | 'split' (o el enum) y devuelve el texto.
def normalize_fee_bearer(fee_bearer) -> str:
    try:
        return FeeBearer(fee_bearer).value
    except ValueError as e:
        raise ValidationError("fee_bearer must be one of buyer, seller, split") from e


# compute_fees: Devuelve (comisión, lo que recibe el vendedor, total a pagar
# por el comprador). Rechaza montos bajo el mínimo antes de calcular.
def compute_fees(amount, fee_percent, fee_bearer, min_amount=None) -> FeeBreakdown:
    amount = _as_decimal(amount, 'amount')
    fee_percent = _as_decimal(fee_percent, 'fee_percent')
    bearer = normalize_fee_bearer(fee_bearer)
    if min_amount is not None and amount < _as_decimal(min_amount, 'min_amount'):
        raise ValidationError(f"amount must be at least {min_amount}", min_amount=str(min_amount))
    if amount < 0:
        raise ValidationError("amount must not be negative")
    if fee_percent < 0 or fee_percent > HUNDRED:
        raise ValidationError("fee_percent must be between 0 and 100")

    fee_amount = amount * fee_percent / HUNDRED
    if bearer == FeeBearer.SELLER.value:
        return FeeBreakdown(fee_amount, amount - fee_amount, amount)
    if bearer == FeeBearer.SPLIT.value:
        half = fee_amount / TWO
        return FeeBreakdown(fee_amount, amount - half, amount + half)
    return FeeBreakdown(fee_amount, amount, amount + fee_amount)


# buyer_payable: Total que debe cubrir el saldo del comprador (monto + su parte de comisión).
def buyer_payable(amount, fee_percent, fee_bearer) -> Decimal:
    return compute_fees(amount, fee_percent, fee_bearer).buyer_payable

