"""Cuentas, movimientos de saldo, depósitos, retiros y rastro de auditoría.

Todo cambio de saldo es un UPDATE atómico de una sola cuenta (incremento o
decremento en SQL, nunca lectura en caché seguida de escritura) y deja una
entrada balance_change en AdminActionLog con el origen del movimiento.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional
from sqlalchemy import update
from sqlmodel import Session, select
from config import PlatformConfig
from errors import (
    AccountFrozenError,
    ConflictError,
    InsufficientBalanceError,
    NotFoundError,
    ValidationError,
)
from models import (
    Account,
    AdminActionLog,
    Deposit,
    FundsStatus,
    KycStatus,
    RiskAlert,
    SYSTEM_ACTOR_ID,
    User,
    Withdrawal,
)
from notifier import notify_admin
from security import require_admin, require_staff

logger = logging.getLogger(__name__)

# Orígenes válidos de un balance_change; 'unknown' solo aparece si algo
# externo al servicio modificó el saldo.
BALANCE_SOURCES = (
    'deposit', 'withdrawal', 'escrow_debit', 'escrow_payout', 'escrow_refund', 'admin_manual', 'unknown',
)


def money(value) -> str:
    """Representación JSON exacta de un importe Decimal."""
    return str(value if isinstance(value, Decimal) else Decimal(str(value)))


# _check_source: Solo los orígenes conocidos; 'unknown' queda reservado a la reconciliación.
def _check_source(source: str):
    if source not in BALANCE_SOURCES or source == 'unknown':
        raise ValidationError(f"unknown balance source: {source}")


def _positive(amount, name: str = 'amount') -> Decimal:
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except ArithmeticError as e:
        raise ValidationError(f"{name} must be numeric") from e
    if value <= 0:
        raise ValidationError(f"{name} must be positive")
    return value


# ------------------------------ Cuentas ------------------------------

def create_account(s: Session, user_id: int, full_name: Optional[str] = None) -> Account:
    account = Account(user_id=user_id, full_name=full_name)
    s.add(account)
    return account


def get_account(s: Session, user_id: int) -> Account:
    account = s.exec(select(Account).where(Account.user_id == user_id)).first()
    if not account:
        raise NotFoundError(f"Account for user {user_id} not found")
    return account


# audit: Añade una entrada inmutable al registro de acciones (sin commit).
def audit(s: Session, actor_id: int, action_type: str, target_user_id: Optional[int] = None,
          details: Optional[dict] = None, note: Optional[str] = None) -> AdminActionLog:
    entry = AdminActionLog(
        actor_id=actor_id,
        target_user_id=target_user_id,
        action_type=action_type,
        details=details or {},
        note=note,
    )
    s.add(entry)
    return entry


def record_risk_alert(s: Session, user_id: int, alert_type: str, description: str,
                      metadata: Optional[dict] = None) -> RiskAlert:
    alert = RiskAlert(user_id=user_id, alert_type=alert_type, description=description,
                      alert_metadata=metadata or {})
    s.add(alert)
    return alert


# ------------------------- Movimientos de saldo -----------------------

def _apply_delta(s: Session, user_id: int, delta: Decimal, require_funds: bool) -> int:
    statement = (
        update(Account)
        .where(Account.user_id == user_id)
        .values(balance=Account.balance + delta, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if require_funds:
        statement = statement.where(Account.balance >= -delta)
    return s.exec(statement).rowcount


# credit: Incrementa el saldo en una sola sentencia y registra el origen.
def credit(s: Session, user_id: int, amount, source: str, actor_id: int = SYSTEM_ACTOR_ID,
           reference: Optional[dict] = None, log: bool = True) -> Decimal:
    _check_source(source)
    amount = _positive(amount)
    if _apply_delta(s, user_id, amount, require_funds=False) != 1:
        raise NotFoundError(f"Account for user {user_id} not found")
    if log:
        audit(s, actor_id, 'balance_change', user_id,
              {'source': source, 'difference': money(amount), **(reference or {})})
    return amount


# debit: Decrementa el saldo solo si alcanza; InsufficientBalanceError si no.
def debit(s: Session, user_id: int, amount, source: str, actor_id: int = SYSTEM_ACTOR_ID,
          reference: Optional[dict] = None, log: bool = True) -> Decimal:
    _check_source(source)
    amount = _positive(amount)
    if _apply_delta(s, user_id, -amount, require_funds=True) != 1:
        # Distinguir cuenta inexistente de saldo insuficiente.
        get_account(s, user_id)
        raise InsufficientBalanceError(f"Balance below required {amount}", required=money(amount))
    if log:
        audit(s, actor_id, 'balance_change', user_id,
              {'source': source, 'difference': money(-amount), **(reference or {})})
    return amount


# adjust_balance: Ajuste manual privilegiado (positivo o negativo) con auditoría.
def adjust_balance(s: Session, staff: User, user_id: int, amount, note: Optional[str] = None) -> Account:
    require_admin(staff, 'balance adjustments')
    try:
        delta = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except ArithmeticError as e:
        raise ValidationError("amount must be numeric") from e
    if delta == 0:
        raise ValidationError("adjustment amount must be non-zero")
    old_balance = get_account(s, user_id).balance
    if delta > 0:
        credit(s, user_id, delta, 'admin_manual', staff.id, log=False)
    else:
        debit(s, user_id, -delta, 'admin_manual', staff.id, log=False)
    audit(s, staff.id, 'adjust_balance', user_id,
          {'source': 'admin_manual', 'amount': money(delta), 'old_balance': money(old_balance)}, note)
    s.commit()
    logger.info("Staff %s adjusted balance of user %s by %s", staff.id, user_id, delta)
    account = get_account(s, user_id)
    s.refresh(account)
    return account


# ----------------------------- Congelación ----------------------------

# freeze_account: Marca la cuenta como congelada y sospechosa, sin tocar el
# saldo. Deja una entrada de auditoría y, si alert, una alerta de riesgo.
def freeze_account(s: Session, account: Account, reason: str, actor_id: int = SYSTEM_ACTOR_ID,
                   action_type: str = 'auto_freeze_balance', details: Optional[dict] = None,
                   note: Optional[str] = None, alert: bool = True) -> Account:
    now = datetime.utcnow()
    account.is_balance_frozen = True
    account.balance_frozen_at = now
    account.balance_freeze_reason = reason
    account.is_suspicious = True
    account.suspicious_reason = reason
    account.suspicious_at = now
    account.updated_at = now
    s.add(account)
    audit(s, actor_id, action_type, account.user_id, {'reason': reason, **(details or {})}, note)
    if alert:
        record_risk_alert(s, account.user_id, 'balance_anomaly', reason,
                          {**(details or {}), 'auto_frozen': actor_id == SYSTEM_ACTOR_ID})
    return account


def freeze_by_staff(s: Session, staff: User, user_id: int, reason: str) -> Account:
    require_staff(staff, 'account freezes')
    if not reason or not reason.strip():
        raise ValidationError("freeze reason is required")
    account = get_account(s, user_id)
    if account.is_balance_frozen:
        raise ConflictError("Account balance is already frozen")
    freeze_account(s, account, reason.strip(), staff.id, action_type='freeze_balance', alert=False)
    s.commit()
    s.refresh(account)
    return account


def unfreeze_account(s: Session, staff: User, user_id: int, note: Optional[str] = None) -> Account:
    require_admin(staff, 'account unfreezes')
    account = get_account(s, user_id)
    if not account.is_balance_frozen:
        raise ConflictError("Account balance is not frozen")
    previous_reason = account.balance_freeze_reason
    account.is_balance_frozen = False
    account.balance_frozen_at = None
    account.balance_freeze_reason = None
    account.updated_at = datetime.utcnow()
    s.add(account)
    audit(s, staff.id, 'unfreeze_balance', user_id, {'previous_reason': previous_reason}, note)
    s.commit()
    s.refresh(account)
    return account


# -------------------------------- KYC ---------------------------------

def submit_kyc(s: Session, user: User) -> Account:
    """Marca la verificación como pendiente; la captura de documentos es externa."""
    account = get_account(s, user.id)
    if account.kyc_status == KycStatus.APPROVED.value:
        raise ConflictError("KYC already approved")
    account.kyc_status = KycStatus.PENDING.value
    s.add(account)
    s.commit()
    notify_admin('kyc', 'New KYC submission', f"User {user.username} submitted KYC documents")
    s.refresh(account)
    return account


def set_kyc_status(s: Session, staff: User, user_id: int, status: str, note: Optional[str] = None) -> Account:
    require_staff(staff, 'KYC review')
    try:
        status = KycStatus(status).value
    except ValueError as e:
        raise ValidationError(f"unknown kyc status: {status}") from e
    account = get_account(s, user_id)
    old_status = account.kyc_status
    account.kyc_status = status
    s.add(account)
    audit(s, staff.id, 'set_kyc_status', user_id, {'old_status': old_status, 'new_status': status}, note)
    s.commit()
    s.refresh(account)
    return account


# ------------------------------ Depósitos ------------------------------

def create_deposit(s: Session, user: User, amount, config: PlatformConfig,
                   reference: Optional[str] = None) -> Deposit:
    amount = _positive(amount)
    if amount < config.min_deposit_amount:
        raise ValidationError(f"amount must be at least {config.min_deposit_amount}")
    get_account(s, user.id)
    deposit = Deposit(user_id=user.id, amount=amount, reference=reference)
    s.add(deposit)
    s.commit()
    s.refresh(deposit)
    return deposit


def _get_deposit(s: Session, deposit_id: int) -> Deposit:
    deposit = s.get(Deposit, deposit_id)
    if not deposit:
        raise NotFoundError(f"Deposit {deposit_id} not found")
    return deposit


# _settle: Cambia el estado de un depósito/retiro solo si sigue pendiente.
def _settle(s: Session, model, record_id: int, new_status: str, note: Optional[str]):
    values = {'status': new_status, 'admin_note': note}
    if new_status == FundsStatus.COMPLETED.value:
        values['completed_at'] = datetime.utcnow()
    statement = (
        update(model)
        .where(model.id == record_id, model.status == FundsStatus.PENDING.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if s.exec(statement).rowcount != 1:
        raise ConflictError(f"{model.__name__} {record_id} is no longer pending")


# confirm_deposit: La transferencia bancaria ya fue validada externamente;
# aquí solo se acredita una vez y se audita.
def confirm_deposit(s: Session, staff: User, deposit_id: int, note: Optional[str] = None) -> Deposit:
    require_staff(staff, 'deposit confirmation')
    deposit = _get_deposit(s, deposit_id)
    _settle(s, Deposit, deposit_id, FundsStatus.COMPLETED.value, note)
    credit(s, deposit.user_id, deposit.amount, 'deposit', staff.id, {'deposit_id': deposit_id})
    audit(s, staff.id, 'confirm_deposit', deposit.user_id,
          {'deposit_id': deposit_id, 'amount': money(deposit.amount)}, note)
    s.commit()
    logger.info("Deposit %s confirmed by %s", deposit_id, staff.id)
    s.refresh(deposit)
    return deposit


def reject_deposit(s: Session, staff: User, deposit_id: int, note: Optional[str] = None) -> Deposit:
    require_staff(staff, 'deposit rejection')
    deposit = _get_deposit(s, deposit_id)
    _settle(s, Deposit, deposit_id, FundsStatus.REJECTED.value, note)
    audit(s, staff.id, 'reject_deposit', deposit.user_id, {'deposit_id': deposit_id}, note)
    s.commit()
    s.refresh(deposit)
    return deposit


def expire_stale_deposits(s: Session, config: PlatformConfig, now: Optional[datetime] = None) -> List[dict]:
    """Rechaza solicitudes de depósito pending más antiguas que stale_deposit_minutes.

    Los registros se conservan con estado rejected; un depósito confirmado en
    paralelo no se toca.
    """
    now = now or datetime.utcnow()
    cutoff = now - timedelta(minutes=config.stale_deposit_minutes)
    stale = s.exec(
        select(Deposit).where(Deposit.status == FundsStatus.PENDING.value, Deposit.created_at < cutoff)
    ).all()
    actions = []
    for deposit in stale:
        try:
            _settle(s, Deposit, deposit.id, FundsStatus.REJECTED.value, 'expired after timeout')
        except ConflictError:
            logger.info("Skipping deposit %s: status changed during stale cleanup", deposit.id)
            continue
        audit(s, SYSTEM_ACTOR_ID, 'expire_deposit', deposit.user_id,
              {'deposit_id': deposit.id, 'amount': money(deposit.amount)})
        actions.append({'deposit_id': deposit.id, 'user_id': deposit.user_id, 'action': 'EXPIRED'})
    s.commit()
    if actions:
        logger.info("Expired %d stale deposit request(s)", len(actions))
    return actions


# ------------------------------- Retiros -------------------------------

def ensure_withdrawable(account: Account):
    """Una congelación solo se manifiesta como bloqueo de retiros."""
    if account.is_balance_frozen:
        raise AccountFrozenError("Withdrawals are blocked for this account",
                                 reason=account.balance_freeze_reason)


def create_withdrawal(s: Session, user: User, amount, bank_name: str, bank_account_number: str,
                      bank_account_name: str, config: PlatformConfig,
                      now: Optional[datetime] = None) -> Withdrawal:
    amount = _positive(amount)
    if amount < config.min_withdrawal_amount:
        raise ValidationError(f"amount must be at least {config.min_withdrawal_amount}")
    if not (bank_name or '').strip() or not (bank_account_number or '').strip() \
            or not (bank_account_name or '').strip():
        raise ValidationError("bank details are required")
    account = get_account(s, user.id)
    ensure_withdrawable(account)
    if config.require_kyc_for_withdrawal and account.kyc_status != KycStatus.APPROVED.value:
        raise ValidationError("KYC must be approved before withdrawing")
    if account.balance < amount:
        raise InsufficientBalanceError(f"Balance below requested {amount}", required=money(amount))

    now = now or datetime.utcnow()
    last = s.exec(
        select(Withdrawal).where(Withdrawal.user_id == user.id).order_by(Withdrawal.created_at.desc())
    ).first()
    if last and last.created_at + timedelta(minutes=config.withdrawal_cooldown_minutes) > now:
        retry_at = last.created_at + timedelta(minutes=config.withdrawal_cooldown_minutes)
        raise ValidationError("Withdrawal cooldown is still active", retry_at=retry_at.isoformat())

    withdrawal = Withdrawal(
        user_id=user.id,
        amount=amount,
        bank_name=bank_name.strip(),
        bank_account_number=bank_account_number.strip(),
        bank_account_name=bank_account_name.strip().upper(),
        created_at=now,
    )
    s.add(withdrawal)
    s.commit()
    s.refresh(withdrawal)
    notify_admin('withdrawal', 'New withdrawal request',
                 f"User {user.username} requested {money(amount)} to {withdrawal.bank_name}")
    return withdrawal


def _get_withdrawal(s: Session, withdrawal_id: int) -> Withdrawal:
    withdrawal = s.get(Withdrawal, withdrawal_id)
    if not withdrawal:
        raise NotFoundError(f"Withdrawal {withdrawal_id} not found")
    return withdrawal


def confirm_withdrawal(s: Session, staff: User, withdrawal_id: int, note: Optional[str] = None) -> Withdrawal:
    require_staff(staff, 'withdrawal confirmation')
    withdrawal = _get_withdrawal(s, withdrawal_id)
    if withdrawal.status != FundsStatus.PENDING.value:
        raise ConflictError(f"Withdrawal {withdrawal_id} is no longer pending")
    ensure_withdrawable(get_account(s, withdrawal.user_id))
    try:
        _settle(s, Withdrawal, withdrawal_id, FundsStatus.COMPLETED.value, note)
        debit(s, withdrawal.user_id, withdrawal.amount, 'withdrawal', staff.id, {'withdrawal_id': withdrawal_id})
    except (ConflictError, InsufficientBalanceError):
        s.rollback()
        raise
    audit(s, staff.id, 'confirm_withdrawal', withdrawal.user_id,
          {'withdrawal_id': withdrawal_id, 'amount': money(withdrawal.amount)}, note)
    s.commit()
    logger.info("Withdrawal %s confirmed by %s", withdrawal_id, staff.id)
    s.refresh(withdrawal)
    return withdrawal


def reject_withdrawal(s: Session, staff: User, withdrawal_id: int, note: Optional[str] = None) -> Withdrawal:
    require_staff(staff, 'withdrawal rejection')
    withdrawal = _get_withdrawal(s, withdrawal_id)
    _settle(s, Withdrawal, withdrawal_id, FundsStatus.REJECTED.value, note)
    audit(s, staff.id, 'reject_withdrawal', withdrawal.user_id, {'withdrawal_id': withdrawal_id}, note)
    s.commit()
    s.refresh(withdrawal)
    return withdrawal
