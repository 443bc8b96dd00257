"""Motor de reconciliación de saldos.

Recalcula el saldo esperado de cada cuenta a partir de su historial completo:

    esperado = depósitos completados - retiros completados
             - monto de salas como comprador (deposited, shipping, completed)
             + seller_receives de salas completadas como vendedor
             + ajustes manuales del staff (adjust_balance)

y marca anomalías cuando el saldo almacenado se desvía. Solo BALANCE_INFLATED,
UNEXPLAINED_BALANCE y SUSPICIOUS_BALANCE_CHANGE congelan automáticamente; una
deflación se registra pero no congela. El motor nunca reescribe saldos: solo
levanta banderas, por lo que puede ejecutarse en paralelo con el tráfico
normal (el resultado es eventualmente consistente).
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select
from config import PlatformConfig
from ledger import freeze_account, money
from models import (
    Account,
    AdminActionLog,
    Deposit,
    FundsStatus,
    RoomSlot,
    SlotRole,
    SYSTEM_ACTOR_ID,
    Transaction,
    TransactionStatus as TS,
    User,
    Withdrawal,
    is_staff,
)

logger = logging.getLogger(__name__)

ZERO = Decimal('0')
BUYER_SPEND_STATES = (TS.DEPOSITED.value, TS.SHIPPING.value, TS.COMPLETED.value)

BALANCE_INFLATED = 'BALANCE_INFLATED'
BALANCE_DEFLATED = 'BALANCE_DEFLATED'
UNEXPLAINED_BALANCE = 'UNEXPLAINED_BALANCE'
SUSPICIOUS_BALANCE_CHANGE = 'SUSPICIOUS_BALANCE_CHANGE'
# La deflación queda fuera a propósito: se informa pero no congela.
AUTO_FREEZE_ISSUES = frozenset({BALANCE_INFLATED, UNEXPLAINED_BALANCE, SUSPICIOUS_BALANCE_CHANGE})


def _dec(value) -> Decimal:
    if value is None:
        return ZERO
    result = value if isinstance(value, Decimal) else Decimal(str(value))
    if not result.is_finite():
        raise ValueError(f"non-finite amount: {value!r}")
    return result


@dataclass
class BalanceBreakdown:
    """Componentes del saldo esperado de una cuenta."""
    total_deposited: Decimal = ZERO
    total_withdrawn: Decimal = ZERO
    total_spent_as_buyer: Decimal = ZERO
    total_received_as_seller: Decimal = ZERO
    admin_adjustments: Decimal = ZERO
    completed_deposits: int = 0
    completed_sales: int = 0
    unknown_change_total: Decimal = ZERO
    unknown_log_ids: List[int] = field(default_factory=list)
    unreadable_log_ids: List[int] = field(default_factory=list)

    @property
    def expected(self) -> Decimal:
        return (self.total_deposited - self.total_withdrawn - self.total_spent_as_buyer
                + self.total_received_as_seller + self.admin_adjustments)

    def calculation(self) -> dict:
        return {
            'total_deposited': money(self.total_deposited),
            'total_withdrawn': money(self.total_withdrawn),
            'total_spent_as_buyer': money(self.total_spent_as_buyer),
            'total_received_as_seller': money(self.total_received_as_seller),
            'admin_adjustments': money(self.admin_adjustments),
        }


# collect_breakdowns: Agrega el historial financiero por usuario en una sola pasada.
def collect_breakdowns(s: Session) -> Dict[int, BalanceBreakdown]:
    result: Dict[int, BalanceBreakdown] = defaultdict(BalanceBreakdown)

    for dep in s.exec(select(Deposit).where(Deposit.status == FundsStatus.COMPLETED.value)).all():
        b = result[dep.user_id]
        b.total_deposited += _dec(dep.amount)
        b.completed_deposits += 1

    for wd in s.exec(select(Withdrawal).where(Withdrawal.status == FundsStatus.COMPLETED.value)).all():
        result[wd.user_id].total_withdrawn += _dec(wd.amount)

    seated = s.exec(
        select(RoomSlot.user_id, RoomSlot.role, Transaction.amount, Transaction.seller_receives,
               Transaction.status)
        .join(Transaction, Transaction.id == RoomSlot.transaction_id)
        .where(RoomSlot.user_id.is_not(None),
               RoomSlot.role.in_((SlotRole.BUYER.value, SlotRole.SELLER.value)))
    ).all()
    for user_id, role, amount, seller_receives, status in seated:
        b = result[user_id]
        if role == SlotRole.BUYER.value and status in BUYER_SPEND_STATES:
            b.total_spent_as_buyer += _dec(amount)
        elif role == SlotRole.SELLER.value and status == TS.COMPLETED.value:
            b.total_received_as_seller += _dec(seller_receives)
            b.completed_sales += 1

    logs = s.exec(
        select(AdminActionLog).where(AdminActionLog.action_type.in_(('adjust_balance', 'balance_change')))
    ).all()
    for entry in logs:
        if entry.target_user_id is None:
            continue
        details = entry.details or {}
        b = result[entry.target_user_id]
        try:
            if entry.action_type == 'adjust_balance':
                b.admin_adjustments += _dec(details.get('amount'))
            elif details.get('source') == 'unknown':
                b.unknown_log_ids.append(entry.id)
                b.unknown_change_total += _dec(details.get('difference'))
        except (ArithmeticError, TypeError, ValueError):
            # Una fila ilegible no se suma, pero una de origen desconocido sigue contando como sospechosa.
            logger.warning("Unreadable %s audit entry %s for user %s", entry.action_type, entry.id,
                           entry.target_user_id)
            if entry.id in b.unknown_log_ids:
                b.unreadable_log_ids.append(entry.id)
    return result


def _anomaly(account: Account, name: str, issue: str, severity: str, details: str,
             expected: Decimal, difference: Decimal) -> dict:
    return {
        'userId': account.user_id,
        'userName': name,
        'issue': issue,
        'severity': severity,
        'details': details,
        'actualBalance': _dec(account.balance),
        'expectedBalance': expected,
        'difference': difference,
    }


# detect_anomalies: Aplica las reglas de forma independiente (una cuenta
# puede acumular varias anomalías). Función pura sobre cuenta y desglose.
def detect_anomalies(account: Account, breakdown: BalanceBreakdown, config: PlatformConfig,
                     name: Optional[str] = None) -> List[dict]:
    name = name or account.full_name or f"user-{account.user_id}"
    actual = _dec(account.balance)
    expected = breakdown.expected
    difference = actual - expected
    found = []

    if abs(difference) > config.drift_threshold:
        issue = BALANCE_INFLATED if difference > 0 else BALANCE_DEFLATED
        severity = 'high' if abs(difference) > config.high_drift_threshold else 'medium'
        details = (f"[AUTO-FREEZE] Balance {money(actual)} vs expected {money(expected)} "
                   f"(difference {money(difference)}). Formula: deposits {money(breakdown.total_deposited)} "
                   f"- withdrawals {money(breakdown.total_withdrawn)} - bought {money(breakdown.total_spent_as_buyer)} "
                   f"+ sold {money(breakdown.total_received_as_seller)} "
                   f"+ adjustments {money(breakdown.admin_adjustments)}")
        if issue == BALANCE_DEFLATED:
            details = details.replace('[AUTO-FREEZE] ', '')
        found.append(_anomaly(account, name, issue, severity, details, expected, difference))

    if (actual > config.unexplained_balance_threshold and breakdown.completed_deposits == 0
            and breakdown.completed_sales == 0 and breakdown.admin_adjustments <= 0):
        details = (f"[AUTO-FREEZE] Unexplained balance {money(actual)}: no completed deposit, "
                   f"sale or staff adjustment")
        found.append(_anomaly(account, name, UNEXPLAINED_BALANCE, 'high', details, ZERO, actual))

    if breakdown.unknown_change_total != 0 or breakdown.unreadable_log_ids:
        details = (f"[AUTO-FREEZE] {len(breakdown.unknown_log_ids)} balance change(s) from an unknown "
                   f"source totalling {money(breakdown.unknown_change_total)}")
        if breakdown.unreadable_log_ids:
            details += f" ({len(breakdown.unreadable_log_ids)} with an unreadable amount)"
        found.append(_anomaly(account, name, SUSPICIOUS_BALANCE_CHANGE, 'high', details, expected,
                              breakdown.unknown_change_total))
    return found


# _freeze_if_needed: Congela la cuenta si alguna anomalía lo exige y confirma.
# Devuelve los issues que motivaron la congelación (vacío si no se congeló).
def _freeze_if_needed(s: Session, account: Account, breakdown: BalanceBreakdown, found: List[dict]) -> List[str]:
    freezing = [a for a in found if a['issue'] in AUTO_FREEZE_ISSUES]
    if not freezing:
        return []
    reason = ' | '.join(a['details'] for a in freezing)
    details = {
        'issues': [a['issue'] for a in freezing],
        'actual_balance': money(account.balance),
        'expected_balance': money(breakdown.expected),
        'difference': money(_dec(account.balance) - breakdown.expected),
        'calculation': breakdown.calculation(),
        'suspicious_log_ids': breakdown.unknown_log_ids,
    }
    freeze_account(s, account, reason, SYSTEM_ACTOR_ID, details=details,
                   note='Frozen automatically by the balance reconciliation scan')
    s.commit()
    return details['issues']


class ReconciliationEngine:
    """Escaneo bajo demanda (o programado externamente) de todas las cuentas."""

    @staticmethod
    def scan(s: Session, config: PlatformConfig, now: Optional[datetime] = None) -> dict:
        """Devuelve {scanned, staffSkipped, anomaliesFound, accountsFrozen, ...}.

        Un fallo al evaluar o congelar una cuenta se registra y no aborta el escaneo.
        """
        now = now or datetime.utcnow()
        logger.info("Starting balance reconciliation scan")
        breakdowns = collect_breakdowns(s)
        rows = s.exec(select(Account, User).join(User, User.id == Account.user_id).order_by(Account.id)).all()

        anomalies: List[dict] = []
        frozen_users: List[int] = []
        staff_skipped = 0
        for account, user in rows:
            if account.is_balance_frozen:
                continue
            if is_staff(user.role):
                staff_skipped += 1
                continue
            user_id = account.user_id
            breakdown = breakdowns.get(user_id, BalanceBreakdown())
            try:
                found = detect_anomalies(account, breakdown, config, account.full_name or user.username)
            except (ArithmeticError, TypeError, ValueError):
                logger.exception("Failed to evaluate account of user %s", user_id)
                continue
            anomalies.extend(found)
            try:
                issues = _freeze_if_needed(s, account, breakdown, found)
            except (SQLAlchemyError, ArithmeticError, TypeError, ValueError):
                s.rollback()
                logger.exception("Failed to freeze account of user %s", user_id)
                continue
            if issues:
                frozen_users.append(user_id)
                logger.warning("Froze account of user %s: %s", user_id, ', '.join(issues))

        summary = {
            'success': True,
            'scanned': len(rows),
            'staffSkipped': staff_skipped,
            'anomaliesFound': len(anomalies),
            'accountsFrozen': len(frozen_users),
            'frozenUsers': frozen_users,
            'anomalies': anomalies,
            'timestamp': now.isoformat(),
        }
        logger.info("Reconciliation scan done: scanned=%d anomalies=%d frozen=%d",
                    summary['scanned'], summary['anomaliesFound'], summary['accountsFrozen'])
        return summary
