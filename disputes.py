"""Resolución de disputas por el staff.

resolve: disputed -> completed, paga seller_receives al vendedor.
refund:  disputed -> refunded, devuelve al comprador lo que se le debitó (el monto
         más la comisión si la asumía, o la mitad si era compartida).

Una disputa abierta antes del depósito solo puede cerrarse con refund, que en
ese caso no mueve dinero.

Ambas son de un solo uso: sobre una sala que ya no está en disputa se lanza
ConflictError y el saldo no vuelve a moverse.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional
from sqlmodel import Session
from errors import ConflictError
from ledger import audit, credit, money
from fees import buyer_payable
from models import SlotRole, Transaction, TransactionStatus as TS, User
from rooms import RoomRegistry, slot_map
from security import require_staff
from transaction import TransactionService

logger = logging.getLogger(__name__)


def _load_disputed(s: Session, transaction_id: int, staff: User, action: str) -> Transaction:
    require_staff(staff, action)
    tx = RoomRegistry.get_transaction(s, transaction_id)
    if tx.status != TS.DISPUTED.value:
        raise ConflictError(f"Transaction {transaction_id} is {tx.status}, not disputed", status=tx.status)
    return tx


# refund_amount: Lo que vuelve al comprador en un reembolso, exactamente lo que
# se le debitó al depositar (monto más su parte de la comisión).
def refund_amount(tx: Transaction) -> Decimal:
    return buyer_payable(tx.amount, tx.platform_fee_percent, tx.fee_bearer)


class DisputeService:
    """Operaciones privilegiadas de salida del estado disputed."""

    @staticmethod
    def resolve(s: Session, transaction_id: int, staff: User, note: Optional[str] = None) -> Transaction:
        tx = _load_disputed(s, transaction_id, staff, 'dispute resolution')
        slots = slot_map(s, tx.id)
        seller_id = slots.get(SlotRole.SELLER.value)
        note = note or 'dispute resolved in favour of the seller'
        if tx.deposited_at is None:
            raise ConflictError("Nothing was deposited for this room; refund it to close the dispute")
        payout = tx.seller_receives
        try:
            TransactionService.transition(s, tx, TS.COMPLETED.value, staff.id, note=note,
                                          completed_at=datetime.utcnow())
        except ConflictError:
            s.rollback()
            raise
        if seller_id is not None and payout > 0:
            credit(s, seller_id, payout, 'escrow_payout', staff.id, {'transaction_id': tx.id})
        audit(s, staff.id, 'dispute_resolve', seller_id, {
            'transaction_id': tx.id,
            'old_status': TS.DISPUTED.value,
            'new_status': TS.COMPLETED.value,
            'performed_by': staff.id,
            'amount': money(payout),
        }, note)
        s.commit()
        s.refresh(tx)
        logger.info("Dispute on transaction %s resolved by %s", tx.id, staff.id)
        return tx

    @staticmethod
    def refund(s: Session, transaction_id: int, staff: User, note: Optional[str] = None) -> Transaction:
        tx = _load_disputed(s, transaction_id, staff, 'dispute refunds')
        slots = slot_map(s, tx.id)
        buyer_id = slots.get(SlotRole.BUYER.value)
        note = note or 'dispute refunded to the buyer'
        amount = refund_amount(tx) if tx.deposited_at is not None else Decimal('0')
        try:
            TransactionService.transition(s, tx, TS.REFUNDED.value, staff.id, note=note)
        except ConflictError:
            s.rollback()
            raise
        if buyer_id is not None and amount > 0:
            credit(s, buyer_id, amount, 'escrow_refund', staff.id, {'transaction_id': tx.id})
        audit(s, staff.id, 'dispute_refund', buyer_id, {
            'transaction_id': tx.id,
            'old_status': TS.DISPUTED.value,
            'new_status': TS.REFUNDED.value,
            'performed_by': staff.id,
            'amount': money(amount),
        }, note)
        s.commit()
        s.refresh(tx)
        logger.info("Dispute on transaction %s refunded by %s", tx.id, staff.id)
        return tx
