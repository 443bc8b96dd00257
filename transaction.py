"""Máquina de estados de las salas de garantía.

Grafo permitido:

    pending   -> deposited | disputed | cancelled
    deposited -> shipping  | disputed
    shipping  -> completed | disputed
    disputed  -> completed | refunded   (solo staff, ver disputes.py)

completed, cancelled y refunded son terminales. Cada cambio de estado es un
compare-and-set (UPDATE ... WHERE status = :actual); repetir una transición
cuyo destino ya se cumple no hace nada y cualquier otra arista se rechaza sin
mutar nada.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from sqlalchemy import update
from sqlmodel import Session, select
from config import PlatformConfig
from errors import AuthorizationError, ConflictError, InsufficientBalanceError, ValidationError
from fees import buyer_payable
from ledger import credit, debit, money
from models import (
    Account,
    SlotRole,
    SYSTEM_ACTOR_ID,
    Transaction,
    TransactionLog,
    TransactionStatus as TS,
    User,
    is_staff,
)
from notifier import notify_admin
from rooms import RoomRegistry, slot_map
from security import require_admin

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[str, frozenset] = {
    TS.PENDING.value: frozenset({TS.DEPOSITED.value, TS.DISPUTED.value, TS.CANCELLED.value}),
    TS.DEPOSITED.value: frozenset({TS.SHIPPING.value, TS.DISPUTED.value}),
    TS.SHIPPING.value: frozenset({TS.COMPLETED.value, TS.DISPUTED.value}),
    TS.DISPUTED.value: frozenset({TS.COMPLETED.value, TS.REFUNDED.value}),
    TS.COMPLETED.value: frozenset(),
    TS.CANCELLED.value: frozenset(),
    TS.REFUNDED.value: frozenset(),
}
TERMINAL_STATES = frozenset(state for state, targets in TRANSITIONS.items() if not targets)
DISPUTABLE_STATES = frozenset({TS.PENDING.value, TS.DEPOSITED.value, TS.SHIPPING.value})
DISPUTE_POLICY_STATES = {
    'any': DISPUTABLE_STATES,
    'after_deposit': frozenset({TS.DEPOSITED.value, TS.SHIPPING.value}),
}


def _trading_role(slots: dict, user: User) -> Optional[str]:
    if slots.get(SlotRole.BUYER.value) == user.id:
        return SlotRole.BUYER.value
    if slots.get(SlotRole.SELLER.value) == user.id:
        return SlotRole.SELLER.value
    return None


def _bump_totals(s: Session, *user_ids):
    ids = [uid for uid in user_ids if uid is not None]
    if ids:
        s.exec(
            update(Account)
            .where(Account.user_id.in_(ids))
            .values(total_transactions=Account.total_transactions + 1)
            .execution_options(synchronize_session=False)
        )


class TransactionService:
    """Agrupa las transiciones de estado de una sala."""

    @staticmethod
    def can_transition(current: str, target: str) -> bool:
        return target in TRANSITIONS.get(current, frozenset())

    @staticmethod
    def ensure_transition(tx: Transaction, target: str):
        """Valida la arista sin mutar nada. Lanza ConflictError si no existe."""
        if tx.status != target and not TransactionService.can_transition(tx.status, target):
            raise ConflictError(f"Cannot move transaction from {tx.status} to {target}",
                                status=tx.status)

    @staticmethod
    def transition(s: Session, tx: Transaction, target: str, performed_by: Optional[int],
                   note: Optional[str] = None, **fields) -> bool:
        """Aplica la transición como compare-and-set (sin commit).

        Devuelve False si el destino ya se cumplía (no-op) y True si cambió.
        """
        if tx.status == target:
            return False
        TransactionService.ensure_transition(tx, target)
        old_status = tx.status
        now = datetime.utcnow()
        statement = (
            update(Transaction)
            .where(Transaction.id == tx.id, Transaction.status == old_status)
            .values(status=target, updated_at=now, **fields)
            .execution_options(synchronize_session=False)
        )
        if s.exec(statement).rowcount != 1:
            raise ConflictError(f"Transaction {tx.id} changed concurrently, retry")
        s.add(TransactionLog(transaction_id=tx.id, action='status_change', old_status=old_status,
                             new_status=target, performed_by=performed_by, note=note))
        s.flush()
        s.refresh(tx)
        logger.info("Transaction %s: %s -> %s (by %s)", tx.id, old_status, target, performed_by)
        return True

    # ------------------------------------------------------------------
    @staticmethod
    def deposit(s: Session, transaction_id: int, actor: User, config: PlatformConfig) -> Transaction:
        """El comprador deposita: debita monto + su parte de comisión."""
        tx = RoomRegistry.get_transaction(s, transaction_id)
        slots = slot_map(s, tx.id)
        if slots.get(SlotRole.BUYER.value) != actor.id:
            raise AuthorizationError("Only the buyer may deposit")
        if tx.status == TS.DEPOSITED.value:
            return tx
        TransactionService.ensure_transition(tx, TS.DEPOSITED.value)
        if tx.amount <= 0:
            raise ValidationError("Room has no product details yet")
        payable = buyer_payable(tx.amount, tx.platform_fee_percent, tx.fee_bearer)
        try:
            debit(s, actor.id, payable, 'escrow_debit', actor.id, {'transaction_id': tx.id})
            TransactionService.transition(s, tx, TS.DEPOSITED.value, actor.id,
                                          note=f"buyer paid {money(payable)}",
                                          deposited_at=datetime.utcnow())
        except (InsufficientBalanceError, ConflictError):
            s.rollback()
            raise
        s.commit()
        s.refresh(tx)
        return tx

    @staticmethod
    def mark_shipped(s: Session, transaction_id: int, actor: User) -> Transaction:
        tx = RoomRegistry.get_transaction(s, transaction_id)
        if slot_map(s, tx.id).get(SlotRole.SELLER.value) != actor.id:
            raise AuthorizationError("Only the seller may mark the goods as delivered")
        if TransactionService.transition(s, tx, TS.SHIPPING.value, actor.id,
                                         note='seller marked goods delivered',
                                         shipped_at=datetime.utcnow()):
            s.commit()
            s.refresh(tx)
        return tx

    @staticmethod
    def _complete(s: Session, tx: Transaction, performed_by: int, note: str):
        """shipping -> completed y pago al vendedor (sin commit)."""
        slots = slot_map(s, tx.id)
        seller_id = slots.get(SlotRole.SELLER.value)
        TransactionService.transition(s, tx, TS.COMPLETED.value, performed_by, note=note,
                                      completed_at=datetime.utcnow())
        if seller_id is not None and tx.seller_receives > 0:
            credit(s, seller_id, tx.seller_receives, 'escrow_payout', performed_by,
                   {'transaction_id': tx.id})
        _bump_totals(s, seller_id, slots.get(SlotRole.BUYER.value))

    @staticmethod
    def confirm(s: Session, transaction_id: int, actor: User) -> Transaction:
        """Confirmación de una de las partes; con ambas, la sala se completa.

        Desde deposited se recorre deposited -> shipping -> completed en el
        mismo commit, usando solo aristas del grafo.
        """
        tx = RoomRegistry.get_transaction(s, transaction_id)
        role = _trading_role(slot_map(s, tx.id), actor)
        if role is None:
            raise AuthorizationError("Only the buyer or the seller may confirm")
        if tx.status == TS.COMPLETED.value:
            return tx
        if tx.status not in (TS.DEPOSITED.value, TS.SHIPPING.value):
            raise ConflictError(f"Cannot confirm a {tx.status} transaction", status=tx.status)

        flag = 'buyer_confirmed' if role == SlotRole.BUYER.value else 'seller_confirmed'
        s.exec(
            update(Transaction)
            .where(Transaction.id == tx.id)
            .values(**{flag: True, 'updated_at': datetime.utcnow()})
            .execution_options(synchronize_session=False)
        )
        s.commit()
        s.refresh(tx)
        if not (tx.buyer_confirmed and tx.seller_confirmed):
            return tx

        try:
            if tx.status == TS.DEPOSITED.value:
                TransactionService.transition(s, tx, TS.SHIPPING.value, actor.id,
                                              note='both parties confirmed',
                                              shipped_at=tx.shipped_at or datetime.utcnow())
            if tx.status == TS.SHIPPING.value:
                TransactionService._complete(s, tx, actor.id, 'both parties confirmed')
        except ConflictError:
            # La otra parte completó la sala en paralelo.
            s.rollback()
            s.refresh(tx)
            return tx
        s.commit()
        s.refresh(tx)
        return tx

    @staticmethod
    def force_complete(s: Session, transaction_id: int, admin: User, note: Optional[str] = None) -> Transaction:
        require_admin(admin, 'completion overrides')
        tx = RoomRegistry.get_transaction(s, transaction_id)
        if tx.status == TS.COMPLETED.value:
            return tx
        TransactionService.ensure_transition(tx, TS.COMPLETED.value)
        if tx.status != TS.SHIPPING.value:
            raise ConflictError("Disputed rooms are settled through resolve or refund", status=tx.status)
        TransactionService._complete(s, tx, admin.id, note or 'completed by admin override')
        s.commit()
        s.refresh(tx)
        return tx

    @staticmethod
    def raise_dispute(s: Session, transaction_id: int, actor: User, reason: str,
                      config: PlatformConfig, now: Optional[datetime] = None) -> Transaction:
        """Abre una disputa; queda pendiente de resolución por el staff."""
        tx = RoomRegistry.get_transaction(s, transaction_id)
        if _trading_role(slot_map(s, tx.id), actor) is None:
            raise AuthorizationError("Only the buyer or the seller may raise a dispute")
        if not reason or not reason.strip():
            raise ValidationError("A dispute reason is required")
        if tx.status == TS.DISPUTED.value:
            return tx
        TransactionService.ensure_transition(tx, TS.DISPUTED.value)
        if tx.status not in DISPUTE_POLICY_STATES[config.dispute_policy]:
            raise ConflictError(f"Disputes are not allowed while {tx.status} "
                                f"under the {config.dispute_policy} policy", status=tx.status)
        now = now or datetime.utcnow()
        if tx.status == TS.SHIPPING.value and tx.shipped_at is not None:
            deadline = tx.shipped_at + timedelta(hours=tx.dispute_time_hours)
            if now > deadline:
                raise ValidationError("The dispute window has closed", closed_at=deadline.isoformat())

        TransactionService.transition(s, tx, TS.DISPUTED.value, actor.id, note=reason.strip(),
                                      dispute_reason=reason.strip(), dispute_at=now)
        s.commit()
        s.refresh(tx)
        notify_admin('dispute', f"Dispute on room {tx.room_id}",
                     f"{actor.username} disputed {tx.transaction_code}: {tx.dispute_reason}")
        return tx

    @staticmethod
    def cancel(s: Session, transaction_id: int, actor: User, note: Optional[str] = None) -> Transaction:
        """pending -> cancelled. Aún no se movió dinero: no hay reversión."""
        tx = RoomRegistry.get_transaction(s, transaction_id)
        if not is_staff(actor.role) and _trading_role(slot_map(s, tx.id), actor) is None:
            raise AuthorizationError("Only participants or staff may cancel a room")
        if TransactionService.transition(s, tx, TS.CANCELLED.value, actor.id, note=note or 'cancelled'):
            s.commit()
            s.refresh(tx)
        return tx

    @staticmethod
    def cancel_stale_rooms(s: Session, config: PlatformConfig, now: Optional[datetime] = None) -> List[dict]:
        """Cancela salas pending más antiguas que stale_room_minutes."""
        now = now or datetime.utcnow()
        cutoff = now - timedelta(minutes=config.stale_room_minutes)
        stale = s.exec(
            select(Transaction).where(Transaction.status == TS.PENDING.value, Transaction.created_at < cutoff)
        ).all()
        actions = []
        for tx in stale:
            try:
                TransactionService.transition(s, tx, TS.CANCELLED.value, SYSTEM_ACTOR_ID,
                                              note='cancelled after timeout')
            except ConflictError:
                logger.info("Skipping room %s: status changed during stale cleanup", tx.room_id)
                continue
            actions.append({'transaction_id': tx.id, 'room_id': tx.room_id, 'action': 'CANCELLED'})
        s.commit()
        return actions

    @staticmethod
    def list_logs(s: Session, transaction_id: int) -> List[TransactionLog]:
        RoomRegistry.get_transaction(s, transaction_id)
        statement = (
            select(TransactionLog)
            .where(TransactionLog.transaction_id == transaction_id)
            .order_by(TransactionLog.id)
        )
        return list(s.exec(statement).all())
