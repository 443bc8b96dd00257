"""Asignación de plazas y protocolo de entrada a una sala.

El flujo se divide en dos partes para poder razonar sobre la concurrencia:

- plan_join: decisión pura sobre una instantánea del mapa de plazas (qué plaza
  le corresponde al que entra, o None si ya está dentro).
- claim_slot: UPDATE condicional de una sola sentencia que asigna la plaza
  solo si sigue libre y si el usuario no ocupa otra plaza de la misma sala.
  Ante una carrera, como mucho un llamador gana; el resto recibe
  ConflictError y debe repetir el flujo completo.
"""

import logging
from datetime import datetime
from typing import Dict, Optional
from sqlalchemy import exists, update
from sqlalchemy.orm import aliased
from sqlmodel import Session
from config import PlatformConfig
from errors import AuthorizationError, ConflictError, InsufficientBalanceError, ValidationError
from fees import buyer_payable
from ledger import get_account, money
from models import (
    RoomSlot,
    SlotRole,
    STAFF_SLOTS,
    TRADING_SLOTS,
    Transaction,
    TransactionLog,
    TransactionStatus,
    User,
    UserRole,
    is_staff,
)
from rooms import RoomRegistry, apply_product_details, slot_map

logger = logging.getLogger(__name__)

MAX_PARTICIPANTS = 4


class JoinResult:
    """Resultado de una entrada: plaza ocupada y si hubo mutación."""
    def __init__(self, transaction: Transaction, role: str, joined: bool):
        self.transaction = transaction
        self.role = role
        self.joined = joined

    # to_dict: Serializa el resultado para la respuesta HTTP.
    def to_dict(self):
        tx = self.transaction
        return {
            'transaction_id': tx.id,
            'room_id': tx.room_id,
            'role': self.role,
            'joined': self.joined,
            'requires_product_details': self.role == SlotRole.SELLER.value and tx.amount == 0,
        }


def _held_slot(slots: Dict[str, Optional[int]], user_id: int) -> Optional[str]:
    for role, occupant in slots.items():
        if occupant == user_id:
            return role
    return None


def _staff_preference(user: User):
    if user.role == UserRole.MODERATOR.value:
        return (SlotRole.MODERATOR.value, SlotRole.ARBITER.value)
    return (SlotRole.ARBITER.value, SlotRole.MODERATOR.value)


# plan_join: Decide la plaza destino. Devuelve None si la entrada es idempotente.
def plan_join(tx: Transaction, slots: Dict[str, Optional[int]], caller: User,
              requested_role: Optional[str] = None) -> Optional[str]:
    held = _held_slot(slots, caller.id)
    if held in TRADING_SLOTS:
        return None

    if is_staff(caller.role):
        if held in STAFF_SLOTS:
            return None
        for role in _staff_preference(caller):
            if slots.get(role) is None:
                return role
        raise ConflictError("room already has staff")

    if tx.status != TransactionStatus.PENDING.value:
        raise ConflictError(f"room is {tx.status} and no longer accepts participants")
    if requested_role is not None and requested_role not in TRADING_SLOTS:
        raise ValidationError("requested role must be buyer or seller")

    buyer = slots.get(SlotRole.BUYER.value)
    seller = slots.get(SlotRole.SELLER.value)
    if buyer is not None and seller is not None:
        raise ConflictError("room already has a buyer and a seller")
    if sum(1 for occupant in slots.values() if occupant is not None) >= MAX_PARTICIPANTS:
        raise ConflictError("room is full")

    if seller is not None:
        target = SlotRole.BUYER.value
    elif buyer is not None:
        target = SlotRole.SELLER.value
    elif requested_role is not None:
        target = requested_role
    elif tx.amount == 0:
        # Sala vacía creada por staff: el usuario debe elegir su papel.
        raise ValidationError("choose buyer or seller to join this room", requires_role_choice=True)
    else:
        target = SlotRole.SELLER.value

    if requested_role is not None and requested_role != target:
        raise ConflictError(f"{requested_role} slot is already taken")
    return target


# claim_slot: Asignación atómica "asignar si nulo". Lanza ConflictError si se pierde.
def claim_slot(s: Session, transaction_id: int, role: str, user_id: int):
    other = aliased(RoomSlot)
    statement = (
        update(RoomSlot)
        .where(
            RoomSlot.transaction_id == transaction_id,
            RoomSlot.role == role,
            RoomSlot.user_id.is_(None),
        )
        .where(~exists().where(other.transaction_id == transaction_id, other.user_id == user_id))
        .values(user_id=user_id, joined_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if s.exec(statement).rowcount != 1:
        raise ConflictError(f"{role} slot was taken by a concurrent join, retry", retry=True)


# check_buyer_funds: Preflight del comprador: saldo >= monto + su parte de comisión.
def check_buyer_funds(s: Session, tx: Transaction, user_id: int):
    if tx.amount == 0:
        return
    required = buyer_payable(tx.amount, tx.platform_fee_percent, tx.fee_bearer)
    account = get_account(s, user_id)
    if account.balance < required:
        raise InsufficientBalanceError(
            f"Balance {money(account.balance)} is below the required payable {money(required)}",
            required=money(required),
            balance=money(account.balance),
        )


def join_room(s: Session, room_id: str, password: str, caller: User, config: PlatformConfig,
              requested_role: Optional[str] = None, details: Optional[dict] = None) -> JoinResult:
    """Une al llamador a la sala indicada.

    Los moderadores y admins no necesitan contraseña y ocupan plazas de staff.
    El resto ocupa buyer o seller según el mapa de plazas. Todo se aplica en
    un único commit: si algo falla no queda estado parcial visible.
    """
    tx = RoomRegistry.get_room(s, room_id)
    staff = is_staff(caller.role)
    if not staff and (password or '').strip().upper() != tx.room_password.upper():
        raise AuthorizationError("Wrong room password")

    slots = slot_map(s, tx.id)
    target = plan_join(tx, slots, caller, requested_role)
    if target is None:
        return JoinResult(tx, _held_slot(slots, caller.id), joined=False)

    if target == SlotRole.BUYER.value:
        check_buyer_funds(s, tx, caller.id)
    if details and target == SlotRole.SELLER.value:
        if tx.amount != 0:
            raise ValidationError("room already has product details")
        apply_product_details(tx, config, details.get('product_name'), details.get('amount'),
                              details.get('fee_bearer'), details.get('category'),
                              details.get('product_description'))
        s.add(tx)

    try:
        claim_slot(s, tx.id, target, caller.id)
    except ConflictError:
        s.rollback()
        logger.info("User %s lost the %s slot race on room %s", caller.id, target, tx.room_id)
        raise

    if staff:
        s.add(TransactionLog(transaction_id=tx.id, action='staff_joined', old_status=tx.status,
                             new_status=tx.status, performed_by=caller.id,
                             note=f"{caller.username} ({caller.role}) entered the room as {target}"))
    else:
        s.add(TransactionLog(transaction_id=tx.id, action='joined', old_status=tx.status,
                             new_status=tx.status, performed_by=caller.id, note=f"joined as {target}"))
    s.commit()
    s.refresh(tx)
    logger.info("User %s joined room %s as %s", caller.id, tx.room_id, target)
    return JoinResult(tx, target, joined=True)
