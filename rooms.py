"""Registro de salas: creación, lectura y datos de producto del vendedor.

Cada sala nace en estado pending con credenciales únicas (room_id de 6
caracteres alfanuméricos y contraseña numérica de 4 dígitos) y con sus cuatro
plazas (buyer, seller, moderator, arbiter) creadas vacías.
"""

import logging
import secrets
import string
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional
from sqlmodel import Session, select
from config import PlatformConfig
from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from fees import compute_fees, normalize_fee_bearer
from models import (
    FeeBearer,
    RoomSlot,
    SlotRole,
    Transaction,
    TransactionLog,
    TransactionStatus,
    User,
    UserRole,
    is_staff,
)

logger = logging.getLogger(__name__)

ROOM_ID_ALPHABET = string.ascii_uppercase + string.digits
ROOM_ID_LENGTH = 6
ROOM_PASSWORD_LENGTH = 4
CODE_PREFIX = 'GD'
INITIATOR_ROLES = ('seller', 'buyer', 'moderator')


def _random_room_id() -> str:
    return ''.join(secrets.choice(ROOM_ID_ALPHABET) for _ in range(ROOM_ID_LENGTH))


def _random_password() -> str:
    return ''.join(secrets.choice(string.digits) for _ in range(ROOM_PASSWORD_LENGTH))


def _random_code() -> str:
    return CODE_PREFIX + ''.join(secrets.choice(ROOM_ID_ALPHABET) for _ in range(8))


# generate_credentials: Genera (room_id, password, código) no usados todavía.
def generate_credentials(s: Session, max_attempts: int = 20):
    for _ in range(max_attempts):
        room_id = _random_room_id()
        code = _random_code()
        taken = s.exec(
            select(Transaction.id).where(
                (Transaction.room_id == room_id) | (Transaction.transaction_code == code)
            )
        ).first()
        if taken is None:
            return room_id, _random_password(), code
    raise ConflictError("Could not allocate a unique room id, retry")


def _staff_slot_for(user: User) -> str:
    if user.role == UserRole.MODERATOR.value:
        return SlotRole.MODERATOR.value
    return SlotRole.ARBITER.value


# apply_product_details: Rellena los datos comerciales y recalcula comisiones.
def apply_product_details(tx: Transaction, config: PlatformConfig, product_name: str, amount,
                          fee_bearer, category: Optional[str] = None,
                          product_description: Optional[str] = None) -> Transaction:
    if not product_name or not product_name.strip():
        raise ValidationError("product_name is required")
    if amount is None:
        raise ValidationError("amount is required")
    fee_bearer = normalize_fee_bearer(fee_bearer)
    breakdown = compute_fees(amount, config.default_fee_percent, fee_bearer,
                             min_amount=config.min_transaction_amount)
    tx.product_name = product_name.strip()
    tx.product_description = product_description
    tx.category = (category or 'other').strip() or 'other'
    tx.amount = Decimal(str(amount))
    tx.fee_bearer = fee_bearer
    tx.platform_fee_percent = config.default_fee_percent
    tx.platform_fee_amount = breakdown.fee_amount
    tx.seller_receives = breakdown.seller_receives
    tx.updated_at = datetime.utcnow()
    return tx


class RoomRegistry:
    """Agrupa la creación y consulta de salas."""

    @staticmethod
    def create_room(s: Session, creator: User, initiator_role: str, config: PlatformConfig,
                    product_name: Optional[str] = None, amount=None, fee_bearer=None,
                    category: Optional[str] = None,
                    product_description: Optional[str] = None) -> Transaction:
        """Crea una sala y sienta al creador en su plaza.

        Salas de vendedor: requieren producto, monto y quién asume la comisión
        y calculan la vista previa de comisiones. Salas de comprador o de
        moderador: el monto empieza en 0 y lo aporta después el vendedor.
        """
        if initiator_role not in INITIATOR_ROLES:
            raise ValidationError(f"initiator_role must be one of {', '.join(INITIATOR_ROLES)}")
        if initiator_role == 'moderator' and not is_staff(creator.role):
            raise AuthorizationError("Only staff may open moderator rooms")

        room_id, password, code = generate_credentials(s)
        tx = Transaction(
            transaction_code=code,
            room_id=room_id,
            room_password=password,
            status=TransactionStatus.PENDING.value,
            platform_fee_percent=config.default_fee_percent,
            fee_bearer=FeeBearer.SELLER.value,
            dispute_time_hours=config.default_dispute_hours,
            created_by=creator.id,
        )
        if initiator_role == 'seller':
            apply_product_details(tx, config, product_name, amount, fee_bearer or FeeBearer.SELLER.value,
                                  category, product_description)
            seat = SlotRole.SELLER.value
        else:
            if product_name:
                tx.product_name = product_name.strip()
            tx.category = category or 'other'
            seat = SlotRole.BUYER.value if initiator_role == 'buyer' else _staff_slot_for(creator)

        s.add(tx)
        s.flush()
        now = datetime.utcnow()
        for role in SlotRole:
            occupant = creator.id if role.value == seat else None
            s.add(RoomSlot(transaction_id=tx.id, role=role.value, user_id=occupant,
                           joined_at=now if occupant else None))
        s.add(TransactionLog(transaction_id=tx.id, action='created', new_status=tx.status,
                             performed_by=creator.id, note=f"room opened by {initiator_role}"))
        s.commit()
        s.refresh(tx)
        logger.info("Room %s (%s) created by user %s as %s", tx.room_id, tx.transaction_code,
                    creator.id, initiator_role)
        return tx

    @staticmethod
    def get_room(s: Session, room_id: str) -> Transaction:
        """Busca por room_id (normalizado a mayúsculas) o lanza NotFoundError."""
        normalized = (room_id or '').strip().upper()
        tx = s.exec(select(Transaction).where(Transaction.room_id == normalized)).first()
        if not tx:
            raise NotFoundError(f"Room {normalized} not found")
        return tx

    @staticmethod
    def get_transaction(s: Session, transaction_id: int) -> Transaction:
        tx = s.get(Transaction, transaction_id)
        if not tx:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return tx

    @staticmethod
    def list_rooms_for_user(s: Session, user_id: int, limit: int = 50) -> List[Transaction]:
        statement = (
            select(Transaction)
            .join(RoomSlot, RoomSlot.transaction_id == Transaction.id)
            .where(RoomSlot.user_id == user_id)
            .order_by(Transaction.created_at.desc())
            .limit(limit)
        )
        return list(s.exec(statement).all())

    @staticmethod
    def set_product_details(s: Session, tx: Transaction, actor: User, config: PlatformConfig,
                            product_name: str, amount, fee_bearer, category: Optional[str] = None,
                            product_description: Optional[str] = None) -> Transaction:
        """Subflujo del vendedor: completa una sala creada con monto 0."""
        if slot_map(s, tx.id).get(SlotRole.SELLER.value) != actor.id:
            raise AuthorizationError("Only the seller may set product details")
        if tx.status != TransactionStatus.PENDING.value:
            raise ConflictError("Product details can only change while the room is pending")
        apply_product_details(tx, config, product_name, amount, fee_bearer, category, product_description)
        s.add(tx)
        s.add(TransactionLog(transaction_id=tx.id, action='product_details', old_status=tx.status,
                             new_status=tx.status, performed_by=actor.id,
                             note=f"amount={tx.amount} fee_bearer={tx.fee_bearer}"))
        s.commit()
        s.refresh(tx)
        return tx


# slot_map: Devuelve {rol: user_id | None} para las cuatro plazas de la sala.
def slot_map(s: Session, transaction_id: int) -> Dict[str, Optional[int]]:
    slots = {role.value: None for role in SlotRole}
    rows = s.exec(select(RoomSlot).where(RoomSlot.transaction_id == transaction_id)).all()
    for row in rows:
        slots[row.role] = row.user_id
    return slots


# room_view: Serializa la sala con su mapa de plazas y los *_id derivados.
def room_view(s: Session, tx: Transaction, include_password: bool = False) -> dict:
    slots = slot_map(s, tx.id)
    data = tx.model_dump()
    if not include_password:
        data.pop('room_password', None)
    data['slots'] = slots
    for role, user_id in slots.items():
        data[f"{role}_id"] = user_id
    data['participant_count'] = sum(1 for v in slots.values() if v is not None)
    return data
