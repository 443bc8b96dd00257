"""Modelos de datos persistentes.

Incluye usuarios y cuentas, salas de transacción con su mapa de plazas,
depósitos, retiros y los registros de auditoría de solo anexado
(AdminActionLog, RiskAlert, TransactionLog).
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from sqlalchemy import Column, JSON, UniqueConstraint
from sqlmodel import SQLModel, Field

# Actor usado en entradas de auditoría generadas por el propio sistema.
SYSTEM_ACTOR_ID = 0


class UserRole(str, Enum):
    USER = 'user'
    MODERATOR = 'moderator'
    ADMIN = 'admin'
    SUPER_ADMIN = 'super_admin'


STAFF_ROLES = frozenset({UserRole.MODERATOR.value, UserRole.ADMIN.value, UserRole.SUPER_ADMIN.value})


class TransactionStatus(str, Enum):
    """Estados de una sala. Terminales: completed, cancelled, refunded."""
    PENDING = 'pending'
    DEPOSITED = 'deposited'
    SHIPPING = 'shipping'
    COMPLETED = 'completed'
    DISPUTED = 'disputed'
    CANCELLED = 'cancelled'
    REFUNDED = 'refunded'


class FeeBearer(str, Enum):
    BUYER = 'buyer'
    SELLER = 'seller'
    SPLIT = 'split'


class SlotRole(str, Enum):
    BUYER = 'buyer'
    SELLER = 'seller'
    MODERATOR = 'moderator'
    ARBITER = 'arbiter'


TRADING_SLOTS = (SlotRole.BUYER.value, SlotRole.SELLER.value)
STAFF_SLOTS = (SlotRole.MODERATOR.value, SlotRole.ARBITER.value)


class FundsStatus(str, Enum):
    """Estados de depósitos y retiros."""
    PENDING = 'pending'
    COMPLETED = 'completed'
    REJECTED = 'rejected'
    ON_HOLD = 'on_hold'


class KycStatus(str, Enum):
    NONE = 'none'
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'


def is_staff(role: str) -> bool:
    return role in STAFF_ROLES


class User(SQLModel, table=True):
    """Representa un usuario autenticable con rol.

    Campos:
      username: Nombre único.
      password_hash: Hash seguro de la contraseña.
      role: user | moderator | admin | super_admin.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, unique=True)
    password_hash: str
    role: str = Field(default=UserRole.USER.value, index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Account(SQLModel, table=True):
    """Cuenta monetaria de un usuario.

    El saldo solo cambia por depósitos y retiros confirmados, pagos y cargos
    de salas, y ajustes manuales del staff. Las banderas de congelación solo
    las modifica el staff o el motor de reconciliación. Nunca se borra.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', index=True, unique=True)
    full_name: Optional[str] = None
    balance: Decimal = Field(default=Decimal('0'), max_digits=18, decimal_places=4)
    is_balance_frozen: bool = Field(default=False, index=True)
    balance_frozen_at: Optional[datetime] = None
    balance_freeze_reason: Optional[str] = None
    is_suspicious: bool = False
    suspicious_reason: Optional[str] = None
    suspicious_at: Optional[datetime] = None
    kyc_status: str = KycStatus.NONE.value
    reputation_score: int = 100
    total_transactions: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Transaction(SQLModel, table=True):
    """Sala de garantía (una operación entre comprador y vendedor).

    Los ocupantes no viven en esta fila sino en RoomSlot; seller_receives
    siempre se deriva de amount, platform_fee_percent y fee_bearer.
    """
    __tablename__ = 'transactions'

    id: Optional[int] = Field(default=None, primary_key=True)
    transaction_code: str = Field(index=True, unique=True)
    room_id: str = Field(index=True, unique=True)
    room_password: str
    status: str = Field(default=TransactionStatus.PENDING.value, index=True)
    category: str = 'other'
    product_name: str = ''
    product_description: Optional[str] = None
    amount: Decimal = Field(default=Decimal('0'), max_digits=18, decimal_places=4)
    platform_fee_percent: Decimal = Field(default=Decimal('0'), max_digits=7, decimal_places=4)
    platform_fee_amount: Decimal = Field(default=Decimal('0'), max_digits=18, decimal_places=4)
    seller_receives: Decimal = Field(default=Decimal('0'), max_digits=18, decimal_places=4)
    fee_bearer: str = FeeBearer.SELLER.value
    dispute_time_hours: int = 24
    dispute_reason: Optional[str] = None
    dispute_at: Optional[datetime] = None
    deposited_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    buyer_confirmed: bool = False
    seller_confirmed: bool = False
    created_by: Optional[int] = Field(default=None, foreign_key='user.id')
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class RoomSlot(SQLModel, table=True):
    """Plaza de una sala: buyer | seller | moderator | arbiter.

    Cada sala tiene exactamente cuatro filas; user_id nulo significa plaza
    libre. La asignación se hace con un UPDATE condicional (asignar si nulo).
    """
    __table_args__ = (UniqueConstraint('transaction_id', 'role', name='uq_room_slot'),)

    id: Optional[int] = Field(default=None, primary_key=True)
    transaction_id: int = Field(foreign_key='transactions.id', index=True)
    role: str
    user_id: Optional[int] = Field(default=None, foreign_key='user.id', index=True)
    joined_at: Optional[datetime] = None


class Deposit(SQLModel, table=True):
    """Solicitud de depósito; inmutable una vez completada."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', index=True)
    amount: Decimal = Field(max_digits=18, decimal_places=4)
    status: str = Field(default=FundsStatus.PENDING.value, index=True)
    reference: Optional[str] = None
    admin_note: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None


class Withdrawal(SQLModel, table=True):
    """Solicitud de retiro hacia una cuenta bancaria."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', index=True)
    amount: Decimal = Field(max_digits=18, decimal_places=4)
    bank_name: str
    bank_account_number: str
    bank_account_name: str
    status: str = Field(default=FundsStatus.PENDING.value, index=True)
    admin_note: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    completed_at: Optional[datetime] = None


class AdminActionLog(SQLModel, table=True):
    """Entrada de auditoría de solo anexado; nunca se actualiza ni se borra.

    action_type incluye balance_change (con details.source), adjust_balance,
    auto_freeze_balance, freeze_balance, dispute_resolve, dispute_refund, etc.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    actor_id: int = Field(index=True)
    target_user_id: Optional[int] = Field(default=None, index=True)
    action_type: str = Field(index=True)
    details: dict = Field(default_factory=dict, sa_column=Column(JSON))
    note: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)


class RiskAlert(SQLModel, table=True):
    """Alerta de riesgo de solo anexado (anomalías de saldo, abusos)."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    alert_type: str
    description: str
    alert_metadata: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=datetime.utcnow)


class TransactionLog(SQLModel, table=True):
    """Historial de una sala: cambios de estado y entrada del staff."""
    id: Optional[int] = Field(default=None, primary_key=True)
    transaction_id: int = Field(foreign_key='transactions.id', index=True)
    action: str
    old_status: Optional[str] = None
    new_status: Optional[str] = None
    performed_by: Optional[int] = None
    note: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class PlatformSetting(SQLModel, table=True):
    """Sobrescritura clave/valor de la configuración de plataforma."""
    key: str = Field(primary_key=True)
    value: str
    updated_by: Optional[int] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)
