"""Aplicación FastAPI principal: autenticación, salas, ciclo de vida, dinero y staff.

Cada endpoint abre una sesión, carga la configuración de plataforma vigente y
delega en el servicio correspondiente. Los errores del núcleo (errors.py) se
traducen a JSON {"error": kind, "detail": mensaje} con su código HTTP.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, Literal
from fastapi import FastAPI, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, Field
from sqlmodel import select
from config import get_settings, load_platform_config, parse_setting, SETTING_PARSERS
from database import init_db, DBSession
from disputes import DisputeService
from errors import EscrowError, ValidationError
from ledger import (
    adjust_balance,
    confirm_deposit,
    confirm_withdrawal,
    create_account,
    create_deposit,
    create_withdrawal,
    expire_stale_deposits,
    freeze_by_staff,
    get_account,
    reject_deposit,
    reject_withdrawal,
    set_kyc_status,
    submit_kyc,
    unfreeze_account,
)
from models import AdminActionLog, PlatformSetting, RiskAlert, User, UserRole
from participant import join_room
from reconciliation import ReconciliationEngine
from rooms import RoomRegistry, room_view, slot_map
from security import hash_password, verify_password, create_token, decode_token, require_admin, require_staff
from transaction import TransactionService

settings = get_settings()
logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Escrow Rooms API", version="0.1.0")
security = HTTPBearer()

# ---------------------------- Schemas ----------------------------
class SignupPayload(BaseModel):
    """Registro público: crea usuario con rol user y su cuenta."""
    username: str = Field(min_length=3)
    password: str = Field(min_length=4)
    full_name: Optional[str] = None

class RegisterPayload(SignupPayload):
    """Registro de usuarios por un admin, con rol arbitrario."""
    role: Literal['user', 'moderator', 'admin', 'super_admin'] = 'user'

class LoginPayload(BaseModel):
    """Payload para inicio de sesión y obtención de JWT."""
    username: str
    password: str

class ProductDetails(BaseModel):
    product_name: str
    amount: Decimal
    fee_bearer: Literal['buyer', 'seller', 'split'] = 'seller'
    category: Optional[str] = None
    product_description: Optional[str] = None

class CreateRoomPayload(BaseModel):
    """Solicitud de creación de sala; amount solo se usa en salas de vendedor."""
    initiator_role: Literal['seller', 'buyer', 'moderator']
    product_name: Optional[str] = None
    amount: Optional[Decimal] = None
    fee_bearer: Optional[Literal['buyer', 'seller', 'split']] = None
    category: Optional[str] = None
    product_description: Optional[str] = None

class JoinRoomPayload(BaseModel):
    room_id: str
    password: Optional[str] = None
    role: Optional[Literal['buyer', 'seller']] = None
    details: Optional[ProductDetails] = None

class ReasonPayload(BaseModel):
    reason: str

class NotePayload(BaseModel):
    note: Optional[str] = None

class DepositPayload(BaseModel):
    amount: Decimal
    reference: Optional[str] = None

class WithdrawalPayload(BaseModel):
    amount: Decimal
    bank_name: str
    bank_account_number: str
    bank_account_name: str

class AdjustPayload(BaseModel):
    amount: Decimal
    note: Optional[str] = None

class KycPayload(BaseModel):
    status: Literal['none', 'pending', 'approved', 'rejected']
    note: Optional[str] = None

class SettingsPayload(BaseModel):
    values: dict

# ------------------------- Error handling ------------------------
@app.exception_handler(EscrowError)
def escrow_error_handler(request: Request, exc: EscrowError):
    """Convierte errores del núcleo en respuestas con tipo estable."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

# ----------------------- Auth Dependencies -----------------------

def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Obtiene el usuario autenticado a partir del token JWT o lanza 401."""
    token = credentials.credentials
    data = decode_token(token)
    if not data:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    username = data.get('sub')
    with DBSession() as s:
        user = s.exec(select(User).where(User.username == username)).first()
        if not user:
            raise HTTPException(status_code=401, detail="User not found")
        return user


def get_staff_user(user: User = Depends(get_current_user)):
    """Dependencia que exige rol de staff (moderator, admin, super_admin)."""
    require_staff(user)
    return user


def get_admin_user(user: User = Depends(get_current_user)):
    require_admin(user)
    return user

# ------------------------- Startup Event -------------------------
@app.on_event("startup")
def on_startup():
    """Inicializa la base de datos y crea usuario admin por defecto si falta."""
    init_db()
    with DBSession() as s:
        admin = s.exec(select(User).where(User.username == 'admin')).first()
        if not admin:
            admin = User(username='admin', password_hash=hash_password(settings.bootstrap_admin_password),
                         role=UserRole.SUPER_ADMIN.value)
            s.add(admin)
            s.flush()
            create_account(s, admin.id, 'Administrator')
            s.commit()
            logger.info("Bootstrap admin account created")

# --------------------------- Auth Routes -------------------------
def _create_user(payload: SignupPayload, role: str):
    with DBSession() as s:
        existing = s.exec(select(User).where(User.username == payload.username)).first()
        if existing:
            raise ValidationError("Username already exists")
        u = User(username=payload.username, password_hash=hash_password(payload.password), role=role)
        s.add(u)
        s.flush()
        create_account(s, u.id, payload.full_name)
        s.commit()
        s.refresh(u)
        return {"id": u.id, "username": u.username, "role": u.role}

@app.post('/auth/signup')
def signup(payload: SignupPayload):
    """Registro público de usuarios; la cuenta se crea en el mismo commit."""
    return _create_user(payload, UserRole.USER.value)

@app.post('/auth/register')
def register(payload: RegisterPayload, admin: User = Depends(get_admin_user)):
    """Registra un nuevo usuario con rol (solo accesible para admins)."""
    return _create_user(payload, payload.role)

@app.post('/auth/login')
def login(payload: LoginPayload):
    """Autentica usuario y devuelve token JWT para futuras peticiones."""
    with DBSession() as s:
        user = s.exec(select(User).where(User.username == payload.username)).first()
        if not user or not verify_password(payload.password, user.password_hash):
            raise HTTPException(status_code=401, detail="Invalid credentials")
        token = create_token(user.username, user.role)
        return {"access_token": token, "token_type": "bearer"}

# ----------------------------- Rooms -----------------------------
@app.post('/rooms')
def create_room(payload: CreateRoomPayload, user: User = Depends(get_current_user)):
    """Crea una sala; la contraseña solo se devuelve a su creador."""
    with DBSession() as s:
        config = load_platform_config(s)
        tx = RoomRegistry.create_room(
            s, user, payload.initiator_role, config,
            product_name=payload.product_name, amount=payload.amount, fee_bearer=payload.fee_bearer,
            category=payload.category, product_description=payload.product_description,
        )
        return room_view(s, tx, include_password=True)

@app.get('/rooms')
def list_rooms(limit: int = 50, user: User = Depends(get_current_user)):
    with DBSession() as s:
        return [room_view(s, tx) for tx in RoomRegistry.list_rooms_for_user(s, user.id, limit)]

@app.get('/rooms/{room_id}')
def get_room(room_id: str, user: User = Depends(get_current_user)):
    """Detalle de la sala; la contraseña solo se muestra a quien ocupa una plaza."""
    with DBSession() as s:
        tx = RoomRegistry.get_room(s, room_id)
        seated = user.id in slot_map(s, tx.id).values()
        return room_view(s, tx, include_password=seated)

@app.post('/rooms/join')
def join(payload: JoinRoomPayload, user: User = Depends(get_current_user)):
    """Entra a una sala con room_id + contraseña (el staff no necesita contraseña)."""
    with DBSession() as s:
        config = load_platform_config(s)
        details = payload.details.model_dump() if payload.details else None
        result = join_room(s, payload.room_id, payload.password, user, config,
                           requested_role=payload.role, details=details)
        return {**result.to_dict(), "room": room_view(s, result.transaction)}

@app.put('/transactions/{transaction_id}/product')
def set_product(transaction_id: int, payload: ProductDetails, user: User = Depends(get_current_user)):
    """Subflujo del vendedor para salas creadas con monto 0."""
    with DBSession() as s:
        config = load_platform_config(s)
        tx = RoomRegistry.get_transaction(s, transaction_id)
        tx = RoomRegistry.set_product_details(s, tx, user, config, payload.product_name, payload.amount,
                                              payload.fee_bearer, payload.category,
                                              payload.product_description)
        return room_view(s, tx)

# ----------------------- Transaction Lifecycle -------------------
@app.post('/transactions/{transaction_id}/deposit')
def deposit(transaction_id: int, user: User = Depends(get_current_user)):
    with DBSession() as s:
        config = load_platform_config(s)
        return room_view(s, TransactionService.deposit(s, transaction_id, user, config))

@app.post('/transactions/{transaction_id}/ship')
def ship(transaction_id: int, user: User = Depends(get_current_user)):
    with DBSession() as s:
        return room_view(s, TransactionService.mark_shipped(s, transaction_id, user))

@app.post('/transactions/{transaction_id}/confirm')
def confirm(transaction_id: int, user: User = Depends(get_current_user)):
    with DBSession() as s:
        return room_view(s, TransactionService.confirm(s, transaction_id, user))

@app.post('/transactions/{transaction_id}/dispute')
def dispute(transaction_id: int, payload: ReasonPayload, user: User = Depends(get_current_user)):
    with DBSession() as s:
        config = load_platform_config(s)
        return room_view(s, TransactionService.raise_dispute(s, transaction_id, user, payload.reason, config))

@app.post('/transactions/{transaction_id}/cancel')
def cancel(transaction_id: int, payload: NotePayload = NotePayload(), user: User = Depends(get_current_user)):
    with DBSession() as s:
        return room_view(s, TransactionService.cancel(s, transaction_id, user, payload.note))

@app.get('/transactions/{transaction_id}/logs')
def transaction_logs(transaction_id: int, user: User = Depends(get_current_user)):
    with DBSession() as s:
        return TransactionService.list_logs(s, transaction_id)

# ----------------------------- Staff -----------------------------
@app.post('/transactions/{transaction_id}/complete')
def force_complete(transaction_id: int, payload: NotePayload = NotePayload(),
                   admin: User = Depends(get_admin_user)):
    """Completa la sala por encima de las confirmaciones (solo admin)."""
    with DBSession() as s:
        return room_view(s, TransactionService.force_complete(s, transaction_id, admin, payload.note))

@app.post('/transactions/{transaction_id}/resolve')
def resolve(transaction_id: int, payload: NotePayload = NotePayload(), user: User = Depends(get_current_user)):
    """Resuelve la disputa a favor del vendedor (solo staff)."""
    with DBSession() as s:
        return room_view(s, DisputeService.resolve(s, transaction_id, user, payload.note))

@app.post('/transactions/{transaction_id}/refund')
def refund(transaction_id: int, payload: NotePayload = NotePayload(), user: User = Depends(get_current_user)):
    """Reembolsa al comprador una sala en disputa (solo staff)."""
    with DBSession() as s:
        return room_view(s, DisputeService.refund(s, transaction_id, user, payload.note))

# ------------------------------ Money ----------------------------
@app.get('/me/account')
def my_account(user: User = Depends(get_current_user)):
    """Saldo y estado de la cuenta; una congelación aparece como retiro bloqueado."""
    with DBSession() as s:
        account = get_account(s, user.id)
        data = account.model_dump()
        data['can_withdraw'] = not account.is_balance_frozen
        return data

@app.post('/me/kyc')
def kyc_submit(user: User = Depends(get_current_user)):
    with DBSession() as s:
        return submit_kyc(s, user)

@app.post('/deposits')
def new_deposit(payload: DepositPayload, user: User = Depends(get_current_user)):
    with DBSession() as s:
        config = load_platform_config(s)
        return create_deposit(s, user, payload.amount, config, payload.reference)

@app.post('/withdrawals')
def new_withdrawal(payload: WithdrawalPayload, user: User = Depends(get_current_user)):
    with DBSession() as s:
        config = load_platform_config(s)
        return create_withdrawal(s, user, payload.amount, payload.bank_name, payload.bank_account_number,
                                 payload.bank_account_name, config)

@app.post('/admin/deposits/{deposit_id}/confirm')
def admin_confirm_deposit(deposit_id: int, payload: NotePayload = NotePayload(),
                          staff: User = Depends(get_staff_user)):
    with DBSession() as s:
        return confirm_deposit(s, staff, deposit_id, payload.note)

@app.post('/admin/deposits/{deposit_id}/reject')
def admin_reject_deposit(deposit_id: int, payload: NotePayload = NotePayload(),
                         staff: User = Depends(get_staff_user)):
    with DBSession() as s:
        return reject_deposit(s, staff, deposit_id, payload.note)

@app.post('/admin/withdrawals/{withdrawal_id}/confirm')
def admin_confirm_withdrawal(withdrawal_id: int, payload: NotePayload = NotePayload(),
                             staff: User = Depends(get_staff_user)):
    with DBSession() as s:
        return confirm_withdrawal(s, staff, withdrawal_id, payload.note)

@app.post('/admin/withdrawals/{withdrawal_id}/reject')
def admin_reject_withdrawal(withdrawal_id: int, payload: NotePayload = NotePayload(),
                            staff: User = Depends(get_staff_user)):
    with DBSession() as s:
        return reject_withdrawal(s, staff, withdrawal_id, payload.note)

@app.post('/admin/accounts/{user_id}/adjust')
def admin_adjust(user_id: int, payload: AdjustPayload, admin: User = Depends(get_admin_user)):
    with DBSession() as s:
        return adjust_balance(s, admin, user_id, payload.amount, payload.note)

@app.post('/admin/accounts/{user_id}/freeze')
def admin_freeze(user_id: int, payload: ReasonPayload, staff: User = Depends(get_staff_user)):
    with DBSession() as s:
        return freeze_by_staff(s, staff, user_id, payload.reason)

@app.post('/admin/accounts/{user_id}/unfreeze')
def admin_unfreeze(user_id: int, payload: NotePayload = NotePayload(), admin: User = Depends(get_admin_user)):
    with DBSession() as s:
        return unfreeze_account(s, admin, user_id, payload.note)

@app.post('/admin/accounts/{user_id}/kyc')
def admin_kyc(user_id: int, payload: KycPayload, staff: User = Depends(get_staff_user)):
    with DBSession() as s:
        return set_kyc_status(s, staff, user_id, payload.status, payload.note)

# ------------------------------ Admin ----------------------------
@app.post('/admin/reconcile')
def reconcile(admin: User = Depends(get_admin_user)):
    """Ejecuta el escaneo de reconciliación de saldos y congela anomalías."""
    with DBSession() as s:
        config = load_platform_config(s)
        return ReconciliationEngine.scan(s, config)

@app.post('/admin/rooms/cancel-stale')
def cancel_stale(admin: User = Depends(get_admin_user)):
    """Cancela salas pending que superaron el tiempo de espera."""
    with DBSession() as s:
        config = load_platform_config(s)
        return {"performed": TransactionService.cancel_stale_rooms(s, config)}

@app.post('/admin/deposits/expire-stale')
def expire_stale(admin: User = Depends(get_admin_user)):
    """Rechaza solicitudes de depósito pending que superaron el tiempo de espera."""
    with DBSession() as s:
        config = load_platform_config(s)
        return {"performed": expire_stale_deposits(s, config)}

@app.get('/admin/settings')
def get_platform_settings(staff: User = Depends(get_staff_user)):
    with DBSession() as s:
        return load_platform_config(s)

@app.put('/admin/settings')
def update_platform_settings(payload: SettingsPayload, admin: User = Depends(get_admin_user)):
    """Sobrescribe claves de configuración; todas se validan antes de guardar."""
    parsed = {}
    for key, raw in payload.values.items():
        if key not in SETTING_PARSERS:
            raise ValidationError(f"unknown setting: {key}")
        try:
            parse_setting(key, str(raw))
        except ValueError as e:
            raise ValidationError(str(e)) from e
        parsed[key] = str(raw)
    with DBSession() as s:
        for key, raw in parsed.items():
            row = s.get(PlatformSetting, key) or PlatformSetting(key=key, value=raw)
            row.value = raw
            row.updated_by = admin.id
            row.updated_at = datetime.utcnow()
            s.add(row)
        s.commit()
        return load_platform_config(s)

@app.get('/admin/action-logs')
def action_logs(limit: int = 100, staff: User = Depends(get_staff_user)):
    with DBSession() as s:
        statement = select(AdminActionLog).order_by(AdminActionLog.id.desc()).limit(limit)
        return s.exec(statement).all()

@app.get('/admin/risk-alerts')
def risk_alerts(limit: int = 100, staff: User = Depends(get_staff_user)):
    with DBSession() as s:
        statement = select(RiskAlert).order_by(RiskAlert.id.desc()).limit(limit)
        return s.exec(statement).all()

# -------------------------- Utility ------------------------------
@app.get('/health')
def health():
    """Verificación básica de salud."""
    return {"status": "ok", "time": datetime.utcnow().isoformat()}
