"""Módulo de configuración del servicio de salas de garantía (escrow).

Proporciona lectura de variables de entorno (Settings) y el objeto de
configuración de plataforma (PlatformConfig) que se pasa explícitamente a cada
operación del núcleo: porcentaje de comisión, monto mínimo, ventana de disputa,
enfriamiento de retiros y umbrales de reconciliación.

Los valores de plataforma pueden sobrescribirse en caliente desde la tabla
PlatformSetting (ver load_platform_config).
"""

import os
import logging
from dataclasses import dataclass, replace, fields
from decimal import Decimal, InvalidOperation
from pathlib import Path
from functools import lru_cache
from typing import Dict, Callable, Any, Optional
from dotenv import load_dotenv
from sqlmodel import Session, select
from models import PlatformSetting

logger = logging.getLogger(__name__)

DISPUTE_POLICIES = ('any', 'after_deposit')


@dataclass(frozen=True)
class PlatformConfig:
    """Parámetros de negocio de la plataforma.

    Es un valor inmutable: las operaciones lo reciben como argumento en lugar
    de leerlo de forma ambiental, de modo que la calculadora de comisiones y
    la máquina de estados se prueban de manera aislada.
    """
    default_fee_percent: Decimal = Decimal('5')
    min_transaction_amount: Decimal = Decimal('10000')
    default_dispute_hours: int = 24
    withdrawal_cooldown_minutes: int = 15
    min_withdrawal_amount: Decimal = Decimal('50000')
    min_deposit_amount: Decimal = Decimal('10000')
    require_kyc_for_withdrawal: bool = True
    # any | after_deposit: quién puede abrir una disputa y desde qué estado.
    dispute_policy: str = 'any'
    stale_room_minutes: int = 30
    stale_deposit_minutes: int = 15
    drift_threshold: Decimal = Decimal('100000')
    high_drift_threshold: Decimal = Decimal('1000000')
    unexplained_balance_threshold: Decimal = Decimal('500000')


def _to_bool(raw: str) -> bool:
    return str(raw).strip().lower() in ('1', 'true', 'yes', 'on')


def _to_policy(raw: str) -> str:
    value = str(raw).strip().lower()
    if value not in DISPUTE_POLICIES:
        raise ValueError(f"unknown dispute policy: {raw}")
    return value


# SETTING_PARSERS: claves editables en PlatformSetting y su conversión desde texto.
SETTING_PARSERS: Dict[str, Callable[[str], Any]] = {
    'default_fee_percent': Decimal,
    'min_transaction_amount': Decimal,
    'default_dispute_hours': int,
    'withdrawal_cooldown_minutes': int,
    'min_withdrawal_amount': Decimal,
    'min_deposit_amount': Decimal,
    'require_kyc_for_withdrawal': _to_bool,
    'dispute_policy': _to_policy,
    'stale_room_minutes': int,
    'stale_deposit_minutes': int,
    'drift_threshold': Decimal,
    'high_drift_threshold': Decimal,
    'unexplained_balance_threshold': Decimal,
}


# parse_setting: Convierte el texto almacenado al tipo del campo o lanza ValueError.
def parse_setting(key: str, raw: str):
    if key not in SETTING_PARSERS:
        raise ValueError(f"unknown setting: {key}")
    try:
        return SETTING_PARSERS[key](raw)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"invalid value for {key}: {raw}") from e


# get_settings: Devuelve (cacheado) la instancia única de Settings.
@lru_cache
def get_settings():
    return Settings()


class Settings:
    """Agrupa los parámetros de infraestructura leídos del entorno.

    Incluye base de datos, JWT, coste de bcrypt, webhook de notificaciones y
    los valores por defecto de la configuración de plataforma.
    """
    def __init__(self):
        # Cargar .env local (aislado al directorio del módulo)
        base_dir = Path(__file__).resolve().parent
        load_dotenv(base_dir / '.env')

        default_db_path = base_dir / 'escrow.db'
        self.database_url = os.getenv('ESCROW_DB_URL', f"sqlite:///{default_db_path}")
        self.jwt_secret = os.getenv('JWT_SECRET', 'dev-secret-change')
        self.jwt_algorithm = os.getenv('JWT_ALG', 'HS256')
        self.jwt_exp_minutes = int(os.getenv('JWT_EXP_MIN', '60'))
        self.bcrypt_rounds = int(os.getenv('BCRYPT_ROUNDS', '12'))
        self.log_level = os.getenv('LOG_LEVEL', 'INFO').upper()
        self.bootstrap_admin_password = os.getenv('ADMIN_PASSWORD', 'admin')

        # Notificaciones salientes (mejor esfuerzo).
        self.notify_webhook_url = os.getenv('NOTIFY_WEBHOOK_URL', '')
        self.request_timeout = float(os.getenv('REQUEST_TIMEOUT', '3'))
        self.max_retries = int(os.getenv('REQUEST_RETRIES', '2'))

        self.platform = PlatformConfig(
            default_fee_percent=Decimal(os.getenv('DEFAULT_FEE_PERCENT', '5')),
            min_transaction_amount=Decimal(os.getenv('MIN_TRANSACTION_AMOUNT', '10000')),
            default_dispute_hours=int(os.getenv('DEFAULT_DISPUTE_HOURS', '24')),
            withdrawal_cooldown_minutes=int(os.getenv('WITHDRAWAL_COOLDOWN_MIN', '15')),
            min_withdrawal_amount=Decimal(os.getenv('MIN_WITHDRAWAL_AMOUNT', '50000')),
            min_deposit_amount=Decimal(os.getenv('MIN_DEPOSIT_AMOUNT', '10000')),
            require_kyc_for_withdrawal=_to_bool(os.getenv('REQUIRE_KYC_FOR_WITHDRAWAL', 'true')),
            dispute_policy=_to_policy(os.getenv('DISPUTE_POLICY', 'any')),
            stale_room_minutes=int(os.getenv('STALE_ROOM_MINUTES', '30')),
            stale_deposit_minutes=int(os.getenv('STALE_DEPOSIT_MINUTES', '15')),
        )


# load_platform_config: Superpone las filas de PlatformSetting sobre los valores
# por defecto del entorno. Filas con valores inválidos se ignoran con aviso.
def load_platform_config(session: Session, base: Optional[PlatformConfig] = None) -> PlatformConfig:
    config = base or get_settings().platform
    known = {f.name for f in fields(PlatformConfig)}
    overrides = {}
    for row in session.exec(select(PlatformSetting)).all():
        if row.key not in known:
            continue
        try:
            overrides[row.key] = parse_setting(row.key, row.value)
        except ValueError:
            logger.warning("Ignoring invalid platform setting %s=%r", row.key, row.value)
    return replace(config, **overrides) if overrides else config
