import os
import tempfile
from decimal import Decimal

# El motor se crea al importar database: el entorno debe fijarse antes.
_DB_DIR = tempfile.mkdtemp(prefix='escrow-tests-')
os.environ['ESCROW_DB_URL'] = f"sqlite:///{os.path.join(_DB_DIR, 'escrow-test.db')}"
os.environ['BCRYPT_ROUNDS'] = '4'
os.environ['NOTIFY_WEBHOOK_URL'] = ''
os.environ['ADMIN_PASSWORD'] = 'admin-pass'
os.environ['JWT_SECRET'] = 'test-secret'

import pytest
from sqlmodel import Session

from config import PlatformConfig
from database import engine, reset_db
from ledger import get_account
from models import Account, User
from rooms import RoomRegistry, slot_map


@pytest.fixture
def session():
    reset_db()
    with Session(engine) as s:
        yield s


@pytest.fixture
def config() -> PlatformConfig:
    return PlatformConfig(require_kyc_for_withdrawal=False)


@pytest.fixture
def make_user(session):
    counter = {'n': 0}

    def _make(role: str = 'user', balance=0, username: str = None, full_name: str = None) -> User:
        counter['n'] += 1
        user = User(username=username or f"{role}{counter['n']}", password_hash='x', role=role)
        session.add(user)
        session.flush()
        session.add(Account(user_id=user.id, full_name=full_name, balance=Decimal(str(balance))))
        session.commit()
        session.refresh(user)
        return user

    return _make


@pytest.fixture
def seller_room(session, config, make_user):
    """Sala de vendedor de 100.000 con comisión del 5%."""
    def _make(fee_bearer: str = 'buyer', amount=100000, seller: User = None):
        seller = seller or make_user()
        return RoomRegistry.create_room(session, seller, 'seller', config, product_name='Game account',
                                        amount=amount, fee_bearer=fee_bearer, category='games')

    return _make


@pytest.fixture
def balance_of(session):
    def _balance(user_id: int) -> Decimal:
        session.expire_all()
        return get_account(session, user_id).balance

    return _balance


@pytest.fixture
def slots_of(session):
    def _slots(transaction_id: int) -> dict:
        session.expire_all()
        return slot_map(session, transaction_id)

    return _slots
