"""Máquina de estados: aristas permitidas, pagos y guardas de disputa."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlmodel import select

import transaction as transaction_module
from config import PlatformConfig
from errors import AuthorizationError, ConflictError, InsufficientBalanceError, ValidationError
from ledger import get_account
from models import AdminActionLog, TransactionLog, TransactionStatus, User
from participant import join_room
from rooms import RoomRegistry
from transaction import TERMINAL_STATES, TRANSITIONS, TransactionService

ALL_STATES = [state.value for state in TransactionStatus]


@pytest.fixture
def deal(session, config, seller_room, make_user):
    """Sala de 100.000 (comisión del comprador) con comprador sentado y 200.000 de saldo."""
    tx = seller_room(fee_bearer='buyer')
    seller = session.get(User, tx.created_by)
    buyer = make_user(balance=200000)
    join_room(session, tx.room_id, tx.room_password, buyer, config)
    return tx, seller, buyer


@pytest.fixture
def notifications(monkeypatch):
    sent = []
    monkeypatch.setattr(transaction_module, 'notify_admin', lambda *args: sent.append(args))
    return sent


def _status_log(session, tx_id):
    rows = session.exec(
        select(TransactionLog).where(TransactionLog.transaction_id == tx_id,
                                     TransactionLog.action == 'status_change').order_by(TransactionLog.id)
    ).all()
    return [(row.old_status, row.new_status) for row in rows]


def test_graph_matches_documented_edges():
    assert TRANSITIONS['pending'] == {'deposited', 'disputed', 'cancelled'}
    assert TRANSITIONS['deposited'] == {'shipping', 'disputed'}
    assert TRANSITIONS['shipping'] == {'completed', 'disputed'}
    assert TRANSITIONS['disputed'] == {'completed', 'refunded'}
    assert TERMINAL_STATES == {'completed', 'cancelled', 'refunded'}


@pytest.mark.parametrize('current', ALL_STATES)
def test_unlisted_edges_are_rejected_without_mutation(session, seller_room, current):
    tx = seller_room()
    tx.status = current
    session.add(tx)
    session.commit()

    for target in ALL_STATES:
        if target == current or target in TRANSITIONS[current]:
            continue
        with pytest.raises(ConflictError):
            TransactionService.transition(session, tx, target, performed_by=None)
        session.expire_all()
        assert tx.status == current
    assert _status_log(session, tx.id) == []


def test_repeating_a_reached_transition_is_a_noop(session, seller_room):
    tx = seller_room()
    assert TransactionService.transition(session, tx, 'cancelled', None) is True
    session.commit()
    assert TransactionService.transition(session, tx, 'cancelled', None) is False
    assert _status_log(session, tx.id) == [('pending', 'cancelled')]


def test_deposit_debits_payable_once(session, config, deal, balance_of):
    tx, seller, buyer = deal

    TransactionService.deposit(session, tx.id, buyer, config)
    again = TransactionService.deposit(session, tx.id, buyer, config)

    assert again.status == 'deposited'
    assert again.deposited_at is not None
    assert balance_of(buyer.id) == Decimal('95000')
    changes = session.exec(
        select(AdminActionLog).where(AdminActionLog.action_type == 'balance_change',
                                     AdminActionLog.target_user_id == buyer.id)
    ).all()
    assert len(changes) == 1
    assert changes[0].details['source'] == 'escrow_debit'


def test_only_buyer_may_deposit(session, config, deal):
    tx, seller, buyer = deal
    with pytest.raises(AuthorizationError):
        TransactionService.deposit(session, tx.id, seller, config)


def test_deposit_with_insufficient_balance(session, config, deal, balance_of):
    tx, seller, buyer = deal
    account = get_account(session, buyer.id)
    account.balance = Decimal('1000')
    session.add(account)
    session.commit()

    with pytest.raises(InsufficientBalanceError):
        TransactionService.deposit(session, tx.id, buyer, config)

    session.expire_all()
    assert RoomRegistry.get_transaction(session, tx.id).status == 'pending'
    assert balance_of(buyer.id) == Decimal('1000')


def test_deposit_requires_product_details(session, config, make_user):
    buyer = make_user(balance=200000)
    tx = RoomRegistry.create_room(session, buyer, 'buyer', config)
    with pytest.raises(ValidationError):
        TransactionService.deposit(session, tx.id, buyer, config)


def test_happy_path_pays_seller(session, config, deal, balance_of):
    tx, seller, buyer = deal
    TransactionService.deposit(session, tx.id, buyer, config)
    TransactionService.mark_shipped(session, tx.id, seller)
    TransactionService.confirm(session, tx.id, buyer)
    done = TransactionService.confirm(session, tx.id, seller)

    assert done.status == 'completed'
    assert done.completed_at is not None
    assert balance_of(seller.id) == Decimal('100000')
    assert balance_of(buyer.id) == Decimal('95000')
    assert get_account(session, seller.id).total_transactions == 1
    assert get_account(session, buyer.id).total_transactions == 1


def test_confirming_from_deposited_walks_through_shipping(session, config, deal):
    tx, seller, buyer = deal
    TransactionService.deposit(session, tx.id, buyer, config)

    first = TransactionService.confirm(session, tx.id, seller)
    assert first.status == 'deposited'
    done = TransactionService.confirm(session, tx.id, buyer)

    assert done.status == 'completed'
    assert _status_log(session, tx.id) == [
        ('pending', 'deposited'), ('deposited', 'shipping'), ('shipping', 'completed'),
    ]


def test_confirm_before_deposit_is_rejected(session, deal):
    tx, seller, buyer = deal
    with pytest.raises(ConflictError):
        TransactionService.confirm(session, tx.id, buyer)


def test_only_seller_marks_shipped(session, config, deal):
    tx, seller, buyer = deal
    TransactionService.deposit(session, tx.id, buyer, config)
    with pytest.raises(AuthorizationError):
        TransactionService.mark_shipped(session, tx.id, buyer)


def test_force_complete_requires_admin_and_shipping(session, config, deal, make_user, balance_of):
    tx, seller, buyer = deal
    moderator = make_user('moderator')
    admin = make_user('admin')
    TransactionService.deposit(session, tx.id, buyer, config)

    with pytest.raises(AuthorizationError):
        TransactionService.force_complete(session, tx.id, buyer)
    with pytest.raises(ConflictError):
        TransactionService.force_complete(session, tx.id, admin)

    TransactionService.mark_shipped(session, tx.id, seller)
    with pytest.raises(AuthorizationError):
        TransactionService.force_complete(session, tx.id, moderator)
    assert balance_of(seller.id) == Decimal('0')

    done = TransactionService.force_complete(session, tx.id, admin, 'buyer unreachable')
    assert done.status == 'completed'
    assert balance_of(seller.id) == Decimal('100000')


def test_dispute_requires_reason(session, config, deal, notifications):
    tx, seller, buyer = deal
    with pytest.raises(ValidationError):
        TransactionService.raise_dispute(session, tx.id, buyer, '   ', config)
    assert notifications == []


def test_dispute_notifies_staff(session, config, deal, notifications):
    tx, seller, buyer = deal
    disputed = TransactionService.raise_dispute(session, tx.id, buyer, 'seller went silent', config)

    assert disputed.status == 'disputed'
    assert disputed.dispute_reason == 'seller went silent'
    assert len(notifications) == 1
    assert notifications[0][0] == 'dispute'


def test_outsiders_cannot_dispute(session, config, deal, make_user, notifications):
    tx, seller, buyer = deal
    with pytest.raises(AuthorizationError):
        TransactionService.raise_dispute(session, tx.id, make_user(), 'meddling', config)


def test_after_deposit_policy_blocks_pending_disputes(session, deal, notifications):
    tx, seller, buyer = deal
    strict = PlatformConfig(dispute_policy='after_deposit')
    with pytest.raises(ConflictError):
        TransactionService.raise_dispute(session, tx.id, buyer, 'changed my mind', strict)

    TransactionService.deposit(session, tx.id, buyer, strict)
    assert TransactionService.raise_dispute(session, tx.id, buyer, 'item missing', strict).status == 'disputed'


def test_dispute_window_closes_after_shipping(session, config, deal, notifications):
    tx, seller, buyer = deal
    TransactionService.deposit(session, tx.id, buyer, config)
    shipped = TransactionService.mark_shipped(session, tx.id, seller)
    late = shipped.shipped_at + timedelta(hours=shipped.dispute_time_hours, minutes=1)

    with pytest.raises(ValidationError):
        TransactionService.raise_dispute(session, tx.id, buyer, 'too late', config, now=late)

    on_time = shipped.shipped_at + timedelta(hours=1)
    assert TransactionService.raise_dispute(session, tx.id, buyer, 'wrong item', config,
                                            now=on_time).status == 'disputed'


def test_terminal_rooms_cannot_be_disputed(session, config, deal, notifications):
    tx, seller, buyer = deal
    TransactionService.cancel(session, tx.id, seller)
    with pytest.raises(ConflictError):
        TransactionService.raise_dispute(session, tx.id, buyer, 'too late', config)


def test_cancel_only_while_pending(session, config, deal, make_user):
    tx, seller, buyer = deal
    with pytest.raises(AuthorizationError):
        TransactionService.cancel(session, tx.id, make_user())

    TransactionService.deposit(session, tx.id, buyer, config)
    with pytest.raises(ConflictError):
        TransactionService.cancel(session, tx.id, seller)


def test_staff_can_cancel(session, deal, make_user):
    tx, seller, buyer = deal
    assert TransactionService.cancel(session, tx.id, make_user('admin'), 'duplicate').status == 'cancelled'


def test_cancel_stale_rooms(session, config, seller_room, deal):
    fresh_tx, seller, buyer = deal
    TransactionService.deposit(session, fresh_tx.id, buyer, config)
    stale = seller_room()

    later = datetime.utcnow() + timedelta(minutes=config.stale_room_minutes + 1)
    actions = TransactionService.cancel_stale_rooms(session, config, now=later)

    assert actions == [{'transaction_id': stale.id, 'room_id': stale.room_id, 'action': 'CANCELLED'}]
    session.expire_all()
    assert RoomRegistry.get_transaction(session, stale.id).status == 'cancelled'
    assert RoomRegistry.get_transaction(session, fresh_tx.id).status == 'deposited'
    assert TransactionService.cancel_stale_rooms(session, config, now=datetime.utcnow()) == []


def test_list_logs(session, deal):
    tx, seller, buyer = deal
    actions = [log.action for log in TransactionService.list_logs(session, tx.id)]
    assert actions == ['created', 'joined']
