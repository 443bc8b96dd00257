"""Motor de reconciliación: fórmula del saldo esperado y congelación automática."""

from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import select

import reconciliation
from ledger import audit, get_account
from models import AdminActionLog, Deposit, RiskAlert, RoomSlot, Withdrawal
from reconciliation import BalanceBreakdown, ReconciliationEngine, collect_breakdowns, detect_anomalies


def _set_balance(session, user_id, value):
    account = get_account(session, user_id)
    account.balance = Decimal(str(value))
    session.add(account)
    session.commit()


@pytest.fixture
def trader(session, make_user, seller_room):
    """Cuenta con un depósito completado de 100.000 y una venta completada de 50.000 (5%)."""
    user = make_user(full_name='Synthetic Seller')
    session.add(Deposit(user_id=user.id, amount=Decimal('100000'), status='completed'))
    sale = seller_room(fee_bearer='seller', amount=50000, seller=user)
    sale.status = 'completed'
    session.add(sale)
    session.commit()
    return user


def test_expected_balance_of_the_synthetic_account(session, trader):
    breakdown = collect_breakdowns(session)[trader.id]
    assert breakdown.total_deposited == Decimal('100000')
    assert breakdown.total_received_as_seller == Decimal('47500')
    assert breakdown.expected == Decimal('147500')


def test_matching_balance_has_no_anomaly(session, config, trader):
    _set_balance(session, trader.id, 147500)
    summary = ReconciliationEngine.scan(session, config)

    assert summary['anomaliesFound'] == 0
    assert summary['accountsFrozen'] == 0
    assert get_account(session, trader.id).is_balance_frozen is False


def test_inflated_balance_is_flagged_and_frozen(session, config, trader, balance_of):
    _set_balance(session, trader.id, 300000)
    summary = ReconciliationEngine.scan(session, config)

    assert summary['scanned'] == 1
    assert summary['accountsFrozen'] == 1
    assert summary['frozenUsers'] == [trader.id]
    [anomaly] = summary['anomalies']
    assert anomaly['issue'] == 'BALANCE_INFLATED'
    assert anomaly['severity'] == 'medium'
    assert anomaly['difference'] == Decimal('152500')
    assert anomaly['expectedBalance'] == Decimal('147500')
    assert anomaly['userName'] == 'Synthetic Seller'

    account = get_account(session, trader.id)
    assert account.is_balance_frozen is True
    assert account.is_suspicious is True
    assert account.balance_freeze_reason.startswith('[AUTO-FREEZE]')
    assert balance_of(trader.id) == Decimal('300000')

    entry = session.exec(select(AdminActionLog).where(AdminActionLog.action_type == 'auto_freeze_balance')).one()
    assert entry.target_user_id == trader.id
    assert entry.details['issues'] == ['BALANCE_INFLATED']
    alert = session.exec(select(RiskAlert)).one()
    assert alert.alert_type == 'balance_anomaly'
    assert alert.alert_metadata['auto_frozen'] is True


def test_large_drift_is_high_severity(session, config, trader):
    _set_balance(session, trader.id, 2000000)
    anomalies = ReconciliationEngine.scan(session, config)['anomalies']
    assert [(a['issue'], a['severity']) for a in anomalies] == [('BALANCE_INFLATED', 'high')]


def test_deflation_is_reported_but_not_frozen(session, config, trader):
    _set_balance(session, trader.id, 10000)
    summary = ReconciliationEngine.scan(session, config)

    assert [a['issue'] for a in summary['anomalies']] == ['BALANCE_DEFLATED']
    assert summary['accountsFrozen'] == 0
    assert get_account(session, trader.id).is_balance_frozen is False


def test_withdrawals_and_purchases_reduce_expected(session, config, make_user, seller_room):
    buyer = make_user(balance=0)
    session.add(Deposit(user_id=buyer.id, amount=Decimal('300000'), status='completed'))
    session.add(Deposit(user_id=buyer.id, amount=Decimal('999999'), status='pending'))
    session.add(Withdrawal(user_id=buyer.id, amount=Decimal('50000'), status='completed', bank_name='BCA',
                           bank_account_number='1', bank_account_name='B'))
    room = seller_room(amount=100000)
    slot = session.exec(
        select(RoomSlot).where(RoomSlot.transaction_id == room.id, RoomSlot.role == 'buyer')
    ).one()
    slot.user_id = buyer.id
    room.status = 'shipping'
    session.add(slot)
    session.add(room)
    session.commit()

    breakdown = collect_breakdowns(session)[buyer.id]
    assert breakdown.total_withdrawn == Decimal('50000')
    assert breakdown.total_spent_as_buyer == Decimal('100000')
    assert breakdown.expected == Decimal('150000')


def test_unexplained_balance(session, config, make_user):
    user = make_user(balance=600000)
    summary = ReconciliationEngine.scan(session, config)

    issues = {a['issue'] for a in summary['anomalies']}
    assert issues == {'BALANCE_INFLATED', 'UNEXPLAINED_BALANCE'}
    assert summary['frozenUsers'] == [user.id]
    assert ' | ' in get_account(session, user.id).balance_freeze_reason


def test_manual_adjustments_explain_the_balance(session, config, make_user):
    user = make_user(balance=600000)
    audit(session, 99, 'adjust_balance', user.id, {'source': 'admin_manual', 'amount': '600000'})
    session.commit()

    assert ReconciliationEngine.scan(session, config)['anomaliesFound'] == 0


def test_unknown_balance_changes_are_suspicious(session, config, make_user):
    user = make_user(balance=0)
    audit(session, 0, 'balance_change', user.id, {'source': 'unknown', 'difference': '2500'})
    audit(session, 0, 'balance_change', user.id, {'source': 'deposit', 'difference': '9000'})
    session.commit()

    summary = ReconciliationEngine.scan(session, config)

    [anomaly] = summary['anomalies']
    assert anomaly['issue'] == 'SUSPICIOUS_BALANCE_CHANGE'
    assert anomaly['severity'] == 'high'
    assert summary['frozenUsers'] == [user.id]


def test_staff_and_frozen_accounts_are_skipped(session, config, make_user):
    make_user('admin', balance=5000000)
    frozen = make_user(balance=5000000)
    account = get_account(session, frozen.id)
    account.is_balance_frozen = True
    session.add(account)
    session.commit()

    summary = ReconciliationEngine.scan(session, config)

    assert summary['scanned'] == 2
    assert summary['staffSkipped'] == 1
    assert summary['anomaliesFound'] == 0


def test_rescan_is_idempotent(session, config, make_user):
    make_user(balance=600000)
    assert ReconciliationEngine.scan(session, config)['accountsFrozen'] == 1
    second = ReconciliationEngine.scan(session, config)
    assert second['accountsFrozen'] == 0
    assert second['anomaliesFound'] == 0


def test_failed_freeze_does_not_abort_the_scan(session, config, make_user, monkeypatch):
    first = make_user(balance=600000)
    second = make_user(balance=700000)
    real_freeze = reconciliation.freeze_account

    def flaky_freeze(s, account, *args, **kwargs):
        if account.user_id == first.id:
            raise OperationalError('UPDATE account', {}, Exception('database is locked'))
        return real_freeze(s, account, *args, **kwargs)

    monkeypatch.setattr(reconciliation, 'freeze_account', flaky_freeze)
    summary = ReconciliationEngine.scan(session, config)

    assert summary['success'] is True
    assert summary['frozenUsers'] == [second.id]
    session.expire_all()
    assert get_account(session, first.id).is_balance_frozen is False
    assert get_account(session, second.id).is_balance_frozen is True


def test_detect_anomalies_is_pure(config, make_user, session):
    user = make_user(balance=250000)
    account = get_account(session, user.id)
    breakdown = BalanceBreakdown(total_deposited=Decimal('100000'), completed_deposits=1)

    [anomaly] = detect_anomalies(account, breakdown, config)

    assert anomaly['difference'] == Decimal('150000')
    assert account.is_balance_frozen is False


def test_unreadable_audit_rows_do_not_abort_the_scan(session, config, make_user):
    tampered = make_user(balance=0)
    adjusted = make_user(balance=0)
    inflated = make_user(balance=700000)
    audit(session, 0, 'balance_change', tampered.id, {'source': 'unknown', 'difference': 'n/a'})
    audit(session, 99, 'adjust_balance', adjusted.id, {'source': 'admin_manual', 'amount': 'NaN'})
    session.commit()

    summary = ReconciliationEngine.scan(session, config)

    assert summary['success'] is True
    assert summary['scanned'] == 3
    assert sorted(summary['frozenUsers']) == sorted([tampered.id, inflated.id])
    [suspicious] = [a for a in summary['anomalies'] if a['userId'] == tampered.id]
    assert suspicious['issue'] == 'SUSPICIOUS_BALANCE_CHANGE'
    assert 'unreadable' in suspicious['details']
    assert get_account(session, adjusted.id).is_balance_frozen is False
