from decimal import Decimal

import pytest
from sqlmodel import select

from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from models import RoomSlot, TransactionLog, User
from rooms import ROOM_ID_ALPHABET, RoomRegistry, room_view


def test_seller_room_scenario_a(session, seller_room, slots_of):
    tx = seller_room(fee_bearer='buyer', amount=100000)

    assert tx.status == 'pending'
    assert tx.platform_fee_amount == Decimal('5000')
    assert tx.seller_receives == Decimal('100000')
    assert len(tx.room_id) == 6 and all(c in ROOM_ID_ALPHABET for c in tx.room_id)
    assert len(tx.room_password) == 4 and tx.room_password.isdigit()
    assert tx.transaction_code.startswith('GD')

    slots = slots_of(tx.id)
    assert slots['seller'] == tx.created_by
    assert slots['buyer'] is None and slots['moderator'] is None and slots['arbiter'] is None


def test_every_room_gets_four_slot_rows(session, seller_room):
    tx = seller_room()
    rows = session.exec(select(RoomSlot).where(RoomSlot.transaction_id == tx.id)).all()
    assert sorted(r.role for r in rows) == ['arbiter', 'buyer', 'moderator', 'seller']


def test_seller_room_rejects_amount_below_minimum(session, config, make_user):
    seller = make_user()
    with pytest.raises(ValidationError):
        RoomRegistry.create_room(session, seller, 'seller', config, product_name='Skin',
                                 amount=5000, fee_bearer='seller')
    assert session.exec(select(RoomSlot)).all() == []


def test_buyer_room_starts_without_amount(session, config, make_user, slots_of):
    buyer = make_user()
    tx = RoomRegistry.create_room(session, buyer, 'buyer', config, category='games')
    assert tx.amount == 0
    assert slots_of(tx.id)['buyer'] == buyer.id


def test_moderator_room_requires_staff(session, config, make_user):
    with pytest.raises(AuthorizationError):
        RoomRegistry.create_room(session, make_user(), 'moderator', config)


def test_moderator_and_admin_rooms_seat_staff(session, config, make_user, slots_of):
    moderator = make_user('moderator')
    admin = make_user('admin')
    by_moderator = RoomRegistry.create_room(session, moderator, 'moderator', config)
    by_admin = RoomRegistry.create_room(session, admin, 'moderator', config)

    assert slots_of(by_moderator.id)['moderator'] == moderator.id
    assert slots_of(by_admin.id)['arbiter'] == admin.id


def test_unknown_initiator_role(session, config, make_user):
    with pytest.raises(ValidationError):
        RoomRegistry.create_room(session, make_user(), 'arbiter', config)


def test_get_room_normalizes_room_id(session, seller_room):
    tx = seller_room()
    assert RoomRegistry.get_room(session, f"  {tx.room_id.lower()} ").id == tx.id


def test_get_room_unknown(session):
    with pytest.raises(NotFoundError) as exc:
        RoomRegistry.get_room(session, 'ZZZZZZ')
    assert exc.value.kind == 'NOT_FOUND'


def test_set_product_details_by_seller(session, config, make_user):
    moderator = make_user('moderator')
    seller = make_user()
    tx = RoomRegistry.create_room(session, moderator, 'moderator', config)
    slot = session.exec(
        select(RoomSlot).where(RoomSlot.transaction_id == tx.id, RoomSlot.role == 'seller')
    ).one()
    slot.user_id = seller.id
    session.add(slot)
    session.commit()

    tx = RoomRegistry.set_product_details(session, tx, seller, config, 'Gift card', 200000, 'split',
                                          category='cards')
    assert tx.amount == Decimal('200000')
    assert tx.platform_fee_amount == Decimal('10000')
    assert tx.seller_receives == Decimal('195000')
    actions = [log.action for log in session.exec(
        select(TransactionLog).where(TransactionLog.transaction_id == tx.id)).all()]
    assert 'product_details' in actions


def test_set_product_details_only_seller(session, config, seller_room, make_user):
    tx = seller_room()
    with pytest.raises(AuthorizationError):
        RoomRegistry.set_product_details(session, tx, make_user(), config, 'X', 20000, 'seller')


def test_set_product_details_only_while_pending(session, config, seller_room):
    tx = seller_room()
    seller = tx.created_by
    tx.status = 'cancelled'
    session.add(tx)
    session.commit()
    with pytest.raises(ConflictError):
        RoomRegistry.set_product_details(session, tx, session.get(User, seller), config, 'X', 20000, 'seller')


def test_room_view_derives_slot_ids(session, seller_room):
    tx = seller_room()
    view = room_view(session, tx)
    assert 'room_password' not in view
    assert view['seller_id'] == tx.created_by
    assert view['buyer_id'] is None
    assert view['participant_count'] == 1
    assert room_view(session, tx, include_password=True)['room_password'] == tx.room_password


def test_list_rooms_for_user(session, seller_room, make_user):
    seller = make_user()
    first = seller_room(seller=seller)
    second = seller_room(seller=seller)
    seller_room()
    ids = {tx.id for tx in RoomRegistry.list_rooms_for_user(session, seller.id)}
    assert ids == {first.id, second.id}
