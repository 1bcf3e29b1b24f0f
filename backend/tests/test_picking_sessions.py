"""
Picking session tests: reservation, pick list, packing and the stock decrement
at READY_TO_SHIP.
"""

import pytest

from fulfillment.errors import (
    InsufficientStock,
    InvalidSessionState,
    NotFound,
    OrderAlreadyInSession,
    OrdersNotEligible,
    ValidationError,
)
from fulfillment.extensions import db
from fulfillment.models import Order, Product, SessionReservation
from fulfillment.services import order_service, picking_service
from fulfillment.time_utils import local_today


def _status(order_id):
    return db.session.get(Order, order_id).status


def _pick_all(store_id, session):
    for item in picking_service.picking_items(session):
        picking_service.record_pick(
            store_id=store_id,
            session_id=session.id,
            product_id=item.product_id,
            picked_quantity=item.total_quantity_needed,
        )


@pytest.fixture
def two_confirmed(make_product, make_order, advance):
    mug = make_product(stock=10, name="Mug")
    plate = make_product(stock=10, name="Plate")
    first = advance(make_order([(mug, 2), (plate, 1)]), "CONFIRMED")
    second = advance(make_order([(mug, 3)]), "CONFIRMED")
    return mug, plate, first, second


class TestCreate:
    def test_create_moves_orders_and_builds_pick_list(self, store, two_confirmed):
        mug, plate, first, second = two_confirmed

        session = picking_service.create_picking_session(store_id=store.id, order_ids=[first.id, second.id])

        assert session.status == "PICKING"
        assert session.kind == "picking"
        assert session.order_ids == [first.id, second.id]
        assert _status(first.id) == "IN_PREPARATION"
        assert _status(second.id) == "IN_PREPARATION"

        needed = {pi.product_id: pi.total_quantity_needed for pi in picking_service.picking_items(session)}
        assert needed == {mug.id: 5, plate.id: 1}

    def test_codes_are_sequential_per_day(self, store, make_product, make_order, advance):
        product = make_product()
        a = advance(make_order([(product, 1)]), "CONFIRMED")
        b = advance(make_order([(product, 1)]), "CONFIRMED")

        s1 = picking_service.create_picking_session(store_id=store.id, order_ids=[a.id])
        s2 = picking_service.create_picking_session(store_id=store.id, order_ids=[b.id])

        today = local_today(store.timezone).strftime("%d%m%Y")
        assert s1.code == f"PREP-{today}-01"
        assert s2.code == f"PREP-{today}-02"

    def test_order_in_active_session_rejected(self, store, two_confirmed):
        _, _, first, second = two_confirmed
        session = picking_service.create_picking_session(store_id=store.id, order_ids=[first.id])

        with pytest.raises(OrderAlreadyInSession) as exc_info:
            picking_service.create_picking_session(store_id=store.id, order_ids=[first.id, second.id])

        assert exc_info.value.details["order_ids"] == [first.id]
        assert exc_info.value.details["session_ids"] == [session.id]
        assert _status(second.id) == "CONFIRMED"

    def test_only_confirmed_orders_eligible(self, store, make_product, make_order, advance):
        product = make_product()
        ok = advance(make_order([(product, 1)]), "CONFIRMED")
        pending = make_order([(product, 1)])

        with pytest.raises(OrdersNotEligible) as exc_info:
            picking_service.create_picking_session(store_id=store.id, order_ids=[ok.id, pending.id])

        assert exc_info.value.details["order_ids"] == [pending.id]
        assert _status(ok.id) == "CONFIRMED"
        assert db.session.query(SessionReservation).count() == 0

    def test_unknown_order_not_found(self, store, two_confirmed):
        _, _, first, _ = two_confirmed
        with pytest.raises(NotFound):
            picking_service.create_picking_session(store_id=store.id, order_ids=[first.id, 999999])

    @pytest.mark.parametrize("order_ids", [[], None])
    def test_empty_order_list_rejected(self, store, order_ids):
        with pytest.raises(ValidationError):
            picking_service.create_picking_session(store_id=store.id, order_ids=order_ids)

    def test_duplicate_ids_rejected(self, store, two_confirmed):
        _, _, first, _ = two_confirmed
        with pytest.raises(ValidationError):
            picking_service.create_picking_session(store_id=store.id, order_ids=[first.id, first.id])

    def test_session_of_another_store_not_found(self, store, other_store, two_confirmed):
        _, _, first, _ = two_confirmed
        session = picking_service.create_picking_session(store_id=store.id, order_ids=[first.id])
        with pytest.raises(NotFound):
            picking_service.get_picking_session(other_store.id, session.id)


class TestPickAndPack:
    def test_pick_quantity_bounded(self, store, two_confirmed):
        mug, _, first, second = two_confirmed
        session = picking_service.create_picking_session(store_id=store.id, order_ids=[first.id, second.id])

        with pytest.raises(ValidationError):
            picking_service.record_pick(store_id=store.id, session_id=session.id, product_id=mug.id, picked_quantity=6)

        item = picking_service.record_pick(store_id=store.id, session_id=session.id, product_id=mug.id, picked_quantity=4)
        assert item.quantity_picked == 4

    def test_complete_picking_requires_full_pick(self, store, two_confirmed):
        mug, plate, first, second = two_confirmed
        session = picking_service.create_picking_session(store_id=store.id, order_ids=[first.id, second.id])
        picking_service.record_pick(store_id=store.id, session_id=session.id, product_id=mug.id, picked_quantity=5)

        with pytest.raises(InvalidSessionState) as exc_info:
            picking_service.complete_picking(store_id=store.id, session_id=session.id)
        assert exc_info.value.details["product_ids"] == [plate.id]

    def test_full_flow_decrements_at_packing(self, store, two_confirmed):
        mug, plate, first, second = two_confirmed
        session = picking_service.create_picking_session(store_id=store.id, order_ids=[first.id, second.id])
        _pick_all(store.id, session)

        session = picking_service.complete_picking(store_id=store.id, session_id=session.id)
        assert session.status == "PACKING"
        progress = picking_service.packing_progress(session)
        assert {(p.order_id, p.product_id, p.quantity_needed) for p in progress} == {
            (first.id, mug.id, 2),
            (first.id, plate.id, 1),
            (second.id, mug.id, 3),
        }
        assert db.session.get(Product, mug.id).stock == 10

        picking_service.pack_unit(store_id=store.id, session_id=session.id, order_id=first.id, product_id=mug.id)
        session = picking_service.complete_packing(store_id=store.id, session_id=session.id, order_id=first.id)
        assert session.status == "PACKING"
        assert _status(first.id) == "READY_TO_SHIP"
        assert db.session.get(Product, mug.id).stock == 8
        assert db.session.get(Product, plate.id).stock == 9

        session = picking_service.complete_packing(store_id=store.id, session_id=session.id, order_id=second.id)
        assert session.status == "COMPLETED"
        assert session.completed_at is not None
        assert db.session.get(Product, mug.id).stock == 5
        assert db.session.query(SessionReservation).count() == 0

    def test_pack_unit_bounded_by_order_need(self, store, make_product, make_order, advance):
        product = make_product(stock=10)
        order = advance(make_order([(product, 1)]), "CONFIRMED")
        session = picking_service.create_picking_session(store_id=store.id, order_ids=[order.id])
        _pick_all(store.id, session)
        picking_service.complete_picking(store_id=store.id, session_id=session.id)

        progress = picking_service.pack_unit(store_id=store.id, session_id=session.id, order_id=order.id, product_id=product.id)
        assert progress.quantity_packed == 1
        with pytest.raises(ValidationError):
            picking_service.pack_unit(store_id=store.id, session_id=session.id, order_id=order.id, product_id=product.id)

    def test_packing_twice_rejected(self, store, two_confirmed):
        _, _, first, second = two_confirmed
        session = picking_service.create_picking_session(store_id=store.id, order_ids=[first.id, second.id])
        _pick_all(store.id, session)
        picking_service.complete_picking(store_id=store.id, session_id=session.id)
        picking_service.complete_packing(store_id=store.id, session_id=session.id, order_id=first.id)

        with pytest.raises(InvalidSessionState):
            picking_service.complete_packing(store_id=store.id, session_id=session.id, order_id=first.id)

    def test_pick_after_picking_phase_rejected(self, store, two_confirmed):
        mug, _, first, _ = two_confirmed
        session = picking_service.create_picking_session(store_id=store.id, order_ids=[first.id])
        _pick_all(store.id, session)
        picking_service.complete_picking(store_id=store.id, session_id=session.id)

        with pytest.raises(InvalidSessionState):
            picking_service.record_pick(store_id=store.id, session_id=session.id, product_id=mug.id, picked_quantity=0)

    def test_insufficient_stock_leaves_order_in_preparation(self, store, make_product, make_order, advance):
        product = make_product(stock=5)
        a = advance(make_order([(product, 3)]), "CONFIRMED")
        b = advance(make_order([(product, 3)]), "CONFIRMED")
        session = picking_service.create_picking_session(store_id=store.id, order_ids=[a.id, b.id])
        _pick_all(store.id, session)
        picking_service.complete_picking(store_id=store.id, session_id=session.id)
        picking_service.complete_packing(store_id=store.id, session_id=session.id, order_id=a.id)

        with pytest.raises(InsufficientStock):
            picking_service.complete_packing(store_id=store.id, session_id=session.id, order_id=b.id)

        assert _status(b.id) == "IN_PREPARATION"
        assert db.session.get(Product, product.id).stock == 2
        assert picking_service.get_picking_session(store.id, session.id).status == "PACKING"


class TestAbandon:
    def test_abandon_returns_orders_to_confirmed(self, store, two_confirmed):
        _, _, first, second = two_confirmed
        session = picking_service.create_picking_session(store_id=store.id, order_ids=[first.id, second.id])

        session = picking_service.abandon_picking(store_id=store.id, session_id=session.id)

        assert session.status == "CANCELLED"
        assert session.cancelled_at is not None
        assert _status(first.id) == "CONFIRMED"
        assert _status(second.id) == "CONFIRMED"

        again = picking_service.create_picking_session(store_id=store.id, order_ids=[first.id, second.id])
        assert again.status == "PICKING"

    def test_abandon_keeps_packed_orders(self, store, two_confirmed):
        mug, _, first, second = two_confirmed
        session = picking_service.create_picking_session(store_id=store.id, order_ids=[first.id, second.id])
        _pick_all(store.id, session)
        picking_service.complete_picking(store_id=store.id, session_id=session.id)
        picking_service.complete_packing(store_id=store.id, session_id=session.id, order_id=first.id)

        picking_service.abandon_picking(store_id=store.id, session_id=session.id)

        assert _status(first.id) == "READY_TO_SHIP"
        assert _status(second.id) == "CONFIRMED"
        assert db.session.get(Product, mug.id).stock == 8

    def test_terminal_session_cannot_be_abandoned(self, store, two_confirmed):
        _, _, first, _ = two_confirmed
        session = picking_service.create_picking_session(store_id=store.id, order_ids=[first.id])
        picking_service.abandon_picking(store_id=store.id, session_id=session.id)

        with pytest.raises(InvalidSessionState):
            picking_service.abandon_picking(store_id=store.id, session_id=session.id)


class TestDirectChanges:
    def test_direct_transition_of_member_refused(self, store, two_confirmed):
        mug, _, first, second = two_confirmed
        session = picking_service.create_picking_session(store_id=store.id, order_ids=[first.id, second.id])

        with pytest.raises(OrderAlreadyInSession) as exc_info:
            order_service.transition_order(store_id=store.id, order_id=first.id, status="READY_TO_SHIP")

        assert exc_info.value.details["session_id"] == session.id
        assert _status(first.id) == "IN_PREPARATION"
        assert db.session.get(Product, mug.id).stock == 10

    def test_cancel_while_picking_shrinks_pick_list(self, store, two_confirmed):
        mug, plate, first, second = two_confirmed
        session = picking_service.create_picking_session(store_id=store.id, order_ids=[first.id, second.id])
        picking_service.record_pick(store_id=store.id, session_id=session.id, product_id=mug.id, picked_quantity=5)

        order_service.transition_order(store_id=store.id, order_id=first.id, status="CANCELLED")

        session = picking_service.get_picking_session(store.id, session.id)
        items = picking_service.picking_items(session)
        assert [(pi.product_id, pi.total_quantity_needed, pi.quantity_picked) for pi in items] == [(mug.id, 3, 3)]
        assert db.session.query(SessionReservation).filter_by(order_id=first.id).count() == 0
        assert session.status == "PICKING"

        session = picking_service.complete_picking(store_id=store.id, session_id=session.id)
        assert [(p.order_id, p.quantity_needed) for p in picking_service.packing_progress(session)] == [(second.id, 3)]

        session = picking_service.complete_packing(store_id=store.id, session_id=session.id, order_id=second.id)
        assert session.status == "COMPLETED"
        assert _status(first.id) == "CANCELLED"
        assert db.session.get(Product, mug.id).stock == 7
        assert db.session.get(Product, plate.id).stock == 10

    def test_cancel_with_units_left_to_pick(self, store, make_product, make_order, advance):
        product = make_product(stock=20)
        small = advance(make_order([(product, 3)]), "CONFIRMED")
        large = advance(make_order([(product, 4)]), "CONFIRMED")
        session = picking_service.create_picking_session(store_id=store.id, order_ids=[small.id, large.id])

        order_service.transition_order(store_id=store.id, order_id=large.id, status="CANCELLED")
        picking_service.record_pick(store_id=store.id, session_id=session.id, product_id=product.id, picked_quantity=3)

        session = picking_service.complete_picking(store_id=store.id, session_id=session.id)
        assert session.status == "PACKING"

    def test_cancelling_sole_member_cancels_session(self, store, two_confirmed):
        _, _, first, _ = two_confirmed
        session = picking_service.create_picking_session(store_id=store.id, order_ids=[first.id])

        order_service.transition_order(store_id=store.id, order_id=first.id, status="CANCELLED")

        session = picking_service.get_picking_session(store.id, session.id)
        assert session.status == "CANCELLED"
        assert picking_service.picking_items(session) == []
        assert db.session.query(SessionReservation).count() == 0

    def test_cancelling_last_unpacked_member_completes_session(self, store, two_confirmed):
        mug, _, first, second = two_confirmed
        session = picking_service.create_picking_session(store_id=store.id, order_ids=[first.id, second.id])
        _pick_all(store.id, session)
        picking_service.complete_picking(store_id=store.id, session_id=session.id)
        picking_service.complete_packing(store_id=store.id, session_id=session.id, order_id=first.id)

        order_service.transition_order(store_id=store.id, order_id=second.id, status="CANCELLED")

        session = picking_service.get_picking_session(store.id, session.id)
        assert session.status == "COMPLETED"
        assert [p.order_id for p in picking_service.packing_progress(session)] == [first.id]
        assert db.session.get(Product, mug.id).stock == 8
        assert db.session.query(SessionReservation).count() == 0

    def test_packed_member_changes_directly(self, store, two_confirmed):
        _, _, first, second = two_confirmed
        session = picking_service.create_picking_session(store_id=store.id, order_ids=[first.id, second.id])
        _pick_all(store.id, session)
        picking_service.complete_picking(store_id=store.id, session_id=session.id)
        picking_service.complete_packing(store_id=store.id, session_id=session.id, order_id=first.id)

        order = order_service.transition_order(store_id=store.id, order_id=first.id, status="SHIPPED")

        assert order.status == "SHIPPED"
        assert picking_service.get_picking_session(store.id, session.id).status == "PACKING"
