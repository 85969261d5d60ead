"""Order lifecycle: creation, role-gated transitions and revision handling"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from app import db, Gig, Order, DeliveryFile, order_workflow
from conftest import fresh
from order_workflow import OrderStatus, ActorRole, TRANSITIONS, allowed_next_statuses
from service_result import ErrorKind

ALL_STATUSES = [s.value for s in OrderStatus]


def force_status(order_id, status):
    """Put an order straight into a status, with a delivery file on record"""
    order = fresh(Order, order_id)
    order.status = status
    if DeliveryFile.query.filter_by(order_id=order_id).count() == 0:
        db.session.add(DeliveryFile(
            order_id=order_id, original_name='draft.pdf', file_name='draft.pdf',
            storage_path='deliveries/draft.pdf', file_size=10, file_type='application/pdf',
            uploaded_by=order.gig_owner_id
        ))
    db.session.commit()


def party_id(order_id, role):
    order = fresh(Order, order_id)
    return order.client_id if role == ActorRole.BUYER else order.gig_owner_id


# ----------------------------------------------------------------------
# Creation
# ----------------------------------------------------------------------

def test_create_order_defaults_to_gig_price(buyer, gig, seller):
    result = order_workflow.create_order(buyer.id, gig.id, 'Logo for a coffee shop')

    assert result.ok
    order = fresh(Order, result.value.id)
    assert order.status == 'pending'
    assert order.client_id == buyer.id
    assert order.gig_owner_id == seller.id
    assert order.price_at_purchase == Decimal('100.00')
    assert order.response_time_hours == 24
    assert order.download_start_time is None
    assert order.auto_payment_deadline is None


def test_create_order_does_not_touch_gig_or_seller(buyer, gig, seller):
    order_workflow.create_order(buyer.id, gig.id, 'Logo', price_at_purchase=Decimal('80.00'))

    assert fresh(Gig, gig.id).price == Decimal('100.00')
    assert fresh(Gig, gig.id).status == 'active'
    assert fresh(type(seller), seller.id).balance == Decimal('0')


def test_create_order_validations(buyer, seller, gig):
    assert order_workflow.create_order(buyer.id, 9999, 'Logo').error == ErrorKind.NOT_FOUND
    assert order_workflow.create_order(seller.id, gig.id, 'Logo').error == ErrorKind.VALIDATION_ERROR
    assert order_workflow.create_order(buyer.id, gig.id, '   ').error == ErrorKind.VALIDATION_ERROR
    assert order_workflow.create_order(buyer.id, gig.id, 'Logo', price_at_purchase=0).error == ErrorKind.VALIDATION_ERROR

    gig.status = 'paused'
    db.session.commit()
    assert order_workflow.create_order(buyer.id, gig.id, 'Logo').error == ErrorKind.PRECONDITION_FAILED
    assert Order.query.count() == 0


# ----------------------------------------------------------------------
# Transition table
# ----------------------------------------------------------------------

ALLOWED_EDGES = [
    (current.value, target.value, role)
    for (current, target), roles in TRANSITIONS.items()
    for role in roles
]

REJECTED_EDGES = [
    (current, target)
    for current in ALL_STATUSES
    for target in ALL_STATUSES
    if (OrderStatus(current), OrderStatus(target)) not in TRANSITIONS
]


@pytest.mark.parametrize('current,target,role', ALLOWED_EDGES)
def test_allowed_transitions(make_order, current, target, role):
    order_id = make_order('pending')
    force_status(order_id, current)

    result = order_workflow.change_status(order_id, party_id(order_id, role), target)

    assert result.ok, result.message
    assert fresh(Order, order_id).status == target


@pytest.mark.parametrize('current,target', REJECTED_EDGES)
@pytest.mark.parametrize('role', [ActorRole.BUYER, ActorRole.SELLER])
def test_transitions_outside_table_are_rejected(make_order, current, target, role):
    order_id = make_order('pending')
    force_status(order_id, current)

    result = order_workflow.change_status(order_id, party_id(order_id, role), target)

    assert result.error == ErrorKind.INVALID_TRANSITION
    assert current in result.message and target in result.message
    assert fresh(Order, order_id).status == current


@pytest.mark.parametrize('current,target,role', [
    (c, t, r) for (c, t, allowed) in
    [(c.value, t.value, roles) for (c, t), roles in TRANSITIONS.items()]
    for r in ActorRole if r not in allowed
])
def test_wrong_party_role_is_rejected(make_order, current, target, role):
    order_id = make_order('pending')
    force_status(order_id, current)

    result = order_workflow.change_status(order_id, party_id(order_id, role), target)

    assert result.error == ErrorKind.INVALID_TRANSITION
    assert fresh(Order, order_id).status == current


def test_non_party_is_unauthorized(make_order, outsider):
    order_id = make_order('pending')

    result = order_workflow.change_status(order_id, outsider.id, 'cancelled')

    assert result.error == ErrorKind.UNAUTHORIZED
    assert fresh(Order, order_id).status == 'pending'


def test_unknown_status_is_invalid(make_order, seller):
    order_id = make_order('pending')

    result = order_workflow.change_status(order_id, seller.id, 'shipped')

    assert result.error == ErrorKind.INVALID_STATUS
    assert fresh(Order, order_id).status == 'pending'


def test_missing_order_is_not_found(seller):
    assert order_workflow.change_status(12345, seller.id, 'in_progress').error == ErrorKind.NOT_FOUND


def test_lost_race_leaves_status_untouched(make_order, seller, monkeypatch):
    """A concurrent writer moves the order between the read and the conditional update"""
    order_id = make_order('pending')
    original_count = order_workflow.delivery_file_count

    def cancel_behind_our_back(oid):
        Order.query.filter_by(id=oid).update({'status': 'cancelled'})
        db.session.commit()
        return original_count(oid)

    force_status(order_id, 'in_progress')
    monkeypatch.setattr(order_workflow, 'delivery_file_count', cancel_behind_our_back)

    result = order_workflow.change_status(order_id, seller.id, 'delivered')

    assert result.error == ErrorKind.INVALID_TRANSITION
    assert fresh(Order, order_id).status == 'cancelled'


def test_allowed_next_statuses():
    assert allowed_next_statuses(OrderStatus.PENDING, ActorRole.SELLER) == [OrderStatus.IN_PROGRESS, OrderStatus.CANCELLED]
    assert allowed_next_statuses(OrderStatus.DELIVERED, ActorRole.BUYER) == [OrderStatus.REVISION_REQUESTED, OrderStatus.COMPLETED]
    assert allowed_next_statuses(OrderStatus.COMPLETED, ActorRole.BUYER) == []


# ----------------------------------------------------------------------
# Side effects
# ----------------------------------------------------------------------

def test_accept_sets_delivery_deadline(make_order, seller):
    order_id = make_order('pending')
    now = datetime(2026, 3, 1, 12, 0)

    result = order_workflow.change_status(order_id, seller.id, 'in_progress', now=now)

    assert result.ok
    assert fresh(Order, order_id).delivery_deadline == now + timedelta(days=3)


def test_mark_delivered_requires_a_file(make_order, seller):
    order_id = make_order('in_progress', files=0)

    result = order_workflow.mark_delivered(order_id, seller.id)

    assert result.error == ErrorKind.PRECONDITION_FAILED
    assert fresh(Order, order_id).status == 'in_progress'


def test_mark_delivered_with_files(make_order, seller):
    order_id = make_order('in_progress', files=2)

    result = order_workflow.mark_delivered(order_id, seller.id)

    assert result.ok
    assert fresh(Order, order_id).status == 'delivered'


def test_request_revision_stores_note_and_clears_timer(make_order, buyer):
    order_id = make_order('delivered')
    order = fresh(Order, order_id)
    order.download_start_time = datetime.utcnow()
    order.auto_payment_deadline = datetime.utcnow() + timedelta(hours=24)
    db.session.commit()

    result = order_workflow.request_revision(order_id, buyer.id, note='  Please use blue  ')

    assert result.ok
    order = fresh(Order, order_id)
    assert order.status == 'revision_requested'
    assert order.revision_note == 'Please use blue'
    assert order.download_start_time is None
    assert order.auto_payment_deadline is None


@pytest.mark.parametrize('action,expected', [('accept', 'in_progress'), ('decline', 'delivered')])
def test_handle_revision(make_order, seller, action, expected):
    order_id = make_order('revision_requested')

    result = order_workflow.handle_revision(order_id, seller.id, action)

    assert result.ok
    assert fresh(Order, order_id).status == expected


def test_handle_revision_requires_pending_request(make_order, seller, buyer):
    order_id = make_order('delivered')

    assert order_workflow.handle_revision(order_id, seller.id, 'accept').error == ErrorKind.PRECONDITION_FAILED
    assert order_workflow.handle_revision(order_id, seller.id, 'maybe').error == ErrorKind.VALIDATION_ERROR

    order_id = make_order('revision_requested')
    assert order_workflow.handle_revision(order_id, buyer.id, 'accept').error == ErrorKind.INVALID_TRANSITION


def test_delete_order_only_while_pending(make_order, buyer, seller):
    order_id = make_order('pending')
    assert order_workflow.delete_order(order_id, seller.id).error == ErrorKind.INVALID_TRANSITION
    assert order_workflow.delete_order(order_id, buyer.id).ok
    assert fresh(Order, order_id) is None

    order_id = make_order('in_progress')
    assert order_workflow.delete_order(order_id, buyer.id).error == ErrorKind.INVALID_STATE


# ----------------------------------------------------------------------
# Queries
# ----------------------------------------------------------------------

def test_workflow_actions_by_role(make_order, buyer, seller, outsider):
    order_id = make_order('delivered')

    buyer_view = order_workflow.get_workflow(order_id, buyer.id).value
    assert buyer_view['role'] == 'buyer'
    assert buyer_view['available_actions'] == ['download_delivery', 'pay', 'request_revision']
    assert set(buyer_view['next_statuses']) == {'revision_requested', 'completed'}
    assert buyer_view['delivery_file_count'] == 1

    seller_view = order_workflow.get_workflow(order_id, seller.id).value
    assert seller_view['role'] == 'seller'
    assert seller_view['next_statuses'] == []

    assert order_workflow.get_workflow(order_id, outsider.id).error == ErrorKind.UNAUTHORIZED


def test_workflow_hides_mark_delivered_without_files(make_order, seller):
    order_id = make_order('in_progress', files=0)

    view = order_workflow.get_workflow(order_id, seller.id).value

    assert view['available_actions'] == ['upload_delivery']


def test_list_orders_and_statistics(make_order, buyer, seller):
    make_order('pending')
    make_order('completed')
    make_order('cancelled')

    as_buyer = order_workflow.list_orders(buyer.id, role='buyer').value
    assert as_buyer['pagination']['total'] == 3

    completed = order_workflow.list_orders(seller.id, role='seller', status='completed').value
    assert len(completed['orders']) == 1

    assert order_workflow.list_orders(buyer.id, status='lost').error == ErrorKind.INVALID_STATUS
    assert order_workflow.list_orders(buyer.id, role='admin').error == ErrorKind.VALIDATION_ERROR

    stats = order_workflow.get_statistics(seller.id, role='seller').value
    assert stats['total_orders'] == 3
    assert stats['completed'] == 1
    assert stats['pending'] == 1
    assert stats['total_value_completed'] == 100.0
