"""
Order Workflow Service
Order lifecycle state machine: creation, role-gated status transitions,
revision handling and manual payment for gig orders.
"""

import logging
import math
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Optional

from service_result import ErrorKind, ServiceResult

logger = logging.getLogger(__name__)


class OrderStatus(str, Enum):
    PENDING = 'pending'
    IN_PROGRESS = 'in_progress'
    DELIVERED = 'delivered'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'
    REVISION_REQUESTED = 'revision_requested'


class ActorRole(str, Enum):
    BUYER = 'buyer'
    SELLER = 'seller'


TERMINAL_STATUSES = {OrderStatus.COMPLETED, OrderStatus.CANCELLED}

# (current status, requested status) -> roles allowed to make the change
TRANSITIONS = {
    (OrderStatus.PENDING, OrderStatus.IN_PROGRESS): {ActorRole.SELLER},
    (OrderStatus.PENDING, OrderStatus.CANCELLED): {ActorRole.BUYER, ActorRole.SELLER},
    (OrderStatus.IN_PROGRESS, OrderStatus.DELIVERED): {ActorRole.SELLER},
    (OrderStatus.REVISION_REQUESTED, OrderStatus.DELIVERED): {ActorRole.SELLER},
    (OrderStatus.DELIVERED, OrderStatus.REVISION_REQUESTED): {ActorRole.BUYER},
    (OrderStatus.REVISION_REQUESTED, OrderStatus.IN_PROGRESS): {ActorRole.SELLER},
    (OrderStatus.DELIVERED, OrderStatus.COMPLETED): {ActorRole.BUYER},
}

# Next actions offered by the workflow endpoint, per role and status
WORKFLOW_ACTIONS = {
    ActorRole.BUYER: {
        OrderStatus.PENDING: ['cancel'],
        OrderStatus.IN_PROGRESS: [],
        OrderStatus.DELIVERED: ['download_delivery', 'pay', 'request_revision'],
        OrderStatus.REVISION_REQUESTED: [],
        OrderStatus.COMPLETED: ['download_delivery'],
        OrderStatus.CANCELLED: [],
    },
    ActorRole.SELLER: {
        OrderStatus.PENDING: ['accept', 'cancel'],
        OrderStatus.IN_PROGRESS: ['upload_delivery', 'mark_delivered'],
        OrderStatus.DELIVERED: ['download_delivery'],
        OrderStatus.REVISION_REQUESTED: ['accept_revision', 'decline_revision', 'upload_delivery', 'mark_delivered'],
        OrderStatus.COMPLETED: ['download_delivery'],
        OrderStatus.CANCELLED: [],
    },
}


def parse_status(value) -> Optional[OrderStatus]:
    """Return the OrderStatus for a raw value, or None if it is not a known status"""
    try:
        return OrderStatus(value)
    except ValueError:
        return None


def actor_role(order, user_id) -> Optional[ActorRole]:
    """Role of user_id on the order, or None when the user is not a party to it"""
    if user_id is None:
        return None
    if order.client_id == user_id:
        return ActorRole.BUYER
    if order.gig_owner_id == user_id:
        return ActorRole.SELLER
    return None


def allowed_next_statuses(status: OrderStatus, role: ActorRole):
    return [target for (current, target), roles in TRANSITIONS.items()
            if current == status and role in roles]


class OrderWorkflowService:
    """
    Validates and applies order status transitions.

    Every status write is a compare-and-swap on the stored status, so two
    concurrent requests can never both move the same order out of a state.
    The delivered -> completed edge is never written here; it is handed to
    the ledger's settlement routine.
    """

    def __init__(self, db, User, Gig, Order, DeliveryFile, ledger, auto_payment, notifications):
        """
        Args:
            db: SQLAlchemy database instance
            User, Gig, Order, DeliveryFile: model classes
            ledger: LedgerService used for settlement and balance checks
            auto_payment: AutoPaymentService, told when an order leaves delivered
            notifications: NotificationService for status-change notifications
        """
        self.db = db
        self.User = User
        self.Gig = Gig
        self.Order = Order
        self.DeliveryFile = DeliveryFile
        self.ledger = ledger
        self.auto_payment = auto_payment
        self.notifications = notifications

    # ------------------------------------------------------------------
    # Lookup helpers
    # ------------------------------------------------------------------

    def _load_for_party(self, order_id, user_id):
        """Load an order and resolve the caller's role, or return a failure result"""
        order = self.db.session.get(self.Order, order_id)
        if order is None:
            return None, None, ServiceResult.failure(ErrorKind.NOT_FOUND, 'Order not found')
        role = actor_role(order, user_id)
        if role is None:
            logger.warning(f"User {user_id} is not a party to order {order_id}")
            return order, None, ServiceResult.failure(
                ErrorKind.UNAUTHORIZED, 'You are not the buyer or seller of this order')
        return order, role, None

    def delivery_file_count(self, order_id):
        return self.DeliveryFile.query.filter_by(order_id=order_id).count()

    # ------------------------------------------------------------------
    # Creation and queries
    # ------------------------------------------------------------------

    def create_order(self, user_id, gig_id, requirement, price_at_purchase=None):
        """Create a pending order for a gig on behalf of the buyer"""
        if not requirement or not str(requirement).strip():
            return ServiceResult.failure(ErrorKind.VALIDATION_ERROR, 'Order requirement is required')

        gig = self.db.session.get(self.Gig, gig_id)
        if gig is None:
            return ServiceResult.failure(ErrorKind.NOT_FOUND, 'Gig not found')
        if gig.status != 'active':
            return ServiceResult.failure(ErrorKind.PRECONDITION_FAILED, 'Cannot order from inactive gig')

        buyer = self.db.session.get(self.User, user_id)
        if buyer is None:
            return ServiceResult.failure(ErrorKind.NOT_FOUND, 'Client not found')
        if gig.owner_id == user_id:
            return ServiceResult.failure(ErrorKind.VALIDATION_ERROR, 'You cannot order your own gig')

        price = Decimal(str(price_at_purchase)) if price_at_purchase is not None else Decimal(str(gig.price))
        if price <= 0:
            return ServiceResult.failure(ErrorKind.VALIDATION_ERROR, 'price_at_purchase must be a positive number')

        order = self.Order(
            client_id=user_id,
            gig_id=gig.id,
            gig_owner_id=gig.owner_id,
            price_at_purchase=price,
            requirement=str(requirement).strip(),
            status=OrderStatus.PENDING.value,
            response_time_hours=gig.response_time_hours or self.auto_payment.default_response_hours
        )
        self.db.session.add(order)
        self.db.session.commit()

        logger.info(f"Order {order.id} created by user {user_id} for gig {gig.id}")
        self.notifications.send(
            order.gig_owner_id, 'new_order', 'New Order Received',
            f'You have received a new order #{order.id} for "{gig.title}".', order_id=order.id)
        return ServiceResult.success(order)

    def get_order(self, order_id, user_id):
        order, role, failure = self._load_for_party(order_id, user_id)
        if failure:
            return failure
        return ServiceResult.success(order)

    def list_orders(self, user_id, role='buyer', status=None, page=1, limit=10):
        """Orders where the user is the buyer (role=buyer) or the seller (role=seller)"""
        if role not in (ActorRole.BUYER.value, ActorRole.SELLER.value):
            return ServiceResult.failure(ErrorKind.VALIDATION_ERROR, 'role must be buyer or seller')

        query = self.Order.query
        if role == ActorRole.BUYER.value:
            query = query.filter(self.Order.client_id == user_id)
        else:
            query = query.filter(self.Order.gig_owner_id == user_id)

        if status and status != 'all':
            if parse_status(status) is None:
                return ServiceResult.failure(ErrorKind.INVALID_STATUS, f'Invalid status: {status}')
            query = query.filter(self.Order.status == status)

        page = max(int(page or 1), 1)
        limit = min(max(int(limit or 10), 1), 100)
        total = query.count()
        orders = query.order_by(self.Order.created_at.desc(), self.Order.id.desc()) \
            .offset((page - 1) * limit).limit(limit).all()

        return ServiceResult.success({
            'orders': orders,
            'pagination': {
                'total': total,
                'page': page,
                'limit': limit,
                'pages': math.ceil(total / limit) if total else 0
            }
        })

    def delete_order(self, order_id, user_id):
        """Buyers may delete their own orders while still pending"""
        order, role, failure = self._load_for_party(order_id, user_id)
        if failure:
            return failure
        if role != ActorRole.BUYER:
            return ServiceResult.failure(ErrorKind.INVALID_TRANSITION, 'Only the buyer can delete an order')
        if order.status != OrderStatus.PENDING.value:
            return ServiceResult.failure(ErrorKind.INVALID_STATE, 'Can only delete pending orders')

        deleted = self.Order.query.filter(
            self.Order.id == order_id,
            self.Order.status == OrderStatus.PENDING.value
        ).delete(synchronize_session=False)
        if deleted != 1:
            self.db.session.rollback()
            return ServiceResult.failure(ErrorKind.INVALID_STATE, 'Can only delete pending orders')
        self.db.session.commit()
        return ServiceResult.success({'id': order_id})

    def get_statistics(self, user_id, role='buyer'):
        if role not in (ActorRole.BUYER.value, ActorRole.SELLER.value):
            return ServiceResult.failure(ErrorKind.VALIDATION_ERROR, 'role must be buyer or seller')

        column = self.Order.client_id if role == ActorRole.BUYER.value else self.Order.gig_owner_id
        rows = self.db.session.query(self.Order.status, self.Order.price_at_purchase) \
            .filter(column == user_id).all()

        stats = {'total_orders': len(rows), 'total_value_completed': 0.0}
        for status in OrderStatus:
            stats[status.value] = 0
        for status, price in rows:
            stats[status] = stats.get(status, 0) + 1
            if status == OrderStatus.COMPLETED.value:
                stats['total_value_completed'] += float(price)
        stats['total_value_completed'] = round(stats['total_value_completed'], 2)
        return ServiceResult.success(stats)

    def get_workflow(self, order_id, user_id):
        """Current status plus the next actions available to the caller"""
        order, role, failure = self._load_for_party(order_id, user_id)
        if failure:
            return failure

        status = OrderStatus(order.status)
        file_count = self.delivery_file_count(order_id)
        actions = list(WORKFLOW_ACTIONS[role][status])
        if file_count == 0:
            actions = [a for a in actions if a not in ('mark_delivered', 'download_delivery')]

        return ServiceResult.success({
            'order_id': order.id,
            'status': status.value,
            'role': role.value,
            'available_actions': actions,
            'next_statuses': [s.value for s in allowed_next_statuses(status, role)],
            'delivery_file_count': file_count,
            'delivery_deadline': order.delivery_deadline.isoformat() if order.delivery_deadline else None,
            'download_start_time': order.download_start_time.isoformat() if order.download_start_time else None,
            'auto_payment_deadline': order.auto_payment_deadline.isoformat() if order.auto_payment_deadline else None,
            'is_terminal': status in TERMINAL_STATUSES
        })

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def change_status(self, order_id, user_id, requested_status, note=None, now=None):
        """
        Apply a status transition requested by a party to the order.

        Args:
            order_id: Order ID
            user_id: ID of the authenticated caller
            requested_status: Target status (raw string or OrderStatus)
            note: Optional buyer note stored with a revision request
            now: Clock override, used by tests

        Returns:
            ServiceResult carrying the updated order
        """
        target = parse_status(requested_status)
        if target is None:
            return ServiceResult.failure(
                ErrorKind.INVALID_STATUS,
                'Invalid status. Must be one of: ' + ', '.join(s.value for s in OrderStatus))
        if note is not None and not isinstance(note, str):
            return ServiceResult.failure(ErrorKind.VALIDATION_ERROR, 'note must be text')

        order, role, failure = self._load_for_party(order_id, user_id)
        if failure:
            return failure

        current = OrderStatus(order.status)
        allowed_roles = TRANSITIONS.get((current, target))
        if allowed_roles is None:
            return ServiceResult.failure(
                ErrorKind.INVALID_TRANSITION,
                f'Cannot change order status from {current.value} to {target.value}')
        if role not in allowed_roles:
            required = ' or '.join(sorted(r.value for r in allowed_roles))
            return ServiceResult.failure(
                ErrorKind.INVALID_TRANSITION,
                f'Only the {required} can change order status from {current.value} to {target.value}')

        if target == OrderStatus.COMPLETED:
            return self.pay_order(order_id, user_id)

        now = now or datetime.utcnow()
        values = {'status': target.value, 'updated_at': now}

        if target == OrderStatus.IN_PROGRESS and current == OrderStatus.PENDING:
            gig = self.db.session.get(self.Gig, order.gig_id)
            if gig is not None and gig.delivery_days:
                values['delivery_deadline'] = now + timedelta(days=gig.delivery_days)

        if target == OrderStatus.DELIVERED:
            if self.delivery_file_count(order_id) == 0:
                return ServiceResult.failure(
                    ErrorKind.PRECONDITION_FAILED,
                    'Upload at least one delivery file before marking the order as delivered')
            # a new delivery cycle starts unarmed
            values['download_start_time'] = None
            values['auto_payment_deadline'] = None

        if current == OrderStatus.DELIVERED:
            values['download_start_time'] = None
            values['auto_payment_deadline'] = None

        if target == OrderStatus.REVISION_REQUESTED:
            values['revision_note'] = (note or '').strip()[:2000] or None

        swapped = self.Order.query.filter(
            self.Order.id == order_id,
            self.Order.status == current.value
        ).update(values, synchronize_session=False)

        if swapped != 1:
            self.db.session.rollback()
            self.db.session.expire_all()
            latest = self.db.session.get(self.Order, order_id)
            latest_status = latest.status if latest else 'deleted'
            logger.info(f"Order {order_id} moved to {latest_status} before {current.value} -> {target.value} could apply")
            return ServiceResult.failure(
                ErrorKind.INVALID_TRANSITION,
                f'Cannot change order status from {latest_status} to {target.value}')

        self.db.session.commit()
        self.db.session.refresh(order)
        logger.info(f"Order {order_id}: {current.value} -> {target.value} by {role.value} {user_id}")

        if current == OrderStatus.DELIVERED:
            self.auto_payment.cancel_deferred_check(order_id)

        self.notifications.order_status_changed(order, current.value, target.value)
        return ServiceResult.success(order)

    def accept_order(self, order_id, user_id):
        return self.change_status(order_id, user_id, OrderStatus.IN_PROGRESS)

    def mark_delivered(self, order_id, user_id):
        return self.change_status(order_id, user_id, OrderStatus.DELIVERED)

    def request_revision(self, order_id, user_id, note=None):
        return self.change_status(order_id, user_id, OrderStatus.REVISION_REQUESTED, note=note)

    def cancel_order(self, order_id, user_id):
        return self.change_status(order_id, user_id, OrderStatus.CANCELLED)

    def handle_revision(self, order_id, user_id, action, note=None):
        """Seller accepts (back to work) or declines (back to delivered) a revision request"""
        targets = {
            'accept': OrderStatus.IN_PROGRESS,
            'decline': OrderStatus.DELIVERED,
        }
        if action not in targets:
            return ServiceResult.failure(ErrorKind.VALIDATION_ERROR, 'action must be accept or decline')
        if note is not None and not isinstance(note, str):
            return ServiceResult.failure(ErrorKind.VALIDATION_ERROR, 'note must be text')

        order, role, failure = self._load_for_party(order_id, user_id)
        if failure:
            return failure
        if order.status != OrderStatus.REVISION_REQUESTED.value:
            return ServiceResult.failure(ErrorKind.PRECONDITION_FAILED, 'No revision request is pending for this order')

        result = self.change_status(order_id, user_id, targets[action])
        if result.ok and note:
            logger.info(f"Order {order_id} revision {action}ed with note: {note[:200]}")
        return result

    def pay_order(self, order_id, user_id):
        """
        Buyer approves the delivery and pays. Runs the same settlement as the
        auto-payment timer; losing a race against the timer is not an error.
        """
        order, role, failure = self._load_for_party(order_id, user_id)
        if failure:
            return failure
        if role != ActorRole.BUYER:
            return ServiceResult.failure(ErrorKind.INVALID_TRANSITION, 'Only the buyer can process payment')

        if order.status == OrderStatus.COMPLETED.value:
            return ServiceResult.success(order, message='Order has already been paid')
        if order.status != OrderStatus.DELIVERED.value:
            return ServiceResult.failure(ErrorKind.PRECONDITION_FAILED, 'Order must be delivered before payment')

        if not self.ledger.has_sufficient_funds(order.client_id, order.price_at_purchase):
            return ServiceResult.failure(ErrorKind.INSUFFICIENT_FUNDS, 'Insufficient balance to complete payment')

        settlement = self.ledger.settle_order(order_id, manual=True)
        if settlement.error == ErrorKind.SETTLEMENT_CONFLICT:
            self.db.session.expire_all()
            latest = self.db.session.get(self.Order, order_id)
            if latest is not None and latest.status == OrderStatus.COMPLETED.value:
                return ServiceResult.success(latest, message='Order has already been paid')
            return ServiceResult.failure(ErrorKind.PRECONDITION_FAILED, 'Order must be delivered before payment')
        if not settlement.ok:
            return settlement

        paid = settlement.value
        self.auto_payment.cancel_deferred_check(order_id)
        self.notifications.payment_settled(paid, automatic=False)
        return ServiceResult.success(paid, message='Payment processed successfully')
