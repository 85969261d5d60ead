"""
Ledger Service
Wallet balances and balance-affecting transactions (deposits, withdrawals and
order settlement).
"""

import logging
import math
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from sqlalchemy.exc import SQLAlchemyError

from service_result import ErrorKind, ServiceResult

logger = logging.getLogger(__name__)

TRANSACTION_TYPES = ('deposit', 'withdraw', 'payment', 'received_payment')


def to_amount(value):
    """Parse a positive money amount rounded to cents, or None if invalid"""
    try:
        amount = Decimal(str(value)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    return amount


class LedgerService:
    """
    Records ledger entries and keeps user balances in step with them.

    Settlement is one database transaction guarded by a conditional update of
    the order status, so it runs at most once per order no matter how many
    callers (buyer click, deferred timer, periodic sweep) race for it.
    """

    def __init__(self, db, User, Order, Transaction, audit=None):
        self.db = db
        self.User = User
        self.Order = Order
        self.Transaction = Transaction
        self.audit = audit

    def get_balance(self, user_id):
        balance = self.db.session.query(self.User.balance).filter(self.User.id == user_id).scalar()
        return Decimal(str(balance)) if balance is not None else None

    def has_sufficient_funds(self, user_id, amount):
        balance = self.get_balance(user_id)
        return balance is not None and balance >= Decimal(str(amount))

    def _debit(self, user_id, amount):
        """Conditionally debit a balance; returns False if the user lacks funds"""
        updated = self.db.session.query(self.User).filter(
            self.User.id == user_id,
            self.User.balance >= amount
        ).update({self.User.balance: self.User.balance - amount}, synchronize_session=False)
        return updated == 1

    def _credit(self, user_id, amount):
        updated = self.db.session.query(self.User).filter(
            self.User.id == user_id
        ).update({self.User.balance: self.User.balance + amount}, synchronize_session=False)
        return updated == 1

    def _record(self, user_id, amount, transaction_type, description, order_id=None, now=None):
        entry = self.Transaction(
            user_id=user_id,
            order_id=order_id,
            amount=amount,
            type=transaction_type,
            description=description,
            balance_after=self.get_balance(user_id),
            created_at=now or datetime.utcnow()
        )
        self.db.session.add(entry)
        return entry

    def _log_financial(self, event_type, action, amount, resource_type, resource_id, user_id=None):
        if self.audit is None:
            return
        self.audit.log_financial(event_type, action, float(amount), resource_type, resource_id, user_id=user_id)

    # ------------------------------------------------------------------
    # Wallet operations
    # ------------------------------------------------------------------

    def deposit(self, user_id, amount, description=None):
        amount = to_amount(amount)
        if amount is None:
            return ServiceResult.failure(ErrorKind.VALIDATION_ERROR, 'Amount must be a positive number')

        try:
            if not self._credit(user_id, amount):
                self.db.session.rollback()
                return ServiceResult.failure(ErrorKind.NOT_FOUND, 'User not found')
            entry = self._record(user_id, amount, 'deposit', description or f'Deposit of {amount}')
            self.db.session.commit()
        except SQLAlchemyError:
            self.db.session.rollback()
            logger.error(f"Deposit failed for user {user_id}", exc_info=True)
            raise

        self._log_financial('deposit', 'Wallet deposit', amount, 'transaction', entry.id, user_id=user_id)
        return ServiceResult.success(entry)

    def withdraw(self, user_id, amount, description=None):
        amount = to_amount(amount)
        if amount is None:
            return ServiceResult.failure(ErrorKind.VALIDATION_ERROR, 'Amount must be a positive number')

        try:
            if not self._debit(user_id, amount):
                self.db.session.rollback()
                if self.get_balance(user_id) is None:
                    return ServiceResult.failure(ErrorKind.NOT_FOUND, 'User not found')
                return ServiceResult.failure(ErrorKind.INSUFFICIENT_FUNDS, 'Insufficient balance for withdrawal')
            entry = self._record(user_id, -amount, 'withdraw', description or f'Withdrawal of {amount}')
            self.db.session.commit()
        except SQLAlchemyError:
            self.db.session.rollback()
            logger.error(f"Withdrawal failed for user {user_id}", exc_info=True)
            raise

        self._log_financial('withdraw', 'Wallet withdrawal', amount, 'transaction', entry.id, user_id=user_id)
        return ServiceResult.success(entry)

    def list_transactions(self, user_id, page=1, limit=20, transaction_type=None):
        query = self.Transaction.query.filter(self.Transaction.user_id == user_id)
        if transaction_type:
            if transaction_type not in TRANSACTION_TYPES:
                return ServiceResult.failure(ErrorKind.VALIDATION_ERROR, f'Unknown transaction type: {transaction_type}')
            query = query.filter(self.Transaction.type == transaction_type)

        page = max(int(page or 1), 1)
        limit = min(max(int(limit or 20), 1), 100)
        total = query.count()
        entries = query.order_by(self.Transaction.created_at.desc(), self.Transaction.id.desc()) \
            .offset((page - 1) * limit).limit(limit).all()

        return ServiceResult.success({
            'transactions': entries,
            'balance': float(self.get_balance(user_id) or 0),
            'pagination': {
                'total': total,
                'page': page,
                'limit': limit,
                'pages': math.ceil(total / limit) if total else 0
            }
        })

    def order_entries(self, order_id):
        return self.Transaction.query.filter_by(order_id=order_id).order_by(self.Transaction.id.asc()).all()

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def settle_order(self, order_id, manual=False, now=None):
        """
        Move the order price from buyer to seller and complete the order.

        The status flip (delivered -> completed), both balance updates and both
        ledger rows are committed together or not at all. Automatic settlement
        additionally requires the auto-payment deadline to have passed.

        Args:
            order_id: Order ID
            manual: True when the buyer paid, False for timer/sweep settlement
            now: Clock override, used by tests

        Returns:
            ServiceResult with the completed order, or SETTLEMENT_CONFLICT when
            another caller already settled (or the order left delivered)
        """
        now = now or datetime.utcnow()
        order = self.db.session.get(self.Order, order_id)
        if order is None:
            return ServiceResult.failure(ErrorKind.NOT_FOUND, 'Order not found')

        buyer_id = order.client_id
        seller_id = order.gig_owner_id
        amount = Decimal(str(order.price_at_purchase)).quantize(Decimal('0.01'))
        source = 'manual' if manual else 'automatic'

        try:
            query = self.db.session.query(self.Order).filter(
                self.Order.id == order_id,
                self.Order.status == 'delivered'
            )
            if not manual:
                query = query.filter(
                    self.Order.auto_payment_deadline.isnot(None),
                    self.Order.auto_payment_deadline <= now
                )
            flipped = query.update({
                self.Order.status: 'completed',
                self.Order.completed_at: now,
                self.Order.auto_payment_deadline: None,
                self.Order.payment_processed_manually: manual,
                self.Order.updated_at: now
            }, synchronize_session=False)

            if flipped != 1:
                self.db.session.rollback()
                logger.info(f"Settlement for order {order_id} skipped ({source}): order is no longer awaiting payment")
                return ServiceResult.failure(ErrorKind.SETTLEMENT_CONFLICT, 'Order was already settled or left delivered')

            if not self._debit(buyer_id, amount):
                self.db.session.rollback()
                logger.warning(f"Settlement for order {order_id} failed ({source}): buyer {buyer_id} has insufficient funds")
                return ServiceResult.failure(ErrorKind.INSUFFICIENT_FUNDS, 'Insufficient balance to complete payment')

            if not self._credit(seller_id, amount):
                self.db.session.rollback()
                logger.error(f"Settlement for order {order_id} failed ({source}): seller {seller_id} not found")
                return ServiceResult.failure(ErrorKind.NOT_FOUND, 'Seller not found')

            label = 'Payment' if manual else 'Automatic payment'
            self._record(buyer_id, -amount, 'payment', f'{label} for order #{order_id}', order_id=order_id, now=now)
            self._record(seller_id, amount, 'received_payment', f'{label} received for order #{order_id}',
                         order_id=order_id, now=now)
            self.db.session.commit()
        except SQLAlchemyError:
            self.db.session.rollback()
            logger.error(f"Settlement for order {order_id} failed ({source})", exc_info=True)
            raise

        self.db.session.refresh(order)
        logger.info(f"Order {order_id} settled ({source}): {amount} from user {buyer_id} to user {seller_id}")
        self._log_financial('order_settlement', f'Order settled ({source})', amount, 'order', order_id, user_id=buyer_id)
        return ServiceResult.success(order)
