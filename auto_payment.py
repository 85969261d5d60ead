"""
Auto Payment Service
Protects sellers from buyers who neither pay nor ask for a revision: the
buyer's first download of a delivered order arms a countdown, and once the
response window passes the order is settled automatically.

The persisted deadline column is the source of truth. Deferred per-order
scheduler jobs only shorten the delay before settlement; the periodic sweep
in scheduled_jobs.py picks up anything a restart dropped.
"""

import logging
from datetime import datetime, timedelta, timezone

from service_result import ErrorKind, ServiceResult

logger = logging.getLogger(__name__)


def deferred_job_id(order_id):
    return f'auto_payment_{order_id}'


class AutoPaymentService:
    """Arms, cancels and executes auto-payment countdowns for delivered orders"""

    def __init__(self, db, Order, ledger, notifications, default_response_hours=24):
        self.db = db
        self.Order = Order
        self.ledger = ledger
        self.notifications = notifications
        self.default_response_hours = default_response_hours
        self.scheduler = None
        self.app = None

    def attach_scheduler(self, scheduler, app):
        """Enable deferred per-order checks on an APScheduler instance"""
        self.scheduler = scheduler
        self.app = app

    # ------------------------------------------------------------------
    # Timer state
    # ------------------------------------------------------------------

    def arm(self, order_id, now=None):
        """
        Start the countdown on the buyer's first access to a delivered order.

        Only the first call in a delivery cycle sets the deadline; later calls
        leave it untouched.

        Returns:
            ServiceResult with {'order': order, 'armed': bool}
        """
        now = now or datetime.utcnow()
        order = self.db.session.get(self.Order, order_id)
        if order is None:
            return ServiceResult.failure(ErrorKind.NOT_FOUND, 'Order not found')

        hours = order.response_time_hours or self.default_response_hours
        deadline = now + timedelta(hours=hours)

        armed = self.db.session.query(self.Order).filter(
            self.Order.id == order_id,
            self.Order.status == 'delivered',
            self.Order.download_start_time.is_(None)
        ).update({
            self.Order.download_start_time: now,
            self.Order.auto_payment_deadline: deadline,
            self.Order.updated_at: now
        }, synchronize_session=False)

        if armed != 1:
            self.db.session.rollback()
            self.db.session.refresh(order)
            return ServiceResult.success({'order': order, 'armed': False})

        self.db.session.commit()
        self.db.session.refresh(order)
        logger.info(f"Auto-payment timer armed for order {order_id}, deadline {deadline.isoformat()}")
        self.schedule_deferred_check(order_id, deadline)
        return ServiceResult.success({'order': order, 'armed': True})

    def schedule_deferred_check(self, order_id, run_at):
        if self.scheduler is None:
            return
        from scheduled_jobs import run_deferred_auto_payment_check

        try:
            self.scheduler.add_job(
                func=run_deferred_auto_payment_check,
                trigger='date',
                run_date=run_at.replace(tzinfo=timezone.utc),
                args=[self.app, self, order_id],
                id=deferred_job_id(order_id),
                name=f'Auto payment check for order {order_id}',
                replace_existing=True,
                misfire_grace_time=None
            )
        except Exception as e:
            # the sweep still settles the order
            logger.warning(f"Could not schedule deferred auto-payment check for order {order_id}: {e}")

    def cancel_deferred_check(self, order_id):
        """Drop the in-memory job for an order that left delivered"""
        if self.scheduler is None:
            return
        from apscheduler.jobstores.base import JobLookupError

        try:
            self.scheduler.remove_job(deferred_job_id(order_id))
        except JobLookupError:
            return
        logger.info(f"Auto-payment check cancelled for order {order_id}")

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    def check_and_process(self, order_id, now=None):
        """
        Settle an order if it is still delivered and its deadline has passed.

        Re-reads the order first; anything else (paid manually, revision
        requested, deadline cleared or not reached) is a silent no-op.

        Returns:
            ServiceResult whose value is the settled order, or None when skipped
        """
        now = now or datetime.utcnow()
        self.db.session.expire_all()
        order = self.db.session.get(self.Order, order_id)
        if order is None:
            logger.warning(f"Auto-payment check: order {order_id} not found, skipping")
            return ServiceResult.failure(ErrorKind.NOT_FOUND, 'Order not found')

        if order.status != 'delivered':
            logger.info(f"Auto-payment check: order {order_id} is {order.status}, skipping")
            return ServiceResult.success(None, message='Order is no longer delivered')

        if order.auto_payment_deadline is None:
            return ServiceResult.success(None, message='No auto-payment deadline set')

        if now < order.auto_payment_deadline:
            logger.info(f"Auto-payment check: deadline for order {order_id} not reached yet")
            return ServiceResult.success(None, message='Deadline not reached')

        logger.info(f"Processing automatic payment for order {order_id}")
        settlement = self.ledger.settle_order(order_id, manual=False, now=now)
        if settlement.error == ErrorKind.SETTLEMENT_CONFLICT:
            return ServiceResult.success(None, message=settlement.message)
        if not settlement.ok:
            return settlement

        self.notifications.payment_settled(settlement.value, automatic=True)
        return settlement

    def sweep(self, now=None):
        """
        Settle every delivered order whose deadline has passed.

        Per-order failures are logged and do not stop the sweep.

        Returns:
            dict with total_checked, expired_processed, settled and failed counts
        """
        now = now or datetime.utcnow()
        pending = self.db.session.query(self.Order.id, self.Order.auto_payment_deadline).filter(
            self.Order.status == 'delivered',
            self.Order.auto_payment_deadline.isnot(None)
        ).all()
        expired = [order_id for order_id, deadline in pending if deadline <= now]

        logger.info(f"Auto-payment sweep: {len(pending)} armed orders, {len(expired)} expired")

        settled = 0
        failed = 0
        for order_id in expired:
            try:
                result = self.check_and_process(order_id, now=now)
            except Exception as e:
                self.db.session.rollback()
                failed += 1
                logger.error(f"Auto-payment sweep: order {order_id} failed: {str(e)}", exc_info=True)
                continue

            if not result.ok:
                failed += 1
                logger.warning(f"Auto-payment sweep: order {order_id} not settled: {result.message}")
            elif result.value is not None:
                settled += 1

        return {
            'total_checked': len(pending),
            'expired_processed': len(expired),
            'settled': settled,
            'failed': failed
        }

    def reschedule_pending_checks(self, now=None):
        """Re-register deferred jobs for armed orders after a restart"""
        if self.scheduler is None:
            return 0
        now = now or datetime.utcnow()
        armed = self.db.session.query(self.Order.id, self.Order.auto_payment_deadline).filter(
            self.Order.status == 'delivered',
            self.Order.auto_payment_deadline.isnot(None),
            self.Order.auto_payment_deadline > now
        ).all()
        for order_id, deadline in armed:
            self.schedule_deferred_check(order_id, deadline)
        if armed:
            logger.info(f"Re-scheduled {len(armed)} deferred auto-payment checks")
        return len(armed)
