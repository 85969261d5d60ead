"""
Scheduled Jobs Module
Background jobs for the auto-payment escrow: a periodic sweep of expired
deadlines and deferred per-order checks registered when a timer is armed.
"""

import os
from datetime import datetime, timedelta, timezone
import logging

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def run_auto_payment_sweep(app, auto_payment_service):
    """
    Settle every delivered order whose auto-payment deadline has passed.
    Runs every few minutes; failures are logged and the next run goes ahead.

    Args:
        app: Flask application instance
        auto_payment_service: AutoPaymentService instance
    """
    with app.app_context():
        try:
            logger.info("Starting auto payment sweep...")
            stats = auto_payment_service.sweep()
            logger.info(
                f"Auto payment sweep completed: checked={stats['total_checked']} "
                f"expired={stats['expired_processed']} settled={stats['settled']} failed={stats['failed']}"
            )
            return stats
        except Exception as e:
            logger.error(f"Error in run_auto_payment_sweep: {str(e)}", exc_info=True)
            return None


def run_startup_recovery(app, auto_payment_service):
    """Catch up on deadlines that expired while the process was down and re-arm deferred checks"""
    with app.app_context():
        logger.info("Running initial auto payment check...")
        run_auto_payment_sweep(app, auto_payment_service)
        try:
            auto_payment_service.reschedule_pending_checks()
        except Exception as e:
            logger.error(f"Error re-scheduling deferred auto payment checks: {str(e)}", exc_info=True)


def run_deferred_auto_payment_check(app, auto_payment_service, order_id):
    """Deferred job fired at an order's auto-payment deadline"""
    with app.app_context():
        try:
            result = auto_payment_service.check_and_process(order_id)
            if not result.ok:
                logger.warning(f"Deferred auto payment check for order {order_id}: {result.message}")
        except Exception as e:
            logger.error(f"Error in deferred auto payment check for order {order_id}: {str(e)}", exc_info=True)


def init_scheduler(app, auto_payment_service):
    """
    Initialize APScheduler with the auto-payment jobs

    Args:
        app: Flask application instance
        auto_payment_service: AutoPaymentService instance

    Returns:
        scheduler: Configured APScheduler instance
    """
    from apscheduler.schedulers.background import BackgroundScheduler
    from apscheduler.triggers.interval import IntervalTrigger
    import atexit

    # Deadlines are stored as naive UTC
    scheduler = BackgroundScheduler(daemon=True, timezone='UTC')

    sweep_minutes = int(app.config.get('AUTO_PAYMENT_SWEEP_MINUTES', os.getenv('AUTO_PAYMENT_SWEEP_MINUTES', 5)))

    scheduler.add_job(
        func=run_auto_payment_sweep,
        args=[app, auto_payment_service],
        trigger=IntervalTrigger(minutes=sweep_minutes),
        id='auto_payment_sweep',
        name=f'Settle expired auto payments (every {sweep_minutes} min)',
        replace_existing=True,
        max_instances=1,
        coalesce=True
    )

    # Also run shortly after startup to catch any missed payments
    scheduler.add_job(
        func=run_startup_recovery,
        args=[app, auto_payment_service],
        trigger='date',
        run_date=datetime.now(timezone.utc) + timedelta(seconds=5),
        id='auto_payment_startup_recovery',
        name='Initial auto payment check',
        replace_existing=True
    )

    auto_payment_service.attach_scheduler(scheduler, app)

    # Start the scheduler
    scheduler.start()
    logger.info("Scheduler started with timezone: UTC")
    logger.info("Scheduled jobs:")
    logger.info(f"  - Auto payment sweep every {sweep_minutes} minutes")
    logger.info("  - Initial auto payment check in 5 seconds")

    # Shut down the scheduler when exiting the app
    atexit.register(lambda: scheduler.shutdown(wait=False))

    return scheduler
