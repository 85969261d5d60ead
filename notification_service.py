"""
Notification Service
In-app notifications for order and payment events, optionally mirrored by e-mail.

Notifications are best-effort: a failure is logged and never propagates into
the order transition or settlement that triggered it.
"""

import logging
import math
from datetime import datetime

logger = logging.getLogger(__name__)


class NotificationService:

    def __init__(self, db, Notification, User, email_service=None):
        self.db = db
        self.Notification = Notification
        self.User = User
        self.email_service = email_service

    def send(self, user_id, notification_type, title, message, order_id=None):
        """Persist one notification and e-mail it when SendGrid is configured"""
        try:
            notification = self.Notification(
                user_id=user_id,
                notification_type=notification_type,
                title=title,
                message=message,
                order_id=order_id
            )
            self.db.session.add(notification)
            self.db.session.commit()
        except Exception as e:
            self.db.session.rollback()
            logger.error(f"Failed to create {notification_type} notification for user {user_id}: {str(e)}")
            return None

        if self.email_service is not None and self.email_service.is_configured():
            try:
                user = self.db.session.get(self.User, user_id)
                if user is not None and user.email:
                    self.email_service.send_notification_email(user.email, user.full_name, title, message)
            except Exception as e:
                logger.warning(f"Notification e-mail to user {user_id} failed: {str(e)}")

        return notification

    def order_status_changed(self, order, old_status, new_status):
        """Tell the counterparty about a status change"""
        if new_status == 'in_progress':
            if old_status == 'revision_requested':
                self.send(order.client_id, 'revision_accepted', 'Revision Accepted',
                          f'The seller is working on your revision for order #{order.id}.', order_id=order.id)
            else:
                self.send(order.client_id, 'order_accepted', 'Order Accepted',
                          f'Your order #{order.id} has been accepted and is now in progress.', order_id=order.id)
        elif new_status == 'delivered':
            self.send(order.client_id, 'order_delivered', 'Order Delivered',
                      f'Your order #{order.id} has been delivered. Review the delivery and complete payment.',
                      order_id=order.id)
        elif new_status == 'revision_requested':
            self.send(order.gig_owner_id, 'revision_requested', 'Revision Requested',
                      f'The buyer has requested a revision for order #{order.id}.', order_id=order.id)
        elif new_status == 'cancelled':
            for user_id in (order.client_id, order.gig_owner_id):
                self.send(user_id, 'order_cancelled', 'Order Cancelled',
                          f'Order #{order.id} has been cancelled.', order_id=order.id)

    def payment_settled(self, order, automatic=False):
        amount = f'{float(order.price_at_purchase):.2f}'
        if automatic:
            self.send(order.client_id, 'auto_payment_processed', 'Automatic Payment Processed',
                      f'The review period for order #{order.id} ended, so payment of {amount} was released to the seller.',
                      order_id=order.id)
        else:
            self.send(order.client_id, 'payment_processed', 'Payment Processed',
                      f'Payment of {amount} for order #{order.id} has been processed successfully.',
                      order_id=order.id)
        self.send(order.gig_owner_id, 'payment_received', 'Payment Received',
                  f'You have received {amount} for order #{order.id}.', order_id=order.id)

    def delivery_uploaded(self, order, file_count):
        self.send(order.client_id, 'delivery_uploaded', 'Delivery Files Uploaded',
                  f'{file_count} delivery file(s) have been uploaded for order #{order.id}.', order_id=order.id)

    def list_for_user(self, user_id, unread_only=False, page=1, limit=20):
        query = self.Notification.query.filter_by(user_id=user_id)
        if unread_only:
            query = query.filter_by(is_read=False)

        page = max(int(page or 1), 1)
        limit = min(max(int(limit or 20), 1), 100)
        total = query.count()
        notifications = query.order_by(self.Notification.created_at.desc(), self.Notification.id.desc()) \
            .offset((page - 1) * limit).limit(limit).all()
        unread = self.Notification.query.filter_by(user_id=user_id, is_read=False).count()

        return {
            'notifications': notifications,
            'unread_count': unread,
            'pagination': {
                'total': total,
                'page': page,
                'limit': limit,
                'pages': math.ceil(total / limit) if total else 0
            }
        }

    def mark_read(self, notification_id, user_id):
        """Mark one of the user's notifications as read; None if it is not theirs"""
        notification = self.Notification.query.filter_by(id=notification_id, user_id=user_id).first()
        if notification is None:
            return None
        if not notification.is_read:
            notification.is_read = True
            notification.read_at = datetime.utcnow()
            self.db.session.commit()
        return notification
