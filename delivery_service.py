"""
Delivery Service
Seller deliverables for an order: upload, listing, gated content access and removal.

Content access is where the auto-payment countdown starts: the buyer's first
fetch of a delivered order's file arms the timer.
"""

import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from order_workflow import ActorRole, OrderStatus, actor_role
from service_result import ErrorKind, ServiceResult
from storage_service import StorageError

logger = logging.getLogger(__name__)

DELIVERY_EXTENSIONS = {'jpg', 'jpeg', 'png', 'gif', 'pdf', 'doc', 'docx', 'zip', 'rar', 'txt', 'mp4', 'mov'}
UPLOADABLE_STATUSES = {OrderStatus.IN_PROGRESS.value, OrderStatus.REVISION_REQUESTED.value}


def allowed_delivery_file(filename):
    """Check if file extension is allowed for a delivery"""
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in DELIVERY_EXTENSIONS


class DeliveryService:

    def __init__(self, db, Order, DeliveryFile, storage, auto_payment, notifications,
                 max_files=10, max_file_size=50 * 1024 * 1024, url_ttl=3600):
        self.db = db
        self.Order = Order
        self.DeliveryFile = DeliveryFile
        self.storage = storage
        self.auto_payment = auto_payment
        self.notifications = notifications
        self.max_files = max_files
        self.max_file_size = max_file_size
        self.url_ttl = url_ttl

    def _load_for_party(self, order_id, user_id):
        order = self.db.session.get(self.Order, order_id)
        if order is None:
            return None, None, ServiceResult.failure(ErrorKind.NOT_FOUND, 'Order not found')
        role = actor_role(order, user_id)
        if role is None:
            logger.warning(f"User {user_id} denied access to delivery files of order {order_id}")
            return order, None, ServiceResult.failure(
                ErrorKind.UNAUTHORIZED, 'You are not the buyer or seller of this order')
        return order, role, None

    def _download_url(self, delivery_file):
        return self.storage.signed_url(delivery_file.storage_path, ttl=self.url_ttl,
                                       download_name=delivery_file.original_name)

    def upload_delivery(self, order_id, user_id, files, message=None):
        """
        Store delivery files for an order the seller is working on.

        Args:
            order_id: Order ID
            user_id: ID of the uploading user, must be the seller
            files: iterable of werkzeug FileStorage objects
            message: Optional note to the buyer stored on each file

        Returns:
            ServiceResult with the list of created DeliveryFile records
        """
        order, role, failure = self._load_for_party(order_id, user_id)
        if failure:
            return failure
        if role != ActorRole.SELLER:
            return ServiceResult.failure(ErrorKind.UNAUTHORIZED, 'Only the seller can upload delivery files')
        if order.status not in UPLOADABLE_STATUSES:
            return ServiceResult.failure(
                ErrorKind.PRECONDITION_FAILED,
                f'Delivery files can only be uploaded while the order is in progress or under revision (current: {order.status})')

        files = [f for f in (files or []) if f and f.filename]
        if not files:
            return ServiceResult.failure(ErrorKind.VALIDATION_ERROR, 'No files uploaded')
        if len(files) > self.max_files:
            return ServiceResult.failure(ErrorKind.VALIDATION_ERROR, f'Maximum {self.max_files} files allowed')

        payloads = []
        for upload in files:
            if not allowed_delivery_file(upload.filename):
                return ServiceResult.failure(
                    ErrorKind.VALIDATION_ERROR,
                    f'File "{upload.filename}" has invalid type. Allowed types: {", ".join(sorted(DELIVERY_EXTENSIONS))}')
            data = upload.read()
            if len(data) > self.max_file_size:
                return ServiceResult.failure(
                    ErrorKind.VALIDATION_ERROR,
                    f'File "{upload.filename}" exceeds the {self.max_file_size // (1024 * 1024)}MB limit')
            payloads.append((upload, data))

        note = (message or '').strip() or None
        stored = []
        try:
            for upload, data in payloads:
                locator = self.storage.put(data, upload.filename)
                stored.append(locator)
                self.db.session.add(self.DeliveryFile(
                    order_id=order.id,
                    original_name=upload.filename,
                    file_name=locator.rsplit('/', 1)[-1],
                    storage_path=locator,
                    file_size=len(data),
                    file_type=upload.mimetype or 'application/octet-stream',
                    uploaded_by=user_id,
                    message=note,
                    created_at=datetime.utcnow()
                ))
            self.db.session.commit()
        except StorageError as e:
            self.db.session.rollback()
            self._discard_blobs(stored)
            logger.error(f"Delivery upload for order {order_id} failed in storage: {str(e)}")
            return ServiceResult.failure(ErrorKind.STORAGE_FAILURE, 'Failed to store delivery file')
        except SQLAlchemyError:
            self.db.session.rollback()
            self._discard_blobs(stored)
            logger.error(f"Delivery upload for order {order_id} failed to save", exc_info=True)
            raise

        created = self.DeliveryFile.query.filter(
            self.DeliveryFile.order_id == order.id,
            self.DeliveryFile.storage_path.in_(stored)
        ).order_by(self.DeliveryFile.id.asc()).all()

        logger.info(f"{len(created)} delivery file(s) uploaded for order {order_id} by user {user_id}")
        self.notifications.delivery_uploaded(order, len(created))
        return ServiceResult.success(created)

    def _discard_blobs(self, locators):
        for locator in locators:
            try:
                self.storage.delete(locator)
            except StorageError as e:
                logger.warning(f"Could not remove orphaned blob {locator}: {str(e)}")

    def list_delivery_files(self, order_id, user_id):
        """
        File metadata for an order. The seller always gets download URLs; the
        buyer only once the order is completed. Listing never starts the timer.
        """
        order, role, failure = self._load_for_party(order_id, user_id)
        if failure:
            return failure

        files = self.DeliveryFile.query.filter_by(order_id=order.id) \
            .order_by(self.DeliveryFile.created_at.asc(), self.DeliveryFile.id.asc()).all()
        with_urls = role == ActorRole.SELLER or order.status == OrderStatus.COMPLETED.value

        entries = []
        for delivery_file in files:
            entry = delivery_file.to_dict()
            entry['download_url'] = self._download_url(delivery_file) if with_urls else None
            entries.append(entry)
        return ServiceResult.success({
            'order_id': order.id,
            'order_status': order.status,
            'files': entries
        })

    def fetch_delivery_file(self, order_id, filename, user_id, now=None):
        """
        Signed URL for one file's content.

        The buyer may fetch while the order is delivered or completed; the first
        fetch of a delivered order arms the auto-payment timer.

        Returns:
            ServiceResult with {'file', 'download_url', 'order', 'timer_started'}
        """
        order, role, failure = self._load_for_party(order_id, user_id)
        if failure:
            return failure

        delivery_file = self.DeliveryFile.query.filter(
            self.DeliveryFile.order_id == order.id,
            self.DeliveryFile.file_name == filename
        ).first()
        if delivery_file is None:
            delivery_file = self.DeliveryFile.query.filter(
                self.DeliveryFile.order_id == order.id,
                self.DeliveryFile.original_name == filename
            ).order_by(self.DeliveryFile.id.desc()).first()
        if delivery_file is None:
            return ServiceResult.failure(ErrorKind.NOT_FOUND, 'Delivery file not found')

        timer_started = False
        if role == ActorRole.BUYER:
            if order.status == OrderStatus.DELIVERED.value:
                armed = self.auto_payment.arm(order.id, now=now)
                if not armed.ok:
                    return armed
                order = armed.value['order']
                timer_started = armed.value['armed']
                if order.status not in (OrderStatus.DELIVERED.value, OrderStatus.COMPLETED.value):
                    return ServiceResult.failure(
                        ErrorKind.PRECONDITION_FAILED,
                        'Delivery files are available once the order has been delivered')
            elif order.status != OrderStatus.COMPLETED.value:
                return ServiceResult.failure(
                    ErrorKind.PRECONDITION_FAILED,
                    'Delivery files are available once the order has been delivered')

        return ServiceResult.success({
            'file': delivery_file,
            'download_url': self._download_url(delivery_file),
            'order': order,
            'timer_started': timer_started
        })

    def delete_delivery_file(self, order_id, file_id, user_id):
        order, role, failure = self._load_for_party(order_id, user_id)
        if failure:
            return failure
        if order.status == OrderStatus.COMPLETED.value:
            return ServiceResult.failure(ErrorKind.INVALID_STATE, 'Cannot delete files from a completed order')

        delivery_file = self.DeliveryFile.query.filter_by(id=file_id, order_id=order.id).first()
        if delivery_file is None:
            return ServiceResult.failure(ErrorKind.NOT_FOUND, 'Delivery file not found')

        removed = delivery_file.to_dict()
        locator = delivery_file.storage_path
        try:
            self.db.session.delete(delivery_file)
            self.db.session.commit()
        except SQLAlchemyError:
            self.db.session.rollback()
            raise

        # row is gone; a leftover blob is unreachable
        self._discard_blobs([locator])
        logger.info(f"Delivery file {file_id} of order {order_id} deleted by {role.value} {user_id}")
        return ServiceResult.success(removed)
