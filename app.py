from flask import Flask, request, jsonify, session, send_file, g
from flask_cors import CORS
from flask_sqlalchemy import SQLAlchemy
from werkzeug.security import generate_password_hash, check_password_hash
from datetime import datetime
from functools import wraps
from email_validator import validate_email, EmailNotValidError
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired
from dotenv import load_dotenv
from sqlalchemy import text
import os
import re
import secrets

from service_result import ErrorKind, ServiceResult
from storage_service import LocalBlobStore
from email_service import email_service
from notification_service import NotificationService
from ledger import LedgerService, to_amount
from auto_payment import AutoPaymentService
from order_workflow import OrderWorkflowService
from delivery_service import DeliveryService
from security_logger import init_security_logger

load_dotenv()

app = Flask(__name__)

# Set secret key with fallback
app.secret_key = os.environ.get("SESSION_SECRET") or os.environ.get("SECRET_KEY")
if not app.secret_key:
    # In production, always set SESSION_SECRET or SECRET_KEY environment variable
    app.secret_key = secrets.token_hex(32)
    print("WARNING: Using auto-generated SECRET_KEY. Set SESSION_SECRET or SECRET_KEY environment variable in production!")

app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('DATABASE_URL', 'sqlite:///gigorders.db')
if app.config['SQLALCHEMY_DATABASE_URI'].startswith('postgres://'):
    app.config['SQLALCHEMY_DATABASE_URI'] = app.config['SQLALCHEMY_DATABASE_URI'].replace('postgres://', 'postgresql+psycopg2://', 1)
elif app.config['SQLALCHEMY_DATABASE_URI'].startswith('postgresql://'):
    app.config['SQLALCHEMY_DATABASE_URI'] = app.config['SQLALCHEMY_DATABASE_URI'].replace('postgresql://', 'postgresql+psycopg2://', 1)
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

# Secure session configuration
app.config['SESSION_COOKIE_SECURE'] = os.environ.get('FLASK_ENV') == 'production'
app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'

# Order, delivery and auto-payment settings
app.config['MAX_DELIVERY_FILE_SIZE'] = int(os.environ.get('MAX_DELIVERY_FILE_SIZE', 50 * 1024 * 1024))
app.config['MAX_DELIVERY_FILES'] = int(os.environ.get('MAX_DELIVERY_FILES', 10))
app.config['SIGNED_URL_TTL_SECONDS'] = int(os.environ.get('SIGNED_URL_TTL_SECONDS', 3600))
app.config['AUTH_TOKEN_MAX_AGE'] = int(os.environ.get('AUTH_TOKEN_MAX_AGE', 86400))
app.config['DEFAULT_RESPONSE_TIME_HOURS'] = int(os.environ.get('DEFAULT_RESPONSE_TIME_HOURS', 24))
app.config['AUTO_PAYMENT_SWEEP_MINUTES'] = int(os.environ.get('AUTO_PAYMENT_SWEEP_MINUTES', 5))
app.config['AUTO_PAYMENT_SCHEDULER_ENABLED'] = os.environ.get('AUTO_PAYMENT_SCHEDULER_ENABLED', 'true').lower() == 'true'
app.config['LOG_DIR'] = os.environ.get('LOG_DIR') or os.path.join(os.path.dirname(os.path.abspath(__file__)), 'logs')

db = SQLAlchemy(app)

# Secure CORS configuration - restrict to specific origins in production
allowed_origins = os.environ.get('ALLOWED_ORIGINS', '*').split(',')
CORS(app,
     origins=allowed_origins,
     supports_credentials=True,
     max_age=3600)

# File upload configuration
UPLOAD_FOLDER = os.environ.get('UPLOAD_FOLDER') or os.path.join(os.path.dirname(os.path.abspath(__file__)), 'uploads')
os.makedirs(UPLOAD_FOLDER, exist_ok=True)

app.config['UPLOAD_FOLDER'] = UPLOAD_FOLDER
# One request may carry the full batch of delivery files
app.config['MAX_CONTENT_LENGTH'] = app.config['MAX_DELIVERY_FILE_SIZE'] * app.config['MAX_DELIVERY_FILES'] + 1024 * 1024

auth_serializer = URLSafeTimedSerializer(app.secret_key, salt='api-auth-token')


def validate_password_strength(password):
    """Validate password meets security requirements"""
    if len(password) < 8:
        return False, "Password must be at least 8 characters long"
    if not re.search(r'[A-Z]', password):
        return False, "Password must contain at least one uppercase letter"
    if not re.search(r'[a-z]', password):
        return False, "Password must contain at least one lowercase letter"
    if not re.search(r'\d', password):
        return False, "Password must contain at least one number"
    return True, "Password is valid"


def validate_username(username):
    """Validate username format"""
    if not username or len(username) < 3 or len(username) > 30:
        return False, "Username must be between 3 and 30 characters"
    if not re.match(r'^[a-zA-Z0-9_]+$', username):
        return False, "Username can only contain letters, numbers, and underscores"
    return True, "Username is valid"


def sanitize_input(text_value, max_length=1000):
    """Trim text input and cap its length"""
    if not text_value:
        return text_value
    text_value = text_value.strip()
    if len(text_value) > max_length:
        text_value = text_value[:max_length]
    return text_value


# ----------------------------------------------------------------------
# Identity
# ----------------------------------------------------------------------

def issue_auth_token(user_id):
    return auth_serializer.dumps({'user_id': user_id})


def get_authenticated_user_id():
    """User ID from a bearer token, falling back to the session cookie"""
    auth_header = request.headers.get('Authorization', '')
    if auth_header.startswith('Bearer '):
        token = auth_header[len('Bearer '):].strip()
        try:
            payload = auth_serializer.loads(token, max_age=app.config['AUTH_TOKEN_MAX_AGE'])
        except SignatureExpired:
            return None
        except BadSignature:
            return None
        return payload.get('user_id')
    return session.get('user_id')


def login_required(f):
    """Decorator to require user authentication for API routes"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user_id = get_authenticated_user_id()
        if user_id is None or db.session.get(User, user_id) is None:
            return jsonify({
                'status': 'error',
                'error': 'UNAUTHENTICATED',
                'message': 'Unauthorized - Please login'
            }), 401
        g.user_id = user_id
        return f(*args, **kwargs)
    return decorated_function


# ----------------------------------------------------------------------
# Models
# ----------------------------------------------------------------------

class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    full_name = db.Column(db.String(120))
    balance = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    is_admin = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'email': self.email,
            'full_name': self.full_name,
            'balance': float(self.balance or 0),
            'created_at': self.created_at.isoformat() if self.created_at else None
        }


class Gig(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    price = db.Column(db.Numeric(12, 2), nullable=False)
    delivery_days = db.Column(db.Integer, default=3)
    response_time_hours = db.Column(db.Integer, default=24)  # auto-payment window once the buyer opens a delivery
    status = db.Column(db.String(20), default='active')  # active, paused, deleted
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'owner_id': self.owner_id,
            'title': self.title,
            'description': self.description,
            'price': float(self.price),
            'delivery_days': self.delivery_days,
            'response_time_hours': self.response_time_hours,
            'status': self.status,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }


class Order(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    gig_id = db.Column(db.Integer, db.ForeignKey('gig.id'), nullable=False)
    gig_owner_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    price_at_purchase = db.Column(db.Numeric(12, 2), nullable=False)
    requirement = db.Column(db.Text, nullable=False)
    # pending, in_progress, delivered, completed, cancelled, revision_requested
    status = db.Column(db.String(30), nullable=False, default='pending', index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = db.Column(db.DateTime)
    delivery_deadline = db.Column(db.DateTime)
    # Auto-payment countdown, set on the buyer's first download of a delivery
    download_start_time = db.Column(db.DateTime)
    auto_payment_deadline = db.Column(db.DateTime, index=True)
    response_time_hours = db.Column(db.Integer, default=24)
    revision_note = db.Column(db.Text)
    payment_processed_manually = db.Column(db.Boolean)

    gig = db.relationship('Gig', lazy='joined')

    def to_dict(self):
        return {
            'id': self.id,
            'client_id': self.client_id,
            'gig_id': self.gig_id,
            'gig_owner_id': self.gig_owner_id,
            'gig_title': self.gig.title if self.gig else None,
            'price_at_purchase': float(self.price_at_purchase),
            'requirement': self.requirement,
            'status': self.status,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'delivery_deadline': self.delivery_deadline.isoformat() if self.delivery_deadline else None,
            'download_start_time': self.download_start_time.isoformat() if self.download_start_time else None,
            'auto_payment_deadline': self.auto_payment_deadline.isoformat() if self.auto_payment_deadline else None,
            'response_time_hours': self.response_time_hours,
            'revision_note': self.revision_note,
            'payment_processed_manually': self.payment_processed_manually
        }


class DeliveryFile(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('order.id', ondelete='CASCADE'), nullable=False, index=True)
    original_name = db.Column(db.String(255), nullable=False)
    file_name = db.Column(db.String(255), nullable=False)
    storage_path = db.Column(db.String(500), nullable=False)
    file_size = db.Column(db.Integer)
    file_type = db.Column(db.String(100))
    uploaded_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    message = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'order_id': self.order_id,
            'original_name': self.original_name,
            'file_name': self.file_name,
            'file_size': self.file_size,
            'file_type': self.file_type,
            'uploaded_by': self.uploaded_by,
            'message': self.message,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }


class Transaction(db.Model):
    __table_args__ = (
        db.UniqueConstraint('order_id', 'user_id', 'type', name='unique_settlement_entry'),
    )
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey('order.id', ondelete='SET NULL'))
    amount = db.Column(db.Numeric(12, 2), nullable=False)  # signed: negative leaves the wallet
    type = db.Column(db.String(30), nullable=False)  # deposit, withdraw, payment, received_payment
    description = db.Column(db.String(255))
    balance_after = db.Column(db.Numeric(12, 2))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'order_id': self.order_id,
            'amount': float(self.amount),
            'type': self.type,
            'description': self.description,
            'balance_after': float(self.balance_after) if self.balance_after is not None else None,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }


class Notification(db.Model):
    """Model for user notifications"""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    notification_type = db.Column(db.String(50), nullable=False)  # new_order, order_delivered, payment_received...
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text)
    order_id = db.Column(db.Integer)
    is_read = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    read_at = db.Column(db.DateTime)

    def to_dict(self):
        return {
            'id': self.id,
            'notification_type': self.notification_type,
            'title': self.title,
            'message': self.message,
            'order_id': self.order_id,
            'is_read': self.is_read,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }


# ----------------------------------------------------------------------
# Services
# ----------------------------------------------------------------------

security_logger = init_security_logger(app)

storage = LocalBlobStore(
    UPLOAD_FOLDER,
    app.secret_key,
    url_prefix='/api/files',
    default_ttl=app.config['SIGNED_URL_TTL_SECONDS']
)
notification_service = NotificationService(db, Notification, User, email_service)
ledger = LedgerService(db, User, Order, Transaction, audit=security_logger)
auto_payment = AutoPaymentService(
    db, Order, ledger, notification_service,
    default_response_hours=app.config['DEFAULT_RESPONSE_TIME_HOURS']
)
order_workflow = OrderWorkflowService(
    db, User, Gig, Order, DeliveryFile, ledger, auto_payment, notification_service
)
delivery_service = DeliveryService(
    db, Order, DeliveryFile, storage, auto_payment, notification_service,
    max_files=app.config['MAX_DELIVERY_FILES'],
    max_file_size=app.config['MAX_DELIVERY_FILE_SIZE'],
    url_ttl=app.config['SIGNED_URL_TTL_SECONDS']
)


def service_response(result: ServiceResult, serialize=None, resource=None, status_code=200):
    """
    Turn a ServiceResult into the API's JSON envelope.

    Args:
        result: ServiceResult returned by a service
        serialize: Callable applied to result.value on success
        resource: (resource_type, resource_id, action) recorded when access is blocked
        status_code: HTTP status for success
    """
    if result.ok:
        body = {'status': 'success', 'data': serialize(result.value) if serialize else result.value}
        if result.message:
            body['message'] = result.message
        return jsonify(body), status_code

    if result.error == ErrorKind.UNAUTHORIZED and resource:
        resource_type, resource_id, action = resource
        security_logger.log_authorization(resource_type, resource_id, action, 'blocked',
                                          message=result.message, user_id=g.get('user_id'))
    return jsonify(result.to_dict()), result.http_status


def server_error(action, e):
    db.session.rollback()
    app.logger.error(f"{action} error: {str(e)}")
    return jsonify({'status': 'error', 'error': 'INTERNAL_ERROR', 'message': f'Failed to {action.lower()}'}), 500


def serialize_order(order):
    return order.to_dict()


def serialize_page(key):
    def serialize(value):
        value = dict(value)
        value[key] = [item.to_dict() for item in value[key]]
        return value
    return serialize


def validation_error(message):
    return jsonify({'status': 'error', 'error': ErrorKind.VALIDATION_ERROR.value, 'message': message}), 400


# ----------------------------------------------------------------------
# Auth
# ----------------------------------------------------------------------

@app.route('/api/register', methods=['POST'])
def register():
    try:
        data = request.get_json(silent=True)

        if not data or not data.get('email') or not data.get('username') or not data.get('password'):
            return validation_error('Missing required fields')

        try:
            email_info = validate_email(data['email'], check_deliverability=False)
            email = email_info.normalized
        except EmailNotValidError as e:
            return validation_error(f'Invalid email: {str(e)}')

        is_valid, message = validate_username(data['username'])
        if not is_valid:
            return validation_error(message)

        is_valid, message = validate_password_strength(data['password'])
        if not is_valid:
            return validation_error(message)

        if User.query.filter_by(email=email).first():
            return validation_error('Email already registered')
        if User.query.filter_by(username=data['username']).first():
            return validation_error('Username already taken')

        new_user = User(
            username=data['username'],
            email=email,
            password_hash=generate_password_hash(data['password']),
            full_name=sanitize_input(data.get('full_name', ''), max_length=120)
        )
        db.session.add(new_user)
        db.session.commit()

        session['user_id'] = new_user.id
        return jsonify({
            'status': 'success',
            'data': {'user': new_user.to_dict(), 'token': issue_auth_token(new_user.id)}
        }), 201
    except Exception as e:
        return server_error('Registration', e)


@app.route('/api/auth/token', methods=['POST'])
def create_auth_token():
    try:
        data = request.get_json(silent=True)
        if not data or not data.get('password') or not (data.get('email') or data.get('username')):
            return validation_error('Missing credentials')

        if data.get('email'):
            user = User.query.filter_by(email=data['email'].strip().lower()).first()
        else:
            user = User.query.filter_by(username=data['username']).first()

        if user and check_password_hash(user.password_hash, data['password']):
            security_logger.log_authentication('token_issued', 'success', user_id=user.id)
            return jsonify({
                'status': 'success',
                'data': {
                    'token': issue_auth_token(user.id),
                    'expires_in': app.config['AUTH_TOKEN_MAX_AGE'],
                    'user': user.to_dict()
                }
            }), 200

        # Generic error message to prevent user enumeration
        security_logger.log_authentication('token_denied', 'failure', message='Invalid credentials')
        return jsonify({'status': 'error', 'error': 'UNAUTHENTICATED', 'message': 'Invalid credentials'}), 401
    except Exception as e:
        return server_error('Token issue', e)


# ----------------------------------------------------------------------
# Gigs
# ----------------------------------------------------------------------

@app.route('/api/gigs', methods=['POST'])
@login_required
def create_gig():
    try:
        data = request.get_json(silent=True) or {}
        title = sanitize_input(data.get('title', ''), max_length=200)
        if not title:
            return validation_error('Title is required')
        price = to_amount(data.get('price'))
        if price is None:
            return validation_error('Price must be a positive number')

        try:
            delivery_days = int(data.get('delivery_days', 3))
            response_time_hours = int(data.get('response_time_hours', app.config['DEFAULT_RESPONSE_TIME_HOURS']))
        except (TypeError, ValueError):
            return validation_error('delivery_days and response_time_hours must be integers')
        if delivery_days < 1 or response_time_hours < 1:
            return validation_error('delivery_days and response_time_hours must be positive')

        gig = Gig(
            owner_id=g.user_id,
            title=title,
            description=sanitize_input(data.get('description', ''), max_length=5000),
            price=price,
            delivery_days=delivery_days,
            response_time_hours=response_time_hours,
            status='active'
        )
        db.session.add(gig)
        db.session.commit()
        return jsonify({'status': 'success', 'data': gig.to_dict()}), 201
    except Exception as e:
        return server_error('Create gig', e)


@app.route('/api/gigs/<int:gig_id>', methods=['GET'])
def get_gig(gig_id):
    gig = db.session.get(Gig, gig_id)
    if gig is None or gig.status == 'deleted':
        return jsonify({'status': 'error', 'error': ErrorKind.NOT_FOUND.value, 'message': 'Gig not found'}), 404
    return jsonify({'status': 'success', 'data': gig.to_dict()})


# ----------------------------------------------------------------------
# Orders
# ----------------------------------------------------------------------

@app.route('/api/orders', methods=['POST'])
@login_required
def create_order():
    try:
        data = request.get_json(silent=True) or {}
        try:
            gig_id = int(data.get('gig_id'))
        except (TypeError, ValueError):
            return validation_error('gig_id is required')

        price = None
        if data.get('price_at_purchase') is not None:
            price = to_amount(data['price_at_purchase'])
            if price is None:
                return validation_error('price_at_purchase must be a positive number')

        result = order_workflow.create_order(g.user_id, gig_id, data.get('requirement'), price_at_purchase=price)
        return service_response(result, serialize_order, status_code=201)
    except Exception as e:
        return server_error('Create order', e)


@app.route('/api/orders', methods=['GET'])
@login_required
def list_orders():
    try:
        result = order_workflow.list_orders(
            g.user_id,
            role=request.args.get('role', 'buyer'),
            status=request.args.get('status'),
            page=request.args.get('page', 1, type=int),
            limit=request.args.get('limit', 10, type=int)
        )
        return service_response(result, serialize_page('orders'))
    except Exception as e:
        return server_error('Fetch orders', e)


@app.route('/api/orders/statistics', methods=['GET'])
@login_required
def order_statistics():
    try:
        result = order_workflow.get_statistics(g.user_id, role=request.args.get('role', 'buyer'))
        return service_response(result)
    except Exception as e:
        return server_error('Fetch order statistics', e)


@app.route('/api/orders/<int:order_id>', methods=['GET'])
@login_required
def get_order(order_id):
    try:
        result = order_workflow.get_order(order_id, g.user_id)
        return service_response(result, serialize_order, resource=('order', order_id, 'View order'))
    except Exception as e:
        return server_error('Fetch order', e)


@app.route('/api/orders/<int:order_id>', methods=['DELETE'])
@login_required
def delete_order(order_id):
    try:
        result = order_workflow.delete_order(order_id, g.user_id)
        return service_response(result, resource=('order', order_id, 'Delete order'))
    except Exception as e:
        return server_error('Delete order', e)


@app.route('/api/orders/<int:order_id>/status', methods=['PATCH'])
@login_required
def update_order_status(order_id):
    try:
        data = request.get_json(silent=True) or {}
        if not data.get('status'):
            return jsonify({'status': 'error', 'error': ErrorKind.INVALID_STATUS.value,
                            'message': 'Status is required'}), 400
        result = order_workflow.change_status(order_id, g.user_id, data['status'], note=data.get('note'))
        return service_response(result, serialize_order, resource=('order', order_id, f"Change status to {data['status']}"))
    except Exception as e:
        return server_error('Update order status', e)


@app.route('/api/orders/<int:order_id>/accept', methods=['POST'])
@login_required
def accept_order(order_id):
    try:
        result = order_workflow.accept_order(order_id, g.user_id)
        return service_response(result, serialize_order, resource=('order', order_id, 'Accept order'))
    except Exception as e:
        return server_error('Accept order', e)


@app.route('/api/orders/<int:order_id>/cancel', methods=['POST'])
@login_required
def cancel_order(order_id):
    try:
        result = order_workflow.cancel_order(order_id, g.user_id)
        return service_response(result, serialize_order, resource=('order', order_id, 'Cancel order'))
    except Exception as e:
        return server_error('Cancel order', e)


@app.route('/api/orders/<int:order_id>/mark-delivered', methods=['POST'])
@login_required
def mark_delivered(order_id):
    try:
        result = order_workflow.mark_delivered(order_id, g.user_id)
        return service_response(result, serialize_order, resource=('order', order_id, 'Mark order delivered'))
    except Exception as e:
        return server_error('Mark delivered', e)


@app.route('/api/orders/<int:order_id>/request-revision', methods=['POST'])
@login_required
def request_revision(order_id):
    try:
        data = request.get_json(silent=True) or {}
        result = order_workflow.request_revision(order_id, g.user_id, note=data.get('note') or data.get('message'))
        return service_response(result, serialize_order, resource=('order', order_id, 'Request revision'))
    except Exception as e:
        return server_error('Request revision', e)


@app.route('/api/orders/<int:order_id>/handle-revision', methods=['POST'])
@login_required
def handle_revision(order_id):
    try:
        data = request.get_json(silent=True) or {}
        result = order_workflow.handle_revision(order_id, g.user_id, data.get('action'), note=data.get('note'))
        return service_response(result, serialize_order, resource=('order', order_id, 'Handle revision'))
    except Exception as e:
        return server_error('Handle revision', e)


@app.route('/api/orders/<int:order_id>/pay', methods=['POST'])
@login_required
def pay_order(order_id):
    try:
        result = order_workflow.pay_order(order_id, g.user_id)
        return service_response(result, serialize_order, resource=('order', order_id, 'Pay order'))
    except Exception as e:
        return server_error('Process payment', e)


@app.route('/api/orders/<int:order_id>/workflow', methods=['GET'])
@login_required
def order_workflow_status(order_id):
    try:
        result = order_workflow.get_workflow(order_id, g.user_id)
        return service_response(result, resource=('order', order_id, 'View order workflow'))
    except Exception as e:
        return server_error('Fetch order workflow', e)


# ----------------------------------------------------------------------
# Delivery files
# ----------------------------------------------------------------------

@app.route('/api/orders/<int:order_id>/upload-delivery', methods=['POST'])
@login_required
def upload_delivery(order_id):
    try:
        files = request.files.getlist('files') or request.files.getlist('file')
        result = delivery_service.upload_delivery(order_id, g.user_id, files, message=request.form.get('message'))
        return service_response(
            result,
            lambda created: {'files': [f.to_dict() for f in created], 'count': len(created)},
            resource=('order', order_id, 'Upload delivery files'),
            status_code=201
        )
    except Exception as e:
        return server_error('Upload delivery', e)


@app.route('/api/orders/<int:order_id>/delivery-files', methods=['GET'])
@login_required
def list_delivery_files(order_id):
    try:
        result = delivery_service.list_delivery_files(order_id, g.user_id)
        return service_response(result, resource=('order', order_id, 'List delivery files'))
    except Exception as e:
        return server_error('Fetch delivery files', e)


@app.route('/api/orders/<int:order_id>/delivery/<path:filename>', methods=['GET'])
@login_required
def fetch_delivery_file(order_id, filename):
    try:
        result = delivery_service.fetch_delivery_file(order_id, filename, g.user_id)
        return service_response(
            result,
            lambda value: {
                'file': value['file'].to_dict(),
                'download_url': value['download_url'],
                'order': value['order'].to_dict(),
                'timer_started': value['timer_started']
            },
            resource=('delivery_file', f'{order_id}/{filename}', 'Fetch delivery file')
        )
    except Exception as e:
        return server_error('Fetch delivery file', e)


@app.route('/api/orders/<int:order_id>/delivery-files/<int:file_id>', methods=['DELETE'])
@login_required
def delete_delivery_file(order_id, file_id):
    try:
        result = delivery_service.delete_delivery_file(order_id, file_id, g.user_id)
        return service_response(result, resource=('delivery_file', file_id, 'Delete delivery file'))
    except Exception as e:
        return server_error('Delete delivery file', e)


@app.route('/api/files/<token>', methods=['GET'])
def download_signed_file(token):
    resolved = storage.resolve(token)
    if resolved is None:
        return jsonify({'status': 'error', 'error': ErrorKind.NOT_FOUND.value,
                        'message': 'Download link is invalid or has expired'}), 404
    path, download_name = resolved
    return send_file(path, as_attachment=True, download_name=download_name or os.path.basename(path))


# ----------------------------------------------------------------------
# Wallet
# ----------------------------------------------------------------------

@app.route('/api/transactions', methods=['GET'])
@login_required
def list_transactions():
    try:
        result = ledger.list_transactions(
            g.user_id,
            page=request.args.get('page', 1, type=int),
            limit=request.args.get('limit', 20, type=int),
            transaction_type=request.args.get('type')
        )
        return service_response(result, serialize_page('transactions'))
    except Exception as e:
        return server_error('Fetch transactions', e)


@app.route('/api/transactions/deposit', methods=['POST'])
@login_required
def deposit():
    try:
        data = request.get_json(silent=True) or {}
        result = ledger.deposit(g.user_id, data.get('amount'), description=data.get('description'))
        return service_response(result, lambda entry: entry.to_dict(), status_code=201)
    except Exception as e:
        return server_error('Deposit', e)


@app.route('/api/transactions/withdraw', methods=['POST'])
@login_required
def withdraw():
    try:
        data = request.get_json(silent=True) or {}
        result = ledger.withdraw(g.user_id, data.get('amount'), description=data.get('description'))
        return service_response(result, lambda entry: entry.to_dict(), status_code=201)
    except Exception as e:
        return server_error('Withdraw', e)


# ----------------------------------------------------------------------
# Notifications
# ----------------------------------------------------------------------

@app.route('/api/notifications')
@login_required
def get_notifications():
    """Get user notifications"""
    unread_only = request.args.get('unread_only', 'false').lower() == 'true'
    page = notification_service.list_for_user(
        g.user_id,
        unread_only=unread_only,
        page=request.args.get('page', 1, type=int),
        limit=request.args.get('limit', 20, type=int)
    )
    page['notifications'] = [n.to_dict() for n in page['notifications']]
    return jsonify({'status': 'success', 'data': page})


@app.route('/api/notifications/<int:notification_id>/read', methods=['POST'])
@login_required
def mark_notification_read(notification_id):
    notification = notification_service.mark_read(notification_id, g.user_id)
    if notification is None:
        return jsonify({'status': 'error', 'error': ErrorKind.NOT_FOUND.value,
                        'message': 'Notification not found'}), 404
    return jsonify({'status': 'success', 'data': notification.to_dict()})


@app.route('/health')
def health():
    try:
        db.session.execute(text('SELECT 1'))
        database = 'ok'
    except Exception as e:
        app.logger.error(f"Health check database error: {str(e)}")
        database = 'unavailable'
    scheduler = getattr(auto_payment, 'scheduler', None)
    return jsonify({
        'status': 'healthy' if database == 'ok' else 'degraded',
        'database': database,
        'scheduler_running': bool(scheduler and scheduler.running)
    }), 200 if database == 'ok' else 503


@app.errorhandler(413)
def request_entity_too_large(e):
    return jsonify({'status': 'error', 'error': ErrorKind.VALIDATION_ERROR.value,
                    'message': 'Upload exceeds the maximum request size'}), 413


def init_database():
    """Create tables if they don't exist"""
    try:
        db.create_all()
    except Exception as e:
        app.logger.error(f"Database initialization error: {str(e)}")
        raise


with app.app_context():
    init_database()

if app.config['AUTO_PAYMENT_SCHEDULER_ENABLED'] and not app.config.get('TESTING'):
    from scheduled_jobs import init_scheduler
    scheduler = init_scheduler(app, auto_payment)

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=os.environ.get('FLASK_DEBUG', 'False') == 'True')
