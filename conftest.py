"""
Shared pytest fixtures: a throwaway SQLite database, seeded users and an active gig
"""

import io
import os
import sys
import tempfile
from decimal import Decimal

import pytest
from werkzeug.datastructures import FileStorage
from werkzeug.security import generate_password_hash

_test_dir = tempfile.mkdtemp(prefix='gigorders-tests-')
os.environ['DATABASE_URL'] = 'sqlite:///' + os.path.join(_test_dir, 'test.db')
os.environ['UPLOAD_FOLDER'] = os.path.join(_test_dir, 'uploads')
os.environ['LOG_DIR'] = os.path.join(_test_dir, 'logs')
os.environ['SECRET_KEY'] = 'test-secret-key'
os.environ['AUTO_PAYMENT_SCHEDULER_ENABLED'] = 'false'
os.environ['NOTIFICATION_EMAILS_ENABLED'] = 'false'
os.environ.pop('SESSION_SECRET', None)

# Add the project directory to the path so we can import app
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from app import app as flask_app, db, User, Gig, Order, issue_auth_token  # noqa: E402
from app import order_workflow, delivery_service  # noqa: E402

PASSWORD = 'Password123'


@pytest.fixture(autouse=True)
def app():
    flask_app.config['TESTING'] = True
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def create_user(username, balance=0):
    user = User(
        username=username,
        email=f'{username}@example.com',
        password_hash=generate_password_hash(PASSWORD),
        full_name=username.title(),
        balance=Decimal(str(balance))
    )
    db.session.add(user)
    db.session.commit()
    return user


def fresh(model, object_id):
    """Re-read a row from the database, bypassing the session cache"""
    db.session.expire_all()
    return db.session.get(model, object_id)


def make_upload(name='logo.png', data=b'delivery-bytes', content_type='image/png'):
    return FileStorage(stream=io.BytesIO(data), filename=name, content_type=content_type)


@pytest.fixture
def buyer(app):
    return create_user('buyer', balance=500)


@pytest.fixture
def seller(app):
    return create_user('seller')


@pytest.fixture
def outsider(app):
    return create_user('outsider', balance=1000)


@pytest.fixture
def gig(seller):
    gig = Gig(
        owner_id=seller.id,
        title='Logo design',
        description='A modern logo for your brand',
        price=Decimal('100.00'),
        delivery_days=3,
        response_time_hours=24,
        status='active'
    )
    db.session.add(gig)
    db.session.commit()
    return gig


@pytest.fixture
def auth_headers():
    def _headers(user):
        return {'Authorization': f'Bearer {issue_auth_token(user.id)}'}
    return _headers


@pytest.fixture
def make_order(buyer, seller, gig):
    """
    Create an order and walk it to the requested status through the services.

    Returns the order ID.
    """
    def _make(status='pending', files=1):
        order_id = order_workflow.create_order(buyer.id, gig.id, 'Design a logo for my bakery').value.id
        if status == 'pending':
            return order_id
        if status == 'cancelled':
            assert order_workflow.cancel_order(order_id, buyer.id).ok
            return order_id

        assert order_workflow.accept_order(order_id, seller.id).ok
        if status == 'in_progress' and not files:
            return order_id

        uploads = [make_upload(f'design-{i}.png') for i in range(files)]
        if uploads:
            assert delivery_service.upload_delivery(order_id, seller.id, uploads, message='First draft').ok
        if status == 'in_progress':
            return order_id

        assert order_workflow.mark_delivered(order_id, seller.id).ok
        if status == 'delivered':
            return order_id
        if status == 'revision_requested':
            assert order_workflow.request_revision(order_id, buyer.id, note='Bigger font please').ok
            return order_id
        if status == 'completed':
            assert order_workflow.pay_order(order_id, buyer.id).ok
            return order_id
        raise ValueError(f'Unsupported status {status}')
    return _make


@pytest.fixture
def order_status():
    def _status(order_id):
        return fresh(Order, order_id).status
    return _status
