"""Wallet balances and the atomic order settlement"""

import json
import os
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from app import app as flask_app, db, User, Order, Transaction, ledger
from conftest import fresh
from ledger import to_amount
from service_result import ErrorKind


@pytest.mark.parametrize('raw,expected', [
    ('10', Decimal('10.00')),
    (12.345, Decimal('12.35')),
    ('0.01', Decimal('0.01')),
    (0, None),
    ('-3', None),
    ('abc', None),
    (None, None),
    ('NaN', None),
])
def test_to_amount(raw, expected):
    assert to_amount(raw) == expected


def test_deposit_and_withdraw_keep_balance_in_step(buyer):
    deposit = ledger.deposit(buyer.id, '50')
    withdrawal = ledger.withdraw(buyer.id, '120.5')

    assert deposit.ok and withdrawal.ok
    assert deposit.value.balance_after == Decimal('550.00')
    assert withdrawal.value.amount == Decimal('-120.50')
    assert ledger.get_balance(buyer.id) == Decimal('429.50')


def test_withdraw_more_than_balance(buyer):
    result = ledger.withdraw(buyer.id, '500.01')

    assert result.error == ErrorKind.INSUFFICIENT_FUNDS
    assert ledger.get_balance(buyer.id) == Decimal('500.00')
    assert Transaction.query.count() == 0


def test_wallet_rejects_unknown_user_and_bad_amounts(buyer):
    assert ledger.deposit(4040, '10').error == ErrorKind.NOT_FOUND
    assert ledger.withdraw(4040, '10').error == ErrorKind.NOT_FOUND
    assert ledger.deposit(buyer.id, '-1').error == ErrorKind.VALIDATION_ERROR
    assert ledger.list_transactions(buyer.id, transaction_type='refund').error == ErrorKind.VALIDATION_ERROR


def test_settle_requires_delivered(make_order):
    order_id = make_order('in_progress')

    result = ledger.settle_order(order_id, manual=True)

    assert result.error == ErrorKind.SETTLEMENT_CONFLICT
    assert fresh(Order, order_id).status == 'in_progress'


def test_automatic_settle_requires_elapsed_deadline(make_order):
    order_id = make_order('delivered')
    now = datetime(2026, 7, 1, 8, 0)
    order = fresh(Order, order_id)
    order.download_start_time = now
    order.auto_payment_deadline = now + timedelta(hours=24)
    db.session.commit()

    early = ledger.settle_order(order_id, manual=False, now=now + timedelta(hours=2))
    unarmed_id = make_order('delivered')
    unarmed = ledger.settle_order(unarmed_id, manual=False, now=now + timedelta(days=5))

    assert early.error == ErrorKind.SETTLEMENT_CONFLICT
    assert unarmed.error == ErrorKind.SETTLEMENT_CONFLICT
    assert Transaction.query.count() == 0


def test_failed_write_leaves_order_delivered(make_order, buyer, monkeypatch):
    order_id = make_order('delivered')
    now = datetime(2026, 7, 1, 8, 0)
    order = fresh(Order, order_id)
    order.download_start_time = now
    order.auto_payment_deadline = now + timedelta(hours=24)
    db.session.commit()

    def broken_record(*args, **kwargs):
        raise OperationalError('INSERT INTO transaction', {}, Exception('disk I/O error'))

    monkeypatch.setattr(ledger, '_record', broken_record)

    with pytest.raises(OperationalError):
        ledger.settle_order(order_id, manual=False, now=now + timedelta(hours=25))

    order = fresh(Order, order_id)
    assert order.status == 'delivered'
    assert order.auto_payment_deadline == now + timedelta(hours=24)
    assert fresh(User, buyer.id).balance == Decimal('500.00')


def test_settlement_is_written_to_audit_log(make_order, buyer):
    order_id = make_order('completed')

    log_path = os.path.join(flask_app.config['LOG_DIR'], 'security.log')
    with open(log_path, encoding='utf-8') as handle:
        events = [json.loads(line)['message'] for line in handle if line.strip()]

    settlements = [e for e in events if e['event_type'] == 'order_settlement' and e['resource_id'] == str(order_id)]
    assert settlements
    assert settlements[-1]['details'] == {'amount': 100.0}
    assert settlements[-1]['user_id'] == buyer.id


def test_routine_financial_events_stay_out_of_critical_log(make_order, buyer):
    make_order('completed')
    ledger.deposit(buyer.id, '10')

    log_path = os.path.join(flask_app.config['LOG_DIR'], 'security_critical.log')
    with open(log_path, encoding='utf-8') as handle:
        events = [json.loads(line)['message'] for line in handle if line.strip()]

    assert not [e for e in events if e['event_category'] == 'financial']
