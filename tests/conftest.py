import os

# database.py refuses to import without a URI; nothing connects during tests
os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017/settlement_test")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("BANK_DATA_ENCRYPTION_KEY", "test-bank-key")
os.environ.setdefault("PAYOUT_WORKER_ENABLED", "false")

import pytest
from mongomock_motor import AsyncMongoMockClient

from config import env
from utils import cashfree, shiprocket
from utils.errors import UpstreamUnavailable
from utils.settings_cache import invalidate_settings_cache


@pytest.fixture
def db():
    client = AsyncMongoMockClient()
    return client["settlement_test"]


@pytest.fixture(autouse=True)
def fresh_settings_cache():
    invalidate_settings_cache()
    yield
    invalidate_settings_cache()


class FakeGateway:
    def __init__(self):
        self.orders = {}
        self.refunds = []
        self.fail_refunds = False
        self.order_lookups = 0

    def get_gateway_order(self, gateway_order_id):
        self.order_lookups += 1
        if gateway_order_id not in self.orders:
            raise UpstreamUnavailable("unknown gateway order")
        return self.orders[gateway_order_id]

    def get_gateway_payments(self, gateway_order_id):
        return [{"cf_payment_id": 9001, "payment_status": "SUCCESS"}]

    def create_refund(self, **kwargs):
        if self.fail_refunds:
            raise UpstreamUnavailable("refund rejected")
        self.refunds.append(kwargs)
        return {"refund_status": "PENDING"}

    def create_gateway_order(self, **kwargs):
        self.orders[kwargs["gateway_order_id"]] = {
            "order_status": "ACTIVE",
            "order_amount": kwargs["amount"],
        }
        return {"payment_session_id": "session_123"}

    def mark_paid(self, gateway_order_id, amount):
        self.orders[gateway_order_id] = {"order_status": "PAID", "order_amount": amount}


@pytest.fixture
def gateway(monkeypatch):
    """
    Stand-in for the payment gateway: tests fill `orders` and inspect
    `refunds`.
    """
    fake = FakeGateway()
    monkeypatch.setattr(cashfree, "get_gateway_order", fake.get_gateway_order)
    monkeypatch.setattr(cashfree, "get_gateway_payments", fake.get_gateway_payments)
    monkeypatch.setattr(cashfree, "create_refund", fake.create_refund)
    monkeypatch.setattr(cashfree, "create_gateway_order", fake.create_gateway_order)
    monkeypatch.setattr(env, "CASHFREE_SECRET_KEY", "test-webhook-secret")
    return fake


class FakeCarrier:
    def __init__(self):
        self.created = []
        self.awb_code = "AWB123456"
        self.freight_charges = 72.5

    def create_carrier_order(self, **kwargs):
        self.created.append(kwargs)
        return {"order_id": 7001, "shipment_id": 8001}

    def assign_courier(self, *, carrier_shipment_id, courier_id=None):
        return {"response": {"data": {
            "awb_code": self.awb_code,
            "courier_name": "Delhivery",
            "courier_company_id": 1,
            "freight_charges": self.freight_charges,
        }}}

    def schedule_pickup(self, *, carrier_shipment_id):
        return {"pickup_status": 1}

    def generate_label(self, *, carrier_shipment_id):
        return {"label_url": "https://labels.example/8001.pdf"}


@pytest.fixture
def carrier(monkeypatch):
    fake = FakeCarrier()
    for name in ("create_carrier_order", "assign_courier", "schedule_pickup", "generate_label"):
        monkeypatch.setattr(shiprocket, name, getattr(fake, name))
    monkeypatch.setattr(env, "SHIPROCKET_WEBHOOK_SECRET", "carrier-token")
    return fake
