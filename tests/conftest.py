# tests/conftest.py
from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
from flask_login import FlaskLoginClient

from wavebooks import create_app
from wavebooks.extensions import db as _db
from wavebooks.models import Client, Invoice, InvoiceStatus, InvoiceType, Project, Provider, User
from wavebooks.services.errors import GatewayError
from wavebooks.services.invoicing import ServiceInput, create_quote
from wavebooks.services.wave_client import CheckoutSession, ExternalTransaction, GatewayPayout, TransactionPage
from wavebooks.settings import Config
from wavebooks.utils.clock import utcnow_naive


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = "test-secret"
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    RATELIMIT_ENABLED = False
    RATELIMIT_STORAGE_URI = "memory://"
    WAVE_API_KEY = None
    WAVE_WEBHOOK_SECRET = "whsec_test"
    PUBLIC_BASE_URL = "https://books.example"


class FakeGateway:
    """In-memory stand-in for WaveGateway that records every call."""

    def __init__(self):
        self.calls = []
        self.failures = {}
        self.checkout_session = None
        self.payout_status = "processing"
        self.payout_error = None
        self.transactions = []
        self._payouts = 0

    def _call(self, _method, **kwargs):
        self.calls.append((_method, kwargs))
        if _method in self.failures:
            raise self.failures[_method]

    @property
    def call_names(self):
        return [name for name, _ in self.calls]

    def get_balance(self):
        self._call("get_balance")
        return {"amount": "250000", "currency": "XOF"}

    def list_transactions(self, date, after=None, first=50):
        self._call("list_transactions", date=date, after=after, first=first)
        return TransactionPage(items=list(self.transactions), has_next_page=False, end_cursor=None)

    def find_checkout_session(self, transaction_id, client_reference=None):
        self._call("find_checkout_session", transaction_id=transaction_id, client_reference=client_reference)
        return self.checkout_session

    def refund_checkout_session(self, session_id):
        self._call("refund_checkout_session", session_id=session_id)
        return {"id": "rf-1", "transaction_id": "T_REFUND_1", "fee": "0"}

    def send_payout(self, **kwargs):
        self._call("send_payout", **kwargs)
        self._payouts += 1
        return GatewayPayout(
            id=f"pt-{self._payouts}",
            status=self.payout_status,
            amount=Decimal(str(kwargs["amount"])),
            fee=Decimal("100"),
            currency=kwargs["currency"],
            mobile=kwargs["mobile"],
            transaction_id=f"T_PAYOUT_{self._payouts}",
            error_code=self.payout_error,
        )

    def get_payout(self, payout_id):
        self._call("get_payout", payout_id=payout_id)
        return GatewayPayout(
            id=payout_id, status=self.payout_status, amount=Decimal("0"), fee=Decimal("0"), currency="XOF"
        )

    def reverse_payout(self, payout_id):
        self._call("reverse_payout", payout_id=payout_id)
        return {"id": payout_id, "status": "reversed"}

    def cancel_pending_payout(self, payout_id):
        self._call("cancel_pending_payout", payout_id=payout_id)
        return {"id": payout_id, "status": "cancelled"}

    def create_checkout_session(self, **kwargs):
        self._call("create_checkout_session", **kwargs)
        return CheckoutSession(id="cos-1", launch_url="https://pay.wave.com/c/cos-1")

    def fail(self, method, code, status_code=400):
        self.failures[method] = GatewayError(code, f"{code} from stub", status_code=status_code)


@pytest.fixture
def app():
    app = create_app(TestConfig)
    app.test_client_class = FlaskLoginClient
    with app.app_context():
        _db.create_all()
        yield app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def file_app(tmp_path):
    """App on a database file, so each app context gets its own connection."""

    class FileConfig(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'wavebooks.db'}"

    app = create_app(FileConfig)
    with app.app_context():
        _db.create_all()
        yield app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def user(app):
    u = User(name="Awa Koné", email="awa@example.com")
    _db.session.add(u)
    _db.session.commit()
    return u


@pytest.fixture
def other_user(app):
    u = User(name="Other", email="other@example.com")
    _db.session.add(u)
    _db.session.commit()
    return u


@pytest.fixture
def project(user):
    client = Client(user_id=user.id, name="Acme SARL", email="billing@acme.ci", phone="+225 05 11 22 33 44",
                    address="Plateau, Abidjan")
    proj = Project(user_id=user.id, name="Site vitrine", client=client)
    _db.session.add_all([client, proj])
    _db.session.commit()
    return proj


@pytest.fixture
def make_quote(user, project):
    def _make(services=None):
        services = services or [
            {"name": "A", "unit_price": "1000", "quantity": "10"},
            {"name": "B", "unit_price": "2000", "quantity": "5"},
        ]
        return create_quote(
            user.id,
            project_id=project.id,
            services=[ServiceInput.from_dict(s) for s in services],
        )

    return _make


@pytest.fixture
def make_tx():
    counter = {"n": 0}

    def _make(amount="10000", age=timedelta(hours=1), **kwargs):
        counter["n"] += 1
        data = {
            "transaction_id": kwargs.pop("transaction_id", f"T_{counter['n']:04d}"),
            "amount": amount,
            "fee": "0",
            "currency": "XOF",
            "timestamp": utcnow_naive() - age,
        }
        data.update(kwargs)
        return ExternalTransaction.from_payload(data)

    return _make


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def invoice(user, project):
    inv = Invoice(
        user_id=user.id,
        invoice_number="INV-2026-050",
        type=InvoiceType.INVOICE,
        status=InvoiceStatus.PENDING,
        amount=Decimal("10000"),
        project_id=project.id,
    )
    _db.session.add(inv)
    _db.session.commit()
    return inv


@pytest.fixture
def look_alikes(user):
    """Client X and provider Y share the same number with different prefixes."""
    x = Client(user_id=user.id, name="X", phone="+225070000000")
    y = Provider(user_id=user.id, name="Y", phone="070000000")
    _db.session.add_all([x, y])
    _db.session.commit()
    return x, y
