import hashlib
import hmac

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import main
from config import Settings, get_settings
from database import create_document, ensure_indexes, get_db
from gateways import Charge, RazorpayGateway
from routers.payments import get_gateway
from security import create_access_token, hash_password

KEY_SECRET = "rzp_key_secret_test"
WEBHOOK_SECRET = "rzp_webhook_secret_test"
PASSWORD = "secret123"


class FakeGateway(RazorpayGateway):
    """Razorpay signing and event parsing with canned charges instead of API calls."""

    def __init__(self):
        super().__init__("rzp_test_key", KEY_SECRET, WEBHOOK_SECRET)
        self.charges = {}
        self.created = []
        self.next_status = "created"
        self.fail = False

    def create_charge(self, amount_minor, currency, method_token=None, metadata=None):
        if self.fail:
            raise RuntimeError("gateway unavailable")
        charge_id = f"order_test{len(self.created) + 1:04d}"
        self.created.append({"amount": amount_minor, "currency": currency, "metadata": metadata})
        self.charges[charge_id] = self.next_status
        return Charge(id=charge_id, status=self.next_status)

    def retrieve_charge(self, charge_id):
        return self.charges[charge_id]


def sign(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


@pytest.fixture
def settings():
    return Settings(
        mongo_transactions=False,
        jwt_secret="test-jwt-secret",
        payment_gateway="razorpay",
        payment_currency="inr",
        razorpay_key_id="rzp_test_key",
        razorpay_key_secret=KEY_SECRET,
        razorpay_webhook_secret=WEBHOOK_SECRET,
    )


@pytest.fixture
def db():
    database = mongomock.MongoClient()["booking_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(db, settings, gateway):
    main.app.dependency_overrides[get_db] = lambda: db
    main.app.dependency_overrides[get_settings] = lambda: settings
    main.app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make_user(role="user", email=None, verified=True, active=True, name=None):
        counter["n"] += 1
        email = email or f"{role}{counter['n']}@example.com"
        user_id = create_document(db, "user", {
            "name": name or f"{role.title()} {counter['n']}",
            "email": email,
            "phone": "9876543210",
            "hashed_password": hash_password(PASSWORD),
            "role": role,
            "is_active": active,
            "is_verified": verified,
            "verification_token": None,
            "reset_token": None,
        })
        return db["user"].find_one({"_id": ObjectId(user_id)})

    return _make_user


@pytest.fixture
def headers_for(settings):
    def _headers_for(user):
        token = create_access_token({"sub": str(user["_id"]), "role": user.get("role", "user")}, settings)
        return {"Authorization": f"Bearer {token}"}

    return _headers_for


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def admin(make_user):
    return make_user(role="admin")


@pytest.fixture
def user_headers(user, headers_for):
    return headers_for(user)


@pytest.fixture
def admin_headers(admin, headers_for):
    return headers_for(admin)
