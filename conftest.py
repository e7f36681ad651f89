import fnmatch
import json

import httpx
import mongomock
import pytest
import redis
from fastapi.testclient import TestClient

import main
from cache import ResponseCache
from config import Settings
from database import create_document, oid
from schemas import Category, Product

AUTHORITY = "A00000000000000000000000000123456789"


class FakeRedis:
    """In-memory stand-in for the handful of redis commands the cache uses."""

    def __init__(self):
        self.store = {}
        self.ttls = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise redis.ConnectionError("redis is down")

    def get(self, key):
        self._check()
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self._check()
        self.store[key] = value
        self.ttls[key] = ttl

    def scan_iter(self, match="*"):
        self._check()
        return [k for k in list(self.store) if fnmatch.fnmatchcase(k, match)]

    def delete(self, *keys):
        self._check()
        for key in keys:
            self.store.pop(key, None)


class ZarinpalStub:
    def __init__(self):
        self.request_status = 100
        self.verify_status = 100
        self.ref_id = 12345678
        self.authority = AUTHORITY
        self.down = False
        self.calls = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.down:
            raise httpx.ConnectError("connection refused", request=request)
        body = json.loads(request.content)
        if request.url.path.endswith("PaymentRequest.json"):
            self.calls.append(("request", body))
            return httpx.Response(200, json={"Status": self.request_status, "Authority": self.authority})
        self.calls.append(("verify", body))
        return httpx.Response(200, json={"Status": self.verify_status, "RefID": self.ref_id})

    def count(self, kind):
        return len([c for c in self.calls if c[0] == kind])


class SmsStub:
    def __init__(self):
        self.fail = False
        self.calls = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.calls.append((request.url.path, body, request.headers.get("X-API-KEY")))
        if self.fail:
            return httpx.Response(400, json={"status": 0, "message": "Invalid line number"})
        if request.url.path.endswith("/credit"):
            return httpx.Response(200, json={"status": 1, "message": "ok", "data": 5000.0})
        return httpx.Response(200, json={"status": 1, "message": "ok", "data": {"packId": "p1", "messageIds": [1]}})

    def sent_to(self, path_suffix):
        return [c for c in self.calls if c[0].endswith(path_suffix)]


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        environment="test",
        jwt_secret="test-secret",
        bcrypt_rounds=4,
        zarinpal_merchant_id="merchant-123",
        smsir_api_key="sms-key",
        smsir_line_number="30001234",
    )


@pytest.fixture
def db():
    return mongomock.MongoClient(tz_aware=True)["shop_test"]


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def zarinpal():
    return ZarinpalStub()


@pytest.fixture
def sms():
    return SmsStub()


@pytest.fixture
def app(settings, db, fake_redis, zarinpal, sms):
    return main.configure(
        main.app,
        settings,
        db=db,
        cache=ResponseCache(fake_redis),
        zarinpal_http=httpx.Client(transport=httpx.MockTransport(zarinpal.handler)),
        sms_http=httpx.Client(transport=httpx.MockTransport(sms.handler)),
    )


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def register(client):
    def _register(username="alice", email="alice@shop.io", password="password123"):
        r = client.post("/api/users/register", json={"username": username, "email": email, "password": password})
        assert r.status_code == 201, r.text
        return r.json()["token"]

    return _register


@pytest.fixture
def user_token(register):
    return register()


@pytest.fixture
def admin_token(register, db):
    token = register(username="admin", email="admin@shop.io")
    db["user"].update_one({"email": "admin@shop.io"}, {"$set": {"is_admin": True}})
    return token


@pytest.fixture
def category(db):
    category_id = create_document(db, "category", Category.build("Mobiles"))
    return db["category"].find_one({"_id": oid(category_id)})


@pytest.fixture
def make_product(db, category):
    def _make(title="Galaxy S22", price=50000, code=None, available=True):
        product = Product(
            product_code=code or title.upper().replace(" ", "-"),
            title=title,
            description=f"{title} description",
            price=price,
            category=str(category["_id"]),
            manufacturer="Samsung",
            available=available,
        )
        return create_document(db, "product", product)

    return _make
