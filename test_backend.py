from fastapi import FastAPI
from fastapi.testclient import TestClient

from cache import ResponseCache
from conftest import bearer
from database import utcnow
from errors import NotFoundError, register_exception_handlers
from schemas import Category, Transaction, slugify


def product_payload(category_id, **overrides):
    payload = {
        "product_code": "SM-S908",
        "title": "Galaxy S22 Ultra",
        "description": "Flagship Android with stunning camera.",
        "price": 62000000,
        "category": category_id,
        "manufacturer": "Samsung",
    }
    payload.update(overrides)
    return payload


def test_root_health_and_db_check(client):
    assert client.get("/").json()["status"] == "ok"
    health = client.get("/health").json()
    assert health["status"] == "ok"
    assert health["uptime"] >= 0
    assert client.get("/test").json() == {"backend": "running", "database": "connected"}


def test_unknown_route(client):
    r = client.get("/api/nothing-here")
    assert r.status_code == 404
    assert r.json() == {"status": "fail", "message": "Can't find /api/nothing-here on this server!"}


def test_slugify():
    assert slugify("Smart Phones!") == "smart-phones"
    assert slugify("  Home   & Kitchen ") == "home-kitchen"
    assert Category.build("Laptops").slug == "laptops"
    assert Category.build("Laptops", slug="Pro Laptops").slug == "pro-laptops"


def test_formatted_amount():
    txn = Transaction(user_id="u1", amount=1250000)
    assert txn.formatted_amount == "1,250,000 Toman"


def test_category_crud(client, admin_token, user_token):
    r = client.post("/api/categories", json={"title": "Smart Phones"}, headers=bearer(user_token))
    assert r.status_code == 403

    r = client.post("/api/categories", json={"title": "Smart Phones"}, headers=bearer(admin_token))
    assert r.status_code == 201
    category = r.json()["data"]["category"]
    assert category["slug"] == "smart-phones"

    r = client.post("/api/categories", json={"title": "Smart Phones"}, headers=bearer(admin_token))
    assert r.status_code == 400
    assert r.json()["message"].startswith("Duplicate field value")

    r = client.put(f"/api/categories/{category['id']}", json={"title": "Phones"}, headers=bearer(admin_token))
    assert r.json()["data"]["category"]["slug"] == "phones"

    assert client.get(f"/api/categories/{category['id']}").json()["data"]["category"]["title"] == "Phones"
    assert client.get("/api/categories").json()["results"] == 1

    r = client.delete(f"/api/categories/{category['id']}", headers=bearer(admin_token))
    assert r.status_code == 200
    assert client.get(f"/api/categories/{category['id']}").status_code == 404


def test_product_crud(client, admin_token, category):
    category_id = str(category["_id"])
    r = client.post("/api/products", json=product_payload(category_id), headers=bearer(admin_token))
    assert r.status_code == 201, r.text
    product = r.json()["data"]["product"]
    assert product["category"] == {"id": category_id, "title": "Mobiles", "slug": "mobiles"}
    assert product["image_path"] == "/images/default-product.jpg"
    assert product["available"] is True

    r = client.put(f"/api/products/{product['id']}", json={"price": 59000000}, headers=bearer(admin_token))
    assert r.json()["data"]["product"]["price"] == 59000000

    r = client.get(f"/api/products/{product['id']}")
    assert r.json()["data"]["product"]["title"] == "Galaxy S22 Ultra"

    r = client.delete(f"/api/products/{product['id']}", headers=bearer(admin_token))
    assert r.status_code == 200
    assert client.get(f"/api/products/{product['id']}").status_code == 404
    assert client.delete(f"/api/products/{product['id']}", headers=bearer(admin_token)).status_code == 404


def test_product_validation(client, admin_token, category):
    category_id = str(category["_id"])
    r = client.post("/api/products", json=product_payload(category_id, price=-1), headers=bearer(admin_token))
    assert r.status_code == 400

    r = client.post(
        "/api/products", json=product_payload("64b7f0c2a1b2c3d4e5f60718"), headers=bearer(admin_token)
    )
    assert r.status_code == 404
    assert r.json()["message"] == "Category not found"

    client.post("/api/products", json=product_payload(category_id), headers=bearer(admin_token))
    r = client.post("/api/products", json=product_payload(category_id, title="Copy"), headers=bearer(admin_token))
    assert r.status_code == 400
    assert r.json()["message"].startswith("Duplicate field value")


def test_product_filters(client, make_product, db):
    make_product("Galaxy S22", price=50000)
    make_product("Phone Case (clear)", price=1500)
    other = db["category"].insert_one({"title": "Laptops", "slug": "laptops"}).inserted_id
    db["product"].insert_one({
        "product_code": "TP-X1", "title": "ThinkPad X1", "description": "Ultralight business laptop",
        "price": 90000, "category": str(other), "manufacturer": "Lenovo", "available": True,
        "created_at": utcnow(),
    })

    assert client.get("/api/products").json()["total"] == 3
    assert client.get("/api/products", params={"category": "mobiles"}).json()["total"] == 2
    assert client.get("/api/products", params={"category": str(other)}).json()["total"] == 1
    assert client.get("/api/products", params={"search": "thinkpad"}).json()["total"] == 1
    assert client.get("/api/products", params={"search": "(clear)"}).json()["total"] == 1
    assert client.get("/api/products", params={"search": "lenovo"}).json()["total"] == 1

    page = client.get("/api/products", params={"limit": 2, "page": 2}).json()
    assert page["results"] == 1
    assert page["limit"] == 2


def test_invalid_object_id(client):
    r = client.get("/api/products/not-an-id")
    assert r.status_code == 400
    assert r.json()["status"] == "fail"


def test_catalog_reads_are_cached(client, make_product, fake_redis, db):
    make_product("Galaxy S22")
    assert client.get("/api/products").json()["total"] == 1
    assert "api:/api/products" in fake_redis.store
    assert fake_redis.ttls["api:/api/products"] == 300

    # served from cache even though the store changed underneath
    db["product"].delete_many({})
    assert client.get("/api/products").json()["total"] == 1

    client.get("/api/categories")
    assert fake_redis.ttls["api:/api/categories"] == 3600

    client.get("/api/products", params={"search": "galaxy"})
    assert "api:/api/products?search=galaxy" in fake_redis.store


def test_catalog_writes_clear_cache(client, admin_token, category, fake_redis):
    client.get("/api/products")
    client.get("/api/categories")
    assert fake_redis.store

    r = client.post("/api/products", json=product_payload(str(category["_id"])), headers=bearer(admin_token))
    assert r.status_code == 201
    assert fake_redis.store == {}
    assert client.get("/api/products").json()["total"] == 1


def test_cache_failure_does_not_fail_request(client, make_product, fake_redis, caplog):
    make_product("Galaxy S22")
    fake_redis.fail = True
    r = client.get("/api/products")
    assert r.status_code == 200
    assert r.json()["total"] == 1
    assert "Redis cache read failed" in caplog.text


def test_cache_disabled_without_url():
    cache = ResponseCache.from_url(None)
    assert not cache.enabled
    assert cache.get("api:/x") is None
    assert cache.clear_pattern("/api/products*") == 0


def test_app_errors_render_as_json():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    def boom():
        raise NotFoundError("Thing not found")

    @app.get("/crash")
    def crash():
        raise RuntimeError("secret internals")

    client = TestClient(app, raise_server_exceptions=False)
    assert client.get("/boom").json() == {"status": "fail", "message": "Thing not found"}
    r = client.get("/crash")
    assert r.status_code == 500
    assert r.json() == {"status": "error", "message": "Something went wrong"}


def test_category_title_without_word_characters(client, admin_token, db):
    for title in ("!!!", "   "):
        r = client.post("/api/categories", json={"title": title}, headers=bearer(admin_token))
        assert r.status_code == 400, r.text
        assert r.json()["status"] == "fail"
        assert r.json()["message"].startswith("Invalid input data.")
    assert db["category"].count_documents({}) == 0


def test_category_update_with_empty_slug(client, admin_token, category):
    r = client.put(
        f"/api/categories/{category['_id']}", json={"title": "Mobiles", "slug": "???"}, headers=bearer(admin_token)
    )
    assert r.status_code == 400
    assert client.get(f"/api/categories/{category['_id']}").json()["data"]["category"]["slug"] == "mobiles"


def test_unavailable_products_not_listed(client, make_product):
    make_product("Galaxy S22")
    make_product("Old Phone", available=False)
    body = client.get("/api/products").json()
    assert body["total"] == 1
    assert [p["title"] for p in body["data"]["products"]] == ["Galaxy S22"]
