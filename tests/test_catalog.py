from bson import ObjectId

import main
from conftest import API


def test_root_and_unknown_route_envelope(client):
    assert client.get("/").json() == {"message": "Storefront API running"}
    resp = client.get(f"{API}/nowhere")
    assert resp.status_code == 404
    assert "message" in resp.json()


def test_product_create_requires_admin(client, user, catalog):
    body = {
        "name": "Tablet",
        "description": "Ten inch",
        "price": 300,
        "category_id": catalog["category_id"],
        "brand_id": catalog["brand_id"],
    }
    assert client.post(f"{API}/products", json=body).status_code == 401
    assert client.post(f"{API}/products", json=body, headers=user["headers"]).status_code == 403


def test_product_create_checks_references(client, admin, catalog):
    body = {
        "name": "Tablet",
        "description": "Ten inch",
        "price": 300,
        "category_id": str(ObjectId()),
        "brand_id": catalog["brand_id"],
    }
    resp = client.post(f"{API}/products", json=body, headers=admin["headers"])
    assert resp.status_code == 404
    assert resp.json()["message"] == "Category not found"


def test_negative_price_rejected(client, admin, catalog):
    body = {
        "name": "Tablet",
        "description": "Ten inch",
        "price": -1,
        "category_id": catalog["category_id"],
        "brand_id": catalog["brand_id"],
    }
    assert client.post(f"{API}/products", json=body, headers=admin["headers"]).status_code == 400


def test_get_product_populates_references(client, admin, catalog):
    product = catalog["make_product"](name="XPS", supplier_id=catalog["supplier_id"])
    resp = client.get(f"{API}/products/{product['id']}")
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["category"]["name"] == "Laptops"
    assert data["brand"]["name"] == "Dell"
    assert data["supplier"]["company"] == "Acme Ltd"
    assert data["user_id"] == admin["id"]
    assert data["rating"] == 0


def test_update_product(client, admin, catalog):
    product = catalog["make_product"](price=10)
    resp = client.put(f"{API}/products/{product['id']}", json={"price": 12.5}, headers=admin["headers"])
    assert resp.status_code == 200
    assert resp.json()["data"]["price"] == 12.5
    assert client.put(f"{API}/products/{product['id']}", json={}, headers=admin["headers"]).status_code == 400


def test_soft_delete_hides_product(client, db, admin, catalog):
    product = catalog["make_product"]()
    assert client.delete(f"{API}/products/{product['id']}", headers=admin["headers"]).status_code == 200
    assert client.get(f"{API}/products/{product['id']}").status_code == 404
    stored = db["product"].find_one({"_id": ObjectId(product["id"])})
    assert stored["is_deleted"] is True
    assert stored["deleted_at"] is not None


def test_manual_stock_correction(client, admin, catalog, stock_of):
    product = catalog["make_product"](stock=3)
    url = f"{API}/products/{product['id']}/stock"
    assert client.patch(url, json={"quantity": 4, "operation": "add"}, headers=admin["headers"]).status_code == 200
    assert stock_of(product["id"]) == 7
    assert client.patch(url, json={"quantity": 2, "operation": "subtract"}, headers=admin["headers"]).status_code == 200
    assert stock_of(product["id"]) == 5
    resp = client.patch(url, json={"quantity": 6, "operation": "subtract"}, headers=admin["headers"])
    assert resp.status_code == 400
    assert resp.json()["message"] == "Insufficient stock"
    assert stock_of(product["id"]) == 5
    assert client.patch(url, json={"quantity": 1, "operation": "multiply"}, headers=admin["headers"]).status_code == 400


def test_feature_toggle_and_featured_list(client, admin, catalog):
    product = catalog["make_product"]()
    catalog["make_product"](name="Plain")
    resp = client.patch(f"{API}/products/{product['id']}/feature", headers=admin["headers"])
    assert resp.json()["data"]["is_featured"] is True

    featured = client.get(f"{API}/products/featured").json()["data"]
    assert [p["id"] for p in featured] == [product["id"]]

    client.patch(f"{API}/products/{product['id']}/feature", headers=admin["headers"])
    assert client.get(f"{API}/products/featured").json()["data"] == []


def test_check_stock(client, catalog):
    product = catalog["make_product"](stock=2)
    ok = client.get(f"{API}/products/{product['id']}/check-stock?quantity=2").json()["data"]
    assert ok["available"] is True
    short = client.get(f"{API}/products/{product['id']}/check-stock?quantity=3").json()["data"]
    assert short["available"] is False
    assert short["message"] == "Only 2 items available"


def test_duplicate_reference_entities(client, admin, catalog):
    assert client.post(f"{API}/categories", json={"name": "Laptops"}, headers=admin["headers"]).status_code == 400
    assert client.post(f"{API}/brands", json={"name": "Dell"}, headers=admin["headers"]).status_code == 400
    supplier = {"name": "Other", "email": "SALES@acme.io", "phone": "1"}
    assert client.post(f"{API}/suppliers", json=supplier, headers=admin["headers"]).status_code == 400


def test_cart_is_created_lazily(client, user):
    resp = client.get(f"{API}/carts", headers=user["headers"])
    assert resp.status_code == 200
    assert resp.json()["data"]["items"] == []
    assert resp.json()["data"]["total_price"] == 0


def test_cart_add_merge_update_remove(client, user, catalog):
    phone = catalog["make_product"](name="Phone", price=200, stock=5)
    case = catalog["make_product"](name="Case", price=15, stock=5)
    headers = user["headers"]

    client.post(f"{API}/carts/items", json={"product_id": phone["id"], "quantity": 1}, headers=headers)
    resp = client.post(f"{API}/carts/items", json={"product_id": phone["id"], "quantity": 2}, headers=headers)
    cart = resp.json()["data"]
    assert len(cart["items"]) == 1
    assert cart["items"][0]["quantity"] == 3
    assert cart["items"][0]["product"]["name"] == "Phone"
    assert cart["total_price"] == 600

    too_many = client.post(f"{API}/carts/items", json={"product_id": phone["id"], "quantity": 3}, headers=headers)
    assert too_many.status_code == 400
    assert too_many.json()["message"] == "Only 5 items available in stock"

    client.post(f"{API}/carts/items", json={"product_id": case["id"], "quantity": 2}, headers=headers)
    resp = client.patch(f"{API}/carts/items/{phone['id']}", json={"quantity": 1}, headers=headers)
    assert resp.json()["data"]["total_price"] == 230

    resp = client.delete(f"{API}/carts/items/{phone['id']}", headers=headers)
    assert [item["product_id"] for item in resp.json()["data"]["items"]] == [case["id"]]
    assert resp.json()["data"]["total_price"] == 30

    resp = client.delete(f"{API}/carts", headers=headers)
    assert resp.json()["data"]["items"] == []


def test_cart_price_is_snapshotted(client, admin, user, catalog):
    product = catalog["make_product"](price=50)
    client.post(f"{API}/carts/items", json={"product_id": product["id"], "quantity": 1}, headers=user["headers"])
    client.put(f"{API}/products/{product['id']}", json={"price": 80}, headers=admin["headers"])
    cart = client.get(f"{API}/carts", headers=user["headers"]).json()["data"]
    assert cart["items"][0]["price"] == 50


def test_cart_rejects_inactive_and_missing_items(client, db, user, catalog):
    product = catalog["make_product"]()
    db["product"].update_one({"_id": ObjectId(product["id"])}, {"$set": {"is_active": False}})
    headers = user["headers"]
    assert client.post(f"{API}/carts/items", json={"product_id": product["id"], "quantity": 1}, headers=headers).status_code == 400
    assert client.patch(f"{API}/carts/items/{product['id']}", json={"quantity": 1}, headers=headers).status_code == 400
    other = catalog["make_product"](name="Other")
    assert client.patch(f"{API}/carts/items/{other['id']}", json={"quantity": 1}, headers=headers).status_code == 404


def test_favourites(client, user, catalog):
    product = catalog["make_product"]()
    headers = user["headers"]

    assert client.get(f"{API}/favourites", headers=headers).json()["count"] == 0
    resp = client.post(f"{API}/favourites/{product['id']}", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["products"][0]["name"] == product["name"]
    assert client.post(f"{API}/favourites/{product['id']}", headers=headers).status_code == 400
    assert client.get(f"{API}/favourites/check/{product['id']}", headers=headers).json()["data"]["is_favourite"] is True

    assert client.delete(f"{API}/favourites/{product['id']}", headers=headers).status_code == 200
    assert client.delete(f"{API}/favourites/{product['id']}", headers=headers).status_code == 404
    assert client.get(f"{API}/favourites/check/{product['id']}", headers=headers).json()["data"]["is_favourite"] is False

    client.post(f"{API}/favourites/{product['id']}", headers=headers)
    resp = client.delete(f"{API}/favourites", headers=headers)
    assert resp.json()["data"]["product_ids"] == []


def test_favourite_unknown_product(client, user):
    assert client.post(f"{API}/favourites/{ObjectId()}", headers=user["headers"]).status_code == 404


def test_check_stock_reports_inactive_product_unavailable(client, db, catalog):
    product = catalog["make_product"](stock=10)
    db["product"].update_one({"_id": ObjectId(product["id"])}, {"$set": {"is_active": False}})
    data = client.get(f"{API}/products/{product['id']}/check-stock?quantity=1").json()["data"]
    assert data["available"] is False
    assert data["message"] == "Product is not available"


def test_cart_add_from_stale_read_keeps_other_lines(client, db, user, catalog, monkeypatch):
    phone = catalog["make_product"](name="Phone", price=200, stock=5)
    case = catalog["make_product"](name="Case", price=15, stock=5)
    headers = user["headers"]
    empty_cart = client.get(f"{API}/carts", headers=headers).json()["data"]
    client.post(f"{API}/carts/items", json={"product_id": phone["id"], "quantity": 1}, headers=headers)

    # the second request read the cart before the first one wrote
    stale = db["cart"].find_one({"_id": ObjectId(empty_cart["id"])})
    stale["items"] = []
    monkeypatch.setattr(main, "get_or_create_cart", lambda user: dict(stale))
    resp = client.post(f"{API}/carts/items", json={"product_id": case["id"], "quantity": 2}, headers=headers)

    cart = resp.json()["data"]
    assert sorted(item["product_id"] for item in cart["items"]) == sorted([phone["id"], case["id"]])
    assert cart["total_price"] == 230
    monkeypatch.undo()
    assert client.get(f"{API}/carts", headers=headers).json()["data"]["total_price"] == 230
