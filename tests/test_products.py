import storage
from conftest import auth, register


def test_create_product_normalizes_defaults(client, farmer):
    res = client.post("/api/products", json={
        "name": "Kale", "description": "Curly kale", "price": 8.0, "stock_level": 10,
    }, headers=auth(farmer["token"]))
    assert res.status_code == 201, res.text
    product = res.json()["product"]
    assert product["farmer_id"] == farmer["farmer_id"]
    assert product["category"] == "Uncategorized"
    assert product["unit"] == "each"
    assert product["is_organic"] is False


def test_create_product_validation_error(client, farmer):
    res = client.post("/api/products", json={"name": "", "price": 0, "stock_level": 1}, headers=auth(farmer["token"]))
    assert res.status_code == 400
    body = res.json()
    assert set(body["details"]) == {"name", "price"}


def test_first_product_provisions_farmer_profile(client, db):
    data = register(client, "newfarm@example.com", "farmer")
    db.farmers.delete_many({"user_id": data["user"]["id"]})

    res = client.post("/api/products", json={"name": "Okra", "price": 4.0, "stock_level": 3}, headers=auth(data["token"]))
    assert res.status_code == 201
    assert db.farmers.count_documents({"user_id": data["user"]["id"]}) == 1


def test_consumer_cannot_create_products(client, consumer):
    res = client.post("/api/products", json={"name": "Okra", "price": 4.0, "stock_level": 3}, headers=auth(consumer["token"]))
    assert res.status_code == 403


def test_bulk_create_all_or_nothing(client, db, farmer):
    good = {"name": "Beans", "description": "Green beans", "price": 5.0, "stock_level": 4, "category": "Vegetables", "unit": "kg"}
    bad = {"name": "Peas", "description": "", "price": 3.0, "stock_level": 2, "category": "Vegetables", "unit": ""}

    res = client.post("/api/products/bulk", json={"products": [good, bad]}, headers=auth(farmer["token"]))
    assert res.status_code == 400
    assert set(res.json()["errors"]) == {"1-description", "1-unit"}
    assert db.products.count_documents({}) == 0

    res = client.post("/api/products/bulk", json={"products": [good, {**bad, "description": "Sweet", "unit": "bag"}]}, headers=auth(farmer["token"]))
    assert res.status_code == 201
    assert [p["name"] for p in res.json()["items"]] == ["Beans", "Peas"]


def test_farmer_lists_and_deletes_own_products(client, farmer, add_product):
    keep = add_product(farmer["farmer_id"], name="Sold Out", stock_level=0)
    gone = add_product(farmer["farmer_id"], name="Carrots")

    items = client.get("/api/farmer/products", headers=auth(farmer["token"])).json()["items"]
    assert [p["name"] for p in items] == ["Carrots", "Sold Out"]

    other = register(client, "rival@example.com", "farmer")
    assert client.delete(f"/api/products/{gone}", headers=auth(other["token"])).status_code == 403

    assert client.delete(f"/api/products/{gone}", headers=auth(farmer["token"])).status_code == 200
    assert client.get(f"/api/products/{gone}").status_code == 404
    assert client.get(f"/api/products/{keep}").status_code == 200


def test_image_upload_and_public_read(client, farmer):
    png = b"\x89PNG\r\n\x1a\nfake"
    res = client.post(
        "/api/storage/product-images",
        params={"filename": "kale.png"},
        content=png,
        headers={**auth(farmer["token"]), "Content-Type": "image/png"},
    )
    assert res.status_code == 201
    url = res.json()["url"]
    assert f"/product-images/{farmer['farmer_id']}/" in url
    assert url.endswith(".png")

    path = url.split("/storage/v1/object/public/", 1)[1]
    got = client.get(f"/storage/v1/object/public/{path}")
    assert got.status_code == 200
    assert got.content == png
    assert got.headers["content-type"] == "image/png"


def test_image_upload_rejects_non_images(client, farmer):
    res = client.post(
        "/api/storage/product-images",
        content=b"hello",
        headers={**auth(farmer["token"]), "Content-Type": "text/plain"},
    )
    assert res.status_code == 400


def test_image_upload_rejects_oversized_body(client, farmer, monkeypatch):
    monkeypatch.setattr(storage, "MAX_IMAGE_BYTES", 8)
    res = client.post(
        "/api/storage/product-images",
        params={"filename": "big.png"},
        content=b"\x89PNG" + b"0" * 32,
        headers={**auth(farmer["token"]), "Content-Type": "image/png"},
    )
    assert res.status_code == 413
