import identity
from conftest import auth, register


def test_register_creates_role_profile(client, db):
    data = register(client, "grower@example.com", "farmer", farm_name="Sunrise", farm_location="Maun")
    user_id = data["user"]["id"]
    assert "password_hash" not in data["user"]
    farmer = db.farmers.find_one({"user_id": user_id})
    assert farmer["farm_name"] == "Sunrise"
    assert db.consumers.count_documents({"user_id": user_id}) == 0


def test_duplicate_email_rejected(client):
    register(client, "dup@example.com", "consumer")
    res = client.post("/api/auth/register", json={
        "email": "DUP@example.com", "password": "secret123", "username": "x", "role": "consumer",
    })
    assert res.status_code == 400


def test_login_logout(client):
    register(client, "login@example.com", "consumer")
    bad = client.post("/api/auth/login", json={"email": "login@example.com", "password": "nope-nope"})
    assert bad.status_code == 401

    token = client.post("/api/auth/login", json={"email": "login@example.com", "password": "secret123"}).json()["token"]
    assert client.get("/api/auth/me", headers=auth(token)).status_code == 200
    client.post("/api/auth/logout", headers=auth(token))
    assert client.get("/api/auth/me", headers=auth(token)).status_code == 401


def test_ensure_profiles_are_idempotent(gateway):
    first = identity.ensure_consumer_profile(gateway, "user-1")
    second = identity.ensure_consumer_profile(gateway, "user-1")
    assert first == second
    assert gateway.db.consumers.count_documents({"user_id": "user-1"}) == 1

    farmer_id = identity.ensure_farmer_profile(gateway, "user-2")
    farmer = gateway.get_farmer(farmer_id)
    assert farmer.farm_name == "My Farm"
    assert farmer.farm_location == "Unknown"


def test_soft_provisioning_swallows_errors(gateway, monkeypatch):
    user = identity.User(id="u1", email="a@b.co", username="a", user_role="consumer")

    def broken(*args, **kwargs):
        raise RuntimeError("insert refused")

    monkeypatch.setattr(gateway, "insert_consumer", broken)
    assert identity.try_ensure_profile(gateway, user) is None


def test_password_hash_round_trip():
    hashed = identity.hash_password("tomato-soup")
    assert identity.verify_password("tomato-soup", hashed)
    assert not identity.verify_password("tomato-salad", hashed)
    assert not identity.verify_password("tomato-soup", "")


def test_profile_update(client, consumer):
    res = client.put("/api/profile", json={"location": "Kasane", "contact_info": "555"}, headers=auth(consumer["token"]))
    assert res.status_code == 200
    body = res.json()
    assert body["consumer"]["location"] == "Kasane"
    assert body["user"]["contact_info"] == "555"
