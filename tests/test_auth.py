from database import USERS


def test_root_is_public(client):
    res = client.get("/")
    assert res.status_code == 200
    assert "running" in res.json()["message"]


def test_missing_authorization_header_is_rejected(client):
    res = client.get("/parcels")
    assert res.status_code == 401
    assert res.json()["detail"] == "unauthorized access"
    assert res.headers["www-authenticate"] == "Bearer"


def test_empty_bearer_token_is_rejected(client):
    res = client.get("/parcels", headers={"Authorization": "Bearer "})
    assert res.status_code == 401


def test_token_rejected_by_provider(client):
    res = client.get("/payments", headers={"Authorization": "Bearer expired"})
    assert res.status_code == 401
    assert res.json()["detail"] == "invalid token"


def test_token_without_email_claim_is_rejected(client, identity):
    identity.verify = lambda token: {"uid": "abc"}
    res = client.get("/payments", headers={"Authorization": "Bearer whatever"})
    assert res.status_code == 401


def test_valid_token_passes(client, auth_headers):
    res = client.get("/payments", headers=auth_headers("u@x.com"))
    assert res.status_code == 200
    assert res.json() == []


def test_ownership_guard_on_parcel_listing(client, auth_headers):
    res = client.get("/parcels", params={"email": "other@x.com"}, headers=auth_headers("u@x.com"))
    assert res.status_code == 403
    assert res.json()["detail"] == "forbidden access"


def test_ownership_guard_on_payment_history(client, auth_headers):
    res = client.get("/payments/user/other@x.com", headers=auth_headers("u@x.com"))
    assert res.status_code == 403


def test_role_guard_rejects_unknown_user(client, auth_headers):
    res = client.get("/pending", headers=auth_headers("ghost@x.com"))
    assert res.status_code == 403


def test_role_guard_rejects_non_admin(client, db, auth_headers):
    db[USERS].insert_one({"email": "u@x.com", "role": "user"})
    res = client.get("/riders/active", headers=auth_headers("u@x.com"))
    assert res.status_code == 403


def test_role_guard_allows_admin(client, admin_headers):
    res = client.get("/pending", headers=admin_headers)
    assert res.status_code == 200
    assert res.json() == []


def test_role_guard_requires_token_first(client):
    res = client.get("/pending")
    assert res.status_code == 401
