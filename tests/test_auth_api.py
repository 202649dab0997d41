def test_login_and_me(client, seeded):
    resp = client.post("/auth/login", json={"identifier": "paula.manager", "password": "Secret123!"})
    assert resp.status_code == 200
    tokens = resp.json()
    assert tokens["token_type"] == "bearer"

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {tokens['access_token']}"})
    assert me.status_code == 200
    assert me.json()["roles"] == ["PROJECT_MANAGER"]
    assert me.json()["email"] == "paula@example.com"


def test_login_by_email(client, seeded):
    resp = client.post("/auth/login", json={"identifier": "fred@example.com", "password": "Secret123!"})
    assert resp.status_code == 200


def test_bad_credentials(client, seeded):
    resp = client.post("/auth/login", json={"identifier": "paula.manager", "password": "wrong"})
    assert resp.status_code == 401


def test_refresh_token(client, seeded):
    tokens = client.post("/auth/login", json={"identifier": "ada.admin", "password": "Secret123!"}).json()

    refreshed = client.post("/auth/refresh", params={"token": tokens["refresh_token"]})
    assert refreshed.status_code == 200

    not_refresh = client.post("/auth/refresh", params={"token": tokens["access_token"]})
    assert not_refresh.status_code == 400


def test_invalid_token_is_rejected(client, seeded):
    resp = client.get("/auth/me", headers={"Authorization": "Bearer nonsense"})
    assert resp.status_code == 401


def test_healthz_and_request_id(client):
    resp = client.get("/healthz", headers={"X-Request-ID": "abc-123"})
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
    assert resp.headers["X-Request-ID"] == "abc-123"
