import uuid

import pytest

from helpdesk.core.config import settings
from helpdesk.core.errors import StorageUnavailable
from helpdesk.services import user_service

from tests.conftest import CHROME_UA, PASSWORD


async def _login(client, email, password=PASSWORD):
    return await client.post(
        "/api/auth/login",
        json={"email": email, "password": password},
        headers={"User-Agent": CHROME_UA},
    )


async def _token(client, email) -> dict:
    resp = await _login(client, email)
    assert resp.status_code == 200, resp.text
    body = resp.json()
    return {"Authorization": f"Bearer {body['access_token']}", "_session_id": body["session_id"]}


def _auth(headers: dict) -> dict:
    return {k: v for k, v in headers.items() if not k.startswith("_")}


# ── Login / identity ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_login_and_me(client, users):
    resp = await _login(client, "alice@example.com")

    assert resp.status_code == 200
    body = resp.json()
    assert body["token_type"] == "bearer"
    assert body["user_id"] == str(users.alice.id)
    assert body["roles"] == ["AGENT"]

    me = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {body['access_token']}"})
    assert me.status_code == 200
    assert me.json()["email"] == "alice@example.com"
    assert me.json()["session_id"] == body["session_id"]
    assert "session.read" in me.json()["permissions"]


@pytest.mark.asyncio
async def test_unknown_user_and_wrong_password_answer_the_same(client, users):
    unknown = await _login(client, "nobody@example.com", "whatever")
    wrong = await _login(client, "alice@example.com", "whatever")

    assert unknown.status_code == wrong.status_code == 401
    assert unknown.json() == wrong.json() == {
        "detail": "Invalid email or password",
        "code": "INVALID_CREDENTIALS",
    }


@pytest.mark.asyncio
async def test_overlong_password_is_rejected_as_invalid(client, users):
    resp = await _login(client, "alice@example.com", "x" * 100)

    assert resp.status_code == 401
    assert resp.json()["code"] == "INVALID_CREDENTIALS"


@pytest.mark.asyncio
async def test_repeated_failures_answer_423_with_retry_after(client, users):
    for _ in range(5):
        assert (await _login(client, "alice@example.com", "nope")).status_code == 401

    resp = await _login(client, "alice@example.com")

    assert resp.status_code == 423
    assert resp.headers["Retry-After"] == str(settings.LOCKOUT_ACCOUNT_DURATION_SECONDS)
    assert resp.json()["code"] == "LOCKED_OUT"
    assert resp.json()["remaining_seconds"] == settings.LOCKOUT_ACCOUNT_DURATION_SECONDS


@pytest.mark.asyncio
async def test_missing_or_garbage_token_is_401(client, users):
    assert (await client.get("/api/auth/me")).status_code == 401
    resp = await client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401
    assert resp.headers["WWW-Authenticate"] == "Bearer"


@pytest.mark.asyncio
async def test_storage_outage_is_503(client, users, monkeypatch):
    async def down(*args, **kwargs):
        raise StorageUnavailable()

    monkeypatch.setattr(user_service, "get_user_by_email", down)

    resp = await _login(client, "alice@example.com")

    assert resp.status_code == 503
    assert resp.json()["code"] == "STORAGE_UNAVAILABLE"


# ── Logout / expiry ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_logout_kills_the_token(client, users):
    headers = _auth(await _token(client, "bob@example.com"))

    assert (await client.delete("/api/auth/logout", headers=headers)).status_code == 200

    resp = await client.get("/api/auth/me", headers=headers)
    assert resp.status_code == 401
    assert resp.json()["detail"] == "Session expired"


@pytest.mark.asyncio
async def test_idle_session_is_rejected(client, users, clock):
    headers = _auth(await _token(client, "bob@example.com"))

    clock.advance(settings.SESSION_IDLE_TIMEOUT_SECONDS - 100)
    assert (await client.get("/api/auth/me", headers=headers)).status_code == 200
    clock.advance(settings.SESSION_IDLE_TIMEOUT_SECONDS - 100)
    assert (await client.get("/api/auth/me", headers=headers)).status_code == 200
    clock.advance(settings.SESSION_IDLE_TIMEOUT_SECONDS + 1)
    assert (await client.get("/api/auth/me", headers=headers)).status_code == 401


@pytest.mark.asyncio
async def test_timeout_probe_does_not_extend_the_session(client, users, clock, monkeypatch):
    monkeypatch.setattr(settings, "SESSION_TIMEOUT_WARNING_SECONDS", 300)
    headers = _auth(await _token(client, "bob@example.com"))

    clock.advance(settings.SESSION_IDLE_TIMEOUT_SECONDS - 200)
    probe = await client.get("/api/auth/session/timeout", headers=headers)
    assert probe.json() == {"expired": False, "warning": True, "remaining_seconds": 200}

    clock.advance(201)
    probe = await client.get("/api/auth/session/timeout", headers=headers)
    assert probe.json()["expired"] is True
    assert (await client.get("/api/auth/me", headers=headers)).status_code == 401


@pytest.mark.asyncio
async def test_timeout_probe_without_token(client, users):
    resp = await client.get("/api/auth/session/timeout")

    assert resp.status_code == 200
    assert resp.json() == {"expired": True, "warning": False, "remaining_seconds": 0}


@pytest.mark.asyncio
async def test_request_from_new_address_is_flagged(make_client, users):
    office = await make_client("10.0.0.1")
    cafe = await make_client("192.0.2.80")
    headers = _auth(await _token(office, "alice@example.com"))

    same = await office.get("/api/auth/me", headers=headers)
    moved = await cafe.get("/api/auth/me", headers=headers)

    assert "X-Session-Suspicious" not in same.headers
    assert moved.status_code == 200
    assert moved.headers["X-Session-Suspicious"] == "true"
    assert moved.headers["X-Session-Suspicious-Reason"] == "ip-changed"
    assert moved.json()["suspicious_activity"] is True


# ── Self-service sessions ────────────────────────────────────────────

@pytest.mark.asyncio
async def test_list_and_terminate_own_sessions(client, users):
    laptop = await _token(client, "alice@example.com")
    phone = await _token(client, "alice@example.com")

    listed = await client.get("/api/sessions", headers=_auth(laptop))
    assert listed.status_code == 200
    by_id = {s["id"]: s for s in listed.json()}
    assert set(by_id) == {laptop["_session_id"], phone["_session_id"]}
    assert by_id[laptop["_session_id"]]["current"] is True
    assert by_id[phone["_session_id"]]["current"] is False
    assert by_id[laptop["_session_id"]]["status"] == "active"

    resp = await client.delete(f"/api/sessions/{phone['_session_id']}", headers=_auth(laptop))
    assert resp.status_code == 200
    assert (await client.get("/api/auth/me", headers=_auth(phone))).status_code == 401
    assert (await client.get("/api/auth/me", headers=_auth(laptop))).status_code == 200


@pytest.mark.asyncio
async def test_cannot_terminate_current_session_by_id(client, users):
    me = await _token(client, "alice@example.com")

    resp = await client.delete(f"/api/sessions/{me['_session_id']}", headers=_auth(me))

    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_other_users_sessions_look_missing(client, users):
    alice = await _token(client, "alice@example.com")
    bob = await _token(client, "bob@example.com")

    resp = await client.delete(f"/api/sessions/{bob['_session_id']}", headers=_auth(alice))
    missing = await client.delete(f"/api/sessions/{uuid.uuid4()}", headers=_auth(alice))

    assert resp.status_code == missing.status_code == 404
    assert (await client.get("/api/auth/me", headers=_auth(bob))).status_code == 200


@pytest.mark.asyncio
async def test_sign_out_everywhere_else(client, users):
    keep = await _token(client, "bob@example.com")
    await _token(client, "bob@example.com")
    await _token(client, "bob@example.com")

    resp = await client.delete("/api/sessions", headers=_auth(keep))

    assert resp.status_code == 200
    assert resp.json()["count"] == 2
    listed = await client.get("/api/sessions", headers=_auth(keep))
    assert [s["id"] for s in listed.json()] == [keep["_session_id"]]


@pytest.mark.asyncio
async def test_session_history(client, users):
    ended = await _token(client, "bob@example.com")
    await client.delete("/api/auth/logout", headers=_auth(ended))
    current = await _token(client, "bob@example.com")

    everything = await client.get("/api/sessions/history", headers=_auth(current))
    terminated = await client.get(
        "/api/sessions/history", params={"status": "terminated"}, headers=_auth(current),
    )

    assert everything.json()["total"] == 2
    assert [s["id"] for s in terminated.json()["items"]] == [ended["_session_id"]]
    assert terminated.json()["items"][0]["terminated_reason"] == "USER_LOGOUT"
    bad = await client.get("/api/sessions/history", params={"status": "bogus"}, headers=_auth(current))
    assert bad.status_code == 422


# ── Admin ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_admin_routes_need_permissions(client, users):
    bob = _auth(await _token(client, "bob@example.com"))

    assert (await client.get("/api/admin/lockouts/account", headers=bob)).status_code == 403
    assert (await client.post(f"/api/admin/users/{users.alice.id}/disable", headers=bob)).status_code == 403


@pytest.mark.asyncio
async def test_admin_lists_and_unlocks_accounts(make_client, users):
    attacker = await make_client("203.0.113.5")
    admin_client = await make_client("10.0.0.9")
    for _ in range(5):
        await _login(attacker, "alice@example.com", "nope")
    admin = _auth(await _token(admin_client, "admin@example.com"))

    listed = await admin_client.get("/api/admin/lockouts/account", headers=admin)
    stats = await admin_client.get("/api/admin/lockouts/ACCOUNT/stats", headers=admin)

    assert listed.status_code == 200
    item = listed.json()["items"][0]
    assert item["subject_key"] == str(users.alice.id)
    assert item["email"] == "alice@example.com"
    assert item["locked"] is True
    assert item["last_failed_context"] == "203.0.113.5"
    assert stats.json()["locked"] == 1

    unlocked = await admin_client.post(f"/api/admin/lockouts/account/{users.alice.id}/unlock", headers=admin)
    assert unlocked.status_code == 200
    again = await admin_client.post(f"/api/admin/lockouts/account/{users.alice.id}/unlock", headers=admin)
    assert again.status_code == 409
    assert (await _login(attacker, "alice@example.com")).status_code == 200


@pytest.mark.asyncio
async def test_admin_unlocks_ip_and_clears_all(make_client, users, monkeypatch):
    monkeypatch.setattr(settings, "LOCKOUT_IP_MAX_ATTEMPTS", 2)
    attacker = await make_client("203.0.113.6")
    admin_client = await make_client("10.0.0.9")
    admin = _auth(await _token(admin_client, "admin@example.com"))
    for email in ("a@example.com", "b@example.com"):
        await _login(attacker, email, "nope")
    assert (await _login(attacker, "bob@example.com")).status_code == 423

    listed = await admin_client.get("/api/admin/lockouts/ip", headers=admin)
    assert [i["subject_key"] for i in listed.json()["items"]] == ["203.0.113.6"]
    resp = await admin_client.post("/api/admin/lockouts/ip/203.0.113.6/unlock", headers=admin)
    assert resp.status_code == 200
    assert (await _login(attacker, "bob@example.com")).status_code == 200

    cleared = await admin_client.post("/api/admin/lockouts/ip/clear-all", headers=admin)
    assert cleared.status_code == 200
    assert cleared.json()["count"] >= 1
    assert (await admin_client.get("/api/admin/lockouts/nonsense", headers=admin)).status_code == 404


@pytest.mark.asyncio
async def test_admin_force_logout_and_disable(client, users):
    admin = _auth(await _token(client, "admin@example.com"))
    bob = await _token(client, "bob@example.com")
    alice = await _token(client, "alice@example.com")

    resp = await client.delete(f"/api/admin/sessions/{bob['_session_id']}", headers=admin)
    assert resp.status_code == 200
    assert (await client.get("/api/auth/me", headers=_auth(bob))).status_code == 401

    forced = await client.delete(f"/api/admin/users/{users.alice.id}/sessions", headers=admin)
    assert forced.json()["count"] == 1
    assert (await client.get("/api/auth/me", headers=_auth(alice))).status_code == 401

    bob = await _token(client, "bob@example.com")
    disabled = await client.post(f"/api/admin/users/{users.bob.id}/disable", headers=admin)
    assert disabled.status_code == 200
    assert disabled.json()["status"] == "DISABLED"
    assert (await client.get("/api/auth/me", headers=_auth(bob))).status_code == 401
    assert (await _login(client, "bob@example.com")).status_code == 401


@pytest.mark.asyncio
async def test_admin_cannot_disable_self_or_ghosts(client, users):
    admin = _auth(await _token(client, "admin@example.com"))

    assert (await client.post(f"/api/admin/users/{users.admin.id}/disable", headers=admin)).status_code == 400
    assert (await client.post(f"/api/admin/users/{uuid.uuid4()}/disable", headers=admin)).status_code == 404
    assert (await client.delete(f"/api/admin/sessions/{uuid.uuid4()}", headers=admin)).status_code == 404


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")

    assert resp.status_code == 200
