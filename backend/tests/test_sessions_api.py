from cojam.core.deps import get_policy
from cojam.main import app
from cojam.services.membership import MembershipPolicy


def _create(client, headers, **payload):
    payload.setdefault("title", "Sunday blues")
    r = client.post("/sessions", json=payload, headers=headers)
    assert r.status_code == 201, r.text
    return r.json()["session"]


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_auth_required(client):
    r = client.post("/sessions", json={"title": "x"})
    assert r.status_code == 401
    assert r.json()["code"] == "NOT_AUTHENTICATED"
    assert r.headers["WWW-Authenticate"] == "Bearer"

    r = client.get("/me", headers={"Authorization": "Bearer garbage"})
    assert r.status_code == 401
    assert r.json()["code"] == "INVALID_TOKEN"


def test_token_for_deleted_user_is_not_found(client, db, make_user, auth_headers):
    user = make_user()
    headers = auth_headers(user)
    db.delete(user)
    db.commit()

    r = client.get("/me", headers=headers)
    assert r.status_code == 404
    assert r.json()["code"] == "USER_NOT_FOUND"


def test_cookie_auth(client, make_user, auth_headers):
    user = make_user(name="Mika")
    token = auth_headers(user)["Authorization"].split(" ", 1)[1]
    r = client.get("/me", headers={"Cookie": f"access_token={token}"})
    assert r.status_code == 200
    assert r.json()["name"] == "Mika"


def test_create_and_me_pointer(client, make_user, auth_headers):
    host = make_user()
    s = _create(client, auth_headers(host), max_participants=3, is_paid=True, price=5.5)

    assert s["status"] == "scheduled"
    assert s["max_participants"] == 3
    assert s["price"] == 5.5
    assert s["join_token"]

    me = client.get("/me", headers=auth_headers(host)).json()
    assert me["active_session_id"] == s["id"]
    assert me["active_session_role"] == "host"


def test_create_validation_errors(client, make_user, auth_headers):
    host = make_user()
    r = client.post("/sessions", json={"title": "x", "max_participants": 11}, headers=auth_headers(host))
    assert r.status_code == 400
    assert r.json()["code"] == "VALIDATION_ERROR"

    r = client.post("/sessions", json={"title": ""}, headers=auth_headers(host))
    assert r.status_code == 400


def test_create_twice_conflicts(client, make_user, auth_headers):
    host = make_user()
    s = _create(client, auth_headers(host))

    r = client.post("/sessions", json={"title": "again"}, headers=auth_headers(host))
    assert r.status_code == 409
    body = r.json()
    assert body["code"] == "ALREADY_IN_SESSION"
    assert body["active_session_id"] == s["id"]


def test_session_detail_user_access(client, make_user, auth_headers):
    host, viewer = make_user(), make_user()
    s = _create(client, auth_headers(host))

    anon = client.get(f"/sessions/{s['id']}").json()
    assert anon["user_access"]["is_host"] is False
    assert anon["user_access"]["can_apply"] is False
    assert "join_token" not in anon
    assert "participants" not in anon

    as_host = client.get(f"/sessions/{s['id']}", headers=auth_headers(host)).json()
    assert as_host["user_access"]["is_host"] is True
    assert as_host["user_access"]["user_role"] == "host"
    assert as_host["join_token"] == s["join_token"]
    assert [p["id"] for p in as_host["participants"]] == [host.id]

    as_viewer = client.get(f"/sessions/{s['id']}", headers=auth_headers(viewer)).json()
    access = as_viewer["user_access"]
    assert access["is_participant"] is False
    assert access["can_apply"] is True
    assert access["can_join"] is False  # not live yet
    assert access["application_status"] is None


def test_session_detail_missing(client):
    r = client.get("/sessions/12345")
    assert r.status_code == 404
    assert r.json()["code"] == "SESSION_NOT_FOUND"


def test_join_leave_flow(client, make_user, auth_headers):
    host, viewer = make_user(), make_user()
    s = _create(client, auth_headers(host))
    client.post(f"/sessions/{s['id']}/start", headers=auth_headers(host))

    r = client.post(f"/sessions/{s['id']}/join", json={"role": "viewer"}, headers=auth_headers(viewer))
    assert r.json() == {"session_id": s["id"], "role": "viewer", "already_joined": False}

    r = client.post(f"/sessions/{s['id']}/join", json={"role": "viewer"}, headers=auth_headers(viewer))
    assert r.json()["already_joined"] is True

    detail = client.get(f"/sessions/{s['id']}", headers=auth_headers(viewer)).json()
    assert detail["user_access"]["user_role"] == "viewer"
    assert detail["user_access"]["can_join"] is True
    assert detail["current_participants"] == 1

    r = client.post(f"/sessions/{s['id']}/leave", headers=auth_headers(viewer))
    assert r.json() == {"ok": True, "session_id": s["id"], "session_ended": False}
    assert client.get("/me", headers=auth_headers(viewer)).json()["active_session_id"] is None

    r = client.post(f"/sessions/{s['id']}/leave", headers=auth_headers(viewer))
    assert r.status_code == 400
    assert r.json()["code"] == "NOT_IN_SESSION"


def test_join_rejects_host_role_in_body(client, make_user, auth_headers):
    host, user = make_user(), make_user()
    s = _create(client, auth_headers(host))
    r = client.post(f"/sessions/{s['id']}/join", json={"role": "host"}, headers=auth_headers(user))
    assert r.status_code == 400
    assert r.json()["code"] == "VALIDATION_ERROR"


def test_join_another_session_conflicts(client, make_user, auth_headers):
    h1, h2, user = make_user(), make_user(), make_user()
    s = _create(client, auth_headers(h1))
    t = _create(client, auth_headers(h2))
    client.post(f"/sessions/{s['id']}/join", json={"role": "viewer"}, headers=auth_headers(user))

    r = client.post(f"/sessions/{t['id']}/join", json={"role": "viewer"}, headers=auth_headers(user))
    assert r.status_code == 409
    assert r.json()["code"] == "ALREADY_IN_ANOTHER_SESSION"
    assert r.json()["active_session_id"] == s["id"]


def test_host_leave_policy(client, make_user, auth_headers):
    host = make_user()
    s = _create(client, auth_headers(host))

    r = client.post(f"/sessions/{s['id']}/leave", headers=auth_headers(host))
    assert r.status_code == 400
    assert r.json()["code"] == "HOST_CANNOT_LEAVE"

    app.dependency_overrides[get_policy] = lambda: MembershipPolicy(host_leave_ends_session=True)
    r = client.post(f"/sessions/{s['id']}/leave", headers=auth_headers(host))
    assert r.status_code == 200
    assert r.json()["session_ended"] is True
    assert client.get(f"/sessions/{s['id']}").json()["status"] == "ended"


def test_start_and_end(client, make_user, auth_headers):
    host, other = make_user(), make_user()
    s = _create(client, auth_headers(host))

    r = client.post(f"/sessions/{s['id']}/start", headers=auth_headers(other))
    assert r.status_code == 403
    assert r.json()["code"] == "NOT_HOST"

    r = client.post(f"/sessions/{s['id']}/start", headers=auth_headers(host))
    assert r.json()["status"] == "live"
    assert r.json()["changed"] is True
    assert r.json()["started_at"]

    r = client.post(f"/sessions/{s['id']}/start", headers=auth_headers(host))
    assert r.status_code == 200
    assert r.json()["changed"] is False

    r = client.post(f"/sessions/{s['id']}/end", headers=auth_headers(host))
    assert r.json()["status"] == "ended"
    assert client.get("/me", headers=auth_headers(host)).json()["active_session_id"] is None

    r = client.post(f"/sessions/{s['id']}/start", headers=auth_headers(host))
    assert r.status_code == 400
    assert r.json()["code"] == "SESSION_ENDED"

    r = client.post(f"/sessions/{s['id']}/join", json={"role": "viewer"}, headers=auth_headers(other))
    assert r.status_code == 409
    assert r.json()["code"] == "SESSION_ENDED"


def test_application_flow(client, make_user, auth_headers):
    host, user = make_user(), make_user()
    s = _create(client, auth_headers(host), max_participants=2)

    r = client.post(f"/sessions/{s['id']}/apply", headers=auth_headers(user))
    assert r.status_code == 201
    application = r.json()["application"]
    assert application["status"] == "pending"

    r = client.get(f"/sessions/{s['id']}/applications", headers=auth_headers(user))
    assert r.status_code == 403

    pending = client.get(f"/sessions/{s['id']}/applications", headers=auth_headers(host)).json()
    assert [a["user_id"] for a in pending["applications"]] == [user.id]

    detail = client.get(f"/sessions/{s['id']}", headers=auth_headers(user)).json()
    assert detail["user_access"]["application_status"] == "pending"
    assert detail["user_access"]["can_apply"] is False

    r = client.post(
        f"/sessions/{s['id']}/applications/{application['id']}/respond",
        json={"action": "approve"},
        headers=auth_headers(host),
    )
    assert r.status_code == 200
    assert r.json()["application"]["status"] == "approved"

    me = client.get("/me", headers=auth_headers(user)).json()
    assert me["active_session_role"] == "performer"

    r = client.post(
        f"/sessions/{s['id']}/applications/{application['id']}/respond",
        json={"action": "approve"},
        headers=auth_headers(host),
    )
    assert r.status_code == 400
    assert r.json()["code"] == "APPLICATION_ALREADY_RESPONDED"

    third = make_user()
    r = client.post(f"/sessions/{s['id']}/apply", headers=auth_headers(third))
    assert r.status_code == 409
    assert r.json()["code"] == "ROOM_FULL_FOR_PERFORMERS"


def test_respond_with_unknown_action(client, make_user, auth_headers):
    host, user = make_user(), make_user()
    s = _create(client, auth_headers(host))
    application = client.post(f"/sessions/{s['id']}/apply", headers=auth_headers(user)).json()["application"]

    r = client.post(
        f"/sessions/{s['id']}/applications/{application['id']}/respond",
        json={"action": "maybe"},
        headers=auth_headers(host),
    )
    assert r.status_code == 400
    assert r.json()["code"] == "VALIDATION_ERROR"


def test_auto_reject_reports_application_status(client, make_user, auth_headers):
    h1, h2, user = make_user(), make_user(), make_user()
    s = _create(client, auth_headers(h1))
    t = _create(client, auth_headers(h2))
    application = client.post(f"/sessions/{s['id']}/apply", headers=auth_headers(user)).json()["application"]
    client.post(f"/sessions/{t['id']}/join", json={"role": "viewer"}, headers=auth_headers(user))

    r = client.post(
        f"/sessions/{s['id']}/applications/{application['id']}/respond",
        json={"action": "approve"},
        headers=auth_headers(h1),
    )
    assert r.status_code == 409
    assert r.json()["code"] == "ALREADY_IN_ANOTHER_SESSION"
    assert r.json()["application_status"] == "rejected"

    pending = client.get(f"/sessions/{s['id']}/applications", headers=auth_headers(h1)).json()
    assert pending["applications"] == []


def test_cancel_application_endpoint(client, make_user, auth_headers):
    host, user = make_user(), make_user()
    s = _create(client, auth_headers(host))
    client.post(f"/sessions/{s['id']}/apply", headers=auth_headers(user))

    r = client.post(f"/sessions/{s['id']}/applications/cancel", headers=auth_headers(user))
    assert r.status_code == 200
    assert r.json()["application"]["status"] == "canceled"

    r = client.post(f"/sessions/{s['id']}/apply", headers=auth_headers(user))
    assert r.status_code == 201


def test_listing_and_filters(client, make_user, auth_headers):
    h1, h2, h3 = make_user(), make_user(), make_user()
    a = _create(client, auth_headers(h1), title="Morning jazz")
    b = _create(client, auth_headers(h2), title="Evening rock", description="loud")
    c = _create(client, auth_headers(h3), title="Late jazz")
    client.post(f"/sessions/{c['id']}/end", headers=auth_headers(h3))

    listing = client.get("/sessions").json()
    ids = {s["id"] for s in listing["sessions"]}
    assert ids == {a["id"], b["id"]}
    assert listing["pagination"]["total"] == 2

    ended = client.get("/sessions", params={"status": "ended"}).json()
    assert [s["id"] for s in ended["sessions"]] == [c["id"]]

    jazz = client.get("/sessions", params={"search": "jazz"}).json()
    assert [s["id"] for s in jazz["sessions"]] == [a["id"]]

    by_host = client.get("/sessions", params={"host_user_id": h2.id}).json()
    assert [s["id"] for s in by_host["sessions"]] == [b["id"]]
    assert by_host["sessions"][0]["host_user"]["id"] == h2.id

    paged = client.get("/sessions", params={"limit": 1, "page": 2, "sort_by": "title", "sort_order": "asc"}).json()
    assert [s["id"] for s in paged["sessions"]] == [a["id"]]
    assert paged["pagination"]["total_pages"] == 2

    r = client.get("/sessions", params={"limit": 500})
    assert r.status_code == 400


def test_my_sessions(client, make_user, auth_headers):
    host, performer, viewer = make_user(), make_user(), make_user()
    s = _create(client, auth_headers(host))
    application = client.post(f"/sessions/{s['id']}/apply", headers=auth_headers(performer)).json()["application"]
    client.post(
        f"/sessions/{s['id']}/applications/{application['id']}/respond",
        json={"action": "approve"},
        headers=auth_headers(host),
    )
    client.post(f"/sessions/{s['id']}/join", json={"role": "viewer"}, headers=auth_headers(viewer))

    for user in (host, performer):
        mine = client.get("/sessions/mine", headers=auth_headers(user)).json()["sessions"]
        assert [m["id"] for m in mine] == [s["id"]]
    assert client.get("/sessions/mine", headers=auth_headers(viewer)).json()["sessions"] == []


def test_invite_token_lookup(client, make_user, auth_headers):
    host = make_user()
    s = _create(client, auth_headers(host), title="Invite only")

    r = client.get(f"/sessions/by-token/{s['join_token']}")
    assert r.json() == {"session_id": s["id"], "title": "Invite only", "status": "scheduled"}

    r = client.get("/sessions/by-token/unknown")
    assert r.status_code == 404


def test_blank_title_is_a_validation_error(client, make_user, auth_headers):
    host = make_user()
    r = client.post("/sessions", json={"title": "   "}, headers=auth_headers(host))
    assert r.status_code == 400
    assert r.json()["code"] == "VALIDATION_ERROR"

    s = _create(client, auth_headers(host), title="  Open mic  ")
    assert s["title"] == "Open mic"
