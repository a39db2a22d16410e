import anyio.to_thread
import pytest
from fastapi.testclient import TestClient
from pymongo.errors import ServerSelectionTimeoutError
from starlette.websockets import WebSocketDisconnect

from conftest import FlakyDatabase, ad_form, auth_headers, make_ad, make_user, token_for
from database import get_db
from main import create_app


def test_root_and_health(client):
    assert client.get("/").json() == {"message": "Gaon Bazaar backend running"}
    assert client.get("/health").json()["database"] == "connected"


def test_requests_without_token_are_unauthorized(client):
    assert client.get("/api/users/me").status_code == 401
    assert client.get("/api/users/me", headers={"Authorization": "Bearer junk"}).status_code == 401


def test_profile_signup_flow(client):
    headers = auth_headers("newbie", email="newbie@example.com")
    assert client.get("/api/users/me", headers=headers).status_code == 403

    resp = client.put("/api/users/me", headers=headers, json={"name": "Newbie", "mobileNumber": "9000000002"})
    assert resp.status_code == 200
    assert resp.json()["role"] == "Farmer"

    me = client.get("/api/users/me", headers=headers).json()
    assert me["uid"] == "newbie"
    assert me["name"] == "Newbie"


def test_disabled_user_is_refused(client, db):
    make_user(db, "banned", disabled=True)

    resp = client.get("/api/ads/mine", headers=auth_headers("banned"))

    assert resp.status_code == 403
    assert resp.json()["operation"] == "get"


def test_permission_errors_go_through_the_channel(app, db, buyer, seller):
    seen = []
    app.state.permission_errors.subscribe(seen.append)
    ad_id = make_ad(db, seller["uid"], status="pending")

    with TestClient(app) as client:
        resp = client.post(f"/api/ads/{ad_id}/approve", headers=auth_headers("buyer"))

    assert resp.status_code == 403
    assert resp.json()["path"] == f"ads/{ad_id}"
    assert len(seen) == 1
    assert seen[0].operation == "update"
    assert seen[0].payload["status"] == "approved"


def test_chat_scenario(client, db, buyer, seller):
    ad_id = make_ad(db, seller["uid"])
    a, b = auth_headers("buyer"), auth_headers("seller")

    conversation_id = client.post("/api/conversations", headers=a, json={"adId": ad_id}).json()["id"]
    assert client.post("/api/conversations", headers=a, json={"adId": ad_id}).json()["id"] == conversation_id

    convo = client.get(f"/api/conversations/{conversation_id}", headers=a).json()
    assert convo["participants"] == ["buyer", "seller"]
    assert convo["unreadBy"] == {"buyer": False, "seller": True}

    sent = client.post(f"/api/conversations/{conversation_id}/messages", headers=a,
                       json={"text": "is this available?"})
    assert sent.status_code == 200

    inbox = client.get("/api/conversations", headers=b).json()["items"]
    assert inbox[0]["lastMessage"] == "is this available?"
    assert inbox[0]["unreadBy"] == {"buyer": False, "seller": True}

    opened = client.get(f"/api/conversations/{conversation_id}", headers=b).json()
    assert opened["unreadBy"]["seller"] is False

    messages = client.get(f"/api/conversations/{conversation_id}/messages", headers=b).json()["items"]
    assert [m["text"] for m in messages] == ["is this available?"]


def test_owner_cannot_start_chat_on_own_ad(client, db, seller):
    ad_id = make_ad(db, seller["uid"])

    resp = client.post("/api/conversations", headers=auth_headers("seller"), json={"adId": ad_id})

    assert resp.status_code == 422


def test_outsider_cannot_open_conversation(client, db, buyer, seller):
    make_user(db, "outsider")
    ad_id = make_ad(db, seller["uid"])
    conversation_id = client.post("/api/conversations", headers=auth_headers("buyer"), json={"adId": ad_id}).json()["id"]

    assert client.get(f"/api/conversations/{conversation_id}", headers=auth_headers("outsider")).status_code == 403
    assert client.get("/api/conversations/unknown", headers=auth_headers("outsider")).status_code == 404


def test_hidden_ad_cannot_start_chat(app, db, buyer, seller):
    seen = []
    app.state.permission_errors.subscribe(seen.append)
    ad_id = make_ad(db, seller["uid"], status="pending")

    with TestClient(app) as client:
        resp = client.post("/api/conversations", headers=auth_headers("buyer"), json={"adId": ad_id})

    assert resp.status_code == 404
    assert seen == []
    assert db.conversations.count_documents({}) == 0

def test_moderation_scenario(client, db, admin, buyer, seller):
    resp = client.post("/api/ads", headers=auth_headers("seller"), json=ad_form())
    assert resp.json()["status"] == "pending"
    ad_id = resp.json()["id"]

    assert client.get(f"/api/ads/{ad_id}", headers=auth_headers("buyer")).status_code == 404
    assert client.get(f"/api/ads/{ad_id}", headers=auth_headers("seller")).status_code == 200
    assert client.get("/api/ads").json()["items"] == []

    queue = client.get("/api/admin/ads?status=pending", headers=auth_headers("admin")).json()["items"]
    assert [a["id"] for a in queue] == [ad_id]

    missing_reason = client.post(f"/api/ads/{ad_id}/reject", headers=auth_headers("admin"), json={"reason": " "})
    assert missing_reason.status_code == 422

    rejected = client.post(f"/api/ads/{ad_id}/reject", headers=auth_headers("admin"),
                           json={"reason": "photo unclear"}).json()
    assert rejected["status"] == "rejected"
    assert rejected["rejectionReason"] == "photo unclear"

    notes = client.get("/api/notifications", headers=auth_headers("seller")).json()
    assert notes["unread"] == 1
    assert notes["items"][0]["type"] == "ad_status"


def test_invalid_ad_form_is_rejected_before_write(client, db, seller):
    resp = client.post("/api/ads", headers=auth_headers("seller"), json=ad_form(category="Spaceships"))

    assert resp.status_code == 422
    assert db.ads.count_documents({}) == 0


def test_broadcast_and_notification_management(client, db, admin, buyer, seller):
    resp = client.post("/api/notifications/broadcast", headers=auth_headers("admin"),
                       json={"title": "Rain alert", "message": "Heavy rain expected tomorrow"})
    assert resp.json() == {"sent": 3}

    items = client.get("/api/notifications", headers=auth_headers("buyer")).json()["items"]
    note_id = items[0]["id"]
    assert client.post(f"/api/notifications/{note_id}/read", headers=auth_headers("seller")).status_code == 403
    assert client.post(f"/api/notifications/{note_id}/read", headers=auth_headers("buyer")).json()["isRead"] is True
    assert client.post("/api/notifications/read-all", headers=auth_headers("seller")).json() == {"updated": 1}
    assert client.delete(f"/api/notifications/{note_id}", headers=auth_headers("buyer")).status_code == 200
    assert client.get("/api/notifications", headers=auth_headers("buyer")).json()["items"] == []

    denied = client.post("/api/notifications/broadcast", headers=auth_headers("buyer"),
                         json={"title": "x", "message": "y"})
    assert denied.status_code == 403


def test_in_flight_duplicate_is_refused(app, client, db, buyer, seller):
    ad_id = make_ad(db, seller["uid"])
    conversation_id = client.post("/api/conversations", headers=auth_headers("buyer"), json={"adId": ad_id}).json()["id"]

    with app.state.inflight.hold(f"buyer:send:{conversation_id}"):
        resp = client.post(f"/api/conversations/{conversation_id}/messages", headers=auth_headers("buyer"),
                           json={"text": "hello"})
    assert resp.status_code == 409
    assert resp.json()["draft"] == "hello"

    retry = client.post(f"/api/conversations/{conversation_id}/messages", headers=auth_headers("buyer"),
                        json={"text": "hello"})
    assert retry.status_code == 200


def test_saved_ads_endpoints(client, db, buyer, seller):
    ad_id = make_ad(db, seller["uid"])
    headers = auth_headers("buyer")

    assert client.put(f"/api/saved/{ad_id}", headers=headers).json() == {"status": "saved"}
    assert client.put(f"/api/saved/{ad_id}", headers=headers).json() == {"status": "already_saved"}
    assert [a["id"] for a in client.get("/api/saved", headers=headers).json()["items"]] == [ad_id]
    client.delete(f"/api/saved/{ad_id}", headers=headers)
    assert client.get("/api/saved", headers=headers).json()["items"] == []


def test_support_endpoints(client, db, admin, buyer):
    issue_id = client.post("/api/issues", headers=auth_headers("buyer"), json={
        "name": "Asha", "email": "asha@example.com", "description": "App is slow",
    }).json()["id"]

    resp = client.post(f"/api/issues/{issue_id}/status", headers=auth_headers("admin"), json={"status": "resolved"})
    assert resp.json()["status"] == "resolved"
    assert client.post(f"/api/issues/{issue_id}/status", headers=auth_headers("admin"),
                       json={"status": "closed"}).status_code == 422

    assert client.get("/api/issues/mine", headers=auth_headers("buyer")).json()["items"][0]["status"] == "resolved"
    assert client.get("/api/issues", headers=auth_headers("buyer")).status_code == 403

    client.post("/api/help-messages", headers=auth_headers("buyer"), json={"message": "Need help"})
    assert len(client.get("/api/help-messages", headers=auth_headers("admin")).json()["items"]) == 1


def test_config_endpoints(client, admin, buyer):
    assert client.get("/api/config/advertisement").json() == {"advertisement": None}

    client.put("/api/config/advertisement", headers=auth_headers("admin"),
               json={"imageUrl": "https://cdn.example.com/banner.jpg"})
    assert client.get("/api/config/advertisement").json()["advertisement"]["enabled"] is True

    client.put("/api/config/payment", headers=auth_headers("admin"), json={"upiId": "gaon@upi"})
    assert client.get("/api/config/payment").json() == {"upiId": "gaon@upi"}

    resp = client.post("/api/users/buyer/toggle-disabled", headers=auth_headers("admin"))
    assert resp.json()["disabled"] is True
    assert client.get("/api/users/me", headers=auth_headers("buyer")).status_code == 403


def test_categories_are_public(client):
    names = [c["name"] for c in client.get("/api/categories").json()["items"]]
    assert "पशुधन" in names


def test_database_outage_is_reported_as_503(db):
    def fail(*args, **kwargs):
        raise ServerSelectionTimeoutError("no servers")

    app = create_app()
    app.dependency_overrides[get_db] = lambda: FlakyDatabase(db, {"ads": {"find": fail}})
    with TestClient(app) as client:
        resp = client.get("/api/ads")

    assert resp.status_code == 503


def test_notification_stream_delivers_snapshots(client, db, admin, buyer):
    with client.websocket_connect(f"/ws/notifications?token={token_for('buyer')}") as ws:
        assert ws.receive_json() == {"items": [], "unread": 0}

        client.post("/api/notifications/broadcast", headers=auth_headers("admin"),
                    json={"title": "Rain alert", "message": "Heavy rain"})

        snapshot = ws.receive_json()
        assert snapshot["unread"] == 1
        assert snapshot["items"][0]["title"] == "Rain alert"


def test_stream_refuses_bad_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/conversations?token=junk") as ws:
            ws.receive_json()


def test_open_chat_marks_arriving_messages_read(client, db, buyer, seller):
    ad_id = make_ad(db, seller["uid"])
    conversation_id = client.post("/api/conversations", headers=auth_headers("buyer"), json={"adId": ad_id}).json()["id"]

    url = f"/ws/conversations/{conversation_id}/messages?token={token_for('seller')}"
    with client.websocket_connect(url) as ws:
        assert ws.receive_json() == {"items": []}
        assert db.conversations.find_one({"_id": conversation_id})["unreadBy"]["seller"] is False

        client.post(f"/api/conversations/{conversation_id}/messages", headers=auth_headers("buyer"),
                    json={"text": "is this available?"})

        snapshot = ws.receive_json()
        assert [m["text"] for m in snapshot["items"]] == ["is this available?"]
        assert db.conversations.find_one({"_id": conversation_id})["unreadBy"]["seller"] is False

    inbox = client.get("/api/conversations", headers=auth_headers("seller")).json()["items"]
    assert inbox[0]["lastMessage"] == "is this available?"
    assert inbox[0]["unreadBy"]["seller"] is False


def test_message_stream_refuses_outsider(client, db, buyer, seller):
    make_user(db, "outsider")
    ad_id = make_ad(db, seller["uid"])
    conversation_id = client.post("/api/conversations", headers=auth_headers("buyer"), json={"adId": ad_id}).json()["id"]

    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/ws/conversations/{conversation_id}/messages?token={token_for('outsider')}") as ws:
            ws.receive_json()


def _limit_worker_threads(total):
    anyio.to_thread.current_default_thread_limiter().total_tokens = total


def test_open_streams_leave_requests_served(client, buyer):
    client.portal.call(_limit_worker_threads, 2)
    url = f"/ws/notifications?token={token_for('buyer')}"

    with client.websocket_connect(url) as first, client.websocket_connect(url) as second, \
            client.websocket_connect(url) as third:
        for ws in (first, second, third):
            assert ws.receive_json() == {"items": [], "unread": 0}

        resp = client.get("/api/notifications", headers=auth_headers("buyer"))

    assert resp.status_code == 200
