import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select
from starlette.websockets import WebSocketDisconnect

from memory_party import app, routes
from memory_party.database import CardImage, Event, GuestUpload, engine
from memory_party.identifiers import sha256_hex
from memory_party.leaderboard import submit_score

ADMIN_SECRET = "open-sesame"


async def _unlock(client, event_id, secret=ADMIN_SECRET):
    return await client.post(f"/events/{event_id}/admin/unlock", data={"secret": secret})


@pytest.mark.asyncio
async def test_index_returns_200_and_sets_guest_cookie(async_client):
    response = await async_client.get("/")
    assert response.status_code == 200
    assert "Memory Party" in response.text
    assert "memory_guest" in response.cookies


@pytest.mark.asyncio
async def test_index_preselects_event_from_query(async_client):
    response = await async_client.get("/?e=abc123")
    assert 'data-initial-event="abc123"' in response.text


@pytest.mark.asyncio
async def test_create_event_redirects_to_fragment(async_client):
    response = await async_client.post(
        "/events",
        data={"name": "Anna & Ben", "event_date": "2026-06-20", "admin_secret": "s3cret!"},
    )
    assert response.status_code == 303
    location = response.headers["location"]
    assert "#e=" in location
    event_id = location.split("#e=")[1]

    with Session(engine) as session:
        event = session.get(Event, event_id)
    assert event.name == "Anna & Ben"
    assert event.admin_secret_digest == sha256_hex("s3cret!")
    assert event.expires_at > event.created_at
    assert event.crowdfunding_target_cents == 4000


@pytest.mark.asyncio
async def test_create_event_requires_secret(async_client):
    response = await async_client.post("/events", data={"name": "No Secret"})
    assert response.status_code == 400
    with Session(engine) as session:
        assert session.exec(select(Event)).all() == []


@pytest.mark.asyncio
async def test_event_view_and_unknown_event(async_client, make_event):
    event_id = make_event(name="Garden Party")

    response = await async_client.get(f"/events/{event_id}")
    assert response.status_code == 200
    assert "Garden Party" in response.text

    missing = await async_client.get("/events/doesnotexist")
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_admin_requires_correct_secret(async_client, make_event):
    event_id = make_event()

    assert (await async_client.get(f"/events/{event_id}/admin")).status_code == 403
    assert (await _unlock(async_client, event_id, "wrong")).status_code == 401
    assert (await _unlock(async_client, event_id, ADMIN_SECRET.upper())).status_code == 401
    assert (await async_client.get(f"/events/{event_id}/admin")).status_code == 403

    unlocked = await _unlock(async_client, event_id)
    assert unlocked.status_code == 200
    assert unlocked.json() == {"unlocked": True}
    assert (await async_client.get(f"/events/{event_id}/admin")).status_code == 200


@pytest.mark.asyncio
async def test_unlock_is_scoped_to_one_event(async_client, make_event):
    first = make_event()
    second = make_event()

    await _unlock(async_client, first)

    assert (await async_client.get(f"/events/{second}/admin")).status_code == 403


@pytest.mark.asyncio
async def test_admin_update_saves_fields(async_client, make_event):
    event_id = make_event()
    await _unlock(async_client, event_id)

    response = await async_client.post(
        f"/events/{event_id}/admin",
        data={
            "name": "Renamed",
            "event_date": "",
            "uploads_enabled": "on",
            "crowdfunding_target_cents": "6000",
        },
    )
    assert response.status_code == 200

    with Session(engine) as session:
        event = session.get(Event, event_id)
    assert event.name == "Renamed"
    assert event.uploads_enabled is True
    assert event.is_pro is False
    assert event.crowdfunding_target_cents == 6000

    bad = await async_client.post(
        f"/events/{event_id}/admin", data={"name": "Renamed", "crowdfunding_target_cents": "0"}
    )
    assert bad.status_code == 400


@pytest.mark.asyncio
async def test_contribution_needs_guest_identity(async_client, make_event):
    event_id = make_event()

    anonymous = await async_client.post(f"/events/{event_id}/contributions", data={"amount_cents": "1000"})
    assert anonymous.status_code == 401

    await async_client.get("/")
    accepted = await async_client.post(f"/events/{event_id}/contributions", data={"amount_cents": "1000"})
    assert accepted.status_code == 201
    assert accepted.json()["contribution"]["status"] == "succeeded"

    prices = await async_client.get(f"/events/{event_id}/prices")
    assert prices.status_code == 200
    assert prices.json()["prices"]


@pytest.mark.asyncio
async def test_guest_upload_rules(async_client, make_event, image_bytes, upload_dir):
    disabled_event = make_event()
    files = {"image": ("guest.png", image_bytes("PNG"), "image/png")}

    disabled = await async_client.post(f"/events/{disabled_event}/uploads", data={"consent": "on"}, files=files)
    assert disabled.status_code == 403

    event_id = make_event(uploads_enabled=True)
    no_consent = await async_client.post(f"/events/{event_id}/uploads", data={"guest_name": "Tim"}, files=files)
    assert no_consent.status_code == 400

    accepted = await async_client.post(
        f"/events/{event_id}/uploads", data={"guest_name": "Tim", "consent": "on"}, files=files
    )
    assert accepted.status_code == 201
    assert accepted.json()["image_url"].startswith(f"/static/uploads/events/{event_id}/guest/")

    with Session(engine) as session:
        cards = session.exec(select(CardImage).where(CardImage.event_id == event_id)).all()
        uploads = session.exec(select(GuestUpload).where(GuestUpload.event_id == event_id)).all()
    assert [(card.kind, card.uploaded_by) for card in cards] == [("guest", "Tim")]
    assert len(uploads) == 1 and uploads[0].consent is True
    assert any(upload_dir.rglob("*.png"))


@pytest.mark.asyncio
async def test_organizer_upload_and_export(async_client, make_event, image_bytes):
    event_id = make_event()
    await _unlock(async_client, event_id)

    for index in range(3):
        response = await async_client.post(
            f"/events/{event_id}/admin/images",
            files={"image": (f"photo{index}.jpg", image_bytes("JPEG"), "image/jpeg")},
        )
        assert response.status_code == 201

    rejected = await async_client.post(
        f"/events/{event_id}/admin/images", files={"image": ("notes.txt", b"hello", "text/plain")}
    )
    assert rejected.status_code == 400

    export = await async_client.get(f"/events/{event_id}/admin/export.pdf")
    assert export.status_code == 200
    assert export.headers["content-type"] == "application/pdf"
    assert f"event-{event_id}-memory-cards.pdf" in export.headers["content-disposition"]
    assert export.headers["x-skipped-images"] == "0"
    assert export.content.startswith(b"%PDF")

    qr = await async_client.get(f"/events/{event_id}/admin/qr.svg")
    assert qr.status_code == 200
    assert "<svg" in qr.text


def test_live_socket_streams_state(make_event):
    event_id = make_event(image_count=4)

    with TestClient(app) as client:
        with client.websocket_connect(f"/events/{event_id}/live") as websocket:
            state = websocket.receive_json()
            assert state["type"] == "state"
            assert len(state["game"]["cards"]) == 8
            assert state["game"]["status"] == "idle"

            websocket.send_json({"type": "submit", "name": "Early Bird"})
            message = websocket.receive_json()
            assert message == {"type": "error", "message": "Finish a game before submitting a score."}


def test_live_socket_rejects_unknown_event():
    with TestClient(app) as client:
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/events/missing/live"):
                pass


@pytest.mark.asyncio
async def test_event_view_escapes_player_names(async_client, make_event):
    event_id = make_event()
    with Session(engine) as session:
        submit_score(session, event_id, "<img src=x onerror=alert(1)>", 4200)

    response = await async_client.get(f"/events/{event_id}")

    assert "<img src=x onerror=alert(1)>" not in response.text
    assert "&lt;img src=x onerror=alert(1)&gt;" in response.text
    assert "4.2s" in response.text


@pytest.mark.asyncio
async def test_event_view_exposes_live_fields(async_client, make_event):
    event_id = make_event(is_pro=True)

    response = await async_client.get(f"/events/{event_id}")

    for marker in ('id="event-name"', 'id="pro-badge"', 'id="funding-target"', 'data-action="restart"'):
        assert marker in response.text
    assert 'id="pro-badge" hidden' not in response.text


@pytest.mark.asyncio
async def test_failed_guest_upload_leaves_no_rows(async_client, make_event, image_bytes, monkeypatch):
    event_id = make_event(uploads_enabled=True)

    def broken_card(**fields):
        raise SQLAlchemyError("insert failed")

    monkeypatch.setattr(routes, "CardImage", broken_card)
    response = await async_client.post(
        f"/events/{event_id}/uploads",
        data={"guest_name": "Tim", "consent": "on"},
        files={"image": ("guest.png", image_bytes("PNG"), "image/png")},
    )

    assert response.status_code == 500
    with Session(engine) as session:
        assert session.exec(select(GuestUpload).where(GuestUpload.event_id == event_id)).all() == []
        assert session.exec(select(CardImage).where(CardImage.event_id == event_id)).all() == []


def test_live_socket_survives_malformed_messages(make_event):
    event_id = make_event(image_count=2)

    with TestClient(app) as client:
        with client.websocket_connect(f"/events/{event_id}/live") as websocket:
            assert websocket.receive_json()["type"] == "state"

            websocket.send_text("not json")
            assert websocket.receive_json() == {"type": "error", "message": "Messages must be JSON objects."}

            websocket.send_json([1, 2])
            assert websocket.receive_json()["type"] == "error"

            websocket.send_json({"type": "submit", "name": 5})
            assert websocket.receive_json()["type"] == "error"

            websocket.send_json({"type": "restart"})
            assert websocket.receive_json()["type"] == "state"
