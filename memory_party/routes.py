from __future__ import annotations

import json
import logging
import os
from datetime import date
from io import BytesIO
from pathlib import Path

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates
from PIL import Image
from pillow_heif import read_heif
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from .admin import AdminGate
from .database import (
    KIND_GUEST,
    KIND_ORGANIZER,
    CardImage,
    Event,
    GuestUpload,
    add_card_image,
    card_images_query,
    create_event,
    engine,
    fetch_card_images,
    get_event,
    get_session,
)
from .errors import AuthorizationError, ValidationError
from .export import export_cards_pdf, render_qr_svg
from .funding import (
    contribution_payload,
    contributions_query,
    donate,
    is_pro_active,
    load_donation_prices,
    summarize_contributions,
)
from .identity import current_guest, ensure_guest, grant_admin, is_admin_unlocked
from .leaderboard import leaderboard_query, rank_scores
from .play import (
    TOPIC_CARD_IMAGES,
    TOPIC_CONTRIBUTIONS,
    TOPIC_EVENT,
    PlaySession,
    resolve_view,
)
from .realtime import hub, topic
from .storage import build_object_name, fetch_image_bytes, store_image

BASE_DIR = Path(__file__).resolve().parent

router = APIRouter()
templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))

logger = logging.getLogger(__name__)

PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL")
ALLOWED_IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".heic", ".heif"}
MAX_TEXT_LENGTH = 120
MIN_SECRET_LENGTH = 4
DEFAULT_EVENT_NAME = "Our Wedding"


def _render(
    request: Request,
    template_name: str,
    context: dict[str, object],
    *,
    status_code: int | None = None,
) -> HTMLResponse:
    response = templates.TemplateResponse(request, template_name, dict(context))
    if status_code is not None:
        response.status_code = status_code
    return response


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def _require_event(session: Session, event_id: str) -> Event:
    event = get_event(session, event_id)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    return event


def _require_admin(request: Request, event_id: str) -> None:
    if not is_admin_unlocked(request, event_id):
        raise HTTPException(status_code=403, detail="Unlock the admin area first.")


def _share_url(request: Request, event_id: str) -> str:
    base = PUBLIC_BASE_URL or str(request.url_for("index"))
    return f"{base}#e={event_id}"


@router.get("/", response_class=HTMLResponse, name="index")
async def index(request: Request):
    view = resolve_view(request.url.query)
    context = {
        "initial_event_id": view.event_id,
        "default_event_name": DEFAULT_EVENT_NAME,
        "error": None,
    }
    response = _render(request, "index.html", context)
    ensure_guest(request, response)
    return response


@router.post("/events", response_class=HTMLResponse, name="create_event")
async def create_event_route(
    request: Request,
    session: Session = Depends(get_session),
    name: str = Form(default=DEFAULT_EVENT_NAME, max_length=MAX_TEXT_LENGTH),
    event_date: str = Form(default="", max_length=10),
    organizer_name: str | None = Form(default=None, max_length=MAX_TEXT_LENGTH),
    retention_days: int = Form(default=30, ge=1, le=365),
    admin_secret: str = Form(default="", max_length=MAX_TEXT_LENGTH),
):
    cleaned_name = name.strip()
    error = None
    parsed_date = None
    if not cleaned_name:
        error = "Give the event a name."
    elif len(admin_secret) < MIN_SECRET_LENGTH:
        error = f"Choose an admin secret with at least {MIN_SECRET_LENGTH} characters."
    else:
        try:
            parsed_date = _parse_date(event_date)
        except ValidationError as exc:
            error = str(exc)
    if error:
        context = {"initial_event_id": None, "default_event_name": cleaned_name, "error": error}
        return _render(request, "index.html", context, status_code=400)

    try:
        event = create_event(
            session,
            name=cleaned_name,
            admin_secret=admin_secret,
            event_date=parsed_date,
            organizer_name=(organizer_name or "").strip() or None,
            retention_days=retention_days,
        )
    except SQLAlchemyError:
        logger.exception("Creating event %s failed", cleaned_name)
        session.rollback()
        context = {
            "initial_event_id": None,
            "default_event_name": cleaned_name,
            "error": "We could not create the event. Please try again.",
        }
        return _render(request, "index.html", context, status_code=500)

    redirect_url = str(request.url_for("index")) + f"#e={event.id}"
    return RedirectResponse(redirect_url, status_code=303)


@router.get("/events/{event_id}", response_class=HTMLResponse, name="event_view")
async def event_view(event_id: str, request: Request, session: Session = Depends(get_session)):
    event = _require_event(session, event_id)
    summary = summarize_contributions(
        contributions_query(event.id)(session), event.crowdfunding_target_cents
    )
    context = {
        "event": event,
        "prices": load_donation_prices(session),
        "funding": summary,
        "pro_active": is_pro_active(event, summary.sum_cents),
        "leaderboard": rank_scores(leaderboard_query(event.id)(session)),
        "admin_unlocked": is_admin_unlocked(request, event.id),
        "share_url": _share_url(request, event.id),
    }
    return _render(request, "_event.html", context)


@router.get("/events/{event_id}/prices", name="donation_prices")
async def donation_prices(event_id: str, session: Session = Depends(get_session)):
    _require_event(session, event_id)
    return JSONResponse({"prices": load_donation_prices(session)})


@router.post("/events/{event_id}/contributions", name="contribute")
async def contribute(
    event_id: str,
    request: Request,
    session: Session = Depends(get_session),
    amount_cents: int = Form(...),
):
    event = _require_event(session, event_id)
    try:
        contribution = donate(session, event.id, amount_cents, current_guest(request))
    except AuthorizationError as exc:
        return _error(str(exc), 401)
    except ValidationError as exc:
        return _error(str(exc), 400)
    except SQLAlchemyError:
        logger.exception("Saving contribution for event %s failed", event.id)
        session.rollback()
        return _error("We could not record your contribution. Please try again.", 500)

    hub.publish(topic(TOPIC_CONTRIBUTIONS, event.id))
    return JSONResponse(
        {
            "message": "Thank you for your contribution! (demo ledger, no payment was taken)",
            "contribution": contribution_payload(contribution),
        },
        status_code=201,
    )


@router.post("/events/{event_id}/uploads", name="guest_upload")
async def guest_upload(
    event_id: str,
    session: Session = Depends(get_session),
    guest_name: str = Form(default="", max_length=MAX_TEXT_LENGTH),
    consent: bool = Form(default=False),
    image: UploadFile | None = File(default=None),
):
    event = _require_event(session, event_id)
    if not event.uploads_enabled:
        return _error("Guest uploads are disabled for this event.", 403)
    if image is None or not image.filename:
        return _error("Select a photo to upload.", 400)
    if not consent:
        return _error("Please confirm that the photo may be used in the game.", 400)

    try:
        data, original_name, content_type = await _read_image_upload(image)
    except ValidationError as exc:
        return _error(str(exc), 400)

    uploader = guest_name.strip() or "Guest"
    try:
        url = store_image(
            data,
            object_name=build_object_name(event.id, KIND_GUEST, original_name),
            content_type=content_type,
        )
        upload = GuestUpload(event_id=event.id, guest_name=uploader, image_url=url, consent=True)
        card = CardImage(event_id=event.id, image_url=url, kind=KIND_GUEST, uploaded_by=uploader)
        session.add(upload)
        session.add(card)
        session.commit()
    except RuntimeError as exc:
        logger.exception("Guest upload failed: %s", exc)
        session.rollback()
        return _error(f"{original_name}: {exc}", 500)
    except (OSError, SQLAlchemyError):
        logger.exception("Unexpected error while saving guest photo %s.", original_name)
        session.rollback()
        return _error(f"{original_name}: we hit a snag saving that photo. Please try again.", 500)

    hub.publish(topic(TOPIC_CARD_IMAGES, event.id))
    return JSONResponse({"message": "Thanks for your photo!", "image_url": url}, status_code=201)


@router.post("/events/{event_id}/admin/unlock", name="admin_unlock")
async def admin_unlock(
    event_id: str,
    session: Session = Depends(get_session),
    secret: str = Form(default="", max_length=MAX_TEXT_LENGTH),
):
    event = _require_event(session, event_id)
    gate = AdminGate(event.admin_secret_digest)
    if not gate.unlock(secret):
        logger.info("Rejected admin unlock for event %s", event.id)
        return _error("Wrong secret.", 401)
    response = JSONResponse({"unlocked": True})
    grant_admin(response, event.id)
    return response


@router.get("/events/{event_id}/admin", response_class=HTMLResponse, name="admin_view")
async def admin_view(event_id: str, request: Request, session: Session = Depends(get_session)):
    event = _require_event(session, event_id)
    _require_admin(request, event.id)
    context = {
        "event": event,
        "images": fetch_card_images(session, event.id),
        "share_url": _share_url(request, event.id),
    }
    return _render(request, "_admin.html", context)


@router.post("/events/{event_id}/admin", name="admin_update")
async def admin_update(
    event_id: str,
    request: Request,
    session: Session = Depends(get_session),
    name: str = Form(..., max_length=MAX_TEXT_LENGTH),
    event_date: str = Form(default="", max_length=10),
    uploads_enabled: bool = Form(default=False),
    crowdfunding_target_cents: int = Form(default=4000),
    is_pro: bool = Form(default=False),
):
    event = _require_event(session, event_id)
    _require_admin(request, event.id)
    if not name.strip():
        return _error("The event needs a name.", 400)
    try:
        parsed_date = _parse_date(event_date)
    except ValidationError as exc:
        return _error(str(exc), 400)
    if crowdfunding_target_cents <= 0:
        return _error("The crowdfunding target must be greater than zero.", 400)

    event.name = name.strip()
    event.event_date = parsed_date
    event.uploads_enabled = uploads_enabled
    event.crowdfunding_target_cents = crowdfunding_target_cents
    event.is_pro = is_pro
    try:
        session.add(event)
        session.commit()
    except SQLAlchemyError:
        logger.exception("Saving settings for event %s failed", event_id)
        session.rollback()
        return _error("Saving failed. Please try again.", 500)

    hub.publish(topic(TOPIC_EVENT, event_id))
    return JSONResponse({"message": "Saved"})


@router.post("/events/{event_id}/admin/images", name="organizer_upload")
async def organizer_upload(
    event_id: str,
    request: Request,
    session: Session = Depends(get_session),
    image: UploadFile | None = File(default=None),
):
    event = _require_event(session, event_id)
    _require_admin(request, event.id)
    if image is None or not image.filename:
        return _error("Select an image to upload.", 400)

    try:
        data, original_name, content_type = await _read_image_upload(image)
    except ValidationError as exc:
        return _error(str(exc), 400)

    try:
        url = store_image(
            data,
            object_name=build_object_name(event.id, KIND_ORGANIZER, original_name),
            content_type=content_type,
        )
        card = add_card_image(session, event.id, url, kind=KIND_ORGANIZER)
    except RuntimeError as exc:
        logger.exception("Organizer upload failed: %s", exc)
        session.rollback()
        return _error(f"{original_name}: {exc}", 500)
    except (OSError, SQLAlchemyError):
        logger.exception("Unexpected error while saving organizer image %s.", original_name)
        session.rollback()
        return _error(f"{original_name}: we hit a snag saving that image. Please try again.", 500)

    hub.publish(topic(TOPIC_CARD_IMAGES, event.id))
    return JSONResponse({"message": "Image added", "id": card.id, "image_url": url}, status_code=201)


@router.get("/events/{event_id}/admin/export.pdf", name="export_cards")
async def export_cards(event_id: str, request: Request, session: Session = Depends(get_session)):
    event = _require_event(session, event_id)
    _require_admin(request, event.id)
    images = card_images_query(event.id)(session)
    export = await export_cards_pdf(event.id, images, fetch_image_bytes)
    if export.skipped:
        logger.warning("Export for event %s skipped %s image(s)", event.id, len(export.skipped))
    headers = {
        "Content-Disposition": f'attachment; filename="{export.filename}"',
        "X-Skipped-Images": str(len(export.skipped)),
    }
    return Response(export.content, media_type="application/pdf", headers=headers)


@router.get("/events/{event_id}/admin/qr.svg", name="event_qr")
async def event_qr(event_id: str, request: Request, session: Session = Depends(get_session)):
    event = _require_event(session, event_id)
    _require_admin(request, event.id)
    svg = render_qr_svg(_share_url(request, event.id))
    return Response(svg, media_type="image/svg+xml", headers={"Cache-Control": "no-store"})


@router.websocket("/events/{event_id}/live")
async def live_play(websocket: WebSocket, event_id: str):
    with Session(engine) as session:
        known = get_event(session, event_id) is not None
    if not known:
        await websocket.close(code=4404)
        return

    await websocket.accept()
    try:
        async with PlaySession(event_id, websocket.send_json) as play:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = json.loads(raw)
                except ValueError:
                    message = None
                await play.handle(message)
    except WebSocketDisconnect:
        logger.debug("Player left event %s", event_id)


async def _read_image_upload(image: UploadFile) -> tuple[bytes, str, str]:
    original_name = image.filename or "upload.jpg"
    content_type = (image.content_type or "").lower()
    suffix = Path(original_name).suffix.lower() or ".jpg"

    if not content_type.startswith("image/"):
        raise ValidationError(f"{original_name}: only image uploads are allowed.")
    if suffix not in ALLOWED_IMAGE_SUFFIXES:
        raise ValidationError(f"{original_name}: use PNG, JPG or HEIC images.")

    file_bytes = await image.read()
    if not file_bytes:
        raise ValidationError(f"{original_name}: the file is empty.")

    if suffix in {".heic", ".heif"}:
        try:
            heif_file = read_heif(file_bytes)
            img = Image.frombytes(heif_file.mode, heif_file.size, heif_file.data, "raw")
            buffer = BytesIO()
            img.save(buffer, format="JPEG")
        except Exception as exc:
            raise ValidationError(f"{original_name}: could not convert HEIC image.") from exc
        return buffer.getvalue(), f"{Path(original_name).stem}.jpg", "image/jpeg"

    if suffix in {".jpg", ".jpeg"}:
        content_type = "image/jpeg"
    return file_bytes, original_name, content_type


def _parse_date(value: str | None) -> date | None:
    cleaned = (value or "").strip()
    if not cleaned:
        return None
    try:
        return date.fromisoformat(cleaned)
    except ValueError as exc:
        raise ValidationError("Use a date in the form YYYY-MM-DD.") from exc
