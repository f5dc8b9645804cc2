"""Database models and helpers for events, card images, scores and contributions."""

from __future__ import annotations

import logging
import os
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator

from sqlmodel import Field, Session, SQLModel, create_engine, select

from .identifiers import random_id, sha256_hex

BASE_DIR = Path(__file__).resolve().parent

DEFAULT_SQLITE_PATH = "sqlite:///./memory_party.db"
DEFAULT_TARGET_CENTS = 4000
DEFAULT_RETENTION_DAYS = int(os.getenv("DEFAULT_RETENTION_DAYS", "30"))
EVENT_ID_LENGTH = 8

KIND_ORGANIZER = "organizer"
KIND_GUEST = "guest"

logger = logging.getLogger(__name__)

DONATION_PRICE_DEFINITIONS = [
    {"label": "5 €", "unit_amount": 500},
    {"label": "10 €", "unit_amount": 1000},
    {"label": "20 €", "unit_amount": 2000},
    {"label": "50 €", "unit_amount": 5000},
]


def _build_engine_url() -> str:
    """Return the configured database URL or fall back to SQLite."""
    return os.environ.get("DATABASE_URL", DEFAULT_SQLITE_PATH)


def _build_engine() -> "Engine":
    url = _build_engine_url()
    engine_kwargs = {}
    if url.startswith("sqlite"):
        # SQLite needs check_same_thread disabled for FastAPI concurrency,
        # but passing this flag to other drivers (e.g., psycopg2) raises errors.
        engine_kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(url, **engine_kwargs)


engine = _build_engine()

STATIC_DIR = BASE_DIR / "static"
UPLOAD_DIR = STATIC_DIR / "uploads"


def utcnow() -> datetime:
    """Timezone-aware current time, used for every stored timestamp."""
    return datetime.now(timezone.utc)


class Event(SQLModel, table=True):
    id: str = Field(primary_key=True, max_length=32)
    name: str = Field(nullable=False, max_length=120)
    event_date: date | None = Field(default=None)
    organizer_name: str | None = Field(default=None, max_length=120)
    uploads_enabled: bool = Field(default=False, nullable=False)
    is_pro: bool = Field(default=False, nullable=False)
    crowdfunding_target_cents: int = Field(default=DEFAULT_TARGET_CENTS, nullable=False)
    admin_secret_digest: str | None = Field(default=None, max_length=64)
    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    expires_at: datetime | None = Field(default=None)


class CardImage(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    event_id: str = Field(foreign_key="event.id", nullable=False, index=True)
    image_url: str = Field(nullable=False)
    uploaded_by: str = Field(default=KIND_ORGANIZER, nullable=False, max_length=120)
    kind: str = Field(default=KIND_ORGANIZER, nullable=False, max_length=16)
    created_at: datetime = Field(default_factory=utcnow, nullable=False)


class GuestUpload(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    event_id: str = Field(foreign_key="event.id", nullable=False, index=True)
    guest_name: str = Field(default="Guest", nullable=False, max_length=120)
    image_url: str = Field(nullable=False)
    consent: bool = Field(default=False, nullable=False)
    created_at: datetime = Field(default_factory=utcnow, nullable=False)


class PlayerScore(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    event_id: str = Field(foreign_key="event.id", nullable=False, index=True)
    name: str = Field(nullable=False, max_length=120)
    time_ms: int = Field(nullable=False, index=True)
    created_at: datetime = Field(default_factory=utcnow, nullable=False)


class Contribution(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    # Deliberately not a foreign key: contributions are queried across events by this field.
    event_id: str = Field(nullable=False, index=True, max_length=32)
    amount_cents: int = Field(nullable=False)
    provider: str = Field(default="demo", nullable=False, max_length=32)
    status: str = Field(default="succeeded", nullable=False, max_length=32)
    created_at: datetime = Field(default_factory=utcnow, nullable=False)


class DonationPrice(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    label: str = Field(nullable=False, max_length=64)
    unit_amount: int = Field(nullable=False)
    active: bool = Field(default=True, nullable=False)


def init_db() -> None:
    """Create tables if they don't already exist."""
    SQLModel.metadata.create_all(engine)
    _ensure_upload_dir()
    _ensure_donation_prices()


def get_session() -> Iterator[Session]:
    """Yield a SQLModel session for dependency injection."""
    with Session(engine) as session:
        yield session


def _ensure_upload_dir() -> None:
    UPLOAD_DIR.mkdir(parents=True, exist_ok=True)


def _ensure_donation_prices() -> None:
    with Session(engine) as session:
        existing = session.exec(select(DonationPrice).limit(1)).first()
        if existing:
            return
        for definition in DONATION_PRICE_DEFINITIONS:
            session.add(DonationPrice(**definition))
        session.commit()


def create_event(
    session: Session,
    *,
    name: str,
    admin_secret: str | None = None,
    event_date: date | None = None,
    organizer_name: str | None = None,
    retention_days: int = DEFAULT_RETENTION_DAYS,
) -> Event:
    """Create a new event under a fresh, unused capability id."""
    event_id = random_id(EVENT_ID_LENGTH)
    while session.get(Event, event_id) is not None:
        event_id = random_id(EVENT_ID_LENGTH)

    now = utcnow()
    event = Event(
        id=event_id,
        name=name,
        event_date=event_date,
        organizer_name=organizer_name or None,
        admin_secret_digest=sha256_hex(admin_secret) if admin_secret else None,
        created_at=now,
        expires_at=now + timedelta(days=max(retention_days, 1)),
    )
    session.add(event)
    session.commit()
    session.refresh(event)
    logger.info("Created event %s (%s)", event.id, event.name)
    return event


def get_event(session: Session, event_id: str) -> Event | None:
    if not event_id:
        return None
    return session.get(Event, event_id)


def add_card_image(
    session: Session,
    event_id: str,
    image_url: str,
    *,
    kind: str = KIND_ORGANIZER,
    uploaded_by: str | None = None,
) -> CardImage:
    image = CardImage(
        event_id=event_id,
        image_url=image_url,
        kind=kind,
        uploaded_by=uploaded_by or kind,
    )
    session.add(image)
    session.commit()
    session.refresh(image)
    return image


def fetch_card_images(session: Session, event_id: str) -> list[CardImage]:
    return session.exec(
        select(CardImage)
        .where(CardImage.event_id == event_id)
        .order_by(CardImage.created_at.desc(), CardImage.id.desc())
    ).all()


def card_image_payload(image: CardImage) -> dict[str, Any]:
    return {
        "id": str(image.id),
        "image_url": image.image_url,
        "kind": image.kind,
        "uploaded_by": image.uploaded_by,
        "created_at": image.created_at.isoformat(),
    }


def event_payload(event: Event) -> dict[str, Any]:
    return {
        "id": event.id,
        "name": event.name,
        "event_date": event.event_date.isoformat() if event.event_date else None,
        "organizer_name": event.organizer_name,
        "uploads_enabled": event.uploads_enabled,
        "is_pro": event.is_pro,
        "crowdfunding_target_cents": event.crowdfunding_target_cents,
        "expires_at": event.expires_at.isoformat() if event.expires_at else None,
    }


def card_images_query(event_id: str):
    def query(session: Session) -> list[dict[str, Any]]:
        return [card_image_payload(image) for image in fetch_card_images(session, event_id)]

    return query


def event_query(event_id: str):
    def query(session: Session) -> list[dict[str, Any]]:
        event = get_event(session, event_id)
        return [event_payload(event)] if event else []

    return query
