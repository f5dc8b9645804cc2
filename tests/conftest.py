import os
import tempfile
from io import BytesIO
from pathlib import Path

import httpx
import pytest
import pytest_asyncio
from PIL import Image
from sqlmodel import Session, SQLModel

TEST_DB = Path(tempfile.gettempdir()) / "memory_party_test.sqlite3"
os.environ["DATABASE_URL"] = f"sqlite:///{TEST_DB}"
os.environ.setdefault("SESSION_SECRET", "test-session-secret")

from memory_party import app  # noqa: E402
from memory_party import storage  # noqa: E402
from memory_party.database import add_card_image, create_event, engine, init_db  # noqa: E402

ADMIN_SECRET = "open-sesame"


@pytest.fixture(autouse=True)
def _reset_db():
    SQLModel.metadata.drop_all(engine)
    init_db()
    yield


@pytest.fixture(autouse=True)
def upload_dir(tmp_path, monkeypatch):
    target = tmp_path / "uploads"
    target.mkdir()
    monkeypatch.setattr(storage, "UPLOAD_DIR", target)
    return target


@pytest_asyncio.fixture
async def async_client():
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest.fixture
def make_event():
    def _make(image_count: int = 0, **fields):
        with Session(engine, expire_on_commit=False) as session:
            event = create_event(session, name=fields.pop("name", "Test Wedding"), admin_secret=ADMIN_SECRET)
            for key, value in fields.items():
                setattr(event, key, value)
            session.add(event)
            session.commit()
            for index in range(image_count):
                add_card_image(session, event.id, f"https://img.example/{index}.jpg")
            return event.id

    return _make


def _encode_image(image_format: str, size=(40, 20), color=(200, 40, 90)) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", size, color).save(buffer, format=image_format)
    return buffer.getvalue()


@pytest.fixture
def image_bytes():
    return _encode_image
