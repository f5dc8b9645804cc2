"""Printable card sheets and the event QR code.

Layout is pure arithmetic over a fixed A4 portrait page in PDF points with a
bottom-left origin: a 3 x 4 grid inside a 36 pt margin. Each image is exported
twice, once per physical card, in placement order.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from io import BytesIO
from typing import Awaitable, Callable, List, NamedTuple, Sequence

from PIL import Image, UnidentifiedImageError
from reportlab.graphics import renderSVG
from reportlab.graphics.barcode.qr import QrCodeWidget
from reportlab.graphics.shapes import Drawing
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from .deck import PAIR_CAP

DECODE_FORMATS = ("JPEG", "PNG")

logger = logging.getLogger(__name__)

Fetcher = Callable[[str], Awaitable[bytes]]


@dataclass(frozen=True)
class PageGeometry:
    width: float = 595
    height: float = 842
    margin: float = 36
    columns: int = 3
    rows: int = 4

    @property
    def cells_per_page(self) -> int:
        return self.columns * self.rows

    @property
    def cell_width(self) -> float:
        return (self.width - 2 * self.margin) / self.columns

    @property
    def cell_height(self) -> float:
        return (self.height - 2 * self.margin) / self.rows


A4_PORTRAIT = PageGeometry()


class Placement(NamedTuple):
    index: int
    page: int
    row: int
    column: int
    x: float
    y: float
    width: float
    height: float


class Fit(NamedTuple):
    x: float
    y: float
    width: float
    height: float
    scale: float


def plan_layout(count: int, geometry: PageGeometry = A4_PORTRAIT) -> List[Placement]:
    placements: List[Placement] = []
    cell_w = geometry.cell_width
    cell_h = geometry.cell_height
    for index in range(count):
        page = index // geometry.cells_per_page
        column = index % geometry.columns
        row = (index // geometry.columns) % geometry.rows
        x = geometry.margin + column * cell_w
        y = geometry.height - geometry.margin - (row + 1) * cell_h
        placements.append(Placement(index, page, row, column, x, y, cell_w, cell_h))
    return placements


def page_count(count: int, geometry: PageGeometry = A4_PORTRAIT) -> int:
    return math.ceil(count / geometry.cells_per_page) if count > 0 else 0


def fit_image(cell: Placement, image_width: float, image_height: float) -> Fit:
    """Scale uniformly to the tighter cell dimension and center inside the cell."""
    if image_width <= 0 or image_height <= 0:
        raise ValueError("Image dimensions must be positive.")
    scale = min(cell.width / image_width, cell.height / image_height)
    width = image_width * scale
    height = image_height * scale
    return Fit(
        x=cell.x + (cell.width - width) / 2,
        y=cell.y + (cell.height - height) / 2,
        width=width,
        height=height,
        scale=scale,
    )


def export_sequence(images: Sequence[dict], pair_cap: int = PAIR_CAP) -> List[dict]:
    """First ``pair_cap`` images, each listed twice in a row."""
    return [image for image in images[:pair_cap] for _ in range(2)]


def decode_raster(data: bytes) -> Image.Image:
    """Decode JPEG first, then PNG; raise ValueError when neither applies."""
    last_error: Exception | None = None
    for image_format in DECODE_FORMATS:
        try:
            image = Image.open(BytesIO(data), formats=[image_format])
            image.load()
            return image
        except (UnidentifiedImageError, OSError) as exc:
            last_error = exc
    raise ValueError(f"Unsupported image data: {last_error}")


def export_filename(event_id: str) -> str:
    return f"event-{event_id}-memory-cards.pdf"


@dataclass
class CardExport:
    filename: str
    content: bytes
    pages: int
    skipped: List[str]


async def export_cards_pdf(
    event_id: str,
    images: Sequence[dict],
    fetch: Fetcher,
    geometry: PageGeometry = A4_PORTRAIT,
) -> CardExport:
    """Render the printable card set for an event.

    A failed fetch or decode leaves that card's cell blank and is reported in
    ``skipped``; the remaining cards are still exported.
    """
    sequence = export_sequence(images)
    placements = plan_layout(len(sequence), geometry)

    buffer = BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=(geometry.width, geometry.height))
    pdf.setTitle(f"Memory cards {event_id}")

    decoded: dict[str, ImageReader | None] = {}
    skipped: List[str] = []
    current_page = 0
    for image, placement in zip(sequence, placements):
        while current_page < placement.page:
            pdf.showPage()
            current_page += 1

        url = image["image_url"]
        if url not in decoded:
            decoded[url] = await _load_reader(url, fetch)
            if decoded[url] is None:
                skipped.append(url)
        reader = decoded[url]
        if reader is None:
            continue

        image_width, image_height = reader.getSize()
        fit = fit_image(placement, image_width, image_height)
        pdf.drawImage(reader, fit.x, fit.y, width=fit.width, height=fit.height)

    pdf.showPage()
    pdf.save()
    return CardExport(
        filename=export_filename(event_id),
        content=buffer.getvalue(),
        pages=max(current_page + 1, 1),
        skipped=skipped,
    )


async def _load_reader(url: str, fetch: Fetcher) -> ImageReader | None:
    try:
        data = await fetch(url)
        image = decode_raster(data)
    except Exception:
        logger.warning("Skipping card image %s in export", url, exc_info=True)
        return None
    if image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    return ImageReader(image)


def render_qr_svg(url: str, size: int = 200) -> str:
    """Render ``url`` as a square SVG QR symbol of ``size`` points."""
    widget = QrCodeWidget(url)
    left, bottom, right, top = widget.getBounds()
    width = right - left
    height = top - bottom
    drawing = Drawing(size, size, transform=[size / width, 0, 0, size / height, 0, 0])
    drawing.add(widget)
    return renderSVG.drawToString(drawing)
