"""
Canvas preview rendering.

The vision model expects an image of the source canvas. When the caller does
not upload a screenshot, a schematic preview is drawn from the element list:
each element becomes a filled rectangle labelled with its id.
"""

from __future__ import annotations

import base64
import logging
from io import BytesIO
from typing import Sequence

from PIL import Image, ImageColor, ImageDraw

from app.models.canvas import CanvasElement, ElementKind, Size


logger = logging.getLogger(__name__)

MAX_SIDE = 512

_KIND_COLORS = {
    ElementKind.TEXT: "#1f77b4",
    ElementKind.IMAGE: "#2ca02c",
    ElementKind.SHAPE: "#ff7f0e",
    ElementKind.ICON: "#9467bd",
    ElementKind.UNCLASSIFIED: "#7f7f7f",
}


def _element_color(element: CanvasElement) -> tuple[int, int, int]:
    if element.fill:
        try:
            return ImageColor.getrgb(element.fill)[:3]
        except ValueError:
            pass
    return ImageColor.getrgb(_KIND_COLORS[element.kind])[:3]


def render_canvas_preview(elements: Sequence[CanvasElement], canvas: Size) -> bytes:
    """Draw a schematic PNG of the canvas, longest side at most 512 px."""
    scale = min(1.0, MAX_SIDE / max(canvas.width, canvas.height))
    width = max(1, int(canvas.width * scale))
    height = max(1, int(canvas.height * scale))

    image = Image.new("RGB", (width, height), color="white")
    draw = ImageDraw.Draw(image)
    for element in elements:
        box = (
            element.left * scale,
            element.top * scale,
            (element.left + element.scaled_width) * scale,
            (element.top + element.scaled_height) * scale,
        )
        if box[2] <= box[0] or box[3] <= box[1]:
            continue
        draw.rectangle(box, fill=_element_color(element), outline="black")
        draw.text((box[0] + 2, box[1] + 2), element.id, fill="black")

    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def prepare_image_b64(image_bytes: bytes, max_side: int = MAX_SIDE) -> str:
    """
    Decode an uploaded canvas image, downscale it and re-encode as PNG base64.

    Raises ValueError if the bytes are not a readable image.
    """
    try:
        image = Image.open(BytesIO(image_bytes))
        image.load()
    except OSError as exc:
        raise ValueError("Canvas image could not be decoded.") from exc

    image = image.convert("RGB")
    width, height = image.size
    if max(width, height) > max_side:
        ratio = max_side / float(max(width, height))
        image = image.resize((max(1, int(width * ratio)), max(1, int(height * ratio))), Image.LANCZOS)

    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("utf-8")
