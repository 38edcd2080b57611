"""
Image References - Helpers for the image values that flow between nodes.

Image and video values on the canvas are references: data URLs, http(s)
URLs, bare base64 payloads or local file paths. This module converts
between those forms and Pillow images.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import re
from io import BytesIO
from pathlib import Path

import aiohttp
from PIL import Image

from canvas_studio.adapters.base import GenerationError

_DATA_URL_RE = re.compile(r"^data:([\w/+.-]+);base64,(.+)$", re.DOTALL)

IMAGE_EXTENSIONS = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
}

RESIZE_MODES = ("longest", "shortest", "width", "height", "exact")


def normalize_image_url(url: str | None) -> str:
    """
    Normalize an image reference.

    Bare base64 JPEG/PNG payloads get a data URL prefix; data URLs, paths
    and http(s) URLs are returned unchanged.
    """
    if not url:
        return ""
    if url.startswith("data:") or url.startswith(("http://", "https://")):
        return url
    if url.startswith("/9j/"):
        return f"data:image/jpeg;base64,{url}"
    if url.startswith("iVBOR"):
        return f"data:image/png;base64,{url}"
    return url


def is_valid_image(value: object) -> bool:
    """Check whether a value looks like an image reference."""
    if not isinstance(value, str) or not value:
        return False
    url = normalize_image_url(value)
    if url.startswith("data:image/"):
        return True
    if url.startswith(("http://", "https://")):
        return True
    return Path(url.split("?", 1)[0]).suffix.lower() in IMAGE_EXTENSIONS


def guess_mime_type(ref: str) -> str:
    """MIME type of an image reference, defaulting to PNG."""
    match = _DATA_URL_RE.match(normalize_image_url(ref))
    if match:
        return match.group(1)
    suffix = Path(ref.split("?", 1)[0]).suffix.lower()
    return IMAGE_EXTENSIONS.get(suffix, "image/png")


def decode_data_url(url: str) -> tuple[str, bytes]:
    """Split a data URL into (mime type, raw bytes)."""
    match = _DATA_URL_RE.match(normalize_image_url(url))
    if not match:
        raise ValueError("Not a base64 data URL")
    try:
        return match.group(1), base64.b64decode(match.group(2))
    except binascii.Error as e:
        raise ValueError(f"Invalid base64 payload: {e}") from e


def to_data_url(data: bytes, mime_type: str = "image/png") -> str:
    """Encode raw bytes as a data URL."""
    return f"data:{mime_type};base64,{base64.b64encode(data).decode()}"


def image_to_data_url(image: Image.Image, mime_type: str = "image/png") -> str:
    """Encode a Pillow image as a PNG or JPEG data URL."""
    buf = BytesIO()
    if mime_type == "image/jpeg":
        image.convert("RGB").save(buf, format="JPEG", quality=92)
    else:
        image.save(buf, format="PNG")
        mime_type = "image/png"
    return to_data_url(buf.getvalue(), mime_type)


async def load_image_bytes(
    ref: str,
    session: aiohttp.ClientSession | None = None,
) -> tuple[str, bytes]:
    """
    Load the bytes behind an image reference.

    Returns:
        (mime type, raw bytes)

    Raises:
        GenerationError: The reference could not be loaded
    """
    url = normalize_image_url(ref)
    if not url:
        raise GenerationError("Empty image reference")

    if url.startswith("data:"):
        try:
            return decode_data_url(url)
        except ValueError as e:
            raise GenerationError(f"Invalid image data: {e}") from e

    if url.startswith(("http://", "https://")):
        return await _fetch(url, session)

    path = Path(url).expanduser()
    loop = asyncio.get_running_loop()
    try:
        data = await loop.run_in_executor(None, path.read_bytes)
    except OSError as e:
        raise GenerationError(f"Cannot read image {path}: {e}") from e
    return guess_mime_type(url), data


async def _fetch(url: str, session: aiohttp.ClientSession | None) -> tuple[str, bytes]:
    if session is None:
        async with aiohttp.ClientSession() as own:
            return await _fetch(url, own)

    async with session.get(url) as resp:
        if resp.status >= 400:
            raise GenerationError(f"Failed to download image ({resp.status}): {url}")
        data = await resp.read()
        mime_type = resp.headers.get("Content-Type", "").split(";", 1)[0]
        return mime_type or guess_mime_type(url), data


def open_image(data: bytes) -> Image.Image:
    """Decode image bytes into a fully loaded Pillow image."""
    image = Image.open(BytesIO(data))
    image.load()
    return image


async def load_image(ref: str, session: aiohttp.ClientSession | None = None) -> Image.Image:
    """Load an image reference into a Pillow image."""
    _, data = await load_image_bytes(ref, session)
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(None, open_image, data)
    except OSError as e:
        raise GenerationError(f"Unreadable image: {e}") from e


def resize_dimensions(
    width: int,
    height: int,
    mode: str,
    target_width: int,
    target_height: int,
) -> tuple[int, int]:
    """
    Compute output dimensions for a resize.

    Modes:
        longest: longest side becomes target_width
        shortest: shortest side becomes target_width
        width / height: that side becomes the target, aspect kept
        exact: (target_width, target_height)
    """
    if mode not in RESIZE_MODES:
        raise ValueError(f"Unknown resize mode: {mode}")
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid image size {width}x{height}")

    aspect = width / height
    if mode == "exact":
        new_w, new_h = target_width, target_height
    elif mode == "width":
        new_w, new_h = target_width, target_width / aspect
    elif mode == "height":
        new_w, new_h = target_height * aspect, target_height
    elif (mode == "longest") == (width > height):
        new_w, new_h = target_width, target_width / aspect
    else:
        new_w, new_h = target_width * aspect, target_width

    return max(1, round(new_w)), max(1, round(new_h))