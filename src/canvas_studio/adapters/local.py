"""
Local Adapter - Node kinds that run in-process.

- text, video, video-output: containers that pass their input through
- resize: Pillow resize (longest / shortest / width / height / exact)
- frame-extractor: returns the frame the user picked
- drawing-board: lays received images out on a board and exports it

Pillow work runs in the default executor so the event loop never blocks.
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import TYPE_CHECKING

from PIL import Image

from canvas_studio.adapters.base import AdapterRequest, AdapterResult, GenerationError, NodeAdapter
from canvas_studio.adapters.imaging import (
    guess_mime_type,
    image_to_data_url,
    is_valid_image,
    load_image,
    resize_dimensions,
)
from canvas_studio.core.errors import MissingInput
from canvas_studio.core.node_types import NodeKind

if TYPE_CHECKING:
    from canvas_studio.core.execution import ExecutionContext

logger = logging.getLogger(__name__)

BOARD_COLUMNS = 3
BOARD_PADDING = 20
BOARD_BACKGROUND = (255, 255, 255, 255)


class LocalAdapter(NodeAdapter):
    """In-process adapter for container and image-utility kinds."""

    id = "local"
    name = "Local"
    kinds = (
        NodeKind.TEXT,
        NodeKind.VIDEO,
        NodeKind.VIDEO_OUTPUT,
        NodeKind.RESIZE,
        NodeKind.FRAME_EXTRACTOR,
        NodeKind.DRAWING_BOARD,
    )

    async def execute(self, request: AdapterRequest, context: ExecutionContext) -> AdapterResult:
        if request.kind in (NodeKind.TEXT, NodeKind.VIDEO, NodeKind.VIDEO_OUTPUT):
            return self._pass_through(request)
        elif request.kind == NodeKind.RESIZE:
            return await self._resize(request, context)
        elif request.kind == NodeKind.FRAME_EXTRACTOR:
            return self._extract_frame(request)
        elif request.kind == NodeKind.DRAWING_BOARD:
            return await self._compose_board(request, context)
        raise GenerationError(f"Local adapter can't run {request.kind.value} nodes")

    def _pass_through(self, request: AdapterRequest) -> AdapterResult:
        value = request.primary
        if isinstance(value, list):
            value = "\n\n".join(str(v) for v in value)
        if not value:
            raise MissingInput("input", request.node_id)
        return AdapterResult(content=value)

    async def _resize(self, request: AdapterRequest, context: ExecutionContext) -> AdapterResult:
        source = request.primary
        image = await load_image(source)
        context.check_cancelled()

        mode = request.field("mode", "longest")
        width = int(request.field("width", 1024))
        height = int(request.field("height", 1024))
        try:
            size = resize_dimensions(image.width, image.height, mode, width, height)
        except ValueError as e:
            raise GenerationError(str(e)) from e

        # PNG sources stay PNG (keeps alpha); everything else becomes JPEG
        mime_type = "image/png" if guess_mime_type(source) == "image/png" else "image/jpeg"

        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, _resize_sync, image, size, mime_type)
        logger.debug("Resized %dx%d -> %dx%d", image.width, image.height, *size)
        return AdapterResult(content=result)

    def _extract_frame(self, request: AdapterRequest) -> AdapterResult:
        frame = request.field("selected_frame")
        if not is_valid_image(frame):
            raise MissingInput("selected_frame", request.node_id)
        return AdapterResult(output=frame)

    async def _compose_board(self, request: AdapterRequest, context: ExecutionContext) -> AdapterResult:
        refs = [ref for ref in request.inputs.get("input", []) if is_valid_image(ref)]
        if not refs:
            raise MissingInput("input", request.node_id)

        images = []
        for ref in refs:
            context.check_cancelled()
            images.append(await load_image(ref))

        board_size = (
            int(request.field("board_width", 1024)),
            int(request.field("board_height", 1024)),
        )
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, _compose_sync, images, board_size)
        return AdapterResult(output=result, fields={"received_images": refs})


def _resize_sync(image: Image.Image, size: tuple[int, int], mime_type: str) -> str:
    resized = image.resize(size, Image.Resampling.LANCZOS)
    return image_to_data_url(resized, mime_type)


def _compose_sync(images: list[Image.Image], board_size: tuple[int, int]) -> str:
    """Lay images out in a grid, each scaled to fit its cell."""
    board = Image.new("RGBA", board_size, BOARD_BACKGROUND)
    columns = min(BOARD_COLUMNS, len(images))
    rows = math.ceil(len(images) / columns)
    cell_w = (board_size[0] - BOARD_PADDING * (columns + 1)) // columns
    cell_h = (board_size[1] - BOARD_PADDING * (rows + 1)) // rows
    if cell_w < 1 or cell_h < 1:
        raise GenerationError(f"Board {board_size[0]}x{board_size[1]} is too small")

    for index, image in enumerate(images):
        tile = image.convert("RGBA")
        tile.thumbnail((cell_w, cell_h), Image.Resampling.LANCZOS)
        col, row = index % columns, index // columns
        x = BOARD_PADDING + col * (cell_w + BOARD_PADDING) + (cell_w - tile.width) // 2
        y = BOARD_PADDING + row * (cell_h + BOARD_PADDING) + (cell_h - tile.height) // 2
        board.alpha_composite(tile, (x, y))

    return image_to_data_url(board)
