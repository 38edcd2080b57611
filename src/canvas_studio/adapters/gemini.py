"""
Google Gemini Adapter - Creative image and text generation.

Serves image, edit, remove-bg, upscale, idea, bp and llm nodes through the
:generateContent endpoint:
- Text-to-image and image editing (reference images sent as inline data)
- Remove-background and upscale as fixed edit prompts
- LLM / vision text for llm nodes and BP agent fields

API Reference:
- https://ai.google.dev/gemini-api/docs/image-generation
"""

from __future__ import annotations

import base64
import logging
from typing import Any, TYPE_CHECKING

import aiohttp

from canvas_studio.adapters.base import (
    AdapterRequest,
    AdapterResult,
    AuthenticationError,
    GenerationError,
    HTTPAdapter,
    ProviderConfig,
    RateLimitError,
)
from canvas_studio.adapters.imaging import is_valid_image, load_image_bytes, to_data_url
from canvas_studio.core.errors import MissingInput
from canvas_studio.core.node_types import NodeKind
from canvas_studio.core.templates import CreativeTemplate, render_prompt

if TYPE_CHECKING:
    from canvas_studio.core.execution import ExecutionContext

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_MODEL = "gemini-3-pro-image-preview"
DEFAULT_CHAT_MODEL = "gemini-2.5-pro"

REMOVE_BG_PROMPT = "Remove the background, keep subject on transparent or white background"
UPSCALE_PROMPT = (
    "Upscale this image to high resolution while preserving all original details, "
    "colors, and composition. Enhance clarity and sharpness without altering the content."
)
LLM_SYSTEM_PROMPT = "You are a helpful assistant."
AGENT_SYSTEM_PROMPT = (
    "You are a creative assistant. Generate content based on the given instruction. "
    "Output ONLY the requested content, no explanations."
)

AUTO = "AUTO"


def _is_auto(value: Any) -> bool:
    return not value or str(value).upper() == AUTO


class GeminiAdapter(HTTPAdapter):
    """
    Gemini creative adapter.

    Image-producing kinds return a data URL. The image model comes from
    config.default_model, the text model from config.extra["chat_model"].
    """

    id = "gemini"
    name = "Google Gemini"
    base_url = "https://generativelanguage.googleapis.com/v1beta"
    kinds = (
        NodeKind.IMAGE,
        NodeKind.EDIT,
        NodeKind.REMOVE_BG,
        NodeKind.UPSCALE,
        NodeKind.IDEA,
        NodeKind.BP,
        NodeKind.LLM,
    )

    def __init__(self, config: ProviderConfig):
        super().__init__(config)
        self.image_model = config.default_model or DEFAULT_IMAGE_MODEL
        self.chat_model = config.extra.get("chat_model", DEFAULT_CHAT_MODEL)

    async def execute(self, request: AdapterRequest, context: ExecutionContext) -> AdapterResult:
        handlers = {
            NodeKind.IMAGE: self._run_image,
            NodeKind.EDIT: self._run_edit,
            NodeKind.REMOVE_BG: self._run_remove_bg,
            NodeKind.UPSCALE: self._run_upscale,
            NodeKind.IDEA: self._run_idea,
            NodeKind.BP: self._run_bp,
            NodeKind.LLM: self._run_llm,
        }
        handler = handlers.get(request.kind)
        if handler is None:
            raise GenerationError(f"Gemini adapter can't run {request.kind.value} nodes")
        return await handler(request, context)

    # --- Kinds ---

    async def _run_image(self, request: AdapterRequest, context: ExecutionContext) -> AdapterResult:
        prompt = request.inputs.get("prompt") or ""
        image = request.primary
        images = [image] if is_valid_image(image) else []

        if not prompt and not images:
            raise MissingInput("input/prompt", request.node_id)
        if not prompt:
            # Container mode: pass the image through
            return AdapterResult(content=images[0])

        if images:
            result = await self.generate_image(prompt, images, context=context)
        else:
            aspect = request.field("aspect_ratio", AUTO)
            result = await self.generate_image(
                prompt,
                aspect_ratio="1:1" if _is_auto(aspect) else aspect,
                image_size=request.field("resolution", "2K"),
                context=context,
            )
        return AdapterResult(content=result)

    async def _run_edit(self, request: AdapterRequest, context: ExecutionContext) -> AdapterResult:
        prompt = request.inputs.get("prompt") or ""
        images = [img for img in request.inputs.get("input", []) if is_valid_image(img)]

        if not prompt and not images:
            raise MissingInput("input/prompt", request.node_id)
        if not prompt:
            return AdapterResult(output=images[0])

        aspect = request.field("aspect_ratio", AUTO)
        resolution = request.field("resolution", AUTO)
        aspect_ratio = image_size = None
        # Both AUTO lets the service keep the reference image's proportions
        if not (_is_auto(aspect) and _is_auto(resolution)):
            aspect_ratio = "1:1" if _is_auto(aspect) else aspect
            image_size = "1K" if _is_auto(resolution) else resolution

        result = await self.generate_image(
            prompt, images, aspect_ratio=aspect_ratio, image_size=image_size, context=context
        )
        return AdapterResult(output=result)

    async def _run_remove_bg(self, request: AdapterRequest, context: ExecutionContext) -> AdapterResult:
        result = await self.generate_image(REMOVE_BG_PROMPT, [request.primary], context=context)
        return AdapterResult(content=result)

    async def _run_upscale(self, request: AdapterRequest, context: ExecutionContext) -> AdapterResult:
        result = await self.generate_image(
            UPSCALE_PROMPT,
            [request.primary],
            image_size=request.field("resolution", "2K"),
            context=context,
        )
        return AdapterResult(content=result)

    async def _run_idea(self, request: AdapterRequest, context: ExecutionContext) -> AdapterResult:
        result = await self.generate_image(
            request.primary,
            aspect_ratio=request.field("aspect_ratio", "1:1"),
            image_size=request.field("resolution", "1K"),
            context=context,
        )
        return AdapterResult(output=result)

    async def _run_bp(self, request: AdapterRequest, context: ExecutionContext) -> AdapterResult:
        template_data = request.fields.get("template")
        if not template_data:
            raise GenerationError("BP node has no template")
        template = CreativeTemplate.from_dict(template_data)
        image = request.primary
        images = [image] if is_valid_image(image) else []

        inputs = template.input_values(request.fields.get("bp_inputs") or {})
        agents: dict[str, str] = {}
        for agent in template.agent_fields:
            context.check_cancelled()
            instruction = render_prompt(agent.instruction, inputs, agents)
            logger.debug("Running BP agent %s", agent.name)
            agents[agent.name] = await self.chat(
                instruction, AGENT_SYSTEM_PROMPT, images[:1], model=agent.model, context=context
            )

        prompt = render_prompt(template.prompt, inputs, agents)
        result = await self.generate_image(
            prompt,
            images,
            aspect_ratio=request.field("aspect_ratio", "1:1"),
            image_size=request.field("resolution", "2K"),
            context=context,
        )
        return AdapterResult(output=result, fields={"rendered_prompt": prompt})

    async def _run_llm(self, request: AdapterRequest, context: ExecutionContext) -> AdapterResult:
        prompt = request.field("prompt") or request.primary or ""
        system = request.field("system_instruction", LLM_SYSTEM_PROMPT)
        image = request.inputs.get("image")
        images = [image] if is_valid_image(image) else []
        text = await self.chat(prompt, system, images, context=context)
        return AdapterResult(output=text)

    # --- API calls ---

    async def generate_image(
        self,
        prompt: str,
        images: list[str] | None = None,
        aspect_ratio: str | None = None,
        image_size: str | None = None,
        context: ExecutionContext | None = None,
    ) -> str:
        """Generate or edit an image; returns a data URL."""
        url = f"{self.base_url}/models/{self.image_model}:generateContent"

        parts = await self._image_parts(images or [])
        parts.append({"text": prompt})

        generation_config: dict[str, Any] = {"responseModalities": ["Image"]}
        image_config: dict[str, Any] = {}
        if aspect_ratio:
            image_config["aspectRatio"] = aspect_ratio
        if image_size:
            image_config["imageSize"] = image_size
        if image_config:
            generation_config["imageConfig"] = image_config

        body = {
            "contents": [{"parts": parts}],
            "generationConfig": generation_config,
        }

        if context is not None:
            context.check_cancelled()
        response = await self._post(url, body)
        if context is not None:
            context.check_cancelled()

        image_url = self._parse_image(response)
        if image_url is None:
            raise GenerationError(self._no_result_message(response, "image"))
        return image_url

    async def chat(
        self,
        prompt: str,
        system: str = LLM_SYSTEM_PROMPT,
        images: list[str] | None = None,
        model: str | None = None,
        context: ExecutionContext | None = None,
    ) -> str:
        """Run a text (optionally vision) prompt; returns the reply text."""
        url = f"{self.base_url}/models/{model or self.chat_model}:generateContent"

        parts = await self._image_parts(images or [])
        parts.append({"text": prompt})
        body = {
            "systemInstruction": {"parts": [{"text": system}]},
            "contents": [{"role": "user", "parts": parts}],
        }

        if context is not None:
            context.check_cancelled()
        response = await self._post(url, body)
        if context is not None:
            context.check_cancelled()

        text = self._parse_text(response)
        if text is None:
            raise GenerationError(self._no_result_message(response, "text"))
        return text

    async def _image_parts(self, images: list[str]) -> list[dict]:
        parts = []
        for ref in images:
            mime_type, data = await load_image_bytes(ref)
            parts.append({
                "inlineData": {
                    "mimeType": mime_type,
                    "data": base64.b64encode(data).decode(),
                }
            })
        return parts

    def _parse_image(self, data: dict) -> str | None:
        for candidate in data.get("candidates", []):
            for part in candidate.get("content", {}).get("parts", []):
                inline = part.get("inlineData")
                if inline and inline.get("data"):
                    raw = base64.b64decode(inline["data"])
                    return to_data_url(raw, inline.get("mimeType", "image/png"))
        return None

    def _parse_text(self, data: dict) -> str | None:
        texts = [
            part["text"]
            for candidate in data.get("candidates", [])
            for part in candidate.get("content", {}).get("parts", [])
            if part.get("text")
        ]
        return "".join(texts) if texts else None

    def _no_result_message(self, data: dict, what: str) -> str:
        feedback = data.get("promptFeedback", {})
        if feedback.get("blockReason"):
            return f"Gemini blocked the request: {feedback['blockReason']}"
        for candidate in data.get("candidates", []):
            reason = candidate.get("finishReason")
            if reason and reason != "STOP":
                return f"Gemini returned no {what} (finish reason: {reason})"
        return f"No {what} in Gemini response"

    async def _post(self, url: str, body: dict) -> dict:
        """Make POST request with JSON body and API key in query string."""
        url_with_key = f"{url}?key={self.require_api_key()}"

        async with aiohttp.ClientSession() as session:
            async with session.post(
                url_with_key,
                json=body,
                headers={"Content-Type": "application/json"},
            ) as resp:
                data = await resp.json(content_type=None) or {}
                self._check_error(resp.status, data)
                return data

    def _check_error(self, status: int, data: dict) -> None:
        """Check for API errors."""
        if status == 401 or status == 403:
            raise AuthenticationError("Invalid Google API key")
        elif status == 429:
            error = RateLimitError("Google API rate limit exceeded")
            error.retry_after = 60
            raise error
        elif status >= 400:
            error_msg = data.get("error", {}).get("message", "Unknown error")
            raise GenerationError(f"Google API error: {error_msg}")
