"""
Node Adapters.

This package provides the external-call side of node execution:
- Gemini: image generation/editing, remove-bg, upscale, idea, BP, LLM
- RunningHub: external AI applications
- Local: containers, resize, frame extractor, drawing board

Usage:
    from canvas_studio.adapters import default_registry

    registry = default_registry(settings)
    adapter = registry.get(NodeKind.UPSCALE)
"""

from canvas_studio.adapters.base import (
    AdapterRequest,
    AdapterResult,
    AuthenticationError,
    GenerationError,
    HTTPAdapter,
    NodeAdapter,
    ProviderConfig,
    ProviderError,
    RateLimitError,
)
from canvas_studio.adapters.gemini import GeminiAdapter
from canvas_studio.adapters.local import LocalAdapter
from canvas_studio.adapters.registry import AdapterRegistry, default_registry
from canvas_studio.adapters.runninghub import RunningHubAdapter


__all__ = [
    # Base classes
    "NodeAdapter",
    "HTTPAdapter",
    "AdapterRequest",
    "AdapterResult",
    "ProviderConfig",
    # Exceptions
    "ProviderError",
    "AuthenticationError",
    "RateLimitError",
    "GenerationError",
    # Registry
    "AdapterRegistry",
    "default_registry",
    # Adapters
    "GeminiAdapter",
    "LocalAdapter",
    "RunningHubAdapter",
]
