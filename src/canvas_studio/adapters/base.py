"""
Adapter Base - Abstract base class and request/result structures.

This module provides the foundation for all node adapters:
- AdapterRequest/AdapterResult: What an adapter receives and returns
- NodeAdapter: Abstract base class; one adapter serves one or more kinds
- ProviderConfig: API key and endpoint settings of an external service
- Provider errors raised by HTTP adapters

Adapters are the only place that performs network I/O. The engine wraps
any exception they raise as an AdapterFailure on the node.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from canvas_studio.core.execution import ExecutionContext
    from canvas_studio.core.node_types import NodeKind
    from canvas_studio.core.resolver import ResolvedInputs


@dataclass
class AdapterRequest:
    """
    One run of one node.

    Attributes:
        node_id: Node the run belongs to
        kind: Node kind selecting the behaviour
        inputs: Resolved inputs (primary + named ports)
        fields: Copy of the node's configuration fields
    """
    node_id: str
    kind: NodeKind
    inputs: ResolvedInputs
    fields: dict[str, Any] = field(default_factory=dict)

    @property
    def primary(self) -> Any:
        return self.inputs.get("input")

    def field(self, name: str, default: Any = None) -> Any:
        value = self.fields.get(name)
        return default if value in (None, "") else value


@dataclass
class AdapterResult:
    """Result of a run; None leaves the slot untouched."""
    content: str | None = None
    output: Any = None
    fields: dict[str, Any] = field(default_factory=dict)

    @property
    def value(self) -> Any:
        """The primary result, whichever slot it went to."""
        return self.output if self.output is not None else self.content


@dataclass
class ProviderConfig:
    """Configuration for an external service."""
    api_key: str = ""
    enabled: bool = True
    base_url: str | None = None  # Override default URL
    default_model: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "api_key": self.api_key,
            "enabled": self.enabled,
            "base_url": self.base_url,
            "default_model": self.default_model,
            "extra": self.extra,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProviderConfig:
        return cls(
            api_key=data.get("api_key", ""),
            enabled=data.get("enabled", True),
            base_url=data.get("base_url"),
            default_model=data.get("default_model"),
            extra=data.get("extra", {}),
        )


class ProviderError(Exception):
    """Base exception for provider errors."""
    pass


class AuthenticationError(ProviderError):
    """API key invalid or missing."""
    pass


class RateLimitError(ProviderError):
    """Rate limit exceeded."""
    retry_after: float | None = None


class GenerationError(ProviderError):
    """Error during generation."""
    pass


class NodeAdapter(ABC):
    """
    Abstract base class for node adapters.

    Each adapter declares the kinds it serves; the registry maps kinds to
    adapter instances.
    """

    id: str = ""
    name: str = ""
    kinds: tuple[NodeKind, ...] = ()

    @abstractmethod
    async def execute(self, request: AdapterRequest, context: ExecutionContext) -> AdapterResult:
        """
        Run one node.

        Args:
            request: Kind, resolved inputs and fields
            context: Abort signal, progress reporting and settings

        Returns:
            AdapterResult with content and/or output

        Raises:
            AuthenticationError: Invalid API key
            RateLimitError: Rate limit exceeded
            GenerationError: The service failed or returned nothing
            Cancelled: The run was aborted
        """
        ...


class HTTPAdapter(NodeAdapter):
    """Base for adapters that talk to an external service."""

    base_url: str = ""

    def __init__(self, config: ProviderConfig):
        self.config = config
        if config.base_url:
            self.base_url = config.base_url.rstrip("/")

    @property
    def api_key(self) -> str:
        return self.config.api_key

    @property
    def is_configured(self) -> bool:
        """Check if the adapter has necessary configuration."""
        return bool(self.config.api_key)

    def require_api_key(self) -> str:
        if not self.is_configured:
            raise AuthenticationError(f"{self.name} API key is not configured")
        return self.api_key

    def get_headers(self) -> dict[str, str]:
        """Get default headers for API requests."""
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
