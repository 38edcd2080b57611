"""
Settings - Application configuration.

Settings live in ~/.config/canvas_studio/settings.json. A missing file
means defaults. A few environment variables override the file:

- CANVAS_STUDIO_CONCURRENCY: task queue concurrency limit
- CANVAS_STUDIO_DATA_DIR: where canvases are stored
- GEMINI_API_KEY / RUNNINGHUB_API_KEY: provider API keys
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from canvas_studio.adapters.base import ProviderConfig

logger = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "canvas_studio"
SETTINGS_PATH = CONFIG_DIR / "settings.json"

ENV_API_KEYS = {
    "gemini": "GEMINI_API_KEY",
    "runninghub": "RUNNINGHUB_API_KEY",
}


@dataclass
class Settings:
    """
    Engine and provider settings.

    Attributes:
        concurrency_limit: Max simultaneous external calls
        auto_cascade: Run downstream nodes when their inputs become ready
        pull_upstream: Run unfinished upstream nodes before the node itself
        max_batch_count: Upper bound for batch execution counts
        data_dir: Directory holding saved canvases
        poll_interval: Seconds between status polls of long-running tasks
        task_timeout: Seconds before a single adapter call is abandoned (0 = never)
        providers: Per-provider configuration keyed by adapter id
    """
    concurrency_limit: int = 5
    auto_cascade: bool = True
    pull_upstream: bool = False
    max_batch_count: int = 9
    data_dir: Path = field(default_factory=lambda: CONFIG_DIR / "canvases")
    poll_interval: float = 5.0
    task_timeout: float = 900.0
    providers: dict[str, ProviderConfig] = field(default_factory=dict)

    def validate(self) -> None:
        """Raise ValueError if any value is out of range."""
        if self.concurrency_limit < 1:
            raise ValueError(f"concurrency_limit must be >= 1, got {self.concurrency_limit}")
        if self.max_batch_count < 1:
            raise ValueError(f"max_batch_count must be >= 1, got {self.max_batch_count}")
        if self.poll_interval <= 0:
            raise ValueError(f"poll_interval must be > 0, got {self.poll_interval}")
        if self.task_timeout < 0:
            raise ValueError(f"task_timeout must be >= 0, got {self.task_timeout}")

    def get_provider(self, provider_id: str) -> ProviderConfig:
        """Get configuration for a provider."""
        return self.providers.get(provider_id, ProviderConfig())

    def to_dict(self) -> dict[str, Any]:
        return {
            "concurrency_limit": self.concurrency_limit,
            "auto_cascade": self.auto_cascade,
            "pull_upstream": self.pull_upstream,
            "max_batch_count": self.max_batch_count,
            "data_dir": str(self.data_dir),
            "poll_interval": self.poll_interval,
            "task_timeout": self.task_timeout,
            "providers": {pid: cfg.to_dict() for pid, cfg in self.providers.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Settings:
        defaults = cls()
        try:
            settings = cls(
                concurrency_limit=int(data.get("concurrency_limit", defaults.concurrency_limit)),
                auto_cascade=bool(data.get("auto_cascade", defaults.auto_cascade)),
                pull_upstream=bool(data.get("pull_upstream", defaults.pull_upstream)),
                max_batch_count=int(data.get("max_batch_count", defaults.max_batch_count)),
                data_dir=Path(data.get("data_dir") or defaults.data_dir).expanduser(),
                poll_interval=float(data.get("poll_interval", defaults.poll_interval)),
                task_timeout=float(data.get("task_timeout", defaults.task_timeout)),
                providers={
                    pid: ProviderConfig.from_dict(cfg)
                    for pid, cfg in (data.get("providers") or {}).items()
                },
            )
        except (TypeError, AttributeError) as e:
            raise ValueError(f"Invalid settings: {e}") from e
        settings.validate()
        return settings


def load_settings(
    path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> Settings:
    """
    Load settings from file, then apply environment overrides.

    Raises:
        ValueError: The file is not valid JSON or holds invalid values
    """
    if path is None:
        path = SETTINGS_PATH
    if env is None:
        env = os.environ

    data: dict[str, Any] = {}
    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid settings file {path}: {e}") from e
        logger.debug("Loaded settings from %s", path)

    settings = Settings.from_dict(data)
    _apply_env(settings, env)
    settings.validate()
    return settings


def _apply_env(settings: Settings, env: Mapping[str, str]) -> None:
    if env.get("CANVAS_STUDIO_CONCURRENCY"):
        try:
            settings.concurrency_limit = int(env["CANVAS_STUDIO_CONCURRENCY"])
        except ValueError as e:
            raise ValueError(f"Invalid CANVAS_STUDIO_CONCURRENCY: {e}") from e
    if env.get("CANVAS_STUDIO_DATA_DIR"):
        settings.data_dir = Path(env["CANVAS_STUDIO_DATA_DIR"]).expanduser()
    for provider_id, var in ENV_API_KEYS.items():
        if env.get(var):
            config = settings.providers.setdefault(provider_id, ProviderConfig())
            config.api_key = env[var]


def save_settings(settings: Settings, path: Path | None = None) -> None:
    """Save settings to file."""
    if path is None:
        path = SETTINGS_PATH

    # Ensure directory exists
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w", encoding="utf-8") as f:
        json.dump(settings.to_dict(), f, indent=2)
