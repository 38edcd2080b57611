"""
Creative Templates - Read-only import of creative-library entries.

A creative template is a prompt string with two kinds of variables:
- /name   replaced by a user-entered input field
- {name}  replaced by the result of an agent field (an LLM instruction
          that may itself reference inputs and earlier agents)

Idea and BP nodes copy a template into their fields; nothing is ever
written back to the library.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from canvas_studio.core.errors import StructuralError
from canvas_studio.core.graph import Node
from canvas_studio.core.node_types import NodeKind

logger = logging.getLogger(__name__)


@dataclass
class TemplateField:
    """One variable of a template: a user input or an agent."""
    id: str
    name: str
    type: str = "input"  # "input" | "agent"
    label: str = ""
    instruction: str = ""
    model: str | None = None

    @property
    def is_agent(self) -> bool:
        return self.type == "agent"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TemplateField:
        agent = data.get("agentConfig") or {}
        return cls(
            id=str(data.get("id") or data["name"]),
            name=data["name"],
            type=data.get("type", "input"),
            label=data.get("label") or data["name"],
            instruction=agent.get("instruction", ""),
            model=agent.get("model"),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "label": self.label,
        }
        if self.is_agent:
            data["agentConfig"] = {"instruction": self.instruction, "model": self.model}
        return data


@dataclass
class CreativeTemplate:
    """A creative-library entry as seen by idea and BP nodes."""
    id: str
    title: str
    prompt: str
    fields: list[TemplateField] = field(default_factory=list)
    suggested_aspect_ratio: str | None = None
    suggested_resolution: str | None = None

    @property
    def input_fields(self) -> list[TemplateField]:
        return [f for f in self.fields if not f.is_agent]

    @property
    def agent_fields(self) -> list[TemplateField]:
        return [f for f in self.fields if f.is_agent]

    def input_values(self, bp_inputs: dict[str, Any]) -> dict[str, str]:
        """User values for every input field, looked up by id then name."""
        values = {}
        for f in self.input_fields:
            value = bp_inputs.get(f.id) or bp_inputs.get(f.name) or ""
            values[f.name] = str(value)
        return values

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CreativeTemplate:
        if "prompt" not in data:
            raise ValueError("Template has no prompt")
        return cls(
            id=str(data.get("id", "")),
            title=data.get("title", ""),
            prompt=data["prompt"],
            fields=[TemplateField.from_dict(f) for f in data.get("bpFields") or []],
            suggested_aspect_ratio=data.get("suggestedAspectRatio"),
            suggested_resolution=data.get("suggestedResolution"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "prompt": self.prompt,
            "bpFields": [f.to_dict() for f in self.fields],
            "suggestedAspectRatio": self.suggested_aspect_ratio,
            "suggestedResolution": self.suggested_resolution,
        }


def render_prompt(
    template: str,
    inputs: dict[str, str],
    agents: dict[str, str] | None = None,
) -> str:
    """Substitute /input and {agent} variables into a template string."""
    # Longest names first so /style doesn't clobber /style_detail
    for name in sorted(inputs, key=len, reverse=True):
        template = template.replace(f"/{name}", inputs[name])
    for name, value in (agents or {}).items():
        template = template.replace(f"{{{name}}}", value)
    return template


def load_library(path: Path) -> list[CreativeTemplate]:
    """
    Load creative templates from a JSON list of library entries.

    Entries that can't be parsed are skipped with a warning.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)

    templates = []
    for entry in data if isinstance(data, list) else data.get("data", []):
        try:
            templates.append(CreativeTemplate.from_dict(entry))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping creative entry %s: %s", entry.get("id"), e)
    return templates


def instantiate_template(node: Node, template: CreativeTemplate) -> Node:
    """
    Seed an idea or BP node from a template.

    Idea nodes take the prompt as content; BP nodes store the template and
    an empty value for each input field. Suggested aspect ratio and
    resolution become the node's settings.
    """
    if node.is_running:
        raise StructuralError(f"Node {node.id[:8]} is running")

    if node.kind == NodeKind.IDEA:
        node.content = template.prompt
    elif node.kind == NodeKind.BP:
        node.fields["template"] = template.to_dict()
        node.fields["bp_inputs"] = {f.name: "" for f in template.input_fields}
    else:
        raise StructuralError(f"Cannot apply a template to a {node.kind.value} node")

    if template.suggested_aspect_ratio:
        node.fields["aspect_ratio"] = template.suggested_aspect_ratio
    if template.suggested_resolution:
        node.fields["resolution"] = template.suggested_resolution
    if not node.title:
        node.title = template.title
    return node
