"""
Node Kind System - Capability table for every node kind on the canvas.

This module defines how node kinds are specified:
- DataType: What flows along a connection
- NodeKind: The closed set of node variants
- InputDefinition: Describes an input port
- NodeKindSpec: Complete definition of a node kind
- KIND_SPECS: The lookup table the resolver, engine and graph consult

Each kind has at most one unnamed (primary) input port and any number of
named ports. A connection without a port targets the primary port.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable


class DataType(Enum):
    """
    Enumeration of data types that can flow through node connections.

    Image and video values are references (URL, file path or data URL);
    text values are plain strings.
    """
    TEXT = auto()
    IMAGE = auto()
    VIDEO = auto()

    # Accepts any type (relay and external-app nodes)
    ANY = auto()

    def is_compatible_with(self, other: DataType) -> bool:
        """Check if this type can connect to another type."""
        if self == DataType.ANY or other == DataType.ANY:
            return True
        return self == other


class NodeKind(str, Enum):
    """Closed set of node variants."""
    # Content sources / sinks
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    VIDEO_OUTPUT = "video-output"

    # Transforms
    EDIT = "edit"
    REMOVE_BG = "remove-bg"
    UPSCALE = "upscale"
    RESIZE = "resize"

    # Generative
    IDEA = "idea"
    BP = "bp"
    LLM = "llm"
    RUNNINGHUB = "runninghub"
    RELAY = "relay"

    # Utility
    FRAME_EXTRACTOR = "frame-extractor"
    DRAWING_BOARD = "drawing-board"


class NodeCategory(Enum):
    """Categories for organizing node kinds."""
    SOURCE = "source"
    TRANSFORM = "transform"
    GENERATIVE = "generative"
    UTILITY = "utility"


class ResultSlot(Enum):
    """Where a completed run stores its result on the node."""
    CONTENT = "content"
    OUTPUT = "output"


# Key used for the unnamed input port in resolved inputs and error messages
PRIMARY_PORT = "input"


@dataclass
class InputDefinition:
    """
    Definition of an input port on a node kind.

    Attributes:
        name: Port identifier (the connection's to_port for named ports)
        label: Display label in UI
        data_type: Type of data accepted
        required: If True, the node cannot execute without a value here
        multiple: If True, all upstream values are aggregated into a list
        default_value: Value to use if neither connected nor set locally
    """
    name: str
    label: str
    data_type: DataType
    required: bool = False
    multiple: bool = False
    default_value: Any = None
    description: str = ""


@dataclass
class NodeKindSpec:
    """
    Complete definition of a node kind.

    Nodes in a graph reference a NodeKindSpec through their kind. The
    engine dispatches to adapters by kind; this table tells the graph and
    the resolver which ports exist and what they carry.
    """
    kind: NodeKind
    name: str
    category: NodeCategory
    description: str = ""

    primary: InputDefinition | None = None
    ports: list[InputDefinition] = field(default_factory=list)
    output_type: DataType = DataType.ANY
    result_slot: ResultSlot = ResultSlot.CONTENT

    # Relays are resolved lazily and never run on their own
    executable: bool = True

    # At least one of these inputs must resolve (PRIMARY_PORT for the unnamed port)
    requires_any: tuple[str, ...] = ()

    # Ports derived from the node's own fields (external-app parameters)
    dynamic_ports: Callable[[dict[str, Any]], list[InputDefinition]] | None = None

    default_fields: dict[str, Any] = field(default_factory=dict)

    def get_ports(self, fields: dict[str, Any] | None = None) -> list[InputDefinition]:
        """Get all named ports, including ones derived from fields."""
        ports = list(self.ports)
        if self.dynamic_ports is not None:
            ports.extend(self.dynamic_ports(fields or {}))
        return ports

    def get_port(
        self, name: str | None, fields: dict[str, Any] | None = None
    ) -> InputDefinition | None:
        """Get a port by name; None means the primary port."""
        if name is None:
            return self.primary
        for port in self.get_ports(fields):
            if port.name == name:
                return port
        return None

    def get_default_fields(self) -> dict[str, Any]:
        """Get a fresh copy of the default fields for a new node."""
        return copy.deepcopy(self.default_fields)


def runninghub_ports(fields: dict[str, Any]) -> list[InputDefinition]:
    """One port per external app parameter, keyed "<nodeId>_<fieldName>"."""
    overrides = fields.get("node_inputs") or {}
    ports = []
    for info in fields.get("node_info_list") or []:
        key = f"{info.get('nodeId')}_{info.get('fieldName')}"
        field_type = str(info.get("fieldType", "")).upper()
        if field_type == "IMAGE":
            data_type = DataType.IMAGE
        elif field_type == "VIDEO":
            data_type = DataType.VIDEO
        else:
            data_type = DataType.TEXT
        default = overrides.get(key, info.get("fieldValue"))
        ports.append(InputDefinition(
            name=key,
            label=info.get("description") or info.get("fieldName") or key,
            data_type=data_type,
            required=data_type is not DataType.TEXT,
            default_value=default,
        ))
    return ports


def _prompt_port() -> InputDefinition:
    return InputDefinition(
        name="prompt",
        label="Prompt",
        data_type=DataType.TEXT,
        description="Overrides the node's own prompt when connected",
    )


KIND_SPECS: dict[NodeKind, NodeKindSpec] = {
    NodeKind.TEXT: NodeKindSpec(
        kind=NodeKind.TEXT,
        name="Text",
        category=NodeCategory.SOURCE,
        primary=InputDefinition(PRIMARY_PORT, "Text", DataType.TEXT),
        output_type=DataType.TEXT,
    ),
    NodeKind.IMAGE: NodeKindSpec(
        kind=NodeKind.IMAGE,
        name="Image",
        category=NodeCategory.SOURCE,
        description="Uploaded image, or text-to-image / image-to-image generation",
        primary=InputDefinition(PRIMARY_PORT, "Image", DataType.IMAGE),
        ports=[_prompt_port()],
        output_type=DataType.IMAGE,
        requires_any=(PRIMARY_PORT, "prompt"),
        default_fields={"prompt": "", "aspect_ratio": "AUTO", "resolution": "2K"},
    ),
    NodeKind.VIDEO: NodeKindSpec(
        kind=NodeKind.VIDEO,
        name="Video",
        category=NodeCategory.SOURCE,
        primary=InputDefinition(PRIMARY_PORT, "Video", DataType.VIDEO),
        output_type=DataType.VIDEO,
    ),
    NodeKind.VIDEO_OUTPUT: NodeKindSpec(
        kind=NodeKind.VIDEO_OUTPUT,
        name="Video Output",
        category=NodeCategory.SOURCE,
        primary=InputDefinition(PRIMARY_PORT, "Video", DataType.VIDEO, required=True),
        output_type=DataType.VIDEO,
    ),
    NodeKind.EDIT: NodeKindSpec(
        kind=NodeKind.EDIT,
        name="Edit",
        category=NodeCategory.TRANSFORM,
        description="Edit one or more reference images with a prompt",
        primary=InputDefinition(PRIMARY_PORT, "Images", DataType.IMAGE, multiple=True),
        ports=[_prompt_port()],
        output_type=DataType.IMAGE,
        result_slot=ResultSlot.OUTPUT,
        requires_any=(PRIMARY_PORT, "prompt"),
        default_fields={"prompt": "", "aspect_ratio": "AUTO", "resolution": "AUTO"},
    ),
    NodeKind.REMOVE_BG: NodeKindSpec(
        kind=NodeKind.REMOVE_BG,
        name="Remove Background",
        category=NodeCategory.TRANSFORM,
        primary=InputDefinition(PRIMARY_PORT, "Image", DataType.IMAGE, required=True),
        output_type=DataType.IMAGE,
    ),
    NodeKind.UPSCALE: NodeKindSpec(
        kind=NodeKind.UPSCALE,
        name="Upscale",
        category=NodeCategory.TRANSFORM,
        primary=InputDefinition(PRIMARY_PORT, "Image", DataType.IMAGE, required=True),
        output_type=DataType.IMAGE,
        default_fields={"resolution": "2K"},
    ),
    NodeKind.RESIZE: NodeKindSpec(
        kind=NodeKind.RESIZE,
        name="Resize",
        category=NodeCategory.TRANSFORM,
        primary=InputDefinition(PRIMARY_PORT, "Image", DataType.IMAGE, required=True),
        output_type=DataType.IMAGE,
        default_fields={"mode": "longest", "width": 1024, "height": 1024},
    ),
    NodeKind.IDEA: NodeKindSpec(
        kind=NodeKind.IDEA,
        name="Idea",
        category=NodeCategory.GENERATIVE,
        description="Creative idea whose text is used as an image prompt",
        primary=InputDefinition(PRIMARY_PORT, "Prompt", DataType.TEXT),
        output_type=DataType.IMAGE,
        result_slot=ResultSlot.OUTPUT,
        requires_any=(PRIMARY_PORT,),
        default_fields={"aspect_ratio": "1:1", "resolution": "1K"},
    ),
    NodeKind.BP: NodeKindSpec(
        kind=NodeKind.BP,
        name="BP Template",
        category=NodeCategory.GENERATIVE,
        description="Creative-library template with input and agent fields",
        primary=InputDefinition(PRIMARY_PORT, "Image", DataType.IMAGE),
        output_type=DataType.IMAGE,
        result_slot=ResultSlot.OUTPUT,
        default_fields={
            "template": None,
            "bp_inputs": {},
            "aspect_ratio": "1:1",
            "resolution": "2K",
        },
    ),
    NodeKind.LLM: NodeKindSpec(
        kind=NodeKind.LLM,
        name="LLM / Vision",
        category=NodeCategory.GENERATIVE,
        primary=InputDefinition(PRIMARY_PORT, "Text", DataType.TEXT),
        ports=[InputDefinition("image", "Image", DataType.IMAGE)],
        output_type=DataType.TEXT,
        result_slot=ResultSlot.OUTPUT,
        requires_any=(PRIMARY_PORT, "image"),
        default_fields={"prompt": "", "system_instruction": ""},
    ),
    NodeKind.RUNNINGHUB: NodeKindSpec(
        kind=NodeKind.RUNNINGHUB,
        name="External App",
        category=NodeCategory.GENERATIVE,
        description="RunningHub AI application with one port per parameter",
        output_type=DataType.ANY,
        dynamic_ports=runninghub_ports,
        default_fields={"webapp_id": "", "node_info_list": [], "node_inputs": {}},
    ),
    NodeKind.RELAY: NodeKindSpec(
        kind=NodeKind.RELAY,
        name="Relay",
        category=NodeCategory.GENERATIVE,
        primary=InputDefinition(PRIMARY_PORT, "Input", DataType.ANY, required=True),
        output_type=DataType.ANY,
        executable=False,
    ),
    NodeKind.FRAME_EXTRACTOR: NodeKindSpec(
        kind=NodeKind.FRAME_EXTRACTOR,
        name="Frame Extractor",
        category=NodeCategory.UTILITY,
        primary=InputDefinition(PRIMARY_PORT, "Video", DataType.VIDEO, required=True),
        output_type=DataType.IMAGE,
        result_slot=ResultSlot.OUTPUT,
        default_fields={"frame_time": 0.0, "selected_frame": ""},
    ),
    NodeKind.DRAWING_BOARD: NodeKindSpec(
        kind=NodeKind.DRAWING_BOARD,
        name="Drawing Board",
        category=NodeCategory.UTILITY,
        primary=InputDefinition(PRIMARY_PORT, "Images", DataType.IMAGE, multiple=True),
        output_type=DataType.IMAGE,
        result_slot=ResultSlot.OUTPUT,
        requires_any=(PRIMARY_PORT,),
        default_fields={"board_width": 1024, "board_height": 1024, "received_images": []},
    ),
}


def get_kind_spec(kind: NodeKind | str) -> NodeKindSpec:
    """Get the capability entry for a kind. Raises ValueError for unknown kinds."""
    return KIND_SPECS[NodeKind(kind)]
