"""
Shape Compiler
==============

Converts simplified shape descriptors into Excalidraw elements.

Supported shape types:
- rectangle, ellipse, diamond: optional ``label`` becomes a bound text element
- text: free-standing text (``text``, falling back to ``label``)
- arrow: optional ``points``, ``startBinding``/``endBinding`` and ``label``
- line: optional ``points``

Example input::

    [
        {"type": "rectangle", "x": 100, "y": 100, "width": 200, "height": 100,
         "label": "Service A", "id": "svc-a"},
        {"type": "ellipse", "x": 400, "y": 100, "width": 150, "height": 150, "label": "DB"},
        {"type": "arrow", "x": 300, "y": 150, "width": 100,
         "startBinding": "svc-a", "endBinding": "db"},
        {"type": "text", "x": 100, "y": 250, "text": "Architecture Diagram"}
    ]
"""

import logging
import random
import time
import uuid
from typing import Annotated, Any, Iterable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

SHAPE_KINDS = ("rectangle", "ellipse", "diamond", "text", "arrow", "line")

Point = tuple[float, float]
PointList = Annotated[list[Point], Field(min_length=2)]


class InvalidShapeError(ValueError):
    """A descriptor of a supported kind has fields that fail validation."""


# ============================================================================
# Descriptor Models
# ============================================================================

class _BaseShape(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    id: Optional[str] = None
    x: float = 0
    y: float = 0
    width: float = 100
    height: float = 100
    stroke_color: str = "#1e1e1e"
    background_color: str = "transparent"
    fill_style: Literal["hachure", "cross-hatch", "solid", "zigzag"] = "hachure"
    stroke_width: float = 2
    stroke_style: Literal["solid", "dashed", "dotted"] = "solid"
    roughness: float = 1
    opacity: float = Field(default=100, ge=0, le=100)
    group_id: Optional[str] = None


class _LabelledShape(_BaseShape):
    label: Optional[str] = None
    font_size: float = 16
    font_family: int = 5


class RectangleShape(_LabelledShape):
    type: Literal["rectangle"]


class EllipseShape(_LabelledShape):
    type: Literal["ellipse"]


class DiamondShape(_LabelledShape):
    type: Literal["diamond"]


class TextShape(_BaseShape):
    type: Literal["text"]
    text: Optional[str] = None
    label: Optional[str] = None
    font_size: float = 20
    font_family: int = 5
    text_align: Literal["left", "center", "right"] = "left"


class ArrowShape(_LabelledShape):
    type: Literal["arrow"]
    # Linear shapes default to a horizontal segment
    height: float = 0
    points: Optional[PointList] = None
    start_binding: Optional[str] = None
    end_binding: Optional[str] = None
    start_arrowhead: Optional[str] = None
    end_arrowhead: Optional[str] = "arrow"


class LineShape(_BaseShape):
    type: Literal["line"]
    height: float = 0
    points: Optional[PointList] = None


ShapeDescriptor = Annotated[
    Union[RectangleShape, EllipseShape, DiamondShape, TextShape, ArrowShape, LineShape],
    Field(discriminator="type"),
]

_descriptor_adapter = TypeAdapter(ShapeDescriptor)


def _format_validation_error(kind: str, index: int, error: ValidationError) -> str:
    problems = []
    for err in error.errors():
        # loc[0] is the discriminator tag
        field = ".".join(str(part) for part in err["loc"][1:]) or kind
        problems.append(f"{field}: {err['msg']}")
    return f"Invalid {kind} shape at index {index}: " + "; ".join(problems)


def parse_descriptor(raw: Any, index: int = 0) -> Optional[_BaseShape]:
    """Validate one raw descriptor.

    Returns None (after logging a warning) when the descriptor's type is not a
    supported kind. Raises InvalidShapeError when a supported kind fails
    validation.
    """
    if isinstance(raw, _BaseShape):
        return raw

    kind = raw.get("type") if isinstance(raw, dict) else None
    if not isinstance(kind, str) or kind not in SHAPE_KINDS:
        logger.warning("Skipping shape at index %d with unsupported type: %r", index, kind)
        return None

    try:
        return _descriptor_adapter.validate_python(raw)
    except ValidationError as e:
        raise InvalidShapeError(_format_validation_error(kind, index, e)) from e


# ============================================================================
# Element Builders
# ============================================================================

def gen_id() -> str:
    return str(uuid.uuid4())


def _seed() -> int:
    return random.randint(1, 2_000_000_000)


def _linear_points(shape: Union[ArrowShape, LineShape]) -> list[list[float]]:
    if shape.points:
        return [[px, py] for px, py in shape.points]
    return [[0, 0], [shape.width, shape.height]]


def _base_element(shape: _BaseShape, timestamp: int) -> dict:
    return {
        "id": shape.id or gen_id(),
        "type": shape.type,
        "x": shape.x,
        "y": shape.y,
        "width": shape.width,
        "height": shape.height,
        "angle": 0,
        "strokeColor": shape.stroke_color,
        "backgroundColor": shape.background_color,
        "fillStyle": shape.fill_style,
        "strokeWidth": shape.stroke_width,
        "strokeStyle": shape.stroke_style,
        "roughness": shape.roughness,
        "opacity": shape.opacity,
        "seed": _seed(),
        "version": 1,
        "versionNonce": _seed(),
        "isDeleted": False,
        "groupIds": [shape.group_id] if shape.group_id else [],
        "frameId": None,
        "roundness": None,
        "boundElements": [],
        "updated": timestamp,
        "link": None,
        "locked": False,
    }


def _text_fields(text: str, font_size: float, font_family: int, text_align: str,
                 vertical_align: str, container_id: Optional[str]) -> dict:
    return {
        "text": text,
        "originalText": text,
        "fontSize": font_size,
        "fontFamily": font_family,
        "textAlign": text_align,
        "verticalAlign": vertical_align,
        "containerId": container_id,
        "autoResize": True,
        "lineHeight": 1.25,
    }


def _bound_text(owner: dict, text: str, shape: _LabelledShape, timestamp: int) -> dict:
    """Create a text element bound to ``owner`` and register it on the owner."""
    if owner["type"] == "arrow":
        # Center on the midpoint between the first and last point
        first, last = owner["points"][0], owner["points"][-1]
        width = max(len(text) * 8, 20)
        x = owner["x"] + (first[0] + last[0]) / 2 - width / 2
        y = owner["y"] + (first[1] + last[1]) / 2 - 10
    else:
        width = max(owner["width"] - 20, 0)
        x = owner["x"] + 10
        y = owner["y"] + owner["height"] / 2 - 10

    text_elem = {
        "id": gen_id(),
        "type": "text",
        "x": x,
        "y": y,
        "width": width,
        "height": 20,
        "angle": 0,
        "strokeColor": shape.stroke_color,
        "backgroundColor": "transparent",
        "fillStyle": "solid",
        "strokeWidth": 2,
        "strokeStyle": "solid",
        "roughness": 1,
        "opacity": 100,
        "seed": _seed(),
        "version": 1,
        "versionNonce": _seed(),
        "isDeleted": False,
        "groupIds": list(owner["groupIds"]),
        "frameId": None,
        "roundness": None,
        "boundElements": [],
        "updated": timestamp,
        "link": None,
        "locked": False,
        **_text_fields(text, shape.font_size, shape.font_family, "center", "middle", owner["id"]),
    }
    owner["boundElements"].append({"type": "text", "id": text_elem["id"]})
    return text_elem


def _create_container(shape: _LabelledShape, timestamp: int) -> list[dict]:
    elem = _base_element(shape, timestamp)
    elem["roundness"] = {"type": 3}
    elements = [elem]
    if shape.label:
        elements.append(_bound_text(elem, shape.label, shape, timestamp))
    return elements


def _create_text(shape: TextShape, timestamp: int) -> list[dict]:
    text = shape.text if shape.text is not None else (shape.label or "")
    elem = _base_element(shape, timestamp)
    elem.update(_text_fields(text, shape.font_size, shape.font_family,
                             shape.text_align, "top", None))
    return [elem]


def _apply_points(elem: dict, shape: Union[ArrowShape, LineShape]) -> None:
    # width/height are the extents of the point list
    points = _linear_points(shape)
    xs = [p[0] for p in points]
    ys = [p[1] for p in points]
    elem["width"] = max(xs) - min(xs)
    elem["height"] = max(ys) - min(ys)
    elem["points"] = points
    elem["lastCommittedPoint"] = None
    elem["roundness"] = {"type": 2} if len(points) > 2 else None


def _binding(element_id: Optional[str]) -> Optional[dict]:
    if not element_id:
        return None
    return {"elementId": element_id, "focus": 0, "gap": 5}


def _create_arrow(shape: ArrowShape, timestamp: int) -> list[dict]:
    elem = _base_element(shape, timestamp)
    _apply_points(elem, shape)
    elem.update({
        "startBinding": _binding(shape.start_binding),
        "endBinding": _binding(shape.end_binding),
        "startArrowhead": shape.start_arrowhead,
        "endArrowhead": shape.end_arrowhead,
        "elbowed": False,
    })
    elements = [elem]
    if shape.label:
        elements.append(_bound_text(elem, shape.label, shape, timestamp))
    return elements


def _create_line(shape: LineShape, timestamp: int) -> list[dict]:
    elem = _base_element(shape, timestamp)
    _apply_points(elem, shape)
    elem.update({
        "startBinding": None,
        "endBinding": None,
        "startArrowhead": None,
        "endArrowhead": None,
    })
    return [elem]


_BUILDERS = {
    "rectangle": _create_container,
    "ellipse": _create_container,
    "diamond": _create_container,
    "text": _create_text,
    "arrow": _create_arrow,
    "line": _create_line,
}


def _register_arrow_bindings(elements: list[dict]) -> None:
    """Add arrows to the boundElements of shapes they bind to in this batch.

    Bindings to ids outside the batch are left as dangling references.
    """
    element_map = {elem["id"]: elem for elem in elements}
    for elem in elements:
        if elem["type"] != "arrow":
            continue
        for key in ("startBinding", "endBinding"):
            binding = elem.get(key)
            target = element_map.get(binding["elementId"]) if binding else None
            if target is None or target is elem:
                continue
            ref = {"type": "arrow", "id": elem["id"]}
            if ref not in target["boundElements"]:
                target["boundElements"].append(ref)


def compile_shapes(descriptors: Iterable[Any]) -> list[dict]:
    """Compile shape descriptors into a flat list of Excalidraw elements.

    Every descriptor is validated before any element is built, so an
    InvalidShapeError means no elements were produced.
    """
    shapes = []
    for index, raw in enumerate(descriptors):
        shape = parse_descriptor(raw, index)
        if shape is not None:
            shapes.append(shape)

    timestamp = int(time.time() * 1000)
    elements = []
    for shape in shapes:
        elements.extend(_BUILDERS[shape.type](shape, timestamp))

    _register_arrow_bindings(elements)
    return elements
