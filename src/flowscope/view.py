"""Node, edge and handle records handed to rendering surfaces."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional, Tuple

HANDLE_IN = "in"
HANDLE_OUT = "out"


def handle_id(owner_id: str, direction: str, buried_id: str) -> str:
    prefix = "in-child" if direction == HANDLE_IN else "out-child"
    return f"{prefix}-{buried_id}-on-{owner_id}"


def group_port_id(owner_id: str, direction: str) -> str:
    prefix = "in-group" if direction == HANDLE_IN else "out-group"
    return f"{prefix}-{owner_id}"


@dataclass(frozen=True)
class Handle:
    owner_id: str
    direction: str
    buried_id: str
    name: str = ""
    tags: Tuple[str, ...] = ()

    @property
    def id(self) -> str:
        return handle_id(self.owner_id, self.direction, self.buried_id)


@dataclass(frozen=True)
class ViewNode:
    id: str
    type: str
    position: Tuple[float, float] = (0.0, 0.0)
    data: Mapping[str, Any] = field(default_factory=dict)
    width: Optional[float] = None
    height: Optional[float] = None

    @property
    def is_group(self) -> bool:
        return self.type == "group"

    def moved(self, x: float, y: float) -> "ViewNode":
        return replace(self, position=(float(x), float(y)))

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "position": {"x": self.position[0], "y": self.position[1]},
            "data": dict(self.data),
        }
        if self.width is not None:
            payload["width"] = self.width
        if self.height is not None:
            payload["height"] = self.height
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ViewNode":
        position = payload.get("positionAbsolute") or payload.get("position") or {}
        style = payload.get("style") or {}
        return cls(
            id=str(payload.get("id")),
            type="group" if payload.get("type") == "group" else "leaf",
            position=(_number(position.get("x")), _number(position.get("y"))),
            data=dict(payload.get("data") or {}),
            width=_optional_number(payload.get("width", style.get("width"))),
            height=_optional_number(payload.get("height", style.get("height"))),
        )


@dataclass(frozen=True)
class ViewEdge:
    id: str
    source: str
    target: str
    data: Mapping[str, Any] = field(default_factory=dict)
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None
    label: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"id": self.id, "source": self.source, "target": self.target}
        if self.data:
            payload["data"] = dict(self.data)
        if self.source_handle:
            payload["sourceHandle"] = self.source_handle
        if self.target_handle:
            payload["targetHandle"] = self.target_handle
        if self.label:
            payload["label"] = self.label
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ViewEdge":
        label = payload.get("label")
        source = str(payload.get("source") or "")
        target = str(payload.get("target") or "")
        return cls(
            id=str(payload.get("id") or f"{source}-to-{target}"),
            source=source,
            target=target,
            data=dict(payload.get("data") or {}),
            source_handle=payload.get("sourceHandle"),
            target_handle=payload.get("targetHandle"),
            label=str(label) if label is not None else None,
        )


def _number(value: Any, default: float = 0.0) -> float:
    parsed = _optional_number(value)
    return default if parsed is None else parsed


def _optional_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    number = float(value)
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return number
