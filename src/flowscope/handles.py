"""Port placement on group nodes."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .model import INPUT_TAG, OUTPUT_TAG, ChildRef, FlowscopeError
from .view import HANDLE_IN, HANDLE_OUT, Handle, group_port_id, handle_id

DEFAULT_INSET = 15.0
DEFAULT_EXCLUSION = 20.0
GROUP_PORT_TOP = 50.0


@dataclass(frozen=True)
class HandleOptions:
    inset: float = DEFAULT_INSET
    exclusion: float = DEFAULT_EXCLUSION

    def __post_init__(self) -> None:
        if self.inset < 0 or self.exclusion < 0:
            raise FlowscopeError("E_OPTIONS", "handle inset and exclusion must be >= 0")
        if 2 * self.inset + self.exclusion >= 100:
            raise FlowscopeError(
                "E_OPTIONS",
                f"handle inset {self.inset} and exclusion {self.exclusion} leave no lane span",
            )


@dataclass(frozen=True)
class PortPosition:
    id: str
    buried_id: Optional[str]
    label: str
    top: float


@dataclass
class HandleLayout:
    group_id: str
    inputs: List[PortPosition] = field(default_factory=list)
    outputs: List[PortPosition] = field(default_factory=list)

    @property
    def group_input(self) -> PortPosition:
        return PortPosition(group_port_id(self.group_id, HANDLE_IN), None, "Group In", GROUP_PORT_TOP)

    @property
    def group_output(self) -> PortPosition:
        return PortPosition(group_port_id(self.group_id, HANDLE_OUT), None, "Group Out", GROUP_PORT_TOP)

    def position(self, port_id: str) -> Optional[PortPosition]:
        for port in [*self.inputs, *self.outputs, self.group_input, self.group_output]:
            if port.id == port_id:
                return port
        return None

    def offset_for(self, port_id: str, height: float) -> Optional[float]:
        """Vertical offset of a port from the top of a node `height` tall."""
        port = self.position(port_id)
        if port is None:
            return None
        return height * port.top / 100.0


def lane_positions(count: int, options: Optional[HandleOptions] = None) -> List[float]:
    """Evenly spread `count` ports over a lane, skipping the centre band."""
    options = options or HandleOptions()
    if count <= 0:
        return []
    span = 100.0 - 2 * options.inset - options.exclusion
    exclusion_start = 50.0 - options.exclusion / 2.0
    tops: List[float] = []
    for idx in range(count):
        top = options.inset + span * (idx + 1) / (count + 1)
        if top > exclusion_start:
            top += options.exclusion
        tops.append(top)
    return tops


def allocate_handles(
    group_id: str,
    ports: Iterable[ChildRef] = (),
    handles: Iterable[Handle] = (),
    options: Optional[HandleOptions] = None,
) -> HandleLayout:
    """Place rerouted handles and tagged self-ports of one group.

    Registered handles keep the lane of their direction. Self-ports land in
    the input lane when tagged `input` and in the output lane when tagged
    `output`. A port id is placed once, and a node that already has a
    registered handle gets no self-port.
    """
    inputs: List[Tuple[str, str, str]] = []
    outputs: List[Tuple[str, str, str]] = []
    seen: Set[str] = set()

    def _push(lane: List[Tuple[str, str, str]], port_id: str, buried_id: str, label: str) -> None:
        if port_id in seen:
            return
        seen.add(port_id)
        lane.append((port_id, buried_id, label))

    handled: Set[str] = set()
    for handle in handles:
        if handle.owner_id != group_id:
            continue
        lane = inputs if handle.direction == HANDLE_IN else outputs
        _push(lane, handle.id, handle.buried_id, handle.name)
        handled.add(handle.buried_id)
    for child in ports:
        if child.id in handled:
            continue
        if INPUT_TAG in child.tags:
            _push(inputs, handle_id(group_id, HANDLE_IN, child.id), child.id, child.name)
        if OUTPUT_TAG in child.tags:
            _push(outputs, handle_id(group_id, HANDLE_OUT, child.id), child.id, child.name)

    return HandleLayout(
        group_id=group_id,
        inputs=_place(inputs, options),
        outputs=_place(outputs, options),
    )


def allocate_all(
    ports: Dict[str, Sequence[ChildRef]],
    handles: Dict[str, Sequence[Handle]],
    options: Optional[HandleOptions] = None,
) -> Dict[str, HandleLayout]:
    layouts: Dict[str, HandleLayout] = {}
    for group_id in ports:
        layouts[group_id] = allocate_handles(
            group_id, ports.get(group_id, ()), handles.get(group_id, ()), options
        )
    return layouts


def _place(entries: List[Tuple[str, str, str]], options: Optional[HandleOptions]) -> List[PortPosition]:
    tops = lane_positions(len(entries), options)
    return [
        PortPosition(id=port_id, buried_id=buried_id, label=label, top=top)
        for (port_id, buried_id, label), top in zip(entries, tops)
    ]
