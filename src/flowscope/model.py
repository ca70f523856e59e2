"""Graph model: normalize container records and relationships into typed nodes."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Set, Tuple

logger = logging.getLogger(__name__)

GROUP_TAG = "group"
INPUT_TAG = "input"
OUTPUT_TAG = "output"
INTERFACE_TAGS = frozenset({INPUT_TAG, OUTPUT_TAG})
SUCCESSOR_LABEL = "successor"
UNTAGGED_LAYER = "__UNTAGGED__"
RELATIONSHIP_SEPARATOR = "--"

_KNOWN_KEYS = {
    "id",
    "name",
    "Name",
    "description",
    "Description",
    "tags",
    "Tags",
    "horizon",
    "Horizon",
    "position",
    "parentId",
    "parent_id",
}


class FlowscopeError(ValueError):
    """Structured error with a stable code for caller mistakes."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class Role:
    """Structural role of a container, derived from its tags."""

    kind: str
    directions: FrozenSet[str] = frozenset()

    @property
    def is_group(self) -> bool:
        return self.kind == "group"

    @property
    def is_interface(self) -> bool:
        return bool(self.directions)

    @classmethod
    def from_tags(cls, tags: Iterable[str]) -> "Role":
        tag_set = set(tags)
        directions = frozenset(tag_set & INTERFACE_TAGS)
        if GROUP_TAG in tag_set:
            return cls("group", directions)
        if directions:
            return cls("interface", directions)
        return cls("leaf")


def parse_tags(raw: Any) -> Tuple[str, ...]:
    """Split a comma separated tag string (or list) into normalized tags."""
    if raw is None:
        return ()
    if isinstance(raw, str):
        pieces = raw.split(",")
    elif isinstance(raw, (list, tuple, set, frozenset)):
        pieces = [item for item in raw if isinstance(item, str)]
    else:
        return ()
    seen: List[str] = []
    for piece in pieces:
        tag = piece.strip().lower()
        if tag and tag not in seen:
            seen.append(tag)
    return tuple(seen)


@dataclass(frozen=True)
class Container:
    id: str
    name: str
    description: str = ""
    tags: Tuple[str, ...] = ()
    horizon: Optional[str] = None
    position: Optional[Tuple[float, float]] = None
    parent_id: Optional[str] = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    @property
    def role(self) -> Role:
        return Role.from_tags(self.tags)

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Container":
        raw_id = record.get("id")
        if raw_id is None or str(raw_id).strip() == "":
            raise FlowscopeError("E_CONTAINER_ID", "container record requires a non-empty id")
        container_id = str(raw_id).strip()
        name = record.get("name", record.get("Name"))
        description = record.get("description", record.get("Description"))
        tags = record.get("tags", record.get("Tags"))
        horizon = record.get("horizon", record.get("Horizon"))
        parent = record.get("parentId", record.get("parent_id"))
        extra = {key: value for key, value in record.items() if key not in _KNOWN_KEYS}
        return cls(
            id=container_id,
            name=str(name) if name else f"Node {container_id}",
            description=str(description) if description else "",
            tags=parse_tags(tags),
            horizon=str(horizon) if horizon not in (None, "") else None,
            position=_parse_position(record.get("position")),
            parent_id=str(parent) if parent not in (None, "") else None,
            extra=extra,
        )


@dataclass(frozen=True)
class Relationship:
    source: str
    target: str
    label: str = ""
    description: str = ""


@dataclass(frozen=True)
class ChildRef:
    id: str
    name: str
    tags: Tuple[str, ...] = ()
    label: str = ""
    description: str = ""

    @property
    def is_interface(self) -> bool:
        return any(tag in INTERFACE_TAGS for tag in self.tags)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "tags": list(self.tags),
            "position": {"label": self.label, "description": self.description},
        }


@dataclass(frozen=True)
class ParentRef:
    id: str
    name: str


@dataclass(frozen=True)
class Node:
    container: Container
    children: Tuple[ChildRef, ...]
    parents: Tuple[ParentRef, ...]
    role: Role

    @property
    def id(self) -> str:
        return self.container.id

    @property
    def name(self) -> str:
        return self.container.name


class GraphModel:
    """Annotated node set built from one data snapshot."""

    def __init__(self, nodes: List[Node], relationships: List[Relationship]) -> None:
        self._nodes = list(nodes)
        self._by_id = {node.id: node for node in self._nodes}
        self._relationships = list(relationships)
        self._member_ids: Dict[str, Set[str]] = {}
        self._grouped_ids: Set[str] = set()
        self._successor_ids: Set[str] = set()
        for node in self._nodes:
            for child in node.children:
                if child.label == SUCCESSOR_LABEL:
                    self._successor_ids.add(child.id)
            if not node.role.is_group:
                continue
            members = {child.id for child in node.children if child.label != SUCCESSOR_LABEL}
            self._member_ids[node.id] = members
            self._grouped_ids.update(members)

    @property
    def nodes(self) -> List[Node]:
        return list(self._nodes)

    @property
    def relationships(self) -> List[Relationship]:
        return list(self._relationships)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._by_id

    def __len__(self) -> int:
        return len(self._nodes)

    def node(self, node_id: str) -> Optional[Node]:
        return self._by_id.get(node_id)

    def children_of(self, node_id: str) -> Tuple[ChildRef, ...]:
        node = self._by_id.get(node_id)
        return node.children if node is not None else ()

    def parents_of(self, node_id: str) -> Tuple[ParentRef, ...]:
        node = self._by_id.get(node_id)
        return node.parents if node is not None else ()

    def members_of(self, group_id: str) -> List[str]:
        """Member ids of a group in declaration order (successors excluded)."""
        members = self._member_ids.get(group_id, set())
        return [child.id for child in self.children_of(group_id) if child.id in members]

    def is_member(self, group_id: str, node_id: str) -> bool:
        return node_id in self._member_ids.get(group_id, set())

    def is_grouped(self, node_id: str) -> bool:
        return node_id in self._grouped_ids

    def is_successor(self, node_id: str) -> bool:
        return node_id in self._successor_ids


def build_graph(
    containers: Iterable[Container],
    children_table: Iterable[Mapping[str, Any]] = (),
    relationships: Optional[Mapping[str, Any]] = None,
    *,
    excluded_ids: Iterable[str] = (),
) -> GraphModel:
    """Build the annotated graph model from flat records.

    Containers are kept in input order with groups moved first. Relationships
    are gathered from the children table, the relationship map and container
    parent pointers; the first relationship seen for a (source, target) pair
    wins. Relationships whose endpoints are unknown are dropped with a warning.
    """
    container_list = list(containers)
    by_id: Dict[str, Container] = {}
    for container in container_list:
        if container.id in by_id:
            logger.warning("duplicate container id %r ignored", container.id)
            continue
        by_id[container.id] = container
    excluded = {str(item) for item in excluded_ids}

    rels: List[Relationship] = []
    child_tags: Dict[Tuple[str, str], Tuple[str, ...]] = {}
    seen_pairs: Set[Tuple[str, str]] = set()

    def _add(rel: Relationship, tags: Optional[Tuple[str, ...]] = None) -> None:
        for endpoint in (rel.source, rel.target):
            if endpoint in by_id:
                continue
            if endpoint in excluded:
                logger.debug("relationship %s -> %s skips excluded id %r", rel.source, rel.target, endpoint)
            else:
                logger.warning(
                    "dropping relationship %s -> %s: unknown container id %r",
                    rel.source,
                    rel.target,
                    endpoint,
                )
            return
        if rel.source == rel.target:
            logger.debug("dropping self relationship on %r", rel.source)
            return
        pair = (rel.source, rel.target)
        if pair in seen_pairs:
            return
        seen_pairs.add(pair)
        rels.append(rel)
        if tags:
            child_tags[pair] = tags

    for entry in children_table:
        parent_raw = entry.get("containerId", entry.get("container_id"))
        if parent_raw is None:
            logger.warning("children table entry without container id ignored")
            continue
        parent_id = str(parent_raw)
        for child in entry.get("children") or []:
            if not isinstance(child, Mapping) or child.get("id") is None:
                logger.warning("malformed child entry under %r ignored", parent_id)
                continue
            label, description = _parse_payload(child.get("position", child.get("label")))
            raw_tags = child.get("tags")
            _add(
                Relationship(parent_id, str(child["id"]), label, description),
                parse_tags(raw_tags) if raw_tags is not None else None,
            )

    for key, value in (relationships or {}).items():
        if not value:
            continue
        parts = str(key).split(RELATIONSHIP_SEPARATOR, 1)
        if len(parts) != 2 or not parts[0] or not parts[1]:
            logger.warning("malformed relationship key %r ignored", key)
            continue
        label, description = _parse_payload(value)
        _add(Relationship(parts[0], parts[1], label, description))

    for container in container_list:
        if container.parent_id:
            _add(Relationship(container.parent_id, container.id))

    children: Dict[str, List[ChildRef]] = {cid: [] for cid in by_id}
    parents: Dict[str, List[ParentRef]] = {cid: [] for cid in by_id}
    for rel in rels:
        target = by_id[rel.target]
        source = by_id[rel.source]
        tags = child_tags.get((rel.source, rel.target), target.tags)
        children[rel.source].append(
            ChildRef(
                id=target.id,
                name=target.name,
                tags=tags,
                label=rel.label,
                description=rel.description,
            )
        )
        parents[rel.target].append(ParentRef(id=source.id, name=source.name))

    nodes = [
        Node(
            container=container,
            children=tuple(children[container.id]),
            parents=tuple(parents[container.id]),
            role=container.role,
        )
        for container in by_id.values()
    ]
    nodes.sort(key=lambda node: 0 if node.role.is_group else 1)
    return GraphModel(nodes, rels)


def filter_by_layers(
    containers: Iterable[Container],
    *,
    selected_layer: Optional[str] = None,
    hidden_layers: Iterable[str] = (),
    layer_options: Optional[Iterable[str]] = None,
) -> List[Container]:
    """Keep containers on a visible layer.

    `selected_layer` is a positive filter on one tag. When `layer_options` is
    given, a tagged container survives only if one of its tags is a ticked
    (not hidden) layer; untagged containers follow the `__UNTAGGED__` layer.
    """
    hidden = {layer.lower() for layer in hidden_layers if layer != UNTAGGED_LAYER}
    hide_untagged = UNTAGGED_LAYER in set(hidden_layers)
    wanted = selected_layer.strip().lower() if selected_layer else None
    visible_layers: Optional[Set[str]] = None
    if layer_options is not None:
        visible_layers = {layer.lower() for layer in layer_options} - hidden

    result: List[Container] = []
    for container in containers:
        if wanted and wanted not in container.tags:
            continue
        if not container.tags:
            if not hide_untagged:
                result.append(container)
            continue
        if visible_layers is not None:
            if any(tag in visible_layers for tag in container.tags):
                result.append(container)
            continue
        if all(tag in hidden for tag in container.tags):
            continue
        result.append(container)
    return result


def normalize_scores(scores: Optional[Mapping[str, Any]]) -> Dict[str, float]:
    numeric = {
        str(key): float(value)
        for key, value in (scores or {}).items()
        if isinstance(value, (int, float)) and not isinstance(value, bool)
    }
    if not numeric:
        return {}
    low = min(numeric.values())
    spread = (max(numeric.values()) - low) or 1.0
    return {key: (value - low) / spread for key, value in numeric.items()}


def highest_scoring(scores: Optional[Mapping[str, Any]]) -> Optional[str]:
    best: Optional[Tuple[float, str]] = None
    for key, value in (scores or {}).items():
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            continue
        if best is None or float(value) > best[0]:
            best = (float(value), str(key))
    return best[1] if best else None


def _parse_payload(value: Any) -> Tuple[str, str]:
    if isinstance(value, Mapping):
        label = value.get("label")
        description = value.get("description")
        return (str(label) if label else "", str(description) if description else "")
    if isinstance(value, str):
        return value, ""
    return "", ""


def _parse_position(value: Any) -> Optional[Tuple[float, float]]:
    if not isinstance(value, Mapping):
        return None
    try:
        return float(value["x"]), float(value["y"])
    except (KeyError, TypeError, ValueError):
        return None
