"""Drill-down scope and the navigation event interface."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from .model import FlowscopeError, GraphModel

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 32


class ScopeError(FlowscopeError):
    """Raised when a scope references something that is not a visible group."""


@dataclass(frozen=True)
class Scope:
    active_group: Optional[str] = None
    history: Tuple[Optional[str], ...] = ()
    history_limit: int = DEFAULT_HISTORY_LIMIT

    @classmethod
    def top(cls, history_limit: int = DEFAULT_HISTORY_LIMIT) -> "Scope":
        return cls(None, (), history_limit)

    @property
    def is_top(self) -> bool:
        return self.active_group is None

    def enter(self, group_id: str) -> "Scope":
        if group_id == self.active_group:
            return self
        history = self.history + (self.active_group,)
        if len(history) > self.history_limit:
            history = history[-self.history_limit :]
        return Scope(group_id, history, self.history_limit)

    def back(self) -> "Scope":
        if not self.history:
            return Scope(None, (), self.history_limit)
        return Scope(self.history[-1], self.history[:-1], self.history_limit)

    def reset(self) -> "Scope":
        return Scope.top(self.history_limit)

    def validate(self, graph: GraphModel) -> None:
        if self.active_group is None:
            return
        node = graph.node(self.active_group)
        if node is None:
            raise ScopeError(
                "E_SCOPE_UNKNOWN_GROUP",
                f'active group "{self.active_group}" does not exist',
            )
        if not node.role.is_group:
            raise ScopeError(
                "E_SCOPE_NOT_GROUP",
                f'active group "{self.active_group}" is not tagged as a group',
            )


@dataclass(frozen=True)
class ScopeChange:
    previous: Scope
    current: Scope
    reason: str


ScopeListener = Callable[[ScopeChange], None]


class Navigator:
    """Holds the current scope and notifies subscribers of changes.

    The host owns the navigator and hands it to whatever needs to react to
    drill-down; nothing here is global.
    """

    def __init__(self, scope: Optional[Scope] = None, graph: Optional[GraphModel] = None) -> None:
        self._scope = scope or Scope.top()
        self._graph = graph
        self._listeners: List[ScopeListener] = []

    @property
    def scope(self) -> Scope:
        return self._scope

    def bind(self, graph: GraphModel) -> None:
        """Validate future navigation against `graph`."""
        self._graph = graph

    def subscribe(self, listener: ScopeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def drill_into(self, group_id: str) -> Scope:
        candidate = self._scope.enter(group_id)
        if self._graph is not None:
            candidate.validate(self._graph)
        return self._publish(candidate, "enter")

    def back(self) -> Scope:
        return self._publish(self._scope.back(), "back")

    def reset(self) -> Scope:
        return self._publish(self._scope.reset(), "reset")

    def _publish(self, scope: Scope, reason: str) -> Scope:
        previous = self._scope
        self._scope = scope
        if previous == scope:
            return scope
        change = ScopeChange(previous, scope, reason)
        logger.debug("scope %s: %r -> %r", reason, previous.active_group, scope.active_group)
        for listener in list(self._listeners):
            listener(change)
        return scope
