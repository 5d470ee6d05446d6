"""In-memory cache of discovered schema entries keyed by identity."""

from __future__ import annotations

import logging
from typing import Iterable

from .models import ConnectionNode, ExpansionState, NodeDescriptor

LOG = logging.getLogger(__name__)


class MetadataCache:
    """Memoizes discovery results and tree state per identity.

    Invalidation never cascades on its own. Callers that own a subtree use
    :meth:`invalidate_tree`, which walks the parent links recorded through
    :meth:`set_children` and :meth:`link`.
    """

    def __init__(self) -> None:
        self._children: dict[str, tuple[NodeDescriptor, ...]] = {}
        self._parents: dict[str, str] = {}
        self._expansion: dict[str, ExpansionState] = {}
        self._nodes: dict[str, ConnectionNode] = {}

    def get_children(self, identity: str) -> tuple[NodeDescriptor, ...] | None:
        """Return cached children in discovery order, or ``None`` on a miss."""

        return self._children.get(identity)

    def set_children(
        self,
        identity: str,
        children: Iterable[NodeDescriptor],
        *,
        parent: str | None = None,
    ) -> None:
        self._children[identity] = tuple(children)
        if parent is not None:
            self.link(identity, parent)

    def link(self, identity: str, parent: str) -> None:
        """Record that ``identity`` lives underneath ``parent``."""

        if identity != parent:
            self._parents[identity] = parent

    def invalidate(self, identity: str) -> None:
        """Drop the children cached for exactly ``identity``."""

        self._children.pop(identity, None)

    def descendants(self, root: str) -> tuple[str, ...]:
        """Identities whose parent chain reaches ``root``."""

        found: list[str] = []
        for identity in self._parents:
            seen: set[str] = set()
            parent = self._parents.get(identity)
            while parent is not None and parent not in seen:
                if parent == root:
                    found.append(identity)
                    break
                seen.add(parent)
                parent = self._parents.get(parent)
        return tuple(found)

    def invalidate_tree(self, root: str) -> tuple[str, ...]:
        """Invalidate ``root`` and every descendant; returns what was cleared."""

        cleared = (root, *self.descendants(root))
        for identity in cleared:
            self.invalidate(identity)
        for identity in cleared[1:]:
            self._parents.pop(identity, None)
        LOG.debug("Invalidated metadata subtree", extra={"root": root, "entries": len(cleared)})
        return cleared

    def get_expansion_state(self, identity: str) -> ExpansionState:
        return self._expansion.get(identity, ExpansionState.COLLAPSED)

    def set_expansion_state(self, identity: str, state: ExpansionState) -> None:
        self._expansion[identity] = state

    def remember_node(self, identity: str, node: ConnectionNode) -> None:
        """Register a node so its identity can be resolved back later."""

        self._nodes[identity] = node

    def lookup_node(self, identity: str) -> ConnectionNode | None:
        return self._nodes.get(identity)

    def forget_node(self, identity: str) -> None:
        self._nodes.pop(identity, None)


__all__ = ["MetadataCache"]
