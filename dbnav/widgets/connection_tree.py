"""Tree widget browsing connections, databases and their objects."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from textual.binding import Binding
from textual.message import Message
from textual.widgets import Tree
from textual.widgets.tree import TreeNode

from dbnav.explorer import SchemaExplorer
from dbnav.identity import child_id, connection_id
from dbnav.manager import ConnectionManager
from dbnav.models import ConnectionNode, ExpansionState, NodeDescriptor, NodeKind

_EXPANDABLE = {
    NodeKind.CONNECTION,
    NodeKind.DATABASE,
    NodeKind.TABLE_GROUP,
    NodeKind.VIEW_GROUP,
    NodeKind.PROCEDURE_GROUP,
    NodeKind.USER_GROUP,
}

ActivateCallback = Callable[[ConnectionNode, str | None], None]


@dataclass(frozen=True, slots=True)
class TreeEntry:
    """Data attached to each tree node."""

    node: ConnectionNode
    descriptor: NodeDescriptor

    @property
    def identity(self) -> str:
        kind = self.descriptor.kind
        if kind is NodeKind.CONNECTION:
            return connection_id(self.node)
        if kind is NodeKind.DATABASE:
            return connection_id(self.node, with_db=True)
        if kind is NodeKind.USER_GROUP:
            return child_id(self.node.with_database(None), kind)
        if kind in _EXPANDABLE:
            return child_id(self.node, kind)
        return f"{connection_id(self.node, with_db=True)}_{kind.value}_{self.descriptor.label}"


class ConnectionTree(Tree[TreeEntry]):
    """Lazily expands connection profiles through the schema explorer."""

    DEFAULT_CSS = """
    ConnectionTree {
        width: 32;
        min-width: 22;
        height: 1fr;
        border-right: solid $surface-darken-1;
        background: $surface-darken-2;
    }
    """

    BINDINGS = [Binding("delete", "drop_selected", "Drop", show=False)]

    class ProcedureSelected(Message):
        """A procedure was picked; its source should be shown."""

        def __init__(self, node: ConnectionNode, procedure: str) -> None:
            super().__init__()
            self.node = node
            self.procedure = procedure

    class ProcedureDropRequested(Message):
        """The user asked to drop the procedure under the cursor."""

        def __init__(self, node: ConnectionNode, procedure: str) -> None:
            super().__init__()
            self.node = node
            self.procedure = procedure

    def __init__(
        self,
        manager: ConnectionManager,
        explorer: SchemaExplorer,
        profiles: tuple[ConnectionNode, ...],
        *,
        on_activate: ActivateCallback | None = None,
    ) -> None:
        super().__init__("Connections", id="connection-tree")
        self.show_root = False
        self._manager = manager
        self._explorer = explorer
        self._profiles = profiles
        self._on_activate = on_activate or (lambda *_: None)
        self._unsubscribe: Callable[[], None] | None = None

    def on_mount(self) -> None:
        self._unsubscribe = self._manager.subscribe(self._handle_refresh)
        self.populate()

    def on_unmount(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    def populate(self) -> None:
        """Rebuild the top level, re-expanding nodes the user left open."""

        self.root.remove_children()
        for profile in self._profiles:
            entry = TreeEntry(profile, NodeDescriptor(label=profile.label, kind=NodeKind.CONNECTION))
            tree_node = self.root.add(self._label_for(entry), data=entry)
            if self._manager.cache.get_expansion_state(entry.identity) is ExpansionState.EXPANDED:
                tree_node.expand()
        self.root.expand()

    async def on_tree_node_expanded(self, event: Tree.NodeExpanded[TreeEntry]) -> None:
        entry = event.node.data
        if entry is None:
            return
        self._manager.cache.set_expansion_state(entry.identity, ExpansionState.EXPANDED)
        await self._load_children(event.node, entry)

    def on_tree_node_collapsed(self, event: Tree.NodeCollapsed[TreeEntry]) -> None:
        entry = event.node.data
        if entry is not None:
            self._manager.cache.set_expansion_state(entry.identity, ExpansionState.COLLAPSED)

    def on_tree_node_selected(self, event: Tree.NodeSelected[TreeEntry]) -> None:
        entry = event.node.data
        if entry is None:
            return
        if entry.descriptor.kind is NodeKind.DATABASE:
            self._on_activate(entry.node, entry.descriptor.database)
        elif entry.descriptor.kind is NodeKind.CONNECTION:
            self._on_activate(entry.node, entry.node.database)
        elif entry.descriptor.kind is NodeKind.PROCEDURE:
            self.post_message(self.ProcedureSelected(entry.node, entry.descriptor.label))

    def action_drop_selected(self) -> None:
        tree_node = self.cursor_node
        entry = tree_node.data if tree_node is not None else None
        if entry is not None and entry.descriptor.kind is NodeKind.PROCEDURE:
            self.post_message(self.ProcedureDropRequested(entry.node, entry.descriptor.label))

    async def _load_children(self, tree_node: TreeNode[TreeEntry], entry: TreeEntry) -> None:
        tree_node.remove_children()
        for descriptor in await self._children_for(entry):
            node = entry.node.with_database(descriptor.database) if descriptor.database else entry.node
            child = TreeEntry(node, descriptor)
            if descriptor.kind in _EXPANDABLE:
                added = tree_node.add(descriptor.label, data=child)
                if self._manager.cache.get_expansion_state(child.identity) is ExpansionState.EXPANDED:
                    added.expand()
            else:
                tree_node.add_leaf(descriptor.label, data=child)

    async def _children_for(self, entry: TreeEntry) -> list[NodeDescriptor]:
        kind = entry.descriptor.kind
        if kind is NodeKind.CONNECTION:
            return await self._explorer.databases(entry.node)
        if kind is NodeKind.DATABASE:
            return self._explorer.groups(entry.node)
        if kind is NodeKind.TABLE_GROUP:
            return await self._explorer.tables(entry.node)
        if kind is NodeKind.VIEW_GROUP:
            return await self._explorer.views(entry.node)
        if kind is NodeKind.PROCEDURE_GROUP:
            return await self._explorer.procedures(entry.node)
        if kind is NodeKind.USER_GROUP:
            return await self._explorer.users(entry.node)
        return []

    def _label_for(self, entry: TreeEntry) -> str:
        active = self._manager.active_node
        if active is not None and connection_id(active) == connection_id(entry.node):
            return f"{entry.descriptor.label} (active)"
        return entry.descriptor.label

    def _handle_refresh(self, _node: ConnectionNode | None) -> None:
        if self.is_mounted:
            self.populate()


__all__ = ["ConnectionTree", "TreeEntry"]
