"""Widget library for the Textual UI."""

from __future__ import annotations

from .connection_tree import ConnectionTree, TreeEntry
from .dialogs import ConfirmScreen, PromptScreen
from .query_pad import QueryPad
from .status_bar import StatusBar

__all__ = ["ConfirmScreen", "ConnectionTree", "PromptScreen", "QueryPad", "StatusBar", "TreeEntry"]
