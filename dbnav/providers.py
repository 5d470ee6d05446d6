"""Command palette providers for connection management."""

from __future__ import annotations

from textual.command import DiscoveryHit, Hit, Hits, Provider
from textual.types import IgnoreReturnCallbackType

from .models import ConnectionNode


class ConnectionSwitchProvider(Provider):
    """Expose connection profiles to the command palette."""

    async def search(self, query: str) -> Hits:
        matcher = self.matcher(query)
        for profile in self._profiles:
            match = matcher.match(profile.label)
            if match > 0:
                yield Hit(
                    score=match,
                    match_display=f"Connect to: {matcher.highlight(profile.label)}",
                    command=self._build_callback(profile.label),
                    help="Make this connection the active query target.",
                )

    async def discover(self) -> Hits:
        for profile in self._profiles:
            yield DiscoveryHit(
                display=f"Connect to: {profile.label}",
                command=self._build_callback(profile.label),
                help="Make this connection the active query target.",
            )

    @property
    def _profiles(self) -> tuple[ConnectionNode, ...]:
        return tuple(getattr(self.app, "profiles", ()))

    def _build_callback(self, name: str) -> IgnoreReturnCallbackType:
        async def _run() -> None:
            switcher = getattr(self.app, "switch_profile", None)
            if switcher is None:
                return
            switcher(name)

        return _run


class _SingleActionProvider(Provider):
    _LABEL = ""
    _HELP = ""
    _ACTION = ""

    async def search(self, query: str) -> Hits:
        matcher = self.matcher(query)
        score = matcher.match(self._LABEL)
        if score > 0:
            yield Hit(
                score=score,
                match_display=matcher.highlight(self._LABEL),
                command=self._build_callback(),
                help=self._HELP,
            )

    async def discover(self) -> Hits:
        yield DiscoveryHit(display=self._LABEL, command=self._build_callback(), help=self._HELP)

    def _build_callback(self) -> IgnoreReturnCallbackType:
        async def _run() -> None:
            action = getattr(self.app, self._ACTION, None)
            if action is None:
                return
            result = action()
            if result is not None:
                await result

        return _run


class TreeRefreshProvider(_SingleActionProvider):
    """Drop cached metadata and redraw the connection tree."""

    _LABEL = "Refresh connection tree"
    _HELP = "Trigger Ctrl+R equivalent refresh."
    _ACTION = "action_refresh"


class CloseConnectionProvider(_SingleActionProvider):
    """Tear down the live connection behind the active target."""

    _LABEL = "Close active connection"
    _HELP = "Disconnect and forget cached metadata for the active connection."
    _ACTION = "close_active_connection"


class CreateDatabaseProvider(_SingleActionProvider):
    """Prompt for a name and create it on the active server."""

    _LABEL = "Create database"
    _HELP = "Add a database to the active connection's server."
    _ACTION = "create_database"


__all__ = [
    "CloseConnectionProvider",
    "ConnectionSwitchProvider",
    "CreateDatabaseProvider",
    "TreeRefreshProvider",
]
