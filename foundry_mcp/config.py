"""Connection settings for the Foundry VTT server."""

from __future__ import annotations

from dataclasses import dataclass

from .protocol import BRIDGE_MODULE_ID

DEFAULT_URL = "http://localhost:30000"


@dataclass(frozen=True, slots=True)
class FoundryConfig:
    """Where Foundry lives and which user the bridge logs in as.

    Attributes:
        url: Base URL of the Foundry server.
        user_id: ``_id`` of a Foundry user, normally one with the Gamemaster
            role (the bridge can only do what that user is allowed to do).
        password: That user's password, empty if none is set.
        bridge_module_id: Id of the browser module answering RPC requests.
    """

    url: str = DEFAULT_URL
    user_id: str = ""
    password: str = ""
    bridge_module_id: str = BRIDGE_MODULE_ID

    @property
    def base_url(self) -> str:
        """The URL without a trailing slash, ready for path concatenation."""
        return self.url.rstrip("/")
