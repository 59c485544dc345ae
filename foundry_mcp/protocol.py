"""Wire constants and message types for talking to a Foundry VTT server.

Foundry exposes two surfaces that the bridge relies on:

    HTTP       GET  /api/status   world/version probe
               POST /join         form login, returns ``Set-Cookie: session=<token>``
               POST /upload       multipart asset upload (session cookie auth)

    Socket.IO  ``modifyDocument``     typed CRUD against the document graph
               ``module.<bridgeId>``  broadcast channel shared with the
                                      browser-side bridge module (RPC)

The names and payload shapes below must match what Foundry (and the
``foundry-mcp-bridge`` browser module) send and expect.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


# --- HTTP endpoints ---

STATUS_PATH = "/api/status"
JOIN_PATH = "/join"
UPLOAD_PATH = "/upload"

SESSION_COOKIE = "session"

# --- Socket.IO events ---

SESSION_EVENT = "session"
MODIFY_DOCUMENT_EVENT = "modifyDocument"
USER_ACTIVITY_EVENT = "userActivity"
GET_USER_ACTIVITY_EVENT = "getUserActivity"

# Browser module that answers RPC requests on ``module.<id>``.
BRIDGE_MODULE_ID = "foundry-mcp-bridge"

# --- RPC message types ---

RPC_REQUEST = "rpc-request"
RPC_RESPONSE = "rpc-response"
RPC_PING = "rpc-ping"
RPC_PONG = "rpc-pong"

# --- Timeouts (seconds) ---

REQUEST_TIMEOUT = 30.0
CALLBACK_TIMEOUT = 60.0
HANDSHAKE_TIMEOUT = 10.0
RECONNECT_CONFIRM_TIMEOUT = 5.0
ACTIVITY_WINDOW = 0.5
RPC_CALL_TIMEOUT = 15.0
RPC_PING_TIMEOUT = 5.0
MACRO_TIMEOUT = 6.0
MACRO_POLL_INTERVAL = 0.5

# --- Socket.IO reconnection policy ---

RECONNECTION_ATTEMPTS = 10
RECONNECTION_DELAY = 5.0


def module_event(module_id: str) -> str:
    """Return the socket event name for a module's broadcast channel."""
    return f"module.{module_id}"


def parent_uuid(parent_type: str, parent_id: str) -> str:
    """Return the ``parentUuid`` used to address embedded documents."""
    return f"{_enum_value(parent_type)}.{parent_id}"


# --- Connection state ---


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    AUTHENTICATING = "authenticating"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    READY = "ready"


# --- Document model ---


class DocumentAction(str, enum.Enum):
    GET = "get"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class DocumentType(str, enum.Enum):
    """Top-level (world collection) document types."""

    ACTOR = "Actor"
    ADVENTURE = "Adventure"
    CARDS = "Cards"
    CHAT_MESSAGE = "ChatMessage"
    COMBAT = "Combat"
    FOG_EXPLORATION = "FogExploration"
    FOLDER = "Folder"
    ITEM = "Item"
    JOURNAL_ENTRY = "JournalEntry"
    MACRO = "Macro"
    PLAYLIST = "Playlist"
    ROLL_TABLE = "RollTable"
    SCENE = "Scene"
    SETTING = "Setting"
    USER = "User"


class EmbeddedDocumentType(str, enum.Enum):
    """Document types that only exist inside a parent document."""

    ACTIVE_EFFECT = "ActiveEffect"
    ACTOR_DELTA = "ActorDelta"
    AMBIENT_LIGHT = "AmbientLight"
    AMBIENT_SOUND = "AmbientSound"
    CARD = "Card"
    COMBATANT = "Combatant"
    COMBATANT_GROUP = "CombatantGroup"
    DRAWING = "Drawing"
    ITEM = "Item"
    JOURNAL_ENTRY_PAGE = "JournalEntryPage"
    MEASURED_TEMPLATE = "MeasuredTemplate"
    NOTE = "Note"
    PLAYLIST_SOUND = "PlaylistSound"
    REGION = "Region"
    REGION_BEHAVIOR = "RegionBehavior"
    TABLE_RESULT = "TableResult"
    TILE = "Tile"
    TOKEN = "Token"
    WALL = "Wall"


AnyDocumentType = DocumentType | EmbeddedDocumentType


def coerce_document_type(value: AnyDocumentType | str) -> AnyDocumentType:
    """Resolve a document type name against the two allow-lists.

    Enum members pass through.  Plain strings are looked up among the
    top-level types first, then the embedded ones (``"Item"`` is valid in
    both and resolves to the top-level member; the wire value is the same).

    Raises:
        ValueError: If the name is in neither allow-list.
    """
    if isinstance(value, (DocumentType, EmbeddedDocumentType)):
        return value
    for enum_cls in (DocumentType, EmbeddedDocumentType):
        try:
            return enum_cls(value)
        except ValueError:
            continue
    raise ValueError(f"Unknown Foundry document type: {value!r}")


def build_operation(
    action: DocumentAction | str,
    payload: Any,
    *,
    parent_uuid: str | None = None,
    pack: str | None = None,
) -> dict[str, Any]:
    """Build the ``operation`` object for a ``modifyDocument`` request.

    The payload key depends on the action:

        get     query filter     -> {"query": {...}}
        create  list of data     -> {"data": [...]}
        update  list of updates  -> {"updates": [{"_id": ..., ...}]}
        delete  list of ids      -> {"ids": [...]}

    ``parent_uuid`` addresses embedded documents and ``pack`` addresses a
    compendium collection.
    """
    action = DocumentAction(action)
    key = _OPERATION_KEYS[action]
    operation: dict[str, Any] = {key: payload}
    if parent_uuid is not None:
        operation["parentUuid"] = parent_uuid
    if pack is not None:
        operation["pack"] = pack
    return operation


_OPERATION_KEYS = {
    DocumentAction.GET: "query",
    DocumentAction.CREATE: "data",
    DocumentAction.UPDATE: "updates",
    DocumentAction.DELETE: "ids",
}


@dataclass(frozen=True, slots=True)
class DocumentRequest:
    """One ``modifyDocument`` envelope, built per call and then discarded."""

    type: AnyDocumentType
    action: DocumentAction
    operation: dict[str, Any]

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "action": self.action.value,
            "operation": self.operation,
        }


@dataclass(frozen=True, slots=True)
class DocumentResponse:
    """Successful ``modifyDocument`` reply.

    Attributes:
        type: Document type echoed by the server.
        action: Action echoed by the server.
        result: Documents for get/create/update, string ids for delete.
        user_id: The user the server executed the request as.
        broadcast: Whether the change was broadcast to other clients.
        operation: The operation as the server normalised it.
    """

    type: str
    action: str
    result: list[Any] = field(default_factory=list)
    user_id: str | None = None
    broadcast: bool = False
    operation: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_reply(cls, reply: dict[str, Any]) -> DocumentResponse:
        return cls(
            type=reply.get("type", ""),
            action=reply.get("action", ""),
            result=list(reply.get("result") or []),
            user_id=reply.get("userId"),
            broadcast=bool(reply.get("broadcast", False)),
            operation=dict(reply.get("operation") or {}),
        )


# --- Status / users ---


@dataclass(frozen=True, slots=True)
class WorldInfo:
    """Snapshot of ``GET /api/status``."""

    active: bool
    version: str = ""
    world: str | None = None
    system: str | None = None
    system_version: str | None = None
    users: int | None = None
    uptime: float | None = None

    @classmethod
    def from_status(cls, data: dict[str, Any]) -> WorldInfo:
        return cls(
            active=bool(data.get("active", False)),
            version=str(data.get("version", "")),
            world=data.get("world"),
            system=data.get("system"),
            system_version=data.get("systemVersion"),
            users=data.get("users"),
            uptime=data.get("uptime"),
        )

    def as_dict(self) -> dict[str, Any]:
        """Return the status in Foundry's camelCase shape, omitting unknowns."""
        data = {
            "active": self.active,
            "version": self.version,
            "world": self.world,
            "system": self.system,
            "systemVersion": self.system_version,
            "users": self.users,
            "uptime": self.uptime,
        }
        return {k: v for k, v in data.items() if v is not None}


@dataclass(frozen=True, slots=True)
class ActiveUser:
    user_id: str
    activity: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {"userId": self.user_id, "activity": self.activity}


# --- RPC ---


@dataclass(frozen=True, slots=True)
class RpcResponse:
    """Reply from the browser bridge module.

    ``result`` is opaque: whatever JSON the responder produced.  ``duration``
    is the responder's own measurement in milliseconds.
    """

    request_id: str
    success: bool
    result: Any = None
    error: str | None = None
    duration: float | None = None

    @classmethod
    def from_message(cls, message: dict[str, Any]) -> RpcResponse:
        return cls(
            request_id=message["requestId"],
            success=bool(message.get("success", False)),
            result=message.get("result"),
            error=message.get("error"),
            duration=message.get("duration"),
        )


@dataclass(frozen=True, slots=True)
class PingResult:
    alive: bool
    module_version: str | None = None
    user_id: str | None = None

    def as_dict(self) -> dict[str, Any]:
        if not self.alive:
            return {"alive": False}
        return {
            "alive": True,
            "moduleVersion": self.module_version,
            "userId": self.user_id,
        }


@dataclass(frozen=True, slots=True)
class MacroResult:
    success: bool
    data: Any = None
    error: str | None = None


def _enum_value(value: Any) -> str:
    return value.value if isinstance(value, enum.Enum) else str(value)
