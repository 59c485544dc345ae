"""Session client for a Foundry VTT server.

Foundry has no public API for external programs, so the bridge behaves like
a browser would:

    1. ``GET /api/status``   make sure a world is loaded
    2. ``POST /join``        log in with a user id + password, receive a
                             ``session`` cookie
    3. Socket.IO connect     present the session (query string *and* cookie
                             header) and wait for Foundry's ``session`` event,
                             which carries the resolved user id

Once the handshake completes, everything goes over the socket.  Document CRUD
uses the ``modifyDocument`` event with an acknowledgement callback; other
events use the thinner ``emit_socket*`` helpers.  Every helper that talks to
the socket follows the same reliability rule: a transport fault (timeout,
disconnect, not connected) tears the session down, logs in again from
scratch and retries the call exactly once.  Errors that Foundry reports
itself are never retried.

All state lives on one ``FoundryClient`` instance, which is created once per
process and handed to whatever needs it::

    client = FoundryClient(FoundryConfig(url=..., user_id=..., password=...))
    response = await client.modify_document("Actor", "get", {"query": {}})
    await client.disconnect()
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import math
import re
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar
from urllib.parse import urlencode

import httpx
import socketio

from .config import FoundryConfig
from .protocol import (
    ACTIVITY_WINDOW,
    CALLBACK_TIMEOUT,
    GET_USER_ACTIVITY_EVENT,
    HANDSHAKE_TIMEOUT,
    JOIN_PATH,
    MACRO_POLL_INTERVAL,
    MACRO_TIMEOUT,
    MODIFY_DOCUMENT_EVENT,
    RECONNECT_CONFIRM_TIMEOUT,
    RECONNECTION_ATTEMPTS,
    RECONNECTION_DELAY,
    REQUEST_TIMEOUT,
    SESSION_COOKIE,
    SESSION_EVENT,
    STATUS_PATH,
    UPLOAD_PATH,
    USER_ACTIVITY_EVENT,
    ActiveUser,
    AnyDocumentType,
    ConnectionState,
    DocumentAction,
    DocumentRequest,
    DocumentResponse,
    DocumentType,
    MacroResult,
    WorldInfo,
    build_operation,
    coerce_document_type,
    module_event,
)

logger = logging.getLogger("foundry-mcp.client")

T = TypeVar("T")
Listener = Callable[..., Any]

_SESSION_PATTERN = re.compile(rf"(?<![\w-]){SESSION_COOKIE}=([^;]+)")
_SERVER_DISCONNECT = socketio.AsyncClient.reason.SERVER_DISCONNECT


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class FoundryError(Exception):
    """Base class for failures talking to Foundry."""


class FoundryConnectionError(FoundryError):
    """A connection attempt failed before the session became ready."""


class FoundryUnreachableError(FoundryConnectionError):
    """The HTTP status probe failed or returned a non-OK status."""


class NoActiveWorldError(FoundryConnectionError):
    """Foundry is running but no world is loaded."""


class AuthenticationError(FoundryConnectionError):
    """``POST /join`` did not hand out a session cookie."""


class SessionRejectedError(FoundryConnectionError):
    """The socket connected but Foundry never confirmed the session."""


class FoundryTransportError(FoundryError):
    """The socket failed underneath a call: timeout, disconnect, not connected.

    This is the only failure the call helpers answer with a reconnect and a
    single retry.
    """


class FoundryRemoteError(FoundryError):
    """Foundry answered the request with an explicit error."""

    def __init__(self, message: str, stack: str | None = None) -> None:
        super().__init__(message)
        self.stack = stack


def _default_socket_factory() -> socketio.AsyncClient:
    return socketio.AsyncClient(
        reconnection=True,
        reconnection_attempts=RECONNECTION_ATTEMPTS,
        reconnection_delay=RECONNECTION_DELAY,
        logger=False,
        engineio_logger=False,
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class FoundryClient:
    """Authenticated Socket.IO session with one Foundry VTT server.

    Lifecycle::

        disconnected -> authenticating -> connecting -> connected -> ready
              ^______________________________________________________|
                      (any failure, or Foundry closing the session)

    ``http_transport`` and ``socket_factory`` exist so tests can swap the
    network out; production code leaves them unset.
    """

    request_timeout = REQUEST_TIMEOUT
    callback_timeout = CALLBACK_TIMEOUT
    handshake_timeout = HANDSHAKE_TIMEOUT
    reconnect_confirm_timeout = RECONNECT_CONFIRM_TIMEOUT
    activity_window = ACTIVITY_WINDOW
    macro_poll_interval = MACRO_POLL_INTERVAL

    def __init__(
        self,
        config: FoundryConfig,
        *,
        http_transport: httpx.AsyncBaseTransport | None = None,
        socket_factory: Callable[[], socketio.AsyncClient] | None = None,
    ) -> None:
        self._config = config
        self._http_transport = http_transport
        self._socket_factory = socket_factory or _default_socket_factory
        self._socket: socketio.AsyncClient | None = None
        self._session_id: str | None = None
        self._state = ConnectionState.DISCONNECTED
        self._world_info: WorldInfo | None = None
        self._user_id: str | None = None
        self._connect_task: asyncio.Task[None] | None = None
        self._session_waiter: asyncio.Future[Any] | None = None
        self._confirm_task: asyncio.Task[None] | None = None
        self._listeners: dict[str, list[Listener]] = {}

    # -- State --------------------------------------------------------------

    @property
    def config(self) -> FoundryConfig:
        return self._config

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def world_info(self) -> WorldInfo | None:
        """The last ``/api/status`` snapshot, or ``None`` before the first probe."""
        return self._world_info

    @property
    def user_id(self) -> str | None:
        """The user id Foundry confirmed in its ``session`` event."""
        return self._user_id

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def is_ready(self) -> bool:
        return (
            self._state is ConnectionState.READY
            and self._socket is not None
            and self._socket.connected
        )

    # -- Connection ---------------------------------------------------------

    async def ensure_connected(self) -> None:
        """Return once the session is ready, connecting if necessary.

        Concurrent callers share a single connection attempt: only one status
        probe, login and socket handshake run, and every caller sees the same
        outcome.
        """
        if self.is_ready:
            return
        if self._connect_task is None:
            self._connect_task = asyncio.ensure_future(self._run_connect())
        await asyncio.shield(self._connect_task)

    async def _run_connect(self) -> None:
        try:
            await self.connect()
        finally:
            self._connect_task = None

    async def connect(self) -> None:
        """Run one full connection attempt.

        Prefer ``ensure_connected()``; calling this directly bypasses the
        single-flight guard.

        Raises:
            FoundryUnreachableError: The status probe failed.
            NoActiveWorldError: Foundry reports no loaded world.
            AuthenticationError: The login returned no session cookie.
            SessionRejectedError: The socket handshake was not confirmed.
            FoundryConnectionError: The socket could not be opened.
        """
        self._state = ConnectionState.AUTHENTICATING
        try:
            status = await self._fetch_status()
            self._world_info = status
            if not status.active:
                raise NoActiveWorldError(
                    "Foundry VTT has no active world. Please load a world first."
                )

            self._session_id = await self._authenticate()

            self._state = ConnectionState.CONNECTING
            await self._connect_socket()
        except BaseException:
            await self._teardown()
            raise

        self._state = ConnectionState.READY
        logger.info(
            "Connected to %s (world %s) as user %s",
            self._config.base_url,
            status.world,
            self._user_id,
        )

    async def disconnect(self) -> None:
        """Close the socket and forget the session.  Safe to call repeatedly."""
        was_open = self._socket is not None
        await self._teardown()
        if was_open:
            logger.info("Disconnected from %s", self._config.base_url)

    async def _teardown(self) -> None:
        self._state = ConnectionState.DISCONNECTED
        self._session_id = None
        await self._close_socket()

    async def _close_socket(self) -> None:
        # Detach first so the disconnect event from this socket is ignored.
        sio, self._socket = self._socket, None
        self._session_waiter = None
        if self._confirm_task is not None:
            self._confirm_task.cancel()
            self._confirm_task = None
        if sio is None:
            return
        try:
            await sio.disconnect()
        except Exception:
            logger.debug("Error while closing socket", exc_info=True)

    # -- Connection steps ---------------------------------------------------

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._config.base_url,
            transport=self._http_transport,
            timeout=self.request_timeout,
        )

    async def _fetch_status(self) -> WorldInfo:
        url = self._config.base_url
        try:
            async with self._http() as http:
                response = await http.get(STATUS_PATH)
        except httpx.HTTPError as exc:
            raise FoundryUnreachableError(
                f"Foundry VTT is not reachable at {url}: {exc}"
            ) from exc

        if not response.is_success:
            raise FoundryUnreachableError(
                f"Foundry VTT is not reachable at {url} (HTTP {response.status_code})"
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise FoundryUnreachableError(
                f"Foundry VTT at {url} returned an unreadable status"
            ) from exc
        if not isinstance(data, dict):
            raise FoundryUnreachableError(
                f"Foundry VTT at {url} returned an unexpected status: {data!r}"
            )
        return WorldInfo.from_status(data)

    async def _authenticate(self) -> str:
        """Log in via ``POST /join`` and return the session token."""
        form = {
            "action": "join",
            "userid": self._config.user_id,
            "password": self._config.password,
        }
        try:
            async with self._http() as http:
                response = await http.post(JOIN_PATH, data=form, follow_redirects=False)
        except httpx.HTTPError as exc:
            raise FoundryUnreachableError(
                f"Foundry VTT login request failed: {exc}"
            ) from exc

        cookies = response.headers.get_list("set-cookie")
        if not cookies:
            raise AuthenticationError(
                f"Authentication failed: no session cookie returned. "
                f"Response: {response.text}"
            )
        for cookie in cookies:
            match = _SESSION_PATTERN.search(cookie)
            if match:
                return match.group(1)
        raise AuthenticationError(
            f"Authentication failed: session cookie not found in: {'; '.join(cookies)}"
        )

    async def _connect_socket(self) -> None:
        await self._close_socket()

        sio = self._socket_factory()
        self._socket = sio
        self._bind_socket(sio)

        # Created before connecting: Foundry may send the session event
        # before connect() returns.
        waiter = asyncio.get_running_loop().create_future()
        self._session_waiter = waiter

        token = self._session_id
        try:
            await sio.connect(
                f"{self._config.base_url}?{urlencode({SESSION_COOKIE: token})}",
                headers={"Cookie": f"{SESSION_COOKIE}={token}"},
                transports=["websocket"],
                wait_timeout=self.handshake_timeout,
            )
        except socketio.exceptions.ConnectionError as exc:
            raise FoundryConnectionError(f"Socket.IO connection failed: {exc}") from exc
        self._state = ConnectionState.CONNECTED

        try:
            data = await asyncio.wait_for(waiter, self.handshake_timeout)
        except asyncio.TimeoutError as exc:
            raise SessionRejectedError(
                f"Foundry did not confirm the session within "
                f"{self.handshake_timeout:g}s. Check FOUNDRY_USER_ID and "
                f"ensure the world is loaded."
            ) from exc
        finally:
            if self._session_waiter is waiter:
                self._session_waiter = None

        user_id = data.get("userId") if isinstance(data, dict) else None
        if not user_id:
            raise SessionRejectedError(
                "Foundry rejected the session. Check FOUNDRY_USER_ID and "
                "ensure the world is loaded."
            )
        self._user_id = user_id

    # -- Socket events ------------------------------------------------------

    def _bind_socket(self, sio: socketio.AsyncClient) -> None:
        sio.on("connect", functools.partial(self._on_connect, sio))
        sio.on("disconnect", functools.partial(self._on_disconnect, sio))
        sio.on(SESSION_EVENT, functools.partial(self._on_session, sio))
        for event in self._listeners:
            sio.on(event, functools.partial(self._dispatch, event))

    def _on_connect(self, sio: socketio.AsyncClient) -> None:
        if sio is not self._socket or self._session_waiter is not None:
            return
        # The socket library reconnected on its own.  Foundry only accepts
        # the session again once it re-sends the session event.
        logger.info("Socket reconnected, waiting for session confirmation")
        self._state = ConnectionState.CONNECTED
        waiter = asyncio.get_running_loop().create_future()
        self._session_waiter = waiter
        self._confirm_task = asyncio.ensure_future(self._confirm_reconnect(sio, waiter))

    async def _confirm_reconnect(
        self, sio: socketio.AsyncClient, waiter: asyncio.Future[Any]
    ) -> None:
        try:
            data = await asyncio.wait_for(waiter, self.reconnect_confirm_timeout)
        except asyncio.TimeoutError:
            data = None
        finally:
            if self._session_waiter is waiter:
                self._session_waiter = None

        if sio is not self._socket:
            return
        user_id = data.get("userId") if isinstance(data, dict) else None
        if user_id:
            self._user_id = user_id
            self._state = ConnectionState.READY
            logger.info("Session confirmed again for user %s", user_id)
        else:
            logger.warning("Session not confirmed after reconnect; will log in again")
            self._state = ConnectionState.DISCONNECTED
            self._session_id = None

    def _on_disconnect(self, sio: socketio.AsyncClient, reason: str | None = None) -> None:
        if sio is not self._socket:
            return
        self._state = ConnectionState.DISCONNECTED
        if reason == _SERVER_DISCONNECT:
            logger.warning("Foundry closed the session; will log in again")
            self._session_id = None
        else:
            logger.info("Socket disconnected (%s)", reason or "unknown reason")

    def _on_session(self, sio: socketio.AsyncClient, data: Any = None) -> None:
        if sio is not self._socket:
            return
        waiter = self._session_waiter
        if waiter is not None and not waiter.done():
            waiter.set_result(data)

    def _dispatch(self, event: str, *args: Any) -> None:
        for listener in list(self._listeners.get(event, ())):
            try:
                listener(*args)
            except Exception:
                logger.exception("Listener for %r failed", event)

    # -- Raw listeners ------------------------------------------------------

    def on(self, event: str, listener: Listener) -> None:
        """Call ``listener(*args)`` for every ``event`` Foundry emits.

        Listeners stay registered across reconnects.
        """
        if event not in self._listeners:
            self._listeners[event] = []
            if self._socket is not None:
                self._socket.on(event, functools.partial(self._dispatch, event))
        self._listeners[event].append(listener)

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def on_module_message(self, module_id: str, listener: Listener) -> None:
        self.on(module_event(module_id), listener)

    def off_module_message(self, module_id: str, listener: Listener) -> None:
        self.off(module_event(module_id), listener)

    async def emit_module_message(self, module_id: str, data: Any) -> None:
        """Broadcast ``data`` on a module's channel to every connected browser."""
        await self.ensure_connected()
        await self._emit(module_event(module_id), data)

    # -- Socket primitives --------------------------------------------------

    def _require_socket(self) -> socketio.AsyncClient:
        sio = self._socket
        if sio is None or not sio.connected:
            raise FoundryTransportError("Not connected to Foundry VTT")
        return sio

    async def _call(self, event: str, data: Any = None, timeout: float | None = None) -> Any:
        """Emit ``event`` and wait for Foundry's acknowledgement."""
        sio = self._require_socket()
        timeout = self.request_timeout if timeout is None else timeout
        try:
            return await sio.call(event, data, timeout=timeout)
        except socketio.exceptions.TimeoutError as exc:
            raise FoundryTransportError(
                f'Foundry socket request "{event}" timed out after {timeout:g}s'
            ) from exc
        except socketio.exceptions.SocketIOError as exc:
            raise FoundryTransportError(
                f'Foundry socket request "{event}" failed: {exc or "disconnected"}'
            ) from exc

    async def _emit(self, event: str, *args: Any) -> None:
        sio = self._require_socket()
        # Always a tuple: python-socketio sends None as no argument and
        # spreads a lone tuple argument.
        try:
            await sio.emit(event, tuple(args))
        except socketio.exceptions.SocketIOError as exc:
            raise FoundryTransportError(
                f'Foundry socket emit "{event}" failed: {exc or "disconnected"}'
            ) from exc

    async def _with_retry(self, send: Callable[[], Awaitable[T]]) -> T:
        """Run ``send`` once, reconnecting and retrying once on a transport fault."""
        await self.ensure_connected()
        sio = self._socket
        try:
            return await send()
        except FoundryTransportError as exc:
            logger.warning("%s; reconnecting and retrying once", exc)
            # A concurrent call may already have replaced the socket.
            if self._socket is sio:
                await self._teardown()
            await self.ensure_connected()
            return await send()

    # -- Documents ----------------------------------------------------------

    async def modify_document(
        self,
        type: AnyDocumentType | str,
        action: DocumentAction | str,
        operation: dict[str, Any],
    ) -> DocumentResponse:
        """Run one ``modifyDocument`` request against the world.

        Args:
            type: A top-level or embedded document type.
            action: ``get``, ``create``, ``update`` or ``delete``.
            operation: See ``protocol.build_operation``.

        Raises:
            ValueError: Unknown document type or action (nothing is sent).
            FoundryRemoteError: Foundry rejected the operation.
            FoundryTransportError: The call failed twice at the transport level.
        """
        request = DocumentRequest(
            type=coerce_document_type(type),
            action=DocumentAction(action),
            operation=operation,
        )
        return await self._with_retry(lambda: self._modify_document(request))

    async def _modify_document(self, request: DocumentRequest) -> DocumentResponse:
        reply = await self._call(MODIFY_DOCUMENT_EVENT, request.to_payload())
        if not isinstance(reply, dict):
            raise FoundryRemoteError(f"Unexpected modifyDocument reply: {reply!r}")

        error = reply.get("error")
        if error:
            if isinstance(error, dict):
                message, stack = error.get("message"), error.get("stack")
            else:
                message, stack = str(error), None
            raise FoundryRemoteError(message or "Unknown Foundry error", stack)
        return DocumentResponse.from_reply(reply)

    # -- Generic socket calls -----------------------------------------------

    async def emit_socket(self, event: str, data: dict[str, Any]) -> Any:
        """Emit ``event`` with one data argument and return the acknowledgement."""
        return await self._with_retry(lambda: self._call(event, data))

    async def emit_socket_args(self, event: str, *args: Any) -> Any:
        """Emit ``event`` with several arguments before the acknowledgement.

        For handlers shaped like ``(data, options, callback)``.
        """
        return await self._with_retry(lambda: self._call(event, tuple(args)))

    async def emit_socket_raw(self, event: str, *args: Any) -> None:
        """Emit ``event`` without waiting for any reply."""
        await self._with_retry(lambda: self._emit(event, *args))

    async def emit_socket_callback(self, event: str, timeout: float | None = None) -> Any:
        """Emit ``event`` with no data, only an acknowledgement callback.

        For handlers such as ``world`` that receive the callback as their
        first argument.
        """
        timeout = self.callback_timeout if timeout is None else timeout
        return await self._with_retry(lambda: self._call(event, None, timeout))

    async def get_active_users(self) -> list[ActiveUser]:
        """Collect the ``userActivity`` events Foundry sends per active user.

        Foundry answers ``getUserActivity`` by emitting one event per
        connected user rather than acknowledging, so this listens for a
        short window and returns whatever arrived.
        """
        users: list[ActiveUser] = []

        def collect(user_id: str, activity: dict[str, Any] | None = None) -> None:
            users.append(ActiveUser(user_id=user_id, activity=activity or {}))

        self.on(USER_ACTIVITY_EVENT, collect)
        try:
            await self._with_retry(lambda: self._emit(GET_USER_ACTIVITY_EVENT))
            await asyncio.sleep(self.activity_window)
        finally:
            self.off(USER_ACTIVITY_EVENT, collect)
        return users

    # -- Uploads ------------------------------------------------------------

    async def upload_file(
        self,
        source: str,
        target_path: str,
        file_name: str,
        content: bytes,
        mime_type: str,
    ) -> dict[str, str]:
        """Upload ``content`` into Foundry's data directory.

        Returns:
            ``{"path": <path inside the data source>}``.
        """
        await self.ensure_connected()
        try:
            async with self._http() as http:
                response = await http.post(
                    UPLOAD_PATH,
                    headers={"Cookie": f"{SESSION_COOKIE}={self._session_id}"},
                    data={"source": source, "target": target_path},
                    files={"upload": (file_name, content, mime_type)},
                )
        except httpx.HTTPError as exc:
            raise FoundryError(f"Upload failed: {exc}") from exc

        if not response.is_success:
            raise FoundryError(f"Upload failed with HTTP {response.status_code}")
        try:
            result = response.json()
        except ValueError as exc:
            raise FoundryError("Upload returned an unreadable response") from exc

        if not isinstance(result, dict):
            raise FoundryError(f"Upload returned an unexpected response: {result!r}")
        if result.get("error"):
            raise FoundryRemoteError(f"Upload error: {result['error']}")
        if not result.get("path"):
            raise FoundryError("Upload succeeded but no path returned")
        return {"path": result["path"]}

    # -- Macro execution ----------------------------------------------------

    async def execute_macro_with_result(
        self,
        script: str,
        result_prefix: str,
        timeout: float = MACRO_TIMEOUT,
    ) -> MacroResult:
        """Run ``script`` in a browser's game context and read back its result.

        The script runs as a temporary macro, triggered through a chat
        message.  It must create a ChatMessage whose content is
        ``result_prefix`` followed by JSON; that message is polled for,
        parsed and deleted, and the macro is deleted afterwards.  A browser
        client must be connected to the world for the macro to execute.
        """
        await self.ensure_connected()
        user_id = self._user_id
        if not user_id:
            return MacroResult(success=False, error="Not authenticated: no user id available")

        macro_data = {
            "name": f"_mcp_{int(time.time() * 1000)}",
            "type": "script",
            "command": script,
            "author": user_id,
        }
        created = await self.modify_document(
            DocumentType.MACRO,
            DocumentAction.CREATE,
            build_operation(DocumentAction.CREATE, [macro_data]),
        )
        macro = created.result[0] if created.result else None
        macro_id = macro.get("_id") if isinstance(macro, dict) else None
        if not macro_id:
            return MacroResult(success=False, error="Failed to create temporary macro")

        try:
            trigger = {
                "content": f'<script>game.macros.get("{macro_id}")?.execute();</script>',
                "author": user_id,
                "type": 0,
            }
            await self.modify_document(
                DocumentType.CHAT_MESSAGE,
                DocumentAction.CREATE,
                build_operation(DocumentAction.CREATE, [trigger]),
            )

            message = await self._poll_chat(result_prefix, timeout)
            if message is None:
                return MacroResult(
                    success=False,
                    error=(
                        "Macro execution timed out. This requires a connected "
                        "browser client to execute macros."
                    ),
                )

            await self._delete_quietly(DocumentType.CHAT_MESSAGE, message.get("_id"))
            data = json.loads(message["content"][len(result_prefix):])
            return MacroResult(success=True, data=data)
        finally:
            await self._delete_quietly(DocumentType.MACRO, macro_id)

    async def _poll_chat(self, prefix: str, timeout: float) -> dict[str, Any] | None:
        attempts = max(1, math.ceil(timeout / self.macro_poll_interval))
        for _ in range(attempts):
            await asyncio.sleep(self.macro_poll_interval)
            response = await self.modify_document(
                DocumentType.CHAT_MESSAGE,
                DocumentAction.GET,
                build_operation(DocumentAction.GET, {}),
            )
            # Newest messages last.
            for message in reversed(response.result):
                content = message.get("content") if isinstance(message, dict) else None
                if isinstance(content, str) and content.startswith(prefix):
                    return message
        return None

    async def _delete_quietly(self, doc_type: DocumentType, doc_id: str | None) -> None:
        if not doc_id:
            return
        try:
            await self.modify_document(
                doc_type,
                DocumentAction.DELETE,
                build_operation(DocumentAction.DELETE, [doc_id]),
            )
        except FoundryError as exc:
            logger.warning("Cleanup of %s %s failed: %s", doc_type.value, doc_id, exc)
