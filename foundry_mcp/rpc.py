"""Request/response RPC with the browser-side bridge module.

Some things cannot be done through ``modifyDocument``: running code in the
live game context, reading canvas state, calling other modules' APIs.  For
those, the ``foundry-mcp-bridge`` browser module listens on Foundry's
``module.foundry-mcp-bridge`` socket channel and answers requests:

    -> {"type": "rpc-request",  "requestId": id, "method": m, "args": [...]}
    <- {"type": "rpc-response", "requestId": id, "success": true,
        "result": ..., "duration": ms}
    <- {"type": "rpc-response", "requestId": id, "success": false,
        "error": "..."}

    -> {"type": "rpc-ping", "requestId": id}
    <- {"type": "rpc-pong", "requestId": id, "moduleVersion": v, "userId": u}

The channel is a broadcast: every browser with the module answers (one per
open GM tab), and our own requests may echo back.  Replies are matched by
``requestId`` and the first one wins; later duplicates and replies for ids
we are not waiting on are dropped.

A timeout only means no reply arrived in time.  The browser may still have
received and executed the request, so side-effecting methods are not
at-most-once.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from .foundry_client import FoundryClient, FoundryError
from .protocol import (
    BRIDGE_MODULE_ID,
    RPC_CALL_TIMEOUT,
    RPC_PING,
    RPC_PING_TIMEOUT,
    RPC_PONG,
    RPC_REQUEST,
    RPC_RESPONSE,
    PingResult,
    RpcResponse,
)

logger = logging.getLogger("foundry-mcp.rpc")


class RpcTimeoutError(FoundryError):
    """No bridge module answered before the call's timeout."""


class RpcShutdownError(FoundryError):
    """The RPC layer was destroyed while the call was pending."""


@dataclass(slots=True)
class _PendingRequest:
    method: str
    future: asyncio.Future[RpcResponse]
    timer: asyncio.TimerHandle


class FoundryRpc:
    """Correlates RPC requests and responses on the bridge module channel."""

    def __init__(self, client: FoundryClient, module_id: str = BRIDGE_MODULE_ID) -> None:
        self._client = client
        self._module_id = module_id
        self._pending: dict[str, _PendingRequest] = {}
        self._listening = False

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # -- Listener -----------------------------------------------------------

    def _ensure_listener(self) -> None:
        if self._listening:
            return
        self._client.on_module_message(self._module_id, self._handle_message)
        self._listening = True

    def _handle_message(self, data: Any = None, *_: Any) -> None:
        if not isinstance(data, dict) or data.get("type") != RPC_RESPONSE:
            return
        pending = self._pending.pop(data.get("requestId"), None)
        if pending is None:
            # Duplicate from a second browser, or a reply we stopped waiting for.
            logger.debug("Dropping RPC response for unknown id %s", data.get("requestId"))
            return
        pending.timer.cancel()
        if not pending.future.done():
            pending.future.set_result(RpcResponse.from_message(data))

    # -- Calls --------------------------------------------------------------

    async def call(
        self,
        method: str,
        args: Sequence[Any] = (),
        timeout: float = RPC_CALL_TIMEOUT,
    ) -> RpcResponse:
        """Invoke ``method`` in the browser and return its response.

        A response with ``success=False`` is returned, not raised: it is the
        remote method's own failure and the caller decides what to do.

        Raises:
            RpcTimeoutError: Nothing answered within ``timeout`` seconds.
            FoundryError: The request could not be sent.
        """
        await self._client.ensure_connected()
        self._ensure_listener()

        loop = asyncio.get_running_loop()
        request_id = str(uuid.uuid4())
        future: asyncio.Future[RpcResponse] = loop.create_future()
        timer = loop.call_later(timeout, self._expire, request_id, timeout)
        self._pending[request_id] = _PendingRequest(method, future, timer)

        request = {
            "type": RPC_REQUEST,
            "requestId": request_id,
            "method": method,
            "args": list(args),
        }
        try:
            await self._client.emit_module_message(self._module_id, request)
            return await future
        finally:
            self._discard(request_id)

    def _expire(self, request_id: str, timeout: float) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None or pending.future.done():
            return
        pending.future.set_exception(
            RpcTimeoutError(
                f'RPC call "{pending.method}" timed out after {timeout:g}s. '
                f"Ensure a GM user has the {self._module_id} module active in a browser."
            )
        )

    def _discard(self, request_id: str) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is not None:
            pending.timer.cancel()

    async def ping(self, timeout: float = RPC_PING_TIMEOUT) -> PingResult:
        """Check whether any bridge module is answering.  Never raises."""
        try:
            await self._client.ensure_connected()
        except Exception as exc:
            logger.debug("Ping skipped, not connected: %s", exc)
            return PingResult(alive=False)

        request_id = str(uuid.uuid4())
        pong: asyncio.Future[PingResult] = asyncio.get_running_loop().create_future()

        def on_pong(data: Any = None, *_: Any) -> None:
            if (
                isinstance(data, dict)
                and data.get("type") == RPC_PONG
                and data.get("requestId") == request_id
                and not pong.done()
            ):
                pong.set_result(
                    PingResult(
                        alive=True,
                        module_version=data.get("moduleVersion"),
                        user_id=data.get("userId"),
                    )
                )

        self._client.on_module_message(self._module_id, on_pong)
        try:
            await self._client.emit_module_message(
                self._module_id, {"type": RPC_PING, "requestId": request_id}
            )
            return await asyncio.wait_for(pong, timeout)
        except asyncio.TimeoutError:
            return PingResult(alive=False)
        except Exception as exc:
            logger.debug("Ping failed: %s", exc)
            return PingResult(alive=False)
        finally:
            self._client.off_module_message(self._module_id, on_pong)

    # -- Shutdown -----------------------------------------------------------

    def destroy(self) -> None:
        """Fail every pending call and detach from the channel."""
        pending, self._pending = self._pending, {}
        for request in pending.values():
            request.timer.cancel()
            if not request.future.done():
                request.future.set_exception(RpcShutdownError("RPC system shutting down"))
        if pending:
            logger.info("Cancelled %d pending RPC call(s)", len(pending))

        if self._listening:
            self._client.off_module_message(self._module_id, self._handle_message)
            self._listening = False
