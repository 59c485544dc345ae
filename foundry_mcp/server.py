"""FastMCP server exposing a Foundry VTT world.

Each tool is a thin translation layer over ``FoundryClient`` (documents and
socket events) or ``FoundryRpc`` (code running in a GM's browser).  The
client connects lazily on the first tool call and reconnects on its own, so
tools never manage the connection themselves.

Run with::

    FOUNDRY_USER_ID=<gm-user-id> FOUNDRY_PASSWORD=... foundry-mcp
    python -m foundry_mcp.server --url http://localhost:30000 --user-id ...

For development with the MCP Inspector::

    uv run mcp dev foundry_mcp/server.py
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated, Any

import click
from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from pydantic import Field
from rich.console import Console

from . import __version__
from .config import DEFAULT_URL, FoundryConfig
from .documents import (
    apply_client_filters,
    filter_by_name,
    get_first_result,
    get_results,
    json_response,
    pick_fields,
    split_filters,
)
from .foundry_client import FoundryClient, FoundryError
from .protocol import (
    BRIDGE_MODULE_ID,
    DocumentAction,
    DocumentType,
    EmbeddedDocumentType,
    build_operation,
    parent_uuid,
)
from .rpc import FoundryRpc

logger = logging.getLogger("foundry-mcp")

DEFAULT_FIELDS = ["_id", "name", "type", "folder"]
DEFAULT_EMBEDDED_FIELDS = ["_id", "name", "type"]


def build_server(client: FoundryClient, rpc: FoundryRpc) -> FastMCP:
    """Create the FastMCP instance with every tool and resource registered."""

    @asynccontextmanager
    async def lifespan(_server: FastMCP) -> AsyncIterator[None]:
        try:
            yield
        finally:
            rpc.destroy()
            await client.disconnect()

    mcp = FastMCP("foundry-vtt", lifespan=lifespan)

    _register_world_tools(mcp, client)
    _register_document_tools(mcp, client)
    _register_embedded_tools(mcp, client)
    _register_compendium_tools(mcp, client)
    _register_file_tools(mcp, client)
    _register_game_tools(mcp, client)
    _register_rpc_tools(mcp, rpc)
    _register_resources(mcp, client)
    return mcp


def _status_payload(client: FoundryClient) -> dict[str, Any]:
    info = client.world_info.as_dict() if client.world_info else {}
    return {"connected": True, "state": client.state.value, **info}


# ===========================================================================
#  TOOLS — World
# ===========================================================================


def _register_world_tools(mcp: FastMCP, client: FoundryClient) -> None:

    @mcp.tool()
    async def foundry_get_status() -> str:
        """Get Foundry VTT connection status, world info, system, and version."""
        try:
            await client.ensure_connected()
        except FoundryError as exc:
            return json_response(
                {"connected": False, "state": client.state.value, "error": str(exc)}
            )
        return json_response(_status_payload(client))


# ===========================================================================
#  TOOLS — Documents
# ===========================================================================


def _register_document_tools(mcp: FastMCP, client: FoundryClient) -> None:

    @mcp.tool()
    async def foundry_list_documents(
        document_type: Annotated[DocumentType, Field(description=(
            "Document type (Actor, Item, Scene, JournalEntry, Macro, RollTable, etc.)"
        ))],
        fields: Annotated[list[str] | None, Field(description=(
            'Fields to include. Default: ["_id", "name", "type", "folder"]. '
            'Dot-notation for nested data, e.g. "system.attributes.hp.value".'
        ))] = None,
        type: Annotated[str | None, Field(description=(
            'Filter by sub-type, e.g. "npc" or "character" for actors'
        ))] = None,
        folder: Annotated[str | None, Field(description="Filter by folder _id")] = None,
        limit: Annotated[int, Field(ge=1, le=500, description="Max results")] = 50,
        offset: Annotated[int, Field(ge=0, description="Pagination offset")] = 0,
    ) -> str:
        """List documents of one type from the world, as summaries.

        Primary way to browse world content.  Sub-type and folder filters are
        applied by Foundry; pagination and field selection are applied here.
        """
        query: dict[str, Any] = {}
        if type:
            query["type"] = type
        if folder:
            query["folder"] = folder

        response = await client.modify_document(
            document_type, DocumentAction.GET, build_operation(DocumentAction.GET, query)
        )
        docs = get_results(response)
        page = docs[offset:offset + limit]
        results = [pick_fields(d, fields or DEFAULT_FIELDS) for d in page]
        return json_response(
            {"total": len(docs), "count": len(results), "offset": offset, "documents": results}
        )

    @mcp.tool()
    async def foundry_get_document(
        document_type: Annotated[DocumentType, Field(description="Document type")],
        id: Annotated[str, Field(description="Document _id")],
        fields: Annotated[list[str] | None, Field(description=(
            "Fields to return (dot-notation allowed). Default: the whole document."
        ))] = None,
    ) -> str:
        """Get a single document by type and _id, including system-specific data."""
        response = await client.modify_document(
            document_type,
            DocumentAction.GET,
            build_operation(DocumentAction.GET, {"_id": id}),
        )
        doc = next((d for d in get_results(response) if d.get("_id") == id), None)
        if doc is None:
            raise ToolError(f'{document_type.value} with id "{id}" not found')
        return json_response(pick_fields(doc, fields))

    @mcp.tool()
    async def foundry_search_documents(
        document_type: Annotated[DocumentType, Field(description="Document type")],
        name_pattern: Annotated[str | None, Field(description=(
            "Regex or substring matched case-insensitively against the document name"
        ))] = None,
        filters: Annotated[dict[str, Any] | None, Field(description=(
            'Field filters, dot-notation allowed, e.g. {"type": "npc", "system.details.cr": 5}'
        ))] = None,
        fields: Annotated[list[str] | None, Field(description="Fields to return")] = None,
        limit: Annotated[int, Field(ge=1, le=200, description="Max results")] = 20,
    ) -> str:
        """Search documents by name pattern and field filters.

        Top-level filters are sent to Foundry; nested (dotted) filters and
        the name pattern are applied to the returned documents.
        """
        server_query, client_filters = split_filters(filters or {})
        response = await client.modify_document(
            document_type, DocumentAction.GET, build_operation(DocumentAction.GET, server_query)
        )
        docs = get_results(response)
        if name_pattern:
            docs = filter_by_name(docs, name_pattern)
        docs = apply_client_filters(docs, client_filters)

        results = [pick_fields(d, fields or DEFAULT_FIELDS) for d in docs[:limit]]
        return json_response({"total": len(docs), "count": len(results), "documents": results})

    @mcp.tool()
    async def foundry_create_document(
        document_type: Annotated[DocumentType, Field(description="Document type")],
        data: Annotated[list[dict[str, Any]], Field(
            min_length=1, max_length=100,
            description=(
                "Document data objects (1-100). Each needs 'name' at minimum, e.g. "
                "{'name': 'Goblin', 'type': 'npc'}."
            ),
        )],
    ) -> str:
        """Create one or more documents in the world."""
        response = await client.modify_document(
            document_type, DocumentAction.CREATE, build_operation(DocumentAction.CREATE, data)
        )
        created = get_results(response)
        if len(data) == 1:
            return json_response(get_first_result(response))
        return json_response({"created": len(created), "ids": [d.get("_id") for d in created]})

    @mcp.tool()
    async def foundry_update_document(
        document_type: Annotated[DocumentType, Field(description="Document type")],
        updates: Annotated[list[dict[str, Any]], Field(
            min_length=1, max_length=100,
            description=(
                "Partial update objects (1-100), each with its _id. Dot-notation "
                'is allowed, e.g. {"_id": "abc", "system.attributes.hp.value": 25}.'
            ),
        )],
    ) -> str:
        """Update one or more existing documents with partial data."""
        for update in updates:
            if not update.get("_id"):
                raise ToolError("Each update object must include an _id field")
        response = await client.modify_document(
            document_type, DocumentAction.UPDATE, build_operation(DocumentAction.UPDATE, updates)
        )
        updated = get_results(response)
        return json_response({"updated": len(updated), "ids": [d.get("_id") for d in updated]})

    @mcp.tool()
    async def foundry_delete_document(
        document_type: Annotated[DocumentType, Field(description="Document type")],
        ids: Annotated[list[str], Field(
            min_length=1, max_length=100, description="Document _ids to delete (1-100)",
        )],
    ) -> str:
        """Delete one or more documents permanently."""
        response = await client.modify_document(
            document_type, DocumentAction.DELETE, build_operation(DocumentAction.DELETE, ids)
        )
        deleted = [str(i) for i in response.result]
        return json_response({"deleted": len(deleted), "ids": deleted})


# ===========================================================================
#  TOOLS — Embedded documents
# ===========================================================================


ParentType = Annotated[DocumentType, Field(description="Parent document type (e.g. Actor, Scene)")]
ParentId = Annotated[str, Field(description="Parent document _id")]
EmbeddedType = Annotated[EmbeddedDocumentType, Field(description=(
    "Embedded document type (e.g. Item, ActiveEffect, Token, Wall)"
))]


def _register_embedded_tools(mcp: FastMCP, client: FoundryClient) -> None:

    @mcp.tool()
    async def foundry_list_embedded(
        parent_type: ParentType,
        parent_id: ParentId,
        embedded_type: EmbeddedType,
        fields: Annotated[list[str] | None, Field(description=(
            'Fields to include. Default: ["_id", "name", "type"]'
        ))] = None,
    ) -> str:
        """List embedded documents within a parent (Items on an Actor, Tokens on a Scene)."""
        response = await client.modify_document(
            embedded_type,
            DocumentAction.GET,
            build_operation(
                DocumentAction.GET, {}, parent_uuid=parent_uuid(parent_type, parent_id)
            ),
        )
        results = [pick_fields(d, fields or DEFAULT_EMBEDDED_FIELDS) for d in get_results(response)]
        return json_response({"total": len(results), "documents": results})

    @mcp.tool()
    async def foundry_create_embedded(
        parent_type: ParentType,
        parent_id: ParentId,
        embedded_type: EmbeddedType,
        data: Annotated[list[dict[str, Any]], Field(
            min_length=1, description="Embedded document data objects",
        )],
    ) -> str:
        """Create embedded documents within a parent, e.g. batch-add Walls to a Scene."""
        response = await client.modify_document(
            embedded_type,
            DocumentAction.CREATE,
            build_operation(
                DocumentAction.CREATE, data, parent_uuid=parent_uuid(parent_type, parent_id)
            ),
        )
        created = get_results(response)
        return json_response({"created": len(created), "ids": [d.get("_id") for d in created]})

    @mcp.tool()
    async def foundry_update_embedded(
        parent_type: ParentType,
        parent_id: ParentId,
        embedded_type: EmbeddedType,
        updates: Annotated[list[dict[str, Any]], Field(
            min_length=1, description="Update objects, each with its _id",
        )],
    ) -> str:
        """Update embedded documents within a parent."""
        for update in updates:
            if not update.get("_id"):
                raise ToolError("Each update object must include an _id field")
        response = await client.modify_document(
            embedded_type,
            DocumentAction.UPDATE,
            build_operation(
                DocumentAction.UPDATE, updates, parent_uuid=parent_uuid(parent_type, parent_id)
            ),
        )
        updated = get_results(response)
        return json_response({"updated": len(updated), "ids": [d.get("_id") for d in updated]})

    @mcp.tool()
    async def foundry_delete_embedded(
        parent_type: ParentType,
        parent_id: ParentId,
        embedded_type: EmbeddedType,
        ids: Annotated[list[str], Field(min_length=1, description="Embedded document _ids")],
    ) -> str:
        """Delete embedded documents from a parent."""
        response = await client.modify_document(
            embedded_type,
            DocumentAction.DELETE,
            build_operation(
                DocumentAction.DELETE, ids, parent_uuid=parent_uuid(parent_type, parent_id)
            ),
        )
        deleted = [str(i) for i in response.result]
        return json_response({"deleted": len(deleted), "ids": deleted})


# ===========================================================================
#  TOOLS — Compendiums
# ===========================================================================


def _register_compendium_tools(mcp: FastMCP, client: FoundryClient) -> None:

    @mcp.tool()
    async def foundry_list_compendium_packs(
        type: Annotated[str | None, Field(description=(
            'Only packs storing this document type, e.g. "Item" or "Actor"'
        ))] = None,
    ) -> str:
        """List compendium packs.  Pack ids look like "{packageName}.{packName}"."""
        # The "world" event takes only a callback and returns the world data,
        # which includes pack metadata.
        world = await client.emit_socket_callback("world")
        raw_packs = (world.get("packs") or []) if isinstance(world, dict) else []

        packs = []
        for pack in raw_packs:
            index = pack.get("index")
            packs.append({
                "id": pack.get("id") or f"{pack.get('packageName')}.{pack.get('name')}",
                "label": pack.get("label"),
                "type": pack.get("type"),
                "packageName": pack.get("packageName"),
                "packageType": pack.get("packageType"),
                "count": len(index) if isinstance(index, list) else None,
            })
        if type:
            packs = [p for p in packs if p["type"] == type]
        return json_response({"total": len(packs), "packs": packs})

    @mcp.tool()
    async def foundry_get_compendium_index(
        pack_id: Annotated[str, Field(description='Compendium pack id, e.g. "pf1.spells"')],
        document_type: Annotated[DocumentType, Field(description=(
            "Document type stored in the pack (e.g. Item, Actor)"
        ))],
        fields: Annotated[list[str] | None, Field(description=(
            'Fields to include. Default: ["_id", "name", "type"]'
        ))] = None,
        limit: Annotated[int, Field(ge=1, le=500, description="Max results")] = 50,
        offset: Annotated[int, Field(ge=0, description="Pagination offset")] = 0,
    ) -> str:
        """List the entries of a compendium pack as summaries, with pagination."""
        response = await client.modify_document(
            document_type,
            DocumentAction.GET,
            build_operation(DocumentAction.GET, {}, pack=pack_id),
        )
        docs = get_results(response)
        page = docs[offset:offset + limit]
        results = [pick_fields(d, fields or DEFAULT_EMBEDDED_FIELDS) for d in page]
        return json_response({
            "total": len(docs),
            "count": len(results),
            "offset": offset,
            "packId": pack_id,
            "documents": results,
        })

    @mcp.tool()
    async def foundry_get_world_size() -> str:
        """Get disk usage of the world's document collections and packs."""
        return json_response(await client.emit_socket_callback("sizeInfo"))


# ===========================================================================
#  TOOLS — Files
# ===========================================================================


def _register_file_tools(mcp: FastMCP, client: FoundryClient) -> None:

    @mcp.tool()
    async def foundry_upload_file(
        file_name: Annotated[str, Field(description="File name with extension, e.g. 'map.webp'")],
        target_path: Annotated[str, Field(description=(
            "Destination directory inside the data source, e.g. 'worlds/my-world/scenes'"
        ))],
        base64_content: Annotated[str | None, Field(description=(
            "Base64-encoded file content. Required if local_path is not given."
        ))] = None,
        local_path: Annotated[str | None, Field(description=(
            "Absolute path of a local file to upload (same-machine use)"
        ))] = None,
        mime_type: Annotated[str, Field(description="MIME type of the file")] = "image/webp",
    ) -> str:
        """Upload a file into the Foundry data directory."""
        if local_path:
            path = Path(local_path).expanduser()
            try:
                content = await asyncio.to_thread(path.read_bytes)
            except OSError as exc:
                raise ToolError(f"Cannot read {path}: {exc}") from exc
        elif base64_content:
            try:
                content = base64.b64decode(base64_content, validate=True)
            except binascii.Error as exc:
                raise ToolError(f"Invalid base64 content: {exc}") from exc
        else:
            raise ToolError("Either base64_content or local_path must be provided")

        result = await client.upload_file("data", target_path, file_name, content, mime_type)
        return json_response({
            "uploaded": True,
            "path": result["path"],
            "fileName": file_name,
            "mimeType": mime_type,
            "sizeBytes": len(content),
            "source": "localPath" if local_path else "base64",
        })

    @mcp.tool()
    async def foundry_browse_files(
        source: Annotated[str, Field(
            pattern="^(data|public|s3)$", description='Storage source: "data", "public" or "s3"',
        )] = "data",
        target: Annotated[str, Field(description=(
            'Directory relative to the source root, e.g. "worlds/my-world/assets"'
        ))] = "",
    ) -> str:
        """Browse files and directories in Foundry's file storage."""
        # manageFiles takes (data, options, callback).
        response = await client.emit_socket_args(
            "manageFiles", {"action": "browseFiles", "storage": source, "target": target}, {}
        )
        return json_response(response)


# ===========================================================================
#  TOOLS — Game and presentation
# ===========================================================================


_PAUSE_SCRIPT = """
await game.togglePause({pause}, {{ broadcast: true }});
await ChatMessage.create({{
  content: "MCP_PAUSE:" + JSON.stringify({{ paused: game.paused }}),
  whisper: [game.userId],
  type: CONST.CHAT_MESSAGE_STYLES.OTHER,
}});
"""


def _register_game_tools(mcp: FastMCP, client: FoundryClient) -> None:

    @mcp.tool()
    async def foundry_list_active_users() -> str:
        """List users currently connected to the world, with their activity data."""
        users = await client.get_active_users()
        return json_response({"total": len(users), "users": [u.as_dict() for u in users]})

    @mcp.tool()
    async def foundry_toggle_pause(
        pause: Annotated[bool, Field(description="True to pause, false to unpause")],
    ) -> str:
        """Pause or unpause the game for everyone.  Needs a connected browser client."""
        script = _PAUSE_SCRIPT.format(pause="true" if pause else "false")
        result = await client.execute_macro_with_result(script, "MCP_PAUSE:")
        if not result.success:
            raise ToolError(result.error or "Macro execution failed")
        return json_response(result.data)

    @mcp.tool()
    async def foundry_share_image(
        image: Annotated[str, Field(description=(
            'Image path inside Foundry data or a URL, e.g. "worlds/my-world/handout.webp"'
        ))],
        title: Annotated[str | None, Field(description="Title shown with the image")] = None,
        users: Annotated[list[str] | None, Field(description=(
            "User _ids to show it to. Default: everyone connected."
        ))] = None,
    ) -> str:
        """Show an image to players as a popup."""
        data: dict[str, Any] = {"image": image}
        if title:
            data["title"] = title
        if users:
            data["users"] = users
        await client.emit_socket_raw("shareImage", data)
        return json_response(
            {"shared": True, "image": image, "title": title, "targetUsers": users or "all"}
        )

    @mcp.tool()
    async def foundry_show_journal(
        journal_id: Annotated[str, Field(description="JournalEntry _id to show")],
        force: Annotated[bool, Field(description=(
            "Pop the journal up immediately instead of just notifying"
        ))] = False,
        users: Annotated[list[str] | None, Field(description=(
            "User _ids to show it to. Default: everyone connected."
        ))] = None,
    ) -> str:
        """Display a journal entry to players."""
        options: dict[str, Any] = {"force": force}
        if users:
            options["users"] = users
        await client.emit_socket_args("showEntry", f"JournalEntry.{journal_id}", options)
        return json_response(
            {"shown": True, "journalId": journal_id, "force": force, "targetUsers": users or "all"}
        )


# ===========================================================================
#  TOOLS — Browser RPC
# ===========================================================================


def _register_rpc_tools(mcp: FastMCP, rpc: FoundryRpc) -> None:

    @mcp.tool()
    async def foundry_rpc(
        method: Annotated[str, Field(description=(
            "Bridge method: 'eval', 'getCanvasDimensions', 'getTokensOnCanvas', "
            "'rollFormula', 'fromUuid', 'getModuleApis' or 'callModuleApi'"
        ))],
        args: Annotated[list[Any] | None, Field(description=(
            "Method arguments; the first element is the params object, e.g. "
            "[{'script': 'return game.system.id'}] for eval or "
            "[{'formula': '2d6+3'}] for rollFormula"
        ))] = None,
        timeout: Annotated[float, Field(gt=0, le=300, description=(
            "Seconds to wait for the browser to answer"
        ))] = 15.0,
    ) -> str:
        """Run a method in a GM's browser through the foundry-mcp-bridge module.

        Gives access to the live game, canvas and module APIs, which the
        document tools cannot reach.  Use foundry_rpc_ping first to check that
        a GM browser with the module is connected.  A timed-out call may still
        have run in the browser.
        """
        try:
            response = await rpc.call(method, args or [], timeout)
        except FoundryError as exc:
            raise ToolError(str(exc)) from exc
        if not response.success:
            raise ToolError(f'RPC method "{method}" failed: {response.error}')
        return json_response(
            {"method": method, "result": response.result, "duration": response.duration}
        )

    @mcp.tool()
    async def foundry_rpc_ping() -> str:
        """Check whether a GM browser with the foundry-mcp-bridge module is answering."""
        result = await rpc.ping()
        return json_response(result.as_dict())


# ===========================================================================
#  RESOURCES
# ===========================================================================


def _register_resources(mcp: FastMCP, client: FoundryClient) -> None:

    @mcp.resource("foundry://world/status", mime_type="application/json")
    async def world_status() -> str:
        """Current world info: version, system, active status, users."""
        await client.ensure_connected()
        return json_response(_status_payload(client))

    @mcp.resource("foundry://actors/{actor_id}", mime_type="application/json")
    async def actor(actor_id: str) -> str:
        """Full actor data including stats, items, and effects."""
        response = await client.modify_document(
            DocumentType.ACTOR,
            DocumentAction.GET,
            build_operation(DocumentAction.GET, {"_id": actor_id}),
        )
        doc = get_first_result(response)
        if doc is None:
            raise ValueError(f'Actor "{actor_id}" not found')
        return json_response(doc)


# ===========================================================================
#  Entry point
# ===========================================================================


console = Console(stderr=True)


def _configure_logging(level: str) -> None:
    # All output goes to stderr; stdout is the JSON-RPC transport.
    logging.basicConfig(
        stream=sys.stderr,
        level=level.upper(),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )


@click.command()
@click.option(
    "--url",
    envvar="FOUNDRY_URL",
    default=DEFAULT_URL,
    show_default=True,
    help="Base URL of the Foundry VTT server.",
)
@click.option(
    "--user-id",
    envvar="FOUNDRY_USER_ID",
    default="",
    help="_id of the Foundry user to log in as (normally a Gamemaster).",
)
@click.option(
    "--password",
    envvar="FOUNDRY_PASSWORD",
    default="",
    help="Password of that user.",
)
@click.option(
    "--bridge-module",
    envvar="FOUNDRY_MCP_BRIDGE_ID",
    default=BRIDGE_MODULE_ID,
    show_default=True,
    help="Id of the browser module answering RPC calls.",
)
@click.option(
    "--log-level",
    envvar="FOUNDRY_MCP_LOG_LEVEL",
    default="INFO",
    show_default=True,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
)
@click.version_option(version=__version__, prog_name="foundry-mcp")
def main(url: str, user_id: str, password: str, bridge_module: str, log_level: str) -> None:
    """MCP server for Foundry VTT, speaking JSON-RPC over stdio.

    Every option can also be set through the environment variable shown
    in its help.
    """
    _configure_logging(log_level)

    if not user_id:
        console.print(
            "[red]Error:[/red] FOUNDRY_USER_ID is required. Set it to the _id "
            "of a Foundry VTT user with the Gamemaster role."
        )
        sys.exit(1)

    config = FoundryConfig(
        url=url, user_id=user_id, password=password, bridge_module_id=bridge_module
    )
    client = FoundryClient(config)
    rpc = FoundryRpc(client, config.bridge_module_id)
    logger.info("Starting foundry-mcp %s for %s", __version__, config.base_url)
    build_server(client, rpc).run(transport="stdio")


if __name__ == "__main__":
    main()
