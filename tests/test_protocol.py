"""Tests for the wire-level helpers and message types."""

import pytest

from foundry_mcp.config import FoundryConfig
from foundry_mcp.protocol import (
    ActiveUser,
    DocumentAction,
    DocumentRequest,
    DocumentResponse,
    DocumentType,
    EmbeddedDocumentType,
    PingResult,
    RpcResponse,
    WorldInfo,
    build_operation,
    coerce_document_type,
    module_event,
    parent_uuid,
)


class TestBuildOperation:
    def test_get(self):
        assert build_operation("get", {"type": "npc"}) == {"query": {"type": "npc"}}

    def test_create(self):
        assert build_operation(DocumentAction.CREATE, [{"name": "A"}]) == {"data": [{"name": "A"}]}

    def test_update(self):
        op = build_operation("update", [{"_id": "a1", "name": "B"}])
        assert op == {"updates": [{"_id": "a1", "name": "B"}]}

    def test_delete(self):
        assert build_operation("delete", ["a1", "a2"]) == {"ids": ["a1", "a2"]}

    def test_parent_and_pack(self):
        op = build_operation("get", {}, parent_uuid="Actor.a1", pack="world.monsters")
        assert op == {"query": {}, "parentUuid": "Actor.a1", "pack": "world.monsters"}

    def test_unknown_action(self):
        with pytest.raises(ValueError):
            build_operation("patch", {})


class TestDocumentTypes:
    def test_top_level(self):
        assert coerce_document_type("JournalEntry") is DocumentType.JOURNAL_ENTRY

    def test_embedded(self):
        assert coerce_document_type("ActiveEffect") is EmbeddedDocumentType.ACTIVE_EFFECT

    def test_item_prefers_top_level(self):
        assert coerce_document_type("Item") is DocumentType.ITEM

    def test_enum_passes_through(self):
        assert coerce_document_type(EmbeddedDocumentType.ITEM) is EmbeddedDocumentType.ITEM

    def test_unknown(self):
        with pytest.raises(ValueError, match="'actor'"):
            coerce_document_type("actor")


class TestNames:
    def test_module_event(self):
        assert module_event("foundry-mcp-bridge") == "module.foundry-mcp-bridge"

    def test_parent_uuid_from_enum(self):
        assert parent_uuid(DocumentType.SCENE, "s1") == "Scene.s1"

    def test_parent_uuid_from_string(self):
        assert parent_uuid("Actor", "a1") == "Actor.a1"


class TestDocumentMessages:
    def test_request_payload(self):
        request = DocumentRequest(
            EmbeddedDocumentType.TOKEN, DocumentAction.DELETE, {"ids": ["t1"]}
        )
        assert request.to_payload() == {
            "type": "Token",
            "action": "delete",
            "operation": {"ids": ["t1"]},
        }

    def test_response_from_reply(self):
        response = DocumentResponse.from_reply({
            "type": "Actor",
            "action": "delete",
            "result": ["a1"],
            "userId": "u1",
            "operation": {"ids": ["a1"]},
        })
        assert response.result == ["a1"]
        assert response.user_id == "u1"
        assert response.broadcast is False
        assert response.operation == {"ids": ["a1"]}

    def test_response_null_result(self):
        response = DocumentResponse.from_reply({"type": "Actor", "action": "get", "result": None})
        assert response.result == []


class TestStatus:
    def test_world_info(self):
        info = WorldInfo.from_status({
            "active": True,
            "version": "12.331",
            "world": "w",
            "system": "pf2e",
            "systemVersion": "6.0.0",
        })
        assert info.active
        assert info.as_dict() == {
            "active": True,
            "version": "12.331",
            "world": "w",
            "system": "pf2e",
            "systemVersion": "6.0.0",
        }

    def test_inactive_world(self):
        info = WorldInfo.from_status({"active": False, "version": "12.331"})
        assert not info.active
        assert info.world is None

    def test_active_user(self):
        assert ActiveUser("u1").as_dict() == {"userId": "u1", "activity": {}}


class TestRpcMessages:
    def test_response(self):
        response = RpcResponse.from_message(
            {"type": "rpc-response", "requestId": "r1", "success": True, "result": [1], "duration": 12}
        )
        assert response == RpcResponse("r1", True, [1], None, 12)

    def test_dead_ping(self):
        assert PingResult(alive=False, module_version="x").as_dict() == {"alive": False}


class TestConfig:
    def test_base_url_strips_slash(self):
        assert FoundryConfig(url="https://vtt.example.com/").base_url == "https://vtt.example.com"

    def test_defaults(self):
        config = FoundryConfig()
        assert config.base_url == "http://localhost:30000"
        assert config.bridge_module_id == "foundry-mcp-bridge"
