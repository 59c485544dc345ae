"""Helpers for shaping ``modifyDocument`` results for tool output.

Foundry documents are nested JSON objects.  Tools let the caller name fields
with dot-notation (``system.attributes.hp.value``), so most of these helpers
walk such paths.  Foundry's own query only matches top-level keys, which is
why filters on nested fields are applied here on the client side.
"""

from __future__ import annotations

import json
import re
from typing import Any

from .protocol import DocumentResponse

_MISSING = object()


def json_response(data: Any) -> str:
    """Serialise tool output as indented JSON text."""
    return json.dumps(data, indent=2, default=str)


def get_results(response: DocumentResponse) -> list[dict[str, Any]]:
    """Return the documents from a get/create/update response."""
    return [doc for doc in response.result if isinstance(doc, dict)]


def get_first_result(response: DocumentResponse) -> dict[str, Any] | None:
    """Return the first document of a response, or ``None`` if it is empty."""
    results = get_results(response)
    return results[0] if results else None


def _lookup(doc: dict[str, Any], path: str) -> Any:
    value: Any = doc
    for part in path.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return _MISSING
    return value


def pick_fields(doc: dict[str, Any], fields: list[str] | None = None) -> dict[str, Any]:
    """Return only ``fields`` of ``doc``.

    Dotted names are resolved through nested objects and keyed by the full
    dotted name in the output.  Missing fields come back as ``None``.  With
    no fields, the whole document is returned.
    """
    if not fields:
        return doc
    picked: dict[str, Any] = {}
    for name in fields:
        value = _lookup(doc, name)
        picked[name] = None if value is _MISSING else value
    return picked


def apply_client_filters(
    docs: list[dict[str, Any]], filters: dict[str, Any]
) -> list[dict[str, Any]]:
    """Keep documents whose (possibly nested) fields equal every filter value."""
    if not filters:
        return docs
    return [
        doc
        for doc in docs
        if all(_lookup(doc, key) == expected for key, expected in filters.items())
    ]


def filter_by_name(docs: list[dict[str, Any]], pattern: str) -> list[dict[str, Any]]:
    """Keep documents whose ``name`` matches ``pattern``, case-insensitively.

    ``pattern`` is tried as a regular expression first; if it does not
    compile, a plain substring match is used instead.
    """
    try:
        regex = re.compile(pattern, re.IGNORECASE)
    except re.error:
        needle = pattern.lower()
        return [
            doc for doc in docs
            if isinstance(doc.get("name"), str) and needle in doc["name"].lower()
        ]
    return [
        doc for doc in docs
        if isinstance(doc.get("name"), str) and regex.search(doc["name"])
    ]


def split_filters(filters: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Split filters into a server-side query and client-side filters.

    Returns:
        ``(server_query, client_filters)``: top-level keys can be sent to
        Foundry as the ``get`` query, dotted keys must be applied locally.
    """
    server_query: dict[str, Any] = {}
    client_filters: dict[str, Any] = {}
    for key, value in filters.items():
        if "." in key:
            client_filters[key] = value
        else:
            server_query[key] = value
    return server_query, client_filters
