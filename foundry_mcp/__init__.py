"""foundry-mcp: MCP server for Foundry VTT.

This package provides a Model Context Protocol (MCP) server that exposes a
running Foundry VTT world to AI assistants.  Foundry has no public API for
external programs, so the server logs in the way a browser does and speaks
Foundry's own Socket.IO protocol.

Architecture:
    MCP client <--stdio JSON-RPC--> foundry-mcp (this package)
                                         |
                                         | HTTP: /api/status, /join, /upload
                                         | Socket.IO: modifyDocument, ...
                                         v
                                    Foundry VTT server
                                         |
                                         | module.foundry-mcp-bridge (broadcast)
                                         v
                                    GM browser with the bridge module (RPC)
"""

__version__ = "0.7.0"
