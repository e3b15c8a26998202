"""MCP server exposing kata_static tools.

This module implements the Model Context Protocol (MCP) server that
exposes the asset catalog, run planning and the run ledger to AI tools
and external systems. Tools are read-only and return structured errors
with stable codes.
"""

from mcp_server.server import mcp

__all__ = ["mcp"]
