"""MCP server exposing the mirror to LLM clients."""
