"""
latent-mcp - MCP server that turns a Markdown vault into agent-searchable context.

Indexes every note of a vault into SQLite (documents, chunks, links), keeps the
index fresh while the vault changes, and exposes semantic search, backlinks and
note editing as tools for an LLM agent.

Stack:
- Python + FastMCP (official SDK)
- SQLite (index, settings)
- tiktoken + numpy (chunking, vector search)
- Markdown (source of truth)
"""

__version__ = "0.1.0"
__author__ = "macward"
