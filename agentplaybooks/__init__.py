"""
AgentPlaybooks - publish personas, skills, MCP servers, memories and canvas
documents for AI agents.

The package exposes a REST API and a JSON-RPC MCP endpoint backed by
PostgreSQL.
"""

__version__ = "0.1.0"
