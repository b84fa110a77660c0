"""querybridge: an LLM tool-calling loop over an MCP host that serves a PostgreSQL database."""

__version__ = "0.1.0"
