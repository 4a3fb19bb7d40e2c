"""QR roots MCP server: secure, observable selection of the QR output directory."""

__version__ = "0.1.0"
