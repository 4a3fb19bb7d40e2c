"""FastMCP sub-servers exposing the roots subsystem as tools."""
