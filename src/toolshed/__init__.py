"""Toolshed — multi-tenant tool execution and credential brokering."""

__version__ = "0.1.0"
