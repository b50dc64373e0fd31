"""Agent execution and context-management engine for CMS tool calling."""

__version__ = "0.1.0"
