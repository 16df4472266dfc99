"""MCP Router package."""

from .config import BackendDescriptor, RouterConfig, load_config

__all__ = ["BackendDescriptor", "RouterConfig", "load_config"]
