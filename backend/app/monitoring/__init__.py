"""Process-local metric registry and the chat backend's metric definitions."""

from . import metrics, registry

__all__ = ["metrics", "registry"]
