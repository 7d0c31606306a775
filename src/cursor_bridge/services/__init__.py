"""Cursor bridge service modules."""

__all__ = [
    "chat_service",
    "model_catalog_service",
]
