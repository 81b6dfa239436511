"""Hybrid file storage: Cloudflare R2 with a local filesystem fallback."""

from hybrid_storage.lib.storage import StorageManager, create_storage_manager

__all__ = ["StorageManager", "create_storage_manager"]
