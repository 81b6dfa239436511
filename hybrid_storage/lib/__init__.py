from hybrid_storage.lib.hooks import action, hooks

__all__ = ["action", "hooks"]
