# =============================================================================
# Storage Module
# =============================================================================
# In-memory message cache shared by the engine and the presentation layer.
# Nothing is persisted: the cache is rebuilt from the server on start.
# =============================================================================

from imapmenu.storage.cache import EmailCache, FolderEntry

__all__ = ["EmailCache", "FolderEntry"]
