from .settings import SyncSettings, load_settings, DEFAULT_TABLES, DEFAULT_DB_PATH

__all__ = ["SyncSettings", "load_settings", "DEFAULT_TABLES", "DEFAULT_DB_PATH"]
