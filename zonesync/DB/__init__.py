from .Sync_Store_DB import SyncStoreDatabase, DatabaseError, SchemaError, InputError, ConflictError

__all__ = ["SyncStoreDatabase", "DatabaseError", "SchemaError", "InputError", "ConflictError"]
