from fileflow.services.storage.base import (
    StorageBackend,
    determine_file_type,
    generate_unique_filename,
    hash_bytes,
    sanitize_filename,
)
from fileflow.services.storage.local import LocalStorageBackend
from fileflow.services.storage.object_store import S3ObjectStoreBackend
from fileflow.services.storage.selector import StorageStrategySelector, storage_selector

__all__ = [
    "StorageBackend",
    "LocalStorageBackend",
    "S3ObjectStoreBackend",
    "StorageStrategySelector",
    "storage_selector",
    "determine_file_type",
    "generate_unique_filename",
    "hash_bytes",
    "sanitize_filename",
]
