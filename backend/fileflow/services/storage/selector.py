"""Resolves the configured storage identifier to one backend instance, once."""
import logging
from typing import Callable

from fileflow.config import settings
from fileflow.services.storage.base import StorageBackend
from fileflow.services.storage.local import LocalStorageBackend
from fileflow.services.storage.object_store import S3ObjectStoreBackend

logger = logging.getLogger(__name__)

BackendFactory = Callable[[], StorageBackend]

_BACKENDS: dict[str, BackendFactory] = {}


def register_backend(*identifiers: str):
    """Decorator to register a backend factory under one or more identifiers."""
    def decorator(fn: BackendFactory) -> BackendFactory:
        for identifier in identifiers:
            _BACKENDS[identifier] = fn
        return fn
    return decorator


@register_backend("local")
def _local_backend() -> StorageBackend:
    return LocalStorageBackend(
        root=settings.FILE_STORAGE_PATH,
        download_prefix=settings.LOCAL_DOWNLOAD_URL_PREFIX,
        upload_prefix=settings.LOCAL_UPLOAD_URL_PREFIX,
    )


@register_backend("object-store", "s3", "minio")
def _object_store_backend() -> StorageBackend:
    return S3ObjectStoreBackend(
        bucket=settings.OBJECT_STORE_BUCKET,
        endpoint_url=settings.OBJECT_STORE_ENDPOINT,
        access_key=settings.OBJECT_STORE_ACCESS_KEY,
        secret_key=settings.OBJECT_STORE_SECRET_KEY,
        region=settings.OBJECT_STORE_REGION,
    )


class StorageStrategySelector:
    """Single accessor for the active backend. No runtime switching."""

    def __init__(self, identifier: str | None = None):
        self.identifier = (identifier or settings.FILE_STORAGE_TYPE).strip().lower()
        self._backend: StorageBackend | None = None

    def current(self) -> StorageBackend:
        if self._backend is None:
            factory = _BACKENDS.get(self.identifier)
            if factory is None:
                raise ValueError(
                    f"Unknown storage type: {self.identifier} (known: {sorted(_BACKENDS)})"
                )
            self._backend = factory()
            logger.info(f"Storage backend resolved: {self._backend.name}")
        return self._backend

    def override(self, backend: StorageBackend) -> None:
        """Pin an already-built backend (tests, embedding)."""
        self._backend = backend


storage_selector = StorageStrategySelector()
