"""Tests for storage strategy selection."""
import pytest

from fileflow.config import settings
from fileflow.services.storage import LocalStorageBackend, S3ObjectStoreBackend, StorageStrategySelector


def test_local_is_resolved_once():
    selector = StorageStrategySelector("local")
    backend = selector.current()
    assert isinstance(backend, LocalStorageBackend)
    assert selector.current() is backend


@pytest.mark.parametrize("identifier", ["object-store", "s3", "MinIO"])
def test_object_store_aliases(identifier, monkeypatch):
    monkeypatch.setattr(settings, "OBJECT_STORE_ENDPOINT", "http://minio:9000")
    backend = StorageStrategySelector(identifier).current()
    assert isinstance(backend, S3ObjectStoreBackend)
    assert backend.name == "object-store"


def test_unknown_identifier_fails_at_resolution():
    with pytest.raises(ValueError, match="Unknown storage type"):
        StorageStrategySelector("ftp").current()


def test_override_pins_backend(storage):
    selector = StorageStrategySelector("ftp")
    selector.override(storage)
    assert selector.current() is storage
