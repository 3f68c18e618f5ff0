"""Wires the services together. Built once in the app lifespan, or by tests with their own parts."""
from dataclasses import dataclass

from fileflow.services.chunk_assembler import ChunkAssembler
from fileflow.services.file_service import FileService
from fileflow.services.notifications import ConnectionRegistry, NotificationDispatcher
from fileflow.services.quota_ledger import QuotaLedger
from fileflow.services.search import FullTextIndex, SearchCoordinator
from fileflow.services.storage import StorageBackend


@dataclass
class Services:
    storage: StorageBackend
    ledger: QuotaLedger
    assembler: ChunkAssembler
    dispatcher: NotificationDispatcher
    search: SearchCoordinator
    files: FileService


def build_services(session_factory, storage: StorageBackend,
                   full_text: FullTextIndex | None = None, **overrides) -> Services:
    """Build a full service graph on one session factory and one storage backend.

    Keyword overrides replace individual services (e.g. a ledger with a short TTL).
    """
    ledger = overrides.get("ledger") or QuotaLedger(session_factory=session_factory)
    assembler = overrides.get("assembler") or ChunkAssembler(storage=storage, session_factory=session_factory)
    dispatcher = overrides.get("dispatcher") or NotificationDispatcher(
        session_factory=session_factory, connections=ConnectionRegistry()
    )
    search = overrides.get("search") or SearchCoordinator(
        session_factory=session_factory, full_text=full_text, storage=storage
    )
    files = FileService(
        ledger=ledger,
        assembler=assembler,
        dispatcher=dispatcher,
        search=search,
        storage=storage,
        session_factory=session_factory,
    )
    return Services(storage, ledger, assembler, dispatcher, search, files)


def default_services() -> Services:
    """The module-level singletons, resolved against configuration."""
    from fileflow.services.chunk_assembler import chunk_assembler
    from fileflow.services.notifications import notification_dispatcher
    from fileflow.services.quota_ledger import quota_ledger
    from fileflow.services.search import search_coordinator
    from fileflow.services.storage import storage_selector

    storage = storage_selector.current()
    files = FileService(
        ledger=quota_ledger,
        assembler=chunk_assembler,
        dispatcher=notification_dispatcher,
        search=search_coordinator,
    )
    return Services(storage, quota_ledger, chunk_assembler, notification_dispatcher, search_coordinator, files)
