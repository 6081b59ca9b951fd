from functools import lru_cache

from .config import get_settings
from .db.database import PersistenceGateway
from .services.document_lookup import DocumentLookupService
from .services.status_monitor import StatusMonitor


# one of each per process; created on first use, torn down on shutdown
@lru_cache(maxsize=1)
def get_gateway() -> PersistenceGateway:
    return PersistenceGateway()


@lru_cache(maxsize=1)
def get_status_monitor() -> StatusMonitor:
    return StatusMonitor(get_settings(), get_gateway())


@lru_cache(maxsize=1)
def get_document_service() -> DocumentLookupService:
    return DocumentLookupService(get_settings(), get_gateway(), get_status_monitor())
