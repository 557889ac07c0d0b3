"""Events Engine package: signed webhook ingestion, idempotency, and handler dispatch."""

from .gateway import EventGateway, IngestResult  # noqa: F401
from .router import EventRouter  # noqa: F401
from .schemas import EventType, HandlerResult, StoredEvent  # noqa: F401
from .store import ClaimResult, IdempotencyStore  # noqa: F401
