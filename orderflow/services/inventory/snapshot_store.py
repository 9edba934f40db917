"""
Persistence of the last good inventory snapshot for crash recovery.

The snapshot is one replaceable JSON document.
"""

from abc import ABC, abstractmethod
from typing import Optional

from pydantic import ValidationError as SchemaValidationError

from orderflow.cache.redis_client import RedisClient
from orderflow.core.logging import get_logger
from orderflow.schemas.inventory import InventorySnapshot

logger = get_logger(__name__)


class SnapshotStore(ABC):
    @abstractmethod
    async def save(self, snapshot: InventorySnapshot) -> None:
        ...

    @abstractmethod
    async def load(self) -> Optional[InventorySnapshot]:
        """Return the persisted snapshot, or None when nothing usable is stored."""


class InMemorySnapshotStore(SnapshotStore):
    def __init__(self, snapshot: Optional[InventorySnapshot] = None):
        self.snapshot = snapshot
        self.saves = 0

    async def save(self, snapshot: InventorySnapshot) -> None:
        self.snapshot = snapshot
        self.saves += 1

    async def load(self) -> Optional[InventorySnapshot]:
        return self.snapshot


class RedisSnapshotStore(SnapshotStore):
    """Stores the snapshot under a single Redis key without expiry."""

    def __init__(self, client: RedisClient, key: str):
        self._client = client
        self._key = key

    async def save(self, snapshot: InventorySnapshot) -> None:
        await self._client.set_json(self._key, snapshot.model_dump(mode="json"))
        logger.debug(
            "Inventory snapshot persisted",
            key=self._key,
            products=len(snapshot.products),
        )

    async def load(self) -> Optional[InventorySnapshot]:
        document = await self._client.get_json(self._key)
        if document is None:
            return None
        try:
            return InventorySnapshot.model_validate(document)
        except SchemaValidationError as e:
            logger.warning(
                "Discarding unreadable inventory snapshot",
                key=self._key,
                error=str(e),
            )
            return None
