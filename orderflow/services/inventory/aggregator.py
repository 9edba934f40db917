"""
Multi-source inventory aggregator with a time-bounded cache.

The aggregator owns the only copy of the current ``InventorySnapshot``. A
refresh fans out one fetch per (product, source) pair, waits for all of them
to settle, consolidates the figures per product and swaps the cached
snapshot in one assignment. ``get_inventory`` never raises: a failed source
counts as zero for that product, a product with no real figure gets a
bounded synthetic value, and a failed refresh falls back to the last good
snapshot.
"""

import asyncio
import random
import time
from typing import Callable, Optional, Sequence

from orderflow.core.exceptions import SourceFetchError
from orderflow.core.logging import get_logger, log_performance
from orderflow.schemas.inventory import (
    InventorySnapshot,
    ProductInventory,
    SourceReading,
    VariantStock,
)
from orderflow.schemas.orders import utcnow
from orderflow.services.inventory.catalog import (
    RETAILER_SOURCE,
    CatalogProduct,
    ProductCatalog,
)
from orderflow.services.inventory.snapshot_store import SnapshotStore
from orderflow.services.inventory.sources import InventorySource

logger = get_logger(__name__)


def consolidate_stock(values: Sequence[int]) -> Optional[int]:
    """
    Combine per-source stock figures into one number.

    The minimum is used when every source reports stock, the maximum when
    only some do, and None when no source reports any.
    """
    positive = [v for v in values if v > 0]
    if not positive:
        return None
    if len(positive) == len(values):
        return min(positive)
    return max(positive)


def split_evenly(total: int, variants: Sequence[str]) -> list[VariantStock]:
    """
    Split ``total`` across ``variants``.

    Every variant gets ``total // n``; the remainder goes one unit each to
    the first variants in catalog order.
    """
    if not variants:
        return []
    base, remainder = divmod(total, len(variants))
    return [
        VariantStock(variant=variant, stock=base + (1 if index < remainder else 0))
        for index, variant in enumerate(variants)
    ]


class InventoryAggregator:
    """
    Cached, consolidated view of stock across inventory sources.

    Args:
        sources: Source adapters, each identified by its ``name``
        catalog: Products to track
        snapshot_store: Optional persistence for the last good snapshot
        ttl_seconds: Age under which the cached snapshot is served as is
        source_timeout: Overall bound on one source fetch, retries included
        fallback_min: Lower bound of synthetic stock
        fallback_max: Upper bound of synthetic stock
        clock: Monotonic clock used for cache age
        rng: Random source for synthetic stock values
    """

    def __init__(
        self,
        sources: Sequence[InventorySource],
        catalog: Optional[ProductCatalog] = None,
        snapshot_store: Optional[SnapshotStore] = None,
        ttl_seconds: float = 300.0,
        source_timeout: float = 10.0,
        fallback_min: int = 10,
        fallback_max: int = 50,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        if fallback_min < 0 or fallback_min > fallback_max:
            raise ValueError("fallback bounds must satisfy 0 <= min <= max")

        self._sources = list(sources)
        self._catalog = catalog or ProductCatalog()
        self._store = snapshot_store
        self._ttl = ttl_seconds
        self._source_timeout = source_timeout
        self._fallback_min = fallback_min
        self._fallback_max = fallback_max
        self._clock = clock
        self._rng = rng or random.Random()

        self._snapshot: Optional[InventorySnapshot] = None
        self._cached_at: Optional[float] = None
        self._generation = 0
        self._refresh_lock = asyncio.Lock()

    @property
    def snapshot(self) -> Optional[InventorySnapshot]:
        return self._snapshot

    @property
    def source_timeout(self) -> float:
        return self._source_timeout

    def cache_age(self) -> Optional[float]:
        if self._cached_at is None:
            return None
        return self._clock() - self._cached_at

    def is_fresh(self) -> bool:
        age = self.cache_age()
        return age is not None and age < self._ttl

    async def get_inventory(self, force_refresh: bool = False) -> InventorySnapshot:
        """
        Return the current snapshot, refreshing it when stale or forced.

        A fresh cache is returned without any network call.
        """
        if not force_refresh and self._snapshot is not None and self.is_fresh():
            return self._snapshot
        return await self.refresh()

    async def get_product_inventory(
        self, product_id: str, force_refresh: bool = False
    ) -> Optional[ProductInventory]:
        snapshot = await self.get_inventory(force_refresh=force_refresh)
        return snapshot.get(product_id)

    def check_stock(self, product_id: str, variant: Optional[str], quantity: int) -> bool:
        """
        Advisory stock check against the cached snapshot only.

        Never triggers a refresh and never reserves stock. Unknown products
        and variants, or an empty cache, report False.
        """
        if self._snapshot is None:
            return False
        product = self._snapshot.get(product_id)
        if product is None:
            return False
        available = product.variant_stock(variant)
        return available is not None and available >= quantity

    async def refresh(self) -> InventorySnapshot:
        """
        Rebuild the snapshot from all sources.

        Concurrent callers share one refresh: whoever waited on the lock gets
        the snapshot produced while it waited.
        """
        generation = self._generation
        async with self._refresh_lock:
            if self._generation != generation and self._snapshot is not None:
                return self._snapshot

            try:
                with log_performance(
                    logger,
                    "inventory_refresh",
                    products=len(self._catalog),
                    sources=len(self._sources),
                ):
                    snapshot = await self._build_snapshot()
            except Exception as e:
                logger.error(
                    "Inventory refresh failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    has_last_good=self._snapshot is not None,
                )
                if self._snapshot is not None:
                    return self._snapshot
                return self._synthetic_snapshot()

            self._snapshot = snapshot
            self._cached_at = self._clock()
            self._generation += 1

        await self._persist(snapshot)
        return snapshot

    async def restore(self) -> Optional[InventorySnapshot]:
        """
        Load the last persisted snapshot as a stale cache entry.

        It serves ``check_stock`` and refresh failures until the first
        successful refresh replaces it.
        """
        if self._store is None:
            return None
        try:
            snapshot = await self._store.load()
        except Exception as e:
            logger.warning(
                "Could not restore inventory snapshot",
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

        if snapshot is not None and self._snapshot is None:
            self._snapshot = snapshot
            logger.info(
                "Inventory snapshot restored",
                products=len(snapshot.products),
                fetched_at=snapshot.fetched_at.isoformat(),
            )
        return snapshot

    async def run_periodic_refresh(self, interval_seconds: float) -> None:
        """Refresh forever at a fixed interval; cancel the task to stop."""
        while True:
            await self.get_inventory(force_refresh=True)
            await asyncio.sleep(interval_seconds)

    async def _persist(self, snapshot: InventorySnapshot) -> None:
        if self._store is None:
            return
        try:
            await self._store.save(snapshot)
        except Exception as e:
            logger.warning(
                "Failed to persist inventory snapshot",
                error=str(e),
                error_type=type(e).__name__,
            )

    async def _fetch_one(
        self, source: InventorySource, product: CatalogProduct
    ) -> SourceReading:
        try:
            return await asyncio.wait_for(
                source.fetch(product), timeout=self._source_timeout
            )
        except asyncio.TimeoutError as e:
            raise SourceFetchError(
                f"{source.name} timed out after {self._source_timeout}s",
                source=source.name,
                product_id=product.product_id,
            ) from e

    async def _build_snapshot(self) -> InventorySnapshot:
        products = list(self._catalog)
        pairs = [(product, source) for product in products for source in self._sources]

        outcomes = await asyncio.gather(
            *(self._fetch_one(source, product) for product, source in pairs),
            return_exceptions=True,
        )

        by_product: dict[str, dict[str, object]] = {p.product_id: {} for p in products}
        for (product, source), outcome in zip(pairs, outcomes):
            if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                raise outcome
            by_product[product.product_id][source.name] = outcome

        return InventorySnapshot(
            products=[
                self._consolidate(product, by_product[product.product_id])
                for product in products
            ],
            fetched_at=utcnow(),
        )

    def _consolidate(
        self, product: CatalogProduct, outcomes: dict[str, object]
    ) -> ProductInventory:
        source_stock: dict[str, int] = {}
        source_errors: dict[str, str] = {}
        unit_cost = None

        for source_name, outcome in outcomes.items():
            if isinstance(outcome, SourceReading):
                source_stock[source_name] = outcome.stock
                if source_name == RETAILER_SOURCE and outcome.unit_cost is not None:
                    unit_cost = outcome.unit_cost
            else:
                source_stock[source_name] = 0
                source_errors[source_name] = str(outcome) or type(outcome).__name__
                logger.warning(
                    "Inventory source failed",
                    source=source_name,
                    product_id=product.product_id,
                    error=source_errors[source_name],
                    error_type=type(outcome).__name__,
                )

        consolidated = consolidate_stock(list(source_stock.values()))
        is_fallback = consolidated is None
        if is_fallback:
            consolidated = self._synthetic_stock()
            logger.info(
                "Using synthetic stock",
                product_id=product.product_id,
                stock=consolidated,
            )

        return ProductInventory(
            product_id=product.product_id,
            name=product.name,
            variants=split_evenly(consolidated, product.variants),
            source_stock=source_stock,
            source_errors=source_errors,
            consolidated_stock=consolidated,
            unit_cost=unit_cost,
            is_fallback=is_fallback,
        )

    def _synthetic_stock(self) -> int:
        return self._rng.randint(self._fallback_min, self._fallback_max)

    def _synthetic_snapshot(self) -> InventorySnapshot:
        products = []
        for product in self._catalog:
            stock = self._synthetic_stock()
            products.append(
                ProductInventory(
                    product_id=product.product_id,
                    name=product.name,
                    variants=split_evenly(stock, product.variants),
                    consolidated_stock=stock,
                    is_fallback=True,
                )
            )
        return InventorySnapshot(products=products, fetched_at=utcnow())
