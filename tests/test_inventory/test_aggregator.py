"""
Test suite for InventoryAggregator.

Sources are replaced with in-process fakes and the cache clock is driven by
hand so TTL behavior is deterministic.
"""

import asyncio
import random
import time

import pytest

from orderflow.core.exceptions import SourceFetchError
from orderflow.core.retry import RetryPolicy
from orderflow.schemas.inventory import InventorySnapshot, ProductInventory, SourceReading
from orderflow.services.inventory.aggregator import (
    InventoryAggregator,
    consolidate_stock,
    split_evenly,
)
from orderflow.services.inventory.catalog import CatalogProduct, ProductCatalog
from orderflow.services.inventory.snapshot_store import InMemorySnapshotStore


class FakeSource:
    """Returns a fixed stock per product, or raises when the value is an exception."""

    def __init__(self, name: str, stock: dict):
        self.name = name
        self.stock = stock
        self.calls = 0

    async def fetch(self, product: CatalogProduct) -> SourceReading:
        self.calls += 1
        value = self.stock.get(product.product_id, 0)
        if isinstance(value, Exception):
            raise value
        return SourceReading(source=self.name, product_id=product.product_id, stock=value)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def failure(source: str) -> SourceFetchError:
    return SourceFetchError(f"{source} returned HTTP 503", source=source)


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def catalog() -> ProductCatalog:
    return ProductCatalog(
        [
            CatalogProduct(product_id="pad", name="Pad", variants=("Black", "White")),
            CatalogProduct(product_id="stick", name="Stick", variants=("Red", "Blue", "Green")),
        ]
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def build(catalog, clock, *sources, store=None) -> InventoryAggregator:
    return InventoryAggregator(
        sources=sources,
        catalog=catalog,
        snapshot_store=store,
        ttl_seconds=300,
        fallback_min=10,
        fallback_max=50,
        clock=clock,
        rng=random.Random(7),
    )


# ============================================================================
# Consolidation Tests
# ============================================================================


class TestConsolidation:
    """Test the pure consolidation helpers."""

    @pytest.mark.parametrize(
        "values,expected",
        [
            ([10, 14], 10),
            ([0, 8], 8),
            ([8, 0], 8),
            ([0, 0], None),
            ([5, 9, 0], 9),
            ([], None),
        ],
    )
    def test_consolidate_stock(self, values, expected):
        assert consolidate_stock(values) == expected

    def test_split_gives_remainder_to_first_variants(self):
        split = split_evenly(11, ["Red", "Blue", "Green"])

        assert [v.stock for v in split] == [4, 4, 3]
        assert sum(v.stock for v in split) == 11

    def test_split_without_variants(self):
        assert split_evenly(5, []) == []


# ============================================================================
# Refresh Tests
# ============================================================================


class TestGetInventory:
    """Test refresh, caching and fallback behavior."""

    @pytest.mark.asyncio
    async def test_both_sources_report_takes_minimum(self, catalog, clock):
        aggregator = build(
            catalog,
            clock,
            FakeSource("temu", {"pad": 10, "stick": 3}),
            FakeSource("official", {"pad": 14, "stick": 6}),
        )

        snapshot = await aggregator.get_inventory()
        pad = snapshot.get("pad")

        assert pad.consolidated_stock == 10
        assert [(v.variant, v.stock) for v in pad.variants] == [("Black", 5), ("White", 5)]
        assert pad.source_stock == {"temu": 10, "official": 14}
        assert pad.is_fallback is False
        assert snapshot.get("stick").consolidated_stock == 3

    @pytest.mark.asyncio
    async def test_failed_source_counts_as_zero(self, catalog, clock):
        aggregator = build(
            catalog,
            clock,
            FakeSource("temu", {"pad": failure("temu"), "stick": 2}),
            FakeSource("official", {"pad": 8, "stick": 4}),
        )

        pad = (await aggregator.get_inventory()).get("pad")

        assert pad.consolidated_stock == 8
        assert pad.is_fallback is False
        assert pad.source_stock["temu"] == 0
        assert "503" in pad.source_errors["temu"]

    @pytest.mark.asyncio
    async def test_all_sources_failing_yields_bounded_synthetic_stock(self, catalog, clock):
        aggregator = build(
            catalog,
            clock,
            FakeSource("temu", {"pad": failure("temu"), "stick": failure("temu")}),
            FakeSource("official", {"pad": failure("official"), "stick": 0}),
        )

        snapshot = await aggregator.get_inventory()

        for product in snapshot.products:
            assert product.is_fallback is True
            assert 10 <= product.consolidated_stock <= 50
            assert sum(v.stock for v in product.variants) == product.consolidated_stock
        assert snapshot.is_fallback is True

    @pytest.mark.asyncio
    async def test_fresh_cache_makes_no_calls(self, catalog, clock):
        temu = FakeSource("temu", {"pad": 4, "stick": 4})
        aggregator = build(catalog, clock, temu)

        first = await aggregator.get_inventory()
        clock.now += 299
        second = await aggregator.get_inventory()

        assert second is first
        assert temu.calls == len(catalog)

    @pytest.mark.asyncio
    async def test_stale_cache_refreshes(self, catalog, clock):
        temu = FakeSource("temu", {"pad": 4, "stick": 4})
        aggregator = build(catalog, clock, temu)

        await aggregator.get_inventory()
        clock.now += 301
        temu.stock["pad"] = 9
        snapshot = await aggregator.get_inventory()

        assert snapshot.get("pad").consolidated_stock == 9
        assert temu.calls == 2 * len(catalog)

    @pytest.mark.asyncio
    async def test_force_refresh_bypasses_fresh_cache(self, catalog, clock):
        temu = FakeSource("temu", {"pad": 4, "stick": 4})
        aggregator = build(catalog, clock, temu)

        await aggregator.get_inventory()
        await aggregator.get_inventory(force_refresh=True)

        assert temu.calls == 2 * len(catalog)

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, catalog, clock):
        temu = FakeSource("temu", {"pad": 4, "stick": 4})
        aggregator = build(catalog, clock, temu)

        snapshots = await asyncio.gather(*(aggregator.get_inventory() for _ in range(5)))

        assert all(s is snapshots[0] for s in snapshots)
        assert temu.calls == len(catalog)

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_last_good_snapshot(self, catalog, clock, monkeypatch):
        aggregator = build(catalog, clock, FakeSource("temu", {"pad": 4, "stick": 4}))
        good = await aggregator.get_inventory()

        async def broken():
            raise RuntimeError("event loop hiccup")

        monkeypatch.setattr(aggregator, "_build_snapshot", broken)
        snapshot = await aggregator.get_inventory(force_refresh=True)

        assert snapshot is good

    @pytest.mark.asyncio
    async def test_failed_first_refresh_is_synthetic_and_not_cached(
        self, catalog, clock, monkeypatch
    ):
        aggregator = build(catalog, clock, FakeSource("temu", {}))

        async def broken():
            raise RuntimeError("event loop hiccup")

        monkeypatch.setattr(aggregator, "_build_snapshot", broken)
        snapshot = await aggregator.get_inventory()

        assert snapshot.is_fallback is True
        assert aggregator.snapshot is None


class HangingSource:
    """Never answers for the products in ``hang``; reports ``stock`` otherwise."""

    def __init__(self, name: str, hang: set, stock: int = 5):
        self.name = name
        self.hang = hang
        self.stock = stock

    async def fetch(self, product: CatalogProduct) -> SourceReading:
        if product.product_id in self.hang:
            await asyncio.sleep(60)
        return SourceReading(source=self.name, product_id=product.product_id, stock=self.stock)


class FlakySource:
    """Fails the first attempt per product, retrying through ``policy``."""

    def __init__(self, name: str, policy: RetryPolicy, attempt_seconds: float):
        self.name = name
        self.policy = policy
        self.attempt_seconds = attempt_seconds
        self.attempts: dict[str, int] = {}

    async def _attempt(self, product: CatalogProduct) -> SourceReading:
        count = self.attempts.get(product.product_id, 0) + 1
        self.attempts[product.product_id] = count
        await asyncio.sleep(self.attempt_seconds)
        if count == 1:
            raise SourceFetchError("503", source=self.name)
        return SourceReading(source=self.name, product_id=product.product_id, stock=6)

    async def fetch(self, product: CatalogProduct) -> SourceReading:
        return await self.policy.run(
            f"{self.name}_fetch",
            lambda: self._attempt(product),
            lambda e: isinstance(e, SourceFetchError),
        )


class TestSourceTimeouts:
    """Test the per-source deadline."""

    @pytest.mark.asyncio
    async def test_hung_source_is_cut_off_and_counts_as_zero(self, catalog, clock):
        aggregator = InventoryAggregator(
            sources=[
                HangingSource("temu", hang={"pad"}),
                FakeSource("official", {"pad": 8, "stick": 4}),
            ],
            catalog=catalog,
            source_timeout=0.05,
            clock=clock,
            rng=random.Random(7),
        )

        started = time.monotonic()
        snapshot = await aggregator.get_inventory()
        elapsed = time.monotonic() - started

        pad = snapshot.get("pad")
        assert elapsed < 5
        assert pad.consolidated_stock == 8
        assert pad.is_fallback is False
        assert pad.source_stock["temu"] == 0
        assert "timed out" in pad.source_errors["temu"]
        assert snapshot.get("stick").consolidated_stock == 4

    @pytest.mark.asyncio
    async def test_deadline_covering_retries_lets_source_recover(self, catalog, clock):
        policy = RetryPolicy(max_attempts=2, initial_backoff=0.01, max_backoff=0.01)
        flaky = FlakySource("temu", policy, attempt_seconds=0.05)
        aggregator = InventoryAggregator(
            sources=[flaky],
            catalog=catalog,
            source_timeout=policy.max_elapsed(0.5),
            clock=clock,
            rng=random.Random(7),
        )

        snapshot = await aggregator.get_inventory()

        assert snapshot.get("pad").consolidated_stock == 6
        assert snapshot.get("pad").is_fallback is False
        assert flaky.attempts == {"pad": 2, "stick": 2}


# ============================================================================
# Stock Check and Persistence Tests
# ============================================================================


class TestCheckStock:
    """Test the advisory stock check."""

    @pytest.mark.asyncio
    async def test_check_stock_uses_cached_snapshot(self, catalog, clock):
        temu = FakeSource("temu", {"pad": 10, "stick": 3})
        aggregator = build(catalog, clock, temu)
        await aggregator.get_inventory()

        assert aggregator.check_stock("pad", "black", 5) is True
        assert aggregator.check_stock("pad", "Black", 6) is False
        assert aggregator.check_stock("pad", None, 10) is True
        assert aggregator.check_stock("pad", "Purple", 1) is False
        assert aggregator.check_stock("unknown", None, 1) is False
        assert temu.calls == len(catalog)

    def test_check_stock_with_empty_cache(self, catalog, clock):
        aggregator = build(catalog, clock, FakeSource("temu", {"pad": 10}))

        assert aggregator.check_stock("pad", None, 1) is False


class TestSnapshotPersistence:
    """Test saving and restoring the last good snapshot."""

    @pytest.mark.asyncio
    async def test_successful_refresh_is_persisted(self, catalog, clock):
        store = InMemorySnapshotStore()
        aggregator = build(catalog, clock, FakeSource("temu", {"pad": 2, "stick": 2}), store=store)

        snapshot = await aggregator.get_inventory()

        assert store.snapshot is snapshot
        assert store.saves == 1

    @pytest.mark.asyncio
    async def test_restored_snapshot_is_stale(self, catalog, clock):
        restored = InventorySnapshot(
            products=[
                ProductInventory(
                    product_id="pad",
                    name="Pad",
                    variants=split_evenly(6, ["Black", "White"]),
                    consolidated_stock=6,
                )
            ]
        )
        temu = FakeSource("temu", {"pad": 2, "stick": 2})
        aggregator = build(
            catalog, clock, temu, store=InMemorySnapshotStore(restored)
        )

        await aggregator.restore()

        assert aggregator.check_stock("pad", "White", 3) is True
        assert aggregator.is_fresh() is False
        snapshot = await aggregator.get_inventory()
        assert snapshot.get("pad").consolidated_stock == 2
        assert temu.calls == len(catalog)

    @pytest.mark.asyncio
    async def test_restore_without_store(self, catalog, clock):
        aggregator = build(catalog, clock, FakeSource("temu", {}))

        assert await aggregator.restore() is None
