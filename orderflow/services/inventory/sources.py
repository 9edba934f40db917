"""
Scraped inventory source adapters.

Each adapter fetches one product page with httpx and reads the stock figure
out of the HTML with BeautifulSoup by trying a list of CSS selectors in
order.

Adapters raise ``SourceFetchError`` on any failure; degrading to fallback
values is the aggregator's job.
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Optional, Protocol, Sequence

import httpx
from bs4 import BeautifulSoup, Tag

from orderflow.core.exceptions import SourceFetchError
from orderflow.core.http import TRANSPORT_ERRORS, is_retryable_status
from orderflow.core.logging import get_logger
from orderflow.core.retry import RetryPolicy
from orderflow.schemas.inventory import SourceReading
from orderflow.services.inventory.catalog import (
    OFFICIAL_SOURCE,
    RETAILER_SOURCE,
    CatalogProduct,
)

logger = get_logger(__name__)

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}

# Bare attribute selectors such as ``[data-stock]`` usually carry the figure
# in the attribute value rather than in the element text.
_BARE_ATTRIBUTE = re.compile(r"^\[([\w-]+)\]$")
_NUMBER = re.compile(r"\d[\d,]*")
_PRICE = re.compile(r"\d[\d,]*(?:\.\d+)?")


class InventorySource(Protocol):
    name: str

    async def fetch(self, product: CatalogProduct) -> SourceReading:
        ...


def _element_text(element: Tag, selector: str) -> str:
    parts = []
    bare = _BARE_ATTRIBUTE.match(selector.strip())
    if bare:
        value = element.get(bare.group(1))
        if isinstance(value, list):
            value = " ".join(value)
        if value:
            parts.append(value)
    parts.append(element.get_text(" "))
    return " ".join(parts)


def select_texts(page: BeautifulSoup, selectors: Sequence[str]) -> list[str]:
    """
    Text content gathered for each CSS selector, in selector order.

    Args:
        page: Parsed page markup
        selectors: CSS selectors

    Returns:
        One whitespace-normalized string per selector (empty if no match)
    """
    texts = []
    for selector in selectors:
        chunks = [_element_text(element, selector) for element in page.select(selector)]
        texts.append(" ".join(" ".join(chunks).split()))
    return texts


def first_number(texts: Sequence[str]) -> Optional[int]:
    for text in texts:
        match = _NUMBER.search(text)
        if match:
            return int(match.group(0).replace(",", ""))
    return None


def first_price(texts: Sequence[str]) -> Optional[Decimal]:
    for text in texts:
        match = _PRICE.search(text)
        if match:
            try:
                return Decimal(match.group(0).replace(",", ""))
            except InvalidOperation:
                continue
    return None


def _is_transient(error: BaseException) -> bool:
    if isinstance(error, httpx.HTTPStatusError):
        return is_retryable_status(error.response.status_code)
    return isinstance(error, TRANSPORT_ERRORS)


class HtmlStockSource:
    """Base adapter scraping stock from a product page."""

    name: str = ""
    stock_selectors: tuple[str, ...] = ()
    status_selectors: tuple[str, ...] = ()
    price_selectors: tuple[str, ...] = ()

    def __init__(
        self,
        client: httpx.AsyncClient,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self._client = client
        self._retry = retry_policy or RetryPolicy.no_retry()

    async def _get_page(self, url: str) -> str:
        response = await self._client.get(url, headers=BROWSER_HEADERS)
        response.raise_for_status()
        return response.text

    async def fetch(self, product: CatalogProduct) -> SourceReading:
        """
        Fetch and parse the product page.

        Args:
            product: Catalog product to look up

        Returns:
            Stock reading for the product

        Raises:
            SourceFetchError: If the product has no page on this source, the
                page could not be fetched, or it could not be parsed
        """
        url = product.url_for(self.name)
        if not url:
            raise SourceFetchError(
                f"No {self.name} page configured for {product.product_id}",
                source=self.name,
                product_id=product.product_id,
            )

        try:
            html = await self._retry.run(
                f"{self.name}_fetch",
                lambda: self._get_page(url),
                _is_transient,
            )
        except httpx.HTTPStatusError as e:
            raise SourceFetchError(
                f"{self.name} returned HTTP {e.response.status_code}",
                source=self.name,
                product_id=product.product_id,
                status_code=e.response.status_code,
            ) from e
        except TRANSPORT_ERRORS as e:
            raise SourceFetchError(
                f"{self.name} request failed: {type(e).__name__}",
                source=self.name,
                product_id=product.product_id,
            ) from e

        return self.parse(product, url, html)

    def parse(self, product: CatalogProduct, url: str, html: str) -> SourceReading:
        page = BeautifulSoup(html, "html.parser")
        stock = first_number(select_texts(page, self.stock_selectors))
        in_stock = self._parse_status(page)
        unit_cost = (
            first_price(select_texts(page, self.price_selectors))
            if self.price_selectors
            else None
        )

        logger.debug(
            "Source page parsed",
            source=self.name,
            product_id=product.product_id,
            stock=stock,
            in_stock=in_stock,
        )
        return SourceReading(
            source=self.name,
            product_id=product.product_id,
            stock=stock or 0,
            in_stock=in_stock,
            unit_cost=unit_cost,
            url=url,
        )

    def _parse_status(self, page: BeautifulSoup) -> Optional[bool]:
        for text in select_texts(page, self.status_selectors):
            if text:
                lowered = text.lower()
                if any(word in lowered for word in ("out of stock", "sold out", "unavailable")):
                    return False
                return "in stock" in lowered or "available" in lowered
        return None


class RetailerStockSource(HtmlStockSource):
    """Marketplace listing of the product."""

    name = RETAILER_SOURCE
    stock_selectors = (
        '[data-testid="stock-count"]',
        ".stock-count",
        ".inventory-count",
        ".quantity-available",
        '[class*="stock"]',
        '[class*="inventory"]',
    )
    price_selectors = (
        '[data-testid="price"]',
        ".price",
        ".current-price",
        '[class*="price"]',
    )


class OfficialStoreStockSource(HtmlStockSource):
    """Manufacturer's own storefront."""

    name = OFFICIAL_SOURCE
    stock_selectors = (
        ".inventory-quantity",
        ".stock-level",
        ".product-stock",
        "[data-stock]",
    )
    status_selectors = (
        ".stock-status",
        ".availability",
        ".product-availability",
    )


def build_source_client(timeout_seconds: float) -> httpx.AsyncClient:
    """Shared HTTP client for the scraped sources."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout_seconds),
        follow_redirects=True,
        headers=BROWSER_HEADERS,
    )
