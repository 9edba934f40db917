"""
Product catalog mapping each product to its source pages and variants.
"""

from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional

RETAILER_SOURCE = "temu"
OFFICIAL_SOURCE = "official"


@dataclass(frozen=True)
class CatalogProduct:
    product_id: str
    name: str
    variants: tuple[str, ...]
    source_urls: dict[str, str] = field(default_factory=dict)

    def url_for(self, source: str) -> Optional[str]:
        return self.source_urls.get(source)


DEFAULT_PRODUCTS: tuple[CatalogProduct, ...] = (
    CatalogProduct(
        product_id="gamesir-nova-lite",
        name="GameSir Nova Lite Gaming Controller",
        variants=("Black", "White", "Blue", "Red", "Purple", "Green"),
        source_urls={
            RETAILER_SOURCE: "https://www.temu.com/gamesir-nova-lite-wireless-controller",
            OFFICIAL_SOURCE: "https://www.gamesir.hk/products/gamesir-nova-lite",
        },
    ),
    CatalogProduct(
        product_id="gamesir-g7-se",
        name="GameSir G7 SE Wired Controller",
        variants=("Black", "White"),
        source_urls={
            RETAILER_SOURCE: "https://www.temu.com/gamesir-g7-se-wired-controller",
            OFFICIAL_SOURCE: "https://gamesir.hk/collections/promotion/products/gamesir-g7-se",
        },
    ),
    CatalogProduct(
        product_id="gamesir-g7",
        name="GameSir G7 Wired Controller",
        variants=("Black", "White"),
        source_urls={
            RETAILER_SOURCE: "https://www.temu.com/gamesir-g7-wired-controller",
            # Discontinued upstream; the G7 SE page is the closest signal.
            OFFICIAL_SOURCE: "https://gamesir.hk/collections/promotion/products/gamesir-g7-se",
        },
    ),
    CatalogProduct(
        product_id="gamesir-x2s",
        name="GameSir X2s Mobile Gaming Controller",
        variants=("Black",),
        source_urls={
            RETAILER_SOURCE: "https://www.temu.com/gamesir-x2s-mobile-controller",
            OFFICIAL_SOURCE: "https://www.gamesir.hk/products/gamesir-x2s",
        },
    ),
    CatalogProduct(
        product_id="gamesir-g7-pro",
        name="GameSir G7 Pro Wireless Controller",
        variants=("Black", "White", "Blue"),
        source_urls={
            RETAILER_SOURCE: "https://www.temu.com/gamesir-g7-pro-controller",
            OFFICIAL_SOURCE: "https://www.gamesir.hk/products/gamesir-g7-pro",
        },
    ),
    CatalogProduct(
        product_id="gamesir-super-nova",
        name="GameSir Super Nova Wireless Controller",
        variants=("Black", "White", "Blue"),
        source_urls={
            RETAILER_SOURCE: "https://www.temu.com/gamesir-super-nova-wireless",
            OFFICIAL_SOURCE: "https://www.gamesir.hk/products/gamesir-super-nova",
        },
    ),
    CatalogProduct(
        product_id="gamesir-t7",
        name="GameSir T7 Mobile Gaming Controller",
        variants=("White", "Blue"),
        source_urls={
            RETAILER_SOURCE: "https://www.temu.com/gamesir-t7-mobile-controller",
            OFFICIAL_SOURCE: "https://www.gamesir.hk/products/gamesir-t7",
        },
    ),
    CatalogProduct(
        product_id="gamesir-x5-lite",
        name="GameSir X5 Lite Mobile Controller",
        variants=("Black",),
        source_urls={
            RETAILER_SOURCE: "https://www.temu.com/gamesir-x5-lite-controller",
            OFFICIAL_SOURCE: "https://www.gamesir.hk/products/gamesir-x5-lite",
        },
    ),
    CatalogProduct(
        product_id="gamesir-cyclone-2",
        name="GameSir Cyclone 2 Wireless Controller",
        variants=("Black", "White"),
        source_urls={
            RETAILER_SOURCE: "https://www.temu.com/gamesir-cyclone-2-controller",
            OFFICIAL_SOURCE: "https://www.gamesir.hk/products/gamesir-cyclone2-black",
        },
    ),
    CatalogProduct(
        product_id="gamesir-nova-2-lite",
        name="GameSir Nova 2 Lite Gaming Controller",
        variants=("Black", "White", "Blue"),
        source_urls={
            RETAILER_SOURCE: "https://www.temu.com/gamesir-nova-2-lite-controller",
            OFFICIAL_SOURCE: "https://www.gamesir.hk/products/gamesir-nova-2-lite",
        },
    ),
)


class ProductCatalog:
    """Ordered, read-only collection of catalog products."""

    def __init__(self, products: Iterable[CatalogProduct] = DEFAULT_PRODUCTS):
        self._products: dict[str, CatalogProduct] = {}
        for product in products:
            if product.product_id in self._products:
                raise ValueError(f"Duplicate catalog product: {product.product_id}")
            self._products[product.product_id] = product

    def __iter__(self) -> Iterator[CatalogProduct]:
        return iter(self._products.values())

    def __len__(self) -> int:
        return len(self._products)

    def __contains__(self, product_id: object) -> bool:
        return product_id in self._products

    def get(self, product_id: str) -> Optional[CatalogProduct]:
        return self._products.get(product_id)
