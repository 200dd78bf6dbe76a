"""Product repository - catalog lookups used by the reconciliation engine.

Loads product definitions from configuration and answers set-membership questions.
"""

from typing import Dict, List, Optional

from iap_reconciler.models import ProductCatalog, ProductCategory, ProductDefinition


class ProductNotFoundError(Exception):
    """Raised when a product is not found in the repository."""

    pass


class ProductRepository:
    """Repository for product definitions.

    Indexes the catalog by product ID. Read-only after construction, so safe
    to share between threads.
    """

    def __init__(self, catalog: ProductCatalog):
        """Initialize product repository.

        Args:
            catalog: Validated product catalog
        """
        self._catalog = catalog
        self._products_by_id: Dict[str, ProductDefinition] = {
            product.id: product for product in catalog.products
        }

    @property
    def catalog(self) -> ProductCatalog:
        return self._catalog

    def get_by_id(self, product_id: str) -> ProductDefinition:
        """Get product definition by ID.

        Args:
            product_id: Product ID (e.g., "premium_car")

        Returns:
            ProductDefinition

        Raises:
            ProductNotFoundError: If product ID not found
        """
        product = self._products_by_id.get(product_id)
        if product is None:
            raise ProductNotFoundError(
                f"Product not found: {product_id}. "
                f"Available products: {list(self._products_by_id.keys())}"
            )
        return product

    def find_by_id(self, product_id: str) -> Optional[ProductDefinition]:
        """Find product definition by ID (returns None if not found)."""
        return self._products_by_id.get(product_id)

    def get_ids_by_category(self, category: ProductCategory) -> List[str]:
        """Get product IDs for one billing category, in catalog order."""
        return [p.id for p in self._catalog.products if p.category == category]

    def is_one_time(self, product_id: str) -> bool:
        return product_id in self._catalog.one_time_products

    def is_consumable(self, product_id: str) -> bool:
        return product_id in self._catalog.consumable_products

    def is_subscription(self, product_id: str) -> bool:
        return product_id in self._catalog.subscription_products

    def is_exclusive_member(self, product_id: str) -> bool:
        return product_id in self._catalog.exclusive_members

    def exclusive_siblings(self, product_id: str) -> List[str]:
        """Other members of the mutually exclusive family.

        Returns an empty list when the product is not a family member.
        """
        members = self._catalog.exclusive_members
        if product_id not in members:
            return []
        return [member for member in members if member != product_id]

    def exists(self, product_id: str) -> bool:
        return product_id in self._products_by_id

    def __len__(self) -> int:
        """Get number of products in repository."""
        return len(self._products_by_id)

    def __contains__(self, product_id: str) -> bool:
        """Check if product_id exists in repository."""
        return product_id in self._products_by_id

    def __repr__(self) -> str:
        """String representation of repository."""
        return f"ProductRepository(products={len(self._products_by_id)})"
