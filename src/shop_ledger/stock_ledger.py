"""Stock ledger: on-hand quantity of each stock-tracked product.

Products are addressed by their ``RecordID``. Display names are only used to
find that identity, and only when exactly one product in the shop carries the
name. Service entries never hold stock; every operation here leaves them at
zero and reports a no-op movement.

Each mutation reads the product, computes the new quantity and writes it back
conditioned on the version it read (see :mod:`shop_ledger.concurrency`).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional

from . import data_manager, log
from .concurrency import run_with_retry
from .constants import Collection, ItemType, StockPolicy
from .context import RuntimeContext
from .errors import ConflictError, NotFoundError, ValidationError


PRODUCTS = Collection.PRODUCTS.value


@dataclass(frozen=True)
class StockMovement:
    """Outcome of one stock mutation."""

    product: data_manager.ProductRow
    previous_stock: int

    @property
    def current_stock(self) -> int:
        return self.product.stock

    @property
    def applied(self) -> int:
        """Signed change actually written, after floor semantics."""
        return self.product.stock - self.previous_stock


def is_stock_tracked(product: data_manager.ProductRow) -> bool:
    return product.item_type != ItemType.SERVICE.value


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Resolve a product of the current shop by its identifier.

    Raises:
        NotFoundError: If the product is unknown or belongs to another shop.
    """
    try:
        record = context.store.get(PRODUCTS, product_id)
    except data_manager.RecordNotFound as exc:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise NotFoundError(f"Unknown product id: {product_id}") from exc
    product = data_manager.deserialize_product(record)
    if product.shop_id != context.shop_id():
        log.warning("Product '%s' belongs to another shop", product_id)
        raise NotFoundError(f"Unknown product id: {product_id}")
    return product


def find_products_by_name(context: RuntimeContext, name: str) -> List[data_manager.ProductRow]:
    records = context.store.query(PRODUCTS, context.shop_filters(Name=name))
    return [data_manager.deserialize_product(record) for record in records]


def find_product_id_by_name(context: RuntimeContext, name: str) -> str:
    """Map a display name onto the identity of the single product carrying it.

    Raises:
        NotFoundError: If no product in the shop has this name.
        ConflictError: If several products share the name; stock cannot be
            attributed safely until the duplicates are renamed.
    """
    matches = find_products_by_name(context, name)
    if not matches:
        log.warning("No product named '%s'", name)
        raise NotFoundError(f"Unknown product name: {name}")
    if len(matches) > 1:
        log.error(
            "Product name '%s' is ambiguous (%d products: %s)",
            name,
            len(matches),
            ", ".join(product.record_id for product in matches),
        )
        raise ConflictError(
            f"{len(matches)} products are named '{name}'; rename them or reference the product by id"
        )
    return matches[0].record_id


def resolve_product(
    context: RuntimeContext,
    name: str,
    *,
    product_id: Optional[str] = None,
    policy: StockPolicy,
) -> Optional[data_manager.ProductRow]:
    """Find the product a sale or purchase line refers to.

    ``product_id`` wins when given; otherwise ``name`` must match exactly one
    product. Under ``StockPolicy.STRICT`` a failed lookup raises. Under
    ``StockPolicy.BEST_EFFORT`` it is logged and ``None`` is returned so the
    caller can keep its primary record and skip the stock update.

    Raises:
        NotFoundError: Unknown product (strict policy only).
        ConflictError: Ambiguous product name (strict policy only).
    """
    try:
        return get_product(context, product_id or find_product_id_by_name(context, name))
    except (NotFoundError, ConflictError) as exc:
        if policy is StockPolicy.STRICT:
            raise
        log.warning("Skipping stock update for '%s': %s", product_id or name, exc)
        return None


def require_positive_quantity(quantity: int) -> None:
    """Validate that a stock quantity is a strictly positive integer.

    Raises:
        ValidationError: If ``quantity`` is not an integer or is below one.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValidationError("Quantity must be a whole number greater than zero")


def decrement(context: RuntimeContext, product_id: str, quantity: int) -> StockMovement:
    """Remove ``quantity`` units, flooring the stock at zero.

    A request larger than the stock on hand is not rejected: the product ends
    at zero and :attr:`StockMovement.applied` reports what was really removed.
    """
    require_positive_quantity(quantity)
    movement = _apply(context, product_id, lambda stock: max(0, stock - quantity), action="decrement")
    if movement.applied != -quantity and is_stock_tracked(movement.product):
        log.warning(
            "Stock for product '%s' floored at zero (requested %d, removed %d)",
            product_id,
            quantity,
            -movement.applied,
        )
    return movement


def increment(context: RuntimeContext, product_id: str, quantity: int) -> StockMovement:
    """Add ``quantity`` units to the stock on hand."""
    require_positive_quantity(quantity)
    return _apply(context, product_id, lambda stock: stock + quantity, action="increment")


def adjust(context: RuntimeContext, product_id: str, delta: int) -> StockMovement:
    """Apply a manual correction of ``delta`` units.

    Unlike :func:`decrement` this refuses to go below zero.

    Raises:
        ValidationError: If ``delta`` is zero or not an integer, or the
            resulting stock would be negative.
    """
    if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
        log.error("Stock adjustment validation failed: %s", delta)
        raise ValidationError("Stock adjustment must be a non-zero whole number")

    def compute(stock: int) -> int:
        result = stock + delta
        if result < 0:
            log.warning(
                "Rejected adjustment of %d on product '%s' with stock %d",
                delta,
                product_id,
                stock,
            )
            raise ValidationError(f"Stock cannot be negative (on hand {stock}, adjustment {delta})")
        return result

    return _apply(context, product_id, compute, action="adjust")


def _apply(
    context: RuntimeContext,
    product_id: str,
    compute: Callable[[int], int],
    *,
    action: str,
) -> StockMovement:
    def attempt() -> StockMovement:
        product = get_product(context, product_id)
        if not is_stock_tracked(product):
            log.debug("Skipping stock %s for service '%s'", action, product_id)
            return StockMovement(product=product, previous_stock=product.stock)
        new_stock = compute(product.stock)
        record = context.store.update(
            PRODUCTS,
            product.record_id,
            {"Stock": new_stock},
            expected_version=product.version,
        )
        return StockMovement(product=data_manager.deserialize_product(record), previous_stock=product.stock)

    movement = run_with_retry(
        attempt,
        attempts=context.settings.write_attempts,
        description=f"applying stock {action} to product {product_id}",
    )
    log.info(
        "Stock %s on product '%s': %d -> %d",
        action,
        product_id,
        movement.previous_stock,
        movement.current_stock,
    )
    return movement
