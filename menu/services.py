"""Menu price lookup.

Line items never trust a client-supplied price: the current menu price is
snapshotted onto the bill line when it is created.
"""

import uuid
from dataclasses import dataclass
from decimal import Decimal

from common import errors
from menu.models import MenuItem


@dataclass(frozen=True)
class PricedItem:
    menu_item: MenuItem
    name: str
    unit_price: Decimal
    quantity: int
    note: str


def _parse_uuid(value):
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        return None


def _parse_quantity(raw, index):
    try:
        quantity = int(raw)
    except (TypeError, ValueError):
        raise errors.ValidationError(
            f"Item {index + 1} has an invalid quantity.",
            details={"items": {index: "quantity must be a whole number"}},
        )
    if quantity <= 0:
        raise errors.ValidationError(
            f"Item {index + 1} must have a quantity greater than zero.",
            details={"items": {index: "quantity must be greater than zero"}},
        )
    return quantity


def price_items(items):
    """Resolve ``[{menu_item, quantity, note}]`` against the menu.

    Raises ``ValidationError`` for an empty list, a non-positive quantity or an
    unknown/unavailable menu item.
    """
    if not items:
        raise errors.ValidationError("At least one item is required.", details={"items": "empty"})

    menu_ids = {parsed for parsed in (_parse_uuid(item.get("menu_item")) for item in items) if parsed}
    menu = {str(menu_item.id): menu_item for menu_item in MenuItem.objects.filter(id__in=menu_ids)}

    priced = []
    for index, item in enumerate(items):
        quantity = _parse_quantity(item.get("quantity"), index)
        menu_item = menu.get(str(_parse_uuid(item.get("menu_item"))))
        if menu_item is None or not menu_item.is_available:
            raise errors.ValidationError(
                f"Menu item {item.get('menu_item')} not found or unavailable.",
                details={"items": {index: "menu item not found or unavailable"}},
            )
        priced.append(
            PricedItem(
                menu_item=menu_item,
                name=menu_item.name,
                unit_price=menu_item.price,
                quantity=quantity,
                note=(item.get("note") or "").strip(),
            )
        )
    return priced
