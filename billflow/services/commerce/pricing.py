"""Price calculator capability and a table-driven implementation."""

from dataclasses import dataclass
from typing import Protocol

DEBIT = "DEBIT"
CREDIT = "CREDIT"


@dataclass(frozen=True)
class MoneyLine:
    amount_type: str
    unit: str
    amount: int


class PriceCalculator(Protocol):
    def calculate_money(self, product_id: str, currency: str, month: str, quantity: int) -> MoneyLine: ...


class TablePriceCalculator:
    """Prices a product as `quantity * unit_price` from a static table.

    Table entries look like
    `{"storage": {"amount_type": "DEBIT", "unit": "GB", "unit_price": 3}}`,
    with amounts in the currency's smallest unit.
    """

    def __init__(self, table: dict[str, dict]) -> None:
        for product_id, entry in table.items():
            if entry.get("amount_type") not in (DEBIT, CREDIT):
                raise ValueError(f"product {product_id} has invalid amount_type {entry.get('amount_type')!r}")
        self.table = table

    def calculate_money(self, product_id: str, currency: str, month: str, quantity: int) -> MoneyLine:
        entry = self.table.get(product_id)
        if entry is None:
            raise ValueError(f"no price for product {product_id}")
        return MoneyLine(
            amount_type=entry["amount_type"],
            unit=entry.get("unit", "unit"),
            amount=int(entry["unit_price"]) * quantity,
        )
