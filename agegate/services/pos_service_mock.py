from __future__ import annotations

from datetime import datetime
from typing import Any

from agegate.core.logger import get_logger
from agegate.models.types import utcnow
from agegate.schemas.pos import CustomerUpdateResult, PosTransaction
from agegate.services.customer_fields import blank_fields_to_write, is_blank

logger = get_logger(component="PosServiceMock")


class PosServiceMock:
    """
    In-memory stand-in for the POS platform.

    Sales and customers are plain dicts keyed by id, so tests and local runs
    can attach a customer to a sale and watch reconciliation pick it up.
    """

    def __init__(self, *, writes_enabled: bool = True) -> None:
        self.writes_enabled = writes_enabled
        self.transactions: dict[str, PosTransaction] = {}
        self.customers: dict[str, dict[str, Any]] = {}
        self.updates: list[tuple[str, dict[str, Any]]] = []

    def add_transaction(
        self,
        transaction_id: str,
        *,
        customer_id: str | None = None,
        register_id: str | None = None,
        outlet_id: str | None = None,
        total: float | None = None,
        status: str = "OPEN",
        updated_at: datetime | None = None,
    ) -> PosTransaction:
        now = updated_at or utcnow()
        transaction = PosTransaction(
            transaction_id=transaction_id,
            customer_id=customer_id,
            register_id=register_id,
            outlet_id=outlet_id,
            total=total,
            status=status,
            created_at=now,
            updated_at=now,
        )
        self.transactions[transaction_id] = transaction
        return transaction

    def add_customer(self, customer_id: str, **fields: Any) -> dict[str, Any]:
        self.customers[customer_id] = {"id": customer_id, **fields}
        return self.customers[customer_id]

    def attach_customer(self, transaction_id: str, customer_id: str) -> None:
        transaction = self.transactions[transaction_id]
        self.transactions[transaction_id] = transaction.model_copy(update={"customer_id": customer_id})
        self.customers.setdefault(customer_id, {"id": customer_id})

    async def get_transaction_by_id(self, transaction_id: str) -> PosTransaction | None:
        return self.transactions.get(transaction_id)

    async def get_customer_by_id(self, customer_id: str) -> dict[str, Any] | None:
        customer = self.customers.get(customer_id)
        return dict(customer) if customer is not None else None

    async def list_open_transactions(
        self, *, register_id: str | None = None, outlet_id: str | None = None, limit: int = 50
    ) -> list[PosTransaction]:
        matches = [
            txn
            for txn in self.transactions.values()
            if txn.status == "OPEN"
            and (not register_id or txn.register_id == register_id)
            and (not outlet_id or txn.outlet_id == outlet_id)
        ]
        return matches[:limit]

    async def update_customer_by_id(
        self, customer_id: str, fields: dict[str, Any], *, fill_blanks_only: bool = True
    ) -> CustomerUpdateResult:
        if not self.writes_enabled:
            return CustomerUpdateResult(skipped="writes_disabled")
        current = self.customers.get(customer_id)
        if current is None:
            return CustomerUpdateResult(status=404, error="customer_not_found")

        if fill_blanks_only:
            to_write = blank_fields_to_write(current, fields)
        else:
            to_write = {key: value for key, value in fields.items() if not is_blank(value)}
        if not to_write:
            return CustomerUpdateResult(skipped="no_blank_fields")

        current.update(to_write)
        self.updates.append((customer_id, to_write))
        logger.info("Mock customer update", customer_id=customer_id, fields=sorted(to_write))
        return CustomerUpdateResult(updated=True, fields=sorted(to_write), status=200)
