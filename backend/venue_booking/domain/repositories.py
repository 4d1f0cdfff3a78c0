from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol, TypeVar

T = TypeVar("T")


class Transaction(Protocol):
    """Read-then-write view over the store. Reads must happen before writes."""

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None: ...

    def set(self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False) -> None: ...


class DocumentStore(Protocol):
    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None: ...

    async def upsert(self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False) -> None: ...

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T: ...

    async def list(
        self,
        collection: str,
        where: Optional[Mapping[str, Any]] = None,
    ) -> list[tuple[str, dict[str, Any]]]: ...


@dataclass(frozen=True)
class PaymentIntent:
    id: str
    client_secret: Optional[str]
    status: str
    amount: Decimal
    currency: str
    metadata: Mapping[str, str] = field(default_factory=dict)


class PaymentGateway(Protocol):
    async def create_payment_intent(
        self,
        *,
        amount: Decimal,
        currency: str,
        metadata: Mapping[str, str],
    ) -> PaymentIntent: ...

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntent: ...

    async def refund(self, payment_intent_id: str, *, idempotency_key: Optional[str] = None) -> str: ...
