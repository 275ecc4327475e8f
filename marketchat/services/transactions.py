"""
Trigger for the external transaction service.

The negotiation engine only signals ``create_transaction`` when an offer is
accepted; the gateway calls a TransactionTrigger with the agreed terms.
"""
from decimal import Decimal
from typing import Optional, Protocol

import httpx
import structlog

from marketchat.core.circuit_breaker import CircuitBreaker, CircuitOpenError, get_circuit_breaker
from marketchat.core.config import Settings

logger = structlog.get_logger()


class TransactionTriggerError(Exception):
    """The transaction service could not create a transaction."""


class TransactionTrigger(Protocol):
    async def on_offer_accepted(
        self,
        chat_id: int,
        offer_id: int,
        amount: Decimal,
        buyer_id: int,
        vendor_id: int,
    ) -> Optional[str]: ...

    async def close(self) -> None: ...


class NoopTransactionTrigger:
    """Used when no transaction service is configured."""

    async def on_offer_accepted(self, chat_id, offer_id, amount, buyer_id, vendor_id) -> Optional[str]:
        logger.info("transaction_trigger_disabled", chat_id=chat_id, offer_id=offer_id)
        return None

    async def close(self) -> None:
        return None


class HttpTransactionTrigger:
    """POSTs accepted offers to the transaction service."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.client = client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)
        self.breaker = breaker or get_circuit_breaker("transactions")

    async def on_offer_accepted(
        self,
        chat_id: int,
        offer_id: int,
        amount: Decimal,
        buyer_id: int,
        vendor_id: int,
    ) -> Optional[str]:
        """
        Ask the transaction service to open a transaction for an accepted offer.

        Returns the new transaction id. Raises TransactionTriggerError when
        the service is unavailable or rejects the request.
        """
        try:
            async with self.breaker:
                response = await self.client.post(
                    "/transactions/from-offer",
                    json={
                        "chat_id": chat_id,
                        "offer_message_id": offer_id,
                        "amount": str(amount),
                        "buyer_id": buyer_id,
                        "vendor_id": vendor_id,
                    },
                )
                response.raise_for_status()
        except CircuitOpenError as e:
            raise TransactionTriggerError(str(e)) from e
        except httpx.HTTPError as e:
            logger.warning("transaction_trigger_failed", chat_id=chat_id, offer_id=offer_id, error=str(e))
            raise TransactionTriggerError(str(e)) from e

        try:
            transaction_id = response.json().get("id")
        except ValueError:
            transaction_id = None
        logger.info("transaction_requested", chat_id=chat_id, offer_id=offer_id, transaction_id=transaction_id)
        return str(transaction_id) if transaction_id is not None else None

    async def close(self) -> None:
        await self.client.aclose()


def build_transaction_trigger(settings: Settings) -> TransactionTrigger:
    if settings.transaction_service_url:
        return HttpTransactionTrigger(
            settings.transaction_service_url,
            timeout=settings.transaction_timeout_seconds,
        )
    return NoopTransactionTrigger()
