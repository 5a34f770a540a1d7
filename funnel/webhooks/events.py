"""
Événements internes et bus en mémoire (asyncio.Queue).

Les webhooks traduisent les champs des fournisseurs en InternalEvent puis publient
sur le bus; le consommateur (tâche du lifespan) applique les événements hors requête.
"""
import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from funnel.sessions.models import utcnow

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"
    VAULT_UPDATED = "vault.updated"
    ORDER_CREATED = "order.created"
    ORDER_UPDATED = "order.updated"
    CUSTOMER_CREATED = "customer.created"
    CUSTOMER_UPDATED = "customer.updated"


class InternalEvent(BaseModel):
    type: EventType
    provider: str
    transaction_id: Optional[str] = None
    order_id: Optional[str] = None
    vault_id: Optional[str] = None
    customer_id: Optional[str] = None
    amount: float = 0.0
    status: Optional[str] = None
    response_text: Optional[str] = None
    occurred_at: str = Field(default_factory=lambda: utcnow().isoformat())
    received_at: datetime = Field(default_factory=utcnow)
    raw: Dict[str, Any] = Field(default_factory=dict)


EventHandler = Callable[[InternalEvent], Any]


class EventBus:
    def __init__(self, maxsize: int = 1000):
        self._queue: "asyncio.Queue[InternalEvent]" = asyncio.Queue(maxsize=maxsize)
        self.published = 0
        self.processed = 0
        self.failed = 0

    def publish(self, event: InternalEvent) -> None:
        """Publie sans bloquer; lève asyncio.QueueFull si le bus est saturé."""
        self._queue.put_nowait(event)
        self.published += 1
        logger.info("event.published type=%s provider=%s", event.type.value, event.provider)

    def pending(self) -> int:
        return self._queue.qsize()

    def _dispatch(self, handler: EventHandler, event: InternalEvent) -> None:
        try:
            handler(event)
            self.processed += 1
        except Exception:
            self.failed += 1
            logger.exception("event.handler_failed type=%s provider=%s", event.type.value, event.provider)

    def drain(self, handler: EventHandler) -> int:
        """Traite de manière synchrone les événements en file (outils, tests)."""
        count = 0
        while True:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return count
            self._dispatch(handler, event)
            self._queue.task_done()
            count += 1

    async def consume(self, handler: EventHandler) -> None:
        """Boucle du consommateur: le handler (bloquant) tourne dans le threadpool."""
        while True:
            event = await self._queue.get()
            try:
                await run_in_threadpool(self._dispatch, handler, event)
            finally:
                self._queue.task_done()

    def health_info(self) -> Dict[str, Any]:
        return {
            "pending": self.pending(),
            "published": self.published,
            "processed": self.processed,
            "failed": self.failed,
        }
