"""
Consommateur du bus: réconcilie l'état des sessions à partir des événements webhook.
- payment.succeeded: termine une session encore en processing (vente non confirmée)
- payment.failed: fait échouer une session encore en processing
- vault.updated: rafraîchit le vault de la session propriétaire
Les autres événements sont seulement journalisés.
"""
import logging
from typing import Optional

from funnel.checkout.service import CheckoutOrchestrator
from funnel.sessions.store import SessionStore
from funnel.webhooks.events import EventType, InternalEvent

logger = logging.getLogger(__name__)

CHECKOUT_ORDER_PREFIX = "order_"


def session_id_from_order(order_id: Optional[str]) -> Optional[str]:
    """orderid de la vente initiale: order_<session_id>."""
    if order_id and order_id.startswith(CHECKOUT_ORDER_PREFIX):
        return order_id[len(CHECKOUT_ORDER_PREFIX):] or None
    return None


class ReconciliationHandler:
    def __init__(self, *, store: SessionStore, checkout: CheckoutOrchestrator):
        self.store = store
        self.checkout = checkout

    def __call__(self, event: InternalEvent) -> None:
        if event.type in (EventType.PAYMENT_SUCCEEDED, EventType.PAYMENT_FAILED):
            self._settle(event)
        elif event.type == EventType.VAULT_UPDATED:
            self._vault_updated(event)
        else:
            logger.info(
                "reconcile.noop type=%s provider=%s order=%s",
                event.type.value, event.provider, event.order_id or "-",
            )

    def _settle(self, event: InternalEvent) -> None:
        session_id = session_id_from_order(event.order_id)
        if session_id is None:
            logger.info("reconcile.skip type=%s order=%s", event.type.value, event.order_id or "-")
            return
        approved = event.type == EventType.PAYMENT_SUCCEEDED
        session = self.checkout.settle_from_webhook(
            session_id,
            approved=approved,
            transaction_id=event.transaction_id,
            vault_id=event.vault_id,
        )
        logger.info(
            "reconcile.settled session=%s approved=%s status=%s",
            session_id, approved, session.status.value if session else "missing",
        )

    def _vault_updated(self, event: InternalEvent) -> None:
        session = None
        session_id = session_id_from_order(event.order_id)
        if session_id:
            session = self.store.get(session_id)
        if session is None and event.vault_id:
            session = self.store.find_by_vault_id(event.vault_id)
        if session is None or not event.vault_id:
            logger.info("reconcile.vault_unmatched order=%s", event.order_id or "-")
            return
        self.store.set_vault_id(session.id, event.vault_id)
        logger.info("reconcile.vault_updated session=%s", session.id)
