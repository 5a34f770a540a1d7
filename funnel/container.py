"""
Assemblage des dépendances du funnel (store, passerelle, repository, services, bus).

Container.from_config() lit funnel.config; les tests construisent un Container
directement avec un store mémoire et un client httpx scripté (MockTransport).
"""
import logging
from datetime import timedelta
from typing import Dict, Optional

import httpx
import redis
from fastapi import Request

from funnel import config
from funnel.checkout.service import CheckoutOrchestrator
from funnel.checkout.status import PollContract
from funnel.gateway import GatewayClient
from funnel.orders.repository import MemoryOrderRepository, OrderRepository, SupabaseOrderRepository
from funnel.orders.service import OrderAggregator
from funnel.sessions.store import MemorySessionStore, RedisSessionStore, SessionStore
from funnel.upsell.service import UpsellProcessor
from funnel.vault.service import CardRecoveryFlow
from funnel.webhooks.events import EventBus
from funnel.webhooks.reconciliation import ReconciliationHandler

logger = logging.getLogger(__name__)


def build_session_store(backend: Optional[str] = None, ttl_hours: Optional[float] = None) -> SessionStore:
    backend = (backend or config.SESSION_BACKEND).lower()
    ttl = timedelta(hours=ttl_hours if ttl_hours is not None else config.SESSION_TTL_HOURS)
    if backend == "redis":
        client = redis.from_url(config.SESSION_REDIS_URL, encoding="utf-8", decode_responses=True)
        return RedisSessionStore(client, ttl=ttl)
    if backend != "memory":
        logger.warning("SESSION_BACKEND inconnu (%s), repli sur memory", backend)
    return MemorySessionStore(ttl=ttl)


def build_order_repository(backend: Optional[str] = None) -> OrderRepository:
    backend = (backend or config.ORDER_BACKEND).lower()
    if backend == "supabase":
        return SupabaseOrderRepository(table=config.ORDERS_TABLE)
    if backend != "memory":
        logger.warning("ORDER_BACKEND inconnu (%s), repli sur memory", backend)
    return MemoryOrderRepository(retention=timedelta(days=config.ORDER_RETENTION_DAYS))


class Container:
    def __init__(
        self,
        *,
        store: SessionStore,
        gateway: GatewayClient,
        orders: OrderRepository,
        tax_rates: Optional[Dict[str, float]] = None,
        shipping: float = 0.0,
        max_upsell_steps: int = 2,
        tax_policy: str = "fixed",
        poll_contract: Optional[PollContract] = None,
        bus: Optional[EventBus] = None,
    ):
        rates = dict(config.TAX_RATES if tax_rates is None else tax_rates)
        self.store = store
        self.gateway = gateway
        self.orders = orders
        self.bus = bus or EventBus()
        self.poll_contract = poll_contract or PollContract()
        self.checkout = CheckoutOrchestrator(store=store, gateway=gateway, orders=orders, tax_rates=rates, shipping=shipping)
        self.upsell = UpsellProcessor(store=store, gateway=gateway, orders=orders, tax_rates=rates, max_steps=max_upsell_steps)
        self.recovery = CardRecoveryFlow(store=store, gateway=gateway, checkout=self.checkout, upsell=self.upsell)
        self.aggregator = OrderAggregator(store=store, orders=orders, tax_rates=rates, tax_policy=tax_policy)
        self.reconciliation = ReconciliationHandler(store=store, checkout=self.checkout)

    @classmethod
    def from_config(cls, http_client: Optional[httpx.Client] = None) -> "Container":
        gateway = GatewayClient(
            security_key=config.NMI_SECURITY_KEY,
            endpoint=config.NMI_ENDPOINT,
            timeout=config.GATEWAY_TIMEOUT_SECONDS,
            http_client=http_client,
        )
        return cls(
            store=build_session_store(),
            gateway=gateway,
            orders=build_order_repository(),
            tax_rates=config.TAX_RATES,
            shipping=config.SHIPPING_FLAT,
            max_upsell_steps=config.MAX_UPSELL_STEPS,
            tax_policy=config.ORDER_TAX_POLICY,
            poll_contract=PollContract(
                interval=config.STATUS_POLL_INTERVAL_SECONDS,
                backoff=config.STATUS_POLL_BACKOFF,
                max_interval=config.STATUS_POLL_MAX_INTERVAL_SECONDS,
                max_attempts=config.STATUS_POLL_MAX_ATTEMPTS,
            ),
        )

    def close(self) -> None:
        self.gateway.close()


def get_container(request: Request) -> Container:
    """Dépendance FastAPI: container de l'application (construit à la demande si le lifespan ne l'a pas fait)."""
    container = getattr(request.app.state, "container", None)
    if container is None:
        container = Container.from_config()
        request.app.state.container = container
    return container
