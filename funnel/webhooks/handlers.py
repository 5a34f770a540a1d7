"""
Webhook Ingestor: vérification, décodage, routage puis publication sur le bus.

États d'une réception: unverified -> verified -> routed -> {applied, ignored, errored}.
- Signature invalide: SignatureInvalid (401), rien n'est publié
- Fournisseur ou type inconnu: accusé de réception (200) mais ignoré
- Erreur d'un handler: journalisée, accusé de réception quand même
"""
import json
import logging
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import parse_qsl

from pydantic import BaseModel

from funnel.webhooks.events import EventBus, EventType, InternalEvent
from funnel.webhooks.signature import verify_signature

logger = logging.getLogger(__name__)


class WebhookState(str, Enum):
    UNVERIFIED = "unverified"
    VERIFIED = "verified"
    ROUTED = "routed"
    APPLIED = "applied"
    IGNORED = "ignored"
    ERRORED = "errored"


class WebhookReceipt(BaseModel):
    provider: str
    state: WebhookState = WebhookState.UNVERIFIED
    event_type: Optional[str] = None
    event: Optional[InternalEvent] = None
    reason: Optional[str] = None

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "provider": self.provider,
            "state": self.state.value,
            "eventType": self.event_type,
            "message": "Webhook processed" if self.state == WebhookState.APPLIED else f"Webhook {self.state.value}",
        }


def decode_payload(body: bytes) -> Dict[str, Any]:
    """JSON en priorité, form-encoded sinon."""
    text = body.decode("utf-8", errors="replace")
    try:
        data = json.loads(text) if text.strip() else {}
    except ValueError:
        data = None
    if isinstance(data, dict):
        return data
    return dict(parse_qsl(text, keep_blank_values=True))


def event_type_of(payload: Mapping[str, Any]) -> str:
    for key in ("event_type", "type", "event"):
        value = payload.get(key)
        if value:
            return str(value).strip().lower()
    return ""


def _amount(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _text(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _flatten(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Les webhooks NMI récents imbriquent les champs dans event_body."""
    body = payload.get("event_body")
    if isinstance(body, dict):
        return {**payload, **body}
    return dict(payload)


# --- NMI ---
def _nmi_transaction(data: Dict[str, Any], event_type: str) -> Optional[InternalEvent]:
    transaction_id = data.get("transaction_id")
    if not transaction_id:
        logger.warning("webhook.nmi transaction without transaction_id")
        return None
    status = str(data.get("status") or data.get("condition") or "").lower()
    if "refund" in event_type:
        kind = EventType.PAYMENT_REFUNDED
    elif event_type.endswith(".success") or status in ("approved", "complete", "pendingsettlement"):
        kind = EventType.PAYMENT_SUCCEEDED
    else:
        kind = EventType.PAYMENT_FAILED
    extra = {"occurred_at": str(data["timestamp"])} if data.get("timestamp") else {}
    return InternalEvent(
        type=kind,
        provider="nmi",
        transaction_id=str(transaction_id),
        order_id=_text(data.get("order_id")),
        vault_id=_text(data.get("customer_vault_id")),
        amount=_amount(data.get("amount") or data.get("requested_amount")),
        status=status or "unknown",
        response_text=_text(data.get("responsetext") or data.get("response_text")),
        raw=dict(data),
        **extra,
    )


def _nmi_customer(data: Dict[str, Any], event_type: str) -> Optional[InternalEvent]:
    vault_id = data.get("customer_vault_id") or data.get("customer_id")
    if not vault_id:
        logger.warning("webhook.nmi customer event without customer_vault_id")
        return None
    extra = {"occurred_at": str(data["timestamp"])} if data.get("timestamp") else {}
    return InternalEvent(
        type=EventType.VAULT_UPDATED,
        provider="nmi",
        vault_id=str(vault_id),
        order_id=_text(data.get("order_id")),
        raw=dict(data),
        **extra,
    )


def _nmi_refund(data: Dict[str, Any], event_type: str) -> Optional[InternalEvent]:
    extra = {"occurred_at": str(data["timestamp"])} if data.get("timestamp") else {}
    return InternalEvent(
        type=EventType.PAYMENT_REFUNDED,
        provider="nmi",
        transaction_id=_text(data.get("transaction_id")),
        order_id=_text(data.get("order_id")),
        amount=_amount(data.get("amount")),
        raw=dict(data),
        **extra,
    )


def route_nmi(payload: Mapping[str, Any]) -> Optional[InternalEvent]:
    data = _flatten(payload)
    event_type = event_type_of(payload)
    family = event_type.split(".", 1)[0]
    if family == "transaction" and "refund" not in event_type:
        return _nmi_transaction(data, event_type)
    if family == "refund" or event_type.startswith("transaction.refund"):
        return _nmi_refund(data, event_type)
    if family in ("customer", "vault"):
        return _nmi_customer(data, event_type)
    logger.info("webhook.nmi ignored type=%s", event_type or "-")
    return None


# --- Konnective ---
_KONNECTIVE_TYPES = {
    "order.created": EventType.ORDER_CREATED,
    "order.updated": EventType.ORDER_UPDATED,
    "customer.created": EventType.CUSTOMER_CREATED,
    "customer.updated": EventType.CUSTOMER_UPDATED,
}


def route_konnective(payload: Mapping[str, Any]) -> Optional[InternalEvent]:
    event_type = event_type_of(payload)
    kind = _KONNECTIVE_TYPES.get(event_type)
    if kind is None:
        logger.info("webhook.konnective ignored type=%s", event_type or "-")
        return None
    if event_type.startswith("order.") and not payload.get("order_id"):
        logger.warning("webhook.konnective order event without order_id")
        return None
    if event_type.startswith("customer.") and not payload.get("customer_id"):
        logger.warning("webhook.konnective customer event without customer_id")
        return None
    extra = {"occurred_at": str(payload["timestamp"])} if payload.get("timestamp") else {}
    return InternalEvent(
        type=kind,
        provider="konnective",
        order_id=_text(payload.get("order_id")),
        customer_id=_text(payload.get("customer_id")),
        transaction_id=_text(payload.get("transaction_id")),
        status=_text(payload.get("status")),
        raw={**payload, "campaign_id": payload.get("campaign_id")},
        **extra,
    )


ROUTERS: Dict[str, Callable[[Mapping[str, Any]], Optional[InternalEvent]]] = {
    "nmi": route_nmi,
    "konnective": route_konnective,
}


def ingest(provider: str, body: bytes, headers: Mapping[str, str], bus: EventBus) -> WebhookReceipt:
    """
    Traite une réception de webhook.
    - SignatureInvalid remonte à l'appelant (401)
    - tout le reste produit un WebhookReceipt (accusé de réception)
    """
    provider = (provider or "").strip().lower()
    receipt = WebhookReceipt(provider=provider)

    verify_signature(provider, body, headers)
    receipt.state = WebhookState.VERIFIED

    router = ROUTERS.get(provider)
    if router is None:
        logger.info("webhook.ignored provider=%s reason=unknown_provider", provider)
        receipt.state = WebhookState.IGNORED
        receipt.reason = "unknown_provider"
        return receipt

    try:
        payload = decode_payload(body)
        receipt.event_type = event_type_of(payload) or None
        event = router(payload)
        if event is None:
            receipt.state = WebhookState.IGNORED
            receipt.reason = "unhandled_event"
            return receipt
        receipt.state = WebhookState.ROUTED
        receipt.event = event
        bus.publish(event)
        receipt.state = WebhookState.APPLIED
    except Exception:
        logger.exception("webhook.errored provider=%s type=%s", provider, receipt.event_type)
        receipt.state = WebhookState.ERRORED
        receipt.reason = "handler_error"
    return receipt
