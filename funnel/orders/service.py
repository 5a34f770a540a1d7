"""
Couche service de la feature 'orders' (Order Aggregator).

Rôles:
- Fusionner la commande principale, les upsells et les bonus en une liste de produits ordonnée
- Calculer les totaux (somme des lignes; taxe/livraison fixées à 0 ou recalculées selon ORDER_TAX_POLICY)
- Tolérer les sources partielles:
  * session expirée -> enregistrement de commande (repository)
  * upsells absents de la session -> repository en repli
  * client inconnu -> placeholder générique
"""
import logging
from typing import Any, Dict, List, Optional

from funnel.checkout.pricing import compute_amounts, to_cents
from funnel.errors import SessionNotFound
from funnel.orders import catalog
from funnel.orders.repository import OrderRepository
from funnel.sessions.models import FunnelSession
from funnel.sessions.store import SessionStore

logger = logging.getLogger(__name__)

PLACEHOLDER_CUSTOMER = {
    "firstName": "Valued",
    "lastName": "Customer",
    "email": "customer@example.com",
}

CUSTOMER_FIELDS = {
    "first_name": "firstName",
    "last_name": "lastName",
    "email": "email",
    "phone": "phone",
    "address": "address",
    "city": "city",
    "state": "state",
    "zip_code": "zipCode",
    "country": "country",
}


def _customer_view(raw: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Normalise un snapshot client (snake_case ou camelCase) en camelCase."""
    if not raw:
        return None
    out: Dict[str, Any] = {}
    for snake, camel in CUSTOMER_FIELDS.items():
        value = raw.get(snake, raw.get(camel))
        if value not in (None, ""):
            out[camel] = value
    return out or None


def _main_entry(item: Dict[str, Any], transaction_id: Optional[str]) -> Dict[str, Any]:
    code = str(item.get("id") or item.get("product_code") or "")
    info = catalog.get_product(code) or {}
    price = float(item.get("price") or 0)
    quantity = int(item.get("quantity") or 1)
    return {
        "name": item.get("name") or info.get("name") or code,
        "description": item.get("description") or info.get("description") or "",
        "image": info.get("image"),
        "category": "main",
        "productCode": code,
        "quantity": quantity,
        "transactionId": transaction_id or "pending",
        "amount": float(to_cents(price * quantity)),
        "type": "main",
    }


def _upsell_entry(upsell: Dict[str, Any]) -> Dict[str, Any]:
    code = str(upsell.get("product_code") or upsell.get("productCode") or "")
    info = catalog.get_product(code) or {}
    step = int(upsell.get("step") or 0)
    return {
        "name": info.get("name") or f"Upsell {step}",
        "description": info.get("description") or "",
        "image": info.get("image"),
        "category": info.get("category") or f"upsell{step}",
        "productCode": code,
        "step": step,
        "transactionId": upsell.get("transaction_id") or upsell.get("transactionId"),
        "amount": float(to_cents(upsell.get("amount") or 0)),
        "type": "upsell",
    }


class OrderAggregator:
    def __init__(
        self,
        *,
        store: SessionStore,
        orders: OrderRepository,
        tax_rates: Dict[str, float],
        tax_policy: str = "fixed",
    ):
        self.store = store
        self.orders = orders
        self.tax_rates = dict(tax_rates)
        self.tax_policy = tax_policy

    def _totals(self, products: List[Dict[str, Any]], state: Optional[str], shipping: float) -> Dict[str, float]:
        subtotal = to_cents(sum(p["amount"] for p in products))
        if self.tax_policy == "recompute":
            totals = compute_amounts(subtotal, state, self.tax_rates, shipping)
            return {"subtotal": totals.subtotal, "shipping": totals.shipping, "tax": totals.tax, "total": totals.total}
        return {"subtotal": float(subtotal), "shipping": 0.0, "tax": 0.0, "total": float(subtotal)}

    def summarize(self, session_id: str) -> Dict[str, Any]:
        """
        Résumé de commande d'une session.
        - Lève SessionNotFound si ni la session ni l'enregistrement de commande n'existent
        """
        session: Optional[FunnelSession] = self.store.get(session_id)
        record = self.orders.get(session_id)
        if session is None and record is None:
            raise SessionNotFound(session_id=session_id)

        products: List[Dict[str, Any]] = []
        main_code: Optional[str] = None
        source = "session" if session is not None else "order_record"

        # Commande principale
        if session is not None and session.line_items:
            items = [i.model_dump() for i in session.line_items]
            transaction_id = session.transaction_id
        else:
            main = (record or {}).get("main_order") or {}
            items = list(main.get("line_items") or [])
            transaction_id = main.get("transaction_id")
        for item in items:
            entry = _main_entry(item, transaction_id)
            products.append(entry)
            main_code = main_code or entry["productCode"]
            if catalog.includes_bonuses(entry["productCode"]):
                products.extend(catalog.bonus_items())

        # Upsells: la session d'abord, le repository en repli
        if session is not None and session.upsells:
            upsells = [u.model_dump() for u in sorted(session.upsells, key=lambda u: u.step)]
        else:
            upsells = sorted((record or {}).get("upsells") or [], key=lambda u: int(u.get("step") or 0))
        products.extend(_upsell_entry(u) for u in upsells)

        # Client
        customer = None
        if session is not None and session.customer_info:
            customer = _customer_view(session.customer_info.model_dump())
        if customer is None:
            customer = _customer_view((record or {}).get("customer"))
        if customer is None:
            customer = {**PLACEHOLDER_CUSTOMER, "email": session.email if session and session.email else PLACEHOLDER_CUSTOMER["email"]}
            logger.info("orders.summary placeholder_customer session=%s", session_id)

        state = customer.get("state")
        shipping = session.shipping if session is not None else float(((record or {}).get("main_order") or {}).get("shipping") or 0)
        summary = {
            "success": True,
            "session": self._session_view(session_id, session, record),
            "order": {
                "products": products,
                "customer": customer,
                "totals": self._totals(products, state, shipping),
            },
            "source": source,
        }
        summary["validation"] = validate_summary(summary["order"])
        logger.info(
            "orders.summary session=%s products=%s total=%s source=%s",
            session_id, len(products), summary["order"]["totals"]["total"], source,
        )
        return summary

    @staticmethod
    def _session_view(session_id: str, session: Optional[FunnelSession], record: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if session is not None:
            return session.to_public_dict()
        main = (record or {}).get("main_order") or {}
        return {"id": session_id, "transactionId": main.get("transaction_id"), "status": "completed", "expired": True}


def validate_summary(order: Dict[str, Any]) -> Dict[str, Any]:
    """
    Contrôle de complétude du résumé (indicatif, ne bloque jamais la réponse).
    Score sur 100: produits 40, client 30, totaux 20, transaction principale 10.
    """
    errors: List[str] = []
    warnings: List[str] = []
    score = 0.0

    products = order.get("products") or []
    if products:
        score += 40
        for index, product in enumerate(products, start=1):
            if product.get("type") != "bonus" and not product.get("amount"):
                warnings.append(f"Product {index} has no amount")
            if not product.get("productCode"):
                warnings.append(f"Product {index} missing product code")
    else:
        errors.append("Missing or empty products list")

    customer = order.get("customer") or {}
    required = ["firstName", "lastName", "email", "address", "city", "state", "zipCode"]
    for field in required:
        if customer.get(field):
            score += 30 / len(required)
        else:
            warnings.append(f"Missing customer field: {field}")

    totals = order.get("totals") or {}
    if totals.get("total", 0) > 0:
        score += 15
    else:
        warnings.append("Invalid or missing total amount")
    if "subtotal" in totals:
        score += 5

    if any(p.get("type") == "main" and p.get("transactionId") not in (None, "", "pending") for p in products):
        score += 10
    else:
        warnings.append("Main transaction not confirmed")

    return {
        "isValid": not errors,
        "completeness": int(round(score)),
        "errors": errors,
        "warnings": warnings,
    }
