"""
Calcul des totaux (logique pure, sans passerelle ni stockage).
- subtotal = Σ(prix × quantité)
- tax = subtotal × taux(état)
- total = subtotal + tax + livraison
Chaque montant est arrondi à 2 décimales (ROUND_HALF_UP).
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, Optional

from pydantic import BaseModel

from funnel.sessions.models import LineItem

CENT = Decimal("0.01")


def to_cents(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


class Totals(BaseModel):
    subtotal: float
    tax: float
    shipping: float
    total: float
    tax_rate: float

    def to_public_dict(self) -> Dict[str, float]:
        return {
            "subtotal": self.subtotal,
            "tax": self.tax,
            "shipping": self.shipping,
            "total": self.total,
            "taxRate": self.tax_rate,
        }


def tax_rate_for(state: Optional[str], rates: Dict[str, float]) -> float:
    return float(rates.get((state or "").strip().upper(), 0.0))


def compute_amounts(subtotal, state: Optional[str], rates: Dict[str, float], shipping=0.0) -> Totals:
    rate = tax_rate_for(state, rates)
    sub = to_cents(subtotal)
    tax = to_cents(sub * Decimal(str(rate)))
    ship = to_cents(shipping)
    total = (sub + tax + ship).quantize(CENT, rounding=ROUND_HALF_UP)
    return Totals(subtotal=float(sub), tax=float(tax), shipping=float(ship), total=float(total), tax_rate=rate)


def compute_totals(items: Iterable[LineItem], state: Optional[str], rates: Dict[str, float], shipping=0.0) -> Totals:
    subtotal = sum((Decimal(str(i.price)) * i.quantity for i in items), Decimal("0"))
    return compute_amounts(subtotal, state, rates, shipping)
