"""
Catalogue minimal des produits du funnel (codes, étape, prix des offres one-click, bonus).
"""
from typing import Any, Dict, List, Optional

# module funnel.orders.catalog
PRODUCT_CATALOG: Dict[str, Dict[str, Any]] = {
    "FITSPRESSO_6": {
        "name": "Fitspresso",
        "description": "6 Bottle Super Pack",
        "image": "/assets/images/6-bottles.png",
        "category": "main",
        "bottles": 6,
        "include_bonuses": True,
    },
    "RC12_296": {
        "name": "RetinaClear",
        "description": "12 Bottle Super Savings Bundle",
        "image": "/assets/images/6-bottles.png",
        "category": "upsell1",
        "step": 1,
        "bottles": 12,
        "price": 296.00,
    },
    "RC6_144": {
        "name": "RetinaClear",
        "description": "6 Bottle Ultra Discount",
        "image": "/assets/images/6-bottles.png",
        "category": "upsell1",
        "step": 1,
        "bottles": 6,
        "price": 144.00,
    },
    "SA6_149": {
        "name": "Sightagen",
        "description": "6 Bottle Super Savings Bundle",
        "image": "/assets/images/6-bottles.png",
        "category": "upsell2",
        "step": 2,
        "bottles": 6,
        "price": 149.00,
    },
    "SA3_099": {
        "name": "Sightagen",
        "description": "3 Bottle Ultra Discount",
        "image": "/assets/images/6-bottles.png",
        "category": "upsell2",
        "step": 2,
        "bottles": 3,
        "price": 99.00,
    },
}

# Bonus offerts avec le produit principal
BONUS_PRODUCTS: List[Dict[str, Any]] = [
    {
        "name": "Bonus eBooks",
        "description": "First Time Customer",
        "image": "/assets/images/bonus-ebooks.png",
        "price": 0,
    },
    {
        "name": "Bonus Coaching Call",
        "description": "Limited Time",
        "image": "/assets/images/bonus-call.png",
        "price": 0,
    },
]

DEFAULT_MAIN_PRODUCT = "FITSPRESSO_6"


def get_product(code: str) -> Optional[Dict[str, Any]]:
    return PRODUCT_CATALOG.get((code or "").strip().upper())


def upsell_offer(code: str) -> Optional[Dict[str, Any]]:
    """Retourne l'offre upsell (avec prix) ou None si le code n'est pas une offre one-click."""
    product = get_product(code)
    if not product or product.get("category") == "main" or product.get("price") is None:
        return None
    return product


def includes_bonuses(code: str) -> bool:
    product = get_product(code)
    return bool(product and product.get("include_bonuses"))


def bonus_items() -> List[Dict[str, Any]]:
    return [
        {
            **bonus,
            "transactionId": "BONUS",
            "amount": 0,
            "productCode": "BONUS",
            "type": "bonus",
        }
        for bonus in BONUS_PRODUCTS
    ]
