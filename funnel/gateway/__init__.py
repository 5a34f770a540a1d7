"""
Module 'gateway' (feature-first): point d'entrée public.
Réunit les types, l'encodage/décodage Direct Post, la classification des refus et le client HTTP.
"""

from .models import GatewayLineItem, GatewayResult, SaleRequest, VaultDirective, SUCCESS_RESPONSE_CODE
from .codec import build_sale_fields, build_vault_update_fields, decode_response
from .classify import classify_failure, decline_reason, duplicate_reference, is_duplicate
from .client import GatewayClient

__all__ = [
    # types
    "GatewayLineItem",
    "GatewayResult",
    "SaleRequest",
    "VaultDirective",
    "SUCCESS_RESPONSE_CODE",
    # codec
    "build_sale_fields",
    "build_vault_update_fields",
    "decode_response",
    # classification
    "classify_failure",
    "decline_reason",
    "duplicate_reference",
    "is_duplicate",
    # client
    "GatewayClient",
]
