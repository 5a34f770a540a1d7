"""
Classification des réponses non approuvées de la passerelle.

Ordre d'évaluation:
1) configuration (clé invalide, compte marchand inactif) -> ConfigurationError
2) doublon (code 430 documenté, sinon motif "Duplicate transaction") -> GatewayDuplicate
3) indisponibilité (response=3 avec code de communication) -> GatewayUnavailable
4) carte stockée inutilisable (paiement via vault) ou création du vault échouée (add_customer) -> VaultError
5) refus avec sous-motif (fonds, expiration, CVV, adresse, carte invalide) -> GatewayDeclined

Le texte brut de la passerelle n'est jamais repris dans user_message.
"""
import re
from typing import Optional

from funnel.errors import (
    ConfigurationError,
    DeclineReason,
    FunnelError,
    GatewayDeclined,
    GatewayDuplicate,
    GatewayUnavailable,
    VaultError,
)
from funnel.gateway.models import GatewayResult

DUPLICATE_CODES = {"430"}
CONFIGURATION_CODES = {"410", "411"}
UNAVAILABLE_CODES = {"420", "421", "460"}
INSUFFICIENT_FUNDS_CODES = {"202", "203"}
EXPIRED_CARD_CODES = {"223", "224"}
INVALID_CVV_CODES = {"225"}
INVALID_CARD_CODES = {"220", "221", "222", "261", "461"}
# Codes indiquant une carte stockée à remplacer quand la vente passe par le vault
VAULT_CARD_CODES = EXPIRED_CARD_CODES | {"220", "222"}

DUPLICATE_RE = re.compile(r"duplicate\s+transaction", re.IGNORECASE)
DUPLICATE_REFID_RE = re.compile(r"REFID:\s*([A-Za-z0-9]+)", re.IGNORECASE)
CONFIGURATION_RE = re.compile(r"authentication failed|invalid security key|security key", re.IGNORECASE)
VAULT_RE = re.compile(r"customer[_ ]vault|vault id|invalid customer", re.IGNORECASE)
INSUFFICIENT_RE = re.compile(r"insufficient|\bnsf\b|over limit", re.IGNORECASE)
EXPIRED_RE = re.compile(r"expired|\bexp(iration)?\b", re.IGNORECASE)
CVV_RE = re.compile(r"cvv|cvc|security code", re.IGNORECASE)
ADDRESS_RE = re.compile(r"\bavs\b|address|zip", re.IGNORECASE)
INVALID_CARD_RE = re.compile(r"invalid|format|card number", re.IGNORECASE)

# Codes AVS/CVV signalant une non-correspondance
AVS_MISMATCH = {"N", "C", "I", "P", "R"}
CVV_MISMATCH = {"N"}


def duplicate_reference(result: GatewayResult) -> Optional[str]:
    """Extrait la transaction d'origine citée par un doublon (REFID:...)."""
    match = DUPLICATE_REFID_RE.search(result.response_text or "")
    if match:
        return match.group(1)
    return result.transaction_id or None


def is_duplicate(result: GatewayResult) -> bool:
    if result.response_code in DUPLICATE_CODES:
        return True
    # Motif textuel provisoire, conservé tant que la passerelle ne fournit pas toujours le code 430
    return bool(DUPLICATE_RE.search(result.response_text or ""))


def decline_reason(result: GatewayResult) -> DeclineReason:
    code = result.response_code
    text = result.response_text or ""
    if code in INSUFFICIENT_FUNDS_CODES or INSUFFICIENT_RE.search(text):
        return DeclineReason.INSUFFICIENT_FUNDS
    if code in EXPIRED_CARD_CODES or EXPIRED_RE.search(text):
        return DeclineReason.EXPIRED_CARD
    if code in INVALID_CVV_CODES or CVV_RE.search(text) or (result.cvv_response or "").upper() in CVV_MISMATCH:
        return DeclineReason.INVALID_CVV
    if ADDRESS_RE.search(text) or (result.avs_response or "").upper() in AVS_MISMATCH:
        return DeclineReason.INVALID_ADDRESS
    if code in INVALID_CARD_CODES or INVALID_CARD_RE.search(text):
        return DeclineReason.INVALID_CARD
    return DeclineReason.DECLINED


def classify_failure(result: GatewayResult, *, via_vault: bool = False, vault_requested: bool = False) -> FunnelError:
    """
    Transforme une réponse non approuvée en erreur de la taxonomie.
    - via_vault: la vente utilisait customer_vault_id (une carte stockée inutilisable devient VaultError)
    - vault_requested: la vente demandait add_customer (un échec propre au vault devient VaultError)
    """
    code = result.response_code
    text = result.response_text or ""
    context = {
        "response": result.response,
        "response_code": code,
        "response_text": text,
        "transaction_id": result.transaction_id,
    }

    if code in CONFIGURATION_CODES or CONFIGURATION_RE.search(text):
        return ConfigurationError(f"Gateway configuration error ({code})", context=context)

    if is_duplicate(result):
        return GatewayDuplicate(
            f"Duplicate transaction ({code})",
            prior_transaction_id=duplicate_reference(result),
            result=result,
            context=context,
        )

    if result.response == "3" and (code in UNAVAILABLE_CODES or not code):
        return GatewayUnavailable(f"Gateway error ({code})", context=context)

    if via_vault and (code in VAULT_CARD_CODES or VAULT_RE.search(text) or EXPIRED_RE.search(text)):
        return VaultError(f"Stored card unusable ({code})", context=context)

    if vault_requested and VAULT_RE.search(text):
        return VaultError(f"Customer vault creation failed ({code})", context=context)

    reason = decline_reason(result)
    return GatewayDeclined(reason, f"Payment declined ({reason.value}, code {code})", context=context)
