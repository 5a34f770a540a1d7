"""
Vérification des signatures de webhooks (HMAC-SHA256 sur le body brut).

Fournisseurs:
- nmi: en-tête x-nmi-signature, hex brut
- konnective: en-tête x-konnective-signature, format "sha256=<hex>"
Sans secret configuré: accepté hors production (mode permissif), refusé en production.
"""
import hashlib
import hmac
import logging
from typing import Dict, Mapping, NamedTuple, Optional

from funnel import config
from funnel.errors import SignatureInvalid

logger = logging.getLogger(__name__)


class ProviderSignature(NamedTuple):
    header: str
    prefix: str
    secret_setting: str


PROVIDERS: Dict[str, ProviderSignature] = {
    "nmi": ProviderSignature(header="x-nmi-signature", prefix="", secret_setting="NMI_WEBHOOK_SECRET"),
    "konnective": ProviderSignature(header="x-konnective-signature", prefix="sha256=", secret_setting="KONNECTIVE_WEBHOOK_SECRET"),
}


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def secret_for(provider: str) -> str:
    scheme = PROVIDERS.get(provider)
    if scheme is None:
        return ""
    # Lecture dynamique: les tests monkeypatchent funnel.config
    return getattr(config, scheme.secret_setting, "") or ""


def sign(provider: str, secret: str, body: bytes) -> str:
    """Valeur d'en-tête attendue pour ce fournisseur (utile pour les tests et les outils)."""
    scheme = PROVIDERS[provider]
    return f"{scheme.prefix}{compute_signature(secret, body)}"


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.title())
    return value.strip() if value else None


def verify_signature(
    provider: str,
    body: bytes,
    headers: Mapping[str, str],
    *,
    secret: Optional[str] = None,
    production: Optional[bool] = None,
) -> bool:
    """
    Vérifie la signature d'un webhook.
    - Retourne True si valide ou accepté en mode permissif
    - Lève SignatureInvalid sinon
    Les fournisseurs inconnus ne sont pas vérifiés ici (ils sont ignorés au routage).
    """
    scheme = PROVIDERS.get(provider)
    if scheme is None:
        return True
    secret = secret_for(provider) if secret is None else secret
    production = config.IS_PRODUCTION if production is None else production

    if not secret:
        if production:
            logger.warning("webhook.signature provider=%s rejected=no_secret", provider)
            raise SignatureInvalid(f"No webhook secret configured for {provider}")
        logger.debug("webhook.signature provider=%s permissive=1", provider)
        return True

    supplied = _header(headers, scheme.header)
    if not supplied:
        raise SignatureInvalid(f"Missing {scheme.header} header")

    expected = f"{scheme.prefix}{compute_signature(secret, body)}"
    if not hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("webhook.signature provider=%s rejected=mismatch", provider)
        raise SignatureInvalid("Signature mismatch")
    return True
