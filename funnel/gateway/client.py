"""
Client HTTP de la passerelle de paiement (API Direct Post).
- Appels bloquants via httpx avec timeout explicite (30s par défaut)
- Timeout = GatewayUnavailable(unconfirmed=True): la vente a pu aboutir, ne jamais la traiter comme un refus
- Toute réponse non approuvée est classée (funnel.gateway.classify) avant de remonter
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from funnel.errors import ConfigurationError, GatewayUnavailable
from funnel.gateway import classify
from funnel.gateway.codec import build_sale_fields, build_vault_update_fields, decode_response
from funnel.gateway.models import GatewayResult, SaleRequest, VaultDirective
from funnel.sessions.models import BillingInfo, CustomerInfo

logger = logging.getLogger(__name__)


def _mask(value: Optional[str]) -> str:
    if not value:
        return "-"
    return f"…{value[-4:]}"


class GatewayClient:
    def __init__(
        self,
        *,
        security_key: str,
        endpoint: str,
        timeout: float = 30.0,
        http_client: Optional[httpx.Client] = None,
    ):
        self.security_key = security_key
        self.endpoint = endpoint
        self.timeout = timeout
        self._http = http_client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        self._http.close()

    def require_configured(self) -> None:
        if not self.security_key:
            raise ConfigurationError("NMI_SECURITY_KEY manquant pour GatewayClient")
        if not self.endpoint:
            raise ConfigurationError("NMI_ENDPOINT manquant pour GatewayClient")

    def health_info(self) -> Dict[str, Any]:
        return {
            "configured": bool(self.security_key and self.endpoint),
            "endpoint": self.endpoint,
            "timeout": self.timeout,
        }

    def _post(self, fields: Dict[str, str]) -> GatewayResult:
        try:
            resp = self._http.post(
                self.endpoint,
                data=fields,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as exc:
            logger.warning("gateway.timeout endpoint=%s order=%s", self.endpoint, fields.get("orderid"))
            raise GatewayUnavailable("Gateway request timed out", unconfirmed=True) from exc
        except httpx.TransportError as exc:
            logger.warning("gateway.transport_error endpoint=%s error=%s", self.endpoint, exc)
            raise GatewayUnavailable("Gateway unreachable") from exc

        if resp.status_code >= 400:
            raise GatewayUnavailable(f"Gateway HTTP {resp.status_code}", context={"status": resp.status_code})
        return decode_response(resp.text)

    def sale(self, request: SaleRequest) -> GatewayResult:
        """
        Vente (token one-shot ou vault).
        - Retourne le GatewayResult si approuvé
        - Sinon lève l'erreur classée (GatewayDeclined, GatewayDuplicate, VaultError, ...)
        """
        self.require_configured()
        fields = build_sale_fields(self.security_key, request)
        result = self._post(fields)
        via_vault = bool(request.vault_id and not request.payment_token)
        vault_requested = request.vault_directive == VaultDirective.ADD
        logger.info(
            "gateway.sale approved=%s code=%s order=%s vault=%s",
            result.approved, result.response_code, request.order_id, _mask(request.vault_id or result.vault_id),
        )
        if not result.approved:
            raise classify.classify_failure(result, via_vault=via_vault, vault_requested=vault_requested)
        return result

    def update_vault(
        self,
        *,
        vault_id: str,
        payment_token: str,
        customer: Optional[CustomerInfo] = None,
        billing: Optional[BillingInfo] = None,
        merchant_fields: Optional[List[str]] = None,
    ) -> GatewayResult:
        """Remplace la carte d'un vault existant (customer_vault=update_customer)."""
        self.require_configured()
        fields = build_vault_update_fields(
            self.security_key,
            vault_id=vault_id,
            payment_token=payment_token,
            customer=customer,
            billing=billing,
            merchant_fields=merchant_fields,
        )
        result = self._post(fields)
        logger.info("gateway.vault_update approved=%s code=%s vault=%s", result.approved, result.response_code, _mask(vault_id))
        if not result.approved:
            raise classify.classify_failure(result, via_vault=True)
        if not result.vault_id:
            result = result.model_copy(update={"vault_id": vault_id})
        return result
