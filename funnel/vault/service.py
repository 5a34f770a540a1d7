"""
Couche service de récupération de carte (Card Recovery Flow).

Déclenchée par une VaultError (checkout ou upsell): la charge en attente est stockée
dans session.metadata["pending_charge"]. Le client ressaisit sa carte (nouveau token),
puis:
1) mise à jour du vault (update_customer) ou, au checkout sans vault, nouvelle vente add_customer
2) session.vault_id + last_vault_update
3) ré-émission automatique de la charge en attente
Une seule tentative par action déclenchante; tout échec devient CardRecoveryFailed.
"""
import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from funnel.checkout.models import CustomerInput
from funnel.checkout.service import PENDING_CHARGE_KEY, CheckoutOrchestrator
from funnel.errors import (
    CardRecoveryFailed,
    FunnelError,
    GatewayUnavailable,
    SessionNotFound,
    SessionStateError,
    ValidationError,
)
from funnel.gateway import GatewayClient
from funnel.sessions.models import FunnelSession
from funnel.sessions.store import SessionStore
from funnel.upsell.service import UpsellProcessor

logger = logging.getLogger(__name__)


class RecoveryOutcome(BaseModel):
    session_id: str
    kind: str
    vault_id: Optional[str] = None
    charge: Dict[str, Any] = {}

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "sessionId": self.session_id,
            "recovered": self.kind,
            "vaultId": self.vault_id,
            **{k: v for k, v in self.charge.items() if k not in ("success", "sessionId")},
        }


class CardRecoveryFlow:
    def __init__(
        self,
        *,
        store: SessionStore,
        gateway: GatewayClient,
        checkout: CheckoutOrchestrator,
        upsell: UpsellProcessor,
    ):
        self.store = store
        self.gateway = gateway
        self.checkout = checkout
        self.upsell = upsell

    def _load(self, session_id: str) -> FunnelSession:
        session = self.store.get(session_id)
        if session is None:
            raise SessionNotFound(session_id=session_id)
        return session

    # --- Mise à jour autonome du vault ---
    def update_card(
        self,
        payment_token: str,
        *,
        session_id: Optional[str] = None,
        vault_id: Optional[str] = None,
        customer_info: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Remplace la carte d'un vault existant.
        - par session: le vault et les coordonnées viennent de la session
        - par vault_id: customer_info obligatoire (adresse de facturation)
        """
        if not payment_token:
            raise ValidationError({"paymentToken": "Payment token is required"})

        if session_id:
            session = self._load(session_id)
            if not session.vault_id:
                raise SessionStateError("Session has no stored payment method", session_id=session_id)
            result = self.gateway.update_vault(
                vault_id=session.vault_id,
                payment_token=payment_token,
                customer=session.customer_info,
                billing=session.billing_info,
                merchant_fields=["funnel-vault", "update-card", "", session_id],
            )
            self.store.set_vault_id(session_id, result.vault_id or session.vault_id)
            logger.info("vault.updated session=%s", session_id)
            return {"vault_id": result.vault_id or session.vault_id, "session_id": session_id}

        if not vault_id:
            raise ValidationError({"vaultId": "Either sessionId or vaultId is required"})
        if not customer_info:
            raise ValidationError({"customerInfo": "Customer information is required with vaultId"})
        try:
            customer = CustomerInput.model_validate(customer_info).to_customer_info()
        except PydanticValidationError as exc:
            raise ValidationError({"customerInfo": "Customer information is invalid"}) from exc
        result = self.gateway.update_vault(
            vault_id=vault_id,
            payment_token=payment_token,
            customer=customer,
            merchant_fields=["funnel-vault", "update-card"],
        )
        owner = self.store.find_by_vault_id(vault_id)
        if owner is not None:
            self.store.set_vault_id(owner.id, result.vault_id or vault_id)
        logger.info("vault.updated by_vault=1 session=%s", owner.id if owner else "-")
        return {"vault_id": result.vault_id or vault_id, "session_id": owner.id if owner else None}

    # --- Récupération d'une charge en attente ---
    def _claim_attempt(self, session_id: str) -> Dict[str, Any]:
        """Marque la tentative avant l'appel passerelle (une seule tentative par charge en attente)."""
        claimed: Dict[str, Any] = {}

        def _apply(s: FunnelSession) -> Optional[Dict[str, Any]]:
            pending = s.metadata.get(PENDING_CHARGE_KEY)
            if not pending:
                raise SessionStateError("No pending charge to recover", session_id=session_id)
            if pending.get("recovery_attempted"):
                raise CardRecoveryFailed("Recovery already attempted for this charge", session_id=session_id)
            claimed.clear()
            claimed.update(pending)
            return {"metadata": {**s.metadata, PENDING_CHARGE_KEY: {**pending, "recovery_attempted": True}}}

        if self.store.mutate(session_id, _apply) is None:
            raise SessionNotFound(session_id=session_id)
        return claimed

    def _clear_pending(self, session_id: str) -> None:
        def _apply(s: FunnelSession) -> Optional[Dict[str, Any]]:
            if PENDING_CHARGE_KEY not in s.metadata:
                return None
            metadata = dict(s.metadata)
            metadata.pop(PENDING_CHARGE_KEY, None)
            return {"metadata": metadata}

        self.store.mutate(session_id, _apply)

    def recover(self, session_id: str, payment_token: str) -> RecoveryOutcome:
        """
        Termine la charge en attente avec une nouvelle carte.
        - upsell: update_customer sur le vault existant puis relance de l'upsell
        - checkout: nouvelle vente add_customer (le vault n'a jamais été créé)
        Toute erreur de la passerelle devient CardRecoveryFailed; la charge en attente est abandonnée.
        """
        if not payment_token:
            raise ValidationError({"paymentToken": "Payment token is required"})
        session = self._load(session_id)
        pending = self._claim_attempt(session_id)
        kind = pending.get("kind")
        logger.info("vault.recovery.start session=%s kind=%s", session_id, kind)

        try:
            if kind == "upsell":
                if not session.vault_id:
                    raise SessionStateError("Session has no stored payment method", session_id=session_id)
                updated = self.gateway.update_vault(
                    vault_id=session.vault_id,
                    payment_token=payment_token,
                    customer=session.customer_info,
                    billing=session.billing_info,
                    merchant_fields=["funnel-vault", "recovery", str(pending.get("product_code") or ""), session_id],
                )
                vault_id = updated.vault_id or session.vault_id
                self.store.set_vault_id(session_id, vault_id)
                charge = self.upsell.retry_pending(session_id)
                self._clear_pending(session_id)
                outcome = RecoveryOutcome(session_id=session_id, kind="upsell", vault_id=vault_id, charge=charge.to_public_dict())
            elif kind == "checkout":
                charge = self.checkout.complete_with_new_token(session_id, payment_token)
                refreshed = self._load(session_id)
                outcome = RecoveryOutcome(session_id=session_id, kind="checkout", vault_id=refreshed.vault_id, charge=charge.to_public_dict())
            else:
                raise SessionStateError(f"Unknown pending charge kind: {kind}", session_id=session_id)
        except (CardRecoveryFailed, SessionNotFound):
            raise
        except FunnelError as exc:
            self._clear_pending(session_id)
            if kind == "checkout" and not (isinstance(exc, GatewayUnavailable) and exc.unconfirmed):
                self.checkout.fail_processing(session_id, reason="card_recovery_failed")
            logger.warning("vault.recovery.failed session=%s kind=%s error=%s", session_id, kind, exc.code)
            raise CardRecoveryFailed(session_id=session_id, context={"cause": exc.code}) from exc

        logger.info("vault.recovery.done session=%s kind=%s", session_id, kind)
        return outcome
