"""
Couche service des upsells one-click (Upsell Processor).

Rôles:
- Facturer une offre sur le vault enregistré au checkout (aucun nouveau token).
- Sur approbation: UpsellRecord + upsells_accepted + étape suivante, enregistrement de commande.
- Sur refus: upsells_declined, erreur classée (fonds, expiration, CVV, adresse...).
Cas particuliers:
- Doublon signalé par la passerelle (double soumission): succès synthétique basé sur la transaction d'origine.
- Carte stockée inutilisable (VaultError): la charge est mise en attente sur la session
  et le client est invité à ressaisir sa carte (Card Recovery Flow).
Idempotence:
- verrou par (session, étape), add_upsell idempotent, orderid déterministe pour la détection de doublon.
"""
import logging
import threading
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel

from funnel.checkout.pricing import compute_amounts
from funnel.checkout.service import PENDING_CHARGE_KEY, pending_charge
from funnel.errors import (
    GatewayDeclined,
    GatewayDuplicate,
    SessionNotFound,
    SessionStateError,
    ValidationError,
    VaultError,
)
from funnel.gateway import GatewayClient, GatewayLineItem, GatewayResult, SaleRequest
from funnel.gateway.classify import duplicate_reference
from funnel.orders import catalog
from funnel.orders.repository import OrderRepository
from funnel.sessions.models import FunnelSession, FunnelStep, UpsellRecord, utcnow
from funnel.sessions.navigation import step_after_upsell, step_location
from funnel.sessions.store import SessionStore

logger = logging.getLogger(__name__)


def upsell_order_id(session_id: str, step: int) -> str:
    return f"upsell{step}_{session_id}"


class UpsellOutcome(BaseModel):
    session_id: str
    step: int
    product_code: str
    accepted: bool
    transaction_id: Optional[str] = None
    amount: float = 0.0
    current_step: FunnelStep
    next_step: str
    duplicate: bool = False

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "sessionId": self.session_id,
            "step": self.step,
            "productCode": self.product_code,
            "accepted": self.accepted,
            "transactionId": self.transaction_id,
            "amount": self.amount,
            "currentStep": self.current_step.value,
            "nextStep": self.next_step,
        }


class _StepLocks:
    """Registre de verrous par clé (session, étape), libérés quand plus personne ne les attend."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, int], threading.Lock] = {}
        self._users: Dict[Tuple[str, int], int] = {}

    def get(self, session_id: str, step: int) -> threading.Lock:
        key = (session_id, step)
        with self._guard:
            self._users[key] = self._users.get(key, 0) + 1
            return self._locks.setdefault(key, threading.Lock())

    def release(self, session_id: str, step: int) -> None:
        key = (session_id, step)
        with self._guard:
            remaining = self._users.get(key, 0) - 1
            if remaining > 0:
                self._users[key] = remaining
            else:
                self._users.pop(key, None)
                self._locks.pop(key, None)


class UpsellProcessor:
    def __init__(
        self,
        *,
        store: SessionStore,
        gateway: GatewayClient,
        orders: OrderRepository,
        tax_rates: Dict[str, float],
        max_steps: int = 2,
    ):
        self.store = store
        self.gateway = gateway
        self.orders = orders
        self.tax_rates = dict(tax_rates)
        self.max_steps = max_steps
        self._locks = _StepLocks()

    # --- Helpers ---
    def _load(self, session_id: str) -> FunnelSession:
        session = self.store.get(session_id)
        if session is None:
            raise SessionNotFound(session_id=session_id)
        return session

    def _check_step(self, step: int) -> None:
        if step < 1 or step > self.max_steps:
            raise ValidationError({"step": f"Step must be between 1 and {self.max_steps}"})

    def _offer(self, product_code: str) -> Dict[str, Any]:
        offer = catalog.upsell_offer(product_code)
        if offer is None:
            raise ValidationError({"productCode": "Unknown upsell product"})
        return offer

    def _state_of(self, session: FunnelSession) -> str:
        if session.billing_info and session.billing_info.state:
            return session.billing_info.state
        return session.customer_info.state if session.customer_info else ""

    def _outcome(self, session: FunnelSession, record: UpsellRecord, *, duplicate: bool = False) -> UpsellOutcome:
        return UpsellOutcome(
            session_id=session.id,
            step=record.step,
            product_code=record.product_code,
            accepted=True,
            transaction_id=record.transaction_id,
            amount=record.amount,
            current_step=session.current_step,
            next_step=step_location(session.id, session.current_step, session.transaction_id),
            duplicate=duplicate,
        )

    def _sale_request(self, session: FunnelSession, product_code: str, step: int, offer: Dict[str, Any]) -> SaleRequest:
        amounts = compute_amounts(offer["price"], self._state_of(session), self.tax_rates)
        return SaleRequest(
            amount=amounts.total,
            vault_id=session.vault_id,
            customer=session.customer_info,
            billing=session.billing_info,
            order_id=upsell_order_id(session.id, step),
            tax=amounts.tax,
            shipping=0.0,
            line_items=[
                GatewayLineItem(
                    product_code=product_code,
                    description=f"{offer['name']} - {offer['description']}",
                    quantity=1,
                    unit_cost=float(offer["price"]),
                    tax_rate=amounts.tax_rate,
                )
            ],
            merchant_fields=["funnel-upsell", f"step-{step}", product_code, session.transaction_id or ""],
        )

    def _prior_transaction(self, session: FunnelSession, step: int, product_code: str, dup: GatewayDuplicate) -> str:
        """Transaction d'origine d'un doublon: enregistrement local, sinon référence de la passerelle."""
        existing = session.upsell_for_step(step)
        if existing is not None and existing.product_code == product_code:
            return existing.transaction_id
        order = self.orders.get(session.id) or {}
        for upsell in order.get("upsells") or []:
            if int(upsell.get("step") or 0) == step and upsell.get("product_code") == product_code:
                return str(upsell.get("transaction_id"))
        if dup.prior_transaction_id:
            return dup.prior_transaction_id
        if dup.result is not None:
            return duplicate_reference(dup.result) or f"dup_{upsell_order_id(session.id, step)}"
        return f"dup_{upsell_order_id(session.id, step)}"

    # --- Cas d'usage ---
    def process(self, session_id: str, product_code: str, step: int) -> UpsellOutcome:
        """
        Accepte une offre one-click.
        - Préconditions: session existante et non expirée, vault présent
        - Étape déjà enregistrée pour le même produit: succès idempotent (pas de nouvelle vente)
        """
        product_code = (product_code or "").strip().upper()
        self._check_step(step)
        offer = self._offer(product_code)

        try:
            with self._locks.get(session_id, step):
                return self._process_locked(session_id, product_code, step, offer, allow_recovery=True)
        finally:
            self._locks.release(session_id, step)

    def _process_locked(
        self,
        session_id: str,
        product_code: str,
        step: int,
        offer: Dict[str, Any],
        *,
        allow_recovery: bool,
    ) -> UpsellOutcome:
        session = self._load(session_id)
        existing = session.upsell_for_step(step)
        if existing is not None:
            if existing.product_code == product_code:
                logger.info("upsell.replayed session=%s step=%s", session_id, step)
                return self._outcome(session, existing, duplicate=True)
            raise SessionStateError(f"Upsell step {step} already completed", session_id=session_id)
        if step <= session.last_upsell_step:
            raise SessionStateError(f"Upsell step {step} is behind the funnel", session_id=session_id)
        if not session.vault_id:
            raise SessionStateError("No stored payment method for one-click upsell", session_id=session_id)

        sale = self._sale_request(session, product_code, step, offer)
        try:
            result = self.gateway.sale(sale)
        except GatewayDuplicate as dup:
            transaction_id = self._prior_transaction(session, step, product_code, dup)
            logger.info("upsell.duplicate session=%s step=%s prior=%s", session_id, step, transaction_id)
            result = GatewayResult.synthetic_approval(transaction_id, vault_id=session.vault_id)
        except VaultError as exc:
            exc.session_id = session_id
            if not allow_recovery:
                raise
            self.store.mutate(session_id, lambda s: {
                "metadata": {
                    **s.metadata,
                    PENDING_CHARGE_KEY: pending_charge("upsell", step=step, product_code=product_code),
                }
            })
            logger.warning("upsell.vault_error session=%s step=%s recovery=pending", session_id, step)
            raise
        except GatewayDeclined as exc:
            exc.session_id = session_id
            self.store.decline_upsell(session_id, product_code)
            logger.info("upsell.declined session=%s step=%s reason=%s", session_id, step, exc.reason.value)
            raise

        return self._record(session_id, product_code, step, sale.amount, result)

    def _record(self, session_id: str, product_code: str, step: int, amount: float, result: GatewayResult) -> UpsellOutcome:
        record = UpsellRecord(
            step=step,
            product_code=product_code,
            amount=amount,
            transaction_id=result.transaction_id or "",
            timestamp=utcnow(),
        )
        next_step = step_after_upsell(step, self.max_steps)
        session, created = self.store.add_upsell(session_id, record, next_step=next_step)
        if session is None:
            raise SessionNotFound(session_id=session_id)
        stored = session.upsell_for_step(step) or record
        if created:
            self.orders.add_upsell(session_id, {
                "step": stored.step,
                "product_code": stored.product_code,
                "amount": stored.amount,
                "transaction_id": stored.transaction_id,
                "timestamp": stored.timestamp.isoformat(),
            })
        logger.info(
            "upsell.accepted session=%s step=%s transaction=%s created=%s synthetic=%s",
            session_id, step, stored.transaction_id, created, result.synthetic,
        )
        return self._outcome(session, stored, duplicate=result.synthetic or not created)

    def retry_pending(self, session_id: str) -> UpsellOutcome:
        """
        Relance l'upsell en attente après mise à jour du vault (Card Recovery Flow).
        Une nouvelle VaultError n'est plus convertie en récupération: elle remonte telle quelle.
        """
        session = self._load(session_id)
        pending = session.metadata.get(PENDING_CHARGE_KEY) or {}
        if pending.get("kind") != "upsell":
            raise SessionStateError("No pending upsell charge", session_id=session_id)
        step = int(pending.get("step") or 0)
        product_code = str(pending.get("product_code") or "")
        self._check_step(step)
        offer = self._offer(product_code)
        try:
            with self._locks.get(session_id, step):
                return self._process_locked(session_id, product_code, step, offer, allow_recovery=False)
        finally:
            self._locks.release(session_id, step)

    def decline(self, session_id: str, product_code: str, step: int) -> UpsellOutcome:
        """« Non merci »: enregistre le refus et avance le funnel sans facturation."""
        product_code = (product_code or "").strip().upper()
        self._check_step(step)
        session = self._load(session_id)
        if session.upsell_for_step(step) is not None:
            raise SessionStateError(f"Upsell step {step} already completed", session_id=session_id)
        next_step = step_after_upsell(step, self.max_steps)
        if step <= session.last_upsell_step or session.current_step.position >= next_step.position:
            # Refus rejoué (retour arrière, double clic): le funnel ne recule jamais
            logger.info("upsell.skip_replayed session=%s step=%s current=%s", session_id, step, session.current_step.value)
        else:
            self.store.decline_upsell(session_id, product_code)
            session = self.store.mutate(session_id, lambda s: (
                {"current_step": next_step} if s.current_step.position < next_step.position else None
            )) or session
            logger.info("upsell.skipped session=%s step=%s product=%s", session_id, step, product_code)
        return UpsellOutcome(
            session_id=session.id,
            step=step,
            product_code=product_code,
            accepted=False,
            current_step=session.current_step,
            next_step=step_location(session.id, session.current_step, session.transaction_id),
        )
