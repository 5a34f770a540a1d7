"""
Couche service du checkout (Checkout Orchestrator).
Rôles:
- Valider la commande initiale et calculer les totaux.
- Créer la session funnel puis effectuer la première vente avec création du vault (add_customer).
- Sur approbation: enregistrer transaction/vault, passer en completed et avancer à upsell-1,
  persister l'enregistrement de commande principal (agrégation).
- Sur refus: passer la session en failed (conservée pour diagnostic) et lever l'erreur classée.
Idempotence:
- Le token one-shot est "réservé" dans le store (empreinte sha256): un renvoi immédiat rejoue la réponse.
- La détection de doublon de la passerelle reste la garantie finale (succès synthétique).
"""
import hashlib
import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from funnel.checkout.models import CheckoutRequest, validate_checkout
from funnel.checkout.pricing import Totals, compute_totals
from funnel.errors import (
    ConfigurationError,
    GatewayDeclined,
    GatewayDuplicate,
    GatewayUnavailable,
    SessionNotFound,
    SessionStateError,
    VaultError,
)
from funnel.gateway import GatewayClient, GatewayLineItem, GatewayResult, SaleRequest, VaultDirective
from funnel.orders.repository import OrderRepository
from funnel.sessions.models import (
    BillingInfo,
    CustomerInfo,
    FunnelSession,
    FunnelStep,
    LineItem,
    SessionStatus,
    utcnow,
)
from funnel.sessions.navigation import step_location
from funnel.sessions.store import SessionStore

logger = logging.getLogger(__name__)

PENDING_CHARGE_KEY = "pending_charge"
UNCONFIRMED_KEY = "unconfirmed_charge"


def token_fingerprint(payment_token: str) -> str:
    return hashlib.sha256(payment_token.encode("utf-8")).hexdigest()[:32]


def checkout_order_id(session_id: str) -> str:
    return f"order_{session_id}"


def pending_charge(kind: str, **details: Any) -> Dict[str, Any]:
    """Charge en attente de récupération de carte (une seule tentative par action)."""
    return {"kind": kind, **details, "recovery_attempted": False, "created_at": utcnow().isoformat()}


class CheckoutOutcome(BaseModel):
    session_id: str
    transaction_id: Optional[str] = None
    status: SessionStatus
    current_step: FunnelStep
    next_step: str
    totals: Totals
    replayed: bool = False
    synthetic: bool = False

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "sessionId": self.session_id,
            "transactionId": self.transaction_id,
            "status": self.status.value,
            "currentStep": self.current_step.value,
            "nextStep": self.next_step,
            "totals": self.totals.to_public_dict(),
        }


class CheckoutOrchestrator:
    def __init__(
        self,
        *,
        store: SessionStore,
        gateway: GatewayClient,
        orders: OrderRepository,
        tax_rates: Dict[str, float],
        shipping: float = 0.0,
    ):
        self.store = store
        self.gateway = gateway
        self.orders = orders
        self.tax_rates = dict(tax_rates)
        self.shipping = shipping

    # --- Construction des requêtes passerelle ---
    def _sale_request(
        self,
        *,
        session_id: str,
        payment_token: str,
        customer: CustomerInfo,
        billing: Optional[BillingInfo],
        items: List[LineItem],
        totals: Totals,
    ) -> SaleRequest:
        return SaleRequest(
            amount=totals.total,
            payment_token=payment_token,
            vault_directive=VaultDirective.ADD,
            customer=customer,
            billing=billing,
            order_id=checkout_order_id(session_id),
            tax=totals.tax,
            shipping=totals.shipping,
            line_items=[
                GatewayLineItem(
                    product_code=i.id,
                    description=i.name,
                    quantity=i.quantity,
                    unit_cost=i.price,
                    tax_rate=totals.tax_rate,
                )
                for i in items
            ],
            merchant_fields=["funnel-checkout", "initial-order", items[0].id if items else "", session_id],
        )

    @staticmethod
    def _totals_of(session: FunnelSession) -> Totals:
        rate = round(session.tax / session.subtotal, 6) if session.subtotal else 0.0
        return Totals(subtotal=session.subtotal, tax=session.tax, shipping=session.shipping, total=session.amount, tax_rate=rate)

    def _outcome(self, session: FunnelSession, *, replayed: bool = False, synthetic: bool = False) -> CheckoutOutcome:
        return CheckoutOutcome(
            session_id=session.id,
            transaction_id=session.transaction_id,
            status=session.status,
            current_step=session.current_step,
            next_step=step_location(session.id, session.current_step, session.transaction_id),
            totals=self._totals_of(session),
            replayed=replayed,
            synthetic=synthetic,
        )

    # --- Cas d'usage ---
    def process(self, payload: Any) -> CheckoutOutcome:
        """
        Traite une soumission de checkout.
        - Étapes:
          1) validate_checkout (ValidationError par champ)
          2) compute_totals (taxe selon l'état du client, livraison forfaitaire)
          3) store.create (initiated) puis processing
          4) gateway.sale avec add_customer
          5) approbation -> _complete ; refus -> failed + erreur classée
        """
        req: CheckoutRequest = validate_checkout(payload)
        customer = req.customer_info.to_customer_info()
        billing = req.billing_info.to_billing_info() if req.billing_info else None
        items = [p.to_line_item() for p in req.products]
        totals = compute_totals(items, customer.state, self.tax_rates, self.shipping)

        session = self.store.create({
            "email": customer.email,
            "customer_info": customer,
            "billing_info": billing,
            "line_items": items,
            "amount": totals.total,
            "subtotal": totals.subtotal,
            "tax": totals.tax,
            "shipping": totals.shipping,
            "metadata": {
                **req.metadata,
                "coupon_code": req.coupon_code,
                "token_fingerprint": token_fingerprint(req.payment_token),
            },
        })

        held = self.store.claim_idempotency_key(f"checkout:{token_fingerprint(req.payment_token)}", session.id)
        if held:
            prior = self.store.get(held)
            if prior is not None and prior.status != SessionStatus.FAILED:
                self.store.delete(session.id)
                logger.info("checkout.replayed session=%s", prior.id)
                return self._outcome(prior, replayed=True)

        self.store.set_status(session.id, SessionStatus.PROCESSING)
        self.store.set_step(session.id, FunnelStep.PROCESSING)

        sale = self._sale_request(
            session_id=session.id,
            payment_token=req.payment_token,
            customer=customer,
            billing=billing,
            items=items,
            totals=totals,
        )
        result = self._charge(session.id, sale)
        return self._complete(session.id, result)

    def _charge(self, session_id: str, sale: SaleRequest) -> GatewayResult:
        try:
            return self.gateway.sale(sale)
        except GatewayDuplicate as dup:
            prior_vault = dup.result.vault_id if dup.result is not None else None
            logger.info("checkout.duplicate session=%s prior=%s", session_id, dup.prior_transaction_id)
            return GatewayResult.synthetic_approval(
                dup.prior_transaction_id or f"dup_{session_id}",
                vault_id=prior_vault,
            )
        except VaultError as exc:
            # La carte n'a pas pu être enregistrée: la récupération terminera le checkout
            self._merge_metadata(session_id, {PENDING_CHARGE_KEY: pending_charge("checkout")})
            exc.session_id = session_id
            logger.warning("checkout.vault_error session=%s", session_id)
            raise
        except GatewayDeclined as exc:
            self._fail(session_id, reason=exc.reason.value)
            exc.session_id = session_id
            logger.info("checkout.declined session=%s reason=%s", session_id, exc.reason.value)
            raise
        except GatewayUnavailable as exc:
            if exc.unconfirmed:
                # La vente a pu aboutir: la session reste en processing jusqu'au webhook
                self._merge_metadata(session_id, {UNCONFIRMED_KEY: utcnow().isoformat()})
            else:
                self._fail(session_id, reason="gateway_unavailable")
            exc.session_id = session_id
            logger.warning("checkout.unavailable session=%s unconfirmed=%s", session_id, exc.unconfirmed)
            raise
        except ConfigurationError as exc:
            self._fail(session_id, reason="configuration_error")
            exc.session_id = session_id
            logger.error("checkout.configuration_error session=%s detail=%s", session_id, exc)
            raise

    def _merge_metadata(self, session_id: str, entries: Dict[str, Any]) -> Optional[FunnelSession]:
        return self.store.mutate(session_id, lambda s: {"metadata": {**s.metadata, **entries}})

    def fail_processing(self, session_id: str, *, reason: str) -> None:
        """Passe en failed une session encore en processing (échec de récupération, webhook)."""
        self._fail(session_id, reason=reason)

    def _fail(self, session_id: str, *, reason: str) -> None:
        def _apply(s: FunnelSession) -> Optional[Dict[str, Any]]:
            if s.status != SessionStatus.PROCESSING:
                return None
            metadata = {**s.metadata, "failure_reason": reason}
            metadata.pop(UNCONFIRMED_KEY, None)
            return {"status": SessionStatus.FAILED, "metadata": metadata}

        self.store.mutate(session_id, _apply)

    def _complete(self, session_id: str, result: GatewayResult) -> CheckoutOutcome:
        """
        Finalise une vente approuvée:
        - transaction_id + vault_id (uniquement après vente approuvée avec add_customer)
        - status completed, étape upsell-1 (success si aucun vault n'est revenu)
        - enregistrement de la commande principale
        """
        next_step = FunnelStep.UPSELL_1 if result.vault_id else FunnelStep.SUCCESS

        def _apply(s: FunnelSession) -> Optional[Dict[str, Any]]:
            if s.status == SessionStatus.COMPLETED:
                return None
            if s.status != SessionStatus.PROCESSING:
                raise SessionStateError(f"Cannot complete checkout from {s.status.value}", session_id=session_id)
            metadata = dict(s.metadata)
            metadata.pop(PENDING_CHARGE_KEY, None)
            metadata.pop(UNCONFIRMED_KEY, None)
            changes: Dict[str, Any] = {
                "status": SessionStatus.COMPLETED,
                "transaction_id": result.transaction_id,
                "current_step": next_step,
                "metadata": metadata,
            }
            if result.vault_id:
                changes["vault_id"] = result.vault_id
                changes["last_vault_update"] = utcnow()
            return changes

        session = self.store.mutate(session_id, _apply)
        if session is None:
            raise SessionNotFound(session_id=session_id)

        main_item = session.line_items[0] if session.line_items else None
        self.orders.save_main_order(
            session.id,
            main_order={
                "transaction_id": session.transaction_id,
                "amount": session.amount,
                "subtotal": session.subtotal,
                "tax": session.tax,
                "shipping": session.shipping,
                "product_code": main_item.id if main_item else None,
                "line_items": [i.model_dump() for i in session.line_items],
                "timestamp": utcnow().isoformat(),
            },
            customer=session.customer_info.model_dump() if session.customer_info else {},
        )
        logger.info(
            "checkout.completed session=%s transaction=%s synthetic=%s step=%s",
            session.id, session.transaction_id, result.synthetic, session.current_step.value,
        )
        return self._outcome(session, synthetic=result.synthetic)

    def complete_with_new_token(self, session_id: str, payment_token: str) -> CheckoutOutcome:
        """
        Relance la vente initiale en attente avec un nouveau token (Card Recovery Flow, cas checkout).
        Les erreurs classées remontent telles quelles à l'appelant.
        """
        session = self.store.get(session_id)
        if session is None:
            raise SessionNotFound(session_id=session_id)
        if session.status != SessionStatus.PROCESSING:
            raise SessionStateError("No pending checkout charge", session_id=session_id)
        if not session.customer_info:
            raise SessionStateError("Session has no customer information", session_id=session_id)
        sale = self._sale_request(
            session_id=session.id,
            payment_token=payment_token,
            customer=session.customer_info,
            billing=session.billing_info,
            items=session.line_items,
            totals=self._totals_of(session),
        )
        try:
            result = self.gateway.sale(sale)
        except GatewayDuplicate as dup:
            result = GatewayResult.synthetic_approval(
                dup.prior_transaction_id or f"dup_{session.id}",
                vault_id=dup.result.vault_id if dup.result is not None else None,
            )
        return self._complete(session.id, result)

    def settle_from_webhook(
        self,
        session_id: str,
        *,
        approved: bool,
        transaction_id: Optional[str],
        vault_id: Optional[str] = None,
    ) -> Optional[FunnelSession]:
        """
        Réconcilie une vente non confirmée (timeout) à partir d'un événement webhook.
        Sans effet si la session n'est plus en processing.
        """
        session = self.store.get(session_id)
        if session is None or session.status != SessionStatus.PROCESSING:
            return session
        if approved and transaction_id:
            result = GatewayResult(approved=True, response="1", response_code="100", transaction_id=transaction_id, vault_id=vault_id)
            self._complete(session_id, result)
        elif not approved:
            self._fail(session_id, reason="webhook_declined")
        return self.store.get(session_id)

    def status_of(self, session_id: str) -> FunnelSession:
        session = self.store.get(session_id)
        if session is None:
            raise SessionNotFound(session_id=session_id)
        return session
