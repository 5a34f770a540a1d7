"""
Taxonomie d'erreurs du funnel.

Chaque erreur porte:
- status_code: code HTTP renvoyé par le handler global (app_setup.exception_handlers)
- code: identifiant stable exploitable par le front
- user_message: texte montré au client (jamais le message brut de la passerelle)
- retryable: indique si le client peut réessayer tel quel
"""
from enum import Enum
from typing import Any, Dict, Optional


class FunnelError(Exception):
    status_code = 400
    code = "funnel_error"
    default_user_message = "Something went wrong. Please try again."
    retryable = False

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        user_message: Optional[str] = None,
        session_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message or self.default_user_message)
        self.user_message = user_message or self.default_user_message
        self.session_id = session_id
        self.context = dict(context or {})

    def to_dict(self, debug: bool = False) -> Dict[str, Any]:
        """Représentation JSON destinée au client."""
        payload: Dict[str, Any] = {
            "code": self.code,
            "message": self.user_message,
            "retryable": self.retryable,
        }
        if self.session_id:
            payload["sessionId"] = self.session_id
        if debug:
            payload["debug"] = {"detail": str(self), **self.context}
        return payload


class ValidationError(FunnelError):
    status_code = 400
    code = "validation_error"
    default_user_message = "Please check the highlighted fields and try again."

    def __init__(self, fields: Optional[Dict[str, str]] = None, message: Optional[str] = None, **kwargs):
        super().__init__(message or "Invalid request data", **kwargs)
        self.fields = dict(fields or {})

    def to_dict(self, debug: bool = False) -> Dict[str, Any]:
        payload = super().to_dict(debug)
        payload["fields"] = self.fields
        return payload


class DeclineReason(str, Enum):
    INSUFFICIENT_FUNDS = "insufficient_funds"
    EXPIRED_CARD = "expired_card"
    INVALID_CVV = "invalid_cvv"
    INVALID_ADDRESS = "invalid_address"
    INVALID_CARD = "invalid_card"
    DECLINED = "declined"


DECLINE_MESSAGES: Dict[DeclineReason, str] = {
    DeclineReason.INSUFFICIENT_FUNDS: "Your card has insufficient funds. Please use a different card.",
    DeclineReason.EXPIRED_CARD: "Your card has expired. Please use a different card.",
    DeclineReason.INVALID_CVV: "The security code (CVV) is incorrect. Please check it and try again.",
    DeclineReason.INVALID_ADDRESS: "The billing address or ZIP code does not match your card. Please check it and try again.",
    DeclineReason.INVALID_CARD: "The card details are invalid. Please check them and try again.",
    DeclineReason.DECLINED: "Your card was declined. Please try a different card or contact your bank.",
}


class GatewayDeclined(FunnelError):
    status_code = 402
    code = "payment_declined"

    def __init__(self, reason: DeclineReason = DeclineReason.DECLINED, message: Optional[str] = None, **kwargs):
        kwargs.setdefault("user_message", DECLINE_MESSAGES[reason])
        super().__init__(message or f"Payment declined ({reason.value})", **kwargs)
        self.reason = reason

    def to_dict(self, debug: bool = False) -> Dict[str, Any]:
        payload = super().to_dict(debug)
        payload["reason"] = self.reason.value
        return payload


class GatewayDuplicate(FunnelError):
    """Transaction rejetée comme doublon: convertie en succès synthétique, jamais montrée."""
    status_code = 200
    code = "duplicate_transaction"

    def __init__(self, message: Optional[str] = None, *, prior_transaction_id: Optional[str] = None, result: Any = None, **kwargs):
        super().__init__(message or "Duplicate transaction", **kwargs)
        self.prior_transaction_id = prior_transaction_id
        self.result = result


class VaultError(FunnelError):
    status_code = 402
    code = "vault_error"
    default_user_message = "We could not charge your saved card. Please re-enter your card details to continue."

    def __init__(self, message: Optional[str] = None, *, recovery_required: bool = True, **kwargs):
        super().__init__(message or "Stored payment method unusable", **kwargs)
        self.recovery_required = recovery_required

    def to_dict(self, debug: bool = False) -> Dict[str, Any]:
        payload = super().to_dict(debug)
        payload["recoveryRequired"] = self.recovery_required
        if self.recovery_required and self.session_id:
            payload["recovery"] = {"action": "update_card", "endpoint": "/api/v1/vault/recover"}
        return payload


class CardRecoveryFailed(FunnelError):
    status_code = 402
    code = "card_recovery_failed"
    default_user_message = "We could not update your card. Please contact support or try again later."


class GatewayUnavailable(FunnelError):
    status_code = 503
    code = "gateway_unavailable"
    default_user_message = "Our payment provider is temporarily unavailable. Please try again shortly."
    retryable = True

    def __init__(self, message: Optional[str] = None, *, unconfirmed: bool = False, **kwargs):
        super().__init__(message or "Payment gateway unavailable", **kwargs)
        # unconfirmed: la requête a pu atteindre la passerelle (timeout), ne pas la considérer déclinée
        self.unconfirmed = unconfirmed

    def to_dict(self, debug: bool = False) -> Dict[str, Any]:
        payload = super().to_dict(debug)
        payload["unconfirmed"] = self.unconfirmed
        return payload


class SignatureInvalid(FunnelError):
    status_code = 401
    code = "invalid_signature"
    default_user_message = "Invalid signature"


class SessionNotFound(FunnelError):
    status_code = 404
    code = "session_not_found"
    default_user_message = "Your session was not found. Please refresh the page and start over."


class SessionExpired(SessionNotFound):
    code = "session_expired"
    default_user_message = "Your session has expired. Please refresh the page and start over."


class SessionStateError(FunnelError):
    status_code = 409
    code = "session_state_error"
    default_user_message = "This action is no longer available for your order."


class SessionConflict(SessionStateError):
    code = "session_conflict"
    retryable = True


class ConfigurationError(FunnelError):
    status_code = 500
    code = "configuration_error"
    default_user_message = "Payment service is temporarily unavailable. Please try again later."
