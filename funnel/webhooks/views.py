import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from funnel.container import Container, get_container
from funnel.sessions.models import utcnow
from funnel.webhooks.handlers import ingest

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/webhooks", tags=["Webhooks"])

# module funnel.webhooks.views
@router.post("/{provider}", include_in_schema=False)
async def receive_webhook(provider: str, request: Request, container: Container = Depends(get_container)):
    """
    Webhook fournisseur (nmi, konnective).
    - Signature: HMAC-SHA256 du body brut (401 si invalide et secret configuré)
    - Payload: JSON, repli form-encoded
    - Réponses: 200 {success, state} même pour un type inconnu ou une erreur de handler
    """
    body = await request.body()
    receipt = ingest(provider, body, request.headers, container.bus)
    logger.info("webhook.received provider=%s state=%s type=%s", receipt.provider, receipt.state.value, receipt.event_type)
    return JSONResponse(receipt.to_public_dict())

@router.get("/{provider}", include_in_schema=False)
def webhook_liveness(provider: str, request: Request):
    """Vérification d'URL: renvoie hub.challenge / challenge en texte brut, sinon un statut actif."""
    challenge = request.query_params.get("hub.challenge") or request.query_params.get("challenge")
    if challenge:
        return PlainTextResponse(challenge)
    return {
        "success": True,
        "message": f"{provider} webhook endpoint is active",
        "timestamp": utcnow().isoformat(),
    }
