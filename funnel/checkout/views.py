import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from funnel import config
from funnel.checkout.status import PollState, describe_status
from funnel.container import Container, get_container
from funnel.errors import SessionNotFound, ValidationError
from funnel.utils.rate_limit import optional_rate_limit

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/checkout", tags=["Checkout API"])

async def read_json_body(request: Request) -> Dict[str, Any]:
    """Body JSON objet; ValidationError sinon (400 avec message par champ)."""
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError({"body": "Request body must be valid JSON"})
    if not isinstance(body, dict):
        raise ValidationError({"body": "Request body must be a JSON object"})
    return body

# module funnel.checkout.views
@router.post("", dependencies=[Depends(optional_rate_limit(times=10, seconds=60))])
async def process_checkout(request: Request, container: Container = Depends(get_container)):
    """
    Traite la commande initiale.
    - Entrée JSON: { customerInfo, products[], paymentToken, billingInfo?, couponCode?, metadata? }
    - Étapes: validation -> session -> vente avec création du vault -> upsell-1
    - Réponses: {success, sessionId, transactionId, status, currentStep, nextStep, totals}
    - Erreurs: 400 champs invalides, 402 refus classé / vault, 503 passerelle indisponible
    """
    body = await read_json_body(request)
    outcome = await run_in_threadpool(container.checkout.process, body)
    return JSONResponse(outcome.to_public_dict())

@router.get("/status/{session_id}")
def checkout_status(session_id: str, container: Container = Depends(get_container)):
    """
    Statut asynchrone d'un checkout (polling côté client).
    - Renvoie le contrat de polling (intervalle, backoff, tentatives max, états terminaux)
    - 404 avec state=not_found si la session est absente ou expirée (état terminal)
    """
    try:
        session = container.checkout.status_of(session_id)
    except SessionNotFound as exc:
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "sessionId": session_id,
                "status": PollState.NOT_FOUND.value,
                "state": PollState.NOT_FOUND.value,
                "poll": container.poll_contract.to_public_dict(),
                "error": exc.to_dict(debug=config.DEBUG_ERRORS),
            },
        )
    return describe_status(session, container.poll_contract, config.STATUS_ESTIMATED_SECONDS)

@router.get("/config")
def checkout_widget_config():
    """Configuration publique du widget de tokenisation (aucun secret)."""
    return {
        "collectJsUrl": config.COLLECT_JS_URL,
        "tokenizationKey": config.NMI_PUBLIC_KEY or None,
        "configured": bool(config.NMI_PUBLIC_KEY),
        "maxUpsellSteps": config.MAX_UPSELL_STEPS,
    }
