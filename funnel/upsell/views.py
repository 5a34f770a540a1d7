import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from funnel.checkout.views import read_json_body
from funnel.container import Container, get_container
from funnel.errors import ValidationError
from funnel.utils.rate_limit import optional_rate_limit

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/upsell", tags=["Upsell API"])

def _upsell_params(body: Dict[str, Any]):
    """Extrait (sessionId, productCode, step) du body; ValidationError par champ manquant."""
    fields: Dict[str, str] = {}
    session_id = str(body.get("sessionId") or "").strip()
    product_code = str(body.get("productCode") or "").strip()
    if not session_id:
        fields["sessionId"] = "Session ID is required"
    if not product_code:
        fields["productCode"] = "Product code is required"
    try:
        step = int(body.get("step"))
    except (TypeError, ValueError):
        fields["step"] = "Step must be an integer"
        step = 0
    if fields:
        raise ValidationError(fields)
    return session_id, product_code, step

# module funnel.upsell.views
@router.post("", dependencies=[Depends(optional_rate_limit(times=10, seconds=60))])
async def process_upsell(request: Request, container: Container = Depends(get_container)):
    """
    Upsell one-click sur le vault de la session.
    - Entrée JSON: { sessionId, productCode, step } (le prix vient du catalogue)
    - Réponses: {success, transactionId, nextStep, currentStep, ...}
    - Erreurs: 402 refus classé, 402 vault_error (recovery -> /api/v1/vault/recover), 404 session, 409 étape
    """
    session_id, product_code, step = _upsell_params(await read_json_body(request))
    outcome = await run_in_threadpool(container.upsell.process, session_id, product_code, step)
    return JSONResponse(outcome.to_public_dict())

@router.post("/decline")
async def decline_upsell(request: Request, container: Container = Depends(get_container)):
    """« Non merci »: enregistre le refus et renvoie la page suivante."""
    session_id, product_code, step = _upsell_params(await read_json_body(request))
    outcome = await run_in_threadpool(container.upsell.decline, session_id, product_code, step)
    return JSONResponse(outcome.to_public_dict())
