import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from funnel.checkout.views import read_json_body
from funnel.container import Container, get_container
from funnel.errors import ValidationError
from funnel.utils.rate_limit import optional_rate_limit

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/vault", tags=["Vault API"])

# module funnel.vault.views
@router.post("/update-card", dependencies=[Depends(optional_rate_limit(times=5, seconds=60))])
async def update_card(request: Request, container: Container = Depends(get_container)):
    """
    Remplace la carte enregistrée (customer_vault=update_customer).
    - Entrée JSON: { paymentToken, sessionId } ou { paymentToken, vaultId, customerInfo }
    - Réponse: {success, vaultId}
    """
    body = await read_json_body(request)
    token = body.get("paymentToken") or body.get("payment_token")
    result = await run_in_threadpool(
        lambda: container.recovery.update_card(
            token,
            session_id=body.get("sessionId"),
            vault_id=body.get("vaultId"),
            customer_info=body.get("customerInfo"),
        )
    )
    return JSONResponse({"success": True, "vaultId": result["vault_id"], "sessionId": result["session_id"]})

@router.post("/recover", dependencies=[Depends(optional_rate_limit(times=5, seconds=60))])
async def recover_card(request: Request, container: Container = Depends(get_container)):
    """
    Card Recovery Flow: met à jour le vault puis ré-émet la charge en attente.
    - Entrée JSON: { sessionId, paymentToken }
    - Une seule tentative par charge en attente; échec -> 402 card_recovery_failed
    """
    body = await read_json_body(request)
    session_id = str(body.get("sessionId") or "").strip()
    if not session_id:
        raise ValidationError({"sessionId": "Session ID is required"})
    token = body.get("paymentToken") or body.get("payment_token")
    outcome = await run_in_threadpool(container.recovery.recover, session_id, token)
    return JSONResponse(outcome.to_public_dict())
