"""Emplacements des pages du funnel renvoyés au client (nextStep)."""
from typing import Optional
from urllib.parse import urlencode

from funnel.sessions.models import FunnelStep


def step_location(session_id: str, step: FunnelStep, transaction_id: Optional[str] = None) -> str:
    params = {"session": session_id}
    if transaction_id:
        params["transaction"] = transaction_id
    query = urlencode(params)
    if step in (FunnelStep.UPSELL_1, FunnelStep.UPSELL_2):
        return f"/upsell/{step.value.split('-')[1]}?{query}"
    if step == FunnelStep.SUCCESS:
        return f"/thankyou?{query}"
    if step == FunnelStep.PROCESSING:
        return f"/checkout/processing?{query}"
    return "/checkout"


def step_after_upsell(step: int, max_steps: int) -> FunnelStep:
    # Le funnel expose deux pages upsell (upsell-1, upsell-2)
    if step < min(max_steps, 2):
        return FunnelStep.for_upsell(step + 1)
    return FunnelStep.SUCCESS


def retry_location() -> str:
    return "/checkout?retry=true"
