"""
Gestionnaires d'exceptions.
- FunnelError: rendu JSON {"success": false, "error": {...}} avec le status de la taxonomie.
- HTTPException: réponse JSON standard FastAPI ({"detail": ...}).
Le texte brut de la passerelle n'est exposé que si DEBUG_ERRORS=1.
"""
import logging
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from funnel import config
from funnel.errors import FunnelError

logger = logging.getLogger(__name__)

def funnel_error_response(exc: FunnelError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.to_dict(debug=config.DEBUG_ERRORS)},
    )

def register_exception_handlers(app: FastAPI) -> None:
    """
    Enregistre les handlers FunnelError et HTTPException.
    - Les erreurs 5xx de la taxonomie sont journalisées avec leur détail (jamais renvoyé au client).
    """
    @app.exception_handler(FunnelError)
    async def funnel_error_handler(request: Request, exc: FunnelError):
        if exc.status_code >= 500:
            logger.error("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc)
        else:
            logger.info("%s %s -> %s session=%s", request.method, request.url.path, exc.code, exc.session_id or "-")
        return funnel_error_response(exc)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=getattr(exc, "headers", None))
