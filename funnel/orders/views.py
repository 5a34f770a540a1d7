from fastapi import APIRouter, Depends

from funnel.container import Container, get_container

router = APIRouter(prefix="/api/v1/orders", tags=["Orders API"])

# module funnel.orders.views
@router.get("/{session_id}")
def order_summary(session_id: str, container: Container = Depends(get_container)):
    """
    Résumé de commande (page de remerciement): produits fusionnés, client, totaux, contrôle de complétude.
    - 404 si ni la session ni l'enregistrement de commande n'existent
    """
    return container.aggregator.summarize(session_id)
