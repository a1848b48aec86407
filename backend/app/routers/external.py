"""
Router de l'API externe (application de saisie tierce).
Authentification par header X-API-Token, sauf /health.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.exceptions import PersistenceError
from app.schemas.carte import ChangesResponse, ExternalSyncRequest, ReconciliationReport
from app.security import verify_api_token
from app.services.reconciliation import list_changes, reconcile_batch

router = APIRouter(prefix="/api/external", tags=["API externe"])


@router.get("/health", summary="Santé de l'API externe")
def health():
    return {"status": "ok", "max_sync_records": settings.EXTERNAL_SYNC_MAX_RECORDS}


@router.post("/sync", response_model=ReconciliationReport, summary="Synchroniser un lot de cartes")
def sync(
    data: ExternalSyncRequest,
    token: str = Depends(verify_api_token),
    db: Session = Depends(get_db),
):
    """
    Fusionne chaque carte reçue avec la carte existante de même (nom, prenoms, site de retrait),
    ou l'insère. Une erreur sur une carte n'interrompt pas les suivantes.
    """
    if len(data.donnees) > settings.EXTERNAL_SYNC_MAX_RECORDS:
        raise HTTPException(
            status_code=400,
            detail=f"Trop d'enregistrements : maximum {settings.EXTERNAL_SYNC_MAX_RECORDS} par requête.",
        )
    try:
        return reconcile_batch(db, data.donnees, source=data.source, batch_id=data.batch_id)
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/changes", response_model=ChangesResponse, summary="Cartes modifiées depuis une date")
def changes(
    since: Optional[datetime] = None,
    limit: Optional[int] = Query(None, ge=1),
    token: str = Depends(verify_api_token),
    db: Session = Depends(get_db),
):
    """Tri croissant sur la date d'import ; reprendre avec `since` = derniere_modification."""
    return list_changes(db, since, limit)
