"""
Router pour la synchronisation des sites (agents offline ↔ serveur central).
Cycle : login → upload (renvoie aussi le download) → confirm. Le download seul
et le statut sont disponibles séparément.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from app.database import get_db
from app.exceptions import AuthError, NotFoundError, PersistenceError
from app.models.site import Site
from app.schemas.sync import (
    ConfirmRequest,
    ConfirmResponse,
    ConflictResponse,
    DownloadResponse,
    LoginResponse,
    SiteLogin,
    SiteStatus,
    UploadRequest,
    UploadResponse,
)
from app.security import get_current_site
from app.services import sync_service

router = APIRouter(prefix="/api/sync", tags=["Synchronisation des sites"])


@router.post("/login", response_model=LoginResponse, summary="Authentifier un site")
def login(data: SiteLogin, request: Request, db: Session = Depends(get_db)):
    """Échange (site_id, api_key) contre un token valable SITE_TOKEN_EXPIRE_HOURS heures."""
    ip = request.client.host if request.client else None
    try:
        return sync_service.login_site(db, data.site_id, data.api_key, ip)
    except AuthError as e:
        raise HTTPException(status_code=401, detail=str(e))


@router.post(
    "/upload",
    response_model=UploadResponse,
    summary="Envoyer les modifications locales du site",
)
def upload(
    data: UploadRequest,
    site: Site = Depends(get_current_site),
    db: Session = Depends(get_db),
):
    """
    Applique les modifications du site dans une transaction.

    Comportement :
    - INSERT : carte créée, possédée par le site, version 1
    - UPDATE : version client < version serveur → conflit enregistré, rien n'est écrit
    - DELETE : sans contrôle de version, limité aux cartes du site
    - Une erreur sur un élément n'interrompt pas les suivants (statut "error")
    - La réponse contient aussi les cartes des autres sites modifiées depuis last_sync
    """
    try:
        return sync_service.process_upload(db, site, data.modifications, data.last_sync)
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/download", response_model=DownloadResponse, summary="Récupérer les cartes des autres sites")
def download(
    since: Optional[datetime] = None,
    limit: Optional[int] = Query(None, ge=1),
    order: str = Query("desc", pattern="^(asc|desc)$"),
    site: Site = Depends(get_current_site),
    db: Session = Depends(get_db),
):
    """Cartes des autres coordinations modifiées après `since` (toutes si absent)."""
    records = sync_service.prepare_download(db, site, since, limit, ascending=order == "asc")
    return DownloadResponse(count=len(records), since=since, records=records)


@router.post("/confirm", response_model=ConfirmResponse, summary="Confirmer l'application du download")
def confirm(
    data: ConfirmRequest,
    site: Site = Depends(get_current_site),
    db: Session = Depends(get_db),
):
    try:
        return sync_service.confirm_download(db, site, data.history_id, data.applied_ids, data.errors)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/status", response_model=SiteStatus, summary="Statut de synchronisation du site")
def status(site: Site = Depends(get_current_site), db: Session = Depends(get_db)):
    return sync_service.get_site_status(db, site)


@router.get("/conflicts", response_model=List[ConflictResponse], summary="Conflits de version du site")
def conflicts(
    limit: int = Query(100, ge=1, le=1000),
    site: Site = Depends(get_current_site),
    db: Session = Depends(get_db),
):
    return sync_service.list_conflicts(db, site, limit)
