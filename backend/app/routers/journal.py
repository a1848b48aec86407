"""
Router pour le journal d'activité et les annulations (administrateurs).
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.database import get_db
from app.exceptions import (
    AlreadyCancelledError,
    JournalValidationError,
    NotFoundError,
    PersistenceError,
    SyncValidationError,
    UndoError,
)
from app.schemas.journal import (
    ImportBatchDetails,
    ImportBatchSummary,
    ImportBatchUndoRequest,
    ImportBatchUndoResult,
    JournalActor,
    JournalEntryResponse,
    JournalPage,
    JournalStats,
    PurgeRequest,
    PurgeResult,
    UndoCheck,
    UndoResult,
)
from app.security import get_current_admin
from app.services import journal_service

router = APIRouter(prefix="/api/journal", tags=["Journal d'activité"])


@router.get("", response_model=JournalPage, summary="Consulter le journal")
def list_journal(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    utilisateur_id: Optional[int] = None,
    action_type: Optional[str] = None,
    table_name: Optional[str] = None,
    date_debut: Optional[datetime] = None,
    date_fin: Optional[datetime] = None,
    coordination: Optional[str] = None,
    annulee: Optional[bool] = None,
    admin: JournalActor = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    """Liste paginée, plus récent d'abord. Tous les filtres sont optionnels et cumulables."""
    return journal_service.list_entries(
        db, page, limit, utilisateur_id, action_type, table_name,
        date_debut, date_fin, coordination, annulee,
    )


@router.get("/annulables", response_model=List[JournalEntryResponse], summary="Actions annulables")
def list_undoable(
    limit: int = Query(500, ge=1, le=5000),
    admin: JournalActor = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    return journal_service.list_undoable(db, limit)


@router.get("/imports", response_model=List[ImportBatchSummary], summary="Lots d'import annulables")
def list_imports(
    limit: int = Query(100, ge=1, le=1000),
    admin: JournalActor = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    return journal_service.list_import_batches(db, limit)


@router.get("/imports/{batch_id}", response_model=ImportBatchDetails, summary="Détail d'un lot d'import")
def get_import_details(
    batch_id: str,
    admin: JournalActor = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    """Cartes et entrées du journal d'un lot, à consulter avant de l'annuler."""
    try:
        return journal_service.get_import_details(db, batch_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/stats", response_model=JournalStats, summary="Statistiques du journal")
def get_stats(
    admin: JournalActor = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    return journal_service.get_stats(db)


@router.get("/{journal_id}", response_model=JournalEntryResponse, summary="Détail d'une entrée")
def get_entry(
    journal_id: int,
    admin: JournalActor = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    try:
        return journal_service.get_entry(db, journal_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{journal_id}/annulable", response_model=UndoCheck, summary="Vérifier si une action est annulable")
def check_undoable(
    journal_id: int,
    admin: JournalActor = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    return journal_service.check_undoable(db, journal_id)


@router.post("/undo/{journal_id}", response_model=UndoResult, summary="Annuler une action")
def undo(
    journal_id: int,
    admin: JournalActor = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    """
    Annule l'action par une écriture compensatoire :
    - INSERT → suppression
    - UPDATE → restauration des anciennes valeurs
    - DELETE → réinsertion (nouvel identifiant)
    """
    try:
        return journal_service.undo_action(db, journal_id, admin)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except AlreadyCancelledError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except UndoError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/annuler-import", response_model=ImportBatchUndoResult, summary="Annuler un lot d'import")
def undo_import(
    data: ImportBatchUndoRequest,
    admin: JournalActor = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    """Supprime toutes les cartes du lot. Les entrées INSERT / UPDATE du lot ne sont pas rejouées."""
    try:
        return journal_service.undo_import_batch(db, data.import_batch_id, admin)
    except SyncValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/nettoyer", response_model=PurgeResult, summary="Nettoyer le journal")
def clean_journal(
    data: Optional[PurgeRequest] = None,
    admin: JournalActor = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    """Supprime les entrées antérieures à avantDate (défaut : durée de rétention)."""
    before = data.avant_date if data else None
    try:
        return journal_service.clean_journal(db, admin, before)
    except JournalValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))
