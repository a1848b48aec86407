"""
Router pour les cartes.
Import CSV (POST /api/v1/cartes/import), réservé aux administrateurs.
"""

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.exceptions import PersistenceError
from app.schemas.carte import CsvImportReport
from app.schemas.journal import JournalActor
from app.security import get_current_admin
from app.services.carte_import import parse_and_import_csv

router = APIRouter(prefix="/api/v1/cartes", tags=["Cartes"])

ALLOWED_CONTENT_TYPES = {"text/csv", "text/plain", "application/vnd.ms-excel"}


@router.post("/import", response_model=CsvImportReport, summary="Importer des cartes via CSV")
async def import_cartes(
    file: UploadFile = File(...),
    admin: JournalActor = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    """
    Importe des cartes depuis un fichier CSV.

    Format attendu du CSV :
    - Colonnes obligatoires : `NOM`, `PRENOMS`
    - Colonnes optionnelles : `LIEU D'ENROLEMENT`, `SITE DE RETRAIT`, `RANGEMENT`,
      `DATE DE NAISSANCE`, `LIEU NAISSANCE`, `CONTACT`, `DELIVRANCE`,
      `CONTACT DE RETRAIT`, `DATE DE DELIVRANCE`
    - Séparateur : virgule (`,`) ou point-virgule (`;`)
    - Encodage : UTF-8 (avec ou sans BOM)

    Les cartes déjà connues sont fusionnées, les autres insérées sous un même lot d'import.
    """
    if file.content_type not in ALLOWED_CONTENT_TYPES and not (file.filename or "").endswith(".csv"):
        raise HTTPException(
            status_code=400,
            detail="Format invalide. Seuls les fichiers CSV sont acceptés."
        )

    content = await file.read()

    if len(content) > settings.IMPORT_MAX_FILE_SIZE_MB * 1024 * 1024:
        raise HTTPException(
            status_code=400,
            detail=f"Fichier trop volumineux. Taille maximale : {settings.IMPORT_MAX_FILE_SIZE_MB} Mo."
        )

    if not content:
        raise HTTPException(status_code=400, detail="Le fichier CSV est vide.")

    try:
        return parse_and_import_csv(content, db, admin)
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="Encodage invalide. Le fichier doit être en UTF-8.")
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))
