"""
Schémas Pydantic pour le journal d'activité et les annulations.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from app.schemas.carte import CarteResponse


class JournalActor(BaseModel):
    """Auteur d'une mutation : utilisateur (admin) ou site synchronisé."""
    name: str
    role: str = "Systeme"
    user_id: Optional[int] = None
    coordination: Optional[str] = None
    ip: Optional[str] = None

    @field_validator("name")
    @classmethod
    def not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Le nom de l'auteur est obligatoire.")
        return v.strip()


SYSTEM_ACTOR = JournalActor(name="systeme", role="Systeme")


class JournalEntryResponse(BaseModel):
    id: int
    utilisateur_id: Optional[int]
    nom_utilisateur: str
    role: Optional[str]
    coordination: Optional[str]
    date_action: Optional[datetime]
    action_type: str
    table_name: str
    record_id: Optional[str]
    anciennes_valeurs: Optional[Dict[str, Any]]
    nouvelles_valeurs: Optional[Dict[str, Any]]
    details: Optional[str]
    import_batch_id: Optional[str]
    annulee: bool
    annulee_par: Optional[int]
    date_annulation: Optional[datetime]

    model_config = {"from_attributes": True}


class JournalPage(BaseModel):
    data: List[JournalEntryResponse]
    total: int
    page: int
    limit: int
    total_pages: int


class UndoResult(BaseModel):
    journal_id: int
    action_type: str
    table_name: str
    record_id: Optional[str]
    restored_record_id: Optional[str] = None  # nouvel id après annulation d'une suppression
    annulation_id: int


class UndoCheck(BaseModel):
    journal_id: int
    peut_annuler: bool
    raison: Optional[str] = None
    heures_ecoulees: Optional[int] = None


class ImportBatchUndoRequest(BaseModel):
    import_batch_id: str = Field(..., alias="importBatchID", min_length=1)

    model_config = {"populate_by_name": True}


class ImportBatchUndoResult(BaseModel):
    import_batch_id: str
    deleted_count: int
    journal_id: int


class ImportBatchSummary(BaseModel):
    import_batch_id: str
    total_cartes: int
    date_debut: Optional[datetime]
    date_fin: Optional[datetime]
    sites: int


class ImportBatchDetails(BaseModel):
    """Contenu d'un lot d'import, à vérifier avant annuler-import."""
    import_batch_id: str
    cartes: List[CarteResponse]
    entries: List[JournalEntryResponse]


class ActorActivity(BaseModel):
    utilisateur_id: Optional[int]
    nom_utilisateur: str
    total_actions: int


class ActionTypeCount(BaseModel):
    action_type: str
    count: int


class JournalStats(BaseModel):
    total_actions: int
    utilisateurs_actifs: int
    types_actions: int
    premiere_action: Optional[datetime]
    derniere_action: Optional[datetime]
    actions_24h: int
    actions_7j: int
    actions_annulees: int
    top_utilisateurs: List[ActorActivity]
    top_actions: List[ActionTypeCount]


class PurgeRequest(BaseModel):
    avant_date: Optional[datetime] = Field(None, alias="avantDate")

    model_config = {"populate_by_name": True}


class PurgeResult(BaseModel):
    deleted_count: int
    date_limite: datetime
