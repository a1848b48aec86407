"""
Schémas Pydantic pour les cartes : candidats à la réconciliation et rapports.
Utilisés par l'API externe (POST /api/external/sync) et l'import CSV.
"""

from datetime import date, datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

MERGE_FIELDS = (
    "lieu_enrolement", "site_retrait", "rangement", "nom", "prenoms",
    "date_naissance", "lieu_naissance", "contact", "delivrance",
    "contact_retrait", "date_delivrance",
)


class CarteCandidate(BaseModel):
    """
    Version candidate d'une carte. Les alias reprennent les en-têtes historiques
    ("NOM", "SITE DE RETRAIT"...) envoyés par l'application externe ; les noms
    Python sont aussi acceptés.
    """

    model_config = ConfigDict(populate_by_name=True)

    lieu_enrolement: Optional[str] = Field(None, alias="LIEU D'ENROLEMENT")
    site_retrait: Optional[str] = Field(None, alias="SITE DE RETRAIT")
    rangement: Optional[str] = Field(None, alias="RANGEMENT")
    nom: Optional[str] = Field(None, alias="NOM")
    prenoms: Optional[str] = Field(None, alias="PRENOMS")
    date_naissance: Optional[str] = Field(None, alias="DATE DE NAISSANCE")
    lieu_naissance: Optional[str] = Field(None, alias="LIEU NAISSANCE")
    contact: Optional[str] = Field(None, alias="CONTACT")
    delivrance: Optional[str] = Field(None, alias="DELIVRANCE")
    contact_retrait: Optional[str] = Field(None, alias="CONTACT DE RETRAIT")
    date_delivrance: Optional[str] = Field(None, alias="DATE DE DELIVRANCE")

    @field_validator("*", mode="before")
    @classmethod
    def to_text(cls, v: Any) -> Optional[str]:
        """Les exports tableurs envoient parfois des nombres ou des dates : tout devient texte."""
        if v is None:
            return None
        if isinstance(v, (date, datetime)):
            return v.isoformat()
        return str(v)


class ReconciliationError(BaseModel):
    """Élément rejeté pendant une réconciliation."""
    index: int
    message: str


class ReconciliationReport(BaseModel):
    """Rapport d'une réconciliation par lot."""
    total: int
    imported: int
    updated: int
    duplicates: int
    errors: int
    error_details: List[ReconciliationError]
    batch_id: Optional[str] = None
    source: str


class ExternalSyncRequest(BaseModel):
    """Corps de POST /api/external/sync."""
    donnees: List[CarteCandidate]
    source: str = "api_externe"
    batch_id: Optional[str] = None


class CarteResponse(BaseModel):
    """Carte telle qu'exposée par GET /api/external/changes."""
    id: int
    lieu_enrolement: Optional[str]
    site_retrait: Optional[str]
    rangement: Optional[str]
    nom: str
    prenoms: str
    date_naissance: Optional[date]
    lieu_naissance: Optional[str]
    contact: Optional[str]
    delivrance: Optional[str]
    contact_retrait: Optional[str]
    date_delivrance: Optional[date]
    version: int
    date_import: Optional[datetime]

    model_config = {"from_attributes": True}


class ChangesResponse(BaseModel):
    data: List[CarteResponse]
    total: int
    limit: int
    has_more: bool
    derniere_modification: Optional[datetime]
    since: datetime


class CsvImportReport(BaseModel):
    """Rapport d'import CSV : lignes rejetées au parsing + rapport de réconciliation."""
    total_rows: int
    rejected_rows: List[ReconciliationError]
    reconciliation: ReconciliationReport
