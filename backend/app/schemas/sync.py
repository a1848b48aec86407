"""
Schémas Pydantic pour la synchronisation des sites (agents offline ↔ serveur central).
Endpoints : /api/sync/login, /upload, /download, /confirm, /status, /conflicts
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, field_validator

from app.config import settings

VALID_OPERATIONS = {"INSERT", "UPDATE", "DELETE"}


class SiteLogin(BaseModel):
    site_id: str
    api_key: str

    @field_validator("site_id", "api_key")
    @classmethod
    def not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("site_id et api_key requis.")
        return v.strip()


class SiteInfo(BaseModel):
    id: str
    nom: str
    coordination_id: int


class LoginResponse(BaseModel):
    token: str
    site: SiteInfo


class Modification(BaseModel):
    """Une modification locale envoyée par l'agent du site."""

    operation: str                # INSERT, UPDATE, DELETE
    coordination_id: int
    local_id: Optional[str] = None
    pg_id: Optional[int] = None   # id serveur (UPDATE / DELETE)
    version: Optional[int] = None  # version connue du client (UPDATE)
    nom: Optional[str] = None
    prenoms: Optional[str] = None
    date_naissance: Optional[str] = None
    lieu_naissance: Optional[str] = None
    contacts: Optional[str] = None
    delivrance: Optional[str] = None
    contact_retrait: Optional[str] = None
    date_delivrance: Optional[str] = None

    @field_validator("operation")
    @classmethod
    def valid_operation(cls, v: str) -> str:
        v = v.upper()
        if v not in VALID_OPERATIONS:
            raise ValueError(f"Opération inconnue. Valeurs acceptées : {VALID_OPERATIONS}")
        return v


class UploadRequest(BaseModel):
    modifications: List[Modification] = []
    last_sync: Optional[datetime] = None

    @field_validator("modifications")
    @classmethod
    def not_too_large(cls, v: List[Modification]) -> List[Modification]:
        if len(v) > settings.SYNC_MAX_MODIFICATIONS:
            raise ValueError(
                f"Batch trop grand : maximum {settings.SYNC_MAX_MODIFICATIONS} modifications par requête."
            )
        return v


class UploadCounts(BaseModel):
    inserts: int = 0
    updates: int = 0
    deletes: int = 0
    conflicts: int = 0
    errors: int = 0


class ProcessedItem(BaseModel):
    local_id: Optional[str]
    pg_id: Optional[int] = None
    status: str                   # success, conflict, error
    version: Optional[int] = None
    error: Optional[str] = None


class DownloadRecord(BaseModel):
    pg_id: int
    coordination_id: Optional[int]
    site_proprietaire_id: Optional[str]
    nom: str
    prenoms: str
    date_naissance: Optional[str]
    lieu_naissance: Optional[str]
    contact: Optional[str]
    delivrance: Optional[str]
    contact_retrait: Optional[str]
    date_delivrance: Optional[str]
    version: int
    sync_timestamp: Optional[datetime]


class UploadResponse(BaseModel):
    history_id: int
    uploaded: UploadCounts
    download: List[DownloadRecord]
    processed: List[ProcessedItem]


class DownloadResponse(BaseModel):
    count: int
    since: Optional[datetime]
    records: List[DownloadRecord]


class ConfirmRequest(BaseModel):
    history_id: int
    applied_ids: List[Any] = []
    errors: List[Any] = []


class ConfirmResponse(BaseModel):
    history_id: int
    status: str = "confirmed"


class SiteStatus(BaseModel):
    total_cards: int
    pending_cards: int
    synced_cards: int
    last_sync_at: Optional[datetime]
    last_sync_status: Optional[str]
    sync_status: str              # OK, EN_RETARD, JAMAIS_SYNC


class ConflictResponse(BaseModel):
    id: int
    sync_history_id: Optional[int]
    carte_id: int
    conflict_type: str
    client_version: Optional[int]
    server_version: Optional[int]
    client_value: Dict[str, Any]
    server_value: Dict[str, Any]
    resolved: bool
    created_at: Optional[datetime]

    model_config = {"from_attributes": True}
