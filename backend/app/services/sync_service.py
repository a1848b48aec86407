"""
Service de synchronisation des sites (agents offline ↔ serveur central).

Cycle d'une session : authentification → upload → download → confirmation.

Règles :
- Un site n'écrit que les cartes qu'il possède : chaque UPDATE / DELETE filtre sur
  site_proprietaire_id. Une carte d'un autre site est traitée comme introuvable.
- UPDATE : concurrence optimiste. Version client < version serveur → conflit enregistré
  (payload client + snapshot serveur), aucune écriture, statut "conflict".
  Sinon application des champs et version = version + 1.
- DELETE : aucune vérification de version (la dernière suppression gagne).
- Les modifications d'un upload sont traitées séquentiellement dans une seule transaction ;
  une erreur par élément est rapportée sans interrompre les suivantes.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.exceptions import (
    AuthError,
    CarteSyncError,
    NotFoundError,
    OwnershipError,
    PersistenceError,
    SyncValidationError,
)
from app.models.carte import Carte
from app.models.site import Site
from app.models.sync import SyncConflict, SyncHistory
from app.schemas.journal import JournalActor
from app.schemas.sync import (
    ConfirmResponse,
    ConflictResponse,
    DownloadRecord,
    LoginResponse,
    Modification,
    ProcessedItem,
    SiteInfo,
    SiteStatus,
    UploadCounts,
    UploadResponse,
)
from app.security import create_site_token
from app.services import journal_service
from app.services.merge_resolver import parse_date
from app.services.table_registry import snapshot

logger = logging.getLogger(__name__)

DOWNLOAD_EPOCH = datetime(2000, 1, 1)

# Champ du payload → colonne de la carte, modifiables par un UPDATE de site
UPDATABLE_FIELDS = {
    "delivrance": "delivrance",
    "contact_retrait": "contact_retrait",
    "date_delivrance": "date_delivrance",
    "contacts": "contact",
}


@dataclass
class VersionedUpdate:
    """Résultat de update_if_version : nouvelle version, ou conflit avec le snapshot serveur."""
    applied: bool
    version: int
    before: Dict[str, Any] = field(default_factory=dict)
    after: Dict[str, Any] = field(default_factory=dict)
    server_snapshot: Optional[Dict[str, Any]] = None

    @property
    def conflict(self) -> bool:
        return not self.applied


def site_actor(site: Site) -> JournalActor:
    return JournalActor(name=site.id, role="SITE", coordination=str(site.coordination_id))


# ============================================================
# Authentification
# ============================================================

def authenticate_site(db: Session, site_id: str, api_key: str) -> Optional[Site]:
    """Retourne le site actif correspondant à (site_id, api_key), sinon None."""
    return db.execute(
        select(Site).where(
            Site.id == site_id,
            Site.api_key == api_key,
            Site.is_active.is_(True),
        )
    ).scalar_one_or_none()


def get_active_site(db: Session, site_id: str) -> Optional[Site]:
    return db.execute(
        select(Site).where(Site.id == site_id, Site.is_active.is_(True))
    ).scalar_one_or_none()


def login_site(db: Session, site_id: str, api_key: str, ip: Optional[str] = None) -> LoginResponse:
    """Authentifie le site et émet un token signé portant site_id et coordination_id."""
    site = authenticate_site(db, site_id, api_key)
    if site is None:
        logger.warning("Échec d'authentification du site %s", site_id)
        raise AuthError("Identifiants invalides ou site inactif.")

    token = create_site_token(site.id, site.coordination_id)

    journal_service.record_action(
        db, site_actor(site).model_copy(update={"ip": ip}), "SITE_LOGIN", "sites", site.id,
        details=f"Connexion du site {site.nom}",
    )
    db.commit()

    logger.info("Site %s authentifié (coordination %s)", site.id, site.coordination_id)
    return LoginResponse(
        token=token,
        site=SiteInfo(id=site.id, nom=site.nom, coordination_id=site.coordination_id),
    )


# ============================================================
# Concurrence optimiste
# ============================================================

def update_if_version(
    db: Session,
    carte_id: int,
    site_id: str,
    expected_version: int,
    changes: Dict[str, Any],
) -> VersionedUpdate:
    """
    Applique `changes` à la carte si la version connue du client n'est pas périmée.

    Lecture verrouillée (FOR UPDATE) puis écriture conditionnelle dans la même transaction :
    deux requêtes concurrentes sur la même carte sont sérialisées par le verrou de ligne.
    Lève OwnershipError si la carte n'existe pas pour ce site.
    """
    carte = db.execute(
        select(Carte)
        .where(Carte.id == carte_id, Carte.site_proprietaire_id == site_id)
        .with_for_update()
    ).scalar_one_or_none()

    if carte is None:
        raise OwnershipError(f"Carte {carte_id} introuvable ou non propriétaire")

    if expected_version < carte.version:
        return VersionedUpdate(applied=False, version=carte.version, server_snapshot=snapshot(carte))

    before = snapshot(carte, list(changes) + ["version"])
    for column, value in changes.items():
        setattr(carte, column, value)
    carte.version = Carte.version + 1
    carte.sync_timestamp = datetime.now()
    db.flush()

    after = snapshot(carte, list(changes) + ["version"])
    return VersionedUpdate(applied=True, version=carte.version, before=before, after=after)


# ============================================================
# Upload
# ============================================================

def _parse_payload_date(value: Optional[str], label: str):
    if value is None or not value.strip():
        return None
    parsed = parse_date(value)
    if parsed is None:
        raise SyncValidationError(f"{label} invalide : {value}")
    return parsed


def _handle_insert(db: Session, mod: Modification, site: Site, batch_id: str) -> ProcessedItem:
    if not (mod.nom or "").strip() or not (mod.prenoms or "").strip():
        raise SyncValidationError("nom et prenoms requis pour une insertion")

    carte = Carte(
        coordination_id=mod.coordination_id,
        site_proprietaire_id=site.id,
        nom=mod.nom.strip(),
        prenoms=mod.prenoms.strip(),
        date_naissance=_parse_payload_date(mod.date_naissance, "date_naissance"),
        lieu_naissance=mod.lieu_naissance,
        contact=mod.contacts,
        delivrance=mod.delivrance,
        contact_retrait=mod.contact_retrait,
        date_delivrance=_parse_payload_date(mod.date_delivrance, "date_delivrance"),
        version=1,
        sync_timestamp=datetime.now(),
        local_id=mod.local_id,
        source_import="sync_site",
        import_batch_id=batch_id,
    )
    db.add(carte)
    db.flush()

    journal_service.record_action(
        db, site_actor(site), "INSERT", "cartes", carte.id,
        after=snapshot(carte),
        details=f"Insertion synchronisée par le site {site.id}",
        batch_id=batch_id,
    )
    return ProcessedItem(local_id=mod.local_id, pg_id=carte.id, status="success", version=1)


def _update_changes(mod: Modification) -> Dict[str, Any]:
    changes = {}
    for payload_field, column in UPDATABLE_FIELDS.items():
        if payload_field not in mod.model_fields_set:
            continue
        value = getattr(mod, payload_field)
        if column == "date_delivrance":
            value = _parse_payload_date(value, column)
        changes[column] = value
    return changes


def _handle_update(
    db: Session,
    mod: Modification,
    site: Site,
    history: SyncHistory,
    batch_id: str,
) -> ProcessedItem:
    if mod.pg_id is None:
        raise SyncValidationError("pg_id requis pour une mise à jour")
    if mod.version is None:
        raise SyncValidationError("version requise pour une mise à jour")

    result = update_if_version(db, mod.pg_id, site.id, mod.version, _update_changes(mod))

    if result.conflict:
        db.add(SyncConflict(
            site_id=site.id,
            sync_history_id=history.id,
            carte_id=mod.pg_id,
            coordination_id=site.coordination_id,
            conflict_type="version_mismatch",
            client_version=mod.version,
            server_version=result.version,
            client_value=mod.model_dump(mode="json"),
            server_value=result.server_snapshot,
        ))
        db.flush()
        logger.warning(
            "Conflit de version — site %s, carte %s : client v%s < serveur v%s",
            site.id, mod.pg_id, mod.version, result.version,
        )
        return ProcessedItem(local_id=mod.local_id, pg_id=mod.pg_id, status="conflict", version=result.version)

    journal_service.record_action(
        db, site_actor(site), "UPDATE", "cartes", mod.pg_id,
        before=result.before,
        after=result.after,
        details=f"Mise à jour synchronisée par le site {site.id} (v{result.version})",
        batch_id=batch_id,
    )
    return ProcessedItem(local_id=mod.local_id, pg_id=mod.pg_id, status="success", version=result.version)


def _handle_delete(db: Session, mod: Modification, site: Site, batch_id: str) -> ProcessedItem:
    if mod.pg_id is None:
        raise SyncValidationError("pg_id requis pour une suppression")

    # Pas de contrôle de version : la dernière suppression gagne
    carte = db.execute(
        select(Carte)
        .where(Carte.id == mod.pg_id, Carte.site_proprietaire_id == site.id)
        .with_for_update()
    ).scalar_one_or_none()
    if carte is None:
        raise OwnershipError(f"Carte {mod.pg_id} introuvable ou non propriétaire")

    before = snapshot(carte)
    db.delete(carte)
    db.flush()

    journal_service.record_action(
        db, site_actor(site), "DELETE", "cartes", mod.pg_id,
        before=before,
        details=f"Suppression synchronisée par le site {site.id}",
        batch_id=batch_id,
    )
    return ProcessedItem(local_id=mod.local_id, pg_id=mod.pg_id, status="success")


def process_upload(
    db: Session,
    site: Site,
    modifications: List[Modification],
    last_sync: Optional[datetime] = None,
) -> UploadResponse:
    """
    Applique les modifications d'un site dans une transaction, enregistre l'historique,
    puis renvoie le flux de download calculé après le commit.
    """
    history = SyncHistory(site_id=site.id, sync_start=datetime.now(), status="in_progress")
    db.add(history)
    db.flush()
    batch_id = f"sync-{history.id}"

    uploaded = UploadCounts()
    processed: List[ProcessedItem] = []
    first_error: Optional[str] = None

    for mod in modifications:
        try:
            if mod.coordination_id != site.coordination_id:
                raise SyncValidationError(
                    f"Coordination invalide : attendu {site.coordination_id}, reçu {mod.coordination_id}"
                )

            if mod.operation == "INSERT":
                item = _handle_insert(db, mod, site, batch_id)
                uploaded.inserts += 1
            elif mod.operation == "UPDATE":
                item = _handle_update(db, mod, site, history, batch_id)
                if item.status == "conflict":
                    uploaded.conflicts += 1
                else:
                    uploaded.updates += 1
            else:
                item = _handle_delete(db, mod, site, batch_id)
                uploaded.deletes += 1
        except (CarteSyncError, ValueError, SQLAlchemyError) as exc:
            uploaded.errors += 1
            first_error = first_error or str(exc)
            logger.warning("Site %s — modification %s rejetée : %s", site.id, mod.local_id, exc)
            item = ProcessedItem(local_id=mod.local_id, pg_id=mod.pg_id, status="error", error=str(exc))
        processed.append(item)

    status = "partial" if uploaded.errors > 0 else "success"
    now = datetime.now()

    try:
        history.sync_end = now
        history.uploaded_inserts = uploaded.inserts
        history.uploaded_updates = uploaded.updates
        history.uploaded_deletes = uploaded.deletes
        history.uploaded_conflicts = uploaded.conflicts
        history.uploaded_errors = uploaded.errors
        history.status = status

        site.last_sync_at = now
        site.last_sync_status = status
        site.last_sync_error = first_error

        journal_service.record_action(
            db, site_actor(site), "SYNC_UPLOAD", "sync_history", history.id,
            after=uploaded.model_dump(),
            details=f"Site {site.id} a envoyé {len(modifications)} modifications",
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Upload du site %s annulé : %s", site.id, exc)
        raise PersistenceError(f"Échec de l'upload : {exc}") from exc

    logger.info(
        "Sync site=%s : %d reçues, %d insertions, %d mises à jour, %d suppressions, %d conflits, %d erreurs",
        site.id, len(modifications), uploaded.inserts, uploaded.updates,
        uploaded.deletes, uploaded.conflicts, uploaded.errors,
    )

    return UploadResponse(
        history_id=history.id,
        uploaded=uploaded,
        download=prepare_download(db, site, last_sync),
        processed=processed,
    )


# ============================================================
# Download
# ============================================================

def _format_date(value) -> Optional[str]:
    return value.strftime("%d/%m/%Y") if value else None


def to_download_record(carte: Carte) -> DownloadRecord:
    return DownloadRecord(
        pg_id=carte.id,
        coordination_id=carte.coordination_id,
        site_proprietaire_id=carte.site_proprietaire_id,
        nom=carte.nom,
        prenoms=carte.prenoms,
        date_naissance=_format_date(carte.date_naissance),
        lieu_naissance=carte.lieu_naissance,
        contact=carte.contact,
        delivrance=carte.delivrance,
        contact_retrait=carte.contact_retrait,
        date_delivrance=_format_date(carte.date_delivrance),
        version=carte.version,
        sync_timestamp=carte.sync_timestamp,
    )


def prepare_download(
    db: Session,
    site: Site,
    since: Optional[datetime] = None,
    limit: Optional[int] = None,
    ascending: Optional[bool] = None,
) -> List[DownloadRecord]:
    """
    Cartes des autres coordinations / sites modifiées après `since`.

    Tri par défaut : sync_timestamp DESC avec LIMIT. Sous un flux d'écritures continu,
    ce tri peut affamer les lignes plus anciennes jamais vues ; le mode ascendant
    (curseur croissant) est disponible pour comparaison.
    """
    limit = min(limit or settings.SYNC_DOWNLOAD_LIMIT, settings.SYNC_DOWNLOAD_MAX_LIMIT)
    if ascending is None:
        ascending = settings.SYNC_DOWNLOAD_ASCENDING
    order = Carte.sync_timestamp.asc() if ascending else Carte.sync_timestamp.desc()

    cartes = db.execute(
        select(Carte)
        .where(
            Carte.coordination_id != site.coordination_id,
            Carte.site_proprietaire_id != site.id,
            Carte.sync_timestamp > (since or DOWNLOAD_EPOCH),
        )
        .order_by(order, Carte.id)
        .limit(limit)
    ).scalars().all()

    return [to_download_record(c) for c in cartes]


# ============================================================
# Confirmation & statut
# ============================================================

def confirm_download(
    db: Session,
    site: Site,
    history_id: int,
    applied_ids: List[Any],
    errors: List[Any],
) -> ConfirmResponse:
    """Enregistre ce que le site a appliqué localement. Aucun renvoi des échecs."""
    history = db.execute(
        select(SyncHistory).where(SyncHistory.id == history_id, SyncHistory.site_id == site.id)
    ).scalar_one_or_none()
    if history is None:
        raise NotFoundError(f"Historique de synchronisation {history_id} introuvable.")

    history.downloaded_count = len(applied_ids or [])
    history.download_errors = len(errors or [])
    history.error_message = json.dumps(errors, default=str) if errors else None
    history.confirmed_at = datetime.now()
    db.commit()

    logger.info(
        "Site %s a confirmé l'historique %s : %d appliquées, %d erreurs",
        site.id, history_id, history.downloaded_count, history.download_errors,
    )
    return ConfirmResponse(history_id=history_id)


def classify_freshness(last_sync_at: Optional[datetime], now: Optional[datetime] = None) -> str:
    if last_sync_at is None:
        return "JAMAIS_SYNC"
    now = now or datetime.now()
    if now - last_sync_at < timedelta(hours=settings.SYNC_STALE_AFTER_HOURS):
        return "OK"
    return "EN_RETARD"


def get_site_status(db: Session, site: Site, now: Optional[datetime] = None) -> SiteStatus:
    """Compteurs du site : cartes possédées, conflits ouverts, fraîcheur de la dernière sync."""
    total = db.execute(
        select(func.count(Carte.id)).where(Carte.site_proprietaire_id == site.id)
    ).scalar() or 0
    pending = db.execute(
        select(func.count(SyncConflict.id)).where(
            SyncConflict.site_id == site.id,
            SyncConflict.resolved.is_(False),
        )
    ).scalar() or 0

    return SiteStatus(
        total_cards=total,
        pending_cards=pending,
        synced_cards=max(total - pending, 0),
        last_sync_at=site.last_sync_at,
        last_sync_status=site.last_sync_status,
        sync_status=classify_freshness(site.last_sync_at, now),
    )


def list_conflicts(db: Session, site: Site, limit: int = 100) -> List[ConflictResponse]:
    conflicts = db.execute(
        select(SyncConflict)
        .where(SyncConflict.site_id == site.id)
        .order_by(SyncConflict.id.desc())
        .limit(limit)
    ).scalars().all()
    return [ConflictResponse.model_validate(c) for c in conflicts]
