"""
Moteur de réconciliation : import en masse et synchronisation par l'API externe.

Pour chaque carte candidate :
1. Recherche d'une carte existante par (nom, prenoms, site_retrait), égalité exacte après trim
2. Trouvée → fusion champ par champ (merge_resolver) ; si au moins un champ change,
   un seul UPDATE + une entrée de journal UPDATE (avant/après limités aux colonnes
   modifiées + clé). Sinon : doublon, aucune écriture, aucune entrée de journal.
3. Absente → INSERT taggé source/batch + entrée de journal INSERT (avant = null)

Tout le lot s'exécute dans UNE transaction. Une erreur par élément est comptée avec son
index et n'interrompt pas les éléments suivants, mais il n'y a pas de sous-transaction :
si la base refuse une instruction, la session devient inutilisable, les éléments suivants
échouent à leur tour et le commit final lève → ROLLBACK de tout le lot (PersistenceError).
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.exceptions import PersistenceError, SyncValidationError
from app.models.carte import Carte
from app.schemas.carte import (
    CarteCandidate,
    CarteResponse,
    ChangesResponse,
    ReconciliationError,
    ReconciliationReport,
)
from app.schemas.journal import SYSTEM_ACTOR, JournalActor
from app.services import journal_service
from app.services.merge_resolver import FieldKind, parse_date, resolve
from app.services.table_registry import snapshot

logger = logging.getLogger(__name__)

MERGE_COLUMNS = {
    "lieu_enrolement": FieldKind.TEXT,
    "site_retrait": FieldKind.TEXT,
    "rangement": FieldKind.TEXT,
    "nom": FieldKind.TEXT,
    "prenoms": FieldKind.TEXT,
    "lieu_naissance": FieldKind.TEXT,
    "contact": FieldKind.CONTACT,
    "contact_retrait": FieldKind.CONTACT,
    "delivrance": FieldKind.STATUS,
    "date_naissance": FieldKind.DATE,
    "date_delivrance": FieldKind.DATE,
}
KEY_COLUMNS = ("nom", "prenoms", "site_retrait")
DATE_COLUMNS = {"date_naissance", "date_delivrance"}


def merge_carte(existing: Carte, candidate: CarteCandidate) -> Dict[str, Any]:
    """
    Colonnes à modifier sur `existing` pour intégrer `candidate`.
    Pur : lit les deux versions, n'écrit rien. Les dates de délivrance d'origine
    servent d'arbitre pour la colonne delivrance.
    """
    changes = {}
    for column, kind in MERGE_COLUMNS.items():
        decision = resolve(
            getattr(existing, column),
            getattr(candidate, column),
            kind,
            column=column,
            existing_date=existing.date_delivrance,
            candidate_date=candidate.date_delivrance,
        )
        if decision.apply:
            changes[column] = decision.value
            logger.debug(
                "  %s : %r → %r (%s)", column, getattr(existing, column), decision.value, decision.reason
            )
    return changes


def _clean(value: Optional[str]) -> str:
    return (value or "").strip()


def _optional(value: Optional[str]) -> Optional[str]:
    return _clean(value) or None


def _candidate_date(candidate: CarteCandidate, column: str):
    raw = getattr(candidate, column)
    if not _clean(raw):
        return None
    parsed = parse_date(raw)
    if parsed is None:
        raise SyncValidationError(f"{column} invalide : {raw}")
    return parsed


def find_existing(db: Session, nom: str, prenoms: str, site_retrait: str) -> Optional[Carte]:
    return db.execute(
        select(Carte).where(
            Carte.nom == nom,
            Carte.prenoms == prenoms,
            func.coalesce(Carte.site_retrait, "") == site_retrait,
        ).order_by(Carte.id)
    ).scalars().first()


def _update_existing(
    db: Session,
    carte: Carte,
    changes: Dict[str, Any],
    actor: JournalActor,
    batch_id: Optional[str],
) -> None:
    columns = list(KEY_COLUMNS) + [c for c in changes if c not in KEY_COLUMNS]
    before = snapshot(carte, columns)

    now = datetime.now()
    for column, value in changes.items():
        setattr(carte, column, value)
    carte.date_import = now
    carte.version = Carte.version + 1
    carte.sync_timestamp = now
    db.flush()

    after = dict(before)
    after.update(changes)
    journal_service.record_action(
        db, actor, "UPDATE", "cartes", carte.id,
        before=before,
        after=after,
        details=f"Fusion de la carte {carte.id} : {', '.join(sorted(changes))}",
        batch_id=batch_id,
    )


def _insert_new(
    db: Session,
    candidate: CarteCandidate,
    source: str,
    batch_id: Optional[str],
    actor: JournalActor,
) -> None:
    now = datetime.now()
    carte = Carte(
        lieu_enrolement=_optional(candidate.lieu_enrolement),
        site_retrait=_optional(candidate.site_retrait),
        rangement=_optional(candidate.rangement),
        nom=_clean(candidate.nom),
        prenoms=_clean(candidate.prenoms),
        date_naissance=_candidate_date(candidate, "date_naissance"),
        lieu_naissance=_optional(candidate.lieu_naissance),
        contact=_optional(candidate.contact),
        delivrance=_optional(candidate.delivrance),
        contact_retrait=_optional(candidate.contact_retrait),
        date_delivrance=_candidate_date(candidate, "date_delivrance"),
        source_import=source,
        import_batch_id=batch_id,
        version=1,
        sync_timestamp=now,
        date_import=now,
    )
    db.add(carte)
    db.flush()

    journal_service.record_action(
        db, actor, "INSERT", "cartes", carte.id,
        before=None,
        after=snapshot(carte),
        details=f"Création de la carte {carte.nom} {carte.prenoms} ({source})",
        batch_id=batch_id,
    )


def reconcile_one(
    db: Session,
    candidate: CarteCandidate,
    source: str,
    batch_id: Optional[str],
    actor: JournalActor,
) -> str:
    """Traite un candidat. Retourne "imported", "updated" ou "duplicate"."""
    nom, prenoms = _clean(candidate.nom), _clean(candidate.prenoms)
    if not nom or not prenoms:
        raise SyncValidationError("NOM et PRENOMS obligatoires")

    existing = find_existing(db, nom, prenoms, _clean(candidate.site_retrait))
    if existing is None:
        _insert_new(db, candidate, source, batch_id, actor)
        return "imported"

    changes = merge_carte(existing, candidate)
    if not changes:
        return "duplicate"

    _update_existing(db, existing, changes, actor, batch_id)
    return "updated"


def reconcile_batch(
    db: Session,
    candidates: List[CarteCandidate],
    source: str = "api_externe",
    batch_id: Optional[str] = None,
    actor: JournalActor = SYSTEM_ACTOR,
) -> ReconciliationReport:
    """
    Réconcilie un lot de cartes candidates dans une seule transaction, puis commit.
    Lève PersistenceError si le commit final échoue (tout le lot est annulé).
    """
    counts = {"imported": 0, "updated": 0, "duplicate": 0}
    error_details: List[ReconciliationError] = []

    for index, candidate in enumerate(candidates):
        try:
            outcome = reconcile_one(db, candidate, source, batch_id, actor)
        except (ValueError, SQLAlchemyError) as exc:
            error_details.append(ReconciliationError(index=index, message=str(exc)))
            logger.warning("Enregistrement %d rejeté : %s", index, exc)
            continue
        counts[outcome] += 1

    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Réconciliation annulée (%s, lot %s) : %s", source, batch_id, exc)
        raise PersistenceError(f"Échec de la réconciliation : {exc}") from exc

    logger.info(
        "Réconciliation %s (lot %s) : %d reçues, %d nouvelles, %d mises à jour, %d identiques, %d erreurs",
        source, batch_id or "N/A", len(candidates),
        counts["imported"], counts["updated"], counts["duplicate"], len(error_details),
    )

    return ReconciliationReport(
        total=len(candidates),
        imported=counts["imported"],
        updated=counts["updated"],
        duplicates=counts["duplicate"],
        errors=len(error_details),
        error_details=error_details,
        batch_id=batch_id,
        source=source,
    )


def list_changes(db: Session, since: Optional[datetime] = None, limit: Optional[int] = None) -> ChangesResponse:
    """
    Cartes importées ou fusionnées après `since` (défaut : dernières 24 h),
    tri croissant sur date_import pour que l'appelant puisse reprendre au dernier horodatage.
    """
    since = since or datetime.now() - timedelta(hours=24)
    limit = min(limit or settings.EXTERNAL_CHANGES_MAX_RESULTS, settings.EXTERNAL_CHANGES_MAX_RESULTS)

    cartes = db.execute(
        select(Carte)
        .where(Carte.date_import > since)
        .order_by(Carte.date_import.asc(), Carte.id.asc())
        .limit(limit)
    ).scalars().all()

    return ChangesResponse(
        data=[CarteResponse.model_validate(c) for c in cartes],
        total=len(cartes),
        limit=limit,
        has_more=len(cartes) == limit,
        derniere_modification=cartes[-1].date_import if cartes else since,
        since=since,
    )
