"""
Journal d'activité réversible.

Chaque mutation (réconciliation, synchronisation de site, annulation) écrit une entrée
avec snapshots JSON "avant" / "après" dans la même transaction que la mutation.

Annulation (compensation) d'une entrée :
- INSERT → suppression de la ligne créée
- UPDATE → restauration des colonnes "avant" (hors clé primaire et colonnes exclues)
- DELETE → réinsertion depuis le snapshot "avant", avec un NOUVEL id
           (les références à l'ancien id ne sont pas réparées)

L'entrée d'origine n'est jamais modifiée, hormis le drapeau `annulee` ; une nouvelle
entrée ANNULATION la référence. L'entrée cible est verrouillée (FOR UPDATE) pour
qu'une double annulation concurrente ne puisse pas réussir deux fois.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import case, delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.exceptions import (
    AlreadyCancelledError,
    CarteSyncError,
    JournalValidationError,
    NotFoundError,
    PersistenceError,
    SyncValidationError,
    UndoError,
    UndoNotSupportedError,
)
from app.models.carte import Carte
from app.models.journal import JournalEntry
from app.schemas.carte import CarteResponse
from app.schemas.journal import (
    ActionTypeCount,
    ActorActivity,
    ImportBatchDetails,
    ImportBatchSummary,
    ImportBatchUndoResult,
    JournalActor,
    JournalEntryResponse,
    JournalPage,
    JournalStats,
    PurgeResult,
    UndoCheck,
    UndoResult,
)
from app.services.table_registry import TableSchema, get_schema, serialize

logger = logging.getLogger(__name__)

ACTION_TYPES = {
    "INSERT", "UPDATE", "DELETE",
    "ANNULATION", "ANNULATION_IMPORT",
    "SITE_LOGIN", "SYNC_UPLOAD", "IMPORT",
}
UNDOABLE_ACTION_TYPES = {"INSERT", "UPDATE", "DELETE"}
JOURNAL_TABLE = "journal_activite"


# ============================================================
# Enregistrement
# ============================================================

def record_action(
    db: Session,
    actor: JournalActor,
    action_type: str,
    table_name: str,
    record_id: Any = None,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
    details: Optional[str] = None,
    batch_id: Optional[str] = None,
) -> int:
    """
    Ajoute une entrée au journal dans la transaction courante (flush, pas de commit).
    Lève JournalValidationError si l'entrée est mal formée.
    """
    if actor is None or not actor.name:
        raise JournalValidationError("Auteur de l'action manquant.")
    action_type = (action_type or "").upper()
    if action_type not in ACTION_TYPES:
        raise JournalValidationError(f"Type d'action inconnu : {action_type!r}")
    if not table_name:
        raise JournalValidationError("Table concernée manquante.")

    entry = JournalEntry(
        utilisateur_id=actor.user_id,
        nom_utilisateur=actor.name,
        role=actor.role,
        coordination=actor.coordination,
        ip_utilisateur=actor.ip,
        date_action=datetime.now(),
        action_type=action_type,
        table_name=table_name,
        record_id=str(record_id) if record_id is not None else None,
        anciennes_valeurs=serialize(before),
        nouvelles_valeurs=serialize(after),
        details=details or f"{action_type} sur {table_name} #{record_id if record_id is not None else '?'}",
        import_batch_id=batch_id,
        annulee=False,
    )
    db.add(entry)
    db.flush()
    return entry.id


# ============================================================
# Annulation d'une entrée
# ============================================================

def _primary_key_value(schema: TableSchema, record_id: Optional[str]) -> Any:
    if record_id is None:
        raise UndoError("Identifiant de l'enregistrement absent de l'entrée du journal.")
    pk_type = schema.column(schema.primary_key).type
    try:
        return pk_type.python_type(record_id)
    except (TypeError, ValueError) as exc:
        raise UndoError(f"Identifiant invalide : {record_id}") from exc


def _undo_insert(db: Session, schema: TableSchema, entry: JournalEntry) -> None:
    instance = db.get(schema.model, _primary_key_value(schema, entry.record_id))
    if instance is None:
        raise NotFoundError(f"Enregistrement {schema.name} #{entry.record_id} introuvable.")
    db.delete(instance)
    db.flush()


def _undo_update(db: Session, schema: TableSchema, entry: JournalEntry) -> None:
    values = schema.restorable(entry.anciennes_valeurs)
    if not values:
        raise UndoError("Aucune colonne restaurable dans le snapshot \"avant\".")

    instance = db.get(schema.model, _primary_key_value(schema, entry.record_id), with_for_update=True)
    if instance is None:
        raise NotFoundError(f"Enregistrement {schema.name} #{entry.record_id} introuvable.")

    for column, value in values.items():
        setattr(instance, column, value)
    if schema.versioned:
        # La restauration est une mise à jour acceptée : la version ne recule jamais
        instance.version = schema.model.version + 1
        instance.sync_timestamp = datetime.now()
    db.flush()


def _undo_delete(db: Session, schema: TableSchema, entry: JournalEntry) -> str:
    values = schema.restorable(entry.anciennes_valeurs)
    if not values:
        raise UndoError("Aucune colonne restaurable dans le snapshot \"avant\".")

    instance = schema.model(**values)
    if schema.versioned:
        instance.version = 1
        instance.sync_timestamp = datetime.now()
    db.add(instance)
    db.flush()
    return str(getattr(instance, schema.primary_key))


def undo_action(db: Session, journal_id: int, admin: JournalActor) -> UndoResult:
    """
    Annule l'entrée `journal_id` par une écriture compensatoire, puis commit.

    Erreurs : NotFoundError (entrée ou ligne cible absente), AlreadyCancelledError,
    UndoNotSupportedError (type d'action ou table), UndoError (snapshot inutilisable).
    """
    try:
        entry = db.execute(
            select(JournalEntry).where(JournalEntry.id == journal_id).with_for_update()
        ).scalar_one_or_none()

        if entry is None:
            raise NotFoundError(f"Entrée du journal #{journal_id} introuvable.")
        if entry.annulee:
            raise AlreadyCancelledError(f"L'action #{journal_id} est déjà annulée.")
        if entry.action_type not in UNDOABLE_ACTION_TYPES:
            raise UndoNotSupportedError(f"Le type d'action {entry.action_type} ne peut pas être annulé.")

        schema = get_schema(entry.table_name)

        restored_id = None
        if entry.action_type == "INSERT":
            _undo_insert(db, schema, entry)
        elif entry.action_type == "UPDATE":
            _undo_update(db, schema, entry)
        else:
            restored_id = _undo_delete(db, schema, entry)

        entry.annulee = True
        entry.annulee_par = admin.user_id
        entry.date_annulation = datetime.now()

        annulation_id = record_action(
            db,
            admin,
            "ANNULATION",
            JOURNAL_TABLE,
            record_id=journal_id,
            before={"action_annulee_id": journal_id},
            after={
                "action_annulee": entry.action_type,
                "table": entry.table_name,
                "record_id": entry.record_id,
                "restored_record_id": restored_id,
            },
            details=f"Annulation de l'action #{journal_id} ({entry.action_type} {entry.table_name})",
        )
        db.commit()
    except CarteSyncError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Échec de l'annulation de l'action #%s : %s", journal_id, exc)
        raise PersistenceError(f"Échec de l'annulation : {exc}") from exc

    logger.info(
        "Action #%s (%s %s #%s) annulée par %s",
        journal_id, entry.action_type, entry.table_name, entry.record_id, admin.name,
    )
    return UndoResult(
        journal_id=journal_id,
        action_type=entry.action_type,
        table_name=entry.table_name,
        record_id=entry.record_id,
        restored_record_id=restored_id,
        annulation_id=annulation_id,
    )


# ============================================================
# Annulation grossière d'un lot d'import
# ============================================================

def undo_import_batch(db: Session, batch_id: str, admin: JournalActor) -> ImportBatchUndoResult:
    """
    Supprime toutes les cartes portant `batch_id` et ajoute une seule entrée de synthèse.
    Ne rejoue pas undo_action par carte : les entrées INSERT / UPDATE du lot restent telles quelles.
    """
    if not batch_id or not batch_id.strip():
        raise SyncValidationError("ID du batch requis.")
    batch_id = batch_id.strip()

    try:
        result = db.execute(delete(Carte).where(Carte.import_batch_id == batch_id))
        deleted = result.rowcount or 0
        journal_id = record_action(
            db,
            admin,
            "ANNULATION_IMPORT",
            "cartes",
            record_id=batch_id,
            after={"cartes_supprimees": deleted},
            details=f"Import {batch_id} annulé ({deleted} cartes supprimées)",
            batch_id=batch_id,
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError(f"Échec de l'annulation de l'import : {exc}") from exc

    logger.info("Import %s annulé par %s : %d cartes supprimées", batch_id, admin.name, deleted)
    return ImportBatchUndoResult(import_batch_id=batch_id, deleted_count=deleted, journal_id=journal_id)


# ============================================================
# Consultation
# ============================================================

def list_entries(
    db: Session,
    page: int = 1,
    limit: int = 50,
    utilisateur_id: Optional[int] = None,
    action_type: Optional[str] = None,
    table_name: Optional[str] = None,
    date_debut: Optional[datetime] = None,
    date_fin: Optional[datetime] = None,
    coordination: Optional[str] = None,
    annulee: Optional[bool] = None,
) -> JournalPage:
    """Liste paginée du journal, plus récent d'abord."""
    conditions = []
    if utilisateur_id is not None:
        conditions.append(JournalEntry.utilisateur_id == utilisateur_id)
    if action_type:
        conditions.append(JournalEntry.action_type == action_type.upper())
    if table_name:
        conditions.append(JournalEntry.table_name == table_name)
    if date_debut:
        conditions.append(JournalEntry.date_action >= date_debut)
    if date_fin:
        conditions.append(JournalEntry.date_action <= date_fin)
    if coordination:
        conditions.append(JournalEntry.coordination == coordination)
    if annulee is not None:
        conditions.append(JournalEntry.annulee == annulee)

    total = db.execute(
        select(func.count()).select_from(JournalEntry).where(*conditions)
    ).scalar() or 0

    entries = db.execute(
        select(JournalEntry)
        .where(*conditions)
        .order_by(JournalEntry.date_action.desc(), JournalEntry.id.desc())
        .limit(limit)
        .offset((page - 1) * limit)
    ).scalars().all()

    return JournalPage(
        data=[JournalEntryResponse.model_validate(e) for e in entries],
        total=total,
        page=page,
        limit=limit,
        total_pages=math.ceil(total / limit) if limit else 0,
    )


def get_entry(db: Session, journal_id: int) -> JournalEntryResponse:
    entry = db.get(JournalEntry, journal_id)
    if entry is None:
        raise NotFoundError(f"Entrée du journal #{journal_id} introuvable.")
    return JournalEntryResponse.model_validate(entry)


def list_undoable(db: Session, limit: int = 500) -> List[JournalEntryResponse]:
    """Entrées non annulées dont le type est annulable."""
    entries = db.execute(
        select(JournalEntry)
        .where(
            JournalEntry.annulee.is_(False),
            JournalEntry.action_type.in_(UNDOABLE_ACTION_TYPES),
        )
        .order_by(JournalEntry.date_action.desc(), JournalEntry.id.desc())
        .limit(limit)
    ).scalars().all()
    return [JournalEntryResponse.model_validate(e) for e in entries]


def check_undoable(db: Session, journal_id: int, now: Optional[datetime] = None) -> UndoCheck:
    """
    Indique si une entrée peut être annulée (informatif : undo_action n'applique pas
    la fenêtre de JOURNAL_UNDO_WINDOW_DAYS, seul l'écran d'administration l'utilise).
    """
    entry = db.get(JournalEntry, journal_id)
    if entry is None:
        return UndoCheck(journal_id=journal_id, peut_annuler=False, raison="Action non trouvée")

    now = now or datetime.now()
    hours = int((now - entry.date_action).total_seconds() // 3600) if entry.date_action else None

    if entry.annulee:
        return UndoCheck(journal_id=journal_id, peut_annuler=False, raison="Action déjà annulée")
    if entry.action_type not in UNDOABLE_ACTION_TYPES:
        return UndoCheck(
            journal_id=journal_id, peut_annuler=False,
            raison="Ce type d'action ne peut pas être annulé",
        )
    if hours is not None and hours > settings.JOURNAL_UNDO_WINDOW_DAYS * 24:
        return UndoCheck(
            journal_id=journal_id, peut_annuler=False, heures_ecoulees=hours,
            raison=f"Délai d'annulation dépassé (plus de {settings.JOURNAL_UNDO_WINDOW_DAYS} jours)",
        )
    return UndoCheck(journal_id=journal_id, peut_annuler=True, heures_ecoulees=hours)


def list_import_batches(db: Session, limit: int = 100) -> List[ImportBatchSummary]:
    """Lots d'import encore présents dans la table cartes."""
    rows = db.execute(
        select(
            Carte.import_batch_id,
            func.count(Carte.id),
            func.min(Carte.date_import),
            func.max(Carte.date_import),
            func.count(Carte.site_retrait.distinct()),
        )
        .where(Carte.import_batch_id.is_not(None))
        .group_by(Carte.import_batch_id)
        .order_by(func.min(Carte.date_import).desc())
        .limit(limit)
    ).all()
    return [
        ImportBatchSummary(
            import_batch_id=row[0],
            total_cartes=row[1],
            date_debut=row[2],
            date_fin=row[3],
            sites=row[4],
        )
        for row in rows
    ]


def purge_journal(db: Session, older_than: Optional[datetime] = None) -> int:
    """Rétention : supprime les entrées antérieures à `older_than` (défaut JOURNAL_RETENTION_DAYS)."""
    limit_date = older_than or datetime.now() - timedelta(days=settings.JOURNAL_RETENTION_DAYS)
    result = db.execute(delete(JournalEntry).where(JournalEntry.date_action < limit_date))
    db.commit()
    deleted = result.rowcount or 0
    logger.info("Purge du journal : %d entrées antérieures au %s supprimées", deleted, limit_date)
    return deleted


def get_import_details(db: Session, batch_id: str) -> ImportBatchDetails:
    """Cartes encore présentes et entrées du journal d'un lot, plus récentes d'abord."""
    cartes = db.execute(
        select(Carte).where(Carte.import_batch_id == batch_id).order_by(Carte.id)
    ).scalars().all()
    entries = db.execute(
        select(JournalEntry)
        .where(JournalEntry.import_batch_id == batch_id)
        .order_by(JournalEntry.date_action.desc(), JournalEntry.id.desc())
    ).scalars().all()
    if not cartes and not entries:
        raise NotFoundError(f"Lot d'import {batch_id} introuvable.")
    return ImportBatchDetails(
        import_batch_id=batch_id,
        cartes=[CarteResponse.model_validate(c) for c in cartes],
        entries=[JournalEntryResponse.model_validate(e) for e in entries],
    )


def get_stats(db: Session, now: Optional[datetime] = None, top: int = 5) -> JournalStats:
    """Compteurs globaux du journal, auteurs les plus actifs et types d'action les plus fréquents."""
    now = now or datetime.now()
    totals = db.execute(
        select(
            func.count(JournalEntry.id),
            func.count(JournalEntry.nom_utilisateur.distinct()),
            func.count(JournalEntry.action_type.distinct()),
            func.min(JournalEntry.date_action),
            func.max(JournalEntry.date_action),
            func.count(case((JournalEntry.date_action > now - timedelta(hours=24), 1))),
            func.count(case((JournalEntry.date_action > now - timedelta(days=7), 1))),
            func.count(case((JournalEntry.annulee.is_(True), 1))),
        )
    ).one()

    actor_total = func.count(JournalEntry.id).label("total")
    actors = db.execute(
        select(JournalEntry.utilisateur_id, JournalEntry.nom_utilisateur, actor_total)
        .group_by(JournalEntry.utilisateur_id, JournalEntry.nom_utilisateur)
        .order_by(actor_total.desc(), JournalEntry.nom_utilisateur)
        .limit(top)
    ).all()

    action_total = func.count(JournalEntry.id).label("total")
    actions = db.execute(
        select(JournalEntry.action_type, action_total)
        .group_by(JournalEntry.action_type)
        .order_by(action_total.desc(), JournalEntry.action_type)
        .limit(top)
    ).all()

    return JournalStats(
        total_actions=totals[0],
        utilisateurs_actifs=totals[1],
        types_actions=totals[2],
        premiere_action=totals[3],
        derniere_action=totals[4],
        actions_24h=totals[5],
        actions_7j=totals[6],
        actions_annulees=totals[7],
        top_utilisateurs=[
            ActorActivity(utilisateur_id=row[0], nom_utilisateur=row[1], total_actions=row[2])
            for row in actors
        ],
        top_actions=[ActionTypeCount(action_type=row[0], count=row[1]) for row in actions],
    )


def clean_journal(db: Session, admin: JournalActor, before: Optional[datetime] = None) -> PurgeResult:
    """
    Purge déclenchée par un administrateur (même règle que la tâche planifiée).
    Une date limite dans le futur est refusée : elle viderait le journal entier.
    """
    now = datetime.now()
    if before is not None and before.tzinfo is not None:
        before = before.astimezone().replace(tzinfo=None)
    if before is not None and before > now:
        raise JournalValidationError("La date limite de nettoyage ne peut pas être dans le futur.")
    limit_date = before or now - timedelta(days=settings.JOURNAL_RETENTION_DAYS)

    try:
        deleted = purge_journal(db, older_than=limit_date)
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError(f"Échec du nettoyage du journal : {exc}") from exc

    logger.info("Nettoyage du journal demandé par %s : %d entrées supprimées", admin.name, deleted)
    return PurgeResult(deleted_count=deleted, date_limite=limit_date)
