"""
Tests du journal d'activité et des annulations sur une base SQLite en mémoire.
Couverture : enregistrement, annulation INSERT / UPDATE / DELETE, double annulation,
types et tables non annulables, annulation d'un lot d'import, consultation, statistiques,
nettoyage manuel, purge.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from app.exceptions import (
    AlreadyCancelledError,
    JournalValidationError,
    NotFoundError,
    SyncValidationError,
    UndoNotSupportedError,
)
from app.models.carte import Carte
from app.models.journal import JournalEntry
from app.schemas.carte import CarteCandidate
from app.schemas.journal import JournalActor
from app.schemas.sync import Modification
from app.services import journal_service
from app.services.reconciliation import reconcile_batch
from app.services.sync_service import process_upload

SITE_ACTOR = JournalActor(name="ADJAME", role="SITE", coordination="1")


# --- Helpers ---

def make_candidate(**kwargs) -> CarteCandidate:
    data = {"nom": "KOUAME", "prenoms": "Jean", "site_retrait": "ADJAME"}
    data.update(kwargs)
    return CarteCandidate(**data)


def last_entry(db, action_type) -> JournalEntry:
    return db.execute(
        select(JournalEntry)
        .where(JournalEntry.action_type == action_type)
        .order_by(JournalEntry.id.desc())
    ).scalars().first()


def carte_count(db) -> int:
    return db.execute(select(func.count(Carte.id))).scalar()


# ============================================================
# record_action
# ============================================================

def test_record_action(db_session, admin):
    entry_id = journal_service.record_action(
        db_session, admin, "update", "cartes", 12,
        before={"delivrance": "OUI"}, after={"delivrance": "Koffi Jean"},
    )
    db_session.commit()

    entry = db_session.get(JournalEntry, entry_id)
    assert entry.action_type == "UPDATE"
    assert entry.record_id == "12"
    assert entry.nom_utilisateur == "admin"
    assert entry.utilisateur_id == 1
    assert entry.annulee is False
    assert entry.details == "UPDATE sur cartes #12"


def test_record_action_type_inconnu(db_session, admin):
    with pytest.raises(JournalValidationError):
        journal_service.record_action(db_session, admin, "TRUNCATE", "cartes", 1)


def test_record_action_table_manquante(db_session, admin):
    with pytest.raises(JournalValidationError):
        journal_service.record_action(db_session, admin, "INSERT", "", 1)


# ============================================================
# Annulation
# ============================================================

def test_annuler_insert(db_session, admin):
    reconcile_batch(db_session, [make_candidate()])
    entry = last_entry(db_session, "INSERT")

    result = journal_service.undo_action(db_session, entry.id, admin)

    assert result.action_type == "INSERT"
    assert carte_count(db_session) == 0
    db_session.refresh(entry)
    assert entry.annulee is True
    assert entry.annulee_par == 1
    assert entry.date_annulation is not None

    annulation = db_session.get(JournalEntry, result.annulation_id)
    assert annulation.action_type == "ANNULATION"
    assert annulation.record_id == str(entry.id)
    assert annulation.table_name == "journal_activite"


def test_annuler_update_restaure_les_valeurs(db_session, admin):
    """UPDATE puis annulation : les colonnes reviennent à leur valeur d'avant, la version avance."""
    reconcile_batch(db_session, [make_candidate(delivrance="OUI", contact="0102030405")])
    reconcile_batch(db_session, [make_candidate(delivrance="Koffi Jean")])
    entry = last_entry(db_session, "UPDATE")

    journal_service.undo_action(db_session, entry.id, admin)

    carte = db_session.execute(select(Carte)).scalar_one()
    db_session.refresh(carte)
    assert carte.delivrance == "OUI"
    assert carte.contact == "0102030405"
    assert carte.nom == "KOUAME"
    assert carte.version == 3


def test_annuler_delete_reinsere(db_session, sites, admin):
    site = sites["ADJAME"]
    carte = Carte(
        nom="KONE", prenoms="Awa", coordination_id=1, site_proprietaire_id="ADJAME",
        contact="+2250712345678", version=4, sync_timestamp=datetime(2024, 5, 1),
    )
    db_session.add(carte)
    db_session.commit()
    process_upload(db_session, site, [
        Modification(operation="DELETE", coordination_id=1, pg_id=carte.id),
    ])
    assert carte_count(db_session) == 0
    entry = last_entry(db_session, "DELETE")

    result = journal_service.undo_action(db_session, entry.id, admin)

    restored = db_session.get(Carte, int(result.restored_record_id))
    assert restored.nom == "KONE"
    assert restored.contact == "+2250712345678"
    assert restored.site_proprietaire_id == "ADJAME"
    assert restored.version == 1


def test_double_annulation_refusee(db_session, admin):
    reconcile_batch(db_session, [make_candidate(delivrance="OUI")])
    reconcile_batch(db_session, [make_candidate(delivrance="Koffi Jean")])
    entry = last_entry(db_session, "UPDATE")
    journal_service.undo_action(db_session, entry.id, admin)
    entries_before = db_session.execute(select(func.count(JournalEntry.id))).scalar()

    with pytest.raises(AlreadyCancelledError):
        journal_service.undo_action(db_session, entry.id, admin)

    assert db_session.execute(select(func.count(JournalEntry.id))).scalar() == entries_before
    assert db_session.execute(select(Carte.version)).scalar_one() == 3


def test_annuler_entree_inexistante(db_session, admin):
    with pytest.raises(NotFoundError):
        journal_service.undo_action(db_session, 999, admin)


def test_annuler_insert_ligne_deja_supprimee(db_session, admin):
    """Ligne cible disparue : NotFoundError et l'entrée reste non annulée."""
    reconcile_batch(db_session, [make_candidate()])
    entry = last_entry(db_session, "INSERT")
    db_session.delete(db_session.execute(select(Carte)).scalar_one())
    db_session.commit()

    with pytest.raises(NotFoundError):
        journal_service.undo_action(db_session, entry.id, admin)

    db_session.refresh(entry)
    assert entry.annulee is False


def test_annuler_type_non_annulable(db_session, admin):
    entry_id = journal_service.record_action(db_session, SITE_ACTOR, "SITE_LOGIN", "sites", "ADJAME")
    db_session.commit()
    with pytest.raises(UndoNotSupportedError):
        journal_service.undo_action(db_session, entry_id, admin)


def test_annuler_table_non_enregistree(db_session, admin):
    entry_id = journal_service.record_action(
        db_session, admin, "UPDATE", "utilisateurs", 3, before={"role": "Administrateur"},
    )
    db_session.commit()
    with pytest.raises(UndoNotSupportedError):
        journal_service.undo_action(db_session, entry_id, admin)


# ============================================================
# Annulation d'un lot d'import
# ============================================================

def test_annuler_import(db_session, admin):
    reconcile_batch(db_session, [make_candidate(prenoms="A"), make_candidate(prenoms="B")], batch_id="lot-1")
    reconcile_batch(db_session, [make_candidate(prenoms="C")], batch_id="lot-2")

    result = journal_service.undo_import_batch(db_session, "lot-1", admin)

    assert result.deleted_count == 2
    assert carte_count(db_session) == 1
    entry = db_session.get(JournalEntry, result.journal_id)
    assert entry.action_type == "ANNULATION_IMPORT"
    assert entry.nouvelles_valeurs == {"cartes_supprimees": 2}


def test_annuler_import_sans_id(db_session, admin):
    with pytest.raises(SyncValidationError):
        journal_service.undo_import_batch(db_session, "  ", admin)


def test_list_import_batches(db_session):
    reconcile_batch(db_session, [
        make_candidate(prenoms="A", site_retrait="ADJAME"),
        make_candidate(prenoms="B", site_retrait="COCODY"),
    ], batch_id="lot-1")

    batches = journal_service.list_import_batches(db_session)

    assert len(batches) == 1
    assert batches[0].import_batch_id == "lot-1"
    assert batches[0].total_cartes == 2
    assert batches[0].sites == 2


# ============================================================
# Consultation
# ============================================================

def test_list_entries_filtres_et_pagination(db_session, admin):
    for i in range(3):
        journal_service.record_action(db_session, admin, "INSERT", "cartes", i)
    journal_service.record_action(db_session, SITE_ACTOR, "SITE_LOGIN", "sites", "ADJAME")
    db_session.commit()

    page = journal_service.list_entries(db_session, page=2, limit=2, action_type="insert")
    assert page.total == 3
    assert page.total_pages == 2
    assert len(page.data) == 1

    sites_only = journal_service.list_entries(db_session, table_name="sites")
    assert [e.nom_utilisateur for e in sites_only.data] == ["ADJAME"]

    by_user = journal_service.list_entries(db_session, utilisateur_id=1)
    assert by_user.total == 3


def test_get_entry_inexistante(db_session):
    with pytest.raises(NotFoundError):
        journal_service.get_entry(db_session, 42)


def test_list_undoable(db_session, admin):
    journal_service.record_action(db_session, admin, "INSERT", "cartes", 1)
    journal_service.record_action(db_session, SITE_ACTOR, "SYNC_UPLOAD", "sync_history", 1)
    db_session.commit()

    entries = journal_service.list_undoable(db_session)

    assert [e.action_type for e in entries] == ["INSERT"]


def test_check_undoable(db_session, admin):
    entry_id = journal_service.record_action(db_session, admin, "UPDATE", "cartes", 1)
    login_id = journal_service.record_action(db_session, SITE_ACTOR, "SITE_LOGIN", "sites", "ADJAME")
    db_session.commit()
    now = db_session.get(JournalEntry, entry_id).date_action

    assert journal_service.check_undoable(db_session, entry_id, now=now + timedelta(hours=5)).peut_annuler
    late = journal_service.check_undoable(db_session, entry_id, now=now + timedelta(days=31))
    assert not late.peut_annuler
    assert late.heures_ecoulees == 31 * 24
    assert not journal_service.check_undoable(db_session, login_id).peut_annuler
    assert journal_service.check_undoable(db_session, 999).raison == "Action non trouvée"


def test_purge_journal(db_session, admin):
    old_id = journal_service.record_action(db_session, admin, "INSERT", "cartes", 1)
    journal_service.record_action(db_session, admin, "INSERT", "cartes", 2)
    db_session.get(JournalEntry, old_id).date_action = datetime.now() - timedelta(days=100)
    db_session.commit()

    deleted = journal_service.purge_journal(db_session)

    assert deleted == 1
    assert db_session.execute(select(func.count(JournalEntry.id))).scalar() == 1


# ============================================================
# Détail d'un lot, statistiques, nettoyage manuel
# ============================================================

def test_get_import_details(db_session):
    reconcile_batch(db_session, [make_candidate(prenoms="A"), make_candidate(prenoms="B")], batch_id="lot-1")
    reconcile_batch(db_session, [make_candidate(prenoms="C")], batch_id="lot-2")

    details = journal_service.get_import_details(db_session, "lot-1")

    assert details.import_batch_id == "lot-1"
    assert [c.prenoms for c in details.cartes] == ["A", "B"]
    assert {e.action_type for e in details.entries} == {"INSERT"}
    assert len(details.entries) == 2


def test_get_import_details_apres_annulation(db_session, admin):
    """Les cartes ont disparu mais les entrées du lot restent consultables."""
    reconcile_batch(db_session, [make_candidate(prenoms="A")], batch_id="lot-1")
    journal_service.undo_import_batch(db_session, "lot-1", admin)

    details = journal_service.get_import_details(db_session, "lot-1")

    assert details.cartes == []
    assert details.entries[0].action_type == "ANNULATION_IMPORT"


def test_get_import_details_lot_inconnu(db_session):
    with pytest.raises(NotFoundError):
        journal_service.get_import_details(db_session, "lot-inconnu")


def test_get_stats(db_session, admin):
    for i in range(3):
        journal_service.record_action(db_session, admin, "INSERT", "cartes", i)
    journal_service.record_action(db_session, SITE_ACTOR, "SITE_LOGIN", "sites", "ADJAME")
    old_id = journal_service.record_action(db_session, SITE_ACTOR, "SYNC_UPLOAD", "sync_history", 1)
    db_session.get(JournalEntry, old_id).date_action = datetime.now() - timedelta(days=10)
    db_session.get(JournalEntry, old_id).annulee = True
    db_session.commit()

    stats = journal_service.get_stats(db_session)

    assert stats.total_actions == 5
    assert stats.utilisateurs_actifs == 2
    assert stats.types_actions == 3
    assert stats.actions_24h == 4
    assert stats.actions_7j == 4
    assert stats.actions_annulees == 1
    assert stats.top_utilisateurs[0].nom_utilisateur == admin.name
    assert stats.top_utilisateurs[0].total_actions == 3
    assert stats.top_actions[0].action_type == "INSERT"
    assert stats.top_actions[0].count == 3


def test_get_stats_journal_vide(db_session):
    stats = journal_service.get_stats(db_session)
    assert stats.total_actions == 0
    assert stats.premiere_action is None
    assert stats.top_actions == []


def test_clean_journal_date_limite(db_session, admin):
    old_id = journal_service.record_action(db_session, admin, "INSERT", "cartes", 1)
    journal_service.record_action(db_session, admin, "INSERT", "cartes", 2)
    db_session.get(JournalEntry, old_id).date_action = datetime.now() - timedelta(days=10)
    db_session.commit()

    limit_date = datetime.now() - timedelta(days=5)
    result = journal_service.clean_journal(db_session, admin, limit_date)

    assert result.deleted_count == 1
    assert result.date_limite == limit_date
    assert db_session.execute(select(func.count(JournalEntry.id))).scalar() == 1


def test_clean_journal_retention_par_defaut(db_session, admin):
    journal_service.record_action(db_session, admin, "INSERT", "cartes", 1)
    db_session.commit()

    result = journal_service.clean_journal(db_session, admin)

    assert result.deleted_count == 0
    assert result.date_limite < datetime.now() - timedelta(days=89)


def test_clean_journal_date_future_refusee(db_session, admin):
    with pytest.raises(JournalValidationError):
        journal_service.clean_journal(db_session, admin, datetime.now() + timedelta(days=1))
