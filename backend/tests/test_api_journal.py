"""
Tests d'intégration API pour le journal d'activité et les annulations.
Endpoints : /api/journal, /{id}, /annulables, /{id}/annulable, /imports, /imports/{batch_id}, /stats,
/undo/{id}, /annuler-import, /nettoyer
"""

from datetime import datetime
from unittest.mock import patch

from app.exceptions import (
    AlreadyCancelledError,
    JournalValidationError,
    NotFoundError,
    PersistenceError,
    SyncValidationError,
    UndoError,
    UndoNotSupportedError,
)
from app.schemas.journal import (
    ImportBatchDetails,
    ImportBatchUndoResult,
    JournalPage,
    JournalStats,
    PurgeResult,
    UndoCheck,
    UndoResult,
)
from app.security import create_user_token


# ============================================================
# Authentification
# ============================================================

def test_journal_sans_token(client):
    assert client.get("/api/journal").status_code == 401


def test_journal_role_insuffisant(client):
    token = create_user_token(7, "agent", "Opérateur")
    response = client.get("/api/journal", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 403


def test_journal_token_administrateur(client):
    token = create_user_token(1, "admin", "Administrateur")
    with patch("app.routers.journal.journal_service.list_entries") as mock:
        mock.return_value = JournalPage(data=[], total=0, page=1, limit=50, total_pages=0)
        response = client.get("/api/journal", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200


# ============================================================
# Consultation
# ============================================================

def test_list_journal_filtres(admin_client):
    with patch("app.routers.journal.journal_service.list_entries") as mock:
        mock.return_value = JournalPage(data=[], total=0, page=2, limit=10, total_pages=0)
        response = admin_client.get("/api/journal?page=2&limit=10&action_type=UPDATE&annulee=false")

    assert response.status_code == 200
    args = mock.call_args.args
    assert args[1:5] == (2, 10, None, "UPDATE")
    assert args[9] is False


def test_get_entry_inexistante(admin_client):
    with patch("app.routers.journal.journal_service.get_entry", side_effect=NotFoundError("introuvable")):
        response = admin_client.get("/api/journal/999")
    assert response.status_code == 404


def test_check_annulable(admin_client):
    with patch("app.routers.journal.journal_service.check_undoable") as mock:
        mock.return_value = UndoCheck(journal_id=3, peut_annuler=True, heures_ecoulees=2)
        response = admin_client.get("/api/journal/3/annulable")
    assert response.status_code == 200
    assert response.json()["peut_annuler"] is True


def test_list_annulables_et_imports(admin_client):
    with patch("app.routers.journal.journal_service.list_undoable", return_value=[]), \
         patch("app.routers.journal.journal_service.list_import_batches", return_value=[]):
        assert admin_client.get("/api/journal/annulables").status_code == 200
        assert admin_client.get("/api/journal/imports").status_code == 200


# ============================================================
# POST /api/journal/undo/{id}
# ============================================================

def test_undo_succes(admin_client, admin):
    with patch("app.routers.journal.journal_service.undo_action") as mock:
        mock.return_value = UndoResult(
            journal_id=3, action_type="DELETE", table_name="cartes",
            record_id="12", restored_record_id="40", annulation_id=9,
        )
        response = admin_client.post("/api/journal/undo/3")

    assert response.status_code == 200
    assert response.json()["restored_record_id"] == "40"
    assert mock.call_args.args[1:] == (3, admin)


def test_undo_deja_annulee(admin_client):
    with patch("app.routers.journal.journal_service.undo_action", side_effect=AlreadyCancelledError("déjà")):
        response = admin_client.post("/api/journal/undo/3")
    assert response.status_code == 409


def test_undo_non_supporte(admin_client):
    with patch("app.routers.journal.journal_service.undo_action", side_effect=UndoNotSupportedError("non")):
        assert admin_client.post("/api/journal/undo/3").status_code == 400
    with patch("app.routers.journal.journal_service.undo_action", side_effect=UndoError("snapshot vide")):
        assert admin_client.post("/api/journal/undo/3").status_code == 400


def test_undo_entree_inexistante(admin_client):
    with patch("app.routers.journal.journal_service.undo_action", side_effect=NotFoundError("introuvable")):
        assert admin_client.post("/api/journal/undo/3").status_code == 404


def test_undo_erreur_base(admin_client):
    with patch("app.routers.journal.journal_service.undo_action", side_effect=PersistenceError("commit")):
        assert admin_client.post("/api/journal/undo/3").status_code == 500


# ============================================================
# POST /api/journal/annuler-import
# ============================================================

def test_annuler_import(admin_client):
    with patch("app.routers.journal.journal_service.undo_import_batch") as mock:
        mock.return_value = ImportBatchUndoResult(import_batch_id="lot-1", deleted_count=12, journal_id=4)
        response = admin_client.post("/api/journal/annuler-import", json={"importBatchID": "lot-1"})

    assert response.status_code == 200
    assert response.json()["deleted_count"] == 12
    assert mock.call_args.args[1] == "lot-1"


def test_annuler_import_sans_id(admin_client):
    response = admin_client.post("/api/journal/annuler-import", json={})
    assert response.status_code == 422


def test_annuler_import_id_blanc(admin_client):
    with patch("app.routers.journal.journal_service.undo_import_batch", side_effect=SyncValidationError("requis")):
        response = admin_client.post("/api/journal/annuler-import", json={"importBatchID": " "})
    assert response.status_code == 400


# ============================================================
# GET /api/journal/imports/{batch_id} et /stats
# ============================================================

def test_detail_lot_import(admin_client):
    with patch("app.routers.journal.journal_service.get_import_details") as mock:
        mock.return_value = ImportBatchDetails(import_batch_id="lot-1", cartes=[], entries=[])
        response = admin_client.get("/api/journal/imports/lot-1")

    assert response.status_code == 200
    assert response.json()["import_batch_id"] == "lot-1"
    assert mock.call_args.args[1] == "lot-1"


def test_detail_lot_import_inconnu(admin_client):
    with patch("app.routers.journal.journal_service.get_import_details", side_effect=NotFoundError("introuvable")):
        assert admin_client.get("/api/journal/imports/lot-x").status_code == 404


def test_stats(admin_client):
    with patch("app.routers.journal.journal_service.get_stats") as mock:
        mock.return_value = JournalStats(
            total_actions=4, utilisateurs_actifs=2, types_actions=2,
            premiere_action=None, derniere_action=None,
            actions_24h=4, actions_7j=4, actions_annulees=0,
            top_utilisateurs=[], top_actions=[],
        )
        response = admin_client.get("/api/journal/stats")

    assert response.status_code == 200
    assert response.json()["total_actions"] == 4


def test_stats_sans_token(client):
    assert client.get("/api/journal/stats").status_code == 401


# ============================================================
# POST /api/journal/nettoyer
# ============================================================

def test_nettoyer_avec_date(admin_client, admin):
    limit_date = datetime(2024, 1, 1)
    with patch("app.routers.journal.journal_service.clean_journal") as mock:
        mock.return_value = PurgeResult(deleted_count=7, date_limite=limit_date)
        response = admin_client.post("/api/journal/nettoyer", json={"avantDate": "2024-01-01T00:00:00"})

    assert response.status_code == 200
    assert response.json()["deleted_count"] == 7
    assert mock.call_args.args[1:] == (admin, limit_date)


def test_nettoyer_sans_corps(admin_client, admin):
    with patch("app.routers.journal.journal_service.clean_journal") as mock:
        mock.return_value = PurgeResult(deleted_count=0, date_limite=datetime(2024, 1, 1))
        response = admin_client.post("/api/journal/nettoyer")

    assert response.status_code == 200
    assert mock.call_args.args[1:] == (admin, None)


def test_nettoyer_date_future(admin_client):
    with patch("app.routers.journal.journal_service.clean_journal", side_effect=JournalValidationError("futur")):
        response = admin_client.post("/api/journal/nettoyer", json={"avantDate": "2999-01-01T00:00:00"})
    assert response.status_code == 400


def test_nettoyer_erreur_base(admin_client):
    with patch("app.routers.journal.journal_service.clean_journal", side_effect=PersistenceError("commit")):
        assert admin_client.post("/api/journal/nettoyer", json={}).status_code == 500
