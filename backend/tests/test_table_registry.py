"""
Tests unitaires pour le registre des tables journalisables et les snapshots typés.
"""

from datetime import date, datetime

import pytest

from app.exceptions import UndoNotSupportedError
from app.models.carte import Carte
from app.services.table_registry import (
    CARTE_SCHEMA,
    get_schema,
    is_registered,
    serialize,
    snapshot,
    to_json_value,
)


def test_get_schema_cartes():
    assert get_schema("cartes") is CARTE_SCHEMA
    assert is_registered("cartes")


def test_get_schema_table_inconnue():
    """Une table hors registre n'est jamais annulable (aucun SQL construit depuis le nom)."""
    assert not is_registered("utilisateurs; DROP TABLE cartes")
    with pytest.raises(UndoNotSupportedError):
        get_schema("utilisateurs")


def test_to_json_value():
    assert to_json_value(date(2024, 3, 15)) == "2024-03-15"
    assert to_json_value(datetime(2024, 3, 15, 10, 30)) == "2024-03-15T10:30:00"
    assert to_json_value(None) is None
    assert to_json_value(3) == 3
    assert to_json_value("texte") == "texte"


def test_snapshot_colonnes_restreintes():
    carte = Carte(id=7, nom="KOUAME", prenoms="Jean", date_naissance=date(1990, 1, 1), version=2)
    snap = snapshot(carte, ["nom", "date_naissance", "version"])
    assert snap == {"nom": "KOUAME", "date_naissance": "1990-01-01", "version": 2}


def test_snapshot_complet_contient_toutes_les_colonnes():
    snap = snapshot(Carte(id=7, nom="KOUAME", prenoms="Jean"))
    assert snap["id"] == 7
    assert "site_proprietaire_id" in snap
    assert "hash_doublon" in snap


def test_restorable_filtre_et_convertit():
    """Colonnes exclues et inconnues ignorées ; dates ISO reconverties en date."""
    restored = CARTE_SCHEMA.restorable({
        "id": 99,
        "version": 12,
        "sync_timestamp": "2024-01-01T00:00:00",
        "hash_doublon": "abc",
        "colonne_inconnue": "x",
        "nom": "KOUAME",
        "date_delivrance": "2024-03-15",
        "coordination_id": 1,
    })
    assert restored == {"nom": "KOUAME", "date_delivrance": date(2024, 3, 15), "coordination_id": 1}


def test_restorable_snapshot_vide():
    assert CARTE_SCHEMA.restorable(None) == {}
    assert CARTE_SCHEMA.restorable({}) == {}


def test_serialize():
    assert serialize(None) is None
    assert serialize({"d": date(2024, 1, 2), "n": None}) == {"d": "2024-01-02", "n": None}
