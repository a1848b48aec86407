"""
Registre des tables journalisables et conversion des snapshots JSON.

Le journal stocke des snapshots "avant" / "après" en JSON. Pour annuler une action,
on ne construit jamais d'identifiant SQL à partir d'une chaîne : la table est résolue
via ce registre vers un modèle ORM, et chaque colonne du snapshot est validée contre
la liste des colonnes modifiables avant d'être reconvertie dans son type Python.

Valeurs admises dans un snapshot : texte, nombre, date (ISO), null.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Optional, Type

from sqlalchemy import inspect

from app.exceptions import UndoNotSupportedError
from app.models.carte import Carte

Snapshot = Dict[str, Any]


@dataclass(frozen=True)
class TableSchema:
    name: str
    model: Type
    primary_key: str
    mutable_columns: FrozenSet[str]
    excluded_columns: FrozenSet[str] = field(default_factory=frozenset)
    versioned: bool = False  # version / sync_timestamp gérés par le serveur

    def column(self, name: str):
        return inspect(self.model).columns[name]

    def restorable(self, snapshot: Optional[Snapshot]) -> Snapshot:
        """Colonnes du snapshot autorisées à la restauration, converties en types Python."""
        if not snapshot:
            return {}
        restored = {}
        for name, raw in snapshot.items():
            if name in self.excluded_columns or name not in self.mutable_columns:
                continue
            restored[name] = from_json_value(self.column(name).type, raw)
        return restored


CARTE_SCHEMA = TableSchema(
    name="cartes",
    model=Carte,
    primary_key="id",
    mutable_columns=frozenset({
        "lieu_enrolement", "site_retrait", "rangement", "nom", "prenoms",
        "date_naissance", "lieu_naissance", "contact", "delivrance",
        "contact_retrait", "date_delivrance", "coordination_id",
        "site_proprietaire_id", "local_id", "source_import", "import_batch_id",
    }),
    excluded_columns=frozenset({"id", "hash_doublon", "version", "sync_timestamp"}),
    versioned=True,
)

_REGISTRY: Dict[str, TableSchema] = {CARTE_SCHEMA.name: CARTE_SCHEMA}


def get_schema(table_name: str) -> TableSchema:
    schema = _REGISTRY.get(table_name)
    if schema is None:
        raise UndoNotSupportedError(f"Table non annulable : {table_name}")
    return schema


def is_registered(table_name: str) -> bool:
    return table_name in _REGISTRY


# ---------------------------------------------------------------------------
# Conversion des valeurs
# ---------------------------------------------------------------------------

def to_json_value(value: Any) -> Any:
    """Valeur Python → valeur JSON (texte, nombre, date ISO, null)."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return str(value)


def from_json_value(column_type, raw: Any) -> Any:
    """Valeur JSON → type Python attendu par la colonne."""
    if raw is None:
        return None
    try:
        python_type = column_type.python_type
    except NotImplementedError:
        return raw
    if python_type is datetime:
        return raw if isinstance(raw, datetime) else datetime.fromisoformat(str(raw))
    if python_type is date:
        if isinstance(raw, datetime):
            return raw.date()
        return raw if isinstance(raw, date) else date.fromisoformat(str(raw)[:10])
    if python_type is int and not isinstance(raw, bool):
        return int(raw)
    if python_type is str:
        return str(raw)
    return raw


def snapshot(instance, columns=None) -> Snapshot:
    """Snapshot JSON d'une ligne ORM, restreint à `columns` si fourni."""
    mapper = inspect(type(instance))
    names = columns if columns is not None else [c.key for c in mapper.column_attrs]
    return {name: to_json_value(getattr(instance, name)) for name in names}


def serialize(data: Optional[Snapshot]) -> Optional[Snapshot]:
    if data is None:
        return None
    return {key: to_json_value(value) for key, value in data.items()}
