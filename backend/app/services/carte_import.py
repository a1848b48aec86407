"""
Service d'import CSV pour les cartes.
Parse et valide chaque ligne, puis confie les cartes au moteur de réconciliation
(fusion avec les cartes existantes ou insertion), sous un identifiant de lot unique
permettant d'annuler l'import d'un bloc.
"""

import csv
import io
import uuid
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from app.schemas.carte import CarteCandidate, CsvImportReport, ReconciliationError, ReconciliationReport
from app.schemas.journal import JournalActor
from app.services.reconciliation import reconcile_batch

# En-têtes historiques (insensibles à la casse) → champ de la carte
COLUMN_ALIASES = {
    "LIEU D'ENROLEMENT": "lieu_enrolement",
    "SITE DE RETRAIT": "site_retrait",
    "RANGEMENT": "rangement",
    "NOM": "nom",
    "PRENOMS": "prenoms",
    "PRENOM": "prenoms",
    "DATE DE NAISSANCE": "date_naissance",
    "LIEU NAISSANCE": "lieu_naissance",
    "LIEU DE NAISSANCE": "lieu_naissance",
    "CONTACT": "contact",
    "DELIVRANCE": "delivrance",
    "CONTACT DE RETRAIT": "contact_retrait",
    "DATE DE DELIVRANCE": "date_delivrance",
}
REQUIRED_FIELDS = {"nom", "prenoms"}


def _normalize_header(raw: str) -> str:
    """Normalise un nom de colonne : majuscules, espaces simples, apostrophe droite."""
    return " ".join(raw.replace("’", "'").strip().upper().split())


def _detect_separator(sample: str) -> str:
    """Détecte le séparateur CSV (virgule ou point-virgule)."""
    if sample.count(";") >= sample.count(","):
        return ";"
    return ","


def _empty_report(source: str, batch_id: str) -> ReconciliationReport:
    return ReconciliationReport(
        total=0, imported=0, updated=0, duplicates=0, errors=0,
        error_details=[], batch_id=batch_id, source=source,
    )


def parse_and_import_csv(
    content: bytes,
    db: Session,
    actor: JournalActor,
    batch_id: Optional[str] = None,
    source: str = "csv",
) -> CsvImportReport:
    """
    Parse le CSV et réconcilie les cartes valides.

    Règles :
    - Colonnes requises : NOM, PRENOMS
    - Ligne entièrement vide : ignorée
    - NOM ou PRENOMS manquant : ligne rejetée (numéro de ligne du fichier)
    - Les erreurs de réconciliation sont rapportées avec le numéro de ligne du fichier
    """
    batch_id = batch_id or f"import-{uuid.uuid4().hex[:12]}"
    text = content.decode("utf-8-sig")  # utf-8-sig gère le BOM Excel
    lines = text.splitlines()
    separator = _detect_separator(lines[0] if lines else "")

    reader = csv.DictReader(io.StringIO(text), delimiter=separator)

    if reader.fieldnames is None:
        return CsvImportReport(
            total_rows=0,
            rejected_rows=[ReconciliationError(index=0, message="Fichier CSV vide ou illisible")],
            reconciliation=_empty_report(source, batch_id),
        )

    field_map: Dict[str, str] = {}
    for header in reader.fieldnames:
        target = COLUMN_ALIASES.get(_normalize_header(header or ""))
        if target and target not in field_map:
            field_map[target] = header

    missing = REQUIRED_FIELDS - set(field_map)
    if missing:
        return CsvImportReport(
            total_rows=0,
            rejected_rows=[ReconciliationError(
                index=0, message=f"Colonnes manquantes : {', '.join(sorted(missing))}"
            )],
            reconciliation=_empty_report(source, batch_id),
        )

    candidates: List[CarteCandidate] = []
    row_numbers: List[int] = []
    rejected: List[ReconciliationError] = []
    total_rows = 0

    for row_num, row in enumerate(reader, start=2):  # ligne 1 = header
        values = {target: (row.get(header) or "").strip() for target, header in field_map.items()}

        if not any(values.values()):
            continue
        total_rows += 1

        if not values.get("nom") or not values.get("prenoms"):
            rejected.append(ReconciliationError(index=row_num, message="NOM ou PRENOMS manquant"))
            continue

        candidates.append(CarteCandidate(**{k: v or None for k, v in values.items()}))
        row_numbers.append(row_num)

    report = reconcile_batch(db, candidates, source=source, batch_id=batch_id, actor=actor)

    # Index du lot → numéro de ligne du fichier
    report.error_details = [
        ReconciliationError(index=row_numbers[e.index], message=e.message)
        for e in report.error_details
    ]

    return CsvImportReport(total_rows=total_rows, rejected_rows=rejected, reconciliation=report)
