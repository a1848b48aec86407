"""
Fusion intelligente champ par champ entre une valeur existante et une valeur candidate.

Fonction pure : aucune lecture BDD, aucun effet de bord. Le moteur de réconciliation
peut la réévaluer librement, et les tests l'appellent directement.

Règles par type de champ :
- texte      : la valeur la plus "complète" l'emporte (noms : plus d'accents ou plus
               longue ; lieux : nombre de mots puis longueur ; sinon longueur)
- contact    : indicatif international > format numérique > longueur
- delivrance : un nom de personne l'emporte toujours sur la sentinelle "OUI" ;
               entre deux noms, la date de délivrance la plus récente tranche
- date       : DATE DE DELIVRANCE la plus récente ; DATE DE NAISSANCE stable une fois posée

En cas d'égalité, la valeur existante est conservée (resolve(X, X, k) ne fait rien).
"""

import re
import unicodedata
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional


class FieldKind(str, Enum):
    TEXT = "texte"
    CONTACT = "contact"
    STATUS = "delivrance"
    DATE = "date"


@dataclass(frozen=True)
class MergeDecision:
    apply: bool
    value: Any = None
    reason: str = ""


KEEP = MergeDecision(apply=False)

NAME_COLUMNS = {"nom", "prenoms"}
PLACE_COLUMNS = {"lieu_naissance", "lieu_enrolement"}
RECENCY_DATE_COLUMNS = {"date_delivrance"}

DELIVRANCE_SENTINEL = "OUI"
INTERNATIONAL_PREFIXES = ("+225", "00225")
PHONE_PATTERN = re.compile(r"^[\d+\s\-()]+$")
DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S")


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def count_diacritics(text: str) -> int:
    """Nombre de caractères accentués (é, ç, ï...) dans le texte."""
    count = 0
    for char in text:
        decomposed = unicodedata.normalize("NFD", char)
        if len(decomposed) > 1 and any(unicodedata.combining(c) for c in decomposed[1:]):
            count += 1
    return count


def parse_date(value: Any) -> Optional[date]:
    """Convertit date / datetime / chaîne ISO ou JJ/MM/AAAA en date. None si illisible."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = _as_text(value)
    if not text:
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Comparateurs
# ---------------------------------------------------------------------------

def _compare(candidate_score: tuple, existing_score: tuple) -> bool:
    """Strictement meilleur uniquement : l'égalité conserve l'existant."""
    return candidate_score > existing_score


def is_more_complete_text(candidate: str, existing: str, column: Optional[str] = None) -> bool:
    if column in NAME_COLUMNS:
        # Deux critères indépendants : plus d'accents, ou plus long
        if count_diacritics(candidate) > count_diacritics(existing):
            return True
        return len(candidate) > len(existing)
    if column in PLACE_COLUMNS:
        return _compare(
            (len(candidate.split()), len(candidate)),
            (len(existing.split()), len(existing)),
        )
    return len(candidate) > len(existing)


def has_international_prefix(contact: str) -> bool:
    return contact.startswith(INTERNATIONAL_PREFIXES)


def is_phone_like(contact: str) -> bool:
    return bool(PHONE_PATTERN.match(contact))


def is_more_complete_contact(candidate: str, existing: str) -> bool:
    return _compare(
        (has_international_prefix(candidate), is_phone_like(candidate), len(candidate)),
        (has_international_prefix(existing), is_phone_like(existing), len(existing)),
    )


# ---------------------------------------------------------------------------
# Résolution par type
# ---------------------------------------------------------------------------

def _resolve_text(existing: Any, candidate: Any, column: Optional[str]) -> MergeDecision:
    old, new = _as_text(existing), _as_text(candidate)
    if not new:
        return KEEP
    if not old:
        return MergeDecision(True, new, "ajout")
    if new != old and is_more_complete_text(new, old, column):
        return MergeDecision(True, new, "plus complet")
    return KEEP


def _resolve_contact(existing: Any, candidate: Any) -> MergeDecision:
    old, new = _as_text(existing), _as_text(candidate)
    if not new:
        return KEEP
    if not old:
        return MergeDecision(True, new, "ajout")
    if new != old and is_more_complete_contact(new, old):
        return MergeDecision(True, new, "contact plus complet")
    return KEEP


def _is_sentinel(value: str) -> bool:
    return value.upper() == DELIVRANCE_SENTINEL


def _resolve_status(
    existing: Any,
    candidate: Any,
    existing_date: Any,
    candidate_date: Any,
) -> MergeDecision:
    old, new = _as_text(existing), _as_text(candidate)
    if not new:
        return KEEP
    if not old:
        return MergeDecision(True, new, "ajout")
    if new == old:
        return KEEP

    old_is_sentinel, new_is_sentinel = _is_sentinel(old), _is_sentinel(new)
    if old_is_sentinel and new_is_sentinel:
        return KEEP
    if old_is_sentinel:
        return MergeDecision(True, new, "priorité au nom")
    if new_is_sentinel:
        return KEEP

    # Deux noms différents : la date de délivrance la plus récente l'emporte
    new_date = parse_date(candidate_date)
    old_date = parse_date(existing_date)
    if new_date is not None and (old_date is None or new_date > old_date):
        return MergeDecision(True, new, "date de délivrance plus récente")
    return KEEP


def _resolve_date(existing: Any, candidate: Any, column: Optional[str]) -> MergeDecision:
    new = parse_date(candidate)
    if new is None:
        return KEEP
    old = parse_date(existing)
    if old is None:
        return MergeDecision(True, new, "ajout")
    if column in RECENCY_DATE_COLUMNS and new > old:
        return MergeDecision(True, new, "date plus récente")
    return KEEP


def resolve(
    existing: Any,
    candidate: Any,
    kind: FieldKind,
    column: Optional[str] = None,
    existing_date: Any = None,
    candidate_date: Any = None,
) -> MergeDecision:
    """
    Décide si la valeur candidate remplace la valeur existante.

    `column` affine la règle texte/date (noms, lieux, date de délivrance).
    `existing_date` / `candidate_date` ne servent qu'au type delivrance : ce sont les
    DATE DE DELIVRANCE associées à chaque côté.
    """
    kind = FieldKind(kind)
    if kind is FieldKind.CONTACT:
        return _resolve_contact(existing, candidate)
    if kind is FieldKind.STATUS:
        return _resolve_status(existing, candidate, existing_date, candidate_date)
    if kind is FieldKind.DATE:
        return _resolve_date(existing, candidate, column)
    return _resolve_text(existing, candidate, column)
