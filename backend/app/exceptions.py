"""
Exceptions métier du sous-système de réconciliation et de synchronisation.

Les routers les traduisent en HTTPException. Les conflits de version ne sont
jamais levés : ils sont enregistrés comme données (table sync_conflicts).
"""


class CarteSyncError(Exception):
    """Racine des erreurs métier."""


class SyncValidationError(CarteSyncError, ValueError):
    """Donnée invalide ou hors périmètre (coordination, champ manquant)."""


class AuthError(CarteSyncError):
    """Identifiants ou token invalides / expirés."""


class ForbiddenError(CarteSyncError):
    """Authentifié mais sans le rôle requis."""


class NotFoundError(CarteSyncError, LookupError):
    """Cible introuvable (entrée du journal, carte, historique)."""


class OwnershipError(NotFoundError):
    """Écriture visant une carte non possédée par le site : traitée comme introuvable."""


class JournalValidationError(CarteSyncError, ValueError):
    """Entrée de journal mal formée."""


class UndoError(CarteSyncError):
    """Annulation impossible (snapshot vide, restauration incomplète)."""


class UndoNotSupportedError(UndoError):
    """Type d'action ou table non annulable."""


class AlreadyCancelledError(UndoError):
    """L'entrée du journal est déjà annulée."""


class PersistenceError(CarteSyncError):
    """Échec inattendu de la base de données hors des boucles par élément."""
