"""
Modèles SQLAlchemy pour l'historique de synchronisation et les conflits de version.
"""

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text, func

from app.database import Base


class SyncHistory(Base):
    """Une ligne par appel d'upload : créée au début, finalisée au commit."""
    __tablename__ = "sync_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    site_id = Column(String(50), ForeignKey("sites.id", ondelete="CASCADE"), nullable=False, index=True)

    sync_start = Column(DateTime, nullable=False)
    sync_end = Column(DateTime, nullable=True)
    status = Column(String(20), default="in_progress")      # in_progress, success, partial

    uploaded_inserts = Column(Integer, default=0)
    uploaded_updates = Column(Integer, default=0)
    uploaded_deletes = Column(Integer, default=0)
    uploaded_conflicts = Column(Integer, default=0)
    uploaded_errors = Column(Integer, default=0)

    # Confirmation du download (observabilité uniquement)
    downloaded_count = Column(Integer, nullable=True)
    download_errors = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    confirmed_at = Column(DateTime, nullable=True)


class SyncConflict(Base):
    """Mise à jour rejetée pour version périmée. Jamais résolue automatiquement."""
    __tablename__ = "sync_conflicts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    site_id = Column(String(50), ForeignKey("sites.id", ondelete="CASCADE"), nullable=False, index=True)
    sync_history_id = Column(Integer, ForeignKey("sync_history.id", ondelete="CASCADE"), nullable=True)
    carte_id = Column(Integer, nullable=False)
    coordination_id = Column(Integer, nullable=True)

    conflict_type = Column(String(50), default="version_mismatch")
    client_version = Column(Integer, nullable=True)
    server_version = Column(Integer, nullable=True)
    client_value = Column(JSON, nullable=False)             # payload rejeté
    server_value = Column(JSON, nullable=False)             # snapshot serveur au moment du rejet

    resolved = Column(Boolean, default=False)
    created_at = Column(DateTime, server_default=func.now())
