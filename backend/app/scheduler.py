"""
Planificateur APScheduler pour la rétention du journal d'activité.

Le job s'exécute une fois par jour et supprime les entrées plus anciennes
que JOURNAL_RETENTION_DAYS jours.
"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.exc import SQLAlchemyError

from app.database import SessionLocal

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler()


def _purge_journal_scheduled() -> None:
    """
    Tâche planifiée : purge du journal, hors de toute transaction de requête.
    Import local pour éviter les imports circulaires.
    """
    from app.services.journal_service import purge_journal

    db = SessionLocal()
    try:
        purge_journal(db)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Erreur lors de la purge automatique du journal : %s", exc)
    finally:
        db.close()


def start_scheduler() -> None:
    """Démarre le planificateur en arrière-plan (appelé au démarrage de l'API)."""
    scheduler.add_job(
        _purge_journal_scheduled,
        trigger="interval",
        days=1,
        id="journal_retention_purge",
        replace_existing=True,
    )
    scheduler.start()
    logger.info("Scheduler démarré — purge du journal une fois par jour.")


def stop_scheduler() -> None:
    """Arrête le planificateur proprement (appelé à l'arrêt de l'API)."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler arrêté.")
