"""
Modèle SQLAlchemy pour le journal d'activité.

Entrée immuable, à l'exception du drapeau `annulee` (et de annulee_par / date_annulation)
qui passe à True une seule fois lors d'une annulation réussie.
"""

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text, func

from app.database import Base


class JournalEntry(Base):
    __tablename__ = "journal_activite"

    id = Column(Integer, primary_key=True, autoincrement=True)

    utilisateur_id = Column(Integer, nullable=True)
    nom_utilisateur = Column(String(100), nullable=False)   # login ou identifiant du site
    role = Column(String(50), nullable=True)                # Administrateur, SITE, Systeme...
    coordination = Column(String(50), nullable=True)

    date_action = Column(DateTime, nullable=False, server_default=func.now(), index=True)
    action_type = Column(String(30), nullable=False, index=True)
    table_name = Column(String(50), nullable=False)
    record_id = Column(String(100), nullable=True)
    anciennes_valeurs = Column(JSON, nullable=True)         # snapshot "avant"
    nouvelles_valeurs = Column(JSON, nullable=True)         # snapshot "après"
    details = Column(Text, nullable=True)
    import_batch_id = Column(String(100), nullable=True, index=True)
    ip_utilisateur = Column(String(64), nullable=True)

    annulee = Column(Boolean, nullable=False, default=False)
    annulee_par = Column(Integer, nullable=True)
    date_annulation = Column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<JournalEntry {self.id} {self.action_type} {self.table_name}:{self.record_id}>"
