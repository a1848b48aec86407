"""
Modèles SQLAlchemy pour les coordinations et les sites.
Un site appartient à une seule coordination et s'authentifie par clé API.
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, func

from app.database import Base


class Coordination(Base):
    __tablename__ = "coordinations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(50), unique=True, nullable=False)
    nom = Column(String(255), nullable=False)
    created_at = Column(DateTime, server_default=func.now())


class Site(Base):
    __tablename__ = "sites"

    id = Column(String(50), primary_key=True)               # ex. "ADJAME"
    nom = Column(String(255), nullable=False)
    coordination_id = Column(Integer, ForeignKey("coordinations.id"), nullable=False)
    api_key = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True)

    last_sync_at = Column(DateTime, nullable=True)
    last_sync_status = Column(String(20), nullable=True)    # success, partial
    last_sync_error = Column(Text, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
