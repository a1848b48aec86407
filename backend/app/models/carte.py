"""
Modèle SQLAlchemy pour la table cartes.

Clé naturelle de fusion : (nom, prenoms, site_retrait), comparée après trim.
version : compteur monotone par carte, 1 à la création, +1 par mise à jour acceptée.
"""

import hashlib

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, String, event, func

from app.database import Base


class Carte(Base):
    __tablename__ = "cartes"

    id = Column(Integer, primary_key=True, autoincrement=True)

    lieu_enrolement = Column(String(255), nullable=True)
    site_retrait = Column(String(255), nullable=True, index=True)
    rangement = Column(String(100), nullable=True)
    nom = Column(String(255), nullable=False, index=True)
    prenoms = Column(String(255), nullable=False)
    date_naissance = Column(Date, nullable=True)
    lieu_naissance = Column(String(255), nullable=True)
    contact = Column(String(50), nullable=True)
    delivrance = Column(String(255), nullable=True)         # "OUI" ou nom de la personne
    contact_retrait = Column(String(50), nullable=True)
    date_delivrance = Column(Date, nullable=True)

    coordination_id = Column(Integer, ForeignKey("coordinations.id"), nullable=True)
    site_proprietaire_id = Column(String(50), ForeignKey("sites.id"), nullable=True, index=True)

    version = Column(Integer, nullable=False, default=1)
    sync_timestamp = Column(DateTime, nullable=True, index=True)
    local_id = Column(String(100), nullable=True)            # Identifiant côté agent du site

    source_import = Column(String(50), nullable=True)        # csv, api_externe, sync_site...
    import_batch_id = Column(String(100), nullable=True, index=True)
    hash_doublon = Column(String(64), nullable=True, index=True)

    date_import = Column(DateTime, server_default=func.now())
    created_at = Column(DateTime, server_default=func.now())

    def __repr__(self) -> str:
        return f"<Carte {self.id} {self.nom} {self.prenoms} v{self.version}>"


def compute_hash_doublon(nom, prenoms, site_retrait) -> str:
    """Empreinte de la clé naturelle (insensible à la casse et aux espaces de bord)."""
    key = "|".join((v or "").strip().upper() for v in (nom, prenoms, site_retrait))
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


@event.listens_for(Carte, "before_insert")
@event.listens_for(Carte, "before_update")
def _refresh_hash_doublon(mapper, connection, target: Carte) -> None:
    target.hash_doublon = compute_hash_doublon(target.nom, target.prenoms, target.site_retrait)
