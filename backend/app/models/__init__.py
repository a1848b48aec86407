# Importe tous les modèles pour enregistrer leurs tables dans Base.metadata
# avant que SQLAlchemy tente de résoudre les clés étrangères inter-modèles.
# coordinations doit précéder sites, et sites doit précéder cartes / sync_history.

from app.models.site import Coordination, Site  # noqa: F401
from app.models.carte import Carte  # noqa: F401
from app.models.sync import SyncConflict, SyncHistory  # noqa: F401
from app.models.journal import JournalEntry  # noqa: F401
