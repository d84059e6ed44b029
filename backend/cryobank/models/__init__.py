"""All cryobank database models.

Import all models here so Alembic and SQLAlchemy can discover them.
"""

from cryobank.models.base import Base, BaseModel, LedgerModel  # noqa: F401

# Audit
from cryobank.models.audit import AuditLog  # noqa: F401

# Samples
from cryobank.models.sample import Sample, SampleStatusHistory  # noqa: F401

# Storage
from cryobank.models.storage import CryoLocation  # noqa: F401

# Chain of custody
from cryobank.models.ledger import CryoExportRecord, CryoImportRecord  # noqa: F401
