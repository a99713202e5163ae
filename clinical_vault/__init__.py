"""Clinical Vault: secure patient data management.

Patient registration and lifecycle, medical records, encrypted clinical
documents, LGPD compliance and a tamper-evident audit trail.
"""

from clinical_vault.infrastructure.settings import APP_VERSION

__version__ = APP_VERSION
