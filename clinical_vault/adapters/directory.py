"""In-memory tenant directory.

Maps users to a tenant and a role, and patients to a tenant. Production
deployments plug their identity provider in behind ``TenantDirectoryPort``.
"""

from threading import RLock
from typing import Optional

from clinical_vault.domain.ports import TenantDirectoryPort


class InMemoryTenantDirectory(TenantDirectoryPort):
    """Tenant directory held in memory.

    Example Usage:
        ```python
        directory = InMemoryTenantDirectory()
        directory.assign_user("dr-ana", "clinic-1", role="doctor")
        directory.assign_patient(str(patient.id), "clinic-1")
        directory.shares_tenant("dr-ana", str(patient.id))  # True
        ```
    """

    def __init__(self):
        self._users: dict[str, tuple[str, str]] = {}
        self._patients: dict[str, str] = {}
        self._lock = RLock()

    def assign_user(self, user_id: str, tenant_id: str, role: str) -> None:
        with self._lock:
            self._users[str(user_id)] = (tenant_id, role.strip().lower())

    def assign_patient(self, patient_id: str, tenant_id: str) -> None:
        with self._lock:
            self._patients[str(patient_id)] = tenant_id

    def shares_tenant(self, user_id: str, patient_id: str) -> bool:
        with self._lock:
            user = self._users.get(str(user_id))
            tenant = self._patients.get(str(patient_id))
        return user is not None and tenant is not None and user[0] == tenant

    def get_role(self, user_id: str) -> Optional[str]:
        with self._lock:
            user = self._users.get(str(user_id))
        return user[1] if user else None

    def get_tenant_for_patient(self, patient_id: str) -> Optional[str]:
        with self._lock:
            return self._patients.get(str(patient_id))
