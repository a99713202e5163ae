"""Opaque, format-validated entity identifiers.

Identifiers are UUID-shaped strings wrapped in frozen pydantic root models so
that a ``PatientId`` can never be passed where a ``DocumentId`` is expected
and malformed values are rejected at construction.
"""

import re
import uuid
from typing import Union

from pydantic import ConfigDict, RootModel, field_validator
from pydantic_core import PydanticCustomError

_UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$"
)


class EntityId(RootModel[str]):
    """Base class for UUID-shaped identifiers (normalized to lower case)."""

    model_config = ConfigDict(frozen=True)

    @field_validator("root", mode="before")
    @classmethod
    def validate_format(cls, value):
        if isinstance(value, uuid.UUID):
            value = str(value)
        if not isinstance(value, str):
            raise PydanticCustomError("invalid_identifier", "Identifier must be a string")
        candidate = value.strip().lower()
        if not _UUID_PATTERN.match(candidate):
            raise PydanticCustomError(
                "invalid_identifier",
                "Invalid {kind} format",
                {"kind": cls.__name__},
            )
        return candidate

    @classmethod
    def generate(cls):
        return cls(str(uuid.uuid4()))

    @classmethod
    def coerce(cls, value: Union["EntityId", str, uuid.UUID]):
        """Return ``value`` as an instance of this identifier class."""
        if isinstance(value, cls):
            return value
        if isinstance(value, EntityId):
            value = value.root
        return cls(value)

    @property
    def value(self) -> str:
        return self.root

    def __str__(self) -> str:
        return self.root

    def __hash__(self) -> int:
        return hash((type(self).__name__, self.root))


class PatientId(EntityId):
    pass


class MedicalRecordId(EntityId):
    pass


class DocumentId(EntityId):
    pass


class UserId(EntityId):
    pass
