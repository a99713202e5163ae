"""Clinical history value objects held by a ``MedicalRecord``.

Each value enforces bounded text lengths, closed severity/category sets and
the "no future dates" rule at construction.
"""

import uuid
from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_core import PydanticCustomError

from clinical_vault.domain.enums import AllergySeverity, DiagnosisSeverity, ProgressNoteCategory
from clinical_vault.domain.identifiers import UserId
from clinical_vault.domain.utils import ensure_utc, utc_now
from clinical_vault.domain.value_objects import optional_text, reject_future, require_text


def _new_id() -> str:
    return str(uuid.uuid4())


def _check_period(start, end, label: str) -> None:
    if end is not None and start is not None and end < start:
        raise PydanticCustomError(
            "end_before_start",
            "{label} end date cannot be before start date",
            {"label": label},
        )


def _check_goals(goals: tuple[str, ...], label: str) -> tuple[str, ...]:
    if not goals:
        raise PydanticCustomError("goals_required", "{label} must have at least one goal", {"label": label})
    return tuple(require_text(goal, "Goal", 200) for goal in goals)


class Diagnosis(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str = Field(..., description="Diagnosis code (e.g. ICD-10 F41.1)")
    description: str
    diagnosed_at: datetime
    severity: DiagnosisSeverity = DiagnosisSeverity.UNKNOWN

    @field_validator("code")
    @classmethod
    def validate_code(cls, v: str) -> str:
        return require_text(v, "Diagnosis code", 20).upper()

    @field_validator("description")
    @classmethod
    def validate_description(cls, v: str) -> str:
        return require_text(v, "Diagnosis description", 500)

    @field_validator("diagnosed_at")
    @classmethod
    def validate_diagnosed_at(cls, v: datetime) -> datetime:
        return reject_future(ensure_utc(v), "Diagnosis date")


class Medication(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    dosage: str
    frequency: str
    start_date: date
    end_date: Optional[date] = None
    prescribed_by: str
    notes: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return require_text(v, "Medication name", 200)

    @field_validator("dosage")
    @classmethod
    def validate_dosage(cls, v: str) -> str:
        return require_text(v, "Medication dosage", 100)

    @field_validator("frequency")
    @classmethod
    def validate_frequency(cls, v: str) -> str:
        return require_text(v, "Medication frequency", 100)

    @field_validator("prescribed_by")
    @classmethod
    def validate_prescribed_by(cls, v: str) -> str:
        return require_text(v, "Prescribing doctor", 200)

    @field_validator("start_date")
    @classmethod
    def validate_start_date(cls, v: date) -> date:
        return reject_future(v, "Medication start date")

    @field_validator("notes", mode="before")
    @classmethod
    def validate_notes(cls, v: Optional[str]) -> Optional[str]:
        return optional_text(v, "Medication notes", 500)

    @model_validator(mode="after")
    def validate_period(self) -> "Medication":
        _check_period(self.start_date, self.end_date, "Medication")
        return self

    def is_active(self, on: Optional[date] = None) -> bool:
        today = on or utc_now().date()
        return self.start_date <= today and (self.end_date is None or self.end_date >= today)


class Allergy(BaseModel):
    model_config = ConfigDict(frozen=True)

    allergen: str
    reaction: str
    severity: AllergySeverity
    diagnosed_at: datetime
    notes: Optional[str] = None

    @field_validator("allergen")
    @classmethod
    def validate_allergen(cls, v: str) -> str:
        return require_text(v, "Allergen", 100)

    @field_validator("reaction")
    @classmethod
    def validate_reaction(cls, v: str) -> str:
        return require_text(v, "Allergic reaction", 200)

    @field_validator("diagnosed_at")
    @classmethod
    def validate_diagnosed_at(cls, v: datetime) -> datetime:
        return reject_future(ensure_utc(v), "Allergy diagnosis date")

    @field_validator("notes", mode="before")
    @classmethod
    def validate_notes(cls, v: Optional[str]) -> Optional[str]:
        return optional_text(v, "Allergy notes", 500)

    def is_severe(self) -> bool:
        return self.severity in (AllergySeverity.SEVERE, AllergySeverity.LIFE_THREATENING)


class ProgressNote(BaseModel):
    """Session note written by a clinician."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    content: str
    created_at: datetime = Field(default_factory=utc_now)
    created_by: UserId
    session_date: datetime
    category: ProgressNoteCategory

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        return require_text(v, "Progress note ID", 64)

    @field_validator("content")
    @classmethod
    def validate_content(cls, v: str) -> str:
        return require_text(v, "Progress note content", 2000)

    @field_validator("created_at")
    @classmethod
    def validate_created_at(cls, v: datetime) -> datetime:
        return reject_future(ensure_utc(v), "Creation date")

    @field_validator("session_date")
    @classmethod
    def validate_session_date(cls, v: datetime) -> datetime:
        return reject_future(ensure_utc(v), "Session date")


class Assessment(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    type: str
    results: dict[str, Any] = Field(default_factory=dict)
    summary: str
    recommendations: tuple[str, ...]
    date: datetime
    assessed_by: UserId

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        return require_text(v, "Assessment type", 100)

    @field_validator("summary")
    @classmethod
    def validate_summary(cls, v: str) -> str:
        return require_text(v, "Assessment summary", 1000)

    @field_validator("recommendations")
    @classmethod
    def validate_recommendations(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        if not v:
            raise PydanticCustomError(
                "recommendations_required",
                "Assessment must have at least one recommendation",
            )
        return tuple(require_text(item, "Assessment recommendation", 200) for item in v)

    @field_validator("date")
    @classmethod
    def validate_date(cls, v: datetime) -> datetime:
        return reject_future(ensure_utc(v), "Assessment date")


class TreatmentHistory(BaseModel):
    """Historical entry appended whenever the treatment plan changes."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    description: str
    start_date: date
    end_date: Optional[date] = None
    goals: tuple[str, ...]
    recorded_at: datetime = Field(default_factory=utc_now)

    @field_validator("description")
    @classmethod
    def validate_description(cls, v: str) -> str:
        return require_text(v, "Treatment description", 1000)

    @field_validator("start_date")
    @classmethod
    def validate_start_date(cls, v: date) -> date:
        return reject_future(v, "Treatment start date")

    @field_validator("goals")
    @classmethod
    def validate_goals(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        return _check_goals(v, "Treatment")

    @model_validator(mode="after")
    def validate_period(self) -> "TreatmentHistory":
        _check_period(self.start_date, self.end_date, "Treatment")
        return self


class TreatmentPlan(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    description: str
    goals: tuple[str, ...]
    start_date: date
    end_date: Optional[date] = None
    frequency: str
    duration_minutes: int = Field(..., description="Session length in minutes")

    @field_validator("description")
    @classmethod
    def validate_description(cls, v: str) -> str:
        return require_text(v, "Treatment plan description", 1000)

    @field_validator("goals")
    @classmethod
    def validate_goals(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        return _check_goals(v, "Treatment plan")

    @field_validator("start_date")
    @classmethod
    def validate_start_date(cls, v: date) -> date:
        return reject_future(v, "Treatment plan start date")

    @field_validator("frequency")
    @classmethod
    def validate_frequency(cls, v: str) -> str:
        return require_text(v, "Treatment frequency", 100)

    @field_validator("duration_minutes")
    @classmethod
    def validate_duration(cls, v: int) -> int:
        if not 1 <= v <= 480:
            raise PydanticCustomError(
                "out_of_range",
                "Treatment duration must be between 1 and 480 minutes",
            )
        return v

    @model_validator(mode="after")
    def validate_period(self) -> "TreatmentPlan":
        _check_period(self.start_date, self.end_date, "Treatment plan")
        return self

    def to_history_entry(self) -> TreatmentHistory:
        return TreatmentHistory(
            id=self.id,
            description=self.description,
            start_date=self.start_date,
            end_date=self.end_date,
            goals=self.goals,
        )
