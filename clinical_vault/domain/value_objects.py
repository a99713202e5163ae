"""Patient identity and contact value objects.

Self-validating, immutable values used to build a ``Patient``. Each value
rejects bad input at construction with a stable rule code (pydantic custom
error type) so callers can collect every violation at once.

Security Impact:
    - National identifiers (CPF/RG) are validated and stored as digits only
    - Values never log their content
    - Equality is structural on normalized values, so formatting variants of
      the same CPF or phone compare equal

Architecture:
    - Pure domain layer, no infrastructure dependencies
    - String-shaped values are frozen pydantic root models and serialize as
      plain strings inside entities
"""

import re
from datetime import date
from typing import Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    RootModel,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic_core import PydanticCustomError

from clinical_vault.domain.enums import Gender
from clinical_vault.domain.utils import digits_only, is_future, utc_now, years_between

BRAZILIAN_STATES = frozenset({
    "AC", "AL", "AP", "AM", "BA", "CE", "DF", "ES", "GO", "MA", "MT", "MS", "MG", "PA",
    "PB", "PR", "PE", "PI", "RJ", "RN", "RS", "RO", "RR", "SC", "SP", "SE", "TO",
})

NAME_PARTICLES = frozenset({"de", "da", "do", "das", "dos", "e"})

MAX_AGE_YEARS = 150
ADULT_AGE_YEARS = 18

_EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_NAME_ALLOWED_PUNCTUATION = frozenset(" '-.")


def is_rehydrating(info: Optional[ValidationInfo]) -> bool:
    """True when a model is being rebuilt from storage.

    Rules relative to "now" that can drift over time (insurance expiry,
    maximum age) only apply to fresh input, never to stored data.
    """
    return bool(info is not None and info.context and info.context.get("rehydrate"))


def require_text(value: Optional[str], label: str, max_length: Optional[int] = None) -> str:
    """Strip ``value`` and enforce non-empty plus an optional maximum length."""
    if value is None or not str(value).strip():
        raise PydanticCustomError("empty_value", "{label} cannot be empty", {"label": label})
    text = str(value).strip()
    if max_length is not None and len(text) > max_length:
        raise PydanticCustomError(
            "too_long",
            "{label} cannot exceed {max_length} characters",
            {"label": label, "max_length": max_length},
        )
    return text


def optional_text(value: Optional[str], label: str, max_length: int) -> Optional[str]:
    if value is None or not str(value).strip():
        return None
    return require_text(value, label, max_length)


def reject_future(value, label: str):
    if value is not None and is_future(value):
        raise PydanticCustomError("future_date", "{label} cannot be in the future", {"label": label})
    return value


class StringValue(RootModel[str]):
    """Base for single-string value objects."""

    model_config = ConfigDict(frozen=True)

    @property
    def value(self) -> str:
        return self.root

    def __str__(self) -> str:
        return self.root

    def __hash__(self) -> int:
        return hash((type(self).__name__, self.root))


def _cpf_check_digit(digits: str, length: int) -> int:
    total = sum(int(digits[i]) * (length + 1 - i) for i in range(length))
    remainder = total % 11
    return 0 if remainder < 2 else 11 - remainder


class CPF(StringValue):
    """Brazilian individual taxpayer number (Cadastro de Pessoas Fisicas)."""

    @field_validator("root", mode="before")
    @classmethod
    def validate_cpf(cls, value):
        if not isinstance(value, str):
            raise PydanticCustomError("cpf_invalid", "CPF must be a string")
        digits = digits_only(value)
        if len(digits) != 11 or digits == digits[0] * 11:
            raise PydanticCustomError("cpf_invalid", "Invalid CPF format")
        if (_cpf_check_digit(digits, 9) != int(digits[9])
                or _cpf_check_digit(digits, 10) != int(digits[10])):
            raise PydanticCustomError("cpf_invalid", "Invalid CPF check digits")
        return digits

    @property
    def formatted(self) -> str:
        d = self.root
        return f"{d[:3]}.{d[3:6]}.{d[6:9]}-{d[9:]}"

    def __str__(self) -> str:
        return self.formatted


class RG(StringValue):
    """Brazilian general registry (identity card) number."""

    @field_validator("root", mode="before")
    @classmethod
    def validate_rg(cls, value):
        if not isinstance(value, str):
            raise PydanticCustomError("rg_invalid", "RG must be a string")
        clean = re.sub(r"[^0-9A-Za-z]", "", value).upper()
        if not 7 <= len(clean) <= 9 or clean == clean[0] * len(clean):
            raise PydanticCustomError("rg_invalid", "Invalid RG format")
        return clean


class FullName(StringValue):
    """Person name with at least first and last name, title-cased."""

    @field_validator("root", mode="before")
    @classmethod
    def validate_name(cls, value):
        text = require_text(value, "Full name", 255)
        words = text.split()
        if len(text) < 2 or len(words) < 2:
            raise PydanticCustomError("name_incomplete", "Full name must include first and last name")
        if any(not (ch.isalpha() or ch in _NAME_ALLOWED_PUNCTUATION) for ch in text):
            raise PydanticCustomError("name_invalid_characters", "Full name contains invalid characters")
        normalized = []
        for index, word in enumerate(words):
            lowered = word.lower()
            if index > 0 and lowered in NAME_PARTICLES:
                normalized.append(lowered)
            else:
                normalized.append(lowered[:1].upper() + lowered[1:])
        return " ".join(normalized)

    @property
    def first_name(self) -> str:
        return self.root.split()[0]

    @property
    def last_name(self) -> str:
        return self.root.split()[-1]


class Email(StringValue):

    @field_validator("root", mode="before")
    @classmethod
    def validate_email(cls, value):
        text = require_text(value, "Email", 254).lower()
        if not _EMAIL_PATTERN.match(text):
            raise PydanticCustomError("email_invalid", "Invalid email format")
        if len(text.split("@")[0]) > 64:
            raise PydanticCustomError("email_invalid", "Email local part cannot exceed 64 characters")
        return text


class PhoneNumber(StringValue):
    """Brazilian landline (10 digits) or mobile (11 digits, leading 9)."""

    @field_validator("root", mode="before")
    @classmethod
    def validate_phone(cls, value):
        if not isinstance(value, str):
            raise PydanticCustomError("phone_invalid", "Phone number must be a string")
        digits = digits_only(value)
        if len(digits) not in (10, 11):
            raise PydanticCustomError("phone_invalid", "Phone number must have 10 or 11 digits")
        if not 11 <= int(digits[:2]) <= 99:
            raise PydanticCustomError("phone_invalid", "Invalid area code")
        if len(digits) == 11 and digits[2] != "9":
            raise PydanticCustomError("phone_invalid", "Mobile numbers must start with 9")
        return digits

    @property
    def is_mobile(self) -> bool:
        return len(self.root) == 11

    @property
    def formatted(self) -> str:
        d = self.root
        if self.is_mobile:
            return f"({d[:2]}) {d[2:7]}-{d[7:]}"
        return f"({d[:2]}) {d[2:6]}-{d[6:]}"

    def __str__(self) -> str:
        return self.formatted


class Address(BaseModel):
    """Brazilian postal address."""

    model_config = ConfigDict(frozen=True)

    street: str = Field(..., description="Street name")
    number: str = Field(..., description="Building number")
    complement: Optional[str] = Field(None, description="Apartment, suite, etc.")
    neighborhood: str = Field(..., description="Neighborhood (bairro)")
    city: str = Field(..., description="City")
    state: str = Field(..., description="Two-letter state code (UF)")
    zip_code: str = Field(..., description="CEP, 8 digits")
    country: str = Field(default="Brasil", description="Country")

    @field_validator("street")
    @classmethod
    def validate_street(cls, v: str) -> str:
        return require_text(v, "Street", 200)

    @field_validator("number")
    @classmethod
    def validate_number(cls, v: str) -> str:
        return require_text(v, "Number", 20)

    @field_validator("complement", mode="before")
    @classmethod
    def validate_complement(cls, v: Optional[str]) -> Optional[str]:
        return optional_text(v, "Complement", 100)

    @field_validator("neighborhood")
    @classmethod
    def validate_neighborhood(cls, v: str) -> str:
        return require_text(v, "Neighborhood", 100)

    @field_validator("city")
    @classmethod
    def validate_city(cls, v: str) -> str:
        return require_text(v, "City", 100)

    @field_validator("state")
    @classmethod
    def validate_state(cls, v: str) -> str:
        state = require_text(v, "State").upper()
        if state not in BRAZILIAN_STATES:
            raise PydanticCustomError("invalid_state", "Invalid Brazilian state: {state}", {"state": state})
        return state

    @field_validator("zip_code")
    @classmethod
    def validate_zip_code(cls, v: str) -> str:
        digits = digits_only(v)
        if len(digits) != 8:
            raise PydanticCustomError("invalid_zip_code", "Invalid Brazilian ZIP code format")
        return digits

    @property
    def formatted_zip_code(self) -> str:
        return f"{self.zip_code[:5]}-{self.zip_code[5:]}"


_GENDER_ALIASES = {
    "m": Gender.MALE,
    "masculino": Gender.MALE,
    "f": Gender.FEMALE,
    "feminino": Gender.FEMALE,
    "outro": Gender.OTHER,
    "nao_informado": Gender.PREFER_NOT_TO_SAY,
}


class PersonalInformation(BaseModel):
    """Identity block of a patient."""

    model_config = ConfigDict(frozen=True)

    full_name: FullName
    date_of_birth: date
    gender: Gender
    cpf: CPF
    rg: Optional[RG] = None

    @field_validator("gender", mode="before")
    @classmethod
    def normalize_gender(cls, v):
        if isinstance(v, str):
            key = v.strip().lower()
            return _GENDER_ALIASES.get(key, key)
        return v

    @field_validator("date_of_birth")
    @classmethod
    def validate_date_of_birth(cls, v: date, info: ValidationInfo) -> date:
        reject_future(v, "Date of birth")
        if not is_rehydrating(info) and years_between(v, utc_now().date()) > MAX_AGE_YEARS:
            raise PydanticCustomError(
                "date_out_of_range",
                "Date of birth cannot be more than {years} years ago",
                {"years": MAX_AGE_YEARS},
            )
        return v

    def age(self, on: Optional[date] = None) -> int:
        return years_between(self.date_of_birth, on or utc_now().date())

    def is_minor(self, on: Optional[date] = None) -> bool:
        return self.age(on) < ADULT_AGE_YEARS


class ContactInformation(BaseModel):
    model_config = ConfigDict(frozen=True)

    primary_phone: PhoneNumber
    secondary_phone: Optional[PhoneNumber] = None
    email: Optional[Email] = None
    address: Address


class EmergencyContact(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: FullName
    phone: PhoneNumber
    relationship: str
    email: Optional[Email] = None

    @field_validator("relationship")
    @classmethod
    def validate_relationship(cls, v: str) -> str:
        return require_text(v, "Emergency contact relationship", 50)


class InsuranceInformation(BaseModel):
    """Health-insurance details; every field optional but the provider is
    mandatory once any other field is given."""

    model_config = ConfigDict(frozen=True)

    provider: Optional[str] = None
    policy_number: Optional[str] = None
    group_number: Optional[str] = None
    valid_until: Optional[date] = None

    @field_validator("provider", "group_number", mode="before")
    @classmethod
    def strip_optional(cls, v: Optional[str]) -> Optional[str]:
        return optional_text(v, "Insurance field", 100)

    @field_validator("policy_number", mode="before")
    @classmethod
    def validate_policy_number(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return require_text(v, "Policy number", 100)

    @field_validator("valid_until")
    @classmethod
    def validate_valid_until(cls, v: Optional[date], info: ValidationInfo) -> Optional[date]:
        if v is not None and not is_rehydrating(info) and v < utc_now().date():
            raise PydanticCustomError("expired_date", "Insurance expiration date cannot be in the past")
        return v

    @model_validator(mode="after")
    def require_provider(self) -> "InsuranceInformation":
        has_details = any([self.policy_number, self.group_number, self.valid_until])
        if has_details and not self.provider:
            raise PydanticCustomError(
                "provider_required",
                "Insurance provider is required when insurance information is provided",
            )
        return self

    def is_valid(self, on: Optional[date] = None) -> bool:
        if self.valid_until is None:
            return True
        return self.valid_until >= (on or utc_now().date())
