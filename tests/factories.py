"""Builders for valid domain objects used across the test suite."""

import uuid
from datetime import date, datetime, timedelta, timezone

from clinical_vault.domain.clinical_values import (
    Allergy,
    Assessment,
    Diagnosis,
    Medication,
    ProgressNote,
    TreatmentPlan,
)
from clinical_vault.domain.document import DocumentUpload, FileUpload
from clinical_vault.domain.enums import AllergySeverity, DiagnosisSeverity, DocumentType, ProgressNoteCategory
from clinical_vault.domain.services import PatientRegistration
from clinical_vault.domain.value_objects import Address, ContactInformation, PersonalInformation

# Keep key derivation cheap; production uses the configured iteration count
TEST_ITERATIONS = 1_000

CPF_JOAO = "111.444.777-35"
CPF_MARIA = "529.982.247-25"
CPF_OTHER = "123.456.789-09"

PDF_BYTES = b"%PDF-1.4\n1 0 obj <<>> endobj\ntrailer <<>>\n%%EOF\n"


def new_user_id() -> str:
    return str(uuid.uuid4())


def days_ago(days: int) -> datetime:
    return datetime.now(timezone.utc) - timedelta(days=days)


def make_personal_info(
    full_name: str = "João Silva Santos",
    date_of_birth: date = date(1990, 5, 15),
    cpf: str = CPF_JOAO,
    gender: str = "male",
    **extra
) -> PersonalInformation:
    return PersonalInformation(
        full_name=full_name,
        date_of_birth=date_of_birth,
        gender=gender,
        cpf=cpf,
        **extra
    )


def make_address(city: str = "São Paulo") -> Address:
    return Address(
        street="Avenida Paulista",
        number="1000",
        neighborhood="Bela Vista",
        city=city,
        state="SP",
        zip_code="01310-100",
    )


def make_contact_info(city: str = "São Paulo") -> ContactInformation:
    return ContactInformation(
        primary_phone="(11) 91234-5678",
        email="paciente@example.com",
        address=make_address(city),
    )


def make_registration(city: str = "São Paulo", **personal) -> PatientRegistration:
    return PatientRegistration(
        personal_info=make_personal_info(**personal),
        contact_info=make_contact_info(city),
    )


def maria_registration(**overrides) -> PatientRegistration:
    fields = {
        "full_name": "Maria Oliveira Costa",
        "date_of_birth": date(1985, 3, 2),
        "cpf": CPF_MARIA,
        "gender": "female",
    }
    fields.update(overrides)
    return make_registration(**fields)


def make_diagnosis(code: str = "F41.1", when: datetime = None) -> Diagnosis:
    return Diagnosis(
        code=code,
        description="Generalized anxiety disorder",
        diagnosed_at=when or days_ago(30),
        severity=DiagnosisSeverity.MODERATE,
    )


def make_medication(name: str = "Sertraline", start: date = None, end: date = None) -> Medication:
    return Medication(
        name=name,
        dosage="50mg",
        frequency="once daily",
        start_date=start or days_ago(20).date(),
        end_date=end,
        prescribed_by="Dr. Ana Souza",
    )


def make_allergy(allergen: str = "Penicillin") -> Allergy:
    return Allergy(
        allergen=allergen,
        reaction="Rash",
        severity=AllergySeverity.SEVERE,
        diagnosed_at=days_ago(400),
    )


def make_progress_note(author: str, when: datetime = None) -> ProgressNote:
    return ProgressNote(
        content="Patient reports better sleep.",
        created_by=author,
        session_date=when or days_ago(5),
        category=ProgressNoteCategory.OBSERVATION,
    )


def make_assessment(author: str, when: datetime = None) -> Assessment:
    return Assessment(
        type="GAD-7",
        results={"score": 12},
        summary="Moderate anxiety",
        recommendations=("Weekly sessions",),
        date=when or days_ago(10),
        assessed_by=author,
    )


def make_treatment_plan(start: date = None) -> TreatmentPlan:
    return TreatmentPlan(
        description="Cognitive behavioural therapy",
        goals=("Reduce anxiety", "Improve sleep"),
        start_date=start or days_ago(15).date(),
        frequency="weekly",
        duration_minutes=50,
    )


def pdf_file(data: bytes = PDF_BYTES, name: str = "report.pdf") -> FileUpload:
    return FileUpload(file_name=name, content_type="application/pdf", data=data)


def make_upload(title: str = "Initial assessment", **fields) -> DocumentUpload:
    fields.setdefault("document_type", DocumentType.MEDICAL_REPORT)
    return DocumentUpload(title=title, **fields)
