"""Tests for patient identity and contact value objects.

These tests verify normalization, rule codes and structural equality of the
values a ``Patient`` is built from.
"""

from datetime import date, timedelta

import pytest
from pydantic import ValidationError

from clinical_vault.domain.enums import Gender
from clinical_vault.domain.identifiers import DocumentId, PatientId
from clinical_vault.domain.utils import utc_now
from clinical_vault.domain.validation import build, build_or_raise
from clinical_vault.domain.errors import ValidationError as DomainValidationError
from clinical_vault.domain.value_objects import (
    CPF,
    RG,
    Address,
    Email,
    FullName,
    InsuranceInformation,
    PersonalInformation,
    PhoneNumber,
)

from tests.factories import make_personal_info


class TestCPF:
    """Test suite for CPF."""

    def test_valid_cpf_is_stored_as_digits(self):
        cpf = CPF("111.444.777-35")
        assert cpf.value == "11144477735"
        assert cpf.formatted == "111.444.777-35"
        assert str(cpf) == "111.444.777-35"

    def test_formatting_variants_compare_equal(self):
        assert CPF("11144477735") == CPF("111.444.777-35")
        assert hash(CPF("11144477735")) == hash(CPF("111.444.777-35"))

    @pytest.mark.parametrize("value", ["111.111.111-11", "111.444.777-36", "123", ""])
    def test_invalid_cpf_rejected(self, value):
        result = build(CPF, value)
        assert result.is_failure()
        assert result.error_details["violations"][0]["code"] == "cpf_invalid"


class TestRG:

    def test_rg_normalized(self):
        assert RG("12.345.678-9").value == "123456789"

    def test_rg_with_check_letter(self):
        assert RG("12.345.678-x").value == "12345678X"

    def test_repeated_digits_rejected(self):
        with pytest.raises(ValidationError):
            RG("1111111")


class TestFullName:

    def test_title_case_with_particles(self):
        name = FullName("joão da silva santos")
        assert name.value == "João da Silva Santos"
        assert name.first_name == "João"
        assert name.last_name == "Santos"

    def test_single_word_rejected(self):
        result = build(FullName, "João")
        assert result.error_details["violations"][0]["code"] == "name_incomplete"

    def test_digits_rejected(self):
        result = build(FullName, "João 2nd Silva")
        assert result.error_details["violations"][0]["code"] == "name_invalid_characters"

    def test_empty_rejected(self):
        result = build(FullName, "   ")
        assert result.error_details["violations"][0]["code"] == "empty_value"


class TestEmailAndPhone:

    def test_email_lowercased(self):
        assert Email("Ana.Souza@Example.COM").value == "ana.souza@example.com"

    def test_invalid_email(self):
        assert build(Email, "not-an-email").is_failure()

    def test_mobile_phone(self):
        phone = PhoneNumber("(11) 91234-5678")
        assert phone.value == "11912345678"
        assert phone.is_mobile
        assert phone.formatted == "(11) 91234-5678"

    def test_landline_phone(self):
        phone = PhoneNumber("(11) 3123-4567")
        assert not phone.is_mobile
        assert phone.formatted == "(11) 3123-4567"

    def test_mobile_must_start_with_nine(self):
        result = build(PhoneNumber, "(11) 81234-5678")
        assert result.error_details["violations"][0]["code"] == "phone_invalid"

    def test_invalid_area_code(self):
        assert build(PhoneNumber, "(01) 91234-5678").is_failure()


class TestAddress:

    def test_state_and_zip_normalized(self):
        address = Address(
            street="Rua Augusta", number="10", neighborhood="Consolação",
            city="São Paulo", state="sp", zip_code="01305-000",
        )
        assert address.state == "SP"
        assert address.zip_code == "01305000"
        assert address.formatted_zip_code == "01305-000"
        assert address.country == "Brasil"

    def test_unknown_state_rejected(self):
        result = build(Address, {
            "street": "Rua A", "number": "1", "neighborhood": "Centro",
            "city": "Cidade", "state": "XX", "zip_code": "01310-100",
        })
        codes = [v["code"] for v in result.error_details["violations"]]
        assert codes == ["invalid_state"]

    def test_every_violation_reported(self):
        result = build(Address, {
            "street": "", "number": "1", "neighborhood": "Centro",
            "city": "Cidade", "state": "XX", "zip_code": "123",
        })
        fields = {v["field"] for v in result.error_details["violations"]}
        assert fields == {"street", "state", "zip_code"}


class TestPersonalInformation:

    def test_gender_aliases(self):
        assert make_personal_info(gender="F").gender == Gender.FEMALE
        assert make_personal_info(gender="masculino").gender == Gender.MALE

    def test_future_birth_date_rejected(self):
        result = build(PersonalInformation, {
            "full_name": "João Silva Santos",
            "date_of_birth": date.today() + timedelta(days=2),
            "gender": "male",
            "cpf": "111.444.777-35",
        })
        assert result.error_details["violations"][0]["code"] == "future_date"

    def test_age_and_minor(self):
        info = make_personal_info(date_of_birth=date(2010, 6, 1))
        assert info.age(on=date(2020, 6, 1)) == 10
        assert info.is_minor(on=date(2020, 6, 1))
        assert not info.is_minor(on=date(2030, 6, 1))

    def test_build_or_raise_collects_all_violations(self):
        with pytest.raises(DomainValidationError) as exc_info:
            build_or_raise(PersonalInformation, {
                "full_name": "X",
                "date_of_birth": date.today() + timedelta(days=2),
                "gender": "male",
                "cpf": "123",
            })
        fields = {v["field"] for v in exc_info.value.violations}
        assert {"full_name", "date_of_birth", "cpf"} <= fields


class TestInsuranceInformation:

    def test_provider_required_with_details(self):
        result = build(InsuranceInformation, {"policy_number": "ABC-1"})
        assert result.error_details["violations"][0]["code"] == "provider_required"

    def test_expired_rejected_on_input(self):
        result = build(InsuranceInformation, {
            "provider": "Unimed", "valid_until": utc_now().date() - timedelta(days=1),
        })
        assert result.error_details["violations"][0]["code"] == "expired_date"

    def test_expired_accepted_when_rehydrating(self):
        yesterday = utc_now().date() - timedelta(days=1)
        info = InsuranceInformation.model_validate(
            {"provider": "Unimed", "valid_until": yesterday},
            context={"rehydrate": True},
        )
        assert not info.is_valid()


class TestIdentifiers:

    def test_generated_ids_are_lowercase_uuid(self):
        pid = PatientId.generate()
        assert str(pid) == pid.value.lower()

    def test_uppercase_normalized(self):
        pid = PatientId.generate()
        assert PatientId(str(pid).upper()) == pid

    def test_malformed_id_rejected(self):
        with pytest.raises(ValidationError):
            PatientId("patient-1")

    def test_coerce_keeps_instance(self):
        pid = PatientId.generate()
        assert PatientId.coerce(pid) is pid
        assert PatientId.coerce(str(pid)) == pid

    def test_kinds_do_not_compare_equal(self):
        pid = PatientId.generate()
        assert DocumentId(str(pid)) != pid
