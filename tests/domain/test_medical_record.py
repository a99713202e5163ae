"""Tests for clinical values, the medical record entity and timeline building."""

from datetime import timedelta

import pytest

from clinical_vault.domain.clinical_values import Medication, TreatmentPlan
from clinical_vault.domain.enums import TimelineEventType
from clinical_vault.domain.identifiers import PatientId
from clinical_vault.domain.medical_record import MedicalRecord, build_timeline
from clinical_vault.domain.utils import utc_now
from clinical_vault.domain.validation import build

from tests.factories import (
    days_ago,
    make_allergy,
    make_assessment,
    make_diagnosis,
    make_medication,
    make_progress_note,
    make_treatment_plan,
    new_user_id,
)


@pytest.fixture
def record():
    return MedicalRecord(patient_id=PatientId.generate())


class TestClinicalValues:

    def test_diagnosis_code_uppercased(self):
        assert make_diagnosis(code="f41.1").code == "F41.1"

    def test_future_diagnosis_rejected(self):
        with pytest.raises(ValueError):
            make_diagnosis(when=utc_now() + timedelta(days=1))

    def test_medication_end_before_start(self):
        start = days_ago(10).date()
        result = build(Medication, {
            "name": "Sertraline", "dosage": "50mg", "frequency": "daily",
            "start_date": start, "end_date": start - timedelta(days=1),
            "prescribed_by": "Dr. Ana Souza",
        })
        assert result.error_details["violations"][0]["code"] == "end_before_start"

    def test_medication_active_window(self):
        medication = make_medication(start=days_ago(10).date(), end=days_ago(2).date())
        assert not medication.is_active()
        assert medication.is_active(on=days_ago(5).date())

    def test_treatment_plan_duration_bounds(self):
        result = build(TreatmentPlan, {
            "description": "CBT", "goals": ("Sleep",), "start_date": days_ago(1).date(),
            "frequency": "weekly", "duration_minutes": 481,
        })
        assert result.error_details["violations"][0]["code"] == "out_of_range"

    def test_treatment_plan_requires_goal(self):
        result = build(TreatmentPlan, {
            "description": "CBT", "goals": (), "start_date": days_ago(1).date(),
            "frequency": "weekly", "duration_minutes": 50,
        })
        assert result.error_details["violations"][0]["code"] == "goals_required"

    def test_severe_allergy(self):
        assert make_allergy().is_severe()


class TestMedicalRecord:

    def test_add_returns_new_record(self, record):
        updated = record.add_diagnosis(make_diagnosis())
        assert len(updated.diagnoses) == 1
        assert record.diagnoses == ()
        assert updated.id == record.id

    def test_collections_append_in_order(self, record):
        updated = record.add_medication(make_medication("A")).add_medication(make_medication("B"))
        assert [m.name for m in updated.medications] == ["A", "B"]

    def test_treatment_plan_becomes_history(self, record):
        plan = make_treatment_plan()
        updated = record.update_treatment_plan(plan)
        assert updated.treatment_history[0].id == plan.id
        assert updated.treatment_history[0].goals == plan.goals

    def test_latest_assessment(self, record):
        author = new_user_id()
        older = make_assessment(author, when=days_ago(20))
        newer = make_assessment(author, when=days_ago(2))
        updated = record.add_assessment(newer).add_assessment(older)
        assert updated.latest_assessment() == newer
        assert record.latest_assessment() is None

    def test_active_medications(self, record):
        updated = (
            record
            .add_medication(make_medication("Active"))
            .add_medication(make_medication("Stopped", start=days_ago(30).date(), end=days_ago(3).date()))
        )
        assert [m.name for m in updated.active_medications()] == ["Active"]

    def test_reassign(self, record):
        other = PatientId.generate()
        assert record.reassign(other).patient_id == other


class TestTimeline:

    def test_events_sorted_oldest_first(self, record):
        author = new_user_id()
        updated = (
            record
            .add_progress_note(make_progress_note(author, when=days_ago(1)))
            .add_diagnosis(make_diagnosis(when=days_ago(50)))
            .add_assessment(make_assessment(author, when=days_ago(10)))
        )
        events = updated.timeline()
        assert [e.event_type for e in events] == [
            TimelineEventType.DIAGNOSIS,
            TimelineEventType.ASSESSMENT,
            TimelineEventType.PROGRESS_NOTE,
        ]

    def test_descriptions(self, record):
        updated = (
            record
            .add_diagnosis(make_diagnosis())
            .add_medication(make_medication())
            .add_allergy(make_allergy())
        )
        descriptions = {e.event_type: e.description for e in updated.timeline()}
        assert descriptions[TimelineEventType.DIAGNOSIS] == "Diagnosis: F41.1 - Generalized anxiety disorder"
        assert descriptions[TimelineEventType.MEDICATION] == "Medication: Sertraline 50mg"
        assert descriptions[TimelineEventType.ALLERGY] == "Allergy: Penicillin"

    def test_across_records(self):
        pid = PatientId.generate()
        first = MedicalRecord(patient_id=pid).add_diagnosis(make_diagnosis(when=days_ago(5)))
        second = MedicalRecord(patient_id=pid).add_diagnosis(make_diagnosis(code="F32.0", when=days_ago(9)))
        events = build_timeline([first, second])
        assert [e.record_id for e in events] == [second.id, first.id]

    def test_equal_timestamps_keep_insertion_order(self):
        pid = PatientId.generate()
        author = new_user_id()
        same_day = days_ago(7)
        first = (
            MedicalRecord(patient_id=pid)
            .add_progress_note(make_progress_note(author, when=days_ago(1)))
            .add_diagnosis(make_diagnosis(code="F41.1", when=same_day))
            .add_diagnosis(make_diagnosis(code="F32.0", when=same_day))
        )
        second = (
            MedicalRecord(patient_id=pid)
            .add_diagnosis(make_diagnosis(code="F43.1", when=same_day))
            .add_diagnosis(make_diagnosis(code="F40.1", when=days_ago(40)))
        )

        events = build_timeline([first, second])

        assert len(events) == 5
        assert [e.description.split(" - ")[0] for e in events] == [
            "Diagnosis: F40.1",
            "Diagnosis: F41.1",
            "Diagnosis: F32.0",
            "Diagnosis: F43.1",
            "Progress note (observation)",
        ]
        assert [e.occurred_at for e in events] == sorted(e.occurred_at for e in events)

    def test_dates_and_datetimes_mix(self, record):
        updated = record.update_treatment_plan(make_treatment_plan(start=days_ago(3).date()))
        updated = updated.add_diagnosis(make_diagnosis(when=days_ago(4)))
        events = updated.timeline()
        assert events[0].event_type == TimelineEventType.DIAGNOSIS
        assert all(e.occurred_at.tzinfo is not None for e in events)
