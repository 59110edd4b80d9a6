"""Tests for JSON schema validation of FHIR resources."""

from enrollment_pipeline.schemas.fhir import (
    FHIR_CONDITION_SCHEMA,
    FHIR_MEDICATION_STATEMENT_SCHEMA,
    FHIR_PATIENT_SCHEMA,
)
from enrollment_pipeline.services.validation import validate_against_schema


def test_valid_patient():
    record = {
        "resourceType": "Patient",
        "id": "p-1",
        "birthDate": "1990-01-15",
        "gender": "female",
    }
    errors = validate_against_schema(record, FHIR_PATIENT_SCHEMA)
    assert errors == []


def test_missing_required_fields():
    errors = validate_against_schema({"resourceType": "Condition"}, FHIR_CONDITION_SCHEMA)
    assert any("id" in e for e in errors)
    assert any("subject" in e for e in errors)


def test_invalid_date_format():
    record = {"resourceType": "Patient", "id": "p-1", "birthDate": "01/15/1990"}
    errors = validate_against_schema(record, FHIR_PATIENT_SCHEMA)
    assert len(errors) > 0


def test_encrypted_envelope_accepted_for_sensitive_field():
    record = {
        "resourceType": "Patient",
        "id": "p-1",
        "birthDate": {"kid": "k1", "alg": "fernet", "ciphertext": "gAAAA"},
    }
    assert validate_against_schema(record, FHIR_PATIENT_SCHEMA) == []


def test_errors_are_prefixed_with_their_path():
    record = {
        "resourceType": "MedicationStatement",
        "id": "m-1",
        "status": "final",
        "subject": {"reference": "Patient/1"},
        "entry": [{"status": "bogus", "medicationCodeableConcept": {"coding": []}}],
    }
    errors = validate_against_schema(record, FHIR_MEDICATION_STATEMENT_SCHEMA)
    assert errors and errors[0].startswith("entry/0/status:")


def test_unknown_top_level_field_rejected():
    record = {"resourceType": "Patient", "id": "p-1", "ssn": "123-45-6789"}
    assert validate_against_schema(record, FHIR_PATIENT_SCHEMA) != []
