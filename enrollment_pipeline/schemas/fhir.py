"""
FHIR R4 JSON schemas for the resources transmitted to the EMR.

Pragmatic subsets: they pin the structural elements the EMR contract
depends on. Fields listed as sensitive may arrive either in clear form or
as an encrypted envelope, so their schemas accept both.
"""

FHIR_VERSION = "4.0.1"

ENCRYPTED_FIELD_SCHEMA: dict = {
    "type": "object",
    "required": ["kid", "alg", "ciphertext"],
    "properties": {
        "kid": {"type": "string", "minLength": 1},
        "alg": {"type": "string", "const": "fernet"},
        "ciphertext": {"type": "string", "minLength": 1},
    },
    "additionalProperties": False,
}


def _sensitive(schema: dict) -> dict:
    return {"anyOf": [schema, ENCRYPTED_FIELD_SCHEMA]}


_META_SCHEMA: dict = {
    "type": "object",
    "required": ["versionId"],
    "properties": {
        "versionId": {"type": "string"},
        "lastUpdated": {"type": "string"},
    },
}

_REFERENCE_SCHEMA: dict = {
    "type": "object",
    "required": ["reference"],
    "properties": {"reference": {"type": "string", "minLength": 1}},
}

_CODING_SCHEMA: dict = {
    "type": "object",
    "required": ["system"],
    "properties": {
        "system": {"type": "string"},
        "code": {"type": ["string", "null"]},
        "display": {"type": ["string", "null"]},
    },
}

_CODEABLE_CONCEPT_SCHEMA: dict = {
    "type": "object",
    "required": ["coding"],
    "properties": {"coding": {"type": "array", "items": _CODING_SCHEMA}},
}

_STATUS_SCHEMA: dict = {"type": "string", "enum": ["final", "preliminary"]}


FHIR_PATIENT_SCHEMA: dict = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "FHIR Patient (simplified)",
    "type": "object",
    "required": ["resourceType", "id"],
    "properties": {
        "resourceType": {"type": "string", "const": "Patient"},
        "id": {"type": "string", "minLength": 1},
        "meta": _META_SCHEMA,
        "status": _STATUS_SCHEMA,
        "active": {"type": "boolean"},
        "identifier": _sensitive(
            {
                "type": "array",
                "items": {
                    "type": "object",
                    "required": ["system"],
                    "properties": {
                        "system": {"type": "string"},
                        "value": {"type": ["string", "null"]},
                    },
                },
            }
        ),
        "name": _sensitive(
            {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "use": {"type": "string"},
                        "family": {"type": ["string", "null"]},
                        "given": {"type": "array", "items": {"type": ["string", "null"]}},
                    },
                },
            }
        ),
        "telecom": _sensitive({"type": "array", "items": {"type": "object"}}),
        "address": _sensitive({"type": "array", "items": {"type": "object"}}),
        "gender": {"type": ["string", "null"], "enum": ["male", "female", "other", "unknown", None]},
        "birthDate": _sensitive({"type": ["string", "null"], "pattern": "^\\d{4}-\\d{2}-\\d{2}$"}),
    },
    "additionalProperties": False,
}


FHIR_CONDITION_SCHEMA: dict = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "FHIR Condition list (simplified)",
    "type": "object",
    "required": ["resourceType", "id", "subject"],
    "properties": {
        "resourceType": {"type": "string", "const": "Condition"},
        "id": {"type": "string", "minLength": 1},
        "meta": _META_SCHEMA,
        "status": _STATUS_SCHEMA,
        "subject": _REFERENCE_SCHEMA,
        "entry": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["clinicalStatus", "code"],
                "properties": {
                    "clinicalStatus": _CODEABLE_CONCEPT_SCHEMA,
                    "code": _sensitive(_CODEABLE_CONCEPT_SCHEMA),
                    "onsetDateTime": {"type": ["string", "null"]},
                    "note": _sensitive({"type": "array", "items": {"type": "object"}}),
                },
            },
        },
    },
    "additionalProperties": False,
}


FHIR_MEDICATION_STATEMENT_SCHEMA: dict = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "FHIR MedicationStatement list (simplified)",
    "type": "object",
    "required": ["resourceType", "id", "subject", "status"],
    "properties": {
        "resourceType": {"type": "string", "const": "MedicationStatement"},
        "id": {"type": "string", "minLength": 1},
        "meta": _META_SCHEMA,
        "status": _STATUS_SCHEMA,
        "subject": _REFERENCE_SCHEMA,
        "entry": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["status", "medicationCodeableConcept"],
                "properties": {
                    "status": {"type": "string", "enum": ["active", "completed", "stopped"]},
                    "medicationCodeableConcept": _CODEABLE_CONCEPT_SCHEMA,
                    "dosage": _sensitive({"type": "array", "items": {"type": "object"}}),
                    "note": _sensitive({"type": "array", "items": {"type": "object"}}),
                },
            },
        },
    },
    "additionalProperties": False,
}


RESOURCE_SCHEMAS: dict[str, dict] = {
    "Patient": FHIR_PATIENT_SCHEMA,
    "Condition": FHIR_CONDITION_SCHEMA,
    "MedicationStatement": FHIR_MEDICATION_STATEMENT_SCHEMA,
}

# Field paths encrypted per resource kind; "entry[]." addresses every list item.
SENSITIVE_FIELDS: dict[str, tuple[str, ...]] = {
    "Patient": ("identifier", "name", "telecom", "address", "birthDate"),
    "Condition": ("entry[].code", "entry[].note"),
    "MedicationStatement": ("entry[].dosage", "entry[].note"),
}
