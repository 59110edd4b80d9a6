"""
Health record -> FHIR R4 conversion.

Maps the internal health-declaration structure onto Patient, Condition and
MedicationStatement resources, encrypts the kind-specific sensitive fields
one by one, and validates the result against the JSON schemas before
anything is transmitted.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Callable

from enrollment_pipeline.exceptions import UnsupportedResourceKind
from enrollment_pipeline.models.enrollment import HealthRecord, utcnow
from enrollment_pipeline.schemas.fhir import RESOURCE_SCHEMAS, SENSITIVE_FIELDS
from enrollment_pipeline.services.encryption import FieldCodec, is_envelope
from enrollment_pipeline.services.validation import validate_against_schema

logger = logging.getLogger(__name__)

SUPPORTED_KINDS = tuple(RESOURCE_SCHEMAS)

IDENTIFIER_SYSTEM = "urn:oid:2.16.840.1.113883.2.9.4.3.2"
CONDITION_CLINICAL_SYSTEM = "http://terminology.hl7.org/CodeSystem/condition-clinical"
SNOMED_SYSTEM = "http://snomed.info/sct"
RXNORM_SYSTEM = "http://www.nlm.nih.gov/research/umls/rxnorm"

LIST_PREFIX = "entry[]."


def _check_kind(resource_kind: str) -> None:
    if resource_kind not in RESOURCE_SCHEMAS:
        raise UnsupportedResourceKind(f"Unsupported FHIR resource kind: {resource_kind}")


def _apply_to_path(resource: dict[str, Any], path: str, fn: Callable[[Any], Any]) -> None:
    if path.startswith(LIST_PREFIX):
        field = path[len(LIST_PREFIX):]
        targets = resource.get("entry") or []
    else:
        field = path
        targets = [resource]
    for target in targets:
        if target.get(field) is not None:
            target[field] = fn(target[field])


def _as_entries(items: Any) -> list[dict[str, Any]]:
    entries = []
    for item in items or []:
        entries.append(item if isinstance(item, dict) else {"description": str(item)})
    return entries


def _notes(item: dict[str, Any]) -> dict[str, Any]:
    note = item.get("note")
    return {"note": [{"text": note}]} if note else {}


class FhirConverter:
    def __init__(self, codec: FieldCodec):
        self._codec = codec

    # -- mapping ----------------------------------------------------------

    def convert(self, health_record: HealthRecord, resource_kind: str) -> dict[str, Any]:
        """Build a FHIR resource of ``resource_kind`` with sensitive fields encrypted."""
        _check_kind(resource_kind)
        data = health_record.get_health_data(self._codec)
        last_updated = health_record.updated_at or health_record.submitted_at
        meta = {"versionId": "1"}
        if last_updated is not None:
            meta["lastUpdated"] = last_updated.isoformat()

        resource: dict[str, Any] = {
            "resourceType": resource_kind,
            "id": str(health_record.id),
            "meta": meta,
            "status": "final" if health_record.verified else "preliminary",
        }
        if resource_kind == "Patient":
            resource.update(self._map_patient(data))
        else:
            resource["subject"] = {"reference": f"Patient/{health_record.enrollment_id}"}
            if resource_kind == "Condition":
                resource["entry"] = self._map_conditions(data)
            else:
                resource["entry"] = self._map_medications(data)

        logger.info(
            "Converted health record %s to FHIR %s", health_record.id, resource_kind
        )
        return self.encrypt_sensitive_fields(resource, resource_kind)

    def convert_cached(self, health_record: HealthRecord, resource_kind: str) -> dict[str, Any]:
        """Convert, reusing the record's cached resource when one exists for this kind."""
        cache = dict(health_record.fhir_cache or {})
        if resource_kind in cache:
            return cache[resource_kind]
        resource = self.convert(health_record, resource_kind)
        cache[resource_kind] = resource
        health_record.fhir_cache = cache
        health_record.converted_at = utcnow()
        return resource

    @staticmethod
    def _map_patient(data: dict[str, Any]) -> dict[str, Any]:
        personal = {**data, **(data.get("personal") or {})}
        patient: dict[str, Any] = {
            "active": True,
            "identifier": [{"system": IDENTIFIER_SYSTEM, "value": personal.get("id_number")}],
            "name": [
                {
                    "use": "official",
                    "family": personal.get("last_name"),
                    "given": [personal.get("first_name")],
                }
            ],
            "gender": personal.get("gender"),
            "birthDate": personal.get("birth_date"),
        }
        telecom = []
        if personal.get("phone"):
            telecom.append({"system": "phone", "value": personal["phone"]})
        if personal.get("email"):
            telecom.append({"system": "email", "value": personal["email"]})
        if telecom:
            patient["telecom"] = telecom
        if personal.get("address"):
            address = personal["address"]
            patient["address"] = [address if isinstance(address, dict) else {"text": str(address)}]
        return patient

    @staticmethod
    def _map_conditions(data: dict[str, Any]) -> list[dict[str, Any]]:
        conditions = _as_entries(data.get("medical_history")) + [
            {**item, "active": True} for item in _as_entries(data.get("chronic_conditions"))
        ]
        return [
            {
                "clinicalStatus": {
                    "coding": [
                        {
                            "system": CONDITION_CLINICAL_SYSTEM,
                            "code": "active" if item.get("active", True) else "resolved",
                        }
                    ]
                },
                "code": {
                    "coding": [
                        {
                            "system": SNOMED_SYSTEM,
                            "code": item.get("code"),
                            "display": item.get("description"),
                        }
                    ]
                },
                "onsetDateTime": item.get("onset_date"),
                **_notes(item),
            }
            for item in conditions
        ]

    @staticmethod
    def _map_medications(data: dict[str, Any]) -> list[dict[str, Any]]:
        return [
            {
                "status": "active",
                "medicationCodeableConcept": {
                    "coding": [
                        {
                            "system": RXNORM_SYSTEM,
                            "code": item.get("code"),
                            "display": item.get("name") or item.get("description"),
                        }
                    ]
                },
                "dosage": [
                    {
                        "text": item.get("dosage"),
                        "timing": {
                            "repeat": {
                                "frequency": item.get("frequency"),
                                "period": item.get("period"),
                                "periodUnit": item.get("period_unit"),
                            }
                        },
                    }
                ],
                **_notes(item),
            }
            for item in _as_entries(data.get("current_medications"))
        ]

    # -- field-level encryption ----------------------------------------------

    def encrypt_sensitive_fields(self, resource: dict[str, Any], resource_kind: str) -> dict[str, Any]:
        _check_kind(resource_kind)
        encrypted = copy.deepcopy(resource)
        for path in SENSITIVE_FIELDS[resource_kind]:
            _apply_to_path(
                encrypted,
                path,
                lambda value: value if is_envelope(value) else self._codec.encrypt(value),
            )
        return encrypted

    def decrypt(
        self,
        resource: dict[str, Any],
        resource_kind: str,
        fields: list[str] | None = None,
    ) -> dict[str, Any]:
        """Decrypt sensitive fields; pass ``fields`` to disclose only some of them."""
        _check_kind(resource_kind)
        paths = SENSITIVE_FIELDS[resource_kind]
        if fields is not None:
            paths = tuple(p for p in paths if p in fields)
        decrypted = copy.deepcopy(resource)
        for path in paths:
            _apply_to_path(
                decrypted,
                path,
                lambda value: self._codec.decrypt(value) if is_envelope(value) else value,
            )
        return decrypted

    # -- validation -----------------------------------------------------------

    def validate(self, resource: dict[str, Any], resource_kind: str) -> bool:
        """Structural check: kind tag, required fields, field types."""
        if resource_kind not in RESOURCE_SCHEMAS:
            return False
        if resource.get("resourceType") != resource_kind:
            return False
        errors = validate_against_schema(resource, RESOURCE_SCHEMAS[resource_kind])
        if errors:
            logger.warning("FHIR %s failed validation: %s", resource_kind, "; ".join(errors))
            return False
        return True
