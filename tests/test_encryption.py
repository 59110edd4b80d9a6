"""Tests for field-level PHI encryption and the health record model."""

import pytest
from cryptography.fernet import Fernet

from enrollment_pipeline.config import settings
from enrollment_pipeline.exceptions import ConfigurationError, ValidationError
from enrollment_pipeline.models.enrollment import HealthRecord
from enrollment_pipeline.pipeline.context import build_context
from enrollment_pipeline.services.encryption import FieldCodec, is_envelope


def test_envelope_carries_key_id_and_hides_plaintext(codec):
    original = {"ssn": "123-45-6789"}
    envelope = codec.encrypt(original)

    assert is_envelope(envelope)
    assert envelope["kid"] == "k1"
    assert envelope["alg"] == "fernet"
    assert "123-45-6789" not in envelope["ciphertext"]
    assert codec.decrypt(envelope) == original


def test_same_value_encrypts_differently_each_time(codec):
    assert codec.encrypt("penicillin")["ciphertext"] != codec.encrypt("penicillin")["ciphertext"]


def test_missing_keys_outside_development_fail_fast(monkeypatch):
    monkeypatch.setattr(settings, "ENVIRONMENT", "production")
    monkeypatch.setattr(settings, "PHI_ENCRYPTION_KEYS", {})

    with pytest.raises(ConfigurationError, match="PHI_ENCRYPTION_KEYS"):
        FieldCodec()


def test_worker_wiring_refuses_to_start_without_production_keys(monkeypatch, ocr_provider, session_factory):
    monkeypatch.setattr(settings, "ENVIRONMENT", "staging")
    monkeypatch.setattr(settings, "PHI_ENCRYPTION_KEYS", {})

    with pytest.raises(ConfigurationError):
        build_context(ocr_provider=ocr_provider, session_factory=session_factory)


def test_development_falls_back_to_an_ephemeral_key(monkeypatch):
    monkeypatch.setattr(settings, "ENVIRONMENT", "development")
    monkeypatch.setattr(settings, "PHI_ENCRYPTION_KEYS", {})
    monkeypatch.setattr(settings, "PHI_ACTIVE_KEY_ID", "")

    codec = FieldCodec()

    assert codec.active_key_id == "dev"
    assert codec.decrypt(codec.encrypt("x")) == "x"


def test_unknown_key_id_is_rejected(codec):
    envelope = codec.encrypt("x")
    envelope["kid"] = "retired"
    with pytest.raises(ValidationError, match="Unknown encryption key"):
        codec.decrypt(envelope)


def test_tampered_ciphertext_is_rejected(codec):
    envelope = codec.encrypt("x")
    envelope["ciphertext"] = envelope["ciphertext"][:-4] + "AAAA"
    with pytest.raises(ValidationError):
        codec.decrypt(envelope)


def test_rotation_moves_fields_to_the_active_key(codec):
    old_key = Fernet.generate_key().decode()
    old = FieldCodec(keys={"k0": old_key}, active_key_id="k0")
    record = HealthRecord()
    record.set_health_data(
        {"medical_history": ["asthma"], "current_medications": [], "allergies": ["latex"]}, old
    )

    ring = FieldCodec(keys={"k0": old_key, "k1": Fernet.generate_key().decode()}, active_key_id="k1")
    assert record.rotate_keys(ring) == 2
    assert record.health_data["allergies"]["kid"] == "k1"
    assert record.get_field("allergies", ring) == ["latex"]
    assert record.rotate_keys(ring) == 0


def test_health_record_encrypts_each_sensitive_field_independently(codec):
    record = HealthRecord()
    record.set_health_data(
        {
            "medical_history": ["asthma"],
            "current_medications": ["salbutamol"],
            "allergies": [],
            "smoker": False,
        },
        codec,
        sensitive=["medical_history", "allergies", "family_history"],
    )

    assert is_envelope(record.health_data["medical_history"])
    assert is_envelope(record.health_data["allergies"])
    assert record.health_data["current_medications"] == ["salbutamol"]
    assert record.sensitive_fields == ["medical_history", "allergies"]
    assert record.get_health_data(codec, fields=["medical_history"]) == {"medical_history": ["asthma"]}


def test_missing_required_health_fields_are_rejected(codec):
    with pytest.raises(ValidationError, match="current_medications"):
        HealthRecord().set_health_data({"medical_history": [], "allergies": []}, codec)
