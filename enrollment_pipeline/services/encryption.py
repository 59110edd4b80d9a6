"""
Field-level encryption for PHI.

Every sensitive value is encrypted on its own and wrapped in an envelope
that records which key produced it::

    {"kid": "2024-01", "alg": "fernet", "ciphertext": "gAAAA..."}

so individual fields can be decrypted for minimal-disclosure reads, and
re-encrypted under a new key without touching the rest of the record.
Fernet uses a fresh IV per call, so ciphertext differs run to run.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from enrollment_pipeline.config import settings
from enrollment_pipeline.exceptions import ConfigurationError, ValidationError

logger = logging.getLogger(__name__)

ALGORITHM = "fernet"


def is_envelope(value: Any) -> bool:
    return isinstance(value, dict) and {"kid", "alg", "ciphertext"} <= value.keys()


class FieldCodec:
    """Encrypts and decrypts individual values against a key ring."""

    def __init__(self, keys: dict[str, str] | None = None, active_key_id: str | None = None):
        keys = keys if keys is not None else settings.PHI_ENCRYPTION_KEYS
        if not keys:
            if settings.ENVIRONMENT != "development":
                raise ConfigurationError(
                    f"PHI_ENCRYPTION_KEYS must be set when ENVIRONMENT is '{settings.ENVIRONMENT}'"
                )
            # Ephemeral keys differ per process, so this is for local development only.
            logger.warning("No PHI encryption keys configured; generating an ephemeral key")
            keys = {"dev": Fernet.generate_key().decode()}
        self._fernets = {
            kid: Fernet(key.encode() if isinstance(key, str) else key) for kid, key in keys.items()
        }
        self.active_key_id = active_key_id or settings.PHI_ACTIVE_KEY_ID or next(iter(keys))
        if self.active_key_id not in self._fernets:
            raise ValueError(f"Active key id '{self.active_key_id}' is not in the key ring")

    def encrypt(self, value: Any) -> dict[str, str]:
        """Serialize ``value`` to JSON and encrypt it under the active key."""
        token = self._fernets[self.active_key_id].encrypt(json.dumps(value).encode())
        return {"kid": self.active_key_id, "alg": ALGORITHM, "ciphertext": token.decode()}

    def decrypt(self, envelope: dict[str, str]) -> Any:
        if not is_envelope(envelope):
            raise ValidationError("Value is not an encrypted field envelope")
        fernet = self._fernets.get(envelope["kid"])
        if fernet is None:
            raise ValidationError(f"Unknown encryption key id '{envelope['kid']}'")
        try:
            plaintext = fernet.decrypt(envelope["ciphertext"].encode())
        except InvalidToken as exc:
            raise ValidationError("Encrypted field failed integrity check") from exc
        return json.loads(plaintext)

    def rotate(self, envelope: dict[str, str]) -> dict[str, str]:
        """Re-encrypt an envelope under the active key."""
        return self.encrypt(self.decrypt(envelope))
