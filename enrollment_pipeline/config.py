import json
import os

from dotenv import load_dotenv

load_dotenv()


def _json_env(name: str, default: dict) -> dict:
    raw = os.getenv(name, "")
    if not raw:
        return dict(default)
    return json.loads(raw)


def _bool_env(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).strip().lower() in ("1", "true", "yes", "on")


DEFAULT_CONFIDENCE_THRESHOLDS = {
    "id_document": 0.99,
    "proof_of_address": 0.95,
    "health_declaration": 0.99,
    "medical_record": 0.95,
}


class Settings:
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./enrollment_pipeline.db")
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # PHI field-level encryption: {"<key id>": "<fernet key>"}
    PHI_ENCRYPTION_KEYS: dict = _json_env("PHI_ENCRYPTION_KEYS", {})
    PHI_ACTIVE_KEY_ID: str = os.getenv("PHI_ACTIVE_KEY_ID", "")

    # Enrollment
    REQUIRED_DOCUMENTS_COUNT: int = int(os.getenv("REQUIRED_DOCUMENTS_COUNT", "1"))

    # OCR
    AWS_REGION: str = os.getenv("AWS_REGION", "us-east-1")
    OCR_S3_BUCKET: str = os.getenv("OCR_S3_BUCKET", "")
    OCR_CONFIDENCE_THRESHOLDS: dict = _json_env(
        "OCR_CONFIDENCE_THRESHOLDS", DEFAULT_CONFIDENCE_THRESHOLDS
    )
    OCR_DEFAULT_CONFIDENCE_THRESHOLD: float = float(
        os.getenv("OCR_DEFAULT_CONFIDENCE_THRESHOLD", "0.95")
    )
    OCR_ALLOWED_FILE_TYPES: tuple = tuple(
        os.getenv("OCR_ALLOWED_FILE_TYPES", "pdf,jpg,png").split(",")
    )
    OCR_MAX_FILE_SIZE_BYTES: int = int(os.getenv("OCR_MAX_FILE_SIZE_BYTES", str(10 * 1024 * 1024)))
    OCR_MAX_ATTEMPTS: int = int(os.getenv("OCR_MAX_ATTEMPTS", "3"))
    OCR_RETRY_BACKOFF_SECONDS: float = float(os.getenv("OCR_RETRY_BACKOFF_SECONDS", "60"))
    OCR_MAX_POLLS: int = int(os.getenv("OCR_MAX_POLLS", "30"))
    OCR_POLL_INTERVAL_SECONDS: float = float(os.getenv("OCR_POLL_INTERVAL_SECONDS", "2"))
    OCR_RATE_LIMIT_CALLS: int = int(os.getenv("OCR_RATE_LIMIT_CALLS", "100"))
    OCR_RATE_LIMIT_WINDOW_SECONDS: float = float(os.getenv("OCR_RATE_LIMIT_WINDOW_SECONDS", "60"))

    # EMR
    EMR_BASE_URL: str = os.getenv("EMR_BASE_URL", "https://emr.example.com")
    EMR_API_TOKEN: str = os.getenv("EMR_API_TOKEN", "")
    EMR_TIMEOUT_SECONDS: float = float(os.getenv("EMR_TIMEOUT_SECONDS", "30"))
    EMR_MAX_ATTEMPTS: int = int(os.getenv("EMR_MAX_ATTEMPTS", "3"))
    EMR_RETRY_BACKOFF_SECONDS: float = float(os.getenv("EMR_RETRY_BACKOFF_SECONDS", "5"))
    EMR_CACHE_TTL_SECONDS: float = float(os.getenv("EMR_CACHE_TTL_SECONDS", "3600"))
    EMR_WEBHOOK_SECRET: str = os.getenv("EMR_WEBHOOK_SECRET", "")

    # Outbound webhooks
    WEBHOOK_TIMEOUT_SECONDS: float = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "30"))
    WEBHOOK_MAX_RETRIES: int = int(os.getenv("WEBHOOK_MAX_RETRIES", "3"))
    WEBHOOK_BACKOFF_BASE_SECONDS: float = float(os.getenv("WEBHOOK_BACKOFF_BASE_SECONDS", "60"))
    WEBHOOK_SIGNATURE_TOLERANCE_SECONDS: int = int(
        os.getenv("WEBHOOK_SIGNATURE_TOLERANCE_SECONDS", "300")
    )
    WEBHOOK_MAX_PAYLOAD_BYTES: int = int(os.getenv("WEBHOOK_MAX_PAYLOAD_BYTES", str(5 * 1024 * 1024)))
    WEBHOOK_REQUIRE_HTTPS: bool = _bool_env("WEBHOOK_REQUIRE_HTTPS", True)

    # Circuit breakers
    BREAKER_FAILURE_THRESHOLD: int = int(os.getenv("BREAKER_FAILURE_THRESHOLD", "5"))
    BREAKER_COOLDOWN_SECONDS: float = float(os.getenv("BREAKER_COOLDOWN_SECONDS", "300"))

    # Worker
    PROCESSING_LOCK_TTL_SECONDS: float = float(os.getenv("PROCESSING_LOCK_TTL_SECONDS", "900"))
    WORKER_POLL_INTERVAL_SECONDS: float = float(os.getenv("WORKER_POLL_INTERVAL_SECONDS", "1"))


settings = Settings()
