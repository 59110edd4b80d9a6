"""
Wiring for the worker: one place that builds the shared integration
objects (breakers, locks, OCR pipeline, FHIR converter, HTTP sessions).
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

import requests

from enrollment_pipeline.config import settings
from enrollment_pipeline.services.cache import TTLCache
from enrollment_pipeline.services.circuit_breaker import BreakerRegistry, SqlBreakerStore
from enrollment_pipeline.services.emr import EmrClient, FailureHook
from enrollment_pipeline.services.encryption import FieldCodec
from enrollment_pipeline.services.fhir import FhirConverter
from enrollment_pipeline.services.locks import ProcessingLocks, SqlLockStore
from enrollment_pipeline.services.ocr import OcrPipeline, OcrProvider, TextractOcrProvider
from enrollment_pipeline.services.rate_limit import SlidingWindowRateLimiter, SqlRateLimitStore


@dataclass
class PipelineContext:
    codec: FieldCodec
    breakers: BreakerRegistry
    locks: ProcessingLocks
    ocr: OcrPipeline
    converter: FhirConverter
    emr_session: requests.Session
    emr_cache: TTLCache
    webhook_session: requests.Session
    clock: Callable[[], float] = time.time
    sleep: Callable[[float], None] = time.sleep

    def emr_client(self, on_failure: FailureHook | None = None) -> EmrClient:
        return EmrClient(
            self.converter,
            self.breakers.get("emr"),
            session=self.emr_session,
            cache=self.emr_cache,
            sleep=self.sleep,
            on_failure=on_failure,
        )


def build_context(
    ocr_provider: OcrProvider | None = None,
    session_factory=None,
    clock: Callable[[], float] = time.time,
    sleep: Callable[[float], None] = time.sleep,
) -> PipelineContext:
    """Production wiring: breaker, lock and rate-limit state in the database, Textract for OCR."""
    codec = FieldCodec()
    breakers = BreakerRegistry(SqlBreakerStore(session_factory), clock=clock)
    locks = ProcessingLocks(SqlLockStore(session_factory), clock=clock)
    ocr = OcrPipeline(
        ocr_provider or TextractOcrProvider(),
        breakers.get("ocr"),
        codec,
        rate_limiter=SlidingWindowRateLimiter(
            "ocr",
            settings.OCR_RATE_LIMIT_CALLS,
            settings.OCR_RATE_LIMIT_WINDOW_SECONDS,
            store=SqlRateLimitStore(session_factory),
            clock=clock,
        ),
        locks=locks,
        sleep=sleep,
    )
    return PipelineContext(
        codec=codec,
        breakers=breakers,
        locks=locks,
        ocr=ocr,
        converter=FhirConverter(codec),
        emr_session=requests.Session(),
        emr_cache=TTLCache(settings.EMR_CACHE_TTL_SECONDS, clock=clock),
        webhook_session=requests.Session(),
        clock=clock,
        sleep=sleep,
    )
