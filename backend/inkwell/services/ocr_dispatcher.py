"""
Inkwell Backend: OCR Dispatcher
===============================

What:  Hands a confirmed asset to the external text-extraction worker.
How:   `dispatch(job)` delivers the job and returns once the worker has
       acknowledged it; the extracted text arrives later through the
       worker's callback. Any failure to deliver raises DispatchFailureError.
Who:   Called by OcrDispatchPool workers, never from a request coroutine.

Implementations:
    - HttpOcrDispatcher: POSTs the job to the worker over HTTP (default)
    - tests provide an in-memory recording dispatcher

Resilience Strategy (HttpOcrDispatcher):
    1. Tenacity retry with exponential backoff + jitter for transient
       failures: transport errors, 5xx, 429
    2. 4xx (other than 429) means the worker rejected the job; no retry
    3. Circuit breaker around the whole retried call, so a dead worker
       costs one fast rejection per job instead of a full retry cycle
"""

import logging
import time
import uuid
from abc import ABC, abstractmethod
from typing import Optional

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from inkwell.config import settings
from inkwell.exceptions import DispatchFailureError
from inkwell.schemas.asset import ExtractionJob
from inkwell.services.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

PROCESS_PATH = "/api/ocr/process"


class OcrDispatcher(ABC):
    """
    Abstract interface for delivering extraction jobs to an OCR worker.

    Contract:
        - dispatch() returns only after the worker accepted the job
        - every delivery failure, including an open circuit, surfaces as
          DispatchFailureError so the pool has a single failure path
    """

    @abstractmethod
    async def dispatch(self, job: ExtractionJob) -> None:
        """
        Deliver one extraction job.

        Raises:
            DispatchFailureError: The worker rejected the job, or could not
                be reached after all retries
            CircuitBreakerOpenError: Too many recent failures; not attempted
        """
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Return True if the worker is reachable."""
        ...

    @property
    def circuit_state(self) -> str:
        return CircuitBreaker.CLOSED

    async def aclose(self) -> None:
        return None


class _TransientStatusError(Exception):
    """A worker response that is worth retrying (5xx, 429)."""

    def __init__(self, status_code: int):
        super().__init__(f"OCR worker responded with HTTP {status_code}")
        self.status_code = status_code


class HttpOcrDispatcher(OcrDispatcher):
    """
    Delivers jobs with `POST {ocr_worker_url}/api/ocr/process`.

    Request body:
        {"assetId": "<uuid>", "storageKey": "users/...", "mimeType": "application/pdf"}

    Any 2xx response is the acknowledgement.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        min_wait: Optional[float] = None,
        max_wait: Optional[float] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: Worker base URL (default: settings.ocr_worker_url)
            timeout: Per-request timeout in seconds
            max_attempts / min_wait / max_wait: Retry policy; tests pass 0 waits
            circuit_breaker: Override the breaker built from settings
            transport: httpx transport override (tests use httpx.MockTransport)
        """
        self.base_url = (base_url or settings.ocr_worker_url).rstrip("/")
        self.max_attempts = max_attempts or settings.retry_max_attempts
        self.min_wait = settings.retry_min_wait if min_wait is None else min_wait
        self.max_wait = settings.retry_max_wait if max_wait is None else max_wait

        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=settings.cb_failure_threshold,
            recovery_timeout=settings.cb_recovery_timeout,
        )
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or settings.ocr_request_timeout,
            transport=transport,
        )

        logger.info(
            "HttpOcrDispatcher initialized with worker=%s, "
            "retry(max_attempts=%d), circuit_breaker(threshold=%d, recovery=%ds)",
            self.base_url,
            self.max_attempts,
            self.circuit_breaker.failure_threshold,
            self.circuit_breaker.recovery_timeout,
        )

    @property
    def circuit_state(self) -> str:
        return self.circuit_breaker.state

    async def dispatch(self, job: ExtractionJob) -> None:
        """
        Flow:
            1. Check circuit breaker → may raise CircuitBreakerOpenError
            2. POST with retry (transient failures only)
            3. Record success/failure in circuit breaker
        """
        request_id = str(uuid.uuid4())[:8]
        self.circuit_breaker.can_execute()

        logger.info("[%s] Dispatching OCR job for asset %s", request_id, job.asset_id)
        try:
            async for attempt in self._retrying():
                with attempt:
                    await self._post(job, request_id)
        except DispatchFailureError:
            # 4xx: the worker is up and answered; it does not count against the breaker
            self.circuit_breaker.record_success()
            raise
        except (httpx.TransportError, _TransientStatusError) as e:
            self.circuit_breaker.record_failure()
            logger.error(
                "[%s] OCR dispatch for asset %s failed after %d attempts: %s",
                request_id,
                job.asset_id,
                self.max_attempts,
                str(e),
            )
            raise DispatchFailureError(
                message="OCR worker could not be reached after multiple attempts",
                context={
                    "asset_id": str(job.asset_id),
                    "request_id": request_id,
                    "attempts": self.max_attempts,
                    "error_type": type(e).__name__,
                },
            ) from e

        self.circuit_breaker.record_success()

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type((httpx.TransportError, _TransientStatusError)),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential_jitter(
                multiplier=self.min_wait,
                max=self.max_wait,
                jitter=1 if self.max_wait else 0,
            ),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    async def _post(self, job: ExtractionJob, request_id: str) -> None:
        start_time = time.time()
        response = await self._client.post(
            PROCESS_PATH,
            json={
                "assetId": str(job.asset_id),
                "storageKey": job.storage_key,
                "mimeType": job.mime_type,
            },
            headers={"X-Request-ID": request_id},
        )
        duration_ms = (time.time() - start_time) * 1000

        if response.status_code == 429 or response.status_code >= 500:
            logger.warning(
                "[%s] OCR worker returned %d after %.0fms",
                request_id,
                response.status_code,
                duration_ms,
            )
            raise _TransientStatusError(response.status_code)

        if response.status_code >= 400:
            raise DispatchFailureError(
                message="OCR worker rejected the extraction request",
                context={
                    "asset_id": str(job.asset_id),
                    "request_id": request_id,
                    "status_code": response.status_code,
                },
            )

        logger.info(
            "[%s] OCR worker accepted asset %s in %.0fms",
            request_id,
            job.asset_id,
            duration_ms,
        )

    async def health_check(self) -> bool:
        try:
            response = await self._client.get("/health", timeout=5.0)
            return response.status_code < 500
        except httpx.HTTPError as e:
            logger.warning("OCR worker health check failed: %s", str(e))
            return False

    async def aclose(self) -> None:
        await self._client.aclose()
