"""Dispatch clients — deliver flushed batches to the capture endpoint."""

import logging
import time
from typing import Callable, Optional

import httpx

from recall.config import get_settings
from recall.exceptions import DispatchError
from recall.ingestion.policy import Backoff

logger = logging.getLogger(__name__)

# 4xx statuses that say "try again later" rather than "this batch is bad"
RETRYABLE_STATUSES = (408, 425, 429)


class Dispatcher:
    """Shared failure bookkeeping for dispatch clients."""

    def __init__(self, backoff: Optional[Backoff] = None, clock: Callable[[], float] = time.monotonic):
        if backoff is None:
            capture = get_settings().capture
            backoff = Backoff(
                threshold=capture.failures_before_backoff,
                base=capture.backoff_base,
                maximum=capture.backoff_max,
            )
        self.backoff = backoff
        self.clock = clock

    @property
    def degraded(self) -> bool:
        return self.backoff.degraded

    def ready(self, now: Optional[float] = None) -> bool:
        return self.backoff.ready(self.clock() if now is None else now)

    def _failed(self, error: DispatchError) -> None:
        was_degraded = self.backoff.degraded
        delay = self.backoff.record_failure(self.clock())
        if self.backoff.degraded and not was_degraded:
            logger.warning(
                "Capture endpoint unavailable after %d attempts, backing off (%s)",
                self.backoff.failures, error,
            )
        elif delay:
            logger.debug("Dispatch failed again, next attempt in %.1fs", delay)

    def _refused(self, error: DispatchError) -> None:
        # The endpoint answered, so a refusal does not count toward backoff
        logger.error("Capture endpoint refused a batch: %s", error)

    def _succeeded(self) -> None:
        if self.backoff.degraded:
            logger.info("Capture endpoint reachable again, leaving backoff")
        self.backoff.record_success()

    async def send(self, chunks: list[dict], project_path: Optional[str] = None) -> dict:
        raise NotImplementedError

    async def aclose(self) -> None:
        pass


class CaptureClient(Dispatcher):
    """POSTs batches to the capture endpoint over HTTP.

    Connection errors, timeouts and every non-2xx status raise
    ``DispatchError``. A 4xx other than a retry-later status is marked
    permanent.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        project_path: Optional[str] = None,
        backoff: Optional[Backoff] = None,
        clock: Callable[[], float] = time.monotonic,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(backoff=backoff, clock=clock)
        capture = get_settings().capture
        self.url = url or capture.endpoint_url
        self.project_path = project_path
        self._client = httpx.AsyncClient(
            timeout=timeout if timeout is not None else capture.request_timeout,
            transport=transport,
        )

    async def send(self, chunks: list[dict], project_path: Optional[str] = None) -> dict:
        payload = {"chunks": chunks}
        path = project_path or self.project_path
        if path:
            payload["projectPath"] = path

        try:
            response = await self._client.post(self.url, json=payload)
            response.raise_for_status()
            result = response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            error = DispatchError(
                f"Capture endpoint returned {status}",
                status_code=status,
                permanent=400 <= status < 500 and status not in RETRYABLE_STATUSES,
            )
            if error.permanent:
                self._refused(error)
            else:
                self._failed(error)
            raise error from e
        except (httpx.HTTPError, ValueError) as e:
            error = DispatchError(f"Capture request failed: {e}")
            self._failed(error)
            raise error from e

        self._succeeded()
        logger.debug("Delivered %d chunks: %s", len(chunks), result)
        return {
            "processed": result.get("processed", 0),
            "totalConversations": result.get("totalConversations", 0),
            "currentSession": result.get("currentSession"),
        }

    async def aclose(self) -> None:
        await self._client.aclose()


class LocalDispatcher(Dispatcher):
    """Feeds batches straight into an in-process capture service."""

    def __init__(self, service=None, backoff: Optional[Backoff] = None, clock: Callable[[], float] = time.monotonic):
        super().__init__(backoff=backoff, clock=clock)
        self._service = service

    @property
    def service(self):
        if self._service is None:
            from recall.ingestion.pipeline import get_capture_service

            self._service = get_capture_service()
        return self._service

    async def send(self, chunks: list[dict], project_path: Optional[str] = None) -> dict:
        try:
            result = await self.service.process_batch(chunks, project_path=project_path)
        except ValueError as e:
            # Malformed chunks; the same batch would fail again
            error = DispatchError(f"Local capture rejected the batch: {e}", permanent=True)
            self._refused(error)
            raise error from e
        except Exception as e:
            error = DispatchError(f"Local capture failed: {e}")
            self._failed(error)
            raise error from e

        self._succeeded()
        return {
            "processed": result["processed"],
            "totalConversations": result["totalConversations"],
            "currentSession": result["currentSession"],
        }
