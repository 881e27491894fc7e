"""Enqueueing runs for asynchronous processing.

``HttpEnqueuer`` posts ``{"ingestRunId": ...}`` to the processing endpoint.
``RunSubmitter`` makes sure an enqueue failure is recorded on the run
instead of leaving it silently ``queued``, and re-submits stuck runs
without creating new ones.
"""

from __future__ import annotations

import logging
import time

import httpx

from ingestkit_ncc.config import NCCIngestConfig
from ingestkit_ncc.errors import EnqueueError, RunConflictError, RunNotFoundError
from ingestkit_ncc.models import (
    IN_FLIGHT_STATUSES,
    EnqueueResult,
    IngestRun,
    RunStatus,
    utc_now,
)
from ingestkit_ncc.protocols import Enqueuer, IngestStore

logger = logging.getLogger("ingestkit_ncc")

ENQUEUE_STAGE = "enqueue"
SUPERSEDED_STAGE = "superseded"


class HttpEnqueuer:
    """Enqueue runs with an authenticated HTTP POST.

    Satisfies :class:`~ingestkit_ncc.protocols.Enqueuer` via structural
    subtyping (no inheritance required).

    Parameters
    ----------
    url:
        Endpoint receiving the enqueue request.  Defaults to
        ``config.enqueue_url``.
    token:
        Bearer token.  Defaults to ``config.enqueue_token``.
    config:
        Pipeline configuration providing timeout and retry settings.
    """

    def __init__(
        self,
        url: str | None = None,
        token: str | None = None,
        config: NCCIngestConfig | None = None,
    ) -> None:
        self._config = config or NCCIngestConfig()
        url = url or self._config.enqueue_url
        if not url:
            raise ValueError("HttpEnqueuer needs a url or config.enqueue_url")
        self._url = url
        self._token = token if token is not None else self._config.enqueue_token

    def enqueue(self, ingest_run_id: str) -> None:
        """POST the run id, retrying transient failures with backoff.

        Raises
        ------
        EnqueueError
            When every attempt failed.  The message carries the underlying
            error text.
        """
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        payload = {"ingestRunId": ingest_run_id}

        last_exc: Exception | None = None
        max_attempts = 1 + self._config.backend_max_retries

        for attempt in range(max_attempts):
            try:
                response = httpx.post(
                    self._url,
                    json=payload,
                    headers=headers,
                    timeout=self._config.backend_timeout_seconds,
                )
                response.raise_for_status()
                logger.info("ingestkit_ncc | run=%s | enqueued", ingest_run_id)
                return
            except httpx.HTTPStatusError as exc:
                last_exc = exc
                if exc.response.status_code < 500:
                    break
                reason = f"HTTP {exc.response.status_code}"
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_exc = exc
                reason = type(exc).__name__

            if attempt < max_attempts - 1:
                sleep_time = self._config.backend_backoff_base * (2**attempt)
                logger.warning(
                    "ingestkit_ncc | run=%s | enqueue failed (%s, attempt %d/%d), "
                    "retrying in %.1fs",
                    ingest_run_id,
                    reason,
                    attempt + 1,
                    max_attempts,
                    sleep_time,
                )
                time.sleep(sleep_time)

        raise EnqueueError(
            f"Enqueue request failed: {last_exc}", run_id=ingest_run_id
        ) from last_exc


class RunSubmitter:
    """Submit queued runs and record enqueue failures on the run.

    Parameters
    ----------
    store:
        Persistence for run rows.
    enqueuer:
        The outbound trigger.
    """

    def __init__(self, store: IngestStore, enqueuer: Enqueuer) -> None:
        self._store = store
        self._enqueuer = enqueuer

    def submit(self, run_id: str) -> EnqueueResult:
        """Enqueue one run.

        On failure the run is marked ``failed`` with the underlying error
        message verbatim and the error is re-raised as ``EnqueueError``.
        """
        run = self._store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found", run_id=run_id)
        if run.status != RunStatus.QUEUED:
            raise RunConflictError(
                f"Run {run_id} is {run.status.value}; only queued runs are submitted",
                run_id=run_id,
            )

        try:
            self._enqueuer.enqueue(run_id)
        except Exception as exc:
            message = exc.message if isinstance(exc, EnqueueError) else str(exc)
            self._store.save_run(
                run.model_copy(
                    update={
                        "status": RunStatus.FAILED,
                        "error": message,
                        "failure_stage": ENQUEUE_STAGE,
                        "finished_at": utc_now(),
                    }
                )
            )
            logger.error(
                "ingestkit_ncc | run=%s | enqueue failed | %s", run_id, message
            )
            if isinstance(exc, EnqueueError):
                raise
            raise EnqueueError(message, run_id=run_id) from exc

        return EnqueueResult(run_id=run_id, volume=run.volume, success=True)

    def retry(self, edition_id: str) -> list[EnqueueResult]:
        """Re-submit every stuck run of an edition.

        Stuck runs are those still ``queued`` and those that failed at
        enqueue time; the latter move back to ``queued`` first.  No new run
        is ever created.  An enqueue-failed run whose (edition, volume)
        already has another run in flight is superseded instead of
        requeued.  Failures are reported per run, not raised.
        """
        candidates = [
            run
            for run in self._store.list_runs(
                edition_id, statuses=[RunStatus.QUEUED, RunStatus.FAILED]
            )
            if run.status == RunStatus.QUEUED or run.failure_stage == ENQUEUE_STAGE
        ]

        results: list[EnqueueResult] = []
        for run in candidates:
            if run.status == RunStatus.FAILED:
                active = self._in_flight(run)
                if active is not None:
                    results.append(self._supersede(run, active))
                    continue
                self._requeue(run)
            try:
                results.append(self.submit(run.id))
            except EnqueueError as exc:
                results.append(
                    EnqueueResult(
                        run_id=run.id,
                        volume=run.volume,
                        success=False,
                        error=exc.message,
                    )
                )

        logger.info(
            "ingestkit_ncc | edition=%s | retried=%d | succeeded=%d",
            edition_id,
            len(results),
            sum(1 for r in results if r.success),
        )
        return results

    def _in_flight(self, run: IngestRun) -> IngestRun | None:
        """Another in-flight run for the same (edition, volume), if any."""
        for other in self._store.list_runs(
            run.edition_id, run.volume, statuses=list(IN_FLIGHT_STATUSES)
        ):
            if other.id != run.id:
                return other
        return None

    def _supersede(self, run: IngestRun, active: IngestRun) -> EnqueueResult:
        message = f"Superseded by in-flight run {active.id}"
        self._store.save_run(
            run.model_copy(update={"error": message, "failure_stage": SUPERSEDED_STAGE})
        )
        logger.warning(
            "ingestkit_ncc | run=%s | not requeued | superseded by run=%s",
            run.id,
            active.id,
        )
        return EnqueueResult(
            run_id=run.id, volume=run.volume, success=False, error=message
        )

    def _requeue(self, run: IngestRun) -> None:
        self._store.save_run(
            run.model_copy(
                update={
                    "status": RunStatus.QUEUED,
                    "error": None,
                    "failure_stage": None,
                    "finished_at": None,
                }
            )
        )
