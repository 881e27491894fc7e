"""Queue consumer for ``{"ingestRunId": ...}`` messages.

Each message runs one archive to completion.  A message is acknowledged or
handed back for retry only after the run reached ``done`` or ``failed``,
so a crash mid-run leaves it available for redelivery.  Redelivery is safe
because every run purges its previous outputs first.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterable, Mapping
from typing import Any

from ingestkit_ncc.errors import RunNotFoundError
from ingestkit_ncc.models import MessageAction
from ingestkit_ncc.orchestrator import RunOrchestrator
from ingestkit_ncc.protocols import QueueMessage

logger = logging.getLogger("ingestkit_ncc")


def run_id_from_body(body: Any) -> str | None:
    """Extract ``ingestRunId`` from a dict, JSON string or JSON bytes body."""
    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8", errors="replace")
    if isinstance(body, str):
        try:
            body = json.loads(body)
        except json.JSONDecodeError:
            return None
    if not isinstance(body, Mapping):
        return None
    run_id = body.get("ingestRunId")
    return run_id if isinstance(run_id, str) and run_id else None


class IngestWorker:
    """Process queue messages with a :class:`RunOrchestrator`."""

    def __init__(self, orchestrator: RunOrchestrator) -> None:
        self._orchestrator = orchestrator

    def handle(self, body: Any) -> MessageAction:
        """Run the message's ingestion and decide its fate.

        Invalid messages and unknown runs are acknowledged, since
        redelivering them can never succeed.  Any other exception asks for
        a retry; the run is already recorded as ``failed`` by then.
        """
        run_id = run_id_from_body(body)
        if run_id is None:
            logger.warning("ingestkit_ncc | message without ingestRunId | acked")
            return MessageAction.ACK

        try:
            result = self._orchestrator.run_to_completion(run_id)
        except RunNotFoundError as exc:
            logger.warning("ingestkit_ncc | run=%s | %s | acked", run_id, exc.message)
            return MessageAction.ACK
        except Exception:  # noqa: BLE001
            logger.exception("ingestkit_ncc | run=%s | processing failed | retry", run_id)
            return MessageAction.RETRY

        logger.info(
            "ingestkit_ncc | run=%s | status=%s | skipped=%s | %.2fs",
            run_id,
            result.status.value,
            result.skipped,
            result.processing_time_seconds,
        )
        return MessageAction.ACK

    def process_batch(self, messages: Iterable[QueueMessage]) -> list[MessageAction]:
        """Handle messages one at a time, acking or retrying each."""
        actions: list[MessageAction] = []
        for message in messages:
            action = self.handle(message.body)
            if action == MessageAction.ACK:
                message.ack()
            else:
                message.retry()
            actions.append(action)
        return actions

    async def ahandle(self, body: Any) -> MessageAction:
        """Async wrapper around :meth:`handle` via ``asyncio.to_thread``."""
        return await asyncio.to_thread(self.handle, body)

    async def aprocess_batch(
        self, messages: Iterable[QueueMessage]
    ) -> list[MessageAction]:
        """Async wrapper around :meth:`process_batch`."""
        return await asyncio.to_thread(self.process_batch, list(messages))
