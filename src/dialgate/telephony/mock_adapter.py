"""
Mock collaborators for tests and local runs.

``MockAttemptInitiator`` records every request and hands out sequential
attempt ids. ``QueueOutcomeSource`` is an in-process outcome stream fed by
``publish``.
"""

import asyncio
from collections.abc import AsyncIterator

from dialgate.shared.errors import AttemptInitiationError
from dialgate.shared.logging import get_logger
from dialgate.shared.phone import mask_phone
from dialgate.telephony.events import OutcomeEvent
from dialgate.telephony.interface import AttemptInitiator, AttemptRequest

logger = get_logger(__name__)


class MockAttemptInitiator(AttemptInitiator):
    """Mock attempt initiator for testing."""

    def __init__(self) -> None:
        self._requests: list[AttemptRequest] = []
        self._next_attempt_id: int = 1
        self._should_fail: bool = False
        self._fail_error: str = "Mock failure"
        self._fail_code: str = "MOCK_ERROR"
        self._fail_times: int | None = None

    def reset(self) -> None:
        self._requests.clear()
        self._next_attempt_id = 1
        self._should_fail = False
        self._fail_error = "Mock failure"
        self._fail_code = "MOCK_ERROR"
        self._fail_times = None

    def configure_failure(
        self,
        should_fail: bool = True,
        error_message: str = "Mock failure",
        error_code: str = "MOCK_ERROR",
        times: int | None = None,
    ) -> None:
        """Make subsequent starts fail.

        Args:
            should_fail: Enable or disable failures.
            error_message: Message of the raised error.
            error_code: Code of the raised error.
            times: Fail only this many times, then succeed again.
        """
        self._should_fail = should_fail
        self._fail_error = error_message
        self._fail_code = error_code
        self._fail_times = times

    @property
    def requests(self) -> list[AttemptRequest]:
        return self._requests.copy()

    def get_last_request(self) -> AttemptRequest | None:
        return self._requests[-1] if self._requests else None

    async def start(self, request: AttemptRequest) -> str:
        return self.start_sync(request)

    def start_sync(self, request: AttemptRequest) -> str:
        logger.info(
            "Mock: Starting attempt",
            extra={
                "to": mask_phone(request.target.key),
                "resource_id": request.resource_id,
                "request_id": request.request_id,
            },
        )

        if self._should_fail:
            if self._fail_times is not None:
                self._fail_times -= 1
                if self._fail_times <= 0:
                    self._should_fail = False
                    self._fail_times = None
            raise AttemptInitiationError(
                message=self._fail_error,
                error_code=self._fail_code,
            )

        self._requests.append(request)

        attempt_id = f"MOCK_ATTEMPT_{self._next_attempt_id:06d}"
        self._next_attempt_id += 1
        return attempt_id


class QueueOutcomeSource:
    """Outcome stream backed by an asyncio queue."""

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: asyncio.Queue[OutcomeEvent | None] = asyncio.Queue(maxsize=maxsize)

    async def publish(self, event: OutcomeEvent) -> None:
        await self._queue.put(event)

    def publish_nowait(self, event: OutcomeEvent) -> None:
        self._queue.put_nowait(event)

    async def close(self) -> None:
        """End the stream after already queued events are drained."""
        await self._queue.put(None)

    async def events(self) -> AsyncIterator[OutcomeEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    def __len__(self) -> int:
        return self._queue.qsize()
