"""
Collaborator interfaces for starting attempts and receiving outcomes.

The core never talks to a voice provider directly. It hands an
``AttemptRequest`` to an ``AttemptInitiator`` and later receives
``OutcomeEvent``s from an ``OutcomeSource``.
"""

from abc import ABC
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import anyio

from dialgate.contacts.models import Target
from dialgate.telephony.events import OutcomeEvent


@dataclass(frozen=True)
class AttemptRequest:
    """Request to start one outbound attempt."""

    target: Target
    resource_id: str
    request_id: str
    metadata: dict[str, Any] = field(default_factory=dict)


class AttemptInitiator(ABC):
    """Starts attempts on the voice provider.

    Implementations override either ``start`` (native async clients) or
    ``start_sync`` (blocking clients, run in a worker thread).
    """

    async def start(self, request: AttemptRequest) -> str:
        """Start an attempt and return its attempt id.

        Raises:
            AttemptInitiationError: If the provider refused or was unreachable.
        """
        return await anyio.to_thread.run_sync(self.start_sync, request)

    def start_sync(self, request: AttemptRequest) -> str:
        raise NotImplementedError("Override start() or start_sync()")


@runtime_checkable
class OutcomeSource(Protocol):
    """Asynchronous stream of outcome events."""

    def events(self) -> AsyncIterator[OutcomeEvent]: ...
