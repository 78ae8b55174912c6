"""
Action Dispatcher: a single-consumer queue between the deciders (OAuth
linker, role verifier) and the chat platform.

Producers call :meth:`ActionDispatcher.enqueue`, which is synchronous and
never blocks (the queue is unbounded).  One consumer task performs the
actions strictly in submission order, one at a time.  Delivery is
at-most-once: a failed action is logged and counted, never requeued.
The durable intent lives in the database, not in this queue.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Union

from dispatcher.telegram_group import GroupGateway
from shared.errors import DispatcherClosed

logger = logging.getLogger("dispatcher.actions")


@dataclass(frozen=True, slots=True)
class Invite:
    telegram_id: int
    group_id: int


@dataclass(frozen=True, slots=True)
class Remove:
    telegram_id: int
    group_id: int


Action = Union[Invite, Remove]


class ActionDispatcher:
    """Unbounded FIFO of :data:`Action` plus its consumer.

    Args:
        gateway: Chat-platform implementation that performs the actions.
    """

    def __init__(self, gateway: GroupGateway) -> None:
        self._gateway = gateway
        self._queue: asyncio.Queue[Action | None] = asyncio.Queue()
        self._closed = False
        self._processed = 0
        self._failed = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def counts(self) -> Dict[str, int]:
        return {"processed": self._processed, "failed": self._failed}

    def enqueue(self, action: Action) -> None:
        """Submit *action* for delivery.

        Raises:
            DispatcherClosed: If :meth:`close` has been called.
        """
        if self._closed:
            raise DispatcherClosed(f"cannot enqueue {action!r}: dispatcher closed")
        self._queue.put_nowait(action)
        logger.debug("Enqueued %r (pending=%d)", action, self._queue.qsize())

    async def _perform(self, action: Action) -> None:
        if isinstance(action, Invite):
            await self._gateway.send_invite(action.telegram_id, action.group_id)
        elif isinstance(action, Remove):
            await self._gateway.remove_member(action.telegram_id, action.group_id)
        else:
            raise TypeError(f"Unknown action type: {type(action).__name__}")

    async def run(self) -> None:
        """Consume actions until :meth:`close` drains the queue."""
        logger.info("Action dispatcher started")
        while True:
            action = await self._queue.get()
            try:
                if action is None:
                    break
                kind = type(action).__name__.lower()
                try:
                    await self._perform(action)
                except Exception:
                    self._failed += 1
                    logger.exception(
                        "Failed to %s telegram_id=%s group_id=%s",
                        kind,
                        action.telegram_id,
                        action.group_id,
                    )
                else:
                    self._processed += 1
                    logger.info(
                        "Completed %s for telegram_id=%s", kind, action.telegram_id
                    )
            finally:
                self._queue.task_done()
        logger.info(
            "Action dispatcher stopped: processed=%d failed=%d",
            self._processed,
            self._failed,
        )

    async def close(self, consumer: asyncio.Task[None] | None = None) -> Dict[str, int]:
        """Refuse new actions, let the consumer drain what is queued, stop it."""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)
        if consumer is not None:
            await consumer
        return self.counts
