# coding=utf-8
from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Optional

from voxrelay.streaming.registry import CallRegistry

logger = logging.getLogger(__name__)


class LivenessProber:
    """
    Ping every open participant connection on a fixed interval.
    """

    def __init__(self, registry: CallRegistry, interval_sec: float = 25.0) -> None:
        self.registry = registry
        self.interval_sec = max(0.01, float(interval_sec))
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def probe_once(self) -> int:
        pinged = 0
        for participant in self.registry.participants():
            conn = participant.connection
            if conn is None or not conn.open:
                continue
            try:
                await conn.ping()
            except Exception as e:
                logger.debug("ping failed participant=%s err=%s", participant.participant_id, e)
                continue
            pinged += 1
        return pinged

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_sec)
            try:
                await self.probe_once()
            except Exception as e:
                logger.warning("liveness probe failed err=%s", e)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
