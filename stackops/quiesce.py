# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
stackops Quiescer - Pause or stop services while their volumes are copied.

quiesce() returns a guard holding exactly the services this run changed.
Releasing the guard reverts only those, so services an operator had
already stopped stay stopped. Release is idempotent: the guard forgets a
service as soon as it has been resumed, so calling resume() again from a
cleanup path is a no-op.
"""

from enum import Enum
from typing import Iterable, List

import structlog

from stackops.compose import ComposeProject
from stackops.config import QuiesceMode
from stackops.exceptions import CommandError

logger = structlog.get_logger()


class QuiesceState(str, Enum):
    ACTIVE = "active"
    QUIESCING = "quiescing"
    QUIESCED = "quiesced"
    RESUMING = "resuming"


class QuiesceGuard:
    """Scoped record of services paused or stopped by one run."""

    def __init__(self, compose: ComposeProject, mode: QuiesceMode):
        self._compose = compose
        self.mode = mode
        self.state = QuiesceState.ACTIVE
        self._changed: List[str] = []
        self.failed: List[str] = []

    @property
    def changed(self) -> tuple[str, ...]:
        """Services still held quiesced by this guard."""
        return tuple(self._changed)

    async def _suspend(self, service: str) -> None:
        if self.mode == QuiesceMode.PAUSE:
            await self._compose.pause([service])
        else:
            await self._compose.stop([service])
        self._changed.append(service)
        logger.info("service_quiesced", service=service, mode=self.mode.value)

    async def _revert(self, service: str) -> None:
        if self.mode == QuiesceMode.PAUSE:
            await self._compose.unpause([service])
        else:
            await self._compose.start([service])

    async def resume(self) -> List[str]:
        """
        Revert every service this guard changed, newest first.

        Returns:
            Services that could not be resumed (also kept in ``failed``)
        """
        if not self._changed:
            self.state = QuiesceState.ACTIVE
            return []

        self.state = QuiesceState.RESUMING
        failed: List[str] = []

        for service in reversed(list(self._changed)):
            try:
                await self._revert(service)
                self._changed.remove(service)
                logger.info("service_resumed", service=service, mode=self.mode.value)
            except CommandError as e:
                failed.append(service)
                logger.error(
                    "service_resume_failed",
                    service=service,
                    mode=self.mode.value,
                    error=str(e),
                )

        self.failed = failed
        self.state = QuiesceState.QUIESCED if self._changed else QuiesceState.ACTIVE
        return failed

    async def __aenter__(self) -> "QuiesceGuard":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        await self.resume()
        return False


class StackDownGuard:
    """Scoped full stop of the stack; release brings it back up."""

    def __init__(self, compose: ComposeProject):
        self._compose = compose
        self.down = False
        self.restart_error: str | None = None

    async def release(self) -> bool:
        """Run ``compose up -d`` once. Returns False if it failed."""
        if not self.down:
            return self.restart_error is None
        try:
            await self._compose.up()
            self.down = False
            self.restart_error = None
            logger.info("stack_started")
            return True
        except CommandError as e:
            self.restart_error = str(e)
            logger.error("stack_start_failed", error=str(e))
            return False

    async def __aenter__(self) -> "StackDownGuard":
        logger.info("stack_stopping")
        try:
            await self._compose.down()
        except BaseException:
            # Partially stopped stacks are brought back before failing
            self.down = True
            await self.release()
            raise
        self.down = True
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        await self.release()
        return False


class Quiescer:
    """Creates quiesce guards for one compose project."""

    def __init__(self, compose: ComposeProject):
        self._compose = compose

    async def quiesce(self, services: Iterable[str], mode: QuiesceMode) -> QuiesceGuard:
        """
        Pause or stop the given services.

        Only services currently running are transitioned; anything already
        paused, stopped or missing is left alone. If quiescing fails
        partway, the services changed so far are resumed before the error
        propagates.

        Args:
            services: Compose service names, each quiesced at most once
            mode: Quiesce strategy

        Returns:
            QuiesceGuard to be released when copying is finished
        """
        guard = QuiesceGuard(self._compose, mode)
        wanted: List[str] = []
        for service in services:
            if service not in wanted:
                wanted.append(service)

        if mode == QuiesceMode.NONE or not wanted:
            logger.info("quiesce_skipped", mode=mode.value, services=wanted)
            return guard

        guard.state = QuiesceState.QUIESCING
        states = await self._compose.service_states()

        try:
            for service in wanted:
                current = states.get(service)
                if current != "running":
                    logger.info(
                        "service_not_quiesced",
                        service=service,
                        state=current or "missing",
                    )
                    continue
                await guard._suspend(service)
        except BaseException:
            await guard.resume()
            raise

        guard.state = QuiesceState.QUIESCED
        return guard

    def stack_down(self) -> StackDownGuard:
        """Guard that stops the whole stack and restarts it on release."""
        return StackDownGuard(self._compose)
