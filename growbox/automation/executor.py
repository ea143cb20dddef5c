"""Action executor: the boundary to the device-control channel.

The executor sends every resolved command of a tick concurrently, one
supervised attempt per command, and reports a ``DispatchResult`` for each.
It never retries; retries belong to the transport. Commands are idempotent
(``ON`` twice is a no-op), so an at-least-once transport is safe.

If the dispatch is cancelled (for example on shutdown), commands that had
not finished come back as ``unknown`` instead of being dropped, and the
executor marks itself ``cancelled`` so the caller can re-raise after
recording them.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

from loguru import logger

from growbox.automation.commands import DeviceCommand, DispatchResult, DispatchStatus


class DispatchError(RuntimeError):
    """Raised by a channel when a command could not be delivered."""


@runtime_checkable
class DeviceChannel(Protocol):
    """Anything that can deliver a command to an actuator.

    ``publish`` returns on acknowledgement and raises on failure.
    """

    async def publish(self, command: DeviceCommand) -> None: ...


class CallbackChannel:
    """Adapt a ``publish(topic, payload)`` callable into a ``DeviceChannel``.

    The callable may be sync or async and may return ``False`` to signal a
    rejected publish. The payload is the controller JSON built by
    ``DeviceCommand.to_payload()``.
    """

    def __init__(
        self,
        publish_fn: Callable[[str, str], Any | Awaitable[Any]],
        topic: str = "growbox/command",
    ) -> None:
        self._publish_fn = publish_fn
        self.topic = topic

    async def publish(self, command: DeviceCommand) -> None:
        payload = json.dumps(command.to_payload())
        result = self._publish_fn(self.topic, payload)
        if asyncio.iscoroutine(result):
            result = await result
        if result is False:
            raise DispatchError(f"publish rejected for {command.describe()}")


class ActionExecutor:
    """Dispatches commands over a ``DeviceChannel``.

    Parameters
    ----------
    channel:
        Device-control channel.
    timeout:
        Seconds to wait for each command's acknowledgement. 0 = no timeout.
    """

    def __init__(self, channel: DeviceChannel, timeout: float = 10.0) -> None:
        self._channel = channel
        self.timeout = timeout
        self.cancelled = False

    async def _send(self, command: DeviceCommand) -> DispatchResult:
        try:
            if self.timeout > 0:
                await asyncio.wait_for(self._channel.publish(command), timeout=self.timeout)
            else:
                await self._channel.publish(command)
        except asyncio.TimeoutError:
            logger.warning(
                "[Executor] {} timed out after {:.1f}s", command.describe(), self.timeout,
            )
            return DispatchResult(command, DispatchStatus.ERROR, f"timeout after {self.timeout}s")
        except Exception as exc:
            logger.warning("[Executor] {} failed: {}", command.describe(), exc)
            return DispatchResult(command, DispatchStatus.ERROR, str(exc) or type(exc).__name__)
        logger.debug("[Executor] {} acknowledged", command.describe())
        return DispatchResult(command, DispatchStatus.OK)

    async def dispatch(self, commands: list[DeviceCommand]) -> list[DispatchResult]:
        """Send all commands concurrently; results are in input order."""
        self.cancelled = False
        if not commands:
            return []

        tasks = [
            asyncio.create_task(self._send(cmd), name=f"dispatch-{cmd.device}")
            for cmd in commands
        ]
        try:
            await asyncio.wait(tasks)
        except asyncio.CancelledError:
            self.cancelled = True
            for task in tasks:
                if not task.done():
                    task.cancel()
            logger.warning(
                "[Executor] dispatch cancelled with {} command(s) in flight",
                sum(1 for t in tasks if not t.done() or t.cancelled()),
            )

        results: list[DispatchResult] = []
        for cmd, task in zip(commands, tasks):
            if task.done() and not task.cancelled():
                results.append(task.result())
            else:
                results.append(
                    DispatchResult(cmd, DispatchStatus.UNKNOWN, "dispatch cancelled")
                )
        return results
