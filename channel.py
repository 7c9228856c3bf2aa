"""
Messaging between the orchestrator and the page-side executor.

The two sides share no memory: everything the executor needs is serialized
into an ``executeWorkflow`` message. Control signals (pause, resume, stop) are
fire-and-forget. The executor talks back through the HTTP event endpoints.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Literal, Optional, Protocol, Union

from pydantic import Field

import runner_config
from workflow_errors import DispatchError
from workflow_models import RunContext, RunOptions, WireModel

logger = logging.getLogger(__name__)


class ExecuteWorkflowMessage(WireModel):
    action: Literal["executeWorkflow"] = "executeWorkflow"
    workflow: dict[str, Any]
    data: list[dict[str, Any]] = Field(default_factory=list)
    run_options: RunOptions = Field(default_factory=RunOptions)
    run_context: RunContext = Field(default_factory=RunContext)


class ControlMessage(WireModel):
    action: Literal["pauseWorkflow", "resumeWorkflow", "stopWorkflow"]


Message = Union[ExecuteWorkflowMessage, ControlMessage]


class ExecutionChannel(Protocol):
    """A live destination that can run workflows."""

    destination_id: str
    url: str

    async def send(self, message: Message) -> None:
        """Deliver a message, raising DispatchError if it cannot be sent."""
        ...


class ChannelResolver(Protocol):
    """Finds the destination the next workflow should be sent to."""

    async def resolve(self) -> ExecutionChannel:
        ...


class QueueChannel:
    """
    Outbox for an executor that polls for work.

    Messages are queued until the executor fetches them with next_message().
    Sending while the executor is not connected is a DispatchError.
    """

    def __init__(self, destination_id: str = "default", url: str = "",
                 connected: bool = False, maxsize: int = 0):
        self.destination_id = destination_id
        self.url = url
        self.connected = connected
        self._outbox: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    def connect(self, url: Optional[str] = None) -> None:
        if url is not None:
            self.url = url
        self.connected = True
        logger.info(f"Executor connected: {self.destination_id} ({self.url or 'no url'})")

    def disconnect(self) -> None:
        self.connected = False
        logger.info(f"Executor disconnected: {self.destination_id}")

    async def send(self, message: Message) -> None:
        if not self.connected:
            raise DispatchError(
                f"Destination not ready: {self.destination_id}. "
                "Reload the target page and try again."
            )
        try:
            self._outbox.put_nowait(message)
        except asyncio.QueueFull as e:
            raise DispatchError(f"Destination {self.destination_id} is not accepting messages") from e
        logger.debug(f"Queued {message.action} for {self.destination_id}")

    async def next_message(self, timeout: Optional[float] = None) -> Optional[Message]:
        """Wait for the next queued message. Returns None on timeout."""
        try:
            if timeout is None:
                return await self._outbox.get()
            return await asyncio.wait_for(self._outbox.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def pending(self) -> int:
        return self._outbox.qsize()


class StaticChannelResolver:
    """Resolves to one fixed channel, if there is one and it is usable."""

    def __init__(self, channel: Optional[ExecutionChannel] = None):
        self.channel = channel

    async def resolve(self) -> ExecutionChannel:
        if self.channel is None:
            raise DispatchError("No destination available")
        url = self.channel.url or ""
        if url.startswith(runner_config.BLOCKED_URL_PREFIXES):
            raise DispatchError(f"Unsupported destination: {url}")
        return self.channel
