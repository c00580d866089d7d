"""
Out-of-band delivery of handoff payloads.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path

from loguru import logger

from wbcore.errors import InvalidSpecError
from wbcore.protocol import HandoffPayload


class PayloadTransport(ABC):
    """Carries a payload from the payer side to the payee side."""

    @abstractmethod
    async def send(self, payload: HandoffPayload) -> None:
        pass

    @abstractmethod
    async def receive(self) -> HandoffPayload:
        pass


class InProcessTransport(PayloadTransport):
    """Queue between two wallets living in the same process."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[str] = asyncio.Queue()

    async def send(self, payload: HandoffPayload) -> None:
        # Serialize anyway so both sides only ever share the JSON form
        await self._queue.put(payload.to_json())

    async def receive(self) -> HandoffPayload:
        return HandoffPayload.from_json(await self._queue.get())


class FileTransport(PayloadTransport):
    """Payload written to and read from a JSON file."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    async def send(self, payload: HandoffPayload) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(payload.to_json())
        logger.info(f"Handoff payload written to {self.path}")

    async def receive(self) -> HandoffPayload:
        if not self.path.exists():
            raise InvalidSpecError(f"Handoff payload file not found: {self.path}")
        payload = HandoffPayload.from_json(self.path.read_text())
        logger.info(f"Handoff payload read from {self.path}")
        return payload
