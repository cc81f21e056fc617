"""LinkChannel: best-effort record relay between companion and primary.

Fire-and-forget: a send either reaches the peer (``DELIVERED``) or it does
not (``UNREACHABLE``); there is no acknowledgement. An undelivered record
stays in the sender's LocalStore and is offered again when the presence
callback reports the peer reachable. Receivers must tolerate duplicates and
reordering, which LocalStore's idempotent merge takes care of.

Wire format (JSON, camelCase)::

    {"id": "...", "occurredAt": "...", "durationSeconds": 42.0, "origin": "companion",
     "revision": 1, "tombstone": false, "audioArtifactRef": null}
"""

from __future__ import annotations

import inspect
import logging
from enum import Enum
from typing import Any, Callable, Protocol

import httpx
from pydantic import ValidationError

from src.models.workouts import LinkMessage, WorkoutRecord
from src.workouts.errors import ProtocolViolation, TransientError

logger = logging.getLogger("workoutsync.link")

LINK_RECORDS_PATH = "/api/v1/link/records"

ReceiveHandler = Callable[[WorkoutRecord], Any]
ReachableHandler = Callable[[], Any]


class SendOutcome(str, Enum):
    DELIVERED = "delivered"
    UNREACHABLE = "unreachable"


class LinkTransport(Protocol):
    async def deliver(self, payload: dict[str, Any]) -> None:
        """Hand one message to the peer. Raises TransientError if it cannot."""

    async def aclose(self) -> None: ...


class HttpLinkTransport:
    """Posts link messages to the peer device's HTTP endpoint.

    Args:
        peer_url:    Base URL of the peer (e.g. ``http://phone.local:8000``).
        timeout:     Per-request timeout in seconds.
        http_client: Optional pre-configured httpx client (for testing).
    """

    def __init__(
        self,
        peer_url: str,
        timeout: float = 5.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = peer_url.rstrip("/") + LINK_RECORDS_PATH
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def deliver(self, payload: dict[str, Any]) -> None:
        try:
            response = await self._client.post(self._url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise TransientError(f"Peer unreachable at {self._url}: {exc}") from exc

    async def aclose(self) -> None:
        await self._client.aclose()


def parse_message(payload: Any) -> WorkoutRecord:
    """Turn an inbound payload into a record.

    Raises:
        ProtocolViolation: The payload is not a valid link message.
    """
    if not isinstance(payload, dict):
        raise ProtocolViolation(f"Link message must be an object, got {type(payload).__name__}")
    try:
        return LinkMessage.model_validate(payload).to_record()
    except ValidationError as exc:
        raise ProtocolViolation(f"Malformed link message: {exc.error_count()} error(s)") from exc


class LinkChannel:
    """Bidirectional, unreliable channel to the peer device.

    Args:
        transport: Outbound transport, or None when no peer is configured.
        reachable: Initial presence state.
    """

    def __init__(self, transport: LinkTransport | None = None, reachable: bool = True) -> None:
        self._transport = transport
        self._reachable = reachable and transport is not None
        self._receive_handlers: list[ReceiveHandler] = []
        self._reachable_handlers: list[ReachableHandler] = []

    @property
    def reachable(self) -> bool:
        return self._reachable

    @property
    def configured(self) -> bool:
        return self._transport is not None

    def on_receive(self, handler: ReceiveHandler) -> Callable[[], None]:
        """Register a callback for each inbound record. Returns an unregister function."""
        self._receive_handlers.append(handler)
        return lambda: self._receive_handlers.remove(handler)

    def on_reachable(self, handler: ReachableHandler) -> Callable[[], None]:
        """Register a callback fired when the peer becomes reachable."""
        self._reachable_handlers.append(handler)
        return lambda: self._reachable_handlers.remove(handler)

    async def send(self, record: WorkoutRecord) -> SendOutcome:
        if self._transport is None or not self._reachable:
            logger.debug("Peer unreachable; %s rev=%d stays queued", record.id, record.revision)
            return SendOutcome.UNREACHABLE
        try:
            await self._transport.deliver(LinkMessage.from_record(record).to_wire())
        except TransientError as exc:
            logger.warning("Link send failed for %s: %s", record.id, exc)
            self._reachable = False
            return SendOutcome.UNREACHABLE
        logger.debug("Relayed %s rev=%d", record.id, record.revision)
        return SendOutcome.DELIVERED

    async def receive(self, payload: Any) -> WorkoutRecord | None:
        """Parse an inbound message and hand it to the receive handlers.

        Malformed messages are logged and dropped; they never raise.
        """
        try:
            record = parse_message(payload)
        except ProtocolViolation as exc:
            logger.warning("Dropped inbound link message: %s", exc)
            return None

        for handler in list(self._receive_handlers):
            result = handler(record)
            if inspect.isawaitable(result):
                await result
        return record

    async def set_reachable(self, reachable: bool) -> None:
        """Presence callback. A transition to reachable re-offers queued records."""
        if self._transport is None:
            return
        was_reachable, self._reachable = self._reachable, reachable
        logger.info("Peer %s", "reachable" if reachable else "unreachable")
        if reachable and not was_reachable:
            for handler in list(self._reachable_handlers):
                result = handler()
                if inspect.isawaitable(result):
                    await result

    async def aclose(self) -> None:
        if self._transport is not None:
            await self._transport.aclose()
