"""
Dispatch Notifier: registry of live sessions and best-effort fan-out.

Delivery is fire-and-forget: each session owns a bounded outbound queue drained by its
own writer task, so publishers never wait on a socket and events reach one connection
in publish order. A recipient that is offline simply misses the event.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

from mandados.events import DispatchEvent
from mandados.metrics import connected_sessions, notifications_total
from mandados.models import Caller, Role

logger = logging.getLogger(__name__)

SUPERSEDED_CLOSE_CODE = 4000

# Given courier identities, return the ones that switched themselves off.
UnavailableLookup = Callable[[list[str]], Awaitable[set[str]]]


class Connection(Protocol):
    """Transport handle. A starlette WebSocket satisfies it."""

    async def send_json(self, data: Any) -> None:
        ...

    async def close(self, code: int = 1000) -> None:
        ...


@dataclass
class Session:
    connection: Connection
    caller: Caller
    queue: asyncio.Queue
    writer: asyncio.Task | None = field(default=None, repr=False)

    @property
    def in_courier_group(self) -> bool:
        return self.caller.role == Role.COURIER


class ConnectionRegistry(ABC):
    @abstractmethod
    async def register(self, connection: Connection, caller: Caller, greeting: dict | None = None) -> None:
        """Bind connection to caller, replacing any earlier connection of the same identity.
        greeting, if given, is the first frame written to the connection."""

    @abstractmethod
    async def unregister(self, connection: Connection) -> bool:
        """Remove the binding. Safe to call more than once; returns whether anything was removed."""

    @abstractmethod
    async def broadcast_to_couriers(self, event: DispatchEvent) -> int:
        """Queue event for every available courier session. Returns how many sessions got it."""

    @abstractmethod
    async def notify_identity(self, identity: str, event: DispatchEvent) -> bool:
        """Queue event for one identity. False means the recipient is offline, which is not an error."""

    @abstractmethod
    def counts(self) -> dict[str, int]:
        ...

    async def close(self) -> None:
        ...


class LocalConnectionRegistry(ConnectionRegistry):
    """In-process registry keyed by identity. One live connection per identity."""

    def __init__(self, unavailable: UnavailableLookup | None = None, queue_size: int = 100):
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()
        self._unavailable = unavailable
        self._queue_size = queue_size
        self._background: set[asyncio.Task] = set()

    async def register(self, connection: Connection, caller: Caller, greeting: dict | None = None) -> None:
        session = Session(
            connection=connection,
            caller=caller,
            queue=asyncio.Queue(maxsize=self._queue_size),
        )
        if greeting is not None:
            session.queue.put_nowait(greeting)
        async with self._lock:
            prior = self._sessions.get(caller.identity)
            if prior is not None:
                self._stop(prior)
            session.writer = asyncio.create_task(self._pump(session))
            self._sessions[caller.identity] = session
            self._update_gauges()

        if prior is not None and prior.connection is not connection:
            logger.info("Session for %s superseded by a new connection", caller.identity)
            t = asyncio.create_task(_close_quietly(prior.connection, SUPERSEDED_CLOSE_CODE))
            self._background.add(t)
            t.add_done_callback(self._background.discard)
        logger.info("Registered %s (%s)", caller.identity, caller.role.value)

    async def unregister(self, connection: Connection) -> bool:
        async with self._lock:
            identity = None
            for key, session in self._sessions.items():
                if session.connection is connection:
                    identity = key
                    break
            if identity is None:
                return False
            session = self._sessions.pop(identity)
            self._stop(session)
            self._update_gauges()
        logger.info("Unregistered %s", identity)
        return True

    async def broadcast_to_couriers(self, event: DispatchEvent) -> int:
        couriers = [s for s in self._sessions.values() if s.in_courier_group]
        if couriers and self._unavailable is not None:
            off = await self._unavailable([s.caller.identity for s in couriers])
            couriers = [s for s in couriers if s.caller.identity not in off]
        delivered = sum(1 for s in couriers if self._offer(s, event))
        logger.info("Broadcast %s to %d courier session(s)", event.kind.value, delivered)
        return delivered

    async def notify_identity(self, identity: str, event: DispatchEvent) -> bool:
        session = self._sessions.get(identity)
        if session is None:
            notifications_total.labels(kind=event.kind.value, result="offline").inc()
            logger.info("Recipient %s not connected, %s not delivered", identity, event.kind.value)
            return False
        return self._offer(session, event)

    def counts(self) -> dict[str, int]:
        counts = {role.value: 0 for role in Role}
        for session in self._sessions.values():
            counts[session.caller.role.value] += 1
        return counts

    async def close(self) -> None:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
            for session in sessions:
                self._stop(session)
            self._update_gauges()
        writers = [s.writer for s in sessions if s.writer is not None and s.writer is not asyncio.current_task()]
        await asyncio.gather(*writers, return_exceptions=True)
        for session in sessions:
            await _close_quietly(session.connection, 1001)

    def _offer(self, session: Session, event: DispatchEvent) -> bool:
        try:
            session.queue.put_nowait(event)
        except asyncio.QueueFull:
            notifications_total.labels(kind=event.kind.value, result="dropped").inc()
            logger.warning("Outbound queue full for %s, dropped %s", session.caller.identity, event.kind.value)
            return False
        notifications_total.labels(kind=event.kind.value, result="queued").inc()
        return True

    async def _pump(self, session: Session) -> None:
        while True:
            item = await session.queue.get()
            frame = item.model_dump(mode="json") if isinstance(item, DispatchEvent) else item
            try:
                await session.connection.send_json(frame)
            except Exception:
                logger.exception("Send to %s failed, dropping session", session.caller.identity)
                await self.unregister(session.connection)
                return

    def _stop(self, session: Session) -> None:
        if session.writer is not None and session.writer is not asyncio.current_task():
            session.writer.cancel()

    def _update_gauges(self) -> None:
        for role, count in self.counts().items():
            connected_sessions.labels(role=role).set(count)


async def _close_quietly(connection: Connection, code: int) -> None:
    try:
        await connection.close(code=code)
    except Exception as e:
        logger.debug("Close of stale connection failed: %s", e)
