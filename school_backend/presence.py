"""
Presence tracking and targeted chat delivery.

The registry maps a user id to the one live connection that registered it
(last registration wins). The router persists each chat message before it
looks anything up, then pushes the stored record to the sender's and the
receiver's connections if they are online.

Lifecycle of a connection handle::

    CONNECTED --register--> REGISTERED --disconnect--> DISCONNECTED
                              |    ^
                              +----+ re-register

A reconnect arrives as a new handle and starts over at CONNECTED.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol

from school_backend.db import MESSAGES, DbClient, MessageRecord
from school_backend.errors import MalformedPayloadError, PersistenceError

logger = logging.getLogger(__name__)

RECEIVE_MESSAGE = "receive_message"


class Connection(Protocol):
    """An opaque live transport session (e.g., a FastAPI WebSocket)."""

    async def send_json(self, data: Any) -> None:
        ...


def make_frame(event: str, data: Any = None) -> dict:
    return {"event": event, "data": data}


class ConnectionRegistry:
    """user id -> live connection, guarded by an asyncio lock."""

    def __init__(self):
        self._connections: Dict[str, Connection] = {}
        self._lock = asyncio.Lock()

    async def register(self, handle: Connection, user_id: Optional[str]) -> Optional[str]:
        """
        Associate ``user_id`` with ``handle``, replacing any earlier handle for
        that id. Blank ids are ignored and return None.
        """
        user_id = (user_id or "").strip()
        if not user_id:
            return None
        async with self._lock:
            previous = self._connections.get(user_id)
            self._connections[user_id] = handle
        if previous is not None and previous is not handle:
            logger.info("User %s re-registered on a new connection", user_id)
        return user_id

    async def unregister(self, handle: Connection) -> list[str]:
        """Remove every entry pointing at ``handle``; returns the user ids removed."""
        async with self._lock:
            removed = [
                user_id
                for user_id, conn in self._connections.items()
                if conn is handle
            ]
            for user_id in removed:
                del self._connections[user_id]
        return removed

    async def lookup(self, *user_ids: str) -> list[tuple[str, Connection]]:
        """
        Resolve each id independently. Repeated ids, or ids sharing a handle,
        yield one entry per match.
        """
        async with self._lock:
            return [
                (user_id, self._connections[user_id])
                for user_id in user_ids
                if user_id in self._connections
            ]

    async def online_users(self) -> list[str]:
        async with self._lock:
            return sorted(self._connections)

    def __len__(self) -> int:
        return len(self._connections)


class DeliveryRouter:
    """Persists chat messages and pushes them to whoever is online."""

    def __init__(
        self,
        db: DbClient,
        registry: Optional[ConnectionRegistry] = None,
        persistence_timeout: float = 5.0,
    ):
        self.db = db
        self.registry = registry if registry is not None else ConnectionRegistry()
        self.persistence_timeout = persistence_timeout

    async def connect(self, handle: Connection) -> None:
        logger.info("Connection opened: %s", id(handle))

    async def register(self, handle: Connection, user_id: Optional[str]) -> Optional[str]:
        registered = await self.registry.register(handle, user_id)
        if registered:
            logger.info("User %s is online", registered)
        return registered

    async def disconnect(self, handle: Connection, reason: Optional[str] = None) -> list[str]:
        removed = await self.registry.unregister(handle)
        logger.info(
            "Connection closed: %s (users=%s, reason=%s)",
            id(handle),
            removed or "-",
            reason or "-",
        )
        return removed

    async def persist_message(
        self, sender: str, receiver: str, content: str
    ) -> MessageRecord:
        """Store a message with a server-assigned timestamp, without delivering it."""
        if not (sender and receiver and content):
            raise MalformedPayloadError("sender, receiver and content are required")
        record = MessageRecord(sender=sender, receiver=receiver, content=content)
        try:
            record.id = await asyncio.wait_for(
                asyncio.to_thread(self.db.insert_one, MESSAGES, record.as_document()),
                timeout=self.persistence_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise PersistenceError(
                f"message store did not respond within {self.persistence_timeout}s"
            ) from exc
        return record

    async def submit_message(
        self, sender: str, receiver: str, content: str
    ) -> MessageRecord:
        """
        Persist a message, then push it to the sender's and the receiver's live
        connections. Offline parties are skipped; the stored record is
        returned either way. Raises PersistenceError without pushing anything
        if the store fails.
        """
        try:
            record = await self.persist_message(sender, receiver, content)
        except PersistenceError:
            logger.exception("Failed to persist message from %s to %s", sender, receiver)
            raise

        # Resolve under the registry lock, push after releasing it.
        targets = await self.registry.lookup(sender, receiver)
        frame = make_frame(RECEIVE_MESSAGE, record.as_dict())
        delivered = 0
        for user_id, handle in targets:
            try:
                await handle.send_json(frame)
                delivered += 1
            except Exception as exc:
                logger.warning("Push to %s failed: %s", user_id, exc)
        logger.debug(
            "Message %s from %s to %s delivered to %d connection(s)",
            record.id,
            sender,
            receiver,
            delivered,
        )
        return record
