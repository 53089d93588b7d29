# app/escalation.py
"""
Human hand-off over Telegram.

Unanswered questions are posted to a fixed operator chat. The returned
message_id is remembered against the asker's live connection, so that when an
operator replies to that Telegram message the reply can be routed back.

Entries live as long as the asker's connection: an operator may reply more
than once, and everything recorded for a connection is dropped when it closes.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Set

import httpx

from .metrics import rag_escalations_total

logger = logging.getLogger(__name__)


class CorrelationTable:
    """
    notification token -> requester connection id, with a reverse index per
    connection. Only touched from the event loop, and no method awaits, so
    concurrent requests never interleave inside a mutation.
    """

    def __init__(self):
        self._by_token: Dict[str, str] = {}
        self._by_conn: Dict[str, Set[str]] = {}

    def record(self, token: str, connection_id: str) -> None:
        self._by_token[token] = connection_id
        self._by_conn.setdefault(connection_id, set()).add(token)

    def lookup(self, token: str) -> Optional[str]:
        return self._by_token.get(token)

    def forget_connection(self, connection_id: str) -> int:
        """Drop every token recorded for a connection. Returns how many were removed."""
        tokens = self._by_conn.pop(connection_id, set())
        for t in tokens:
            self._by_token.pop(t, None)
        return len(tokens)

    def tokens_for(self, connection_id: str) -> Set[str]:
        return set(self._by_conn.get(connection_id, set()))

    def __len__(self) -> int:
        return len(self._by_token)


class TelegramChannel:
    """Posts text to one operator chat through the Bot API."""

    def __init__(
        self,
        token: str,
        chat_id: str,
        *,
        api_base: str = "https://api.telegram.org",
        timeout: float = 15.0,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.token = token
        self.chat_id = chat_id
        self.api_base = api_base.rstrip("/")
        self._http = http or httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=5.0))

    @property
    def configured(self) -> bool:
        return bool(self.token and self.chat_id)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def send(self, text: str) -> Optional[str]:
        """Send `text`; returns the sent message_id as a string, or None if absent."""
        resp = await self._http.post(
            f"{self.api_base}/bot{self.token}/sendMessage",
            json={"chat_id": self.chat_id, "text": text},
        )
        resp.raise_for_status()
        data: Dict[str, Any] = resp.json()
        if not data.get("ok", False):
            raise RuntimeError(f"telegram sendMessage not ok: {data.get('description')}")
        message_id = (data.get("result") or {}).get("message_id")
        return str(message_id) if message_id is not None else None


def escalation_text(question: str, connection_id: Optional[str]) -> str:
    footer = (
        "Reply to this message to answer the user directly."
        if connection_id else
        "The user is not connected live; replies cannot be routed back."
    )
    return f"New question the bot could not answer:\n\n{question}\n\n{footer}"


class EscalationNotifier:
    def __init__(self, channel: TelegramChannel, table: Optional[CorrelationTable] = None):
        self.channel = channel
        self.table = table if table is not None else CorrelationTable()

    async def escalate(self, question: str, connection_id: Optional[str] = None) -> Optional[str]:
        """Forward `question` to the operators. Never raises; failures are logged."""
        if not self.channel.configured:
            rag_escalations_total.labels(status="disabled").inc()
            logger.warning("Escalation skipped: Telegram channel not configured")
            return None
        try:
            token = await self.channel.send(escalation_text(question, connection_id))
        except Exception:
            rag_escalations_total.labels(status="failed").inc()
            logger.exception("Escalation to operator chat failed")
            return None

        rag_escalations_total.labels(status="sent").inc()
        if token is not None and connection_id:
            self.table.record(token, connection_id)
            logger.info("Escalated question as message %s for connection %s", token, connection_id)
        else:
            logger.info("Escalated question as message %s (no live connection)", token)
        return token

    def route_reply(self, token: str) -> Optional[str]:
        """Connection id waiting on replies to `token`, if it is still connected."""
        return self.table.lookup(str(token))

    def connection_closed(self, connection_id: str) -> None:
        removed = self.table.forget_connection(connection_id)
        if removed:
            logger.info("Dropped %d escalation entries for connection %s", removed, connection_id)
