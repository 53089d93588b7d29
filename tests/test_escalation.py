# tests/test_escalation.py
import json

import httpx
import pytest

from app.escalation import CorrelationTable, EscalationNotifier, TelegramChannel

from conftest import FakeChannel


# --------------------------------------------------------------------
# CorrelationTable
# --------------------------------------------------------------------
def test_table_routes_and_forgets_per_connection():
    t = CorrelationTable()
    t.record("10", "conn-a")
    t.record("11", "conn-a")
    t.record("12", "conn-b")

    assert t.lookup("10") == "conn-a"
    assert t.tokens_for("conn-a") == {"10", "11"}

    assert t.forget_connection("conn-a") == 2
    assert t.lookup("10") is None
    assert t.lookup("11") is None
    assert t.lookup("12") == "conn-b"
    assert len(t) == 1

def test_forget_unknown_connection_is_noop():
    t = CorrelationTable()
    assert t.forget_connection("ghost") == 0


# --------------------------------------------------------------------
# EscalationNotifier
# --------------------------------------------------------------------
@pytest.mark.asyncio
async def test_escalate_records_token_for_connection():
    channel = FakeChannel()
    n = EscalationNotifier(channel)
    token = await n.escalate("What is X?", "conn-1")

    assert token == channel.tokens[0]
    assert "What is X?" in channel.sent[0]
    assert n.route_reply(token) == "conn-1"

    n.connection_closed("conn-1")
    assert n.route_reply(token) is None

@pytest.mark.asyncio
async def test_escalate_without_connection_records_nothing():
    n = EscalationNotifier(FakeChannel())
    token = await n.escalate("What is X?")
    assert token is not None
    assert len(n.table) == 0

@pytest.mark.asyncio
async def test_escalation_failure_is_swallowed():
    n = EscalationNotifier(FakeChannel(fail=True))
    assert await n.escalate("What is X?", "conn-1") is None
    assert len(n.table) == 0

@pytest.mark.asyncio
async def test_unconfigured_channel_skips_send():
    channel = TelegramChannel("", "")
    n = EscalationNotifier(channel)
    assert await n.escalate("q", "c") is None
    await channel.aclose()


# --------------------------------------------------------------------
# TelegramChannel over a mock transport
# --------------------------------------------------------------------
@pytest.mark.asyncio
async def test_telegram_send_returns_message_id():
    seen = {}

    def handler(request: httpx.Request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"ok": True, "result": {"message_id": 4242}})

    ch = TelegramChannel("T0K", "1000", api_base="https://tg.test",
                         http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    assert await ch.send("hello") == "4242"
    assert seen["path"] == "/botT0K/sendMessage"
    assert seen["body"] == {"chat_id": "1000", "text": "hello"}

@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    httpx.Response(502, text="bad gateway"),
    httpx.Response(200, json={"ok": False, "description": "chat not found"}),
])
async def test_telegram_errors_are_swallowed_by_notifier(response):
    ch = TelegramChannel("T0K", "1000", api_base="https://tg.test",
                         http=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: response)))
    n = EscalationNotifier(ch)
    assert await n.escalate("q", "conn") is None
    assert len(n.table) == 0
