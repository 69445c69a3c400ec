"""
query() and ask() Unit Tests

These run against a scripted in-process client; e2e/test_query.py covers the
real process and connection.
"""

import asyncio
import importlib
from contextlib import aclosing

import pytest

from copilot_runtime import QueryTimeoutError, SessionError, SessionEvent, Tool, ask, query

query_module = importlib.import_module("copilot_runtime.query")


def event(event_type, data=None, ephemeral=None):
    return SessionEvent(
        id=f"{event_type}-id",
        type=event_type,
        data=data if data is not None else {},
        timestamp="2025-01-01T00:00:00Z",
        ephemeral=ephemeral,
    )


TURN = [
    event("user.message", {"content": "hi"}),
    event("assistant.message_delta", {"deltaContent": "hel"}, ephemeral=True),
    event("assistant.message", {"content": "hello"}),
    event("session.idle", ephemeral=True),
]


class FakeSession:
    def __init__(self, script, send_error=None, send_delay=0.0):
        self.session_id = "s1"
        self.script = script
        self.send_error = send_error
        self.send_delay = send_delay
        self.handlers = []
        self.sent = []
        self.destroyed = False

    def on(self, handler):
        self.handlers.append(handler)
        return lambda: self.handlers.remove(handler)

    async def send(self, options):
        self.sent.append(options)
        loop = asyncio.get_running_loop()
        for item in self.script:
            loop.call_soon(self._emit, item)
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.send_error:
            raise self.send_error
        return "m1"

    def _emit(self, item):
        for handler in list(self.handlers):
            handler(item)

    async def destroy(self):
        self.destroyed = True


class FakeClient:
    def __init__(self, options, session, stop_errors):
        self.options = options
        self.session = session
        self.stop_errors = stop_errors
        self.session_config = None
        self.started = False
        self.stopped = False

    async def start(self):
        self.started = True

    async def create_session(self, config=None):
        self.session_config = config
        return self.session

    async def stop(self):
        self.stopped = True
        return self.stop_errors


@pytest.fixture
def fake_client(monkeypatch):
    clients = []

    def install(script=TURN, send_error=None, send_delay=0.0, stop_errors=None):
        session = FakeSession(script, send_error=send_error, send_delay=send_delay)

        def factory(options):
            client = FakeClient(options, session, stop_errors or [])
            clients.append(client)
            return client

        monkeypatch.setattr(query_module, "CopilotClient", factory)
        return clients

    return install


async def collect(options):
    async with aclosing(query(options)) as stream:
        return [item async for item in stream]


class TestQuery:
    @pytest.mark.asyncio
    async def test_streams_until_idle_and_cleans_up(self, fake_client):
        clients = fake_client()
        tool = Tool(name="t", description="d", handler=lambda inv: "ok")

        events = await collect(
            {
                "prompt": "hi",
                "model": "gpt-5",
                "tools": [tool],
                "attachments": [{"type": "file", "path": "a.txt"}],
            }
        )

        assert [e.type for e in events] == [
            "user.message",
            "assistant.message_delta",
            "assistant.message",
            "session.idle",
        ]
        client = clients[0]
        assert client.options == {"log_level": "error"}
        assert client.session_config == {"model": "gpt-5", "tools": [tool]}
        assert client.session.sent == [
            {"prompt": "hi", "attachments": [{"type": "file", "path": "a.txt"}]}
        ]
        assert client.session.destroyed
        assert client.stopped

    @pytest.mark.asyncio
    async def test_ephemeral_events_can_be_excluded(self, fake_client):
        fake_client()

        events = await collect({"prompt": "hi", "include_ephemeral": False})

        assert [e.type for e in events] == ["user.message", "assistant.message"]

    @pytest.mark.asyncio
    async def test_excluded_ephemeral_error_is_dropped(self, fake_client):
        fake_client(
            script=[
                event("user.message"),
                event("session.error", {"message": "transient"}, ephemeral=True),
                event("assistant.message", {"content": "hello"}),
                event("session.idle", ephemeral=True),
            ]
        )

        events = await collect({"prompt": "hi", "include_ephemeral": False})

        assert [e.type for e in events] == ["user.message", "assistant.message"]

    @pytest.mark.asyncio
    async def test_session_error_event_raises(self, fake_client):
        clients = fake_client(
            script=[event("user.message"), event("session.error", {"message": "quota exceeded"})]
        )

        seen = []
        with pytest.raises(SessionError, match="quota exceeded"):
            async with aclosing(query({"prompt": "hi"})) as stream:
                async for item in stream:
                    seen.append(item.type)

        assert seen == ["user.message"]
        assert clients[0].session.destroyed
        assert clients[0].stopped

    @pytest.mark.asyncio
    async def test_session_error_without_message(self, fake_client):
        fake_client(script=[event("session.error", "nope")])

        with pytest.raises(SessionError, match="Unknown error"):
            await collect({"prompt": "hi"})

    @pytest.mark.asyncio
    async def test_timeout_is_distinct_error(self, fake_client):
        clients = fake_client(script=[event("user.message")])

        with pytest.raises(QueryTimeoutError, match="Query timed out after 50ms") as exc_info:
            await collect({"prompt": "hi", "timeout": 50})

        assert isinstance(exc_info.value, TimeoutError)
        assert not isinstance(exc_info.value, SessionError)
        assert clients[0].session.destroyed
        assert clients[0].stopped

    @pytest.mark.asyncio
    async def test_send_failure_aborts_stream(self, fake_client):
        clients = fake_client(script=[], send_error=RuntimeError("send rejected"))

        with pytest.raises(RuntimeError, match="send rejected"):
            await collect({"prompt": "hi"})

        assert clients[0].stopped

    @pytest.mark.asyncio
    async def test_send_failure_after_turn_finished_is_ignored(self, fake_client):
        fake_client(send_error=RuntimeError("late failure"), send_delay=0.05)

        events = await collect({"prompt": "hi"})
        await asyncio.sleep(0.1)

        assert events[-1].type == "session.idle"

    @pytest.mark.asyncio
    async def test_cleanup_errors_yield_final_error_event(self, fake_client):
        fake_client(stop_errors=[{"message": "a"}, {"message": "b"}])

        events = await collect({"prompt": "hi"})

        assert events[-2].type == "session.idle"
        assert events[-1].type == "error"
        assert events[-1].data == {"message": "Cleanup errors: a; b"}

    @pytest.mark.asyncio
    async def test_early_close_still_cleans_up(self, fake_client):
        clients = fake_client(stop_errors=[{"message": "a"}])

        async with aclosing(query({"prompt": "hi"})) as stream:
            async for item in stream:
                break

        assert clients[0].session.destroyed
        assert clients[0].stopped


class TestAsk:
    @pytest.mark.asyncio
    async def test_returns_final_assistant_content(self, fake_client):
        fake_client()
        seen = []

        result = await ask("hi", {"on_event": seen.append})

        assert result.completed
        assert result.content == "hello"
        assert result.error is None
        assert len(result.events) == 4
        assert seen == result.events

    @pytest.mark.asyncio
    async def test_failure_is_reported_not_raised(self, fake_client):
        fake_client(script=[event("assistant.message", {"content": "partial"}),
                            event("session.error", {"message": "boom"})])

        result = await ask("hi")

        assert not result.completed
        assert result.content == "partial"
        assert isinstance(result.error, SessionError)

    @pytest.mark.asyncio
    async def test_on_event_error_aborts(self, fake_client):
        clients = fake_client()

        def on_event(item):
            raise ValueError("callback bug")

        result = await ask("hi", {"on_event": on_event})

        assert not result.completed
        assert str(result.error) == "callback bug"
        assert clients[0].stopped
