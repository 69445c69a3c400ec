"""
CopilotSession and SessionRegistry Unit Tests
"""

import asyncio

import pytest

from copilot_runtime import CopilotSession, SessionEvent, SessionRegistry, Tool


class DummyRpc:
    def __init__(self, responses=None, fail_destroy=0):
        self.requests = []
        self.responses = responses or {}
        self.fail_destroy = fail_destroy

    async def request(self, method, payload):
        self.requests.append((method, payload))
        if method == "session.destroy" and self.fail_destroy:
            self.fail_destroy -= 1
            raise RuntimeError("destroy failed")
        return self.responses.get(method, {})


def make_event(event_type="assistant.message", **kwargs):
    return SessionEvent(id="e1", type=event_type, data={}, timestamp="2025-01-01T00:00:00Z", **kwargs)


class TestEvents:
    def test_all_handlers_called_even_if_one_raises(self):
        session = CopilotSession("s1", DummyRpc())
        calls = []

        def failing(event):
            calls.append("failing")
            raise RuntimeError("boom")

        session.on(lambda event: calls.append("first"))
        session.on(failing)
        session.on(lambda event: calls.append("last"))

        session._dispatch_event(make_event())

        assert sorted(calls) == ["failing", "first", "last"]

    def test_unsubscribe_removes_only_that_handler(self):
        session = CopilotSession("s1", DummyRpc())
        seen = []
        unsubscribe_a = session.on(lambda event: seen.append("a"))
        session.on(lambda event: seen.append("b"))

        unsubscribe_a()
        unsubscribe_a()
        session._dispatch_event(make_event())

        assert seen == ["b"]

    def test_event_from_wire_dict(self):
        event = SessionEvent.from_dict(
            {
                "id": "e2",
                "type": "assistant.message_delta",
                "data": {"deltaContent": "Hel"},
                "timestamp": "2025-01-01T00:00:00Z",
                "parentId": "e1",
                "ephemeral": True,
            }
        )

        assert event.parent_id == "e1"
        assert event.ephemeral is True
        assert event.to_dict()["parentId"] == "e1"


class TestTools:
    def test_register_tools_replaces_previous_mapping(self):
        session = CopilotSession("s1", DummyRpc())
        session._register_tools(
            [
                Tool(name="a", description="", handler=lambda inv: "a"),
                Tool(name="b", description="", handler=lambda inv: "b"),
            ]
        )
        session._register_tools([Tool(name="c", description="", handler=lambda inv: "c")])

        assert session._get_tool_handler("a") is None
        assert session._get_tool_handler("c") is not None

        session._register_tools(None)
        assert session._get_tool_handler("c") is None


class TestRpc:
    @pytest.mark.asyncio
    async def test_send_returns_message_id(self):
        rpc = DummyRpc(responses={"session.send": {"messageId": "m1"}})
        session = CopilotSession("s1", rpc)

        message_id = await session.send(
            {
                "prompt": "Summarize",
                "attachments": [{"type": "file", "path": "/tmp/a.txt"}],
                "mode": "immediate",
            }
        )

        assert message_id == "m1"
        assert rpc.requests == [
            (
                "session.send",
                {
                    "sessionId": "s1",
                    "prompt": "Summarize",
                    "attachments": [{"type": "file", "path": "/tmp/a.txt"}],
                    "mode": "immediate",
                },
            )
        ]

    @pytest.mark.asyncio
    async def test_get_messages_returns_events(self):
        rpc = DummyRpc(
            responses={
                "session.getMessages": {
                    "events": [
                        {"id": "1", "type": "user.message", "data": {}, "timestamp": "t"},
                        {"id": "2", "type": "session.idle", "data": {}, "timestamp": "t"},
                    ]
                }
            }
        )
        session = CopilotSession("s1", rpc)

        events = await session.get_messages()

        assert [event.type for event in events] == ["user.message", "session.idle"]
        assert rpc.requests == [("session.getMessages", {"sessionId": "s1"})]

    @pytest.mark.asyncio
    async def test_destroy_twice_is_harmless(self):
        rpc = DummyRpc()
        destroyed = []
        session = CopilotSession("s1", rpc, on_destroyed=destroyed.append)
        session.on(lambda event: None)
        session._register_tools([Tool(name="a", description="", handler=lambda inv: "a")])

        await session.destroy()
        await session.destroy()

        assert session.destroyed
        assert session._event_handlers == set()
        assert session._tool_handlers == {}
        assert destroyed == [session]
        assert rpc.requests == [("session.destroy", {"sessionId": "s1"})]

    @pytest.mark.asyncio
    async def test_failed_destroy_keeps_handlers(self):
        session = CopilotSession("s1", DummyRpc(fail_destroy=1))
        session.on(lambda event: None)

        with pytest.raises(RuntimeError, match="destroy failed"):
            await session.destroy()

        assert not session.destroyed
        assert len(session._event_handlers) == 1


class TestRegistry:
    @pytest.mark.asyncio
    async def test_destroy_all_retries_with_backoff(self, monkeypatch):
        delays = []

        async def fake_sleep(delay):
            delays.append(delay)

        monkeypatch.setattr(asyncio, "sleep", fake_sleep)

        registry = SessionRegistry()
        flaky = CopilotSession("flaky", DummyRpc(fail_destroy=2), on_destroyed=registry.remove)
        registry.add(flaky)

        errors = await registry.destroy_all()

        assert errors == []
        assert flaky.destroyed
        assert delays == [0.1, 0.2]
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_destroy_all_reports_sessions_that_never_go_away(self, monkeypatch):
        async def fake_sleep(delay):
            pass

        monkeypatch.setattr(asyncio, "sleep", fake_sleep)

        registry = SessionRegistry()
        registry.add(CopilotSession("stuck", DummyRpc(fail_destroy=5)))
        registry.add(CopilotSession("fine", DummyRpc()))

        errors = await registry.destroy_all()

        assert errors == [
            {"message": "Failed to destroy session stuck after 3 attempts: destroy failed"}
        ]
        assert "stuck" not in registry
        assert "fine" not in registry

    def test_remove_only_drops_the_same_session(self):
        registry = SessionRegistry()
        old = CopilotSession("s1", DummyRpc())
        new = CopilotSession("s1", DummyRpc())
        registry.add(old)
        registry.add(new)

        registry.remove(old)

        assert registry.get("s1") is new
