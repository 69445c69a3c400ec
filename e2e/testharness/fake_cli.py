"""
Scripted stand-in for the Copilot CLI server.

Speaks Content-Length framed JSON-RPC over stdio (``--stdio``) or TCP
(``--port N``, announcing "listening on port N" on stdout). The prompt sent to
a session decides how the turn plays out:

    "error"                  session.error event, no idle
    "hang"                   nothing after the user message
    "crash"                  the process exits with code 3
    "tool:<name> <json>"     calls <name> on the client, replies with its result
    anything else            ephemeral delta, assistant.message "echo: <prompt>", idle

Sessions whose ID starts with "sticky" refuse to be destroyed.
"""

import argparse
import asyncio
import json
import os
import sys
import time
import uuid
from datetime import datetime, timezone


class RpcError(Exception):
    pass


async def read_message(reader):
    headers = {}
    while True:
        line = await reader.readline()
        if not line:
            return None
        line = line.decode("ascii").strip()
        if not line:
            if headers:
                break
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()
    body = await reader.readexactly(int(headers["content-length"]))
    return json.loads(body.decode("utf-8"))


class Connection:
    def __init__(self, reader, writer):
        self.reader = reader
        self.writer = writer
        self.lock = asyncio.Lock()
        self.next_id = 0
        self.pending = {}
        self.sessions = {}
        self.tasks = set()

    async def serve(self):
        while True:
            try:
                message = await read_message(self.reader)
            except (asyncio.IncompleteReadError, ConnectionError):
                return
            if message is None:
                return
            if "method" in message and "id" in message:
                self.spawn(self.handle_request(message))
            elif "method" not in message:
                future = self.pending.pop(message["id"], None)
                if future is None:
                    continue
                if "error" in message:
                    future.set_exception(RpcError(message["error"]["message"]))
                else:
                    future.set_result(message.get("result"))

    def spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)

    async def send(self, message):
        body = json.dumps(message).encode("utf-8")
        async with self.lock:
            self.writer.write(b"Content-Length: %d\r\n\r\n" % len(body) + body)
            await self.writer.drain()

    async def call(self, method, params):
        self.next_id += 1
        future = asyncio.get_running_loop().create_future()
        self.pending[self.next_id] = future
        await self.send({"jsonrpc": "2.0", "id": self.next_id, "method": method, "params": params})
        return await future

    async def handle_request(self, message):
        try:
            result = await self.dispatch(message["method"], message.get("params") or {})
            response = {"jsonrpc": "2.0", "id": message["id"], "result": result}
        except Exception as e:
            response = {
                "jsonrpc": "2.0",
                "id": message["id"],
                "error": {"code": -32000, "message": str(e)},
            }
        await self.send(response)

    async def dispatch(self, method, params):
        if method == "ping":
            return {
                "message": f"pong: {params.get('message')}",
                "timestamp": int(time.time() * 1000),
            }
        if method == "session.create":
            session_id = params.get("sessionId") or f"session-{uuid.uuid4().hex[:8]}"
            self.sessions[session_id] = {"events": [], "tools": params.get("tools", [])}
            return {"sessionId": session_id}
        if method == "session.send":
            self.get_session(params["sessionId"])
            self.spawn(self.run_turn(params["sessionId"], params["prompt"], params))
            return {"messageId": f"msg-{uuid.uuid4().hex[:8]}"}
        if method == "session.getMessages":
            return {"events": self.get_session(params["sessionId"])["events"]}
        if method == "session.destroy":
            session_id = params["sessionId"]
            self.get_session(session_id)
            if session_id.startswith("sticky"):
                raise RpcError(f"session {session_id} is busy")
            del self.sessions[session_id]
            return {}
        if method == "test.getTools":
            return {"tools": self.get_session(params["sessionId"])["tools"]}
        raise RpcError(f"Unknown method {method}")

    def get_session(self, session_id):
        if session_id not in self.sessions:
            raise RpcError(f"Session not found: {session_id}")
        return self.sessions[session_id]

    async def emit(self, session_id, event_type, data, ephemeral=None):
        event = {
            "id": uuid.uuid4().hex,
            "type": event_type,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if ephemeral is not None:
            event["ephemeral"] = ephemeral
        if session_id in self.sessions:
            self.sessions[session_id]["events"].append(event)
        await self.send(
            {
                "jsonrpc": "2.0",
                "method": "session.event",
                "params": {"sessionId": session_id, "event": event},
            }
        )

    async def run_turn(self, session_id, prompt, params):
        await asyncio.sleep(0.01)
        await self.emit(
            session_id,
            "user.message",
            {"content": prompt, "attachments": params.get("attachments", [])},
        )

        if prompt == "crash":
            os._exit(3)
        if prompt == "hang":
            return
        if prompt == "error":
            await self.emit(session_id, "session.error", {"message": "model exploded"})
            return

        content = f"echo: {prompt}"
        if prompt.startswith("tool:"):
            name, _, raw_args = prompt[len("tool:"):].partition(" ")
            tool_call_id = f"call-{uuid.uuid4().hex[:8]}"
            await self.emit(
                session_id, "tool.execution_start", {"toolCallId": tool_call_id, "toolName": name}
            )
            try:
                response = await self.call(
                    "tool.call",
                    {
                        "sessionId": session_id,
                        "toolCallId": tool_call_id,
                        "toolName": name,
                        "arguments": json.loads(raw_args) if raw_args else {},
                    },
                )
                result = response["result"]
            except RpcError as e:
                result = {"rpcError": str(e)}
            await self.emit(
                session_id,
                "tool.execution_complete",
                {"toolCallId": tool_call_id, "result": result},
            )
            content = json.dumps(result, sort_keys=True)

        await self.emit(session_id, "assistant.message_delta", {"deltaContent": content}, True)
        await self.emit(session_id, "assistant.message", {"content": content})
        await self.emit(session_id, "session.idle", {}, True)


async def stdio_streams():
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin.buffer)
    transport, protocol = await loop.connect_write_pipe(
        asyncio.streams.FlowControlMixin, sys.stdout.buffer
    )
    writer = asyncio.StreamWriter(transport, protocol, reader, loop)
    return reader, writer


async def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--server", action="store_true")
    parser.add_argument("--log-level", default="info")
    parser.add_argument("--stdio", action="store_true")
    parser.add_argument("--port", type=int, default=0)
    parser.add_argument("--exit-before-ready", type=int, default=None)
    parser.add_argument("--never-ready", action="store_true")
    args = parser.parse_args()

    if args.exit_before_ready is not None:
        print("fatal: refusing to start", file=sys.stderr, flush=True)
        sys.exit(args.exit_before_ready)

    if args.stdio:
        reader, writer = await stdio_streams()
        await Connection(reader, writer).serve()
        return

    disconnected = asyncio.Event()

    async def on_connect(reader, writer):
        await Connection(reader, writer).serve()
        writer.close()
        disconnected.set()

    server = await asyncio.start_server(on_connect, "127.0.0.1", args.port)
    port = server.sockets[0].getsockname()[1]
    if args.never_ready:
        print("starting up...", flush=True)
        await asyncio.Event().wait()
    print(f"CLI server listening on port {port}", flush=True)
    await disconnected.wait()
    server.close()


if __name__ == "__main__":
    asyncio.run(main())
