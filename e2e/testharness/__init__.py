"""Shared helpers for the e2e tests."""

import asyncio
import os
from contextlib import asynccontextmanager

from copilot_runtime import CopilotClient

# Scripts ending in .py are launched with the current interpreter
CLI_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "fake_cli.py")


@asynccontextmanager
async def started_client(**options):
    client = CopilotClient({"cli_path": CLI_PATH, **options})
    try:
        await client.start()
        yield client
    finally:
        await client.force_stop()


async def wait_until(predicate, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


async def run_turn(session, prompt, timeout=5.0):
    """Send a prompt and collect the session's events until it goes idle."""
    events = []
    idle = asyncio.Event()

    def on_event(event):
        events.append(event)
        if event.type in ("session.idle", "session.error"):
            idle.set()

    unsubscribe = session.on(on_event)
    try:
        await session.send({"prompt": prompt})
        await asyncio.wait_for(idle.wait(), timeout)
    finally:
        unsubscribe()
    return events
