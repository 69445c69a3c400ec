"""
High-level helper around :func:`~copilot_runtime.query.query`.
"""

from contextlib import aclosing
from typing import Optional

from .query import DEFAULT_TIMEOUT_MS, query
from .types import AskOptions, AskResult, QueryOptions, SessionEvent


async def ask(prompt: str, options: Optional[AskOptions] = None) -> AskResult:
    """
    Ask the Copilot CLI a question and wait for the complete answer.

    Starts the CLI server, creates a session, sends the prompt, waits for the
    turn to finish and cleans up. Failures are reported on the result rather
    than raised.

    Example:
        >>> result = await ask("What is 2+2?")
        >>> print(result.content)
    """
    opts = options or {}

    query_options: QueryOptions = {
        "prompt": prompt,
        "log_level": opts.get("log_level", "error"),
        "timeout": opts.get("timeout", DEFAULT_TIMEOUT_MS),
    }
    if opts.get("model"):
        query_options["model"] = opts["model"]
    if opts.get("cli_path"):
        query_options["cli_path"] = opts["cli_path"]
    if opts.get("cli_args"):
        query_options["cli_args"] = opts["cli_args"]
    if opts.get("cwd"):
        query_options["cwd"] = opts["cwd"]
    if opts.get("attachments"):
        query_options["attachments"] = opts["attachments"]
    if opts.get("tools"):
        query_options["tools"] = opts["tools"]
    on_event = opts.get("on_event")

    events: list[SessionEvent] = []
    final_content = ""

    try:
        async with aclosing(query(query_options)) as stream:
            async for event in stream:
                events.append(event)

                # Let callback errors abort the interaction so they are visible
                if on_event:
                    on_event(event)

                if event.type == "assistant.message":
                    data = event.data
                    content = data.get("content") if isinstance(data, dict) else None
                    final_content = content if isinstance(content, str) else ""
    except Exception as e:  # pylint: disable=broad-except
        return AskResult(content=final_content, events=events, completed=False, error=e)

    return AskResult(content=final_content, events=events, completed=True)
