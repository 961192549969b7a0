"""Notification text generation.

The engine treats generation as an opaque collaborator: given an event type
and its context payload it returns a title and a body. ``ClaudeCliGenerator``
shells out to the Claude CLI; ``StaticGenerator`` returns fixed text for dry
runs and tests.
"""

import asyncio
import json
import logging
from dataclasses import dataclass

from .config import GeneratorConfig
from .events import EVENT_TEMPLATES, EventType

logger = logging.getLogger("herald.generator")

# Keeps a runaway context payload from blowing up the prompt
MAX_CONTEXT_CHARS = 4000


class GenerationError(Exception):
    """The text generator could not produce a message."""


@dataclass
class GeneratedMessage:
    title: str
    body: str


def build_prompt(event_type: str, context: dict) -> str:
    template = EVENT_TEMPLATES[EventType(event_type)]
    context_json = json.dumps(context, indent=2, sort_keys=True, default=str)
    if len(context_json) > MAX_CONTEXT_CHARS:
        context_json = context_json[:MAX_CONTEXT_CHARS] + "\n... (truncated)"
    return (
        "You are a helpful team assistant writing a short notification for one user.\n"
        "Write only the message body: no subject line, no sign-off, no preamble.\n"
        "Use **bold** for emphasis sparingly.\n\n"
        + template.prompt_template.format(context=context_json)
    )


class TextGenerator:
    async def generate(self, event_type: str, context: dict) -> GeneratedMessage:
        raise NotImplementedError


class ClaudeCliGenerator(TextGenerator):
    """Generate text with ``claude -p - --model <model>``, prompt on stdin."""

    def __init__(self, config: GeneratorConfig):
        self.command = config.command
        self.model = config.model
        self.timeout = config.timeout

    async def generate(self, event_type: str, context: dict) -> GeneratedMessage:
        prompt = build_prompt(event_type, context)
        try:
            proc = await asyncio.create_subprocess_exec(
                self.command, "-p", "-", "--model", self.model,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise GenerationError(f"{self.command} CLI not found") from None

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(prompt.encode()), timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise GenerationError(f"Generation timed out after {self.timeout:.0f}s") from None
        finally:
            # Cancelled by an outer deadline while the CLI is still running
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass

        if proc.returncode != 0:
            detail = stderr.decode(errors="replace")[:200] if stderr else ""
            raise GenerationError(f"Generation failed (rc={proc.returncode}): {detail}")

        body = stdout.decode(errors="replace").strip()
        if not body:
            raise GenerationError("Generator returned empty output")

        logger.debug("Generated %d chars for %s", len(body), event_type)
        return GeneratedMessage(title=EVENT_TEMPLATES[EventType(event_type)].title, body=body)


class StaticGenerator(TextGenerator):
    """Deterministic text built from the event template and context."""

    def __init__(self, body: str | None = None):
        self.body = body

    async def generate(self, event_type: str, context: dict) -> GeneratedMessage:
        template = EVENT_TEMPLATES[EventType(event_type)]
        if self.body is not None:
            body = self.body
        else:
            summary = context.get("summary") or context.get("task_title") or template.title
            body = f"**{template.title}**: {summary}"
        return GeneratedMessage(title=template.title, body=body)
