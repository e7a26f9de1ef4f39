"""Agent invocation through provider CLIs.

Each provider wraps a coding-agent command line tool: the context document
goes in, and a response text, token usage and an optional session handle
come back. Hybrid session mode passes the handle back in to continue the
agent's own conversation instead of starting fresh.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from ralph_engine.core.exceptions import AgentInvocationError, ToolError
from ralph_engine.tools.shell import run_command

logger = logging.getLogger("ralph.agents.invoker")

DEFAULT_AGENT_TIMEOUT = 1800  # seconds

# Generic model name -> provider model
_CLAUDE_MODELS = {
    "fast": "haiku",
    "smart": "opus",
    "default": "sonnet",
    "sonnet": "sonnet",
    "opus": "opus",
    "haiku": "haiku",
}
_CODEX_MODELS = {
    "fast": "gpt-4o-mini",
    "haiku": "gpt-4o-mini",
}
_CODEX_DEFAULT_MODEL = "gpt-5.2"


@dataclass
class AgentResponse:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    session_handle: Optional[str] = None


class AgentInvoker(Protocol):
    def invoke(
        self,
        context: str,
        model: str,
        session_handle: Optional[str] = None,
    ) -> AgentResponse:
        """Run the agent once. Raises AgentInvocationError on failure."""
        ...


def map_model(provider: str, model: str) -> str:
    """Map a generic model name (fast / smart / default) onto a provider model."""
    if provider == "claude":
        return _CLAUDE_MODELS.get(model, "sonnet")
    if provider == "codex":
        return _CODEX_MODELS.get(model, _CODEX_DEFAULT_MODEL)
    return model


def _as_int(value: Any) -> int:
    try:
        return max(int(value or 0), 0)
    except (TypeError, ValueError):
        return 0


def parse_claude_output(raw: str) -> AgentResponse:
    """Parse ``claude --output-format json`` output.

    Falls back to the raw text with zero usage when the output is not JSON.
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Claude output is not JSON; using raw text")
        return AgentResponse(text=raw)

    if not isinstance(data, dict):
        return AgentResponse(text=raw)

    text = data.get("result") or data.get("content") or data.get("message") or ""
    if not isinstance(text, str):
        text = json.dumps(text)
    usage = data.get("usage") or {}
    return AgentResponse(
        text=text,
        input_tokens=_as_int(usage.get("input_tokens")),
        output_tokens=_as_int(usage.get("output_tokens")),
        session_handle=data.get("session_id") or None,
    )


def parse_codex_output(raw: str) -> AgentResponse:
    """Parse ``codex exec --json`` JSON Lines events.

    Message text comes from ``item.completed`` message items, usage is summed
    over ``turn.completed`` events and the session id is taken from
    ``thread.started``.
    """
    texts: list[str] = []
    input_tokens = 0
    output_tokens = 0
    session_handle: Optional[str] = None

    for line in raw.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            continue

        event_type = event.get("type")
        if event_type == "thread.started" and session_handle is None:
            session_handle = event.get("session_id") or event.get("thread_id")
        elif event_type == "turn.completed":
            usage = event.get("usage") or {}
            input_tokens += _as_int(usage.get("input_tokens"))
            output_tokens += _as_int(usage.get("output_tokens"))
        elif event_type == "item.completed":
            item = event.get("item") or {}
            if item.get("type") != "message":
                continue
            content = item.get("content")
            if isinstance(content, list):
                texts.extend(part.get("text", "") for part in content if isinstance(part, dict))
            elif isinstance(item.get("text"), str):
                texts.append(item["text"])

    return AgentResponse(
        text="\n".join(t for t in texts if t) or raw,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        session_handle=session_handle,
    )


class ClaudeCliInvoker:
    """Runs ``claude --print`` with the context on stdin."""

    provider = "claude"

    def __init__(self, executable: str = "claude", cwd: Optional[str] = None,
                 timeout_seconds: int = DEFAULT_AGENT_TIMEOUT):
        self.executable = executable
        self.cwd = cwd
        self.timeout_seconds = timeout_seconds

    def build_command(self, model: str, session_handle: Optional[str] = None) -> list[str]:
        args = [self.executable, "--print", "--output-format", "json", "--dangerously-skip-permissions"]
        mapped = map_model(self.provider, model)
        # sonnet is the CLI default
        if mapped in ("opus", "haiku"):
            args += ["--model", mapped]
        if session_handle:
            args.append("--continue")
        return args

    def invoke(self, context: str, model: str, session_handle: Optional[str] = None) -> AgentResponse:
        cmd = self.build_command(model, session_handle)
        try:
            result = run_command(cmd, cwd=self.cwd, timeout=self.timeout_seconds, input_text=context)
        except ToolError as e:
            raise AgentInvocationError(f"claude invocation failed: {e}") from e

        if not result.success:
            detail = (result.stderr or result.stdout).strip()[:500]
            raise AgentInvocationError(f"claude exited with code {result.return_code}: {detail}")

        response = parse_claude_output(result.stdout)
        logger.info(
            "claude responded: %d chars, tokens in=%d out=%d",
            len(response.text), response.input_tokens, response.output_tokens,
        )
        return response


class CodexCliInvoker:
    """Runs ``codex exec --json`` with the context as the prompt argument."""

    provider = "codex"

    def __init__(self, executable: str = "codex", cwd: Optional[str] = None,
                 timeout_seconds: int = DEFAULT_AGENT_TIMEOUT):
        self.executable = executable
        self.cwd = cwd
        self.timeout_seconds = timeout_seconds

    def build_command(self, context: str, model: str, session_handle: Optional[str] = None) -> list[str]:
        args = [self.executable, "exec", "--full-auto", "--sandbox", "danger-full-access", "--json"]
        args += ["--model", map_model(self.provider, model)]
        if session_handle:
            args += ["--resume", session_handle]
        args.append(context)
        return args

    def invoke(self, context: str, model: str, session_handle: Optional[str] = None) -> AgentResponse:
        cmd = self.build_command(context, model, session_handle)
        try:
            result = run_command(cmd, cwd=self.cwd, timeout=self.timeout_seconds)
        except ToolError as e:
            raise AgentInvocationError(f"codex invocation failed: {e}") from e

        if not result.success:
            detail = (result.stderr or result.stdout).strip()[:500]
            raise AgentInvocationError(f"codex exited with code {result.return_code}: {detail}")

        response = parse_codex_output(result.stdout)
        logger.info(
            "codex responded: %d chars, tokens in=%d out=%d",
            len(response.text), response.input_tokens, response.output_tokens,
        )
        return response


_PROVIDERS = {
    "claude": ClaudeCliInvoker,
    "codex": CodexCliInvoker,
}


def create_invoker(
    provider: str,
    cwd: Optional[str] = None,
    timeout_seconds: int = DEFAULT_AGENT_TIMEOUT,
) -> AgentInvoker:
    """Build the invoker for a configured provider name.

    Raises:
        AgentInvocationError: If the provider is unknown.
    """
    try:
        invoker_cls = _PROVIDERS[provider]
    except KeyError:
        raise AgentInvocationError(
            f"Unknown agent provider: {provider!r} (expected one of {sorted(_PROVIDERS)})"
        ) from None
    return invoker_cls(cwd=cwd, timeout_seconds=timeout_seconds)
