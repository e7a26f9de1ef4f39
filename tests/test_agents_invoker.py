"""Tests for ralph_engine/agents/invoker.py: provider CLI wrappers."""

import json

import pytest

from ralph_engine.agents.invoker import (
    ClaudeCliInvoker,
    CodexCliInvoker,
    create_invoker,
    map_model,
    parse_claude_output,
    parse_codex_output,
)
from ralph_engine.core.exceptions import AgentInvocationError


def _fake_cli(tmp_path, body: str):
    """Write an executable shell script standing in for a provider CLI."""
    script = tmp_path / "fake-agent"
    script.write_text("#!/bin/sh\n" + body + "\n")
    script.chmod(0o755)
    return str(script)


class TestMapModel:
    def test_claude(self):
        assert map_model("claude", "fast") == "haiku"
        assert map_model("claude", "smart") == "opus"
        assert map_model("claude", "default") == "sonnet"
        assert map_model("claude", "opus") == "opus"
        assert map_model("claude", "something-else") == "sonnet"

    def test_codex(self):
        assert map_model("codex", "fast") == "gpt-4o-mini"
        assert map_model("codex", "sonnet") == "gpt-5.2"

    def test_unknown_provider_passthrough(self):
        assert map_model("other", "m") == "m"


class TestParseClaudeOutput:
    def test_json_result(self):
        raw = json.dumps({
            "result": "CRITERION_DONE: 1",
            "usage": {"input_tokens": 1200, "output_tokens": 300},
            "session_id": "abc-123",
        })
        response = parse_claude_output(raw)
        assert response.text == "CRITERION_DONE: 1"
        assert response.input_tokens == 1200
        assert response.output_tokens == 300
        assert response.session_handle == "abc-123"

    def test_missing_usage(self):
        response = parse_claude_output(json.dumps({"result": "ok"}))
        assert (response.input_tokens, response.output_tokens) == (0, 0)
        assert response.session_handle is None

    def test_plain_text_fallback(self):
        response = parse_claude_output("not json at all")
        assert response.text == "not json at all"
        assert response.input_tokens == 0

    def test_garbage_usage_counts_as_zero(self):
        raw = json.dumps({"result": "x", "usage": {"input_tokens": "many", "output_tokens": -5}})
        response = parse_claude_output(raw)
        assert (response.input_tokens, response.output_tokens) == (0, 0)


class TestParseCodexOutput:
    def test_events(self):
        raw = "\n".join([
            "progress noise",
            json.dumps({"type": "thread.started", "thread_id": "t-1"}),
            json.dumps({"type": "item.completed", "item": {"type": "reasoning", "text": "hmm"}}),
            json.dumps({"type": "item.completed", "item": {"type": "message", "text": "Edited app.py"}}),
            json.dumps({"type": "turn.completed", "usage": {"input_tokens": 10, "output_tokens": 4}}),
            json.dumps({"type": "item.completed", "item": {
                "type": "message", "content": [{"text": "STEP_DONE: 1"}],
            }}),
            json.dumps({"type": "turn.completed", "usage": {"input_tokens": 5, "output_tokens": 1}}),
        ])
        response = parse_codex_output(raw)
        assert response.text == "Edited app.py\nSTEP_DONE: 1"
        assert response.input_tokens == 15
        assert response.output_tokens == 5
        assert response.session_handle == "t-1"

    def test_no_messages_falls_back_to_raw(self):
        assert parse_codex_output("plain output").text == "plain output"


class TestClaudeCliInvoker:
    def test_build_command(self):
        invoker = ClaudeCliInvoker()
        assert invoker.build_command("sonnet") == [
            "claude", "--print", "--output-format", "json", "--dangerously-skip-permissions",
        ]
        cmd = invoker.build_command("smart", session_handle="h")
        assert cmd[-3:] == ["--model", "opus", "--continue"]

    def test_invoke_passes_context_on_stdin(self, tmp_path):
        # The fake CLI echoes stdin back as the result
        script = _fake_cli(
            tmp_path,
            'input=$(cat)\n'
            'printf \'{"result": "%s", "usage": {"input_tokens": 7, "output_tokens": 3}}\' "$input"',
        )
        response = ClaudeCliInvoker(executable=script, cwd=str(tmp_path)).invoke("hello agent", "sonnet")
        assert response.text == "hello agent"
        assert response.input_tokens == 7

    def test_undecodable_bytes_are_replaced(self, tmp_path):
        script = _fake_cli(tmp_path, "cat >/dev/null\nprintf '\\377\\376 CRITERION_DONE: 1'")
        response = ClaudeCliInvoker(executable=script).invoke("ctx", "sonnet")
        assert response.text == "\ufffd\ufffd CRITERION_DONE: 1"
        assert response.input_tokens == 0

    def test_nonzero_exit_raises(self, tmp_path):
        script = _fake_cli(tmp_path, "echo 'rate limited' >&2\nexit 2")
        with pytest.raises(AgentInvocationError, match="exited with code 2: rate limited"):
            ClaudeCliInvoker(executable=script).invoke("ctx", "sonnet")

    def test_missing_executable_raises(self):
        with pytest.raises(AgentInvocationError, match="invocation failed"):
            ClaudeCliInvoker(executable="no-such-agent-cli-xyz").invoke("ctx", "sonnet")

    def test_timeout_raises(self, tmp_path):
        script = _fake_cli(tmp_path, "sleep 5")
        with pytest.raises(AgentInvocationError, match="timed out"):
            ClaudeCliInvoker(executable=script, timeout_seconds=1).invoke("ctx", "sonnet")


class TestCodexCliInvoker:
    def test_build_command(self):
        cmd = CodexCliInvoker().build_command("do it", "fast", session_handle="s-9")
        assert cmd[:2] == ["codex", "exec"]
        assert cmd[cmd.index("--model") + 1] == "gpt-4o-mini"
        assert cmd[cmd.index("--resume") + 1] == "s-9"
        assert cmd[-1] == "do it"

    def test_invoke(self, tmp_path):
        event = json.dumps({"type": "item.completed", "item": {"type": "message", "text": "done"}})
        script = _fake_cli(tmp_path, f"echo '{event}'")
        response = CodexCliInvoker(executable=script).invoke("ctx", "default")
        assert response.text == "done"


class TestCreateInvoker:
    def test_known_providers(self):
        assert isinstance(create_invoker("claude"), ClaudeCliInvoker)
        invoker = create_invoker("codex", cwd="/tmp", timeout_seconds=60)
        assert isinstance(invoker, CodexCliInvoker)
        assert invoker.timeout_seconds == 60

    def test_unknown_provider(self):
        with pytest.raises(AgentInvocationError, match="Unknown agent provider"):
            create_invoker("gemini")
