"""
Tests for ClaudeSDKFeatureExecutor
==================================

Prompt building, result-marker parsing and session streaming with the
Claude Agent SDK replaced by an in-process fake client.
"""

import asyncio
import sys
import types
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from automode.config import AutoModeSettings
from automode.errors import RunCancelledError
from automode.events import EVENT_PHASE, EVENT_PROGRESS, LifecycleNotifier
from automode.execution_registry import CancellationToken
from automode.models import FeatureItem
from automode.sdk_feature_executor import (
    ClaudeSDKFeatureExecutor,
    build_analysis_prompt,
    build_feature_prompt,
    build_resume_prompt,
    create_executor,
    parse_feature_result,
)


# =============================================================================
# Fake SDK
# =============================================================================

class TextBlock:
    def __init__(self, text):
        self.text = text


class ToolUseBlock:
    def __init__(self, name):
        self.name = name


class AssistantMessage:
    def __init__(self, *content):
        self.content = list(content)


class ResultMessage:
    is_error = False


class FakeClient:
    instances = []

    def __init__(self, options=None, messages=(), delay=0.0):
        self.options = options
        self.messages = list(messages)
        self.delay = delay
        self.prompts = []
        self.interrupted = False
        FakeClient.instances.append(self)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def query(self, prompt):
        self.prompts.append(prompt)

    async def receive_response(self):
        for message in self.messages:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield message

    async def interrupt(self):
        self.interrupted = True


def fake_sdk(messages, delay=0.0):
    FakeClient.instances = []
    module = types.ModuleType("claude_agent_sdk")
    module.ClaudeSDKClient = lambda options=None: FakeClient(options, messages, delay)
    module.ClaudeAgentOptions = MagicMock(name="ClaudeAgentOptions")
    return patch.dict(sys.modules, {"claude_agent_sdk": module})


class InMemoryContextLog:
    def __init__(self):
        self.texts = {}

    def read(self, project_dir, feature_id):
        return self.texts.get(feature_id, "")

    def append(self, project_dir, feature_id, text):
        self.texts[feature_id] = self.texts.get(feature_id, "") + text


FEATURE = FeatureItem(
    id="auth-1",
    category="auth",
    description="Users can log in",
    steps=["Render the form", "Validate credentials"],
)


# =============================================================================
# Prompts and parsing
# =============================================================================

class TestParseFeatureResult:

    def test_pass_marker(self):
        result = parse_feature_result("All done.\nFEATURE_RESULT: PASS")
        assert result.passes is True

    def test_fail_marker_with_reason(self):
        result = parse_feature_result("FEATURE_RESULT: FAIL missing API key")
        assert result.passes is False
        assert result.message == "missing API key"

    def test_last_marker_wins(self):
        text = "FEATURE_RESULT: FAIL tests red\n...fixed...\nFEATURE_RESULT: PASS"
        assert parse_feature_result(text).passes is True

    def test_no_marker_means_not_finished(self):
        result = parse_feature_result("I ran out of turns while editing files")
        assert result.passes is False
        assert "without reporting" in result.message

    def test_marker_is_case_insensitive(self):
        assert parse_feature_result("feature_result: pass").passes is True


class TestPrompts:

    def test_feature_prompt_includes_payload(self):
        prompt = build_feature_prompt(FEATURE)

        assert "auth-1" in prompt
        assert "Users can log in" in prompt
        assert "1. Render the form" in prompt
        assert "FEATURE_RESULT: PASS" in prompt

    def test_skip_tests_changes_testing_instructions(self):
        prompt = build_feature_prompt(FeatureItem(id="x", skip_tests=True))
        assert "Do not write or run automated tests" in prompt

    def test_resume_prompt_carries_context(self):
        prompt = build_resume_prompt(FEATURE, "previous transcript")
        assert "## Previous Work" in prompt
        assert "previous transcript" in prompt

    def test_analysis_prompt_is_read_only(self):
        prompt = build_analysis_prompt()
        assert "Do not modify any files" in prompt
        assert "FEATURE_RESULT: PASS" in prompt


class TestCreateExecutor:

    def test_claude_sdk_executor(self):
        settings = AutoModeSettings(model="claude-x", session_timeout_seconds=42)
        context_log = InMemoryContextLog()

        executor = create_executor(settings, context_log)

        assert isinstance(executor, ClaudeSDKFeatureExecutor)
        assert executor.model == "claude-x"
        assert executor.timeout_seconds == 42
        assert executor.context_log is context_log

    def test_unknown_executor(self):
        with pytest.raises(ValueError):
            create_executor(AutoModeSettings(executor="shell"))


# =============================================================================
# Sessions
# =============================================================================

class TestSessions:

    @pytest.mark.asyncio
    async def test_run_streams_text_and_parses_result(self, tmp_path):
        messages = [
            AssistantMessage(TextBlock("Implementing login. "), ToolUseBlock("Write")),
            AssistantMessage(TextBlock("Done.\nFEATURE_RESULT: PASS")),
            ResultMessage(),
        ]
        events = []
        context_log = InMemoryContextLog()
        executor = ClaudeSDKFeatureExecutor(model="m", context_log=context_log)

        with fake_sdk(messages):
            result = await executor.run(
                FEATURE, tmp_path, LifecycleNotifier(events.append), CancellationToken("auth-1")
            )

        assert result.passes is True
        assert context_log.read(tmp_path, "auth-1") == "Implementing login. Done.\nFEATURE_RESULT: PASS"
        progress = [e["content"] for e in events if e["type"] == EVENT_PROGRESS]
        assert "Implementing login. " in progress
        assert any("Tool: Write" in p for p in progress)
        assert events[0]["type"] == EVENT_PHASE
        assert "Users can log in" in FakeClient.instances[0].prompts[0]
        assert (tmp_path / ".claude_settings.json").exists()

    @pytest.mark.asyncio
    async def test_session_without_marker_does_not_pass(self, tmp_path):
        messages = [AssistantMessage(TextBlock("Still working on it"))]
        executor = ClaudeSDKFeatureExecutor(model="m")

        with fake_sdk(messages):
            result = await executor.resume(
                FEATURE, tmp_path, LifecycleNotifier(), "earlier", CancellationToken("auth-1")
            )

        assert result.passes is False
        assert "earlier" in FakeClient.instances[0].prompts[0]

    @pytest.mark.asyncio
    async def test_cancellation_interrupts_session(self, tmp_path):
        token = CancellationToken("auth-1")

        def cancel_on_progress(message):
            if message["type"] == EVENT_PROGRESS:
                token.cancel()

        messages = [
            AssistantMessage(TextBlock("step one")),
            AssistantMessage(TextBlock("step two")),
        ]
        executor = ClaudeSDKFeatureExecutor(model="m")

        with fake_sdk(messages):
            with pytest.raises(RunCancelledError):
                await executor.run(FEATURE, tmp_path, LifecycleNotifier(cancel_on_progress), token)

        assert FakeClient.instances[0].interrupted is True

    @pytest.mark.asyncio
    async def test_cancelled_token_never_opens_session(self, tmp_path):
        token = CancellationToken("auth-1")
        token.cancel()
        executor = ClaudeSDKFeatureExecutor(model="m")

        with fake_sdk([]):
            with pytest.raises(RunCancelledError):
                await executor.verify(FEATURE, tmp_path, LifecycleNotifier(), token)

        assert FakeClient.instances == []

    @pytest.mark.asyncio
    async def test_timeout_returns_failure(self, tmp_path):
        messages = [AssistantMessage(TextBlock("slow"))]
        executor = ClaudeSDKFeatureExecutor(model="m", timeout_seconds=0.05)

        with fake_sdk(messages, delay=1.0):
            result = await executor.run(
                FEATURE, tmp_path, LifecycleNotifier(), CancellationToken("auth-1")
            )

        assert result.passes is False
        assert "timeout" in result.message

    @pytest.mark.asyncio
    async def test_stop_interrupts_silent_session(self, tmp_path):
        token = CancellationToken("auth-1")
        messages = [AssistantMessage(TextBlock("thinking for a long time"))]
        executor = ClaudeSDKFeatureExecutor(model="m", timeout_seconds=30)

        async def stop_soon():
            await asyncio.sleep(0.05)
            token.cancel()

        with fake_sdk(messages, delay=5.0):
            stopper = asyncio.create_task(stop_soon())
            started = asyncio.get_running_loop().time()
            with pytest.raises(RunCancelledError):
                await executor.run(FEATURE, tmp_path, LifecycleNotifier(), token)
            elapsed = asyncio.get_running_loop().time() - started
            await stopper

        assert elapsed < 2.0
        assert FakeClient.instances[0].interrupted is True

    @pytest.mark.asyncio
    async def test_analyze_runs_analysis_prompt(self, tmp_path):
        item = FeatureItem(id="project-analysis-1", description="Analyzing project structure and tech stack")
        messages = [AssistantMessage(TextBlock("A FastAPI service.\nFEATURE_RESULT: PASS"))]
        events = []
        executor = ClaudeSDKFeatureExecutor(model="m")

        with fake_sdk(messages):
            result = await executor.analyze(
                item, tmp_path, LifecycleNotifier(events.append), CancellationToken(item.id)
            )

        assert result.passes is True
        assert FakeClient.instances[0].prompts[0] == build_analysis_prompt()
        assert events[0]["phase"] == "planning"
