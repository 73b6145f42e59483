"""
SDK Feature Executor
====================

FeatureExecutor that implements each feature in one Claude Code CLI session
through ClaudeSDKClient (Claude Agent SDK).

Each call builds a prompt from the feature, connects a client with the
project directory as cwd and streams the response. Assistant text is
forwarded as progress events and appended to the feature's context log, so a
later resume can hand the whole transcript back to the agent.

The agent reports its verdict with a marker line at the end of its reply:

    FEATURE_RESULT: PASS
    FEATURE_RESULT: FAIL <reason>

The last marker wins. A session that ends without one did not finish, which
makes it a candidate for an automatic retry.

Usage:
    from automode.config import AutoModeSettings
    from automode.sdk_feature_executor import create_executor

    executor = create_executor(AutoModeSettings.from_env(), context_log)
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shutil
from pathlib import Path
from typing import Any, Optional

from automode.config import (
    DEFAULT_MODEL,
    DEFAULT_SESSION_TIMEOUT_SECONDS,
    EXECUTOR_CLAUDE_SDK,
    AutoModeSettings,
)
from automode.context_log import ContextLog
from automode.errors import RunCancelledError
from automode.events import LifecycleNotifier
from automode.execution_registry import CancellationToken
from automode.executor import FeatureExecutor
from automode.models import FeatureItem, RunResult

_logger = logging.getLogger(__name__)

# Default max turns for one SDK session
DEFAULT_MAX_TURNS = 1000

# Resume prompts carry at most this much of the tail of the context log
MAX_RESUME_CONTEXT_CHARS = 50_000

BUILTIN_TOOLS = ["Read", "Write", "Edit", "Glob", "Grep", "Bash", "WebFetch", "WebSearch"]

# Environment variables to pass through to Claude CLI for API configuration
API_ENV_VARS = [
    "ANTHROPIC_BASE_URL",
    "ANTHROPIC_AUTH_TOKEN",
    "API_TIMEOUT_MS",
    "ANTHROPIC_DEFAULT_SONNET_MODEL",
    "ANTHROPIC_DEFAULT_OPUS_MODEL",
    "ANTHROPIC_DEFAULT_HAIKU_MODEL",
]

SYSTEM_PROMPT = (
    "You are an expert software engineer implementing one feature of an "
    "existing project. Work only on the feature you are given."
)

RESULT_MARKER_RE = re.compile(r"FEATURE_RESULT:\s*(PASS|FAIL)\b[ \t:-]*([^\n]*)", re.IGNORECASE)

RESULT_INSTRUCTIONS = (
    "When you are done, end your reply with exactly one line:\n"
    "FEATURE_RESULT: PASS\n"
    "or, if the feature cannot be completed:\n"
    "FEATURE_RESULT: FAIL <short reason>"
)


# =============================================================================
# Prompts and result parsing
# =============================================================================

def _describe_feature(feature: FeatureItem) -> str:
    lines = [f"# Feature {feature.id}"]
    if feature.category:
        lines.append(f"Category: {feature.category}")
    lines.append("")
    lines.append(feature.description or "(no description)")
    if feature.steps:
        lines.append("")
        lines.append("## Steps")
        lines.extend(f"{i}. {step}" for i, step in enumerate(feature.steps, start=1))
    return "\n".join(lines)


def build_feature_prompt(feature: FeatureItem) -> str:
    """Prompt for implementing a feature from scratch."""
    if feature.skip_tests:
        testing = "Do not write or run automated tests for this feature; a human will review it."
    else:
        testing = "Write or update tests that cover the feature and make sure they pass."
    return "\n\n".join([
        _describe_feature(feature),
        "Implement this feature in the current project.",
        testing,
        RESULT_INSTRUCTIONS,
    ])


def build_resume_prompt(feature: FeatureItem, previous_context: str) -> str:
    """Prompt for continuing a feature from its accumulated context."""
    context = previous_context[-MAX_RESUME_CONTEXT_CHARS:]
    return "\n\n".join([
        _describe_feature(feature),
        "You already started on this feature. Your previous work and any new "
        "instructions are below. Continue from where you stopped; do not redo "
        "finished steps.",
        f"## Previous Work\n\n{context}",
        RESULT_INSTRUCTIONS,
    ])


def build_verify_prompt(feature: FeatureItem) -> str:
    """Prompt for running a feature's tests without changing code."""
    return "\n\n".join([
        _describe_feature(feature),
        "Verify this feature: run the tests that cover it and check its steps. "
        "Do not change the implementation.",
        RESULT_INSTRUCTIONS,
    ])


def build_commit_prompt(feature: FeatureItem) -> str:
    """Prompt for committing a feature's changes to git."""
    return "\n\n".join([
        _describe_feature(feature),
        "Commit the changes for this feature to git with a concise message that "
        "describes the feature. Do not make any other changes.",
        RESULT_INSTRUCTIONS,
    ])


def build_analysis_prompt() -> str:
    """Prompt for surveying the project before any feature work."""
    return "\n\n".join([
        "Analyze the current project. Explore its directory layout, identify the "
        "languages, frameworks and build tooling it uses, and summarize how the "
        "code is organized and how tests are run. Do not modify any files.",
        RESULT_INSTRUCTIONS,
    ])


def parse_feature_result(text: str) -> RunResult:
    """
    Turn the agent's reply into a RunResult using its last result marker.

    No marker means the agent stopped early: passes=False.
    """
    matches = list(RESULT_MARKER_RE.finditer(text or ""))
    if not matches:
        return RunResult(passes=False, message="Agent ended without reporting a result")

    last = matches[-1]
    verdict = last.group(1).upper()
    reason = last.group(2).strip()
    if verdict == "PASS":
        return RunResult(passes=True, message=reason or "Feature implemented successfully")
    return RunResult(passes=False, message=reason or "Agent reported failure")


# =============================================================================
# Executor
# =============================================================================

class ClaudeSDKFeatureExecutor(FeatureExecutor):
    """
    Runs each feature operation as one Claude Code CLI session.

    Args:
        model: Claude model to use
        timeout_seconds: Wall-clock limit for one session
        context_log: Transcript store that receives the streamed text
        max_turns: Upper bound on agent turns per session
    """

    def __init__(
        self,
        model: Optional[str] = None,
        timeout_seconds: float = DEFAULT_SESSION_TIMEOUT_SECONDS,
        context_log: Optional[ContextLog] = None,
        max_turns: int = DEFAULT_MAX_TURNS,
    ):
        self.model = model or os.getenv("ANTHROPIC_DEFAULT_SONNET_MODEL", DEFAULT_MODEL)
        self.timeout_seconds = timeout_seconds
        self.context_log = context_log
        self.max_turns = max_turns

    async def run(self, feature, project_dir, notifier, token) -> RunResult:
        notifier.phase(feature.id, "action", f"Implementing feature {feature.id}...")
        return await self._execute_session(
            feature, Path(project_dir), notifier, token, build_feature_prompt(feature)
        )

    async def resume(self, feature, project_dir, notifier, previous_context, token) -> RunResult:
        notifier.phase(feature.id, "action", f"Resuming feature {feature.id}...")
        return await self._execute_session(
            feature, Path(project_dir), notifier, token,
            build_resume_prompt(feature, previous_context),
        )

    async def verify(self, feature, project_dir, notifier, token) -> RunResult:
        notifier.phase(feature.id, "verification", f"Verifying feature {feature.id}...")
        return await self._execute_session(
            feature, Path(project_dir), notifier, token, build_verify_prompt(feature)
        )

    async def commit(self, feature, project_dir, notifier, token) -> RunResult:
        return await self._execute_session(
            feature, Path(project_dir), notifier, token, build_commit_prompt(feature)
        )

    async def analyze(self, feature, project_dir, notifier, token) -> RunResult:
        notifier.phase(feature.id, "planning", "Analyzing project structure...")
        return await self._execute_session(
            feature, Path(project_dir), notifier, token, build_analysis_prompt()
        )

    async def _execute_session(
        self,
        feature: FeatureItem,
        project_dir: Path,
        notifier: LifecycleNotifier,
        token: CancellationToken,
        prompt: str,
    ) -> RunResult:
        """Run one session with a timeout guard and parse its verdict."""
        token.raise_if_cancelled()
        try:
            response_text = await asyncio.wait_for(
                self._run_session(feature, project_dir, notifier, token, prompt),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            _logger.error(
                "SDK session timed out after %ss for feature %s",
                self.timeout_seconds, feature.id,
            )
            return RunResult(
                passes=False,
                message=f"Agent session exceeded {self.timeout_seconds}s timeout",
            )
        return parse_feature_result(response_text)

    async def _run_session(
        self,
        feature: FeatureItem,
        project_dir: Path,
        notifier: LifecycleNotifier,
        token: CancellationToken,
        prompt: str,
    ) -> str:
        """
        Core session logic: build options, connect client, stream response.

        The stream is raced against the cancellation token, so a stop request
        interrupts the agent even while it is silent between messages.
        """
        from claude_agent_sdk import ClaudeSDKClient

        options = self._build_options(project_dir)
        chunks: list[str] = []

        async with ClaudeSDKClient(options=options) as client:
            await client.query(prompt)

            stream = asyncio.ensure_future(
                self._consume(client, feature, project_dir, notifier, token, chunks)
            )
            watcher = asyncio.ensure_future(token.wait())
            try:
                await asyncio.wait({stream, watcher}, return_when=asyncio.FIRST_COMPLETED)
                if not stream.done():
                    stream.cancel()
                    await self._interrupt(client, feature.id)
                stream.result()
            finally:
                for task in (stream, watcher):
                    if not task.done():
                        task.cancel()
                await asyncio.gather(stream, watcher, return_exceptions=True)

        token.raise_if_cancelled()
        return "".join(chunks)

    async def _consume(
        self,
        client: Any,
        feature: FeatureItem,
        project_dir: Path,
        notifier: LifecycleNotifier,
        token: CancellationToken,
        chunks: list[str],
    ) -> None:
        async for msg in client.receive_response():
            if token.is_cancelled:
                await self._interrupt(client, feature.id)
            msg_type = type(msg).__name__
            if msg_type == "AssistantMessage" and hasattr(msg, "content"):
                for block in msg.content:
                    block_type = type(block).__name__

                    if block_type == "TextBlock" and hasattr(block, "text"):
                        chunks.append(block.text)
                        self._record(feature.id, project_dir, notifier, block.text)

                    elif block_type == "ToolUseBlock" and hasattr(block, "name"):
                        notifier.progress(feature.id, f"\n🔧 Tool: {block.name}\n")

            elif msg_type == "ResultMessage":
                _logger.debug(
                    "Session for feature %s finished (is_error=%s)",
                    feature.id, getattr(msg, "is_error", None),
                )

    async def _interrupt(self, client: Any, feature_id: str) -> None:
        """Stop the agent mid-session and abandon the run."""
        _logger.info("Interrupting agent session for feature %s", feature_id)
        await client.interrupt()
        raise RunCancelledError(feature_id)

    def _record(
        self,
        feature_id: str,
        project_dir: Path,
        notifier: LifecycleNotifier,
        text: str,
    ) -> None:
        notifier.progress(feature_id, text)
        if self.context_log is not None:
            self.context_log.append(project_dir, feature_id, text)

    def _build_options(self, project_dir: Path) -> Any:
        """Build ClaudeAgentOptions for a session rooted at ``project_dir``."""
        from claude_agent_sdk import ClaudeAgentOptions

        project_dir = project_dir.resolve()

        security_settings = {
            "sandbox": {"enabled": True, "autoAllowBashIfSandboxed": True},
            "permissions": {
                "defaultMode": "acceptEdits",
                "allow": [
                    "Read(./**)", "Write(./**)", "Edit(./**)",
                    "Glob(./**)", "Grep(./**)", "Bash(*)",
                    "WebFetch", "WebSearch",
                ],
            },
        }
        project_dir.mkdir(parents=True, exist_ok=True)
        settings_file = project_dir / ".claude_settings.json"
        settings_file.write_text(json.dumps(security_settings, indent=2), encoding="utf-8")

        sdk_env: dict[str, str] = {}
        for var in API_ENV_VARS:
            value = os.getenv(var)
            if value:
                sdk_env[var] = value

        return ClaudeAgentOptions(
            model=self.model,
            cli_path=shutil.which("claude"),
            system_prompt=SYSTEM_PROMPT,
            setting_sources=["project"],
            allowed_tools=list(BUILTIN_TOOLS),
            max_turns=self.max_turns,
            cwd=str(project_dir),
            settings=str(settings_file),
            env=sdk_env,
            permission_mode="acceptEdits",
        )


def create_executor(
    settings: AutoModeSettings,
    context_log: Optional[ContextLog] = None,
) -> FeatureExecutor:
    """
    Build the executor selected by ``settings.executor``.

    Raises:
        ValueError: If the executor name is unknown
    """
    if settings.executor == EXECUTOR_CLAUDE_SDK:
        return ClaudeSDKFeatureExecutor(
            model=settings.model,
            timeout_seconds=settings.session_timeout_seconds,
            context_log=context_log,
        )
    raise ValueError(f"Unknown executor: {settings.executor}")
