"""后端执行器测试。

覆盖请求/结果契约、prompt 与环境构建、模型归一化、参数构建、
错误分类，以及基于模拟 CLI 的端到端执行。
"""

from __future__ import annotations

import io
import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from cli_agent_exec.config import Config, load_config
from cli_agent_exec.runtime.detectors import AbortFlags, AbortReason
from cli_agent_exec.runtime.process_runner import ProcessOutcome
from cli_agent_exec.shared.invokers import (
    AttemptResult,
    Backend,
    ClaudeCodeExecutor,
    CodexExecutor,
    ExecutionContext,
    ExecutionRequest,
    ExecutionResult,
    OpencodeExecutor,
    create_executor,
    normalize_claude_model,
    normalize_codex_model,
)
from cli_agent_exec.shared.invokers.classifiers import (
    api_key_fingerprint,
    extract_quota_retry_delay_ms,
    is_behavioral_abort,
    is_claude_auth_failure,
    is_claude_retryable_error,
    is_codex_auth_failure,
    is_codex_ignorable_stderr_line,
    is_codex_retryable_error,
    is_opencode_retryable_error,
    is_thought_signature_error,
    is_title_only_quota_error,
    quota_error_label,
)
from cli_agent_exec.shared.invokers.opencode import OPENCODE_RUN_MESSAGE
from cli_agent_exec.shared.invokers.prompt import build_child_env, build_prompt, runtime_environ
from cli_agent_exec.shared.parsers import TokenUsage


@pytest.fixture
def request_(tmp_path: Path) -> ExecutionRequest:
    """基础请求。"""
    return ExecutionRequest(workdir=tmp_path, task="Say hi")


@pytest.fixture
def echo() -> io.StringIO:
    """回显捕获。"""
    return io.StringIO()


def make_ctx(request: ExecutionRequest, model: str = "m") -> ExecutionContext:
    return ExecutionContext(request=request, prompt=request.task, model=model)


# =============================================================================
# 请求/结果契约
# =============================================================================


class TestExecutionRequest:
    """测试 ExecutionRequest 校验。"""

    def test_defaults(self, tmp_path: Path):
        request = ExecutionRequest(workdir=tmp_path, task="t")
        assert request.timeout_seconds == 3600
        assert request.env == {}
        assert request.inherit_env is True
        assert request.backend is None
        assert request.max_retries is None

    @pytest.mark.parametrize(
        "selector,expected",
        [
            ("claude", Backend.CLAUDE_CODE),
            ("Claude-Code", Backend.CLAUDE_CODE),
            ("openai_codex", Backend.CODEX),
            ("open-code", Backend.OPENCODE),
        ],
    )
    def test_backend_aliases(self, tmp_path: Path, selector, expected):
        request = ExecutionRequest(workdir=tmp_path, task="t", backend=selector)
        assert request.backend is expected

    def test_unknown_backend(self, tmp_path: Path):
        with pytest.raises(ValidationError):
            ExecutionRequest(workdir=tmp_path, task="t", backend="gemini")

    def test_timeout_must_be_positive(self, tmp_path: Path):
        with pytest.raises(ValidationError):
            ExecutionRequest(workdir=tmp_path, task="t", timeout_seconds=0)

    def test_unknown_field_rejected(self, tmp_path: Path):
        with pytest.raises(ValidationError):
            ExecutionRequest(workdir=tmp_path, task="t", prompt="x")

    def test_blank_model_is_none(self, tmp_path: Path):
        assert ExecutionRequest(workdir=tmp_path, task="t", model="  ").model is None

    def test_frozen(self, request_: ExecutionRequest):
        with pytest.raises(ValidationError):
            request_.task = "changed"


class TestExecutionResult:
    """测试 ExecutionResult。"""

    def test_from_attempt_and_to_dict(self):
        attempt = AttemptResult(
            success=True,
            exit_code=0,
            stdout="out",
            stderr="",
            duration_ms=12,
            token_usage=TokenUsage(1, 2, 3),
        )
        result = ExecutionResult.from_attempt(attempt, retry_count=2)

        assert result.retry_count == 2
        assert result.to_dict() == {
            "success": True,
            "exitCode": 0,
            "stdout": "out",
            "stderr": "",
            "durationMs": 12,
            "retryCount": 2,
            "tokenUsage": {"inputTokens": 1, "outputTokens": 2, "totalTokens": 3},
        }

    def test_to_dict_without_usage(self):
        attempt = AttemptResult(success=False, exit_code=-1, stdout="", stderr="x", duration_ms=0)
        assert "tokenUsage" not in ExecutionResult.from_attempt(attempt, 0).to_dict()


# =============================================================================
# Prompt 与环境
# =============================================================================


class TestPromptAndEnv:
    """测试 prompt 构建与环境合并。"""

    def test_prompt_without_instructions(self):
        assert build_prompt("task") == "task"

    def test_prompt_with_instructions(self, tmp_path: Path):
        path = tmp_path / "AGENTS.md"
        path.write_text("\n  Be careful.  \n", encoding="utf-8")
        assert build_prompt("task", path) == "Be careful.\n\ntask"

    def test_empty_instructions(self, tmp_path: Path):
        path = tmp_path / "empty.md"
        path.write_text("   \n", encoding="utf-8")
        assert build_prompt("task", path) == "task"

    def test_missing_instructions(self, tmp_path: Path):
        with pytest.raises(OSError):
            build_prompt("task", tmp_path / "missing.md")

    def test_child_env_inherits(self):
        env = build_child_env({"B": "2"}, base={"A": "1", "B": "0"})
        assert env == {"A": "1", "B": "2"}

    def test_child_env_without_inherit(self):
        env = build_child_env({"B": "2"}, inherit=False, base={"A": "1"})
        assert env == {"B": "2"}

    def test_runtime_environ_ignores_blank_overrides(self):
        env = runtime_environ({"A": " ", "B": "new"}, base={"A": "keep", "B": "old"})
        assert env == {"A": "keep", "B": "new"}


# =============================================================================
# 模型解析
# =============================================================================


class TestModelResolution:
    """测试模型归一化与优先级。"""

    @pytest.mark.parametrize(
        "model,expected",
        [
            ("anthropic/claude-sonnet-4-5", "claude-sonnet-4-5"),
            ("claude-opus-4-6", "claude-opus-4-6"),
            ("google/gemini-2.5-pro", None),
            ("openai/gpt-5", None),
            ("", None),
            (None, None),
        ],
    )
    def test_normalize_claude(self, model, expected):
        assert normalize_claude_model(model) == expected

    @pytest.mark.parametrize(
        "model,expected",
        [
            ("openai/gpt-5.3-codex", "gpt-5.3-codex"),
            ("gpt-5.3-codex", "gpt-5.3-codex"),
            ("anthropic/claude-opus-4-6", None),
            ("  ", None),
        ],
    )
    def test_normalize_codex(self, model, expected):
        assert normalize_codex_model(model) == expected

    def test_claude_priority(self, tmp_path: Path):
        config = Config()
        executor = ClaudeCodeExecutor(config)
        request = ExecutionRequest(workdir=tmp_path, task="t", model="anthropic/claude-sonnet-4-5")

        assert executor.resolve_model(request) == "claude-sonnet-4-5"
        config.claude.model = "claude-haiku-4-5"
        assert executor.resolve_model(request) == "claude-haiku-4-5"

    def test_claude_foreign_model_uses_default(self, tmp_path: Path):
        executor = ClaudeCodeExecutor(Config())
        request = ExecutionRequest(workdir=tmp_path, task="t", model="google/gemini-2.5-pro")
        assert executor.resolve_model(request) == Config().claude.default_model

    def test_claude_override_is_normalized(self, tmp_path: Path):
        config = Config()
        executor = ClaudeCodeExecutor(config)
        request = ExecutionRequest(workdir=tmp_path, task="t", model="anthropic/claude-sonnet-4-5")

        config.claude.model = "anthropic/claude-haiku-4-5"
        assert executor.resolve_model(request) == "claude-haiku-4-5"
        # 其他提供方的覆盖值被忽略，回退到请求中的模型
        config.claude.model = "google/gemini-2.5-pro"
        assert executor.resolve_model(request) == "claude-sonnet-4-5"

    def test_codex_override_is_normalized(self, request_: ExecutionRequest):
        config = Config()
        config.codex.model = "openai/gpt-5.2"
        assert CodexExecutor(config).resolve_model(request_) == "gpt-5.2"

    def test_codex_default(self, request_: ExecutionRequest):
        assert CodexExecutor(Config()).resolve_model(request_) == "gpt-5.3-codex"

    def test_opencode_request_model(self, tmp_path: Path):
        executor = OpencodeExecutor(Config())
        assert executor.resolve_model(ExecutionRequest(workdir=tmp_path, task="t")) == "google/gemini-3-flash-preview"
        request = ExecutionRequest(workdir=tmp_path, task="t", model="google/gemini-2.5-pro")
        assert executor.resolve_model(request) == "google/gemini-2.5-pro"


# =============================================================================
# 参数构建
# =============================================================================


class TestArgvBuilding:
    """测试各后端的命令行参数。"""

    def test_opencode_prompt_file(self, request_: ExecutionRequest):
        executor = OpencodeExecutor(Config())
        ctx = make_ctx(request_, "google/gemini-2.5-flash")

        with executor.launch_scope(ctx):
            argv = executor.build_argv(ctx)
            prompt_file = ctx.prompt_file
            assert prompt_file is not None
            assert prompt_file.read_text(encoding="utf-8") == "Say hi"

        assert argv == [
            "run",
            "--model", "google/gemini-2.5-flash",
            "--print-logs",
            "--log-level", "ERROR",
            "--file", str(prompt_file),
            "--",
            OPENCODE_RUN_MESSAGE,
        ]
        assert not prompt_file.exists()
        assert not prompt_file.parent.exists()
        assert executor.build_stdin(ctx) is None

    def test_opencode_prompt_dir_removed_on_error(self, request_: ExecutionRequest):
        executor = OpencodeExecutor(Config())
        ctx = make_ctx(request_)

        with pytest.raises(RuntimeError):
            with executor.launch_scope(ctx):
                prompt_dir = ctx.prompt_file.parent
                raise RuntimeError("boom")
        assert not prompt_dir.exists()

    def test_opencode_argv_requires_scope(self, request_: ExecutionRequest):
        with pytest.raises(RuntimeError):
            OpencodeExecutor(Config()).build_argv(make_ctx(request_))

    def test_claude_default_argv(self, request_: ExecutionRequest):
        executor = ClaudeCodeExecutor(Config())
        argv = executor.build_argv(make_ctx(request_, "claude-opus-4-6"))

        assert argv == [
            "-p", "Say hi",
            "--output-format", "stream-json",
            "--verbose",
            "--permission-mode", "bypassPermissions",
            "--model", "claude-opus-4-6",
            "--dangerously-skip-permissions",
        ]

    def test_claude_optional_flags(self, request_: ExecutionRequest):
        config = load_config({
            "CLAUDE_CODE_PERMISSION_MODE": "acceptEdits",
            "CLAUDE_CODE_MAX_TURNS": "7",
            "CLAUDE_CODE_ALLOWED_TOOLS": "Read, Edit Bash",
            "CLAUDE_CODE_DISALLOWED_TOOLS": "WebFetch",
            "CLAUDE_CODE_APPEND_SYSTEM_PROMPT": "Be brief.",
        })
        argv = ClaudeCodeExecutor(config).build_argv(make_ctx(request_))

        assert "--dangerously-skip-permissions" not in argv
        assert argv[argv.index("--permission-mode") + 1] == "acceptEdits"
        assert argv[argv.index("--max-turns") + 1] == "7"
        assert argv[argv.index("--allowedTools") + 1] == "Read,Edit,Bash"
        assert argv[argv.index("--disallowedTools") + 1] == "WebFetch"
        assert argv[argv.index("--append-system-prompt") + 1] == "Be brief."

    def test_codex_argv_and_stdin(self, request_: ExecutionRequest):
        executor = CodexExecutor(Config())
        ctx = make_ctx(request_, "gpt-5.3-codex")

        assert executor.build_argv(ctx) == [
            "exec",
            "--json",
            "--full-auto",
            "--sandbox", "workspace-write",
            "--skip-git-repo-check",
            "--model", "gpt-5.3-codex",
            "-",
        ]
        assert executor.build_stdin(ctx) == b"Say hi"

    def test_codex_api_key_fallback(self, tmp_path: Path):
        executor = CodexExecutor(Config())
        request = ExecutionRequest(
            workdir=tmp_path,
            task="t",
            env={"OPENAI_API_KEY": "sk-test"},
            inherit_env=False,
        )
        env = executor.build_env(request)
        assert env["CODEX_API_KEY"] == "sk-test"

    def test_codex_api_key_not_overwritten(self, tmp_path: Path):
        executor = CodexExecutor(Config())
        request = ExecutionRequest(
            workdir=tmp_path,
            task="t",
            env={"OPENAI_API_KEY": "sk-openai", "CODEX_API_KEY": "sk-codex"},
            inherit_env=False,
        )
        assert executor.build_env(request)["CODEX_API_KEY"] == "sk-codex"

    def test_command_prefix(self, request_: ExecutionRequest):
        executor = CodexExecutor(Config(), command=["/opt/bin/codex-wrapper", "--"])
        assert executor._command == ["/opt/bin/codex-wrapper", "--"]
        assert CodexExecutor(Config())._command == ["codex"]


# =============================================================================
# 错误分类
# =============================================================================


class TestClassifiers:
    """测试错误分类规则。"""

    def test_opencode_retryable(self):
        assert is_opencode_retryable_error("Rate limit reached", 1)
        assert is_opencode_retryable_error("HTTP 503 Service Unavailable", 2)
        assert is_opencode_retryable_error("connect ETIMEDOUT", 1)
        assert not is_opencode_retryable_error("connect etimedout", 1)
        assert not is_opencode_retryable_error("", 1)
        assert not is_opencode_retryable_error("syntax error", 1)

    def test_claude_retryable(self):
        assert is_claude_retryable_error("API Error: 429", 1)
        assert is_claude_retryable_error("Overloaded", 1)
        assert not is_claude_retryable_error("API Error: 429", 0)
        assert not is_claude_retryable_error("invalid request", 1)

    def test_claude_auth(self):
        assert is_claude_auth_failure("Invalid API key · Please run /login")
        assert is_claude_auth_failure("authentication_failed")
        assert not is_claude_auth_failure("rate limit")

    def test_codex_retryable(self):
        assert is_codex_retryable_error("stream error: 504 Gateway Timeout", 1)
        assert is_codex_retryable_error("request timeout", 1)
        assert not is_codex_retryable_error("503 but model is not supported", 1)
        assert not is_codex_retryable_error("429", 0)

    def test_codex_auth(self):
        assert is_codex_auth_failure("Error: Not logged in")
        assert is_codex_auth_failure("401 Unauthorized")
        assert not is_codex_auth_failure("429 Too Many Requests")

    def test_codex_ignorable_stderr(self):
        line = "2025-01-01 ERROR codex_core::rollout::list: state db missing rollout path for thread abc"
        assert is_codex_ignorable_stderr_line(line)
        assert not is_codex_ignorable_stderr_line("ERROR something else")

    def test_title_only_quota(self):
        title = "ERROR service=llm agent=title RESOURCE_EXHAUSTED quota"
        main = "ERROR service=llm agent=build RESOURCE_EXHAUSTED quota"
        assert is_title_only_quota_error(title)
        assert not is_title_only_quota_error(f"{title}\n{main}")
        assert not is_title_only_quota_error("no quota here")

    def test_thought_signature(self):
        assert is_thought_signature_error("Function call is missing a thought_signature")
        assert is_thought_signature_error("thought signature invalid")
        assert not is_thought_signature_error("thoughtful")

    def test_behavioral_abort(self):
        assert is_behavioral_abort("x\n[OpenCode] Doom loop detected")
        assert is_behavioral_abort("[OpenCode] external_directory permission prompt blocked the run")
        assert is_behavioral_abort("[Codex] Execution cancelled")
        assert is_behavioral_abort("[Codex] Parent process received SIGINT. Terminating child process")
        assert not is_behavioral_abort("[Codex] Timeout exceeded")
        assert not is_behavioral_abort("[Codex] Quota limit reached")

    def test_retry_delay_extraction(self):
        assert extract_quota_retry_delay_ms('"retryDelay": "12s"') == 12000
        assert extract_quota_retry_delay_ms("Please retry in 2.5s.") == 2500
        assert extract_quota_retry_delay_ms("retry in 0.2s") == 1000
        assert extract_quota_retry_delay_ms("quota exceeded") is None

    def test_zero_retry_delay_uses_default(self):
        assert extract_quota_retry_delay_ms("Please retry in 0s.") is None
        assert extract_quota_retry_delay_ms('"retryDelay": "0s"') is None
        assert extract_quota_retry_delay_ms("retry in 0.0s") is None

    def test_quota_label(self):
        assert quota_error_label("RESOURCE_EXHAUSTED") == "resource exhausted"
        assert quota_error_label("Quota exceeded") == "quota exceeded"

    def test_api_key_fingerprint(self):
        fingerprint = api_key_fingerprint({"GEMINI_API_KEY": "AIzaSyABCDEF123456"})
        assert fingerprint.startswith("********23456 (sha256:")
        assert "AIza" not in fingerprint
        assert "SyABCDEF1" not in fingerprint
        assert api_key_fingerprint({}) == "unset"
        assert api_key_fingerprint({"GEMINI_API_KEY": "short"}).startswith("*** ")


# =============================================================================
# 结果构建
# =============================================================================


class TestBuildResult:
    """测试由进程结果构造 AttemptResult。"""

    def test_claude_permission_denials_fail(self, request_: ExecutionRequest):
        stdout = (
            '{"type": "assistant", "message": {"content": [{"type": "text", "text": "partial"}]}}\n'
            '{"type": "result", "subtype": "success", "is_error": false, "result": "done", '
            '"permission_denials": [{"tool_name": "Bash"}]}\n'
        )
        outcome = ProcessOutcome(returncode=0, stdout=stdout)
        result = ClaudeCodeExecutor(Config()).build_result(make_ctx(request_), outcome)

        assert result.success is False
        assert result.exit_code == 0
        assert result.stdout == "partial"
        assert "Permission denied for tools: Bash" in result.stderr

    def test_claude_is_error_result_in_stderr(self, request_: ExecutionRequest):
        stdout = '{"type": "result", "subtype": "error_during_execution", "is_error": true, "result": "API Error: 503"}\n'
        outcome = ProcessOutcome(returncode=1, stdout=stdout, stderr="warn\n")
        result = ClaudeCodeExecutor(Config()).build_result(make_ctx(request_), outcome)

        assert result.success is False
        assert result.stdout == "API Error: 503"
        assert result.stderr.splitlines() == ["API Error: 503", "warn"]

    def test_codex_turn_failed(self, request_: ExecutionRequest):
        stdout = '{"type": "turn.failed", "error": {"message": "stream disconnected"}}\n'
        outcome = ProcessOutcome(returncode=0, stdout=stdout)
        result = CodexExecutor(Config()).build_result(make_ctx(request_), outcome)

        assert result.success is False
        assert result.stdout == stdout
        assert "stream disconnected" in result.stderr

    def test_aborted_run_is_failure(self, request_: ExecutionRequest):
        flags = AbortFlags()
        flags.set(AbortReason.DOOM_LOOP)
        outcome = ProcessOutcome(
            returncode=143,
            stdout="looping\n",
            aborts=flags,
            markers=["[OpenCode] Doom loop detected"],
        )
        result = OpencodeExecutor(Config()).build_result(make_ctx(request_), outcome)

        assert result.success is False
        assert result.exit_code == -1
        assert result.stderr.endswith("[OpenCode] Doom loop detected")


# =============================================================================
# 工厂函数
# =============================================================================


class TestCreateExecutor:
    """测试 create_executor。"""

    @pytest.mark.parametrize(
        "backend,cls",
        [
            (Backend.OPENCODE, OpencodeExecutor),
            (Backend.CLAUDE_CODE, ClaudeCodeExecutor),
            (Backend.CODEX, CodexExecutor),
        ],
    )
    def test_switch(self, backend, cls):
        executor = create_executor(backend, Config())
        assert isinstance(executor, cls)
        assert executor.backend is backend

    def test_capabilities(self):
        assert OpencodeExecutor.supports_quota_wait and OpencodeExecutor.supports_model_fallback
        assert not ClaudeCodeExecutor.supports_quota_wait
        assert not CodexExecutor.supports_model_fallback


# =============================================================================
# 端到端（模拟 CLI）
# =============================================================================


class TestEndToEnd:
    """使用模拟 CLI 的端到端执行。"""

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_opencode_plain(self, request_, fake_command, supervisor_options, echo):
        executor = OpencodeExecutor(
            Config(),
            command=fake_command("--fake-mode", "plain"),
            echo_stream=echo,
            supervisor_options=supervisor_options,
        )
        result = await executor.execute_once(request_)

        assert result.success is True
        assert result.exit_code == 0
        assert "prompt: Say hi" in result.stdout
        assert result.token_usage == TokenUsage(120, 30, 150)
        assert "Hello from the fake agent" in echo.getvalue()

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_opencode_echo_disabled(self, request_, fake_command, supervisor_options, echo):
        config = Config()
        config.disable_echo()
        executor = OpencodeExecutor(
            config,
            command=fake_command("--fake-mode", "plain"),
            echo_stream=echo,
            supervisor_options=supervisor_options,
        )
        result = await executor.execute_once(request_)

        assert result.success is True
        assert echo.getvalue() == ""

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_opencode_doom_loop(self, request_, fake_command, supervisor_options, echo):
        executor = OpencodeExecutor(
            Config(),
            command=fake_command("--fake-mode", "repeat"),
            echo_stream=echo,
            supervisor_options=supervisor_options,
        )
        result = await executor.execute_once(request_)

        assert result.success is False
        assert result.exit_code == -1
        assert "[OpenCode] Doom loop detected" in result.stderr

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_opencode_nonzero_exit(self, request_, fake_command, supervisor_options, echo):
        executor = OpencodeExecutor(
            Config(),
            command=fake_command("--fake-mode", "plain", "--fake-exit-code", "2", "--fake-stderr", "boom"),
            echo_stream=echo,
            supervisor_options=supervisor_options,
        )
        result = await executor.execute_once(request_)

        assert result.success is False
        assert result.exit_code == 2
        assert "boom" in result.stderr

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_hard_timeout(self, tmp_path, fake_command, supervisor_options, echo):
        config = Config()
        config.idle_timeout_seconds = 0
        executor = OpencodeExecutor(
            config,
            command=fake_command("--fake-mode", "sleep", "--fake-delay", "30"),
            echo_stream=echo,
            supervisor_options=supervisor_options,
        )
        request = ExecutionRequest(workdir=tmp_path, task="t", timeout_seconds=0.5)
        result = await executor.execute_once(request)

        assert result.success is False
        assert result.exit_code == -1
        assert "[OpenCode] Timeout exceeded" in result.stderr

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_request_env_reaches_child(self, tmp_path, fake_command, supervisor_options, echo):
        executor = OpencodeExecutor(
            Config(),
            command=fake_command("--fake-mode", "plain", "--fake-dump-env", "CAE_FAKE_VALUE"),
            echo_stream=echo,
            supervisor_options=supervisor_options,
        )
        request = ExecutionRequest(workdir=tmp_path, task="t", env={"CAE_FAKE_VALUE": "42"})
        result = await executor.execute_once(request)

        assert "CAE_FAKE_VALUE=42" in result.stdout

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_claude_stream_json(self, request_, fake_command, supervisor_options, echo):
        executor = ClaudeCodeExecutor(
            Config(),
            command=fake_command("--fake-mode", "stream-json"),
            echo_stream=echo,
            supervisor_options=supervisor_options,
        )
        result = await executor.execute_once(request_)

        assert result.success is True
        assert result.stdout == "Hello from the fake agent"
        assert result.token_usage == TokenUsage(100, 20, 127, cache_read_tokens=7, cache_write_tokens=0)
        # 回显只输出增量，拼接后等于最终文本
        assert "".join(echo.getvalue().splitlines()) == "Hello from the fake agent"

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_claude_permission_denied(self, request_, fake_command, supervisor_options, echo):
        executor = ClaudeCodeExecutor(
            Config(),
            command=fake_command("--fake-mode", "stream-json", "--fake-denied-tool", "Bash"),
            echo_stream=echo,
            supervisor_options=supervisor_options,
        )
        result = await executor.execute_once(request_)

        assert result.success is False
        assert result.exit_code == 0
        assert "Permission denied for tools: Bash" in result.stderr

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_codex_exec_json(self, request_, fake_command, supervisor_options, echo):
        executor = CodexExecutor(
            Config(),
            command=fake_command("--fake-mode", "exec-json"),
            echo_stream=echo,
            supervisor_options=supervisor_options,
        )
        result = await executor.execute_once(request_)

        assert result.success is True
        assert result.stdout == "prompt: Say hi\n\nHello from the fake agent"
        assert result.token_usage == TokenUsage(50, 5, 65, cache_read_tokens=10)
        assert echo.getvalue() == "prompt: Say hi\nHello from the fake agent\n"

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_spawn_failure(self, request_, supervisor_options, echo):
        executor = CodexExecutor(
            Config(),
            command=["/nonexistent/codex-binary"],
            echo_stream=echo,
            supervisor_options=supervisor_options,
        )
        result = await executor.execute_once(request_)

        assert result.success is False
        assert result.exit_code == -1
        assert "Failed to spawn" in result.stderr

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_missing_instructions(self, tmp_path, fake_command, supervisor_options, echo):
        executor = CodexExecutor(
            Config(),
            command=fake_command("--fake-mode", "exec-json"),
            echo_stream=echo,
            supervisor_options=supervisor_options,
        )
        request = ExecutionRequest(workdir=tmp_path, task="t", instructions_path=tmp_path / "missing.md")
        result = await executor.execute_once(request)

        assert result.success is False
        assert result.exit_code == -1
        assert "Failed to read instructions file" in result.stderr

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_instructions_prepended(self, tmp_path, fake_command, supervisor_options, echo):
        (tmp_path / "AGENTS.md").write_text("Rules first.", encoding="utf-8")
        executor = CodexExecutor(
            Config(),
            command=fake_command("--fake-mode", "exec-json"),
            echo_stream=echo,
            supervisor_options=supervisor_options,
        )
        request = ExecutionRequest(workdir=tmp_path, task="Do it", instructions_path=tmp_path / "AGENTS.md")
        result = await executor.execute_once(request)

        assert result.stdout.startswith("prompt: Rules first.\n\nDo it")

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_model_override(self, request_, fake_command, supervisor_options, echo):
        executor = CodexExecutor(
            Config(),
            command=fake_command("--fake-mode", "exec-json"),
            echo_stream=echo,
            supervisor_options=supervisor_options,
        )
        result = await executor.execute_once(request_, model="gpt-5-mini")
        assert result.success is True


def test_workdir_is_path(tmp_path: Path):
    """workdir 字符串会被转换为 Path。"""
    request = ExecutionRequest(workdir=str(tmp_path), task="t")
    assert isinstance(request.workdir, Path)
    assert os.fspath(request.workdir) == str(tmp_path)
