"""Tests for the Claude CLI backend and default callbacks."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from counterflux.backends import ClaudeCLIBackend, WorkflowCallbacks
from counterflux.errors import BackendError
from counterflux.models import AgentMessage, AgentRole, Severity
from counterflux.prompts import DEV_SYSTEM_PROMPT, QA_SYSTEM_PROMPT


def mock_process(stdout: bytes = b"", stderr: bytes = b"", returncode: int = 0):
	process = MagicMock()
	process.communicate = AsyncMock(return_value=(stdout, stderr))
	process.wait = AsyncMock(return_value=returncode)
	process.returncode = returncode
	return process


class TestClaudeCLIBackend:
	@pytest.mark.asyncio
	async def test_send_instruction_uses_active_role_prompt(self, tmp_path):
		backend = ClaudeCLIBackend(workspace_path=str(tmp_path))
		process = mock_process(stdout=b"SPEC_CREATED: specs/SPEC.md")

		with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)) as spawn:
			await backend.switch_active_role(AgentRole.DEV)
			reply = await backend.send_instruction("Implement it")

		assert reply == "SPEC_CREATED: specs/SPEC.md"
		args = spawn.call_args.args
		assert args[:2] == ("claude", "--print")
		assert args[args.index("--append-system-prompt") + 1] == DEV_SYSTEM_PROMPT
		assert spawn.call_args.kwargs["cwd"] == str(tmp_path)
		process.communicate.assert_awaited_once_with(input=b"Implement it")

	@pytest.mark.asyncio
	async def test_extra_args_and_command(self, tmp_path):
		backend = ClaudeCLIBackend(
			workspace_path=str(tmp_path),
			command="/opt/claude",
			extra_args=["--model", "sonnet"],
		)

		with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=mock_process())) as spawn:
			await backend.send_instruction("hi")

		args = spawn.call_args.args
		assert args[0] == "/opt/claude"
		assert args[-2:] == ("--model", "sonnet")
		assert args[args.index("--append-system-prompt") + 1] == QA_SYSTEM_PROMPT

	@pytest.mark.asyncio
	async def test_nonzero_exit_raises(self, tmp_path):
		backend = ClaudeCLIBackend(workspace_path=str(tmp_path))
		process = mock_process(stderr=b"rate limited", returncode=1)

		with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
			with pytest.raises(BackendError, match="rate limited"):
				await backend.send_instruction("hi")

	@pytest.mark.asyncio
	async def test_missing_cli_raises(self, tmp_path):
		backend = ClaudeCLIBackend(workspace_path=str(tmp_path))

		with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=FileNotFoundError())):
			with pytest.raises(BackendError, match="not found"):
				await backend.send_instruction("hi")

	@pytest.mark.asyncio
	async def test_timeout_kills_process(self, tmp_path):
		backend = ClaudeCLIBackend(workspace_path=str(tmp_path), timeout=0.01)
		process = mock_process()

		async def hang(input=None):
			await asyncio.sleep(1)

		process.communicate = hang
		process.kill = MagicMock()

		with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
			with pytest.raises(BackendError, match="timed out"):
				await backend.send_instruction("hi")

		process.kill.assert_called_once()

	@pytest.mark.asyncio
	async def test_stream_reply_yields_lines(self, tmp_path):
		backend = ClaudeCLIBackend(workspace_path=str(tmp_path))
		process = mock_process()
		process.stdin = MagicMock()
		process.stdin.drain = AsyncMock()
		process.stdout = MagicMock()
		process.stdout.readline = AsyncMock(side_effect=[b"Hello\n", b"world\n", b""])
		messages = [
			AgentMessage(role="system", content="ignored"),
			AgentMessage(role="user", content="Say hello"),
		]

		with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)) as spawn:
			chunks = [chunk async for chunk in backend.stream_reply(AgentRole.QA, messages)]

		assert chunks == ["Hello\n", "world\n"]
		assert spawn.call_args.kwargs["stderr"] == asyncio.subprocess.DEVNULL
		written = process.stdin.write.call_args.args[0].decode()
		assert "Say hello" in written
		assert "ignored" not in written


class TestDefaultCallbacks:
	@pytest.mark.asyncio
	async def test_default_approval_denies(self):
		callbacks = WorkflowCallbacks()
		assert await callbacks.ask_approval("Freeze the spec?") is False

	def test_default_notification_logs(self, caplog):
		callbacks = WorkflowCallbacks()

		callbacks.notify_user("Tests failed", Severity.WARNING)

		assert "Tests failed" in caplog.text
		assert callbacks.on_error is None
