"""
Tests for command running, workspace files and the action executor.
"""

import shlex
import sys

import pytest

from counterflux.errors import CommandNotFoundError
from counterflux.models import Action, ActionType, AgentRole, create_workflow_context
from counterflux.runners import (
	NO_TEST_COMMAND_MESSAGE,
	BackendActionExecutor,
	LocalWorkspaceFiles,
	SubprocessCommandRunner,
	run_first_available,
)

from .helpers import FakeBackend, FakeRunner, failing, passing

PYTHON = shlex.quote(sys.executable)


class TestSubprocessCommandRunner:
	"""Tests against real subprocesses."""

	@pytest.mark.asyncio
	async def test_captures_output_and_exit_code(self, tmp_path):
		runner = SubprocessCommandRunner(str(tmp_path))

		result = await runner.execute_command(f"{PYTHON} -c 'print(\"3 passed\")'")

		assert result.exit_code == 0
		assert "3 passed" in result.output

	@pytest.mark.asyncio
	async def test_stderr_folded_into_output(self, tmp_path):
		runner = SubprocessCommandRunner(str(tmp_path))

		result = await runner.execute_command(
			f"{PYTHON} -c 'import sys; sys.stderr.write(\"boom\"); sys.exit(3)'"
		)

		assert result.exit_code == 3
		assert "boom" in result.output

	@pytest.mark.asyncio
	async def test_runs_in_workspace(self, tmp_path):
		runner = SubprocessCommandRunner(str(tmp_path))

		result = await runner.execute_command(f"{PYTHON} -c 'import os; print(os.getcwd())'")

		assert result.output.strip() == str(tmp_path)

	@pytest.mark.asyncio
	async def test_missing_command(self, tmp_path):
		runner = SubprocessCommandRunner(str(tmp_path))

		with pytest.raises(CommandNotFoundError):
			await runner.execute_command("definitely-not-a-real-command-xyz --version")

	@pytest.mark.asyncio
	async def test_empty_command(self, tmp_path):
		runner = SubprocessCommandRunner(str(tmp_path))

		with pytest.raises(CommandNotFoundError):
			await runner.execute_command("   ")

	@pytest.mark.asyncio
	async def test_timeout_kills_process(self, tmp_path):
		runner = SubprocessCommandRunner(str(tmp_path), timeout=0.2)

		result = await runner.execute_command(f"{PYTHON} -c 'import time; time.sleep(5)'")

		assert result.exit_code != 0
		assert "timed out" in result.output


class TestRunFirstAvailable:
	@pytest.mark.asyncio
	async def test_skips_missing_commands(self):
		runner = FakeRunner({"npm test": failing()})

		command, result = await run_first_available(runner, ["pytest", "npm test", "yarn test"])

		assert command == "npm test"
		assert result.exit_code == 1
		assert runner.calls == ["pytest", "npm test"]

	@pytest.mark.asyncio
	async def test_none_available(self):
		assert await run_first_available(FakeRunner(), ["pytest"]) is None


class TestLocalWorkspaceFiles:
	@pytest.mark.asyncio
	async def test_read_existing_file(self, tmp_path):
		spec = tmp_path / "SPEC.md"
		spec.write_text("# Spec", encoding="utf-8")
		files = LocalWorkspaceFiles()

		assert await files.file_exists(str(spec))
		assert await files.read_file(str(spec)) == "# Spec"

	@pytest.mark.asyncio
	async def test_missing_file(self, tmp_path):
		files = LocalWorkspaceFiles()

		assert not await files.file_exists(str(tmp_path / "nope.md"))
		assert not await files.file_exists(str(tmp_path))


class TestBackendActionExecutor:
	"""Writing actions go to the backend, run_test to the runner."""

	@pytest.fixture
	def context(self):
		return create_workflow_context("Build a calculator", "/ws")

	@pytest.mark.asyncio
	async def test_write_spec_instructs_qa(self, context):
		backend = FakeBackend(replies=["Spec written."])
		executor = BackendActionExecutor(backend, FakeRunner())
		action = Action(type=ActionType.WRITE_SPEC, description="spec", target_file="/ws/specs/SPEC.md")

		result = await executor(AgentRole.QA, action, context)

		assert result.success
		assert result.output == "Spec written."
		assert result.affected_files == ["/ws/specs/SPEC.md"]
		role, instruction = backend.instructions[0]
		assert role == AgentRole.QA
		assert "Build a calculator" in instruction
		assert "/ws/specs/SPEC.md" in instruction

	@pytest.mark.asyncio
	async def test_write_code_collects_files(self, context):
		backend = FakeBackend(replies=["Implemented.\nFILES: calc.py, ops.py"])
		executor = BackendActionExecutor(backend, FakeRunner())
		action = Action(type=ActionType.WRITE_CODE, description="code")

		result = await executor(AgentRole.DEV, action, context)

		assert result.affected_files == ["calc.py", "ops.py"]
		assert backend.active_role == AgentRole.DEV

	@pytest.mark.asyncio
	async def test_run_test_success(self, context):
		executor = BackendActionExecutor(FakeBackend(), FakeRunner({"pytest": passing()}), ["pytest"])

		result = await executor(AgentRole.QA, Action(type=ActionType.RUN_TEST, description="run"), context)

		assert result.success
		assert result.error is None
		assert "passed" in result.output

	@pytest.mark.asyncio
	async def test_run_test_failure(self, context):
		executor = BackendActionExecutor(FakeBackend(), FakeRunner({"pytest": failing()}), ["pytest"])

		result = await executor(AgentRole.QA, Action(type=ActionType.RUN_TEST, description="run"), context)

		assert result.success is False
		assert "exited with code 1" in result.error

	@pytest.mark.asyncio
	async def test_run_test_explicit_command(self, context):
		runner = FakeRunner({"make test": passing()})
		executor = BackendActionExecutor(FakeBackend(), runner, ["pytest"])
		action = Action(type=ActionType.RUN_TEST, description="run", command="make test")

		await executor(AgentRole.QA, action, context)

		assert runner.calls == ["make test"]

	@pytest.mark.asyncio
	async def test_run_test_without_any_command(self, context):
		executor = BackendActionExecutor(FakeBackend(), FakeRunner(), ["pytest", "npm test"])

		with pytest.raises(CommandNotFoundError, match=NO_TEST_COMMAND_MESSAGE):
			await executor(AgentRole.QA, Action(type=ActionType.RUN_TEST, description="run"), context)

	@pytest.mark.asyncio
	async def test_complete_needs_no_backend(self, context):
		backend = FakeBackend()
		executor = BackendActionExecutor(backend, FakeRunner())

		result = await executor(AgentRole.QA, Action(type=ActionType.COMPLETE, description="done"), context)

		assert result.success
		assert backend.instructions == []
