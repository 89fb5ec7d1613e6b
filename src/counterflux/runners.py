"""
Concrete command, file and action execution for a local workspace.
"""

import asyncio
import logging
import re
import shlex
from pathlib import Path
from typing import Awaitable, Callable, Optional

from .backends import AgentBackend, CommandRunner, WorkspaceFiles
from .config import DEFAULT_TEST_COMMANDS
from .errors import CommandNotFoundError
from .models import (
	Action,
	ActionType,
	AgentRole,
	CommandResult,
	ToolResult,
	WorkflowContext,
)
from .prompts import action_instruction

logger = logging.getLogger(__name__)

NO_TEST_COMMAND_MESSAGE = "Could not run tests - no test command found"

ActionExecutor = Callable[[AgentRole, Action, WorkflowContext], Awaitable[ToolResult]]


def split_list(text: str) -> list[str]:
	"""Split a comma or semicolon separated list, dropping blanks."""
	return [item.strip() for item in re.split(r"[,;]", text) if item.strip()]


def extract_file_list(reply: str) -> list[str]:
	"""Collect paths from every `FILES:` line of an agent reply, in order, once each."""
	files: list[str] = []
	for line in reply.splitlines():
		stripped = line.strip().strip("`")
		if stripped.upper().startswith("FILES:"):
			for path in split_list(stripped[len("FILES:"):]):
				if path not in files:
					files.append(path)
	return files


class SubprocessCommandRunner(CommandRunner):
	"""Runs commands with asyncio subprocesses, stderr folded into stdout."""

	def __init__(self, cwd: str, timeout: int = 600):
		self.cwd = Path(cwd)
		self.timeout = timeout

	async def execute_command(self, command: str) -> CommandResult:
		args = shlex.split(command)
		if not args:
			raise CommandNotFoundError("Empty command")

		try:
			proc = await asyncio.create_subprocess_exec(
				*args,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.STDOUT,
				cwd=str(self.cwd),
			)
		except (FileNotFoundError, PermissionError) as e:
			raise CommandNotFoundError(f"Command not found: {args[0]}") from e

		try:
			stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
		except asyncio.TimeoutError:
			proc.kill()
			await proc.wait()
			return CommandResult(
				exit_code=proc.returncode if proc.returncode is not None else -1,
				output=f"Command timed out after {self.timeout}s: {command}",
			)

		return CommandResult(
			exit_code=proc.returncode,
			output=stdout.decode("utf-8", errors="replace"),
		)


async def run_first_available(
	runner: CommandRunner,
	commands: list[str],
) -> Optional[tuple[str, CommandResult]]:
	"""
	Try commands in order and return the first one that executes.

	Returns:
		(command, result) or None when no command could be executed
	"""
	for command in commands:
		try:
			result = await runner.execute_command(command)
		except CommandNotFoundError as e:
			logger.debug(f"Skipping test command '{command}': {e}")
			continue
		logger.info(f"Ran '{command}' (exit code {result.exit_code})")
		return command, result
	return None


class LocalWorkspaceFiles(WorkspaceFiles):
	"""Workspace files on the local disk."""

	async def file_exists(self, path: str) -> bool:
		return await asyncio.to_thread(Path(path).is_file)

	async def read_file(self, path: str) -> str:
		return await asyncio.to_thread(Path(path).read_text, encoding="utf-8")


class BackendActionExecutor:
	"""
	Executes parallel-mode actions.

	Writing actions become instructions to the agent backend; run_test goes
	through the command runner and its fallback list. The executor is called
	with the acting role, the action and a context snapshot.
	"""

	def __init__(
		self,
		backend: AgentBackend,
		runner: CommandRunner,
		test_commands: Optional[list[str]] = None,
	):
		self.backend = backend
		self.runner = runner
		self.test_commands = list(test_commands or DEFAULT_TEST_COMMANDS)
		self._lock = asyncio.Lock()

	async def __call__(
		self,
		role: AgentRole,
		action: Action,
		context: WorkflowContext,
	) -> ToolResult:
		if action.type == ActionType.RUN_TEST:
			return await self._run_tests(action)
		if action.type == ActionType.COMPLETE:
			return ToolResult(success=True, output=action.description)
		return await self._instruct(role, action, context)

	async def _run_tests(self, action: Action) -> ToolResult:
		commands = [action.command] if action.command else self.test_commands
		found = await run_first_available(self.runner, commands)
		if found is None:
			raise CommandNotFoundError(NO_TEST_COMMAND_MESSAGE)

		command, result = found
		return ToolResult(
			success=result.exit_code == 0,
			output=result.output,
			error=None if result.exit_code == 0 else f"'{command}' exited with code {result.exit_code}",
		)

	async def _instruct(self, role: AgentRole, action: Action, context: WorkflowContext) -> ToolResult:
		instruction = action_instruction(action, context.spec_content, context.original_prompt)

		# One backend, two roles: the switch and the send must not interleave
		async with self._lock:
			await self.backend.switch_active_role(role)
			reply = await self.backend.send_instruction(instruction)

		if action.type == ActionType.WRITE_SPEC:
			affected = [action.target_file] if action.target_file else []
		else:
			affected = extract_file_list(reply)
		return ToolResult(success=True, output=reply, affected_files=affected)
