"""
Collaborator interfaces and the Claude CLI agent backend.

The coordination core only talks to these small async interfaces; an
embedding application supplies its own or uses the implementations here.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional

from .errors import BackendError
from .models import AgentMessage, AgentRole, CommandResult, Severity
from .prompts import system_prompt

logger = logging.getLogger(__name__)


class AgentBackend(ABC):
	"""Opaque language-model backend shared by both roles."""

	@abstractmethod
	async def switch_active_role(self, role: AgentRole) -> None:
		"""Make the given role the recipient of the next instruction."""

	@abstractmethod
	async def send_instruction(self, text: str) -> str:
		"""Send one instruction to the active role and return its reply."""

	@abstractmethod
	def stream_reply(self, role: AgentRole, messages: list[AgentMessage]) -> AsyncIterator[str]:
		"""Stream the role's reply to a conversation, chunk by chunk."""


class CommandRunner(ABC):
	"""Runs shell commands in the workspace."""

	@abstractmethod
	async def execute_command(self, command: str) -> CommandResult:
		"""
		Run a command and return its exit code and output.

		Raises:
			CommandNotFoundError: the command could not be executed at all
		"""


class WorkspaceFiles(ABC):
	"""Read access to workspace files."""

	@abstractmethod
	async def file_exists(self, path: str) -> bool:
		...

	@abstractmethod
	async def read_file(self, path: str) -> str:
		...


async def _deny(message: str) -> bool:
	logger.info(f"No approval handler; denying: {message}")
	return False


def _log_notification(message: str, severity: Severity) -> None:
	level = {
		Severity.INFO: logging.INFO,
		Severity.WARNING: logging.WARNING,
		Severity.ERROR: logging.ERROR,
	}[severity]
	logger.log(level, message)


@dataclass
class WorkflowCallbacks:
	"""
	Approval and notification hooks supplied by the embedding application.

	Args:
		ask_approval: Callback(message) -> approved
		notify_user: Callback(message, severity)
		on_error: Callback(error, source) for transport faults; source is
			"qa", "dev" or "orchestrator"
	"""
	ask_approval: Callable[[str], Awaitable[bool]] = _deny
	notify_user: Callable[[str, Severity], None] = _log_notification
	on_error: Optional[Callable[[Exception, str], None]] = None


@dataclass
class ClaudeCLIBackend(AgentBackend):
	"""
	Agent backend that shells out to the Claude Code CLI in print mode.

	Each instruction is a fresh `claude --print` call run in the workspace,
	with the active role's system prompt appended.
	"""

	workspace_path: str
	command: str = "claude"
	timeout: int = 300
	extra_args: list[str] = field(default_factory=list)
	active_role: AgentRole = AgentRole.QA

	async def switch_active_role(self, role: AgentRole) -> None:
		logger.debug(f"Active role: {role.value}")
		self.active_role = role

	def _args(self, role: AgentRole) -> list[str]:
		return [
			self.command,
			"--print",
			"--append-system-prompt", system_prompt(role),
			*self.extra_args,
		]

	async def _spawn(self, role: AgentRole, stderr: int = asyncio.subprocess.PIPE) -> asyncio.subprocess.Process:
		try:
			return await asyncio.create_subprocess_exec(
				*self._args(role),
				stdin=asyncio.subprocess.PIPE,
				stdout=asyncio.subprocess.PIPE,
				stderr=stderr,
				cwd=str(Path(self.workspace_path)),
			)
		except FileNotFoundError as e:
			raise BackendError(
				f"Claude CLI not found. Make sure '{self.command}' is in PATH."
			) from e

	async def send_instruction(self, text: str) -> str:
		process = await self._spawn(self.active_role)
		try:
			stdout, stderr = await asyncio.wait_for(
				process.communicate(input=text.encode()),
				timeout=self.timeout,
			)
		except asyncio.TimeoutError as e:
			process.kill()
			await process.wait()
			raise BackendError(f"Instruction timed out after {self.timeout} seconds") from e

		if process.returncode != 0:
			error = stderr.decode(errors="replace")
			raise BackendError(f"Claude exited with code {process.returncode}: {error[:500]}")
		return stdout.decode(errors="replace")

	async def stream_reply(self, role: AgentRole, messages: list[AgentMessage]) -> AsyncIterator[str]:
		transcript = "\n\n".join(
			f"[{m.role}]\n{m.content}" for m in messages if m.role != "system"
		)
		# Only stdout is read while streaming, so stderr must not back up
		process = await self._spawn(role, stderr=asyncio.subprocess.DEVNULL)
		assert process.stdin is not None and process.stdout is not None
		process.stdin.write(transcript.encode())
		await process.stdin.drain()
		process.stdin.close()

		try:
			while True:
				line = await asyncio.wait_for(process.stdout.readline(), timeout=self.timeout)
				if not line:
					break
				yield line.decode(errors="replace")
		except asyncio.TimeoutError as e:
			process.kill()
			raise BackendError(f"Reply timed out after {self.timeout} seconds") from e
		finally:
			await process.wait()

		if process.returncode != 0:
			raise BackendError(f"Claude exited with code {process.returncode}")
