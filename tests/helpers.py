"""Shared fakes and helpers for counterflux tests."""

from typing import Optional, Union
from unittest.mock import AsyncMock, MagicMock

from counterflux.backends import AgentBackend, CommandRunner, WorkflowCallbacks, WorkspaceFiles
from counterflux.errors import CommandNotFoundError
from counterflux.models import AgentRole, CommandResult


class FakeBackend(AgentBackend):
	"""Records instructions and answers from a queue of canned replies."""

	def __init__(self, replies: Optional[list[str]] = None, chunks: Optional[list[str]] = None):
		self.replies = list(replies or [])
		self.chunks = chunks if chunks is not None else ["Hello", ", world"]
		self.active_role: Optional[AgentRole] = None
		self.instructions: list[tuple[AgentRole, str]] = []
		self.fail_with: Optional[Exception] = None

	async def switch_active_role(self, role: AgentRole) -> None:
		self.active_role = role

	async def send_instruction(self, text: str) -> str:
		if self.fail_with is not None:
			raise self.fail_with
		self.instructions.append((self.active_role, text))
		return self.replies.pop(0) if self.replies else "ok"

	async def stream_reply(self, role, messages):
		if self.fail_with is not None:
			raise self.fail_with
		for chunk in self.chunks:
			yield chunk

	def roles(self) -> list[AgentRole]:
		return [role for role, _ in self.instructions]


class FakeRunner(CommandRunner):
	"""
	Command runner with scripted results.

	A command maps to one result or a list consumed in order (the last one
	repeats). Unknown commands raise CommandNotFoundError.
	"""

	def __init__(self, results: Optional[dict[str, Union[CommandResult, list[CommandResult]]]] = None):
		self.results = dict(results or {})
		self.calls: list[str] = []

	async def execute_command(self, command: str) -> CommandResult:
		self.calls.append(command)
		if command not in self.results:
			raise CommandNotFoundError(f"Command not found: {command}")
		scripted = self.results[command]
		if isinstance(scripted, list):
			return scripted.pop(0) if len(scripted) > 1 else scripted[0]
		return scripted


class FakeFiles(WorkspaceFiles):
	def __init__(self, files: Optional[dict[str, str]] = None):
		self.files = dict(files or {})

	async def file_exists(self, path: str) -> bool:
		return path in self.files

	async def read_file(self, path: str) -> str:
		return self.files[path]


def passing(output: str = "3 passed in 0.12s") -> CommandResult:
	return CommandResult(exit_code=0, output=output)


def failing(output: str = "1 failed, 2 passed in 0.15s") -> CommandResult:
	return CommandResult(exit_code=1, output=output)


def make_callbacks(approve: bool = True) -> WorkflowCallbacks:
	"""Callbacks with mock hooks; approval answers are fixed."""
	return WorkflowCallbacks(
		ask_approval=AsyncMock(return_value=approve),
		notify_user=MagicMock(),
		on_error=MagicMock(),
	)
