"""
Agent sessions for parallel execution.

Each session represents either the QA or the Dev role and owns its message
stream, status and action decisions. Decisions are pure functions of the
role and a context snapshot; execution goes through an injected executor.
"""

import logging
from enum import Enum
from pathlib import Path
from typing import Optional

from .backends import AgentBackend
from .context import WorkflowContextManager
from .errors import SessionAbortedError
from .events import EventEmitter
from .models import (
	Action,
	ActionType,
	AgentMessage,
	AgentRole,
	SessionStatus,
	SpecStatus,
	ToolResult,
	WorkflowContext,
)
from .prompts import system_prompt
from .runners import ActionExecutor

logger = logging.getLogger(__name__)

SPEC_RELATIVE_PATH = Path("specs") / "SPEC.md"


class SessionEvent(str, Enum):
	"""Notifications emitted by AgentSession."""
	STATUS_CHANGED = "status_changed"
	MESSAGE_ADDED = "message_added"
	MESSAGE_STREAMING = "message_streaming"
	ACTION_STARTED = "action_started"
	ACTION_COMPLETED = "action_completed"
	ERROR = "error"


def spec_target(workspace_path: str) -> str:
	return str(Path(workspace_path) / SPEC_RELATIVE_PATH)


def decide_qa_action(context: WorkflowContext) -> Optional[Action]:
	"""QA workflow: spec -> tests (after freeze) -> run tests once code exists."""
	status = context.implementation_status

	if not context.spec_content:
		return Action(
			type=ActionType.WRITE_SPEC,
			description="Generate SPEC.md document",
			target_file=spec_target(context.workspace_path),
		)

	if context.spec_status == SpecStatus.FROZEN and not status.tests_created:
		return Action(
			type=ActionType.WRITE_TEST,
			description="Write test cases based on SPEC",
		)

	if status.files_created:
		return Action(
			type=ActionType.RUN_TEST,
			description="Run test suite",
		)

	return None


def decide_dev_action(context: WorkflowContext) -> Optional[Action]:
	"""Dev workflow: wait for a frozen spec, then implement until tests pass."""
	if not context.spec_content or context.spec_status == SpecStatus.DRAFT:
		return None

	last_test = context.last_test_result
	if last_test is None or not last_test.passed:
		return Action(
			type=ActionType.WRITE_CODE,
			description="Implement features to pass tests",
		)

	return None


_POLICIES = {
	AgentRole.QA: decide_qa_action,
	AgentRole.DEV: decide_dev_action,
}


class AgentSession:
	"""
	Runtime wrapper for one role.

	Status lifecycle: idle -> thinking (answering a message) or executing
	(running an action) -> idle. Transport faults leave the session in
	error until reset().
	"""

	def __init__(
		self,
		role: AgentRole,
		context_manager: WorkflowContextManager,
		executor: ActionExecutor,
		backend: Optional[AgentBackend] = None,
	):
		"""
		Initialize the session.

		Args:
			role: Which role this session plays
			context_manager: Shared context (read for snapshots only)
			executor: Callback(role, action, context) -> ToolResult
			backend: Streams replies to send_message(); messages are only
				recorded when omitted
		"""
		self.role = role
		self.context_manager = context_manager
		self.executor = executor
		self.backend = backend
		self.events = EventEmitter()

		self._status = SessionStatus.IDLE
		self._messages: list[AgentMessage] = []
		self._aborted = False
		self._add_system_message()

	@property
	def status(self) -> SessionStatus:
		return self._status

	@property
	def messages(self) -> list[AgentMessage]:
		return list(self._messages)

	@property
	def aborted(self) -> bool:
		return self._aborted

	def on(self, event: SessionEvent, handler):
		return self.events.on(event.value, handler)

	def _emit(self, event: SessionEvent, *args) -> None:
		self.events.emit(event.value, *args)

	def _set_status(self, status: SessionStatus) -> None:
		self._status = status
		self._emit(SessionEvent.STATUS_CHANGED, status)

	def _add_system_message(self) -> None:
		self._messages.append(AgentMessage(role="system", content=system_prompt(self.role)))

	def _add_message(self, message: AgentMessage) -> None:
		self._messages.append(message)
		self._emit(SessionEvent.MESSAGE_ADDED, message)

	def _fail(self, error: Exception) -> None:
		logger.error(f"{self.role.value} session error: {error}")
		self._set_status(SessionStatus.ERROR)
		self._emit(SessionEvent.ERROR, error)

	async def send_message(self, message: str) -> None:
		"""
		Send a user message and stream the role's reply.

		Raises:
			SessionAbortedError: the session has been aborted
		"""
		if self._aborted:
			raise SessionAbortedError(f"{self.role.value} session has been aborted")

		self._add_message(AgentMessage(role="user", content=message))
		self._set_status(SessionStatus.THINKING)

		if self.backend is None:
			self._set_status(SessionStatus.IDLE)
			return

		content = ""
		try:
			async for chunk in self.backend.stream_reply(self.role, self._messages):
				if self._aborted:
					break
				content += chunk
				self._emit(SessionEvent.MESSAGE_STREAMING, content, False)
		except Exception as e:
			self._fail(e)
			raise

		if self._aborted:
			return

		self._add_message(AgentMessage(role="assistant", content=content))
		self._emit(SessionEvent.MESSAGE_STREAMING, content, True)
		self._set_status(SessionStatus.IDLE)

	def decide_next_action(self, context: WorkflowContext) -> Optional[Action]:
		"""
		Propose the next action for this role.

		Only an idle, non-aborted session proposes anything, so at most one
		action per session is ever in flight.
		"""
		if self._aborted or self._status != SessionStatus.IDLE:
			return None
		return _POLICIES[self.role](context)

	async def execute_tool(self, action: Action) -> ToolResult:
		"""
		Execute an action through the executor.

		Failures are reported in the result. A raising executor is a
		transport fault: the session moves to error and the exception
		propagates.
		"""
		if self._aborted:
			return ToolResult(success=False, output="", error="Session aborted")

		self._set_status(SessionStatus.EXECUTING)
		self._emit(SessionEvent.ACTION_STARTED, action)
		logger.info(f"{self.role.value} executing {action.type.value}: {action.description}")

		try:
			result = await self.executor(self.role, action, self.context_manager.get_context())
		except Exception as e:
			self._fail(e)
			raise

		self._emit(SessionEvent.ACTION_COMPLETED, action, result)
		self._set_status(SessionStatus.IDLE)
		return result

	def abort(self) -> None:
		self._aborted = True
		self._set_status(SessionStatus.IDLE)

	def reset(self) -> None:
		self._aborted = False
		self._status = SessionStatus.IDLE
		self._messages = []
		self._add_system_message()
