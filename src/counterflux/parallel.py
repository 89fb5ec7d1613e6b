"""
Parallel coordinator.

Runs the QA and Dev sessions side by side on a fixed-interval tick. Each
tick reads one context snapshot, lets every idle session pick an action,
executes the picks concurrently and folds the results back into the shared
context once all of them have settled.
"""

import asyncio
import logging
from enum import Enum
from typing import Optional

from .backends import AgentBackend, WorkflowCallbacks
from .context import ContextEvent, WorkflowContextManager
from .errors import WorkflowStateError
from .events import EventEmitter
from .models import (
	Action,
	ActionType,
	AgentRole,
	Severity,
	SpecStatus,
	TestResult,
	ToolResult,
	WorkflowContext,
)
from .prompts import (
	DEV_SPEC_FROZEN_MESSAGE,
	QA_SPEC_FROZEN_MESSAGE,
	parallel_dev_kickoff,
	parallel_qa_kickoff,
)
from .runners import ActionExecutor
from .session import AgentSession, SessionEvent

logger = logging.getLogger(__name__)

COMPLETENESS_CHECK_EVERY = 3
COMPLETION_QUESTION = "All tests pass and the spec is locked. Mark the workflow as complete?"


class CoordinatorStatus(str, Enum):
	IDLE = "idle"
	INITIALIZING = "initializing"
	RUNNING = "running"
	PAUSED = "paused"
	COMPLETED = "completed"
	ERROR = "error"


SETTLED_STATUSES = {
	CoordinatorStatus.IDLE,
	CoordinatorStatus.PAUSED,
	CoordinatorStatus.COMPLETED,
	CoordinatorStatus.ERROR,
}


class CoordinatorEvent(str, Enum):
	"""Notifications emitted by ParallelCoordinator."""
	STATUS_CHANGED = "status_changed"
	STATE_CHANGED = "state_changed"
	SPEC_UPDATED = "spec_updated"
	TEST_COMPLETED = "test_completed"
	SESSION_STATUS_CHANGED = "session_status_changed"
	SESSION_MESSAGE = "session_message"
	SESSION_STREAMING = "session_streaming"
	ERROR = "error"


def fold_test_result(role: AgentRole, result: ToolResult) -> TestResult:
	"""
	Fold a run_test result into a TestResult.

	A successful run counts as passed when its output mentions "passed".
	An unsuccessful run is always a failure and carries the error text.
	"""
	if result.success:
		passed = "passed" in result.output
		output = result.output
	else:
		passed = False
		output = "\n".join(part for part in (result.error, result.output) if part)
	return TestResult(
		passed=passed,
		total=1,
		passed_count=1 if passed else 0,
		failed_count=0 if passed else 1,
		output=output,
		triggered_by=role,
	)


class ParallelCoordinator:
	"""
	Drives both sessions concurrently against one shared context.

	Status: idle -> initializing -> running <-> paused, running -> completed,
	any -> error on a transport fault. abort() and reset() return to idle.
	"""

	def __init__(
		self,
		workspace_path: str,
		backend: Optional[AgentBackend],
		executor: ActionExecutor,
		callbacks: Optional[WorkflowCallbacks] = None,
		max_iterations: int = 10,
		loop_interval_ms: int = 200,
	):
		"""
		Initialize the coordinator.

		Args:
			workspace_path: Directory both roles work in
			backend: Streams replies for session messages
			executor: Callback(role, action, context) -> ToolResult
			callbacks: Approval and notification hooks
			max_iterations: Iteration budget before the workflow pauses
			loop_interval_ms: Delay between ticks
		"""
		self.workspace_path = workspace_path
		self.backend = backend
		self.executor = executor
		self.callbacks = callbacks or WorkflowCallbacks()
		self.max_iterations = max_iterations
		self.loop_interval_ms = loop_interval_ms
		self.events = EventEmitter()

		self.context_manager: Optional[WorkflowContextManager] = None
		self.qa_session: Optional[AgentSession] = None
		self.dev_session: Optional[AgentSession] = None

		self._status = CoordinatorStatus.IDLE
		self._settled = asyncio.Event()
		self._settled.set()
		self._loop_task: Optional[asyncio.Task] = None
		self._tick_count = 0
		# Bumped by abort(); ticks started before it discard their results
		self._run_id = 0

	# ==================== Accessors ====================

	def get_status(self) -> CoordinatorStatus:
		return self._status

	def get_context(self) -> Optional[WorkflowContext]:
		if self.context_manager is None:
			return None
		return self.context_manager.get_context()

	@property
	def tick_count(self) -> int:
		return self._tick_count

	def on(self, event: CoordinatorEvent, handler):
		return self.events.on(event.value, handler)

	def _emit(self, event: CoordinatorEvent, *args) -> None:
		self.events.emit(event.value, *args)

	def _set_status(self, status: CoordinatorStatus) -> None:
		if status == self._status:
			return
		logger.info(f"Coordinator: {self._status.value} -> {status.value}")
		self._status = status
		if status in SETTLED_STATUSES:
			self._settled.set()
		else:
			self._settled.clear()
		self._emit(CoordinatorEvent.STATUS_CHANGED, status)

	def _sessions(self) -> list[AgentSession]:
		return [s for s in (self.qa_session, self.dev_session) if s is not None]

	def _session(self, role: AgentRole) -> AgentSession:
		session = self.qa_session if role == AgentRole.QA else self.dev_session
		if session is None:
			raise WorkflowStateError("Parallel mode has not been started")
		return session

	def _ctx(self) -> WorkflowContextManager:
		if self.context_manager is None:
			raise WorkflowStateError("Parallel mode has not been started")
		return self.context_manager

	# ==================== Wiring ====================

	def _notify(self, message: str, severity: Severity) -> None:
		try:
			self.callbacks.notify_user(message, severity)
		except Exception as e:
			logger.error(f"notify_user callback failed: {e}")

	def _report_error(self, error: Exception, source: str) -> None:
		logger.error(f"Error from {source}: {error}")
		self._emit(CoordinatorEvent.ERROR, error, source)
		if self.callbacks.on_error:
			try:
				self.callbacks.on_error(error, source)
			except Exception as e:
				logger.error(f"on_error callback failed: {e}")

	def _wire_context(self, manager: WorkflowContextManager) -> None:
		manager.on(ContextEvent.STATE_CHANGED, lambda ctx: self._emit(CoordinatorEvent.STATE_CHANGED, ctx))
		manager.on(
			ContextEvent.SPEC_UPDATED,
			lambda content, status: self._emit(CoordinatorEvent.SPEC_UPDATED, content, status),
		)
		manager.on(ContextEvent.TEST_COMPLETED, lambda result: self._emit(CoordinatorEvent.TEST_COMPLETED, result))
		manager.on(ContextEvent.WORKFLOW_PAUSED, self._on_context_paused)

	def _wire_session(self, session: AgentSession) -> None:
		role = session.role
		session.on(
			SessionEvent.STATUS_CHANGED,
			lambda status: self._emit(CoordinatorEvent.SESSION_STATUS_CHANGED, role, status),
		)
		session.on(
			SessionEvent.MESSAGE_ADDED,
			lambda message: self._emit(CoordinatorEvent.SESSION_MESSAGE, role, message),
		)
		session.on(
			SessionEvent.MESSAGE_STREAMING,
			lambda content, complete: self._emit(CoordinatorEvent.SESSION_STREAMING, role, content, complete),
		)
		session.on(SessionEvent.ERROR, lambda error: self._report_error(error, role.value))

	def _on_context_paused(self, reason: str) -> None:
		# Fires for the iteration safety valve; user pauses already set PAUSED
		if self._status != CoordinatorStatus.RUNNING:
			return
		self._set_status(CoordinatorStatus.PAUSED)
		self._notify(f"Workflow paused: {reason}", Severity.WARNING)

	# ==================== Lifecycle ====================

	async def start_parallel_mode(self, prompt: str) -> None:
		"""
		Create the context and sessions, brief both roles and start ticking.

		Raises:
			WorkflowStateError: the coordinator is not idle
		"""
		if self._status != CoordinatorStatus.IDLE:
			raise WorkflowStateError(f"Cannot start parallel mode while {self._status.value}")

		self._set_status(CoordinatorStatus.INITIALIZING)
		self._tick_count = 0

		manager = WorkflowContextManager(prompt, self.workspace_path, self.max_iterations)
		self._wire_context(manager)
		self.context_manager = manager

		self.qa_session = AgentSession(AgentRole.QA, manager, self.executor, self.backend)
		self.dev_session = AgentSession(AgentRole.DEV, manager, self.executor, self.backend)
		for session in self._sessions():
			self._wire_session(session)

		manager.start_workflow()
		logger.info(f"Parallel mode started in {self.workspace_path}")

		try:
			await self.qa_session.send_message(parallel_qa_kickoff(prompt))
			await self.dev_session.send_message(parallel_dev_kickoff(prompt))
		except Exception:
			self._set_status(CoordinatorStatus.ERROR)
			raise

		self._set_status(CoordinatorStatus.RUNNING)
		self._start_loop()

	def _start_loop(self) -> None:
		if self._loop_task is not None and not self._loop_task.done():
			logger.debug("Coordinator loop already running")
			return
		self._loop_task = asyncio.create_task(self._run_loop())

	async def _run_loop(self) -> None:
		interval = self.loop_interval_ms / 1000
		while self._status == CoordinatorStatus.RUNNING:
			await asyncio.sleep(interval)
			await self.run_tick()
		logger.debug(f"Coordinator loop stopped ({self._status.value})")

	async def run_tick(self) -> None:
		"""Run one tick: decide, execute concurrently, then fold."""
		if self._status != CoordinatorStatus.RUNNING or self.context_manager is None:
			return

		run_id = self._run_id
		context = self.context_manager.get_context()
		planned: list[tuple[AgentSession, Action]] = []
		for session in self._sessions():
			action = session.decide_next_action(context)
			if action is not None:
				planned.append((session, action))

		if not planned:
			return

		# Shielded so abort() never interrupts an execution halfway
		results = await asyncio.shield(asyncio.gather(
			*(session.execute_tool(action) for session, action in planned),
			return_exceptions=True,
		))

		failed = False
		for (session, action), result in zip(planned, results):
			if session.aborted or run_id != self._run_id:
				logger.debug(f"Discarding {action.type.value} result from aborted {session.role.value} session")
				continue
			if isinstance(result, BaseException):
				# Already reported through the session's error event
				failed = True
				continue
			self._fold(session.role, action, result)

		if failed:
			self._set_status(CoordinatorStatus.ERROR)
			return
		if self._status != CoordinatorStatus.RUNNING:
			return

		self._tick_count += 1
		if self._tick_count % COMPLETENESS_CHECK_EVERY == 0:
			await self._check_completeness()
			# Aborted or reset while the approval prompt was open
			if self._status == CoordinatorStatus.IDLE or self.context_manager is None:
				return
			self.context_manager.increment_iteration()

	def _fold(self, role: AgentRole, action: Action, result: ToolResult) -> None:
		manager = self._ctx()
		if result.success:
			logger.info(f"{role.value} {action.type.value} succeeded")
		else:
			logger.warning(f"{role.value} {action.type.value} failed: {result.error}")

		if action.type == ActionType.WRITE_SPEC:
			if result.success:
				manager.update_spec(action.content or result.output, SpecStatus.DRAFT)
				if action.target_file:
					manager.set_spec_path(action.target_file)
		elif action.type == ActionType.WRITE_TEST:
			if result.success:
				for path in result.affected_files:
					manager.add_test_file(path)
		elif action.type == ActionType.RUN_TEST:
			manager.add_test_result(fold_test_result(role, result))
		elif action.type == ActionType.WRITE_CODE:
			if result.success:
				for path in result.affected_files:
					manager.add_created_file(path)

		manager.update_implementation(role)

	async def _check_completeness(self) -> None:
		context = self._ctx().get_context()
		last = context.last_test_result
		if last is None or not last.passed or context.spec_status != SpecStatus.LOCKED:
			return

		try:
			approved = await self.callbacks.ask_approval(COMPLETION_QUESTION)
		except Exception as e:
			self._report_error(e, "orchestrator")
			return

		if approved and self._status == CoordinatorStatus.RUNNING:
			self.complete_workflow()

	async def wait_until_finished(self) -> CoordinatorStatus:
		"""Wait until the coordinator stops running, and return its status."""
		await self._settled.wait()
		return self._status

	# ==================== User operations ====================

	async def send_message_to_agent(self, role: AgentRole, message: str) -> None:
		"""
		Send a message to one role.

		Raises:
			WorkflowStateError: parallel mode has not been started
			SessionAbortedError: the session has been aborted
		"""
		await self._session(role).send_message(message)

	async def freeze_spec(self) -> None:
		"""Freeze the draft spec and tell both roles."""
		manager = self._ctx()
		if manager.get_context().spec_status != SpecStatus.DRAFT:
			logger.debug("freeze_spec ignored; spec is not a draft")
			return
		manager.freeze_spec()
		await self._session(AgentRole.QA).send_message(QA_SPEC_FROZEN_MESSAGE)
		await self._session(AgentRole.DEV).send_message(DEV_SPEC_FROZEN_MESSAGE)

	def lock_spec(self) -> None:
		self._ctx().lock_spec()

	def pause_workflow(self, reason: str = "Paused by user") -> None:
		"""Stop ticking after the current tick has folded."""
		if self._status != CoordinatorStatus.RUNNING:
			raise WorkflowStateError(f"Cannot pause while {self._status.value}")
		self._set_status(CoordinatorStatus.PAUSED)
		self._ctx().pause_workflow(reason)

	def resume_workflow(self) -> None:
		"""Resume a paused workflow. An exhausted iteration budget starts over."""
		if self._status != CoordinatorStatus.PAUSED:
			raise WorkflowStateError(f"Cannot resume while {self._status.value}")
		self._ctx().resume_workflow()
		self._set_status(CoordinatorStatus.RUNNING)
		self._start_loop()

	def complete_workflow(self) -> None:
		self._ctx().complete_workflow()
		self._set_status(CoordinatorStatus.COMPLETED)
		self._notify("Workflow completed: all tests pass and the spec is locked.", Severity.INFO)

	async def abort(self) -> None:
		"""
		Stop the loop and abort both sessions.

		Executions already in flight run to completion but their results
		are discarded.
		"""
		for session in self._sessions():
			session.abort()

		task = self._loop_task
		self._loop_task = None
		if task is not None and not task.done() and task is not asyncio.current_task():
			task.cancel()
			try:
				await task
			except asyncio.CancelledError:
				pass

		self._run_id += 1
		self._set_status(CoordinatorStatus.IDLE)
		logger.info("Parallel mode aborted")
		self._notify("Workflow aborted", Severity.WARNING)

	async def reset(self) -> None:
		"""Abort, then return the context and both sessions to their initial state."""
		await self.abort()
		if self.context_manager is not None:
			self.context_manager.reset()
		for session in self._sessions():
			session.reset()
		self._tick_count = 0
