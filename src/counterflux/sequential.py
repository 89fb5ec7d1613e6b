"""
Sequential (ping-pong) workflow machine.

One role is active at a time:
1. QA writes the spec (SPEC.md) and the user freezes it
2. QA writes failing tests
3. Dev implements code to pass them
4. The test suite runs
5. QA reviews the implementation
6. Loop until tests pass and the review is approved, or pause when the
   iteration budget runs out

Every entry into a non-terminal state dispatches an instruction and then the
machine waits for the next externally signalled event.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .backends import AgentBackend, CommandRunner, WorkflowCallbacks, WorkspaceFiles
from .config import DEFAULT_TEST_COMMANDS
from .context import WorkflowContextManager
from .errors import SessionAbortedError, WorkflowStateError
from .events import EventEmitter
from .models import (
	AgentRole,
	ReviewFeedback,
	Severity,
	TestResult,
	WorkflowContext,
)
from .prompts import (
	PAUSED_NOTICE,
	code_review_instruction,
	implementing_instruction,
	spec_creation_instruction,
	test_writing_instruction,
)
from .runners import NO_TEST_COMMAND_MESSAGE, LocalWorkspaceFiles, run_first_available

logger = logging.getLogger(__name__)


class WorkflowState(str, Enum):
	"""States of the sequential workflow."""
	IDLE = "IDLE"
	SPEC_CREATION = "SPEC_CREATION"
	SPEC_FROZEN = "SPEC_FROZEN"
	TEST_WRITING = "TEST_WRITING"
	IMPLEMENTING = "IMPLEMENTING"
	RUNNING_TESTS = "RUNNING_TESTS"
	CODE_REVIEW = "CODE_REVIEW"
	COMPLETED = "COMPLETED"
	PAUSED = "PAUSED"
	ERROR = "ERROR"


TERMINAL_STATES = frozenset({WorkflowState.COMPLETED, WorkflowState.ERROR})


class EventType(str, Enum):
	"""Events that drive transitions."""
	START = "START"
	SPEC_CREATED = "SPEC_CREATED"
	SPEC_APPROVED = "SPEC_APPROVED"
	TESTS_WRITTEN = "TESTS_WRITTEN"
	IMPLEMENTATION_DONE = "IMPLEMENTATION_DONE"
	TESTS_PASSED = "TESTS_PASSED"
	TESTS_FAILED = "TESTS_FAILED"
	REVIEW_APPROVED = "REVIEW_APPROVED"
	REVIEW_REJECTED = "REVIEW_REJECTED"
	MAX_ITERATIONS_REACHED = "MAX_ITERATIONS_REACHED"
	USER_CONTINUE = "USER_CONTINUE"
	USER_ABORT = "USER_ABORT"
	ERROR = "ERROR"


@dataclass
class WorkflowEvent:
	"""An event plus the payload its type carries."""
	type: EventType
	prompt: Optional[str] = None
	spec_path: Optional[str] = None
	test_files: list[str] = field(default_factory=list)
	result: Optional[TestResult] = None
	feedback: Optional[ReviewFeedback] = None
	message: Optional[str] = None

	@classmethod
	def error(cls, message: str) -> "WorkflowEvent":
		return cls(EventType.ERROR, message=message)


@dataclass(frozen=True)
class Transition:
	"""One recorded state change. event is None for a forced abort."""
	source: WorkflowState
	event: Optional[EventType]
	target: WorkflowState


S = WorkflowState
E = EventType

# (state, event) -> states the machine may move to
TRANSITIONS: dict[tuple[WorkflowState, EventType], frozenset[WorkflowState]] = {
	(S.IDLE, E.START): frozenset({S.SPEC_CREATION}),
	(S.SPEC_CREATION, E.SPEC_CREATED): frozenset({S.SPEC_FROZEN}),
	(S.SPEC_CREATION, E.USER_ABORT): frozenset({S.IDLE}),
	(S.SPEC_FROZEN, E.SPEC_APPROVED): frozenset({S.TEST_WRITING}),
	(S.TEST_WRITING, E.TESTS_WRITTEN): frozenset({S.IMPLEMENTING}),
	(S.IMPLEMENTING, E.IMPLEMENTATION_DONE): frozenset({S.RUNNING_TESTS}),
	(S.RUNNING_TESTS, E.TESTS_PASSED): frozenset({S.CODE_REVIEW}),
	(S.RUNNING_TESTS, E.TESTS_FAILED): frozenset({S.IMPLEMENTING, S.PAUSED}),
	(S.RUNNING_TESTS, E.MAX_ITERATIONS_REACHED): frozenset({S.PAUSED}),
	(S.CODE_REVIEW, E.REVIEW_APPROVED): frozenset({S.COMPLETED}),
	(S.CODE_REVIEW, E.REVIEW_REJECTED): frozenset({S.TEST_WRITING}),
	(S.PAUSED, E.USER_CONTINUE): frozenset({S.IMPLEMENTING}),
	(S.PAUSED, E.USER_ABORT): frozenset({S.IDLE}),
}


def is_allowed(transition: Transition) -> bool:
	"""Whether a recorded transition is part of the table."""
	if transition.target == S.ERROR:
		return transition.source not in TERMINAL_STATES
	if transition.event is None:
		# Forced abort
		return transition.target == S.IDLE and transition.source not in TERMINAL_STATES
	return transition.target in TRANSITIONS.get((transition.source, transition.event), frozenset())


_HANDLERS: dict[tuple[WorkflowState, EventType], str] = {
	(S.IDLE, E.START): "_on_start",
	(S.SPEC_CREATION, E.SPEC_CREATED): "_on_spec_created",
	(S.SPEC_CREATION, E.USER_ABORT): "_on_user_abort",
	(S.SPEC_FROZEN, E.SPEC_APPROVED): "_on_spec_approved",
	(S.TEST_WRITING, E.TESTS_WRITTEN): "_on_tests_written",
	(S.IMPLEMENTING, E.IMPLEMENTATION_DONE): "_on_implementation_done",
	(S.RUNNING_TESTS, E.TESTS_PASSED): "_on_tests_passed",
	(S.RUNNING_TESTS, E.TESTS_FAILED): "_on_tests_failed",
	(S.RUNNING_TESTS, E.MAX_ITERATIONS_REACHED): "_on_max_iterations",
	(S.CODE_REVIEW, E.REVIEW_APPROVED): "_on_review_approved",
	(S.CODE_REVIEW, E.REVIEW_REJECTED): "_on_review_rejected",
	(S.PAUSED, E.USER_CONTINUE): "_on_user_continue",
	(S.PAUSED, E.USER_ABORT): "_on_user_abort",
}

# Every state has an entry action; a missing key fails loudly on transition
ENTRY_ACTIONS: dict[WorkflowState, str] = {
	S.IDLE: "_enter_idle",
	S.SPEC_CREATION: "_enter_spec_creation",
	S.SPEC_FROZEN: "_enter_spec_frozen",
	S.TEST_WRITING: "_enter_test_writing",
	S.IMPLEMENTING: "_enter_implementing",
	S.RUNNING_TESTS: "_enter_running_tests",
	S.CODE_REVIEW: "_enter_code_review",
	S.COMPLETED: "_enter_completed",
	S.PAUSED: "_enter_paused",
	S.ERROR: "_enter_error",
}


class SequentialWorkflowMachine:
	"""
	Finite-state machine for the turn-based QA/Dev workflow.

	Entry actions dispatch instructions through the agent backend; replies
	are published as "reply_received" events so the embedding application
	can turn them into the next WorkflowEvent.
	"""

	def __init__(
		self,
		backend: AgentBackend,
		runner: CommandRunner,
		callbacks: Optional[WorkflowCallbacks] = None,
		files: Optional[WorkspaceFiles] = None,
		test_commands: Optional[list[str]] = None,
		max_iterations: int = 10,
	):
		"""
		Initialize the machine.

		Args:
			backend: Agent backend both roles talk through
			runner: Runs the candidate test commands
			callbacks: Approval and notification hooks
			files: Workspace file access (local disk by default)
			test_commands: Candidate test commands, tried in order
			max_iterations: Failed test runs allowed before pausing
		"""
		self.backend = backend
		self.runner = runner
		self.callbacks = callbacks or WorkflowCallbacks()
		self.files = files or LocalWorkspaceFiles()
		self.test_commands = list(test_commands or DEFAULT_TEST_COMMANDS)
		self.max_iterations = max_iterations

		self.events = EventEmitter()
		self._state = WorkflowState.IDLE
		self._context_manager: Optional[WorkflowContextManager] = None
		self._phase_description = "Idle"
		self._last_review_feedback: Optional[ReviewFeedback] = None
		self._history: list[Transition] = []
		self._aborted = False

	# ==================== Accessors ====================

	def get_state(self) -> WorkflowState:
		return self._state

	def get_context(self) -> Optional[WorkflowContext]:
		return self._context_manager.get_context() if self._context_manager else None

	@property
	def context_manager(self) -> Optional[WorkflowContextManager]:
		return self._context_manager

	@property
	def phase_description(self) -> str:
		return self._phase_description

	@property
	def history(self) -> list[Transition]:
		return list(self._history)

	@property
	def last_review_feedback(self) -> Optional[ReviewFeedback]:
		return self._last_review_feedback

	@property
	def is_finished(self) -> bool:
		return self._state in TERMINAL_STATES

	def _ctx(self) -> WorkflowContextManager:
		if self._context_manager is None:
			raise WorkflowStateError("Context not initialized. Call start() first.")
		return self._context_manager

	# ==================== Public operations ====================

	async def start(self, prompt: str, workspace_path: str) -> None:
		"""Create a fresh context and kick off spec creation."""
		if self._state != WorkflowState.IDLE:
			raise WorkflowStateError(f"Cannot start: machine is in {self._state.value} state")

		logger.info(f"Starting workflow with prompt: {prompt[:100]}")
		self._context_manager = WorkflowContextManager(prompt, workspace_path, self.max_iterations)
		self._context_manager.start_workflow()
		self._aborted = False
		self._history.clear()
		self._last_review_feedback = None
		await self.handle_event(WorkflowEvent(EventType.START, prompt=prompt))

	async def handle_event(self, event: WorkflowEvent) -> None:
		"""
		Apply one event to the current state.

		Events outside the transition table are ignored. Any exception raised
		while processing moves the machine to ERROR with the message recorded.
		"""
		logger.info(f"Handling event {event.type.value} in state {self._state.value}")

		if self._state in TERMINAL_STATES:
			logger.warning(f"Ignoring {event.type.value}: {self._state.value} is terminal")
			return

		try:
			if event.type == EventType.ERROR:
				await self._transition_to(WorkflowState.ERROR, f"Error: {event.message}", event.type)
				return

			handler_name = _HANDLERS.get((self._state, event.type))
			if handler_name is None:
				logger.info(f"No transition for {event.type.value} in {self._state.value}")
				return
			await getattr(self, handler_name)(event)
		except Exception as e:
			logger.error(f"Error in state {self._state.value}: {e}")
			await self._transition_to(WorkflowState.ERROR, f"Error: {e}", event.type)

	async def abort(self) -> None:
		"""
		Stop the workflow.

		Further dispatches fail fast. States with a USER_ABORT row use it;
		any other non-terminal state is forced back to IDLE.
		"""
		self._aborted = True
		if self._state in TERMINAL_STATES or self._state == WorkflowState.IDLE:
			return
		if (self._state, EventType.USER_ABORT) in _HANDLERS:
			await self.handle_event(WorkflowEvent(EventType.USER_ABORT))
		else:
			await self._transition_to(WorkflowState.IDLE, "Workflow aborted by user", None)

	def reset(self) -> None:
		"""Back to IDLE with a fresh context for the same prompt and workspace."""
		self._state = WorkflowState.IDLE
		if self._context_manager is not None:
			self._context_manager.reset()
		self._phase_description = "Idle"
		self._last_review_feedback = None
		self._history.clear()
		self._aborted = False

	async def run_ping_pong_loop(self, poll_interval: float = 1.0) -> WorkflowState:
		"""
		Wait for the workflow to finish, asking the user at every pause.

		Returns:
			The state the loop ended in
		"""
		self._ctx()
		logger.info("Starting ping-pong loop")

		while self._state not in TERMINAL_STATES and self._state != WorkflowState.IDLE:
			if self._state == WorkflowState.PAUSED:
				should_continue = await self.callbacks.ask_approval(
					"Maximum iterations reached. Do you want to continue?"
				)
				if should_continue:
					await self.handle_event(WorkflowEvent(EventType.USER_CONTINUE))
				else:
					await self.handle_event(WorkflowEvent(EventType.USER_ABORT))
					break
			await asyncio.sleep(poll_interval)

		logger.info(f"Loop ended in state: {self._state.value}")
		return self._state

	# ==================== Transitions ====================

	async def _transition_to(
		self,
		new_state: WorkflowState,
		description: str,
		event: Optional[EventType],
	) -> None:
		old_state = self._state
		self._state = new_state
		self._phase_description = description
		self._history.append(Transition(old_state, event, new_state))

		logger.info(f"Transition: {old_state.value} -> {new_state.value}")
		self.events.emit("state_changed", old_state, new_state)

		await getattr(self, ENTRY_ACTIONS[new_state])()

	def _notify(self, message: str, severity: Severity) -> None:
		try:
			self.callbacks.notify_user(message, severity)
		except Exception as e:
			logger.error(f"Notification callback failed: {e}")

	async def _dispatch(self, role: AgentRole, instruction: str) -> None:
		if self._aborted:
			raise SessionAbortedError("Workflow has been aborted")
		await self.backend.switch_active_role(role)
		reply = await self.backend.send_instruction(instruction)
		self.events.emit("reply_received", role, reply)

	# ==================== Event handlers ====================

	async def _on_start(self, event: WorkflowEvent) -> None:
		await self._transition_to(WorkflowState.SPEC_CREATION, "Creating specification document...", event.type)

	async def _on_spec_created(self, event: WorkflowEvent) -> None:
		ctx = self._ctx()
		if event.spec_path:
			ctx.set_spec_path(event.spec_path)

		approved = await self.callbacks.ask_approval(
			f"Spec document created at {event.spec_path}. "
			"Do you want to freeze the spec and proceed to test writing?"
		)
		if not approved:
			logger.info("Spec not approved; staying in SPEC_CREATION")
			self._notify("Spec not frozen. Revise it and signal SPEC_CREATED again.", Severity.INFO)
			return

		ctx.freeze_spec()
		await self._transition_to(WorkflowState.SPEC_FROZEN, "Spec frozen, ready for test writing", event.type)
		# Frozen is transient: move straight on to test writing
		await self.handle_event(WorkflowEvent(EventType.SPEC_APPROVED))

	async def _on_spec_approved(self, event: WorkflowEvent) -> None:
		await self._transition_to(WorkflowState.TEST_WRITING, "Writing failing tests...", event.type)

	async def _on_tests_written(self, event: WorkflowEvent) -> None:
		ctx = self._ctx()
		for path in event.test_files:
			ctx.add_test_file(path)
		await self._transition_to(WorkflowState.IMPLEMENTING, "Implementing code to pass tests...", event.type)

	async def _on_implementation_done(self, event: WorkflowEvent) -> None:
		await self._transition_to(WorkflowState.RUNNING_TESTS, "Running test suite...", event.type)

	async def _on_tests_passed(self, event: WorkflowEvent) -> None:
		if event.result is not None:
			self._ctx().add_test_result(event.result)
		await self._transition_to(
			WorkflowState.CODE_REVIEW, "All tests passed! Reviewing implementation...", event.type
		)

	async def _on_tests_failed(self, event: WorkflowEvent) -> None:
		ctx = self._ctx()
		if event.result is not None:
			ctx.add_test_result(event.result)

		iteration = ctx.increment_iteration()
		if iteration >= ctx.get_context().max_iterations:
			await self._transition_to(
				WorkflowState.PAUSED,
				"Maximum iterations reached. Waiting for user approval to continue.",
				event.type,
			)
		else:
			await self._transition_to(
				WorkflowState.IMPLEMENTING,
				f"Tests failed (iteration {iteration}). Implementing fixes...",
				event.type,
			)

	async def _on_max_iterations(self, event: WorkflowEvent) -> None:
		await self._transition_to(
			WorkflowState.PAUSED,
			"Maximum iterations reached. Waiting for user approval to continue.",
			event.type,
		)

	async def _on_review_approved(self, event: WorkflowEvent) -> None:
		self._last_review_feedback = event.feedback or ReviewFeedback(approved=True)
		self._ctx().complete_workflow()
		await self._transition_to(WorkflowState.COMPLETED, "Code review passed!", event.type)

	async def _on_review_rejected(self, event: WorkflowEvent) -> None:
		self._last_review_feedback = event.feedback or ReviewFeedback(approved=False)
		await self._transition_to(
			WorkflowState.TEST_WRITING,
			"Code review found issues. Writing additional tests...",
			event.type,
		)

	async def _on_user_continue(self, event: WorkflowEvent) -> None:
		# Resuming an exhausted budget resets the iteration count
		self._ctx().resume_workflow()
		await self._transition_to(WorkflowState.IMPLEMENTING, "Continuing implementation...", event.type)

	async def _on_user_abort(self, event: WorkflowEvent) -> None:
		await self._transition_to(WorkflowState.IDLE, "Workflow aborted by user", event.type)

	# ==================== Entry actions ====================

	async def _enter_idle(self) -> None:
		ctx = self._context_manager
		if ctx is not None and ctx.get_context().is_workflow_active:
			ctx.pause_workflow("Aborted by user")
		self._notify("Counterflux workflow aborted", Severity.WARNING)

	async def _enter_spec_creation(self) -> None:
		ctx = self._ctx().get_context()
		await self._dispatch(AgentRole.QA, spec_creation_instruction(ctx.original_prompt))

	async def _enter_spec_frozen(self) -> None:
		pass

	async def _enter_test_writing(self) -> None:
		manager = self._ctx()
		ctx = manager.get_context()

		if ctx.spec_path:
			try:
				if await self.files.file_exists(ctx.spec_path):
					manager.update_spec(await self.files.read_file(ctx.spec_path))
			except OSError as e:
				logger.warning(f"Could not read spec file {ctx.spec_path}: {e}")

		ctx = manager.get_context()
		await self._dispatch(
			AgentRole.QA,
			test_writing_instruction(ctx.original_prompt, ctx.spec_content, self._last_review_feedback),
		)

	async def _enter_implementing(self) -> None:
		ctx = self._ctx().get_context()
		await self._dispatch(
			AgentRole.DEV,
			implementing_instruction(
				ctx.spec_content,
				ctx.implementation_status.tests_created,
				ctx.last_test_result,
			),
		)

	async def _enter_running_tests(self) -> None:
		logger.info("Running test suite...")
		try:
			found = await run_first_available(self.runner, self.test_commands)
		except Exception as e:
			await self.handle_event(WorkflowEvent.error(f"Test execution failed: {e}"))
			return

		if found is None:
			self._notify(NO_TEST_COMMAND_MESSAGE, Severity.ERROR)
			await self.handle_event(WorkflowEvent.error(NO_TEST_COMMAND_MESSAGE))
			return

		_, command_result = found
		passed = command_result.exit_code == 0
		result = TestResult(
			passed=passed,
			total=1,
			passed_count=1 if passed else 0,
			failed_count=0 if passed else 1,
			output=command_result.output,
			triggered_by=AgentRole.QA,
		)
		event_type = EventType.TESTS_PASSED if passed else EventType.TESTS_FAILED
		await self.handle_event(WorkflowEvent(event_type, result=result))

	async def _enter_code_review(self) -> None:
		ctx = self._ctx().get_context()
		await self._dispatch(AgentRole.QA, code_review_instruction(ctx.spec_content))

	async def _enter_paused(self) -> None:
		self._notify(PAUSED_NOTICE, Severity.WARNING)

	async def _enter_completed(self) -> None:
		self._notify("Counterflux workflow completed successfully!", Severity.INFO)

	async def _enter_error(self) -> None:
		self._notify(f"Counterflux workflow error: {self._phase_description}", Severity.ERROR)
