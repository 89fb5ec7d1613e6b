"""
Shared workflow context.

WorkflowContextManager is the single owner of a WorkflowContext. Every
mutator replaces the held value with a new frozen one and then emits
notifications, so observers only ever see immutable snapshots.
"""

import logging
from dataclasses import replace
from enum import Enum
from typing import Optional

from .events import EventEmitter
from .models import (
	AgentRole,
	ImplementationStatus,
	SpecStatus,
	TestResult,
	WorkflowContext,
	create_workflow_context,
	now_iso,
)

logger = logging.getLogger(__name__)

MAX_ITERATIONS_REASON = "Max iterations reached"


class ContextEvent(str, Enum):
	"""Notifications emitted by WorkflowContextManager."""
	STATE_CHANGED = "state_changed"
	SPEC_UPDATED = "spec_updated"
	SPEC_FROZEN = "spec_frozen"
	TEST_COMPLETED = "test_completed"
	IMPLEMENTATION_UPDATED = "implementation_updated"
	WORKFLOW_PAUSED = "workflow_paused"
	WORKFLOW_COMPLETED = "workflow_completed"


def _append_unique(items: tuple[str, ...], path: str) -> tuple[str, ...]:
	return items if path in items else items + (path,)


class WorkflowContextManager:
	"""
	Holds and mutates the shared context of one workflow.

	All mutators are synchronous and end with a STATE_CHANGED notification
	carrying the new snapshot. Spec status is a one-way ratchet enforced
	here rather than at read sites.
	"""

	def __init__(
		self,
		original_prompt: str,
		workspace_path: str,
		max_iterations: int = 10,
	):
		self._context = create_workflow_context(original_prompt, workspace_path, max_iterations)
		self.events = EventEmitter()

	def get_context(self) -> WorkflowContext:
		"""Current snapshot. Safe to keep; it never changes."""
		return self._context

	def on(self, event: ContextEvent, handler):
		"""Subscribe to a context notification."""
		return self.events.on(event.value, handler)

	def _emit(self, event: ContextEvent, *args) -> None:
		self.events.emit(event.value, *args)

	def _state_changed(self) -> None:
		self._emit(ContextEvent.STATE_CHANGED, self._context)

	# ==================== Spec ====================

	def update_spec(self, content: str, status: Optional[SpecStatus] = None) -> None:
		"""
		Replace the spec text, optionally advancing its status.

		A status lower than the current one is ignored. Content is still
		written after the spec is locked; this layer does not write-protect.
		"""
		new_status = self._context.spec_status
		if status is not None:
			if status.rank >= new_status.rank:
				new_status = status
			else:
				logger.debug(
					f"Ignoring spec status {status.value}; already {new_status.value}"
				)
		self._context = replace(self._context, spec_content=content, spec_status=new_status)
		self._emit(ContextEvent.SPEC_UPDATED, content, new_status)
		self._state_changed()

	def set_spec_path(self, path: str) -> None:
		self._context = replace(self._context, spec_path=path)
		self._state_changed()

	def freeze_spec(self) -> None:
		"""Move a draft spec to frozen. Already frozen or locked specs stay put."""
		if self._context.spec_status != SpecStatus.DRAFT:
			logger.debug(f"freeze_spec ignored; spec is {self._context.spec_status.value}")
			return
		self._context = replace(self._context, spec_status=SpecStatus.FROZEN)
		logger.info("Spec frozen")
		self._emit(ContextEvent.SPEC_FROZEN)
		self._state_changed()

	def lock_spec(self) -> None:
		"""
		Lock the spec (user approved).

		Locking a draft spec is accepted: there is no hard precondition that
		freeze_spec ran first. The skip is logged so it shows up in traces.
		"""
		if self._context.spec_status == SpecStatus.LOCKED:
			return
		if self._context.spec_status == SpecStatus.DRAFT:
			logger.warning("Locking spec that was never frozen")
		self._context = replace(self._context, spec_status=SpecStatus.LOCKED)
		logger.info("Spec locked")
		self._state_changed()

	# ==================== Tests and files ====================

	def add_test_result(self, result: TestResult) -> None:
		self._context = replace(
			self._context,
			test_results=self._context.test_results + (result,),
		)
		self._emit(ContextEvent.TEST_COMPLETED, result)
		self._state_changed()

	def get_last_test_result(self) -> Optional[TestResult]:
		return self._context.last_test_result

	def update_implementation(
		self,
		triggered_by: AgentRole,
		files_modified: Optional[list[str]] = None,
	) -> None:
		"""Record activity by a role and merge any modified files."""
		status = self._context.implementation_status
		modified = status.files_modified
		for path in files_modified or []:
			modified = _append_unique(modified, path)
		status = replace(
			status,
			files_modified=modified,
			last_activity=triggered_by,
			last_activity_timestamp=now_iso(),
		)
		self._context = replace(self._context, implementation_status=status)
		self._emit(ContextEvent.IMPLEMENTATION_UPDATED, status)
		self._state_changed()

	def add_created_file(self, path: str) -> None:
		"""Track an implementation file. No-op if already tracked."""
		status = self._context.implementation_status
		if path in status.files_created:
			return
		self._set_implementation(replace(status, files_created=status.files_created + (path,)))

	def add_test_file(self, path: str) -> None:
		"""Track a test file. No-op if already tracked."""
		status = self._context.implementation_status
		if path in status.tests_created:
			return
		self._set_implementation(replace(status, tests_created=status.tests_created + (path,)))

	def _set_implementation(self, status: ImplementationStatus) -> None:
		self._context = replace(self._context, implementation_status=status)
		self._state_changed()

	# ==================== Iterations ====================

	def increment_iteration(self) -> int:
		"""
		Advance the iteration counter.

		When the new value reaches max_iterations the workflow is marked
		inactive and WORKFLOW_PAUSED fires once.

		Returns:
			The new iteration count
		"""
		iteration = self._context.iteration + 1
		exhausted = iteration == self._context.max_iterations
		self._context = replace(
			self._context,
			iteration=iteration,
			is_workflow_active=self._context.is_workflow_active and not exhausted,
		)
		if exhausted:
			logger.warning(f"Iteration budget exhausted ({iteration}/{self._context.max_iterations})")
			self._emit(ContextEvent.WORKFLOW_PAUSED, MAX_ITERATIONS_REASON)
		self._state_changed()
		return iteration

	def is_max_iterations_reached(self) -> bool:
		return self._context.iteration >= self._context.max_iterations

	# ==================== Workflow lifecycle ====================

	def start_workflow(self) -> None:
		self._context = replace(self._context, is_workflow_active=True, start_time=now_iso())
		self._state_changed()

	def pause_workflow(self, reason: str) -> None:
		self._context = replace(self._context, is_workflow_active=False)
		logger.info(f"Workflow paused: {reason}")
		self._emit(ContextEvent.WORKFLOW_PAUSED, reason)
		self._state_changed()

	def resume_workflow(self) -> None:
		"""Re-activate the workflow. An exhausted iteration budget starts over."""
		iteration = self._context.iteration
		if iteration >= self._context.max_iterations:
			iteration = 0
		self._context = replace(self._context, is_workflow_active=True, iteration=iteration)
		self._state_changed()

	def complete_workflow(self) -> None:
		self._context = replace(self._context, is_workflow_active=False)
		logger.info("Workflow completed")
		self._emit(ContextEvent.WORKFLOW_COMPLETED)
		self._state_changed()

	def reset(self) -> None:
		"""Back to a fresh context with the same prompt, workspace and budget."""
		self._context = create_workflow_context(
			self._context.original_prompt,
			self._context.workspace_path,
			self._context.max_iterations,
		)
		self._state_changed()
