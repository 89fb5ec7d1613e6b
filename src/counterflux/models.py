"""
Data models shared by the sequential machine and the parallel coordinator.

Everything a reader can hold onto (WorkflowContext, TestResult,
ImplementationStatus) is a frozen dataclass whose collections are tuples.
The context manager swaps in a new value on every mutation, so a snapshot
handed out earlier never changes underneath its holder.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class AgentRole(str, Enum):
	"""The two adversarial roles."""
	QA = "qa"
	DEV = "dev"


class SpecStatus(str, Enum):
	"""Lifecycle of the spec document. Only ever moves forward."""
	DRAFT = "draft"
	FROZEN = "frozen"
	LOCKED = "locked"

	@property
	def rank(self) -> int:
		return _SPEC_RANK[self]


_SPEC_RANK = {
	SpecStatus.DRAFT: 0,
	SpecStatus.FROZEN: 1,
	SpecStatus.LOCKED: 2,
}


class SessionStatus(str, Enum):
	"""Status of one agent session."""
	IDLE = "idle"
	THINKING = "thinking"
	EXECUTING = "executing"
	WAITING = "waiting"
	COMPLETED = "completed"
	ERROR = "error"


class ActionType(str, Enum):
	"""Kinds of work a role can propose."""
	WRITE_SPEC = "write_spec"
	WRITE_TEST = "write_test"
	RUN_TEST = "run_test"
	WRITE_CODE = "write_code"
	REVIEW_CODE = "review_code"
	REQUEST_INFO = "request_info"
	COMPLETE = "complete"


class Severity(str, Enum):
	"""Severity of a user notification."""
	INFO = "info"
	WARNING = "warning"
	ERROR = "error"


def now_iso() -> str:
	return datetime.now().isoformat()


@dataclass(frozen=True)
class TestResult:
	"""One run of the test suite."""
	__test__ = False  # not a pytest class

	passed: bool
	total: int
	passed_count: int
	failed_count: int
	output: str
	triggered_by: AgentRole
	timestamp: str = field(default_factory=now_iso)

	def summary(self, max_output: int = 500) -> str:
		"""Short human-readable summary used in instructions."""
		output = self.output
		if len(output) > max_output:
			output = output[:max_output] + "..."
		return (
			f"- Passed: {self.passed_count}/{self.total}\n"
			f"- Output: {output}"
		)


@dataclass(frozen=True)
class ImplementationStatus:
	"""Files produced by the roles. Tuples behave as ordered sets."""
	files_created: tuple[str, ...] = ()
	files_modified: tuple[str, ...] = ()
	tests_created: tuple[str, ...] = ()
	last_activity: Optional[AgentRole] = None
	last_activity_timestamp: str = ""


@dataclass(frozen=True)
class WorkflowContext:
	"""Shared state of one running workflow."""
	original_prompt: str
	workspace_path: str
	max_iterations: int = 10
	spec_content: Optional[str] = None
	spec_path: Optional[str] = None
	spec_status: SpecStatus = SpecStatus.DRAFT
	test_results: tuple[TestResult, ...] = ()
	implementation_status: ImplementationStatus = field(default_factory=ImplementationStatus)
	iteration: int = 0
	is_workflow_active: bool = False
	start_time: str = ""

	@property
	def last_test_result(self) -> Optional[TestResult]:
		return self.test_results[-1] if self.test_results else None

	def to_dict(self) -> dict:
		"""Convert to dictionary for display and logging."""
		status = self.implementation_status
		return {
			"original_prompt": self.original_prompt,
			"workspace_path": self.workspace_path,
			"spec_path": self.spec_path,
			"spec_status": self.spec_status.value,
			"has_spec": self.spec_content is not None,
			"test_runs": len(self.test_results),
			"files_created": list(status.files_created),
			"files_modified": list(status.files_modified),
			"tests_created": list(status.tests_created),
			"last_activity": status.last_activity.value if status.last_activity else None,
			"iteration": self.iteration,
			"max_iterations": self.max_iterations,
			"is_workflow_active": self.is_workflow_active,
		}


def create_workflow_context(
	original_prompt: str,
	workspace_path: str,
	max_iterations: int = 10,
) -> WorkflowContext:
	"""Create a fresh context. Two calls with equal arguments compare equal."""
	return WorkflowContext(
		original_prompt=original_prompt,
		workspace_path=workspace_path,
		max_iterations=max_iterations,
	)


@dataclass
class Action:
	"""A role's proposed next step. Lives for one tick."""
	type: ActionType
	description: str
	target_file: Optional[str] = None
	content: Optional[str] = None
	command: Optional[str] = None


@dataclass
class ToolResult:
	"""Outcome of executing one Action."""
	success: bool
	output: str
	error: Optional[str] = None
	affected_files: list[str] = field(default_factory=list)


@dataclass
class AgentMessage:
	"""One entry in a session's conversation."""
	role: str  # "system", "user" or "assistant"
	content: str
	timestamp: str = field(default_factory=now_iso)


@dataclass
class ReviewFeedback:
	"""Outcome of a QA code review."""
	approved: bool
	issues: list[str] = field(default_factory=list)
	suggestions: list[str] = field(default_factory=list)
	timestamp: str = field(default_factory=now_iso)


@dataclass
class CommandResult:
	"""Exit code and combined output of a shell command."""
	exit_code: int
	output: str
