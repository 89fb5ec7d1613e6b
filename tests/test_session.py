"""
Tests for agent sessions and their decision policies.
"""

from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import pytest

from counterflux.context import WorkflowContextManager
from counterflux.errors import BackendError, SessionAbortedError
from counterflux.models import (
	Action,
	ActionType,
	AgentRole,
	ImplementationStatus,
	SessionStatus,
	SpecStatus,
	TestResult,
	ToolResult,
	create_workflow_context,
)
from counterflux.session import AgentSession, SessionEvent, decide_dev_action, decide_qa_action

from .helpers import FakeBackend


def result(passed: bool) -> TestResult:
	return TestResult(
		passed=passed,
		total=1,
		passed_count=int(passed),
		failed_count=int(not passed),
		output="",
		triggered_by=AgentRole.QA,
	)


@pytest.fixture
def base_context():
	return create_workflow_context("Build a todo API", "/work/todo")


class TestQAPolicy:
	"""QA: spec first, tests after freeze, then run tests once code exists."""

	def test_writes_spec_when_missing(self, base_context):
		action = decide_qa_action(base_context)

		assert action.type == ActionType.WRITE_SPEC
		assert action.target_file == "/work/todo/specs/SPEC.md"

	def test_waits_while_spec_is_draft(self, base_context):
		ctx = replace(base_context, spec_content="# Spec")
		assert decide_qa_action(ctx) is None

	def test_writes_tests_after_freeze(self, base_context):
		ctx = replace(base_context, spec_content="# Spec", spec_status=SpecStatus.FROZEN)
		assert decide_qa_action(ctx).type == ActionType.WRITE_TEST

	def test_no_tests_written_for_locked_spec(self, base_context):
		ctx = replace(base_context, spec_content="# Spec", spec_status=SpecStatus.LOCKED)
		assert decide_qa_action(ctx) is None

	def test_runs_tests_once_code_exists(self, base_context):
		ctx = replace(
			base_context,
			spec_content="# Spec",
			spec_status=SpecStatus.FROZEN,
			implementation_status=ImplementationStatus(
				files_created=("todo/api.py",),
				tests_created=("tests/test_api.py",),
			),
		)
		assert decide_qa_action(ctx).type == ActionType.RUN_TEST

	def test_idle_with_tests_but_no_code(self, base_context):
		ctx = replace(
			base_context,
			spec_content="# Spec",
			spec_status=SpecStatus.FROZEN,
			implementation_status=ImplementationStatus(tests_created=("tests/test_api.py",)),
		)
		assert decide_qa_action(ctx) is None


class TestDevPolicy:
	"""Dev: wait for a frozen spec, implement until the last run passed."""

	def test_waits_without_spec(self, base_context):
		assert decide_dev_action(base_context) is None

	def test_waits_while_draft(self, base_context):
		ctx = replace(base_context, spec_content="# Spec")
		assert decide_dev_action(ctx) is None

	@pytest.mark.parametrize("status", [SpecStatus.FROZEN, SpecStatus.LOCKED])
	def test_writes_code_without_test_results(self, base_context, status):
		ctx = replace(base_context, spec_content="# Spec", spec_status=status)
		assert decide_dev_action(ctx).type == ActionType.WRITE_CODE

	def test_writes_code_after_failed_run(self, base_context):
		ctx = replace(
			base_context,
			spec_content="# Spec",
			spec_status=SpecStatus.FROZEN,
			test_results=(result(True), result(False)),
		)
		assert decide_dev_action(ctx).type == ActionType.WRITE_CODE

	def test_idle_after_passing_run(self, base_context):
		ctx = replace(
			base_context,
			spec_content="# Spec",
			spec_status=SpecStatus.FROZEN,
			test_results=(result(False), result(True)),
		)
		assert decide_dev_action(ctx) is None


class TestSessionActions:
	"""Tests for AgentSession.execute_tool and decide_next_action."""

	@pytest.fixture
	def manager(self):
		return WorkflowContextManager("Build a todo API", "/work/todo")

	@pytest.fixture
	def executor(self):
		return AsyncMock(return_value=ToolResult(success=True, output="done", affected_files=["a.py"]))

	@pytest.fixture
	def session(self, manager, executor):
		return AgentSession(AgentRole.QA, manager, executor)

	def test_starts_with_system_message(self, session):
		messages = session.messages
		assert len(messages) == 1
		assert messages[0].role == "system"
		assert "QA" in messages[0].content
		assert session.status == SessionStatus.IDLE

	def test_decides_only_when_idle(self, session, manager):
		ctx = manager.get_context()
		assert session.decide_next_action(ctx).type == ActionType.WRITE_SPEC

		session._status = SessionStatus.EXECUTING
		assert session.decide_next_action(ctx) is None

	def test_decides_nothing_when_aborted(self, session, manager):
		session.abort()
		assert session.decide_next_action(manager.get_context()) is None

	@pytest.mark.asyncio
	async def test_execute_tool_passes_snapshot(self, session, manager, executor):
		action = Action(type=ActionType.WRITE_SPEC, description="spec")

		outcome = await session.execute_tool(action)

		assert outcome.success
		executor.assert_awaited_once_with(AgentRole.QA, action, manager.get_context())
		assert session.status == SessionStatus.IDLE

	@pytest.mark.asyncio
	async def test_execute_tool_status_and_events(self, session):
		statuses = []
		completed = MagicMock()
		session.on(SessionEvent.STATUS_CHANGED, statuses.append)
		session.on(SessionEvent.ACTION_COMPLETED, completed)
		action = Action(type=ActionType.RUN_TEST, description="run")

		outcome = await session.execute_tool(action)

		assert statuses == [SessionStatus.EXECUTING, SessionStatus.IDLE]
		completed.assert_called_once_with(action, outcome)

	@pytest.mark.asyncio
	async def test_failed_result_still_completes(self, manager):
		failed = ToolResult(success=False, output="", error="exit 1")
		session = AgentSession(AgentRole.DEV, manager, AsyncMock(return_value=failed))
		completed = MagicMock()
		session.on(SessionEvent.ACTION_COMPLETED, completed)

		outcome = await session.execute_tool(Action(type=ActionType.WRITE_CODE, description="code"))

		assert outcome is failed
		completed.assert_called_once()
		assert session.status == SessionStatus.IDLE

	@pytest.mark.asyncio
	async def test_aborted_session_returns_failure(self, session, executor):
		session.abort()

		outcome = await session.execute_tool(Action(type=ActionType.WRITE_SPEC, description="spec"))

		assert outcome.success is False
		assert outcome.error == "Session aborted"
		executor.assert_not_awaited()

	@pytest.mark.asyncio
	async def test_transport_fault_sets_error(self, manager):
		session = AgentSession(AgentRole.DEV, manager, AsyncMock(side_effect=BackendError("down")))
		errors = MagicMock()
		session.on(SessionEvent.ERROR, errors)

		with pytest.raises(BackendError):
			await session.execute_tool(Action(type=ActionType.WRITE_CODE, description="code"))

		assert session.status == SessionStatus.ERROR
		errors.assert_called_once()
		assert session.decide_next_action(manager.get_context()) is None


class TestSessionMessages:
	"""Tests for AgentSession.send_message."""

	@pytest.fixture
	def manager(self):
		return WorkflowContextManager("Build a todo API", "/work/todo")

	@pytest.mark.asyncio
	async def test_streams_reply(self, manager):
		backend = FakeBackend(chunks=["Hel", "lo"])
		session = AgentSession(AgentRole.DEV, manager, AsyncMock(), backend)
		streamed = []
		session.on(SessionEvent.MESSAGE_STREAMING, lambda content, done: streamed.append((content, done)))

		await session.send_message("hi")

		assert [m.role for m in session.messages] == ["system", "user", "assistant"]
		assert session.messages[-1].content == "Hello"
		assert streamed == [("Hel", False), ("Hello", False), ("Hello", True)]
		assert session.status == SessionStatus.IDLE

	@pytest.mark.asyncio
	async def test_without_backend_records_message(self, manager):
		session = AgentSession(AgentRole.QA, manager, AsyncMock())

		await session.send_message("note")

		assert session.messages[-1].content == "note"
		assert session.status == SessionStatus.IDLE

	@pytest.mark.asyncio
	async def test_aborted_session_rejects_messages(self, manager):
		session = AgentSession(AgentRole.QA, manager, AsyncMock(), FakeBackend())
		session.abort()

		with pytest.raises(SessionAbortedError):
			await session.send_message("hi")

	@pytest.mark.asyncio
	async def test_stream_failure_sets_error(self, manager):
		backend = FakeBackend()
		backend.fail_with = BackendError("stream broke")
		session = AgentSession(AgentRole.QA, manager, AsyncMock(), backend)

		with pytest.raises(BackendError):
			await session.send_message("hi")

		assert session.status == SessionStatus.ERROR

	@pytest.mark.asyncio
	async def test_reset_clears_abort_and_history(self, manager):
		session = AgentSession(AgentRole.QA, manager, AsyncMock(), FakeBackend())
		await session.send_message("hi")
		session.abort()

		session.reset()

		assert not session.aborted
		assert session.status == SessionStatus.IDLE
		assert [m.role for m in session.messages] == ["system"]
