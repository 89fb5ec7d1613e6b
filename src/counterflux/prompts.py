"""
Instruction text sent to the QA and Dev roles.

Each builder returns a markdown instruction. The sequential instructions end
with the completion marker the agent must reply with; signals.parse_signal
understands the same markers.
"""

from typing import Optional

from .models import Action, ActionType, AgentRole, ReviewFeedback, TestResult

QA_SYSTEM_PROMPT = """You are the QA Agent in an adversarial development workflow.
Your responsibilities:
1. Generate clear, testable specifications (SPEC.md)
2. Write comprehensive test cases BEFORE implementation
3. Run tests and report results
4. Review implementations for quality and correctness
5. Challenge the Developer agent to maintain high standards

Focus on quality assurance, testing, and ensuring specifications are met."""

DEV_SYSTEM_PROMPT = """You are the Developer Agent in an adversarial development workflow.
Your responsibilities:
1. Implement features according to the frozen SPEC.md
2. Write clean, maintainable code
3. Make tests pass (written by QA)
4. Refactor and improve code quality
5. Respond to QA feedback and code review comments

Focus on implementation, code quality, and making all tests pass."""


def system_prompt(role: AgentRole) -> str:
	return QA_SYSTEM_PROMPT if role == AgentRole.QA else DEV_SYSTEM_PROMPT


# ==================== Sequential entry instructions ====================

def spec_creation_instruction(original_prompt: str) -> str:
	return "\n".join([
		"## Task: Create Specification Document",
		"",
		"You are the QA Agent. Create a comprehensive specification document for the following user request:",
		"",
		"**User Request:**",
		original_prompt,
		"",
		"**Instructions:**",
		"1. Analyze the request carefully",
		"2. Create a file called `SPEC.md` under `specs/` in the workspace",
		"3. The spec should include:",
		"   - Overview of the feature/task",
		"   - Detailed requirements (functional and non-functional)",
		"   - Edge cases to consider",
		"   - Acceptance criteria",
		"   - Any assumptions made",
		"",
		"**IMPORTANT:** Do NOT write any code or tests yet. Focus only on the specification.",
		"",
		'When you have created the spec file, respond with: "SPEC_CREATED: <path to SPEC.md>"',
	])


def test_writing_instruction(
	original_prompt: str,
	spec_content: Optional[str],
	review: Optional[ReviewFeedback] = None,
) -> str:
	parts = [
		"## Task: Write Failing Tests",
		"",
		"You are the QA Agent. Write comprehensive failing tests based on the specification.",
		"",
		"**Specification:**",
		spec_content or "No spec file found. Base tests on the original request.",
		"",
		"**Original Request:**",
		original_prompt,
		"",
	]
	if review and not review.approved and review.issues:
		parts.extend([
			"**Issues From Code Review:**",
			*[f"- {issue}" for issue in review.issues],
			"",
			"Add tests that expose these issues.",
			"",
		])
	parts.extend([
		"**Instructions:**",
		"1. Create test files in the project's test directory",
		"2. Cover all requirements in the spec, edge cases and error handling",
		"3. The tests must fail until the implementation exists",
		"4. Use the existing test framework patterns in the codebase",
		"",
		"**IMPORTANT:** Do NOT write implementation code. Only write tests.",
		"",
		'When you have written the tests, respond with: "TESTS_WRITTEN: <comma-separated list of test file paths>"',
	])
	return "\n".join(parts)


def implementing_instruction(
	spec_content: Optional[str],
	test_files: tuple[str, ...] | list[str],
	last_result: Optional[TestResult] = None,
) -> str:
	parts = [
		"## Task: Implement Code to Pass Tests",
		"",
		"You are the Developer. Implement the code that makes the failing tests pass.",
		"",
		"**Specification:**",
		spec_content or "No spec file found. Base implementation on the test expectations.",
		"",
		"**Test Files:**",
		"\n".join(test_files) or "Check the test directories for failing tests.",
		"",
	]
	if last_result is not None:
		parts.extend([
			"**Last Test Result:**",
			last_result.summary(),
			"",
		])
	parts.extend([
		"**Instructions:**",
		"1. Read and understand the failing tests",
		"2. Implement the minimum code necessary to make tests pass",
		"3. Follow existing code patterns and conventions in the codebase",
		"4. Do NOT modify the test files",
		"",
		"**IMPORTANT:** If you believe a test is broken, explain why instead of editing it.",
		"",
		'When implementation is complete, respond with: "IMPLEMENTATION_DONE"',
	])
	return "\n".join(parts)


def code_review_instruction(spec_content: Optional[str]) -> str:
	return "\n".join([
		"## Task: Review Implementation",
		"",
		"You are the QA Agent. Review the implementation and ensure it meets the specification.",
		"",
		"**Specification:**",
		spec_content or "No spec file found.",
		"",
		"**Test Results:**",
		"All tests are passing!",
		"",
		"**Instructions:**",
		"1. Review the implementation code",
		"2. Check that it correctly implements the specification",
		"3. Look for missing edge cases, potential bugs, code quality issues and untested scenarios",
		"",
		'If the implementation is satisfactory respond with: "REVIEW_APPROVED"',
		'If you find issues respond with: "REVIEW_REJECTED: <semicolon-separated list of issues>"',
	])


PAUSED_NOTICE = (
	"Maximum iterations reached. Continue implementing, simplify the task, or abort?"
)


# ==================== Parallel mode messages ====================

def parallel_qa_kickoff(prompt: str) -> str:
	return (
		f"User Request: {prompt}\n\n"
		"Analyze this request and create a detailed SPEC.md document with clear "
		"acceptance criteria and test scenarios."
	)


def parallel_dev_kickoff(prompt: str) -> str:
	return (
		f'A new task has been started: "{prompt}"\n\n'
		"Wait for the QA Agent to create and freeze the SPEC.md document before "
		"beginning implementation."
	)


QA_SPEC_FROZEN_MESSAGE = (
	"The SPEC has been frozen. You can now write test cases based on the specification."
)
DEV_SPEC_FROZEN_MESSAGE = (
	"The SPEC has been frozen. You can now begin implementation. Make sure all tests pass."
)


def action_instruction(action: Action, spec_content: Optional[str], original_prompt: str) -> str:
	"""Instruction for one parallel-mode action."""
	header = f"## Action: {action.type.value}\n\n{action.description}\n"
	if action.type == ActionType.WRITE_SPEC:
		body = (
			f"**User Request:**\n{original_prompt}\n\n"
			f"Write the specification to `{action.target_file}`. "
			"Reply with the full spec text."
		)
	elif action.type == ActionType.WRITE_TEST:
		body = (
			f"**Specification:**\n{spec_content or ''}\n\n"
			"Write failing tests for this spec. Do not write implementation code. "
			"List every test file you created on a line starting with `FILES:` (comma-separated)."
		)
	elif action.type == ActionType.WRITE_CODE:
		body = (
			f"**Specification:**\n{spec_content or ''}\n\n"
			"Implement code so the QA tests pass. Do not modify test files. "
			"List every file you created or changed on a line starting with `FILES:` (comma-separated)."
		)
	else:
		body = action.content or ""
	return header + "\n" + body
