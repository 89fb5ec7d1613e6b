"""
Completion markers in agent replies.

The sequential instructions ask each role to finish with a marker line:

	SPEC_CREATED: specs/SPEC.md
	TESTS_WRITTEN: tests/test_a.py, tests/test_b.py
	IMPLEMENTATION_DONE
	REVIEW_APPROVED
	REVIEW_REJECTED: missing null check; no test for empty input

parse_signal turns the last marker in a reply into a WorkflowEvent.
"""

import re
from typing import Optional

from .models import ReviewFeedback
from .runners import split_list
from .sequential import EventType, WorkflowEvent

_MARKER = re.compile(
	r"^\W*(SPEC_CREATED|TESTS_WRITTEN|IMPLEMENTATION_DONE|REVIEW_APPROVED|REVIEW_REJECTED)\b\s*:?\s*(.*)$",
	re.MULTILINE,
)


def parse_signal(reply: str) -> Optional[WorkflowEvent]:
	"""
	Find the completion marker in a reply.

	Returns:
		The event for the last marker, or None when the reply has none
	"""
	matches = list(_MARKER.finditer(reply))
	if not matches:
		return None

	marker, payload = matches[-1].group(1), matches[-1].group(2).strip("`\"'* \t")
	event_type = EventType(marker)

	if event_type == EventType.SPEC_CREATED:
		return WorkflowEvent(event_type, spec_path=payload or None)
	if event_type == EventType.TESTS_WRITTEN:
		return WorkflowEvent(event_type, test_files=split_list(payload))
	if event_type == EventType.REVIEW_APPROVED:
		return WorkflowEvent(event_type, feedback=ReviewFeedback(approved=True))
	if event_type == EventType.REVIEW_REJECTED:
		return WorkflowEvent(
			event_type,
			feedback=ReviewFeedback(approved=False, issues=split_list(payload)),
		)
	return WorkflowEvent(event_type)
