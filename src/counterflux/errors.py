"""Exception hierarchy for counterflux."""


class CounterfluxError(Exception):
	"""Base exception for counterflux errors."""
	pass


class WorkflowStateError(CounterfluxError):
	"""Raised when an operation is not valid in the current status."""
	pass


class SessionAbortedError(CounterfluxError):
	"""Raised when a message is sent to an aborted session."""
	pass


class BackendError(CounterfluxError):
	"""Raised when the agent backend fails to deliver or answer."""
	pass


class CommandNotFoundError(CounterfluxError):
	"""Raised when a shell command cannot be executed at all."""
	pass
