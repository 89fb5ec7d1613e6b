"""
Minimal observer registry.

Components own an EventEmitter and call emit() after they have finished
mutating their own state. Handlers are plain callables; a handler that raises
is logged and skipped so observers cannot break the owner.
"""

import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

Handler = Callable[..., Any]


class EventEmitter:
	"""Subscription surface keyed by event name."""

	def __init__(self) -> None:
		self._handlers: dict[str, list[Handler]] = defaultdict(list)

	def on(self, event: str, handler: Handler) -> Callable[[], None]:
		"""
		Subscribe to an event.

		Returns:
			A callable that removes the subscription.
		"""
		self._handlers[event].append(handler)

		def unsubscribe() -> None:
			self.off(event, handler)

		return unsubscribe

	def off(self, event: str, handler: Handler) -> None:
		"""Remove a handler. Unknown handlers are ignored."""
		handlers = self._handlers.get(event)
		if handlers and handler in handlers:
			handlers.remove(handler)

	def emit(self, event: str, *args: Any) -> None:
		"""Call every handler for the event in subscription order."""
		for handler in list(self._handlers.get(event, ())):
			try:
				handler(*args)
			except Exception as e:
				logger.error(f"Handler for '{event}' failed: {e}")
