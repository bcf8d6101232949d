"""Error taxonomy for webhook event processing.

Only ``MalformedEvent`` and ``RetriesExhausted`` ever need an operator; both
end up in the dead letter store. ``DuplicateEvent`` and
``EnrollmentNotFound`` describe normal outcomes and are never surfaced to the
webhook caller as failures.
"""


class EventProcessingError(Exception):
    """Base class for every error raised by the ingestion pipeline."""


class MalformedEvent(EventProcessingError):
    """A provider payload could not be translated into a canonical event."""

    def __init__(self, provider: str, reason: str):
        self.provider = provider
        self.reason = reason
        super().__init__(f"Malformed {provider} event: {reason}")


class DuplicateEvent(EventProcessingError):
    """The (provider, provider_event_id) pair was already applied."""

    def __init__(self, provider: str, provider_event_id: str):
        self.provider = provider
        self.provider_event_id = provider_event_id
        super().__init__(f"Event {provider}/{provider_event_id} already processed")


class EnrollmentNotFound(EventProcessingError):
    """No enrollment matches the event's enrollment key (yet)."""

    def __init__(self, enrollment_key: str):
        self.enrollment_key = enrollment_key
        super().__init__(f"No enrollment found for key {enrollment_key!r}")


class RetriesExhausted(EventProcessingError):
    """An orphaned event used up its retry budget."""

    def __init__(self, provider: str, provider_event_id: str, attempts: int, last_error: str | None):
        self.provider = provider
        self.provider_event_id = provider_event_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"retries exhausted after {attempts} attempts"
            + (f": {last_error}" if last_error else "")
        )


class CounterUpdateConflict(EventProcessingError):
    """The reconciliation transaction failed for infrastructure reasons.

    The event is retried through the orphaned queue, never dropped.
    """

    def __init__(self, provider: str, provider_event_id: str, cause: Exception):
        self.provider = provider
        self.provider_event_id = provider_event_id
        self.cause = cause
        super().__init__(
            f"Transaction for {provider}/{provider_event_id} failed: {type(cause).__name__}: {cause}"
        )


class DeadLetterNotFound(EventProcessingError):
    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"Dead letter entry {entry_id} not found")


class InvalidReplayState(EventProcessingError):
    def __init__(self, entry_id: str, status: str, action: str):
        self.entry_id = entry_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} dead letter entry {entry_id}: status is {status}")
