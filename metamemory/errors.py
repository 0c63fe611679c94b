"""Exceptions raised by the metamemory engine."""


class MetamemoryError(Exception):
    """Base class for all metamemory errors."""


class MissingMessageIdError(MetamemoryError, ValueError):
    """
    Exception raised when a conversation entry has no stable id.

    Every map in the store is keyed by message id, so a batch containing an
    untrackable entry is rejected as a whole.
    """

    def __init__(self, index: int | None = None, entry_type: str | None = None):
        self.index = index
        self.entry_type = entry_type
        location = f" at position {index}" if index is not None else ""
        kind = f" ({entry_type})" if entry_type else ""
        super().__init__(f"Conversation entry{location}{kind} has no id")


class InvariantViolationError(MetamemoryError):
    """
    Exception raised when a store operation would leave inconsistent state,
    e.g. a tagged message pointing at a topic missing from the catalog.
    """

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class CompactionRefusedError(MetamemoryError):
    """Exception raised when a compaction result no longer matches the thread it was built for."""

    def __init__(self, topic: str, reason: str):
        self.topic = topic
        self.reason = reason
        super().__init__(f"Compaction of '{topic}' refused: {reason}")


class MetamemoryTimeoutError(MetamemoryError, TimeoutError):
    """
    Exception raised when a host insists on background processing finishing
    within a deadline.
    """

    def __init__(self, timeout_seconds: float | None = None):
        self.timeout_seconds = timeout_seconds
        message = "Timed out waiting for metamemory processing"
        if timeout_seconds is not None:
            message += f" after {timeout_seconds}s"
        super().__init__(message)
