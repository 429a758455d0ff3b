"""Typed failures raised by the interaction managers.

The transport layer maps these to HTTP error responses. Rate
limiting is not among them: a blocked chat send is a ``False`` result
from ``ChatManager.check_rate_limit``, not an exception.
"""
from typing import Optional, Sequence


class InteractionError(Exception):
    """Base class for every failure the managers surface to callers."""


class NotFoundError(InteractionError):
    def __init__(self, kind: str, entity_id: str):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} {entity_id} does not exist")


class InvalidStateError(InteractionError):
    """The action is not allowed in the entity's current state, e.g. voting on an inactive poll."""


class DuplicateSubmissionError(InteractionError):
    def __init__(self, kind: str, entity_id: str, participant_id: str):
        self.kind = kind
        self.entity_id = entity_id
        self.participant_id = participant_id
        super().__init__(f"Participant {participant_id} already submitted to {kind} {entity_id}")


class PartialWriteFailure(InteractionError):
    """One or more commands of a batched write failed."""

    def __init__(self, operation: str, failed: Optional[Sequence[int]] = None, errors: Optional[Sequence[Exception]] = None):
        self.operation = operation
        self.failed = list(failed or [])
        self.errors = list(errors or [])
        detail = f" (failed commands: {self.failed})" if self.failed else ""
        super().__init__(f"{operation}: pipeline execution failed{detail}")


class RollbackFailure(InteractionError):
    """A compensating write failed; the store may now hold orphaned state.

    Never returned to callers. It is logged at CRITICAL so operators can
    clean up by hand.
    """

    def __init__(self, operation: str, step: str, cause: Exception):
        self.operation = operation
        self.step = step
        self.cause = cause
        super().__init__(f"{operation}: rollback step '{step}' failed: {cause}")
