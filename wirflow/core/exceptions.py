"""
Engine-wide exception hierarchy.

Every service and gateway raises these types; blueprints register one
handler per type and get consistent HTTP status codes everywhere.

Retry semantics:
    ConflictError, TransientIOError  -> retryable (re-read, then retry)
    ValidationError, PermissionDenied -> caller must change the input
    InvariantViolation               -> caller misuse; logged and surfaced

Usage:
    from wirflow.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="WirRecord", resource_id=wir_id)
    raise ValidationError("Record is not ready", missing=[...])
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given project.

    Args:
        resource: Human-readable entity name (e.g. "WirRecord", "WirItem").
        resource_id: The PK that was looked up.
        project_id: Optional — the scope that was enforced.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        project_id: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.project_id = project_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if project_id is not None:
            msg += f" (project={project_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when a transition's precondition is unmet.

    Never partially applied: the record is unchanged when this is raised.
    Also used verbatim for backing-store validation failures.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown.
        missing: Complete readiness list ({item_id, reason} dicts) when the
                 failure comes from the validation gate.
    """

    def __init__(
        self,
        message: str,
        details: dict | None = None,
        missing: list[dict] | None = None,
    ) -> None:
        self.details = details or {}
        self.missing = missing or []
        super().__init__(message)


class ConflictError(Exception):
    """Raised when the backing store rejects a write made against a stale row.

    Retryable: the caller must re-read the record and retry the action.

    Args:
        resource: Entity name.
        resource_id: PK of the stale row.
        expected: Concurrency token the caller held (if known).
        actual: Token currently stored (if known).
    """

    retryable = True

    def __init__(
        self,
        resource: str,
        resource_id: str | None = None,
        expected: int | None = None,
        actual: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.expected = expected
        self.actual = actual
        msg = f"{resource} id={resource_id} was modified concurrently; re-read and retry"
        if expected is not None:
            msg += f" (expected row_version={expected}, found={actual})"
        super().__init__(msg)


class TransientIOError(Exception):
    """Raised on network / storage failure during persistence or upload.

    Retryable: staged evidence is kept, committed state is untouched.

    Args:
        message: What failed.
        filename: The single file that failed, for upload batches.
    """

    retryable = True

    def __init__(self, message: str, filename: str | None = None) -> None:
        self.filename = filename
        super().__init__(message)


class InvariantViolation(Exception):
    """Raised on caller misuse (e.g. Finalize on a non-Recommended record).

    Args:
        action: Engine action that was attempted.
        current_status: Record status at the time of the attempt.
        reason: Optional explanation.
    """

    def __init__(self, action: str, current_status: str | None = None, reason: str | None = None) -> None:
        self.action = action
        self.current_status = current_status
        self.reason = reason
        msg = f"Cannot '{action}'"
        if current_status is not None:
            msg += f" (status={current_status})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class PermissionDenied(Exception):
    """Raised when the actor lacks authority for an action."""

    def __init__(self, actor_id: str | None, action: str, reason: str | None = None) -> None:
        self.actor_id = actor_id
        self.action = action
        self.reason = reason
        msg = f"Actor {actor_id} is not allowed to '{action}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
