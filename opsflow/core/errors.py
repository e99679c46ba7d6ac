"""Error taxonomy for the workflow engine.

Validation and state errors carry enough detail to render a user-facing
message. Corruption and persistence errors are logged where they are raised
and surfaced to HTTP callers as opaque failures.
"""

from typing import Optional


class WorkflowError(Exception):
    """Base class for every error raised by the workflow engine."""

    status_code = 500
    retryable = False

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class NotFoundError(WorkflowError):
    status_code = 404

    def __init__(self, entity: str, entity_id: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class ValidationError(WorkflowError, ValueError):
    """Malformed template or malformed request."""

    status_code = 400


class InvalidStateError(WorkflowError):
    """Operation attempted against an instance whose status forbids it."""

    status_code = 409

    def __init__(
        self,
        message: str,
        *,
        current_status: str,
        expected_status: Optional[str] = None,
    ) -> None:
        self.current_status = current_status
        self.expected_status = expected_status
        super().__init__(message)


class TemplateInUseError(WorkflowError):
    status_code = 409

    def __init__(self, template_id: str, open_instances: int) -> None:
        self.template_id = template_id
        self.open_instances = open_instances
        super().__init__(
            f"Workflow template {template_id} is referenced by {open_instances} open "
            "instance(s); deactivate it instead"
        )


class ConcurrentModificationError(WorkflowError):
    """Another writer changed the instance between read and write. Safe to retry."""

    status_code = 409
    retryable = True

    def __init__(self, instance_id: str, expected_version: Optional[int] = None) -> None:
        self.instance_id = instance_id
        self.expected_version = expected_version
        super().__init__(f"Workflow instance {instance_id} was modified concurrently")


class CorruptInstanceError(WorkflowError):
    """Internal invariant violated; always a bug."""

    status_code = 500

    def __init__(self, instance_id: str, detail: str) -> None:
        self.instance_id = instance_id
        self.detail = detail
        super().__init__(f"Workflow instance {instance_id} is corrupt: {detail}")


class PersistenceError(WorkflowError):
    status_code = 503
    retryable = True
