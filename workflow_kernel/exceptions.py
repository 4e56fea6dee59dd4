"""
Typed Exception Hierarchy for the Workflow Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

The admin surface has to turn every engine failure into a user-facing
message.  Callers catch by type and read structured attributes, never by
parsing message strings:

    try:
        engine.decide(request_id, Decision.APPROVE, actor="ana@example.com")
    except RequestAlreadyResolvedError as e:
        api_response(code=e.code, request=e.request_id, status=e.status)

Every class carries:
  1. a ``code`` class attribute (machine-readable, API-safe)
  2. structured attributes for the values named in its message

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    WorkflowKernelError (base)
    |
    +-- NotFoundError
    |   +-- DefinitionNotFoundError
    |   +-- StepNotFoundError
    |   +-- InstanceNotFoundError
    |   +-- RequestNotFoundError
    |   +-- TriggerNotFoundError
    |
    +-- ConflictError
    |   +-- DuplicateActiveInstanceError
    |   +-- DuplicateDefaultWorkflowError
    |   +-- DuplicateStepOrderError
    |
    +-- InvalidStateError
    |   +-- RequestAlreadyResolvedError
    |   +-- InstanceTerminalError
    |   +-- NotAutoApprovableError
    |   +-- StepLockedError
    |   +-- DefinitionInUseError
    |   +-- ConcurrentModificationError
    |
    +-- ValidationError
    |   +-- InvalidConditionsError
    |   +-- InvalidActionConfigError
    |   +-- UnknownEventTypeError
    |   +-- UnknownActionTypeError
    |
    +-- ImmutabilityViolationError
    |
    +-- ActionError            (dispatcher-internal, never reaches callers
        +-- ActionSkipped       of the approval engine)
        +-- ActionTimeoutError
        +-- ActionFailedError

===============================================================================
HANDLING PATTERNS
===============================================================================

NotFoundError / ConflictError / InvalidStateError / ValidationError are all
local and recoverable: the engine raises them before touching state or rolls
its transaction back, so internal state is never left half-applied.

InvalidStateError is also what a late auto-approval timer receives when a
human decision won the race; the timer handler logs and swallows it.

ActionError subclasses are converted by the dispatcher into a
``DispatchOutcome`` and recorded in the execution log.  They are never
escalated into instance or workflow state.
"""


class WorkflowKernelError(Exception):
    """
    Base exception for all workflow kernel errors.

    All subclasses have a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "WORKFLOW_KERNEL_ERROR"


# Not-found exceptions


class NotFoundError(WorkflowKernelError):
    """Base exception for missing rows."""

    code: str = "NOT_FOUND"


class DefinitionNotFoundError(NotFoundError):
    """Workflow definition does not exist or is not active."""

    code: str = "DEFINITION_NOT_FOUND"

    def __init__(self, definition_id: str, reason: str = "does not exist"):
        self.definition_id = definition_id
        self.reason = reason
        super().__init__(f"Workflow definition {definition_id} {reason}")


class StepNotFoundError(NotFoundError):
    """Workflow step does not exist."""

    code: str = "STEP_NOT_FOUND"

    def __init__(self, step_id: str):
        self.step_id = step_id
        super().__init__(f"Workflow step not found: {step_id}")


class InstanceNotFoundError(NotFoundError):
    """Approval instance does not exist."""

    code: str = "INSTANCE_NOT_FOUND"

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"Approval instance not found: {instance_id}")


class RequestNotFoundError(NotFoundError):
    """Approval request does not exist."""

    code: str = "REQUEST_NOT_FOUND"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Approval request not found: {request_id}")


class TriggerNotFoundError(NotFoundError):
    """Workflow trigger does not exist."""

    code: str = "TRIGGER_NOT_FOUND"

    def __init__(self, trigger_id: str):
        self.trigger_id = trigger_id
        super().__init__(f"Workflow trigger not found: {trigger_id}")


# Conflict exceptions


class ConflictError(WorkflowKernelError):
    """Base exception for uniqueness conflicts."""

    code: str = "CONFLICT"


class DuplicateActiveInstanceError(ConflictError):
    """The entity already has a non-terminal approval instance."""

    code: str = "DUPLICATE_ACTIVE_INSTANCE"

    def __init__(self, entity_type: str, entity_id: int, instance_id: str | None = None):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.instance_id = instance_id
        super().__init__(
            f"{entity_type} {entity_id} already has an active approval "
            f"instance{f' ({instance_id})' if instance_id else ''}"
        )


class DuplicateDefaultWorkflowError(ConflictError):
    """Another active default workflow exists for the entity type."""

    code: str = "DUPLICATE_DEFAULT_WORKFLOW"

    def __init__(self, entity_type: str, existing_definition_id: str):
        self.entity_type = entity_type
        self.existing_definition_id = existing_definition_id
        super().__init__(
            f"Entity type '{entity_type}' already has an active default "
            f"workflow: {existing_definition_id}"
        )


class DuplicateStepOrderError(ConflictError):
    """A step with this order already exists on the definition."""

    code: str = "DUPLICATE_STEP_ORDER"

    def __init__(self, definition_id: str, step_order: int):
        self.definition_id = definition_id
        self.step_order = step_order
        super().__init__(
            f"Workflow definition {definition_id} already has a step "
            f"with order {step_order}"
        )


# Invalid-state exceptions


class InvalidStateError(WorkflowKernelError):
    """Base exception for operations illegal in the current state."""

    code: str = "INVALID_STATE"


class RequestAlreadyResolvedError(InvalidStateError):
    """Decision on a request that is no longer pending."""

    code: str = "REQUEST_ALREADY_RESOLVED"

    def __init__(self, request_id: str, status: str):
        self.request_id = request_id
        self.status = status
        super().__init__(
            f"Approval request {request_id} is already {status}"
        )


class InstanceTerminalError(InvalidStateError):
    """Operation on an instance that already reached a terminal status."""

    code: str = "INSTANCE_TERMINAL"

    def __init__(self, instance_id: str, status: str):
        self.instance_id = instance_id
        self.status = status
        super().__init__(
            f"Approval instance {instance_id} is already {status}"
        )


class NotAutoApprovableError(InvalidStateError):
    """Auto-approval requested for a request without a deadline."""

    code: str = "NOT_AUTO_APPROVABLE"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(
            f"Approval request {request_id} has no auto-approval deadline"
        )


class StepLockedError(InvalidStateError):
    """Step edit would affect a running instance that already reached it."""

    code: str = "STEP_LOCKED"

    def __init__(self, definition_id: str, step_order: int, instance_id: str):
        self.definition_id = definition_id
        self.step_order = step_order
        self.instance_id = instance_id
        super().__init__(
            f"Step {step_order} of workflow {definition_id} is locked by "
            f"running instance {instance_id}"
        )


class DefinitionInUseError(InvalidStateError):
    """Definition cannot be deleted while instances are running."""

    code: str = "DEFINITION_IN_USE"

    def __init__(self, definition_id: str, active_instances: int):
        self.definition_id = definition_id
        self.active_instances = active_instances
        super().__init__(
            f"Workflow definition {definition_id} has {active_instances} "
            "active instance(s)"
        )


class ConcurrentModificationError(InvalidStateError):
    """Optimistic version check failed on an approval instance."""

    code: str = "CONCURRENT_MODIFICATION"

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(
            f"Approval instance {instance_id} was modified by another "
            "transaction"
        )


# Validation exceptions


class ValidationError(WorkflowKernelError):
    """Base exception for malformed input."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class InvalidConditionsError(ValidationError):
    """Trigger conditions are not a valid predicate."""

    code: str = "INVALID_CONDITIONS"

    def __init__(self, reason: str, key: str | None = None):
        self.reason = reason
        self.key = key
        super().__init__(
            f"Invalid trigger conditions{f' at {key!r}' if key else ''}: {reason}",
            field="conditions",
        )


class InvalidActionConfigError(ValidationError):
    """Action configuration is missing required keys or has bad values."""

    code: str = "INVALID_ACTION_CONFIG"

    def __init__(self, action_type: str, reason: str):
        self.action_type = action_type
        self.reason = reason
        super().__init__(
            f"Invalid action_config for {action_type}: {reason}",
            field="action_config",
        )


class UnknownEventTypeError(ValidationError):
    """Event type is not in the catalog."""

    code: str = "UNKNOWN_EVENT_TYPE"

    def __init__(self, event_type: str):
        self.event_type = event_type
        super().__init__(f"Unknown event type: {event_type}", field="event_type")


class UnknownActionTypeError(ValidationError):
    """Action type is not one the dispatcher knows."""

    code: str = "UNKNOWN_ACTION_TYPE"

    def __init__(self, action_type: str):
        self.action_type = action_type
        super().__init__(f"Unknown action type: {action_type}", field="action_type")


# Immutability exceptions


class ImmutabilityViolationError(WorkflowKernelError):
    """
    Attempted to modify or delete an immutable record.

    History entries, execution logs and system events are append-only;
    terminal approval instances and resolved requests are frozen.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Action dispatch exceptions


class ActionError(WorkflowKernelError):
    """Base exception for action handler outcomes."""

    code: str = "ACTION_ERROR"


class ActionSkipped(ActionError):
    """Handler decided there is nothing to do (e.g. no recipient)."""

    code: str = "ACTION_SKIPPED"

    def __init__(self, action_type: str, reason: str):
        self.action_type = action_type
        self.reason = reason
        super().__init__(f"{action_type} skipped: {reason}")


class ActionTimeoutError(ActionError):
    """Handler did not return within its time budget."""

    code: str = "ACTION_TIMEOUT"

    def __init__(self, action_type: str, timeout_seconds: float):
        self.action_type = action_type
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"{action_type} handler timed out after {timeout_seconds}s"
        )


class ActionFailedError(ActionError):
    """Handler reported a failure (e.g. webhook returned a 5xx)."""

    code: str = "ACTION_FAILED"

    def __init__(self, action_type: str, reason: str):
        self.action_type = action_type
        self.reason = reason
        super().__init__(f"{action_type} failed: {reason}")
