"""Engine exceptions."""


class EngineError(Exception):
    """Base class for sequencing engine errors."""


class WorkflowNotFoundError(EngineError):
    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow {workflow_id} not found")
        self.workflow_id = workflow_id


class EnrollmentNotFoundError(EngineError):
    def __init__(self, enrollment_id: str):
        super().__init__(f"Enrollment {enrollment_id} not found")
        self.enrollment_id = enrollment_id


class InvalidTransitionError(EngineError):
    """Raised for external status changes the state machine does not allow."""


class LeaseLostError(EngineError):
    """An advancement pass lost its enrollment: the lease was taken over, or it was paused or stopped from outside."""
