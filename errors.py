"""Exception taxonomy for the pipeline. HTTP status codes live on the class."""

from typing import Optional


class PipelineError(Exception):
    status_code = 500
    code = "PIPELINE_ERROR"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class InvalidPayloadError(PipelineError):
    status_code = 400
    code = "INVALID_PAYLOAD"


class SignupLimitError(PipelineError):
    status_code = 403
    code = "IP_LIMIT_EXCEEDED"


class RunInProgressError(PipelineError):
    status_code = 409
    code = "RUN_IN_PROGRESS"

    def __init__(self, message: str = "", workflow_id: Optional[str] = None):
        super().__init__(message)
        self.workflow_id = workflow_id


class DailyLimitError(PipelineError):
    status_code = 429
    code = "DAILY_LIMIT_EXCEEDED"


class LLMError(PipelineError):
    """Primary model failure. Fatal to the run."""
    code = "LLM_ERROR"


class WorkflowTimeoutError(PipelineError):
    code = "WORKFLOW_TIMEOUT"


class StageError(PipelineError):
    """Raised by the orchestrator when a stage blows up; keeps the stage name and cause."""
    code = "STAGE_FAILED"

    def __init__(self, stage: str, cause: BaseException):
        super().__init__(f"stage '{stage}' failed: {cause}")
        self.stage = stage
        self.cause = cause
