"""Error taxonomy for the auto-correction pipeline."""


class AutoCorrectorError(Exception):
    """Base error for the auto-correction service."""


class ValidationError(AutoCorrectorError):
    """Bad run parameters; raised before any run record is created."""


class ActiveRunExistsError(ValidationError):
    def __init__(self, document_id: int, run_id: int = None):
        message = f"Document {document_id} already has an active auto-correction run"
        if run_id is not None:
            message += f" (run {run_id})"
        super().__init__(message)
        self.document_id = document_id
        self.run_id = run_id


class RunNotFoundError(AutoCorrectorError):
    def __init__(self, run_id: int):
        super().__init__(f"Run {run_id} not found")
        self.run_id = run_id


class RunActiveError(AutoCorrectorError):
    """Operation requires a terminal run (delete, retry)."""

    def __init__(self, run_id: int, status: str):
        super().__init__(f"Run {run_id} is {status}")
        self.run_id = run_id
        self.status = status


class DocumentNotFoundError(AutoCorrectorError):
    def __init__(self, document_id: int):
        super().__init__(f"Document {document_id} not found")
        self.document_id = document_id


class MalformedResponseError(AutoCorrectorError):
    """Model output could not be decoded into the expected structure."""

    def __init__(self, message: str, *, raw: str = ""):
        super().__init__(message)
        self.raw = raw


class ExternalCallError(AutoCorrectorError):
    """A collaborator call (inference, correction) failed or timed out."""

    def __init__(self, message: str, *, service: str = "inference"):
        super().__init__(message)
        self.service = service


class CancellationRequested(AutoCorrectorError):
    """Raised at a phase boundary when the run's cancel flag is set."""
