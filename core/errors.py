"""Exceptions raised across the analysis pipeline."""


class PipelineError(Exception):
    """Base class for pipeline failures."""


class SourceOpenError(PipelineError):
    """A video, image or image sequence could not be opened.

    Recoverable: the input is skipped and the user notified.
    """

    def __init__(self, path: str, reason: str = ""):
        self.path = path
        self.reason = reason
        message = f"Could not open {path}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class StageError(PipelineError):
    """Unexpected fault inside detection, analysis or recording.

    Fatal to the session that raised it.
    """

    def __init__(self, stage: str, cause: BaseException):
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage} stage failed: {cause}")


class RecorderError(PipelineError):
    """Recorder used out of order, after it was finished, or unable to write its outputs."""
