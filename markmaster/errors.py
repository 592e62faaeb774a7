from pathlib import Path


class ConfigError(ValueError):
    pass


class ConsolidationError(RuntimeError):
    """Aborts a whole consolidation run."""


class StructuralError(ConsolidationError):
    pass


class BackupError(ConsolidationError):
    pass


class MergeError(ConsolidationError):
    pass


class DuplicateRunError(ConsolidationError):
    pass


class ExtractionError(Exception):
    """Failure to turn one source file into a record.

    Contained within that file's outcome; never aborts sibling files.
    """

    retryable = False
    classification = "validation"

    def __init__(self, path: Path | str, stage: str, message: str, cause: BaseException | None = None) -> None:
        self.path = str(path)
        self.stage = stage
        self.message = message
        self.cause = cause
        super().__init__(self._render())

    def _render(self) -> str:
        text = f"{self.stage} failed for {self.path}: {self.message}"
        if self.cause is not None:
            text += f" (caused by: {self.cause})"
        return text


class SourceIOError(ExtractionError):
    retryable = True
    classification = "io"


class DataValidationError(ExtractionError):
    def __init__(self, path: Path | str, *, field: str, value: str, reason: str, message: str) -> None:
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(path, "validation", f"{field}={value!r}: {message}")
