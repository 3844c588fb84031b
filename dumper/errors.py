"""
Exception hierarchy shared by the backup pipeline.

Stage-specific errors live next to the stage that raises them
(DumpError, CompressionError, StorageError) and derive from DumperError.
"""


class DumperError(Exception):
    """Base class for all errors raised by the dumper."""
    pass


class ConfigurationError(DumperError):
    """Raised at construction time when the service cannot be configured."""
    pass


class DumpToolNotFoundError(ConfigurationError):
    """Raised when the mongodump executable cannot be found."""
    pass


class StageError(DumperError):
    """
    A pipeline stage failed.

    The original exception is kept as __cause__; `stage` names the stage.
    """

    def __init__(self, stage: str, message: str):
        super().__init__(message)
        self.stage = stage
