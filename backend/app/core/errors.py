"""Pipeline error taxonomy.

- malformed input: never raised, counted and logged by each stage
- downstream I/O failure: DispatchError / TimeseriesWriteError / ArchiveWriteError,
  raised from the invocation so the stream runtime redelivers
- configuration failure: ConfigError, fatal at startup or first use
"""
from __future__ import annotations


class PipelineError(Exception):
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class ConfigError(PipelineError):
    code = "CONFIG_ERROR"


class DispatchError(PipelineError):
    code = "DISPATCH_ERROR"

    def __init__(self, message: str, *, total: int, failed: int):
        super().__init__(message, details={"total": total, "failed": failed})
        self.total = total
        self.failed = failed


class TimeseriesWriteError(PipelineError):
    code = "DB_ERROR"

    def __init__(self, message: str, *, inserted: int, failed: int):
        super().__init__(message, details={"inserted": inserted, "failed": failed})
        self.inserted = inserted
        self.failed = failed


class ArchiveWriteError(PipelineError):
    code = "ARCHIVE_ERROR"

    def __init__(self, message: str, *, failed_partitions: list[str]):
        super().__init__(message, details={"failed_partitions": failed_partitions})
        self.failed_partitions = failed_partitions
