from __future__ import annotations

from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from doc2sheet.schema import SinkResource

Stage = Literal["normalize", "extract", "sink"]


class PipelineError(RuntimeError):
    """Base class for every expected, terminal pipeline failure."""

    stage: Stage
    client_error: bool = False


# normalize

class NormalizeError(PipelineError):
    stage: Stage = "normalize"


class UnsupportedFormat(NormalizeError):
    client_error = True


class DecodeError(NormalizeError):
    client_error = True


class RasterizationError(NormalizeError):
    pass


# extract

class ExtractError(PipelineError):
    stage: Stage = "extract"


class ExtractionTimeout(ExtractError):
    pass


class SchemaViolation(ExtractError):
    def __init__(self, message: str, *, raw: str | None = None):
        super().__init__(message)
        self.raw = raw


class UpstreamError(ExtractError):
    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


# sink

class SinkError(PipelineError):
    stage: Stage = "sink"


class SinkCreateError(SinkError):
    pass


class SinkWriteError(SinkError):
    """The spreadsheet exists but its data could not be written.

    ``resource`` is the orphaned spreadsheet; it is reported, never deleted.
    """

    def __init__(self, message: str, *, resource: SinkResource):
        super().__init__(message)
        self.resource = resource


class PipelineCancelled(PipelineError):
    def __init__(self, stage: Stage):
        super().__init__("cancelled")
        self.stage = stage


class BatchDeadlineExceeded(PipelineError):
    """``resource`` is the spreadsheet the item had already created, if any."""

    def __init__(
        self, stage: Stage, timeout_s: float, *, resource: SinkResource | None = None
    ):
        super().__init__(f"batch deadline of {timeout_s:g}s exceeded")
        self.stage = stage
        self.resource = resource
