from pydantic import BaseModel, Field
from typing import Annotated, List, Literal, Optional, Union

from doc2sheet.errors import Stage


class PipelineSuccess(BaseModel):
    status: Literal["ok"] = "ok"
    sheet_url: str
    message: str
    spreadsheet_id: str
    title: str


class PipelineFailure(BaseModel):
    status: Literal["failed"] = "failed"
    stage: Stage
    error_type: str
    reason: str
    client_error: bool = False

    # set when a spreadsheet was created before the failure (orphan)
    sheet_url: Optional[str] = None
    failure_artifact: Optional[str] = None


PipelineResult = Annotated[
    Union[PipelineSuccess, PipelineFailure], Field(discriminator="status")
]


class BatchResult(BaseModel):
    results: List[PipelineResult]

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.status == "ok")

    @property
    def failed(self) -> int:
        return len(self.results) - self.succeeded

    @property
    def sheet_urls(self) -> List[str]:
        return [r.sheet_url for r in self.results if r.status == "ok"]

    @property
    def first_sheet_url(self) -> Optional[str]:
        urls = self.sheet_urls
        return urls[0] if urls else None
