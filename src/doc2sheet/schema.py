from pydantic import BaseModel, ConfigDict, Field, StrictStr
from typing import List, Optional

PDF_MEDIA_TYPE = "application/pdf"


class InputDocument(BaseModel):
    model_config = ConfigDict(frozen=True)

    data: bytes = Field(repr=False)
    media_type: str
    display_name: Optional[str] = None

    @property
    def is_pdf(self) -> bool:
        return self.media_type == PDF_MEDIA_TYPE

    @property
    def is_image(self) -> bool:
        return self.media_type.startswith("image/")


class CanonicalImage(BaseModel):
    model_config = ConfigDict(frozen=True)

    data: bytes = Field(repr=False)
    media_type: str
    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)
    source_media_type: str


class ExtractionResult(BaseModel):
    """The only shape accepted back from the extraction service.

    Cells must already be strings; numbers or nulls are rejected rather than
    coerced. Rows may differ in length.
    """

    model_config = ConfigDict(extra="ignore")

    grid: List[List[StrictStr]]
    description: StrictStr

    @property
    def has_description(self) -> bool:
        return bool(self.description.strip())


class SinkResource(BaseModel):
    model_config = ConfigDict(frozen=True)

    spreadsheet_id: str
    title: str
    url: str


# JSON schema declared to the extraction service.
EXTRACTION_JSON_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "grid": {
            "type": "array",
            "description": "Table rows in reading order; each row is a list of cell strings.",
            "items": {"type": "array", "items": {"type": "string"}},
        },
        "description": {
            "type": "string",
            "description": "One or two sentences describing what the table contains.",
        },
    },
    "required": ["grid", "description"],
    "additionalProperties": False,
}
