from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from errors import UpstreamFormatError


# =========================
#   Inbound
# =========================
class SubjectRecord(BaseModel):
    """Plant data used to ground an answer. Arrives as `plantInfo`."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    scientific_name: Optional[str] = None
    description: Optional[str] = None
    uses: Optional[str] = Field(None, alias="medicinal_uses")
    usage_instructions: Optional[str] = Field(None, alias="how_to_use")


class QueryRequest(BaseModel):
    # query is checked by the proxy so a missing one is InvalidInput, not a 422
    query: Optional[str] = None
    plantInfo: Optional[SubjectRecord] = None

    class Config:
        extra = "ignore"


class ContentResponse(BaseModel):
    content: str


class ErrorResponse(BaseModel):
    error: str


# =========================
#   Gemini generateContent
# =========================
class Part(BaseModel):
    text: str = ""

    class Config:
        extra = "ignore"


class Content(BaseModel):
    parts: List[Part] = []
    role: Optional[str] = None

    class Config:
        extra = "ignore"


class Candidate(BaseModel):
    content: Optional[Content] = None
    finishReason: Optional[str] = None

    class Config:
        extra = "ignore"


class GenerateResponse(BaseModel):
    candidates: List[Candidate] = []

    class Config:
        extra = "ignore"

    @classmethod
    def parse(cls, data) -> "GenerateResponse":
        """Single place where the upstream body shape is checked."""
        if not isinstance(data, dict):
            raise UpstreamFormatError()
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise UpstreamFormatError(f"Unexpected response format from Gemini API: {e.error_count()} invalid field(s)")


# =========================
#   Catalog
# =========================
class PlantCategory(BaseModel):
    id: int
    name: str
    description: Optional[str] = None


class Plant(BaseModel):
    id: int
    name: str
    scientific_name: str
    category_id: Optional[int] = None
    description: Optional[str] = None
    medicinal_uses: Optional[str] = None
    how_to_use: Optional[str] = None
    image_url: Optional[str] = None
    created_at: Optional[datetime] = None
    category_name: Optional[str] = None

    class Config:
        extra = "ignore"

    def to_subject(self) -> SubjectRecord:
        return SubjectRecord(
            name=self.name,
            scientific_name=self.scientific_name,
            description=self.description,
            uses=self.medicinal_uses,
            usage_instructions=self.how_to_use,
        )


class CategoryCreate(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None

    class Config:
        extra = "ignore"
        str_strip_whitespace = True


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None

    class Config:
        extra = "ignore"
        str_strip_whitespace = True


class PlantCreate(BaseModel):
    name: str = Field(min_length=1)
    scientific_name: str = Field(min_length=1)
    category_id: Optional[int] = None
    description: Optional[str] = None
    medicinal_uses: Optional[str] = None
    how_to_use: Optional[str] = None
    image_url: Optional[str] = None

    class Config:
        extra = "ignore"
        str_strip_whitespace = True


class PlantUpdate(BaseModel):
    """Partial update: only the fields present in the body are written."""

    name: Optional[str] = Field(None, min_length=1)
    scientific_name: Optional[str] = Field(None, min_length=1)
    category_id: Optional[int] = None
    description: Optional[str] = None
    medicinal_uses: Optional[str] = None
    how_to_use: Optional[str] = None
    image_url: Optional[str] = None

    class Config:
        extra = "ignore"
        str_strip_whitespace = True


class PlantPage(BaseModel):
    plants: List[Plant]
    count: int


class CatalogStats(BaseModel):
    total_plants: int
    total_categories: int
