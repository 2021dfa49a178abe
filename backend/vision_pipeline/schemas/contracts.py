from __future__ import annotations

import json
import re
from datetime import datetime
from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")


class EnqueueRequest(BaseModel):
    user_id: int
    source_url: str = Field(min_length=1)
    context: str = ""
    purpose: str = Field(min_length=1)
    output_format: str = "social_post"
    creativity_level: float = Field(default=1.0, ge=0.0, le=2.0)
    additional_instructions: Optional[str] = None


class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    source_url: str
    context: str
    purpose: str
    output_format: str
    creativity_level: float
    additional_instructions: Optional[str] = None
    status: str
    progress: int
    stage1_output: Optional[str] = None
    stage2_output: Optional[str] = None
    error_message: Optional[str] = None
    error_stage: Optional[str] = None
    retry_count: int
    max_retries: int
    created_at: datetime
    stage1_completed_at: Optional[datetime] = None
    stage2_completed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime


class JobListResponse(BaseModel):
    items: List[JobResponse]
    page: int
    limit: int
    total: int
    total_pages: int


class FeedbackRequest(BaseModel):
    rating: int = Field(ge=1, le=5)
    feedback: Optional[str] = None


class OutputResponse(BaseModel):
    job_id: int
    colors_primary: List[str]
    colors_secondary: List[str]
    colors_description: str
    mood: str
    tone: str
    composition_layout: str
    brand_personality: str
    perceived_industry: str
    target_audience: str
    content_pieces: List[dict]
    user_rating: Optional[int] = None
    user_feedback: Optional[str] = None


class ColorPalette(BaseModel):
    primary: List[str] = Field(default_factory=list)
    secondary: List[str] = Field(default_factory=list)
    accent: List[str] = Field(default_factory=list)
    description: str = ""


class VisualElements(BaseModel):
    objects: List[str] = Field(default_factory=list)
    shapes: List[str] = Field(default_factory=list)
    text: str = ""
    icons: List[str] = Field(default_factory=list)


class MoodAndTone(BaseModel):
    mood: str = ""
    tone: str = ""
    energy_level: str = ""


class Composition(BaseModel):
    layout: str = ""
    balance: str = ""
    focal_point: str = ""
    negative_space: str = ""


class BrandInsights(BaseModel):
    perceived_industry: str = ""
    target_audience: str = ""
    brand_personality: str = ""
    premium_level: str = ""


class BrandVision(BaseModel):
    """Stage-1 analysis document. Every section is optional so partial answers still parse."""

    colors: ColorPalette = Field(default_factory=ColorPalette)
    visual_elements: VisualElements = Field(default_factory=VisualElements)
    mood_and_tone: MoodAndTone = Field(default_factory=MoodAndTone)
    composition: Composition = Field(default_factory=Composition)
    brand_insights: BrandInsights = Field(default_factory=BrandInsights)


class ContentPiece(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    storyboard: str = Field(validation_alias=AliasChoices("storyboard", "storyboardMandarin"))
    caption: str = Field(validation_alias=AliasChoices("caption", "captionMandarin"))
    explanation: str = Field(default="", validation_alias=AliasChoices("explanation", "explanationEnglish"))


class JsonContractHelper:
    @staticmethod
    def strip_code_fence(raw: str) -> str:
        return _FENCE_RE.sub("", raw.strip()).strip()

    @staticmethod
    def loads(raw: str) -> Any:
        attempts = [raw]
        cleaned = JsonContractHelper.strip_code_fence(raw)
        if cleaned != raw:
            attempts.append(cleaned)
        if "\n" in cleaned:
            attempts.append(cleaned.replace("\n", " "))

        for attempt in attempts:
            try:
                return json.loads(attempt)
            except json.JSONDecodeError:
                continue
        raise ValueError("Unable to parse JSON output")

    @staticmethod
    def parse_with_repair(raw: str, schema_cls: type[BaseModel]) -> BaseModel:
        return schema_cls.model_validate(JsonContractHelper.loads(raw))
