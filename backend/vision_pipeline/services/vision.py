from __future__ import annotations

import base64
import json
from abc import ABC, abstractmethod

import httpx

from vision_pipeline.core.settings import settings


class StageError(RuntimeError):
    """A collaborator answered, but with nothing usable."""


class ImageAnalyzer(ABC):
    @abstractmethod
    async def analyze(self, source_url: str, context: str, purpose: str, creativity_level: float) -> str:
        raise NotImplementedError


ANALYSIS_PROMPT = """Act as a Senior Brand Art Director.
Analyze this image for: {purpose}.
Context: {context}.

Output strict JSON with the keys colors, visual_elements, mood_and_tone,
composition and brand_insights."""

_MOCK_ANALYSIS = {
    "colors": {
        "primary": ["#1F3A5F"],
        "secondary": ["#F4F1EA"],
        "accent": ["#E07A5F"],
        "description": "Deep navy anchors trust, warm cream keeps it approachable.",
    },
    "visual_elements": {"objects": ["product bottle"], "shapes": ["rounded rectangle"], "text": "", "icons": []},
    "mood_and_tone": {"mood": "calm", "tone": "premium", "energy_level": "low"},
    "composition": {"layout": "centered hero", "balance": "symmetric", "focal_point": "product", "negative_space": "generous"},
    "brand_insights": {
        "perceived_industry": "wellness",
        "target_audience": "urban professionals",
        "brand_personality": "quietly confident",
        "premium_level": "mid-premium",
    },
}


class MockAnalyzer(ImageAnalyzer):
    async def analyze(self, source_url: str, context: str, purpose: str, creativity_level: float) -> str:
        return "```json\n" + json.dumps(_MOCK_ANALYSIS) + "\n```"


class GeminiAnalyzer(ImageAnalyzer):
    async def analyze(self, source_url: str, context: str, purpose: str, creativity_level: float) -> str:
        if not settings.gemini_api_key:
            raise RuntimeError("gemini_api_key is not configured")
        async with httpx.AsyncClient(timeout=settings.request_timeout_s, follow_redirects=True) as client:
            image = await client.get(source_url)
            image.raise_for_status()
            payload = {
                "contents": [
                    {
                        "parts": [
                            {"text": ANALYSIS_PROMPT.format(purpose=purpose, context=context)},
                            {
                                "inline_data": {
                                    "mime_type": image.headers.get("content-type", "image/png"),
                                    "data": base64.b64encode(image.content).decode("ascii"),
                                }
                            },
                        ]
                    }
                ],
                "generationConfig": {
                    "responseMimeType": "application/json",
                    "temperature": creativity_level,
                },
            }
            resp = await client.post(
                f"{settings.gemini_api_url.rstrip('/')}/models/{settings.gemini_model}:generateContent",
                params={"key": settings.gemini_api_key},
                json=payload,
            )
            resp.raise_for_status()
            data = resp.json()

        try:
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            raise StageError("Gemini response carried no candidates")
        if not text or not text.strip():
            raise StageError("Gemini returned empty content")
        return text


def get_analyzer(name: str) -> ImageAnalyzer:
    analyzers = {
        "mock": MockAnalyzer(),
        "gemini": GeminiAnalyzer(),
    }
    return analyzers.get(name, MockAnalyzer())
