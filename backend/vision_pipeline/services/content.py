from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from vision_pipeline.core.settings import settings
from vision_pipeline.schemas.contracts import JsonContractHelper
from vision_pipeline.services.llm_json import unwrap_content_list
from vision_pipeline.services.vision import StageError

MAX_PIECES = 5

SYSTEM_PROMPT = """You are a brand content strategist writing localized marketing content.
Generate 5 distinct content pieces. Each piece has:
- storyboard: a visual description for a 15-30 second video or image series
- caption: a 50-150 character social caption
- explanation: why this cultural angle works for the audience

Respond with ONLY a JSON array of 5 objects with exactly those keys."""


@dataclass
class ContentRequest:
    product_info: str
    selling_points: str
    target_audience: str = ""
    cta_offer: Optional[str] = None

    def to_prompt(self) -> str:
        lines = [
            f"Product information:\n{self.product_info}",
            f"Selling points: {self.selling_points}",
        ]
        if self.target_audience:
            lines.append(f"Target audience: {self.target_audience}")
        if self.cta_offer:
            lines.append(f"Call to action / offer: {self.cta_offer}")
        return "\n\n".join(lines)


class ContentGenerator(ABC):
    @abstractmethod
    async def generate(self, request: ContentRequest) -> list[dict] | str:
        raise NotImplementedError


class MockGenerator(ContentGenerator):
    async def generate(self, request: ContentRequest) -> list[dict] | str:
        return [
            {
                "storyboard": f"Scene {idx + 1}: product in a morning routine, soft light",
                "caption": f"{request.selling_points} #{idx + 1}",
                "explanation": "Routine framing makes the product feel habitual, not occasional.",
            }
            for idx in range(MAX_PIECES)
        ]


class DeepSeekGenerator(ContentGenerator):
    async def generate(self, request: ContentRequest) -> list[dict] | str:
        if not settings.deepseek_api_key:
            raise RuntimeError("deepseek_api_key is not configured")
        payload = {
            "model": settings.deepseek_model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": request.to_prompt()},
            ],
            "temperature": 0.7,
            "max_tokens": 4000,
        }
        async with httpx.AsyncClient(timeout=settings.request_timeout_s) as client:
            resp = await client.post(
                settings.deepseek_api_url,
                json=payload,
                headers={"Authorization": f"Bearer {settings.deepseek_api_key}"},
            )
            resp.raise_for_status()
            data = resp.json()

        choices = data.get("choices") or [{}]
        text = (choices[0].get("message") or {}).get("content")
        if not text or not text.strip():
            raise StageError("No content generated from DeepSeek")

        pieces = unwrap_content_list(JsonContractHelper.loads(text))
        if not pieces:
            raise StageError("DeepSeek returned an empty content list")
        return pieces[:MAX_PIECES]


def get_generator(name: str) -> ContentGenerator:
    generators = {
        "mock": MockGenerator(),
        "deepseek": DeepSeekGenerator(),
    }
    return generators.get(name, MockGenerator())
