import json
from typing import Any, List, Type

from pydantic import BaseModel, TypeAdapter

from vision_pipeline.schemas.contracts import ContentPiece, JsonContractHelper

_PIECES = TypeAdapter(List[ContentPiece])


def strip_code_fence(raw_text: str) -> str:
    return JsonContractHelper.strip_code_fence(raw_text)


def enforce_json_contract(raw_text: str, schema: Type[BaseModel]) -> BaseModel:
    return JsonContractHelper.parse_with_repair(raw_text, schema)


def unwrap_content_list(payload: Any) -> list:
    """Accept a bare array or an object wrapping it under ``content``/``contents``."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ("content", "contents"):
            if isinstance(payload.get(key), list):
                return payload[key]
    raise ValueError(f"Expected a list of content pieces, got {type(payload).__name__}")


def parse_content_pieces(raw_text: str) -> List[ContentPiece]:
    return _PIECES.validate_python(unwrap_content_list(JsonContractHelper.loads(raw_text)))


def to_strict_json(value: Any) -> str:
    if isinstance(value, BaseModel):
        value = value.model_dump()
    return json.dumps(value, ensure_ascii=False)
