"""Request bodies accepted by the JSON routes."""

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from stylist_state import OutfitStyle, VisualType


class BadRequest(Exception):
    """The request body is missing or does not match the route's schema."""


class GenerateRequest(BaseModel):
    style: OutfitStyle
    visual_type: VisualType


class ViewRequest(BaseModel):
    style: Optional[OutfitStyle] = None
    visual_type: Optional[VisualType] = None


class EditorOpenRequest(BaseModel):
    target: Literal["source", "visual"] = "source"
    style: Optional[OutfitStyle] = None
    visual_type: Optional[VisualType] = None

    @model_validator(mode="after")
    def _visual_needs_pair(self) -> "EditorOpenRequest":
        if self.target == "visual" and (self.style is None or self.visual_type is None):
            raise ValueError("style and visual_type are required for a visual target")
        return self


class EditRequest(BaseModel):
    prompt: str = Field(max_length=2000)

    @field_validator("prompt")
    @classmethod
    def _not_blank(cls, prompt: str) -> str:
        prompt = prompt.strip()
        if not prompt:
            raise ValueError("Describe your edit first")
        return prompt


def _describe(error: ValidationError) -> str:
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "body"
        messages.append(f"{location}: {item['msg']}")
    return "; ".join(messages)


def parse_body(model, payload: Any):
    """Validate a decoded JSON body; anything but a matching object is a ``BadRequest``."""
    try:
        return model.model_validate({} if payload is None else payload)
    except ValidationError as e:
        raise BadRequest(_describe(e)) from e
