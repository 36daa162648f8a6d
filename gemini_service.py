import logging
import os
import re
from typing import Optional

from google import genai
from google.genai import types
from pydantic import ValidationError

from image_intake import InlineImage
from stylist_state import (
    ANALYSIS_ERROR_MESSAGE,
    EDIT_ERROR_MESSAGE,
    GENERATION_ERROR_MESSAGE,
    AnalysisResult,
    OutfitStyle,
    VisualType,
)

logger = logging.getLogger(__name__)

ANALYSIS_MODEL = os.getenv("ANALYSIS_MODEL", "gemini-3-flash-preview")
IMAGE_MODEL = os.getenv("IMAGE_MODEL", "gemini-2.5-flash-image")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class StylistError(Exception):
    """Base class for failures talking to the generation service."""

    user_message = "Something went wrong. Please try again."

    def __init__(self, detail: str = "", user_message: Optional[str] = None):
        super().__init__(detail or self.user_message)
        if user_message:
            self.user_message = user_message


class MissingCredential(StylistError):
    user_message = "GEMINI_API_KEY not configured on server"


class AnalysisFailed(StylistError):
    user_message = ANALYSIS_ERROR_MESSAGE


class GenerationFailed(StylistError):
    user_message = GENERATION_ERROR_MESSAGE


class EditFailed(StylistError):
    user_message = EDIT_ERROR_MESSAGE


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

def create_client(api_key: Optional[str]):
    """Return a Gemini client, or None when no key is configured."""
    if not api_key:
        logger.warning("[INIT] GEMINI_API_KEY not set. Analysis and generation will not work.")
        return None
    try:
        client = genai.Client(api_key=api_key)
    except Exception as e:
        logger.warning("[INIT] Failed to initialize Gemini client: %s", e)
        return None
    logger.info("[INIT] Gemini client initialized successfully.")
    return client


def require_client(client):
    if client is None:
        raise MissingCredential("No Gemini client; set GEMINI_API_KEY")
    return client


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

ANALYSIS_PROMPT = """Analyze this clothing item image.
1. Identify the item: what it is, its category, its main color, pattern and style.
2. Create exactly 3 distinct unisex, gender-neutral outfit plans featuring this item,
   one for each occasion: Casual, Business, Night Out.
3. For each plan, list the key items that complete the look, a color palette, and a
   short explanation of why the outfit works.
4. Use gender-neutral language. Avoid gendered garment terms (e.g. 'blouse', 'skirt')
   unless they describe the uploaded item itself; prefer 'shirt', 'pants', 'jacket', etc.

Return ONLY a JSON object of this shape:
{
  "itemAnalysis": {"description": "string", "category": "string", "baseColor": "string"},
  "outfitPlans": [
    {
      "style": "Casual" | "Business" | "Night Out",
      "description": "string",
      "keyItems": ["string"],
      "colorPalette": ["string"],
      "whyItWorks": "string"
    }
  ]
}
"""

ANALYSIS_SCHEMA = types.Schema(
    type=types.Type.OBJECT,
    properties={
        "itemAnalysis": types.Schema(
            type=types.Type.OBJECT,
            properties={
                "description": types.Schema(type=types.Type.STRING),
                "category": types.Schema(type=types.Type.STRING),
                "baseColor": types.Schema(type=types.Type.STRING),
            },
            required=["description", "category", "baseColor"],
        ),
        "outfitPlans": types.Schema(
            type=types.Type.ARRAY,
            min_items=len(OutfitStyle),
            max_items=len(OutfitStyle),
            items=types.Schema(
                type=types.Type.OBJECT,
                properties={
                    "style": types.Schema(
                        type=types.Type.STRING,
                        enum=[style.value for style in OutfitStyle],
                    ),
                    "description": types.Schema(type=types.Type.STRING),
                    "keyItems": types.Schema(
                        type=types.Type.ARRAY, items=types.Schema(type=types.Type.STRING)
                    ),
                    "colorPalette": types.Schema(
                        type=types.Type.ARRAY, items=types.Schema(type=types.Type.STRING)
                    ),
                    "whyItWorks": types.Schema(type=types.Type.STRING),
                },
                required=["style", "description", "keyItems", "colorPalette", "whyItWorks"],
            ),
        ),
    },
    required=["itemAnalysis", "outfitPlans"],
)


def _strip_json_fences(raw_text: str) -> str:
    """Strip markdown fences the model sometimes wraps JSON in."""
    raw_text = raw_text.strip()
    if raw_text.startswith("```"):
        raw_text = re.sub(r"^```(?:json)?\s*", "", raw_text)
        raw_text = re.sub(r"\s*```$", "", raw_text)
    return raw_text


def _image_part(image: InlineImage):
    return types.Part.from_bytes(data=image.data, mime_type=image.mime_type)


def analyze_clothing_item(client, image: InlineImage) -> AnalysisResult:
    """Describe the garment and plan one outfit per style in a single call.

    All or nothing: an empty reply, unparseable JSON or a plan set that does
    not cover every style exactly once raises ``AnalysisFailed``.
    """
    require_client(client)

    logger.info("[VISION] Analyzing item (%s, %d bytes)...", image.mime_type, len(image.data))
    try:
        response = client.models.generate_content(
            model=ANALYSIS_MODEL,
            contents=[_image_part(image), ANALYSIS_PROMPT],
            config=types.GenerateContentConfig(
                response_mime_type="application/json",
                response_schema=ANALYSIS_SCHEMA,
            ),
        )
    except Exception as e:
        logger.exception("[VISION] Analysis request failed")
        raise AnalysisFailed(f"Analysis request failed: {e}") from e

    raw_text = getattr(response, "text", None)
    if not raw_text:
        raise AnalysisFailed("No analysis generated")

    try:
        result = AnalysisResult.model_validate_json(_strip_json_fences(raw_text))
    except ValidationError as e:
        logger.error("[VISION] Analysis JSON did not match schema: %s", e)
        raise AnalysisFailed(f"Analysis did not match schema: {e}") from e

    logger.info("[VISION] Analysis complete: %s / %s, %d plans.",
                result.item_analysis.category, result.item_analysis.base_color,
                len(result.outfit_plans))
    return result


# ---------------------------------------------------------------------------
# Visual generation and editing
# ---------------------------------------------------------------------------

FLAT_LAY_PROMPT = """Create a high-fashion flat-lay photograph of a {style} outfit.
The outfit MUST include the clothing item shown in the reference image.
The overall styling must be unisex and gender-neutral.
Complete the look based on this description: {description}
Lay everything out cleanly on a neutral background, like a professional stylist's recommendation.
Use soft lighting and a balanced composition.
"""

ON_MODEL_PROMPT = """Create a full-body fashion photograph of a gender-neutral model wearing this {style} outfit.
The model is wearing the clothing item shown in the reference image.
Complete the outfit based on this description: {description}
Use a clean, minimal studio background and a natural, stylish pose.
The result must be photorealistic with professional lighting.
"""


def build_visual_prompt(style: OutfitStyle, description: str, visual_type: VisualType) -> str:
    template = FLAT_LAY_PROMPT if visual_type == VisualType.FLAT_LAY else ON_MODEL_PROMPT
    return template.format(style=style.value, description=description.strip())


def _extract_inline_image(response) -> Optional[InlineImage]:
    """Return the first inline image in the first candidate, if any."""
    candidates = getattr(response, "candidates", None)
    if not candidates:
        return None
    content = getattr(candidates[0], "content", None)
    parts = getattr(content, "parts", None) or []
    for part in parts:
        inline_data = getattr(part, "inline_data", None)
        if inline_data is not None and inline_data.data:
            return InlineImage(
                data=inline_data.data,
                mime_type=inline_data.mime_type or "image/png",
            )
    return None


def _call_image_model(client, image: InlineImage, prompt: str):
    return client.models.generate_content(
        model=IMAGE_MODEL,
        contents=[_image_part(image), prompt],
        config=types.GenerateContentConfig(
            response_modalities=["Text", "Image"],
        ),
    )


def generate_outfit_visual(client, image: InlineImage, description: str,
                           style: OutfitStyle, visual_type: VisualType) -> InlineImage:
    """Render one (style, visual type) pair from the item image."""
    require_client(client)

    prompt = build_visual_prompt(style, description, visual_type)
    logger.info("[GEN] Generating %s %s with %s...", style.value, visual_type.value, IMAGE_MODEL)
    try:
        response = _call_image_model(client, image, prompt)
    except Exception as e:
        logger.exception("[GEN] Generation request failed for %s %s", style.value, visual_type.value)
        raise GenerationFailed(f"Generation request failed: {e}") from e

    result = _extract_inline_image(response)
    if result is None:
        logger.error("[GEN] No image in response for %s %s.", style.value, visual_type.value)
        raise GenerationFailed("No image generated")

    logger.info("[GEN] %s %s ready (%d bytes).", style.value, visual_type.value, len(result.data))
    return result


def edit_image_with_prompt(client, image: InlineImage, instruction: str) -> InlineImage:
    """Apply a free-text edit to ``image`` and return the edited image."""
    if not instruction or not instruction.strip():
        raise ValueError("Edit instruction must not be empty")
    require_client(client)

    logger.info("[EDIT] Editing image (%d bytes): %r", len(image.data), instruction[:80])
    try:
        response = _call_image_model(client, image, instruction.strip())
    except Exception as e:
        logger.exception("[EDIT] Edit request failed")
        raise EditFailed(f"Edit request failed: {e}") from e

    result = _extract_inline_image(response)
    if result is None:
        logger.error("[EDIT] No edited image returned.")
        raise EditFailed("No edited image returned")
    return result
