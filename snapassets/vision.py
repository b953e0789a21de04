import asyncio
import io
import logging
from typing import Optional, Tuple

from PIL import Image
from pillow_heif import register_heif_opener

from .config import CLAUDE_MODEL, CLAUDE_RESPONSE_MAX_TOKENS
from .intake import SUPPORTED_IMAGE_TYPES, needs_server_decoding
from .llm import AnalysisFailed, call_claude_json, image_block
from .models import CATEGORIES, ItemAnalysis

register_heif_opener()

logger = logging.getLogger(__name__)

ITEM_PROMPT = f"""
Analyze this image of a household item and extract the following information in JSON format:

{{
  "name": "specific item name",
  "category": "{'|'.join(CATEGORIES)}",
  "brand": "brand name if visible",
  "model": "model number if visible",
  "serial": "serial number if visible",
  "condition": "excellent|good|fair|poor",
  "estimatedValue": {{
    "amount": number,
    "currency": "USD"
  }},
  "description": "detailed description of the item",
  "confidence": number between 0-1,
  "room": "likely room location (living room, bedroom, kitchen, etc.)"
}}

Be as accurate as possible. If information is not clearly visible, use null for that field.
For estimated value, provide a single realistic replacement cost based on the item's apparent condition and type.
Choose the most likely replacement value with highest confidence rather than a range.
Return the JSON object only.
"""

# Claude accepts these directly; HEIC/HEIF is re-encoded first.
_NATIVE_TYPES = {
    "image/jpeg": "image/jpeg",
    "image/jpg": "image/jpeg",
    "image/png": "image/png",
    "image/webp": "image/webp",
}


def to_jpeg(data: bytes, quality: int = 90) -> bytes:
    try:
        image = Image.open(io.BytesIO(data))
        if image.mode not in ("RGB", "L"):
            image = image.convert("RGB")
        out = io.BytesIO()
        image.save(out, format="JPEG", quality=quality)
        return out.getvalue()
    except Exception as e:
        raise AnalysisFailed(f"Could not decode image: {e}") from e


def prepare_image(data: bytes, mime_type: str) -> Tuple[bytes, str]:
    mime = (mime_type or "").lower()
    if mime not in SUPPORTED_IMAGE_TYPES:
        raise AnalysisFailed(f"Unsupported image format: {mime_type}. Please use JPG, PNG, WEBP, or HEIC.")
    if needs_server_decoding(mime):
        logger.debug("[prepare_image]: converting %s to JPEG (%d bytes)", mime, len(data))
        return to_jpeg(data), "image/jpeg"
    return data, _NATIVE_TYPES[mime]


class VisionClient:
    """Identify and valuate one household item per image."""

    def __init__(self, client=None, model: str = CLAUDE_MODEL, max_tokens: int = CLAUDE_RESPONSE_MAX_TOKENS):
        self.client = client
        self.model = model
        self.max_tokens = max_tokens

    def analyze(self, data: bytes, mime_type: Optional[str]) -> ItemAnalysis:
        payload, media_type = prepare_image(data, mime_type or "")
        raw = call_claude_json(
            self.client,
            self.model,
            self.max_tokens,
            [image_block(payload, media_type), {"type": "text", "text": ITEM_PROMPT}],
            tag="analyze_image",
        )
        analysis = ItemAnalysis.from_raw(raw)
        logger.info(
            "[analyze_image]: %s (%s) ~%.0f %s confidence=%.2f",
            analysis.name,
            analysis.category,
            analysis.estimated_value.amount,
            analysis.estimated_value.currency,
            analysis.confidence,
        )
        return analysis

    async def analyze_async(self, data: bytes, mime_type: Optional[str]) -> ItemAnalysis:
        return await asyncio.to_thread(self.analyze, data, mime_type)
