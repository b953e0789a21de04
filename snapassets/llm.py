import base64
import json
import logging
import re
from typing import Any, Dict

logger = logging.getLogger(__name__)

RAW_LOG_CHARS = 700


class AnalysisFailed(Exception):
    """The model call failed or its answer could not be used."""


class UnparsableResponse(AnalysisFailed):
    """The model answered, but not with a usable JSON object."""


def extract_json_object(text: str) -> Dict[str, Any]:
    """
    Parse the first brace-delimited JSON object out of a model reply.
    Surrounding prose and ``` fences are tolerated; anything else raises.
    """
    if not text or not str(text).strip():
        raise UnparsableResponse("Empty response from AI")
    s = str(text).strip()
    if s.startswith("```"):
        s = re.sub(r"^```[\w-]*\s*", "", s)
        s = re.sub(r"\s*```$", "", s)
    m = re.search(r"\{.*\}", s, re.S)
    if not m:
        raise UnparsableResponse("Invalid JSON response from AI")
    try:
        parsed = json.loads(m.group(0))
    except json.JSONDecodeError as e:
        raise UnparsableResponse(f"Invalid JSON response from AI: {e}") from e
    if not isinstance(parsed, dict):
        raise UnparsableResponse("Invalid JSON response from AI")
    return parsed


def response_text(resp) -> str:
    """Concatenate the text blocks of an Anthropic messages response."""
    parts = []
    for block in getattr(resp, "content", None) or []:
        text = getattr(block, "text", None)
        if text:
            parts.append(text)
    return "".join(parts)


def b64(data: bytes) -> str:
    return base64.standard_b64encode(data).decode("ascii")


def image_block(data: bytes, media_type: str) -> Dict[str, Any]:
    return {
        "type": "image",
        "source": {"type": "base64", "media_type": media_type, "data": b64(data)},
    }


def document_block(data: bytes, media_type: str = "application/pdf") -> Dict[str, Any]:
    return {
        "type": "document",
        "source": {"type": "base64", "media_type": media_type, "data": b64(data)},
    }


def call_claude_json(client, model: str, max_tokens: int, content: list, tag: str) -> Dict[str, Any]:
    """One messages round trip returning the parsed JSON object. No retries."""
    if client is None:
        raise AnalysisFailed("Anthropic API not configured")
    try:
        resp = client.messages.create(
            model=model,
            max_tokens=max_tokens,
            temperature=0,
            messages=[{"role": "user", "content": content}],
        )
    except Exception as e:
        logger.warning("[%s]: exception: %s", tag, e)
        raise AnalysisFailed(f"AI request failed: {e}") from e
    raw = response_text(resp)
    logger.debug("[%s]: raw response (first %d chars): %s", tag, RAW_LOG_CHARS, raw[:RAW_LOG_CHARS])
    return extract_json_object(raw)
