import asyncio
import io
import json
import logging
from typing import Optional

from pypdf import PdfReader

from .config import CLAUDE_MODEL, MAX_POLICY_PAGES, POLICY_RESPONSE_MAX_TOKENS
from .llm import AnalysisFailed, UnparsableResponse, call_claude_json, document_block, image_block
from .models import PolicyAnalysis, PolicyAnalysisResponse
from .storage import AssetStore
from .vision import prepare_image

logger = logging.getLogger(__name__)

POLICY_PROMPT = """
Analyze this insurance policy document and compare it against the user's current inventory to identify coverage gaps and provide recommendations.

USER'S CURRENT INVENTORY:
Total Value: ${total_value}
Items: {items}

ANALYSIS REQUIREMENTS:
1. Extract key policy details (coverage limits, deductibles, exclusions, policy type)
2. Identify specific coverage gaps between policy and inventory
3. Calculate under-insurance amounts for each category
4. Provide actionable recommendations

Return your analysis as a JSON object with this exact structure:
{{
  "policyDetails": {{
    "policyType": "homeowners|renters|auto|other",
    "carrier": "insurance company name",
    "policyNumber": "policy number if visible",
    "coverageLimit": {{
      "dwelling": number,
      "personalProperty": number,
      "liability": number
    }},
    "deductible": number,
    "effectiveDate": "YYYY-MM-DD",
    "expirationDate": "YYYY-MM-DD"
  }},
  "coverageAnalysis": {{
    "totalCovered": number,
    "totalUncovered": number,
    "gapPercentage": number,
    "adequacyRating": "excellent|good|fair|poor"
  }},
  "gapsByCategory": [
    {{
      "category": "electronics|jewelry|furniture|etc",
      "inventoryValue": number,
      "coveredAmount": number,
      "gap": number,
      "riskLevel": "high|medium|low"
    }}
  ],
  "recommendations": [
    {{
      "type": "increase_coverage|add_rider|schedule_items|lower_deductible",
      "priority": "high|medium|low",
      "description": "detailed recommendation",
      "estimatedCost": number,
      "potentialSavings": number
    }}
  ],
  "exclusions": [
    "list of notable exclusions that affect user's inventory"
  ],
  "confidence": number
}}

Be thorough in identifying coverage gaps, especially for high-value items like jewelry, electronics, and art that often require special coverage.
Return the JSON object only.
"""


class PolicyInputError(ValueError):
    """Bad request: missing file, missing user id or unsupported type."""


def pdf_page_count(data: bytes) -> int:
    try:
        reader = PdfReader(io.BytesIO(data))
        return len(reader.pages)
    except Exception as e:
        logger.debug("[pdf_page_count]: unreadable PDF: %s", e)
        raise PolicyInputError(f"Could not read PDF: {e}") from e


class PolicyComparator:
    """Compare one policy document with a user's stored inventory in a single model call."""

    def __init__(
        self,
        store: AssetStore,
        client=None,
        model: str = CLAUDE_MODEL,
        max_tokens: int = POLICY_RESPONSE_MAX_TOKENS,
    ):
        self.store = store
        self.client = client
        self.model = model
        self.max_tokens = max_tokens

    def _policy_block(self, data: bytes, mime_type: str) -> dict:
        mime = (mime_type or "").lower()
        if mime == "application/pdf":
            pages = pdf_page_count(data)
            if pages > MAX_POLICY_PAGES:
                raise PolicyInputError(f"Policy PDF has {pages} pages; the limit is {MAX_POLICY_PAGES}")
            return document_block(data)
        if mime.startswith("image/"):
            try:
                payload, media_type = prepare_image(data, mime)
            except AnalysisFailed as e:
                raise PolicyInputError("Unsupported file type") from e
            return image_block(payload, media_type)
        raise PolicyInputError("Unsupported file type")

    def analyze(self, user_id: Optional[str], data: Optional[bytes], mime_type: Optional[str]) -> PolicyAnalysisResponse:
        if not data:
            raise PolicyInputError("No policy file provided")
        if not user_id:
            raise PolicyInputError("User ID is required")
        block = self._policy_block(data, mime_type or "")

        assets = self.store.list_assets(user_id)
        total_value = sum(a.estimated_value.amount for a in assets)
        inventory_summary = [
            {
                "name": a.name,
                "category": a.category,
                "value": a.estimated_value.amount,
                "brand": a.brand,
                "model": a.model,
            }
            for a in assets
        ]
        logger.info(
            "[analyze_policy]: user %s items=%d total=%.2f type=%s",
            user_id,
            len(assets),
            total_value,
            mime_type,
        )

        prompt = POLICY_PROMPT.format(
            total_value=f"{total_value:,.0f}",
            items=json.dumps(inventory_summary, indent=2, ensure_ascii=False),
        )
        raw = call_claude_json(
            self.client,
            self.model,
            self.max_tokens,
            [block, {"type": "text", "text": prompt}],
            tag="analyze_policy",
        )
        try:
            analysis = PolicyAnalysis.model_validate(raw)
        except Exception as e:
            raise UnparsableResponse(f"Failed to parse policy analysis: {e}") from e
        return PolicyAnalysisResponse(
            success=True,
            analysis=analysis,
            inventory_count=len(assets),
            inventory_value=total_value,
        )

    async def analyze_async(self, user_id: Optional[str], data: Optional[bytes], mime_type: Optional[str]) -> PolicyAnalysisResponse:
        return await asyncio.to_thread(self.analyze, user_id, data, mime_type)
