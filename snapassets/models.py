from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ---------------- Categories ----------------
CATEGORIES = [
    "electronics",
    "jewelry",
    "furniture",
    "appliances",
    "clothing",
    "art",
    "books",
    "tools",
    "sports",
    "other",
]

CONDITIONS = ["excellent", "good", "fair", "poor"]

DEFAULT_CATEGORY = "other"
DEFAULT_CONDITION = "good"
DEFAULT_CURRENCY = "USD"


def _num(x) -> Optional[float]:
    if x is None or isinstance(x, bool):
        return None
    try:
        if isinstance(x, (int, float)):
            return float(x)
        s = str(x).strip().replace("$", "").replace(",", "")
        if not s:
            return None
        return float(s)
    except (TypeError, ValueError):
        return None


def _clean_str(x) -> Optional[str]:
    if x is None:
        return None
    s = str(x).strip()
    if not s or s.lower() in ("null", "none", "n/a", "unknown"):
        return None
    return s


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ---------------- Valuation ----------------
class EstimatedValue(_CamelModel):
    amount: float = 0.0
    currency: str = DEFAULT_CURRENCY

    @classmethod
    def coerce(cls, raw: Any) -> "EstimatedValue":
        """
        Canonical single-amount valuation.
        Accepts {amount, currency}, the older {low, high, currency} range
        (midpoint), a bare number or a "$1,200"-style string.
        """
        if isinstance(raw, EstimatedValue):
            return raw
        if isinstance(raw, dict):
            currency = _clean_str(raw.get("currency")) or DEFAULT_CURRENCY
            amount = _num(raw.get("amount"))
            if amount is None:
                low = _num(raw.get("low"))
                high = _num(raw.get("high"))
                if low is not None and high is not None:
                    amount = (low + high) / 2.0
                else:
                    amount = low if low is not None else high
            return cls(amount=max(0.0, amount or 0.0), currency=currency.upper())
        amount = _num(raw)
        return cls(amount=max(0.0, amount or 0.0))


# ---------------- Vision payload ----------------
class ItemAnalysis(_CamelModel):
    name: str = "Unknown Item"
    category: str = DEFAULT_CATEGORY
    brand: Optional[str] = None
    model: Optional[str] = None
    serial: Optional[str] = None
    condition: str = DEFAULT_CONDITION
    estimated_value: EstimatedValue = Field(default_factory=EstimatedValue, alias="estimatedValue")
    description: str = ""
    confidence: float = 0.5
    room: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "ItemAnalysis":
        """Normalize whatever the model returned into the stored shape."""
        category = str(raw.get("category") or "").strip().lower()
        if category not in CATEGORIES:
            category = DEFAULT_CATEGORY
        condition = str(raw.get("condition") or "").strip().lower()
        if condition not in CONDITIONS:
            condition = DEFAULT_CONDITION
        confidence = _num(raw.get("confidence"))
        if confidence is None:
            confidence = 0.5
        return cls(
            name=_clean_str(raw.get("name")) or "Unknown Item",
            category=category,
            brand=_clean_str(raw.get("brand")),
            model=_clean_str(raw.get("model")),
            serial=_clean_str(raw.get("serial")),
            condition=condition,
            estimated_value=EstimatedValue.coerce(raw.get("estimatedValue")),
            description=_clean_str(raw.get("description")) or "",
            confidence=max(0.0, min(1.0, confidence)),
            room=_clean_str(raw.get("room")),
        )


# ---------------- Assets ----------------
class Asset(ItemAnalysis):
    id: str
    user_id: str = Field(alias="userId")
    image_url: str = Field(default="", alias="imageUrl")
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")


class AssetUpdate(_CamelModel):
    name: Optional[str] = None
    category: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    serial: Optional[str] = None
    condition: Optional[str] = None
    estimated_value: Optional[EstimatedValue] = Field(default=None, alias="estimatedValue")
    description: Optional[str] = None
    room: Optional[str] = None

    @field_validator("category")
    @classmethod
    def known_category(cls, v):
        if v is not None and v not in CATEGORIES:
            raise ValueError(f"category must be one of: {', '.join(CATEGORIES)}")
        return v

    @field_validator("condition")
    @classmethod
    def known_condition(cls, v):
        if v is not None and v not in CONDITIONS:
            raise ValueError(f"condition must be one of: {', '.join(CONDITIONS)}")
        return v


class DeleteReport(_CamelModel):
    asset_id: str = Field(alias="assetId")
    record_deleted: bool = Field(alias="recordDeleted")
    image_deleted: bool = Field(alias="imageDeleted")
    image_error: Optional[str] = Field(default=None, alias="imageError")


class CategoryStats(_CamelModel):
    count: int = 0
    value: float = 0.0


class InventoryStats(_CamelModel):
    count: int = 0
    total_value: float = Field(default=0.0, alias="totalValue")
    currency: str = DEFAULT_CURRENCY
    by_category: Dict[str, CategoryStats] = Field(default_factory=dict, alias="byCategory")


# ---------------- Batches ----------------
class FileInfo(_CamelModel):
    name: str
    size: int
    type: str


class FileResult(_CamelModel):
    file: FileInfo
    analysis: Optional[ItemAnalysis] = None
    asset_id: Optional[str] = Field(default=None, alias="assetId")
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    duplicate: bool = False
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None and self.asset_id is not None


class BatchSummary(_CamelModel):
    batch_id: str = Field(alias="batchId")
    total: int
    successful: int
    failed: int
    duplicates: int = 0


class BatchStatus(_CamelModel):
    batch_id: str = Field(alias="batchId")
    user_id: str = Field(alias="userId")
    state: str
    completed: int
    total: int
    percent: float
    done: bool
    results: List[FileResult] = Field(default_factory=list)
    error: Optional[str] = None


class BatchProgress(_CamelModel):
    batch_id: str = Field(alias="batchId")
    completed: int
    total: int
    state: str


class BatchStartResponse(_CamelModel):
    batch_id: str = Field(alias="batchId")
    total: int


# ---------------- Policy ----------------
# Model output is not trusted: numbers may arrive as "$30,000" or null.
def _optional_number(v):
    return _num(v)


def _number_or_zero(v):
    n = _num(v)
    return n if n is not None else 0.0


def _optional_text(v):
    return _clean_str(v)


class CoverageLimit(_CamelModel):
    dwelling: Optional[float] = None
    personal_property: Optional[float] = Field(default=None, alias="personalProperty")
    liability: Optional[float] = None

    coerce_numbers = field_validator("dwelling", "personal_property", "liability", mode="before")(_optional_number)


class PolicyDetails(_CamelModel):
    policy_type: Optional[str] = Field(default=None, alias="policyType")
    carrier: Optional[str] = None
    policy_number: Optional[str] = Field(default=None, alias="policyNumber")
    coverage_limit: CoverageLimit = Field(default_factory=CoverageLimit, alias="coverageLimit")
    deductible: Optional[float] = None
    effective_date: Optional[str] = Field(default=None, alias="effectiveDate")
    expiration_date: Optional[str] = Field(default=None, alias="expirationDate")

    coerce_texts = field_validator(
        "policy_type", "carrier", "policy_number", "effective_date", "expiration_date", mode="before"
    )(_optional_text)
    coerce_numbers = field_validator("deductible", mode="before")(_optional_number)

    @field_validator("coverage_limit", mode="before")
    @classmethod
    def limit_dict(cls, v):
        return v if isinstance(v, dict) else {}


class CoverageAnalysis(_CamelModel):
    total_covered: float = Field(default=0.0, alias="totalCovered")
    total_uncovered: float = Field(default=0.0, alias="totalUncovered")
    gap_percentage: float = Field(default=0.0, alias="gapPercentage")
    adequacy_rating: Optional[str] = Field(default=None, alias="adequacyRating")

    coerce_numbers = field_validator(
        "total_covered", "total_uncovered", "gap_percentage", mode="before"
    )(_number_or_zero)
    coerce_texts = field_validator("adequacy_rating", mode="before")(_optional_text)


class CategoryGap(_CamelModel):
    category: str = DEFAULT_CATEGORY
    inventory_value: float = Field(default=0.0, alias="inventoryValue")
    covered_amount: float = Field(default=0.0, alias="coveredAmount")
    gap: float = 0.0
    risk_level: Optional[str] = Field(default=None, alias="riskLevel")

    coerce_numbers = field_validator(
        "inventory_value", "covered_amount", "gap", mode="before"
    )(_number_or_zero)
    coerce_texts = field_validator("risk_level", mode="before")(_optional_text)

    @field_validator("category", mode="before")
    @classmethod
    def category_text(cls, v):
        return _clean_str(v) or DEFAULT_CATEGORY


class PolicyRecommendation(_CamelModel):
    type: Optional[str] = None
    priority: Optional[str] = None
    description: str = ""
    estimated_cost: Optional[float] = Field(default=None, alias="estimatedCost")
    potential_savings: Optional[float] = Field(default=None, alias="potentialSavings")

    coerce_numbers = field_validator("estimated_cost", "potential_savings", mode="before")(_optional_number)
    coerce_texts = field_validator("type", "priority", mode="before")(_optional_text)

    @field_validator("description", mode="before")
    @classmethod
    def description_text(cls, v):
        return _clean_str(v) or ""


class PolicyAnalysis(_CamelModel):
    policy_details: PolicyDetails = Field(default_factory=PolicyDetails, alias="policyDetails")
    coverage_analysis: CoverageAnalysis = Field(default_factory=CoverageAnalysis, alias="coverageAnalysis")
    gaps_by_category: List[CategoryGap] = Field(default_factory=list, alias="gapsByCategory")
    recommendations: List[PolicyRecommendation] = Field(default_factory=list)
    exclusions: List[str] = Field(default_factory=list)
    confidence: float = 0.0

    @field_validator(
        "policy_details", "coverage_analysis", mode="before"
    )
    @classmethod
    def dict_or_empty(cls, v):
        return v if isinstance(v, dict) else {}

    @field_validator("gaps_by_category", "recommendations", mode="before")
    @classmethod
    def list_of_dicts(cls, v):
        if not isinstance(v, list):
            return []
        return [x for x in v if isinstance(x, dict)]

    @field_validator("exclusions", mode="before")
    @classmethod
    def list_of_strings(cls, v):
        if not isinstance(v, list):
            return []
        return [str(x) for x in v if x is not None and str(x).strip()]

    @field_validator("confidence", mode="before")
    @classmethod
    def unit_interval(cls, v):
        n = _num(v)
        return max(0.0, min(1.0, n)) if n is not None else 0.0


class PolicyAnalysisResponse(_CamelModel):
    success: bool = True
    analysis: PolicyAnalysis
    inventory_count: int = Field(alias="inventoryCount")
    inventory_value: float = Field(alias="inventoryValue")
