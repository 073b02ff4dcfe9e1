"""
Pydantic models for the FairLens suitability engine.
Defines customer profiles, catalog products, evaluation results, uploaded
documents and the observable analysis state.
"""

import base64
import enum
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


PENDING_EXPLANATION = "Pending AI generation..."


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CustomerKind(str, enum.Enum):
    INDIVIDUAL = "INDIVIDUAL"
    SME = "SME"


class TargetCustomerKind(str, enum.Enum):
    INDIVIDUAL = "INDIVIDUAL"
    SME = "SME"
    BOTH = "BOTH"


class Decision(str, enum.Enum):
    APPROVE = "APPROVE"
    REVIEW = "REVIEW"
    DECLINE = "DECLINE"


class RunStatus(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class Stage(str, enum.Enum):
    VALIDATING = "validating"
    EXTRACTING = "extracting"
    SCORING = "scoring"
    EXPLAINING = "explaining"
    COMPLETE = "complete"


class ErrorCategory(str, enum.Enum):
    VALIDATION = "validation"
    CREDENTIAL = "credential"
    BAD_REQUEST = "bad_request"
    UPSTREAM = "upstream"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


Goal = Literal[
    "CREDIT_CARD",
    "PERSONAL_LOAN",
    "MORTGAGE",
    "SME_WORKING_CAPITAL",
    "BUSINESS_EXPANSION",
    "OTHER",
]
RiskTolerance = Literal["LOW", "MEDIUM", "HIGH"]
ProductCategory = Literal["CREDIT_CARD", "PERSONAL_LOAN", "SME_LOAN"]


class _CamelModel(BaseModel):
    """Accepts both snake_case field names and the camelCase keys the AI returns."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ======================
# Customer
# ======================

class CustomerProfile(_CamelModel):
    """Financial facts about one customer, extracted or typed in by the advisor.

    Every numeric field is optional. None means "unknown", which the scoring
    engine resolves through its missing-value policy.
    """
    customer_type: CustomerKind
    name: Optional[str] = None
    age: Optional[float] = None
    citizenship: Optional[str] = None
    country_of_residence: Optional[str] = None
    monthly_income: Optional[float] = None
    monthly_expenses: Optional[float] = None
    existing_loan_emi: Optional[float] = Field(default=None, alias="existingLoanEMI")
    total_credit_card_limits: Optional[float] = None
    total_credit_card_utilization: Optional[float] = None
    business_age_months: Optional[float] = None
    average_monthly_revenue: Optional[float] = None
    average_monthly_net_profit: Optional[float] = None
    bounced_cheques_last_12_months: Optional[float] = None
    late_payment_incidents_last_12_months: Optional[float] = None
    savings_balance_estimate: Optional[float] = None
    debt_to_income_ratio: Optional[float] = None
    dscr: Optional[float] = None
    risk_flags: List[str] = Field(default_factory=list)
    goal: Optional[Goal] = None
    risk_tolerance: Optional[RiskTolerance] = None
    notes: Optional[str] = None

    @field_validator("risk_flags", mode="before")
    @classmethod
    def _null_flags(cls, value):
        return [] if value is None else value


class ManualFields(_CamelModel):
    """Identity claims and goals entered by the advisor."""
    customer_type: CustomerKind = CustomerKind.INDIVIDUAL
    name: Optional[str] = None
    citizenship: Optional[str] = None
    country_of_residence: Optional[str] = None
    goal: Optional[Goal] = "CREDIT_CARD"
    risk_tolerance: Optional[RiskTolerance] = "MEDIUM"


def initial_profile(kind: CustomerKind = CustomerKind.INDIVIDUAL) -> CustomerProfile:
    return CustomerProfile(customer_type=kind)


# ======================
# Product
# ======================

class ProductConstraints(_CamelModel):
    model_config = ConfigDict(frozen=True)

    min_age: Optional[float] = None
    max_age: Optional[float] = None
    min_monthly_income: Optional[float] = None
    min_average_monthly_revenue: Optional[float] = None
    min_business_age_months: Optional[float] = None
    max_debt_to_income: Optional[float] = None
    min_dscr: Optional[float] = Field(default=None, alias="minDSCR")
    max_bounced_cheques_last_12_months: Optional[float] = None
    max_late_payment_incidents_last_12_months: Optional[float] = None


class ScoringWeights(_CamelModel):
    model_config = ConfigDict(frozen=True)

    income_stability: Optional[float] = Field(default=None, ge=0)
    revenue_stability: Optional[float] = Field(default=None, ge=0)
    debt_to_income: Optional[float] = Field(default=None, ge=0)
    dscr: Optional[float] = Field(default=None, ge=0)
    credit_utilization: Optional[float] = Field(default=None, ge=0)
    bounced_cheques: Optional[float] = Field(default=None, ge=0)
    late_payments: Optional[float] = Field(default=None, ge=0)


class Thresholds(_CamelModel):
    model_config = ConfigDict(frozen=True)

    approve: float
    review: float

    @model_validator(mode="after")
    def _ordered(self):
        if not (self.approve >= self.review >= 0):
            raise ValueError("thresholds must satisfy approve >= review >= 0")
        return self


class ScoringConfig(_CamelModel):
    model_config = ConfigDict(frozen=True)

    weights: ScoringWeights = Field(default_factory=ScoringWeights)
    thresholds: Thresholds


class ExplanationTemplates(_CamelModel):
    model_config = ConfigDict(frozen=True)

    approved: str = ""
    review: str = ""
    declined: str = ""


class Product(_CamelModel):
    """Immutable catalog entry: constraints, scoring weights and thresholds."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    category: ProductCategory
    description: str = ""
    target_customer_type: TargetCustomerKind
    constraints: ProductConstraints = Field(default_factory=ProductConstraints)
    scoring: ScoringConfig
    explanation_templates: ExplanationTemplates = Field(default_factory=ExplanationTemplates)


# ======================
# Evaluation
# ======================

class EvaluationResult(_CamelModel):
    """Outcome of scoring one product for one profile."""
    product_id: str
    eligible: bool
    decision: Decision
    score: float = Field(ge=0.0, le=1.0)
    reasons: List[str] = Field(default_factory=list)
    summary: str = ""
    customer_explanation: str = PENDING_EXPLANATION
    advisor_explanation: str = PENDING_EXPLANATION

    @property
    def explanations_pending(self) -> bool:
        return (
            self.customer_explanation == PENDING_EXPLANATION
            or self.advisor_explanation == PENDING_EXPLANATION
        )


class Explanation(BaseModel):
    """Customer-facing and advisor-facing text for one evaluation."""
    customer: str
    advisor: str


# ======================
# Documents
# ======================

class Document(_CamelModel):
    """One uploaded artifact assigned to an upload slot (doc_type)."""
    name: str
    mime_type: str
    data: str = Field(description="Base64 encoded payload")
    doc_type: Optional[str] = None

    @classmethod
    def from_bytes(cls, name: str, mime_type: str, content: bytes, doc_type: Optional[str] = None) -> "Document":
        return cls(
            name=name,
            mime_type=mime_type,
            data=base64.b64encode(content).decode("ascii"),
            doc_type=doc_type,
        )

    @property
    def content(self) -> bytes:
        return base64.b64decode(self.data)

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"


class DocumentValidation(_CamelModel):
    """Validator finding for one uploaded document."""
    slot_key: str
    expected_doc_type: str
    detected_name: Optional[str] = None
    detected_doc_type: Optional[str] = None
    name_matches_declared: bool = True
    type_matches_slot: bool = True
    issues: List[str] = Field(default_factory=list)

    @field_validator("issues", mode="before")
    @classmethod
    def _null_issues(cls, value):
        return [] if value is None else value


# ======================
# Run state
# ======================

class RunState(BaseModel):
    """The orchestrator's record of the current (or last) execution."""
    run_id: Optional[str] = None
    stage: Optional[Stage] = None
    status: RunStatus = RunStatus.IDLE
    progress: float = Field(default=0.0, ge=0.0, le=100.0)
    error: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    last_active: datetime = Field(default_factory=utcnow)


class AnalysisState(BaseModel):
    """Everything a resumed session needs to show the last known state."""
    manual_fields: ManualFields = Field(default_factory=ManualFields)
    documents: List[Document] = Field(default_factory=list)
    profile: CustomerProfile = Field(default_factory=initial_profile)
    evaluations: List[EvaluationResult] = Field(default_factory=list)
    run: RunState = Field(default_factory=RunState)
