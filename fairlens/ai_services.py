"""
External AI collaborators used by the analysis pipeline.
Defines the narrow interfaces the orchestrator depends on and their Azure
OpenAI (Responses API) implementations.
"""

import json
import logging
import uuid
from typing import Any, Dict, List, Optional, Protocol

from openai import AsyncAzureOpenAI
from pydantic import ValidationError

from fairlens import config
from fairlens.catalog import render_template
from fairlens.exceptions import ConfigurationError, ProductGenerationError
from fairlens.intake import document_context
from fairlens.models import (
    CustomerKind,
    CustomerProfile,
    Document,
    DocumentValidation,
    EvaluationResult,
    Explanation,
    ManualFields,
    Product,
)

logger = logging.getLogger(__name__)

EXPLANATION_FAILED = "Could not generate explanation."
EXPLANATION_MISSING = "Explanation generation failed."

FALLBACK_EXPLANATION = Explanation(customer=EXPLANATION_FAILED, advisor=EXPLANATION_FAILED)

# Profile keys taken from the advisor's manual input, never from the model
MANUAL_PROFILE_KEYS = ("customerType", "customer_type", "goal", "riskTolerance", "risk_tolerance")


# ======================
# Collaborator interfaces
# ======================

class DocumentValidator(Protocol):
    async def validate(
        self, documents: List[Document], customer_type: CustomerKind, declared_name: str
    ) -> List[DocumentValidation]:
        ...


class ProfileExtractor(Protocol):
    async def extract(self, documents: List[Document], manual: ManualFields) -> CustomerProfile:
        ...


class ExplanationGenerator(Protocol):
    async def explain(
        self, profile: CustomerProfile, product: Product, evaluation: EvaluationResult
    ) -> Explanation:
        ...


class ProductGenerator(Protocol):
    async def generate(self, description: str) -> Product:
        ...


# ======================
# Azure OpenAI client
# ======================

_openai_client: Optional[AsyncAzureOpenAI] = None


def get_openai_client() -> AsyncAzureOpenAI:
    """Get the shared async Azure OpenAI client (cached singleton).

    Raises:
        ConfigurationError: If the key or endpoint is not configured
    """
    global _openai_client

    if _openai_client is not None:
        return _openai_client

    if not config.AZURE_OPENAI_KEY or not config.AZURE_OPENAI_ENDPOINT:
        raise ConfigurationError("Missing API key: set AZURE_OPENAI_KEY and AZURE_OPENAI_ENDPOINT.")

    _openai_client = AsyncAzureOpenAI(
        api_key=config.AZURE_OPENAI_KEY,
        api_version=config.AZURE_OPENAI_API_VERSION,
        azure_endpoint=config.AZURE_OPENAI_ENDPOINT,
    )
    return _openai_client


def extract_response_text(response) -> str:
    """Pull plain text content out of a Responses API call."""
    output_text = getattr(response, "output_text", None)
    if output_text:
        if isinstance(output_text, (list, tuple)):
            joined = " ".join(str(part) for part in output_text if part)
        else:
            joined = str(output_text)
        if joined.strip():
            return joined.strip()

    text_fragments = []
    for output in getattr(response, "output", []) or []:
        if getattr(output, "type", None) != "message":
            continue
        for content_item in getattr(output, "content", []) or []:
            if getattr(content_item, "type", None) in ("text", "output_text"):
                text_fragments.append(getattr(content_item, "text", ""))

    return "".join(text_fragments).strip()


def parse_json_payload(text: str) -> Any:
    """Parse a JSON answer, tolerating markdown code fences around it."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.split("\n", 1)[1] if "\n" in cleaned else ""
        if cleaned.rstrip().endswith("```"):
            cleaned = cleaned.rstrip()[:-3]
    return json.loads(cleaned)


def build_document_parts(documents: List[Document]) -> List[Dict[str, Any]]:
    """Convert uploads into Responses API input parts (images inline, PDFs as files)."""
    parts = []
    for document in documents:
        if document.mime_type.startswith("image/"):
            parts.append({"type": "input_image", "image_url": document.data_url})
        else:
            parts.append({"type": "input_file", "filename": document.name, "file_data": document.data_url})
    return parts


class _AzureCollaborator:
    """Shared plumbing: one JSON-mode Responses API call."""

    system_prompt = "You are a precise assistant. Answer with a single JSON object."

    def __init__(self, client: Optional[AsyncAzureOpenAI] = None, model: Optional[str] = None):
        self._client = client
        self.model = model or config.AZURE_OPENAI_GPT_DEPLOYMENT_NAME

    @property
    def client(self) -> AsyncAzureOpenAI:
        if self._client is None:
            self._client = get_openai_client()
        return self._client

    async def _ask_json(self, content: List[Dict[str, Any]]) -> Any:
        response = await self.client.responses.create(
            model=self.model,
            input=[
                {"role": "system", "content": self.system_prompt},
                {"role": "user", "content": content},
            ],
            text={"format": {"type": "json_object"}},
        )
        text = extract_response_text(response)
        if not text:
            raise ValueError("No response from the AI service")
        return parse_json_payload(text)


# ======================
# Document validation
# ======================

class AzureDocumentValidator(_AzureCollaborator):
    """Checks that each upload belongs to the declared customer and matches its slot."""

    system_prompt = "You are a meticulous KYC document checker. Answer with a single JSON object."

    async def validate(
        self, documents: List[Document], customer_type: CustomerKind, declared_name: str
    ) -> List[DocumentValidation]:
        if not documents:
            return []

        prompt = f"""
Check each attached document against the declared customer.

Declared customer type: {CustomerKind(customer_type).value}
Declared name: {declared_name or "Unknown"}

Attached files, in order:
{document_context(documents)}

For every file decide:
- detectedName: the person or business name on the document (null if none)
- detectedDocType: what kind of document it actually is, using the slot vocabulary
  (e.g. PAYSLIP, ID_DOCUMENT, INDIVIDUAL_BANK_STATEMENT, TRADE_LICENSE)
- nameMatchesDeclared: whether detectedName plausibly refers to the declared name
- typeMatchesSlot: whether detectedDocType matches the Document Type it was uploaded as
- issues: short, user-facing descriptions of any mismatch (empty list if none)

Return JSON: {{"documentValidations": [{{"slotKey": ..., "expectedDocType": ..., "detectedName": ...,
"detectedDocType": ..., "nameMatchesDeclared": ..., "typeMatchesSlot": ..., "issues": [...]}}]}}
"""
        payload = await self._ask_json(build_document_parts(documents) + [{"type": "input_text", "text": prompt}])
        items = payload.get("documentValidations", []) if isinstance(payload, dict) else []
        return [DocumentValidation.model_validate(item) for item in items]


# ======================
# Profile extraction
# ======================

class AzureProfileExtractor(_AzureCollaborator):
    """Turns uploaded statements, payslips and licenses into a CustomerProfile."""

    system_prompt = "You are a precise data extraction engine for financial documents. Answer in JSON."

    async def extract(self, documents: List[Document], manual: ManualFields) -> CustomerProfile:
        prompt = f"""
You are an expert financial analyst. Analyze the provided documents and the manual inputs below.

Attached Files Context:
{document_context(documents)}

Analysis Rules based on Document Types:
- BANK_STATEMENT: Extract monthly income, recurring expenses, existing loan EMIs. Look for bounced cheques or gambling. Estimate DTI.
- PAYSLIP: Confirm net salary and employment stability.
- ID_DOCUMENT: Extract full name, age/DOB, citizenship.
- TRADE_LICENSE: Extract business start date (to calculate businessAgeMonths) and legal business name.
- PANDL_SUMMARY: Extract average monthly revenue and net profit.
- SALES_DASHBOARD: Use to corroborate revenue stability and seasonality.

Manual Inputs:
- Type: {manual.customer_type.value}
- Goal: {manual.goal}
- Risk Tolerance: {manual.risk_tolerance}
- Name: {manual.name or "Unknown"}
- Citizenship: {manual.citizenship or "Unknown"}
- Residence: {manual.country_of_residence or "Unknown"}

Task:
1. Extract all financial metrics found in the documents.
2. Calculate DTI (total monthly debt payments / gross monthly income) and DSCR
   (net operating income / total debt service) where possible.
3. Identify risk flags (e.g. "High Overdraft Usage", "Declining Revenue").
4. Return ONE JSON object with the keys: customerType, name, age, citizenship, countryOfResidence,
   monthlyIncome, monthlyExpenses, existingLoanEMI, totalCreditCardLimits, totalCreditCardUtilization,
   businessAgeMonths, averageMonthlyRevenue, averageMonthlyNetProfit, bouncedChequesLast12Months,
   latePaymentIncidentsLast12Months, savingsBalanceEstimate, debtToIncomeRatio, dscr, riskFlags, notes.
5. Use null for any value that is missing and cannot be reasonably estimated.
6. For notes, write a brief professional summary of the financial situation (2-3 sentences).
"""
        payload = await self._ask_json(build_document_parts(documents) + [{"type": "input_text", "text": prompt}])
        if not isinstance(payload, dict):
            raise ValueError("Profile extraction returned a non-object payload")
        # The advisor's declarations win over whatever the model guessed
        for key in MANUAL_PROFILE_KEYS:
            payload.pop(key, None)
        payload.update(
            customerType=manual.customer_type.value,
            goal=manual.goal,
            riskTolerance=manual.risk_tolerance,
        )
        return CustomerProfile.model_validate(payload)


# ======================
# Explanations
# ======================

class AzureExplanationGenerator(_AzureCollaborator):
    """Writes customer and advisor explanations. Never raises."""

    system_prompt = "You are a bank relationship manager. Answer with a single JSON object."

    async def explain(
        self, profile: CustomerProfile, product: Product, evaluation: EvaluationResult
    ) -> Explanation:
        templates = product.explanation_templates
        house_line = {
            "APPROVE": templates.approved,
            "REVIEW": templates.review,
            "DECLINE": templates.declined,
        }[evaluation.decision.value]

        prompt = f"""
Write explanations for a product suitability assessment.

Context:
- Product: {product.name} ({product.description})
- Decision: {evaluation.decision.value}
- Reasons: {", ".join(evaluation.reasons)}
- Score: {evaluation.score}
- Customer Profile Summary: Income {profile.monthly_income}, DTI {profile.debt_to_income_ratio}, DSCR {profile.dscr}, Risk Flags: {", ".join(profile.risk_flags)}
- House wording for this outcome: {render_template(house_line, product, profile)}

Return a JSON object with two keys:
1. "customer": A polite, simple explanation addressed to the customer. No jargon. If declined, be constructive.
2. "advisor": A technical explanation for the bank officer, referencing specific metrics (DTI, DSCR, etc.) and risk factors.

Do not promise approval. Use phrases like "appears suitable", "preliminary assessment", "subject to verification".
"""
        try:
            payload = await self._ask_json([{"type": "input_text", "text": prompt}])
        except Exception:
            logger.error("Explanation generation failed for %s", product.id, exc_info=True)
            return FALLBACK_EXPLANATION

        if not isinstance(payload, dict):
            payload = {}
        return Explanation(
            customer=payload.get("customer") or EXPLANATION_MISSING,
            advisor=payload.get("advisor") or EXPLANATION_MISSING,
        )


# ======================
# Product configuration from text
# ======================

class AzureProductGenerator(_AzureCollaborator):
    """Best-effort conversion of a natural-language product description into a Product."""

    async def generate(self, description: str) -> Product:
        prompt = f"""
Convert the following natural language product description into a Product JSON configuration.

Description: "{description}"

Requirements:
- Keys: id, name, category (CREDIT_CARD | PERSONAL_LOAN | SME_LOAN), description,
  targetCustomerType (INDIVIDUAL | SME | BOTH), constraints, scoring, explanationTemplates.
- constraints may use: minAge, maxAge, minMonthlyIncome, minAverageMonthlyRevenue, minBusinessAgeMonths,
  maxDebtToIncome, minDSCR, maxBouncedChequesLast12Months, maxLatePaymentIncidentsLast12Months.
- scoring.weights may use: incomeStability, revenueStability, debtToIncome, dscr, creditUtilization,
  bouncedCheques, latePayments. scoring.thresholds has approve and review (approve >= review >= 0).
- explanationTemplates has approved, review and declined sentences.
- Infer category and strictness from the text.
"""
        try:
            payload = await self._ask_json([{"type": "input_text", "text": prompt}])
        except ConfigurationError:
            raise
        except Exception as exc:
            raise ProductGenerationError(f"Failed to generate product config: {exc}") from exc
        if not isinstance(payload, dict):
            raise ProductGenerationError("Generated configuration is not a JSON object")
        payload.setdefault("id", f"prod_gen_{uuid.uuid4().hex[:8]}")
        try:
            return Product.model_validate(payload)
        except ValidationError as exc:
            raise ProductGenerationError(f"Generated configuration is not a valid product: {exc}") from exc
