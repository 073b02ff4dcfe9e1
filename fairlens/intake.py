"""
Intake requirements: which document slots and manual inputs each customer
kind needs, plus helpers for the append-only document list.
"""

from typing import Any, Dict, Iterable, List, NamedTuple

from fairlens.models import CustomerKind, Document, ManualFields


class DocumentRequirement(NamedTuple):
    label: str
    required: bool
    description: str = ""


REQUIREMENT_CONFIG: Dict[CustomerKind, Dict[str, Dict[str, Any]]] = {
    CustomerKind.INDIVIDUAL: {
        "documents": {
            "INDIVIDUAL_BANK_STATEMENT": DocumentRequirement(
                "Recent bank statement (PDF or image)", True,
                "Used to estimate income, expenses, and cash flow.",
            ),
            "PAYSLIP": DocumentRequirement(
                "Latest payslip (PDF or image)", True,
                "Used to validate salary and allowances for salaried customers.",
            ),
            "ID_DOCUMENT": DocumentRequirement(
                "ID / Passport (image or PDF)", True,
                "Used to enrich identity details.",
            ),
            "ADDRESS_PROOF": DocumentRequirement(
                "Proof of address (utility bill)", False,
                "Used to verify country and city of residence.",
            ),
        },
        "inputs": {
            "goal": True,
            "risk_tolerance": False,
            "country_of_residence": True,
            "citizenship": True,
            "name": True,
        },
    },
    CustomerKind.SME: {
        "documents": {
            "SME_BANK_STATEMENT": DocumentRequirement(
                "Latest business bank statement (PDF or image)", True,
                "Used to estimate revenue, expenses, and cash flow stability.",
            ),
            "TRADE_LICENSE": DocumentRequirement(
                "Trade license / commercial registration", True,
                "Used to derive business age and legal details.",
            ),
            "PANDL_SUMMARY": DocumentRequirement(
                "Management accounts / P&L summary", False,
                "Used to derive profitability and margins.",
            ),
            "SALES_DASHBOARD": DocumentRequirement(
                "Sales dashboard screenshot", False,
                "Used to understand sales patterns and seasonality (POS/Stripe).",
            ),
        },
        "inputs": {
            # For SMEs "name" is the business name and residence the jurisdiction
            "name": True,
            "goal": True,
            "country_of_residence": True,
        },
    },
}


def document_slots(kind: CustomerKind) -> Dict[str, DocumentRequirement]:
    return REQUIREMENT_CONFIG[CustomerKind(kind)]["documents"]


def missing_inputs(manual: ManualFields) -> List[str]:
    """Required manual inputs that are empty for the declared customer kind."""
    missing = []
    for field_name, required in REQUIREMENT_CONFIG[manual.customer_type]["inputs"].items():
        if not required:
            continue
        value = getattr(manual, field_name)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(field_name)
    return missing


def missing_documents(documents: Iterable[Document], kind: CustomerKind) -> List[str]:
    """Required slots with no document assigned."""
    filled = {document.doc_type for document in documents}
    return [
        slot for slot, requirement in document_slots(kind).items()
        if requirement.required and slot not in filled
    ]


def add_documents(documents: List[Document], new_documents: Iterable[Document]) -> List[Document]:
    """Append uploads. Existing entries are never replaced."""
    return list(documents) + list(new_documents)


def remove_document(documents: List[Document], name: str, doc_type: str) -> List[Document]:
    """Drop every document matching the (name, slot) pair."""
    return [d for d in documents if not (d.name == name and d.doc_type == doc_type)]


def document_context(documents: Iterable[Document]) -> str:
    """One line per document naming its file and slot, for model prompts."""
    return "\n".join(
        f"File Name: {d.name}, Document Type: {d.doc_type or 'UNKNOWN'}" for d in documents
    )
