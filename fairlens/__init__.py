# FairLens package
# Suitability scoring engine, analysis pipeline and session persistence

from fairlens.catalog import ProductCatalog, default_catalog
from fairlens.models import (
    AnalysisState,
    CustomerKind,
    CustomerProfile,
    Decision,
    Document,
    EvaluationResult,
    ManualFields,
    Product,
    RunStatus,
)
from fairlens.pipeline import AnalysisOrchestrator
from fairlens.scoring import evaluate
from fairlens.session_store import SessionStateStore

__all__ = [
    "AnalysisOrchestrator",
    "AnalysisState",
    "CustomerKind",
    "CustomerProfile",
    "Decision",
    "Document",
    "EvaluationResult",
    "ManualFields",
    "Product",
    "ProductCatalog",
    "RunStatus",
    "SessionStateStore",
    "default_catalog",
    "evaluate",
]
