import asyncio

import pytest

from fairlens.catalog import default_catalog
from fairlens.models import (
    CustomerKind,
    CustomerProfile,
    Document,
    Explanation,
    Product,
)
from fairlens.pipeline import AnalysisOrchestrator
from fairlens.session_store import InMemoryBackend, SessionStateStore


class FakeValidator:
    """Returns canned validations, or raises the configured error."""

    def __init__(self, validations=None, error=None):
        self.validations = validations or []
        self.error = error
        self.calls = 0

    async def validate(self, documents, customer_type, declared_name):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.validations)


class FakeExtractor:
    """Returns a fixed profile. Set `gate` to hold the call until the event fires."""

    def __init__(self, profile=None, error=None):
        self.profile = profile
        self.error = error
        self.gate = None
        self.calls = 0

    async def extract(self, documents, manual):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        if self.profile is None:
            return CustomerProfile(customer_type=manual.customer_type)
        return self.profile.model_copy()


class FakeExplainer:
    """Writes predictable text; products listed in `failing` raise instead."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []

    async def explain(self, profile, product, evaluation):
        self.calls.append(product.id)
        await asyncio.sleep(0)
        if product.id in self.failing:
            raise RuntimeError("Error code: 500 - upstream exploded")
        return Explanation(
            customer=f"Customer text for {product.name}",
            advisor=f"Advisor text for {product.id}",
        )


@pytest.fixture
def catalog():
    return default_catalog()


@pytest.fixture
def good_individual_profile():
    return CustomerProfile(
        customer_type=CustomerKind.INDIVIDUAL,
        name="Jane Doe",
        age=35,
        monthly_income=12000,
        debt_to_income_ratio=0.2,
        total_credit_card_utilization=0.1,
        bounced_cheques_last_12_months=0,
        late_payment_incidents_last_12_months=0,
    )


@pytest.fixture
def make_product():
    """Factory for ad-hoc products; keyword arguments override the defaults."""

    def _make(**overrides):
        config = {
            "id": "prod_test",
            "name": "Test Product",
            "category": "PERSONAL_LOAN",
            "targetCustomerType": "INDIVIDUAL",
            "constraints": {},
            "scoring": {"weights": {}, "thresholds": {"approve": 0.7, "review": 0.4}},
        }
        config.update(overrides)
        return Product.model_validate(config)

    return _make


@pytest.fixture
def payslip():
    return Document.from_bytes("payslip.pdf", "application/pdf", b"%PDF-1.4 payslip", "PAYSLIP")


@pytest.fixture
def backend():
    return InMemoryBackend()


@pytest.fixture
def store(backend):
    return SessionStateStore(backend, key="test_session")


@pytest.fixture
def validator():
    return FakeValidator()


@pytest.fixture
def extractor(good_individual_profile):
    return FakeExtractor(profile=good_individual_profile)


@pytest.fixture
def explainer():
    return FakeExplainer()


@pytest.fixture
def orchestrator(validator, extractor, explainer, catalog, store):
    orch = AnalysisOrchestrator(
        validator, extractor, explainer, catalog=catalog, store=store, call_timeout=None
    )
    orch.update_manual_fields(name="Jane Doe", citizenship="UAE")
    return orch
