# tests/test_pipeline.py

import asyncio
import threading

import pytest

from fairlens.ai_services import EXPLANATION_FAILED
from fairlens.exceptions import DocumentValidationError
from fairlens.models import (
    AnalysisState,
    CustomerKind,
    CustomerProfile,
    DocumentValidation,
    Explanation,
    ErrorCategory,
    ManualFields,
    RunState,
    RunStatus,
    Stage,
)
from fairlens.pipeline import (
    BAD_REQUEST_ERROR_MESSAGE,
    CREDENTIAL_ERROR_MESSAGE,
    GENERIC_ERROR_MESSAGE,
    TIMEOUT_ERROR_MESSAGE,
    UPSTREAM_ERROR_MESSAGE,
    AnalysisOrchestrator,
    classify_error,
    collect_validation_issues,
    merge_manual_fields,
)
from fairlens.session_store import InMemoryBackend, SessionStateStore

from conftest import FakeExplainer, FakeExtractor, FakeValidator


async def wait_for_calls(fake, count=1):
    while fake.calls < count:
        await asyncio.sleep(0)


# ---- happy path ----

@pytest.mark.asyncio
async def test_successful_run_scores_and_explains(orchestrator, payslip):
    orchestrator.add_documents(payslip)

    run = await orchestrator.run_analysis()
    state = orchestrator.snapshot()

    assert run.status == RunStatus.SUCCESS
    assert run.stage == Stage.COMPLETE
    assert run.progress == 100
    assert run.error is None
    assert state.profile.name == "Jane Doe"
    assert [e.product_id for e in state.evaluations] == ["prod_cc_001", "prod_pl_001"]
    assert state.evaluations[0].customer_explanation == "Customer text for Everyday Cashback Platinum"
    assert not any(e.explanations_pending for e in state.evaluations)


@pytest.mark.asyncio
async def test_results_are_written_through_to_the_store(orchestrator, store):
    await orchestrator.run_analysis()

    restored = store.load()

    assert restored.run.status == RunStatus.SUCCESS
    assert restored.evaluations == orchestrator.snapshot().evaluations
    assert restored.manual_fields.name == "Jane Doe"


@pytest.mark.asyncio
async def test_scores_are_published_before_explanations(orchestrator):
    snapshots = []
    orchestrator.subscribe(snapshots.append)

    await orchestrator.run_analysis()

    scored = [s for s in snapshots if s.run.stage == Stage.EXPLAINING and s.run.progress == 70]
    assert scored
    assert len(scored[0].evaluations) == 2
    assert all(e.explanations_pending for e in scored[0].evaluations)


@pytest.mark.asyncio
async def test_progress_never_moves_backwards(orchestrator):
    snapshots = []
    orchestrator.subscribe(snapshots.append)

    run = await orchestrator.run_analysis()

    progress = [s.run.progress for s in snapshots if s.run.run_id == run.run_id]
    assert progress == sorted(progress)
    assert progress[0] == 0
    assert progress[-1] == 100
    assert 30 in progress and 60 in progress and 70 in progress
    assert max(p for p in progress if p < 100) == 95


@pytest.mark.asyncio
async def test_unsubscribed_listener_stops_receiving_snapshots(orchestrator):
    kept, dropped = [], []
    orchestrator.subscribe(kept.append)
    unsubscribe = orchestrator.subscribe(dropped.append)

    orchestrator.update_manual_fields(goal="PERSONAL_LOAN")
    unsubscribe()
    unsubscribe()
    await orchestrator.run_analysis()

    assert len(dropped) == 1
    assert len(kept) > 1


class ThreadRecordingBackend(InMemoryBackend):
    """In-memory backend that remembers which thread performed each write."""

    def __init__(self):
        super().__init__()
        self.write_threads = []

    def write(self, key, payload):
        self.write_threads.append(threading.get_ident())
        super().write(key, payload)


@pytest.mark.asyncio
async def test_store_writes_run_off_the_event_loop_in_commit_order(validator, extractor, explainer, catalog):
    backend = ThreadRecordingBackend()
    store = SessionStateStore(backend)
    orch = AnalysisOrchestrator(validator, extractor, explainer, catalog=catalog, store=store, call_timeout=None)

    run = await orch.run_analysis()

    assert backend.write_threads
    assert threading.get_ident() not in backend.write_threads
    assert store.load().run.status == RunStatus.SUCCESS
    assert store.load().run.run_id == run.run_id


@pytest.mark.asyncio
async def test_manual_identity_overrides_extracted_profile(validator, explainer, catalog):
    extracted = CustomerProfile(customer_type=CustomerKind.SME, name="J. Doe", citizenship="Unknown")
    orch = AnalysisOrchestrator(validator, FakeExtractor(profile=extracted), explainer, catalog=catalog, call_timeout=None)
    orch.update_manual_fields(name="Jane Doe", citizenship="UAE")

    await orch.run_analysis()
    profile = orch.snapshot().profile

    assert profile.customer_type == CustomerKind.INDIVIDUAL
    assert profile.name == "Jane Doe"
    assert profile.citizenship == "UAE"
    assert profile.country_of_residence == "UAE"


# ---- failures ----

@pytest.mark.asyncio
async def test_one_failed_explanation_does_not_fail_the_run(validator, extractor, catalog):
    explainer = FakeExplainer(failing={"prod_pl_001"})
    orch = AnalysisOrchestrator(validator, extractor, explainer, catalog=catalog, call_timeout=None)

    run = await orch.run_analysis()
    first, second = orch.snapshot().evaluations

    assert run.status == RunStatus.SUCCESS
    assert sorted(explainer.calls) == ["prod_cc_001", "prod_pl_001"]
    assert first.customer_explanation == "Customer text for Everyday Cashback Platinum"
    assert first.advisor_explanation == "Advisor text for prod_cc_001"
    assert second.customer_explanation == EXPLANATION_FAILED
    assert second.advisor_explanation == EXPLANATION_FAILED


@pytest.mark.asyncio
async def test_validation_issue_fails_run_before_extraction(extractor, explainer, catalog, payslip):
    validator = FakeValidator(validations=[
        DocumentValidation(
            slot_key="PAYSLIP",
            expected_doc_type="PAYSLIP",
            detected_doc_type="ID_DOCUMENT",
            type_matches_slot=False,
            issues=["Uploaded file is not a payslip."],
        )
    ])
    orch = AnalysisOrchestrator(validator, extractor, explainer, catalog=catalog, call_timeout=None)
    orch.add_documents(payslip)

    run = await orch.run_analysis()
    state = orch.snapshot()

    assert run.status == RunStatus.FAILED
    assert run.error_category == ErrorCategory.VALIDATION
    assert run.error == "Document Validation Failed:\n• Uploaded file is not a payslip."
    assert extractor.calls == 0
    assert state.profile == AnalysisState().profile
    assert state.evaluations == []


@pytest.mark.asyncio
async def test_extraction_error_is_classified(validator, explainer, catalog):
    extractor = FakeExtractor(error=RuntimeError("Error code: 401 - Incorrect API key provided"))
    orch = AnalysisOrchestrator(validator, extractor, explainer, catalog=catalog, call_timeout=None)

    run = await orch.run_analysis()

    assert run.status == RunStatus.FAILED
    assert run.error_category == ErrorCategory.CREDENTIAL
    assert run.error == CREDENTIAL_ERROR_MESSAGE
    assert orch.snapshot().evaluations == []
    assert explainer.calls == []


@pytest.mark.asyncio
async def test_slow_collaborator_times_out(validator, explainer, catalog):
    extractor = FakeExtractor()
    extractor.gate = asyncio.Event()
    orch = AnalysisOrchestrator(validator, extractor, explainer, catalog=catalog, call_timeout=0.01)

    run = await orch.run_analysis()

    assert run.status == RunStatus.FAILED
    assert run.error_category == ErrorCategory.TIMEOUT
    assert run.error == TIMEOUT_ERROR_MESSAGE


@pytest.mark.asyncio
async def test_quota_failure_does_not_break_the_run(validator, extractor, explainer, catalog):
    store = SessionStateStore(InMemoryBackend(max_bytes=10))
    orch = AnalysisOrchestrator(validator, extractor, explainer, catalog=catalog, store=store, call_timeout=None)

    run = await orch.run_analysis()

    assert run.status == RunStatus.SUCCESS
    assert store.backend.data == {}


# ---- cancellation ----

@pytest.mark.asyncio
async def test_cancel_discards_in_flight_run(orchestrator, extractor):
    extractor.gate = asyncio.Event()
    task = asyncio.create_task(orchestrator.run_analysis())
    await wait_for_calls(extractor)

    assert orchestrator.cancel() is True
    assert orchestrator.run_state.status == RunStatus.IDLE
    assert orchestrator.run_state.progress == 0

    extractor.gate.set()
    run = await task
    state = orchestrator.snapshot()

    assert run.status == RunStatus.IDLE
    assert state.evaluations == []
    assert state.profile == AnalysisState().profile


def test_cancel_without_a_running_analysis_is_a_no_op(orchestrator):
    assert orchestrator.cancel() is False
    assert orchestrator.run_state.status == RunStatus.IDLE


class GatedExplainer:
    """Holds every explanation call until `gate` is set."""

    def __init__(self):
        self.gate = asyncio.Event()
        self.calls = 0

    async def explain(self, profile, product, evaluation):
        self.calls += 1
        await self.gate.wait()
        return Explanation(customer="late customer text", advisor="late advisor text")


class FailingSecondCallValidator:
    """First call passes; every later call fails like an upstream outage."""

    def __init__(self):
        self.calls = 0

    async def validate(self, documents, customer_type, declared_name):
        self.calls += 1
        if self.calls > 1:
            raise RuntimeError("Error code: 500 - service unavailable")
        return []


@pytest.mark.asyncio
async def test_cancel_during_explanations_rolls_back_published_scores(validator, extractor, catalog, store):
    explainer = GatedExplainer()
    orch = AnalysisOrchestrator(validator, extractor, explainer, catalog=catalog, store=store, call_timeout=None)
    task = asyncio.create_task(orch.run_analysis())
    await wait_for_calls(explainer, 2)
    assert len(orch.snapshot().evaluations) == 2

    assert orch.cancel() is True
    state = orch.snapshot()
    assert state.evaluations == []
    assert state.profile == AnalysisState().profile

    explainer.gate.set()
    run = await task
    state = orch.snapshot()

    assert run.status == RunStatus.IDLE
    assert state.evaluations == []
    assert state.profile == AnalysisState().profile
    assert store.load().evaluations == []


@pytest.mark.asyncio
async def test_failed_newer_run_does_not_show_superseded_results(extractor, catalog):
    explainer = GatedExplainer()
    orch = AnalysisOrchestrator(FailingSecondCallValidator(), extractor, explainer, catalog=catalog, call_timeout=None)
    run_a = asyncio.create_task(orch.run_analysis())
    await wait_for_calls(explainer, 2)

    run_b = await orch.run_analysis()
    explainer.gate.set()
    await run_a
    state = orch.snapshot()

    assert run_b.status == RunStatus.FAILED
    assert run_b.error_category == ErrorCategory.UPSTREAM
    assert state.run.run_id == run_b.run_id
    assert state.run.status == RunStatus.FAILED
    assert state.evaluations == []
    assert state.profile == AnalysisState().profile


@pytest.mark.asyncio
async def test_cancelled_run_restores_results_of_the_last_finished_run(orchestrator, extractor):
    first = await orchestrator.run_analysis()
    finished = orchestrator.snapshot().evaluations

    extractor.gate = asyncio.Event()
    run_a = asyncio.create_task(orchestrator.run_analysis())
    await wait_for_calls(extractor, 2)
    assert orchestrator.cancel() is True
    extractor.gate.set()
    await run_a

    assert first.status == RunStatus.SUCCESS
    assert orchestrator.snapshot().evaluations == finished


class SequencedExtractor:
    """First call blocks until released and returns a poor profile; later calls return a strong one."""

    def __init__(self):
        self.release_first = asyncio.Event()
        self.calls = 0

    async def extract(self, documents, manual):
        self.calls += 1
        if self.calls == 1:
            await self.release_first.wait()
            return CustomerProfile(customer_type=manual.customer_type, age=30, monthly_income=1)
        return CustomerProfile(
            customer_type=manual.customer_type,
            age=30,
            monthly_income=12000,
            debt_to_income_ratio=0.2,
            total_credit_card_utilization=0.1,
        )


@pytest.mark.asyncio
async def test_newer_run_supersedes_in_flight_run(validator, explainer, catalog, store):
    extractor = SequencedExtractor()
    orch = AnalysisOrchestrator(validator, extractor, explainer, catalog=catalog, store=store, call_timeout=None)
    snapshots = []
    orch.subscribe(snapshots.append)

    run_a = asyncio.create_task(orch.run_analysis())
    await wait_for_calls(extractor)
    run_b = await orch.run_analysis()

    extractor.release_first.set()
    await run_a
    state = orch.snapshot()

    assert run_b.status == RunStatus.SUCCESS
    assert state.run.run_id == run_b.run_id
    assert state.run.status == RunStatus.SUCCESS
    assert state.profile.monthly_income == 12000
    assert all(s.profile.monthly_income != 1 for s in snapshots)
    assert store.load().profile.monthly_income == 12000


@pytest.mark.asyncio
async def test_run_ids_are_unique(orchestrator):
    first = await orchestrator.run_analysis()
    second = await orchestrator.run_analysis()

    assert first.run_id != second.run_id


def test_run_sync_for_synchronous_hosts(orchestrator):
    run = orchestrator.run_sync()

    assert run.status == RunStatus.SUCCESS


# ---- inputs and session ----

def test_residence_defaults_to_citizenship(validator, extractor, explainer, catalog):
    orch = AnalysisOrchestrator(validator, extractor, explainer, catalog=catalog, call_timeout=None)

    orch.update_manual_fields(citizenship="UAE")
    orch.update_manual_fields(citizenship="India")

    manual = orch.snapshot().manual_fields
    assert manual.citizenship == "India"
    assert manual.country_of_residence == "UAE"


def test_readiness_lists_missing_inputs_and_documents(validator, extractor, explainer, catalog, payslip):
    orch = AnalysisOrchestrator(validator, extractor, explainer, catalog=catalog, call_timeout=None)
    orch.add_documents(payslip)

    readiness = orch.readiness()

    assert readiness["inputs"] == ["country_of_residence", "citizenship", "name"]
    assert readiness["documents"] == ["INDIVIDUAL_BANK_STATEMENT", "ID_DOCUMENT"]


def test_remove_document(orchestrator, payslip):
    orchestrator.add_documents(payslip, payslip)

    assert orchestrator.remove_document("payslip.pdf", "PAYSLIP") == []


@pytest.mark.asyncio
async def test_clear_session_resets_state_and_store(orchestrator, store, backend):
    await orchestrator.run_analysis()

    orchestrator.clear_session()
    await orchestrator.flush()

    assert orchestrator.snapshot().evaluations == []
    assert orchestrator.snapshot().manual_fields == ManualFields()
    assert backend.data == {}


def test_hydrate_resets_a_run_that_was_in_flight(validator, extractor, explainer, catalog, store):
    stale = AnalysisState(
        manual_fields=ManualFields(name="Jane Doe"),
        run=RunState(run_id="run-0001-deadbeef", status=RunStatus.RUNNING, stage=Stage.EXTRACTING, progress=30),
    )
    store.save(stale)

    orch = AnalysisOrchestrator(validator, extractor, explainer, catalog=catalog, store=store, call_timeout=None)

    assert orch.snapshot().manual_fields.name == "Jane Doe"
    assert orch.run_state.status == RunStatus.IDLE
    assert orch.run_state.progress == 0
    assert orch.current_run_id is None


def test_hydrate_reloads_the_saved_snapshot(orchestrator, store):
    store.save(AnalysisState(manual_fields=ManualFields(name="Saved Name")))

    state = orchestrator.hydrate()

    assert state.manual_fields.name == "Saved Name"
    assert orchestrator.snapshot().manual_fields.name == "Saved Name"


# ---- helpers ----

@pytest.mark.parametrize(
    "exc, category, message",
    [
        (RuntimeError("Error code: 401"), ErrorCategory.CREDENTIAL, CREDENTIAL_ERROR_MESSAGE),
        (RuntimeError("Missing API key"), ErrorCategory.CREDENTIAL, CREDENTIAL_ERROR_MESSAGE),
        (RuntimeError("Error code: 400 - bad image"), ErrorCategory.BAD_REQUEST, BAD_REQUEST_ERROR_MESSAGE),
        (RuntimeError("Error code: 500"), ErrorCategory.UPSTREAM, UPSTREAM_ERROR_MESSAGE),
        (RuntimeError("401 then 500"), ErrorCategory.UPSTREAM, UPSTREAM_ERROR_MESSAGE),
        (TimeoutError(), ErrorCategory.TIMEOUT, TIMEOUT_ERROR_MESSAGE),
        (RuntimeError("Request timed out."), ErrorCategory.TIMEOUT, TIMEOUT_ERROR_MESSAGE),
        (ValueError("something odd"), ErrorCategory.UNKNOWN, GENERIC_ERROR_MESSAGE),
    ],
)
def test_classify_error(exc, category, message):
    assert classify_error(exc) == (category, message)


def test_classify_error_passes_validation_text_through():
    exc = DocumentValidationError(["First issue", "Error code 500 lookalike"])

    assert classify_error(exc) == (
        ErrorCategory.VALIDATION,
        "Document Validation Failed:\n• First issue\n• Error code 500 lookalike",
    )


def test_collect_validation_issues_uses_templates_when_validator_is_silent():
    validations = [
        DocumentValidation(slot_key="ID_DOCUMENT", expected_doc_type="ID_DOCUMENT", detected_name="John Roe",
                           name_matches_declared=False),
        DocumentValidation(slot_key="PAYSLIP", expected_doc_type="PAYSLIP", detected_doc_type="INVOICE",
                           type_matches_slot=False),
        DocumentValidation(slot_key="ADDRESS_PROOF", expected_doc_type="ADDRESS_PROOF"),
    ]

    assert collect_validation_issues(validations, "Jane Doe") == [
        "Name mismatch in ID_DOCUMENT: Expected 'Jane Doe', found 'John Roe'.",
        "Type mismatch in PAYSLIP: Expected PAYSLIP, found INVOICE.",
    ]


def test_merge_manual_fields_skips_empty_values():
    extracted = CustomerProfile(customer_type=CustomerKind.INDIVIDUAL, name="From Document", goal="MORTGAGE")
    manual = ManualFields(customer_type=CustomerKind.SME, name="", goal=None, citizenship="UAE")

    merged = merge_manual_fields(extracted, manual)

    assert merged.customer_type == CustomerKind.SME
    assert merged.name == "From Document"
    assert merged.goal == "MORTGAGE"
    assert merged.citizenship == "UAE"
    assert merged.risk_tolerance == "MEDIUM"
