"""
Analysis pipeline orchestrator.

Runs one end-to-end analysis (validate documents, extract profile, score
products, generate explanations) for the current session inputs, reports
progress, and lets an in-flight run be cancelled or superseded without
corrupting the state of the next one.
"""

import asyncio
import itertools
import logging
import threading
import uuid
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from fairlens import config
from fairlens.ai_services import (
    FALLBACK_EXPLANATION,
    DocumentValidator,
    ExplanationGenerator,
    ProfileExtractor,
)
from fairlens.catalog import ProductCatalog, default_catalog
from fairlens.exceptions import DocumentValidationError, RunCancelled
from fairlens.intake import add_documents, missing_documents, missing_inputs, remove_document
from fairlens.models import (
    AnalysisState,
    CustomerProfile,
    Document,
    DocumentValidation,
    ErrorCategory,
    EvaluationResult,
    ManualFields,
    Product,
    RunState,
    RunStatus,
    Stage,
    utcnow,
)
from fairlens.scoring import evaluate_all
from fairlens.session_store import SessionStateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Progress reached at the end of each stage
VALIDATED_PROGRESS = 30.0
EXTRACTED_PROGRESS = 60.0
SCORED_PROGRESS = 70.0
EXPLANATION_SPAN = 25.0
EXPLANATION_CAP = 95.0
COMPLETE_PROGRESS = 100.0

GENERIC_ERROR_MESSAGE = "Analysis failed. Please try again."
CREDENTIAL_ERROR_MESSAGE = "Invalid or missing API Key."
BAD_REQUEST_ERROR_MESSAGE = "Bad Request: The AI could not process these documents."
UPSTREAM_ERROR_MESSAGE = "Server Error: The AI service is currently experiencing issues."
TIMEOUT_ERROR_MESSAGE = "The AI service did not respond in time. Please try again."

IDENTITY_FIELDS = ("name", "citizenship", "country_of_residence", "goal", "risk_tolerance")

_UNSET = object()


# ======================
# Helpers
# ======================

def collect_validation_issues(validations: List[DocumentValidation], declared_name: Optional[str]) -> List[str]:
    """Issue strings for every document failing its name or type check.

    The validator's own issue text wins; templated messages are used only when
    it gave none.
    """
    issues = []
    for validation in validations:
        if validation.name_matches_declared and validation.type_matches_slot:
            continue
        if validation.issues:
            issues.extend(validation.issues)
            continue
        if not validation.name_matches_declared:
            issues.append(
                f"Name mismatch in {validation.slot_key}: "
                f"Expected '{declared_name}', found '{validation.detected_name}'."
            )
        if not validation.type_matches_slot:
            issues.append(
                f"Type mismatch in {validation.slot_key}: "
                f"Expected {validation.expected_doc_type}, found {validation.detected_doc_type}."
            )
    return issues


def merge_manual_fields(profile: CustomerProfile, manual: ManualFields) -> CustomerProfile:
    """Overlay the advisor's identity claims on an extracted profile."""
    updates = {"customer_type": manual.customer_type}
    for field_name in IDENTITY_FIELDS:
        value = getattr(manual, field_name)
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        updates[field_name] = value
    return profile.model_copy(update=updates)


def classify_error(exc: BaseException) -> Tuple[ErrorCategory, str]:
    """Map a raw failure to a user-facing category and message.

    Display only: the outcome never changes control flow.
    """
    if isinstance(exc, DocumentValidationError):
        return ErrorCategory.VALIDATION, str(exc)

    text = str(exc)
    lowered = text.lower()
    if isinstance(exc, TimeoutError) or "timed out" in lowered:
        return ErrorCategory.TIMEOUT, TIMEOUT_ERROR_MESSAGE

    category, message = ErrorCategory.UNKNOWN, GENERIC_ERROR_MESSAGE
    # Later markers take precedence
    if "api key" in lowered or "401" in text:
        category, message = ErrorCategory.CREDENTIAL, CREDENTIAL_ERROR_MESSAGE
    if "400" in text:
        category, message = ErrorCategory.BAD_REQUEST, BAD_REQUEST_ERROR_MESSAGE
    if "500" in text:
        category, message = ErrorCategory.UPSTREAM, UPSTREAM_ERROR_MESSAGE
    return category, message


_loop: Optional[asyncio.AbstractEventLoop] = None


def run_async(coro):
    """Helper to run an async coroutine in synchronous context (e.g., Streamlit).

    Reuses one event loop so cached async clients stay bound to a live loop.
    """
    global _loop

    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
    return _loop.run_until_complete(coro)


async def _run_after(previous: Optional[asyncio.Task], operation: Callable[..., object], *args) -> None:
    """Wait for the previous store operation, then run this one in a worker thread."""
    if previous is not None and not previous.done():
        await previous
    await asyncio.to_thread(operation, *args)


# ======================
# Cancellation token
# ======================

class RunToken:
    """Identity of one run. Stale as soon as another run starts or it is cancelled."""

    def __init__(self, run_id: str, orchestrator: "AnalysisOrchestrator"):
        self.run_id = run_id
        self._orchestrator = orchestrator

    @property
    def is_current(self) -> bool:
        return self._orchestrator.current_run_id == self.run_id

    def ensure_current(self) -> None:
        if not self.is_current:
            raise RunCancelled(self.run_id)

    def __repr__(self) -> str:
        return f"RunToken({self.run_id!r}, current={self.is_current})"


# ======================
# Orchestrator
# ======================

class AnalysisOrchestrator:
    """Owns the analysis state of one client session and runs the pipeline over it.

    Attributes:
        validator: Document Validator collaborator
        extractor: Profile Extractor collaborator
        explainer: Explanation Generator collaborator
        catalog: Products to score
        store: Optional session store; every state change is written through
        call_timeout: Seconds allowed per collaborator call, None for no limit
    """

    def __init__(
        self,
        validator: DocumentValidator,
        extractor: ProfileExtractor,
        explainer: ExplanationGenerator,
        catalog: Optional[ProductCatalog] = None,
        store: Optional[SessionStateStore] = None,
        call_timeout=_UNSET,
    ):
        self.validator = validator
        self.extractor = extractor
        self.explainer = explainer
        self.catalog = catalog if catalog is not None else default_catalog()
        self.store = store
        self.call_timeout = config.get_call_timeout() if call_timeout is _UNSET else call_timeout

        self._lock = threading.RLock()
        self._run_counter = itertools.count(1)
        self._current_run_id: Optional[str] = None
        self._listeners: List[Callable[[AnalysisState], None]] = []
        self._pending_write: Optional[asyncio.Task] = None
        # Profile and evaluations as they were before the running analysis started
        self._baseline: Optional[Tuple[CustomerProfile, List[EvaluationResult]]] = None
        self._state = self._load_state()

    # ---- state access ----

    @property
    def current_run_id(self) -> Optional[str]:
        return self._current_run_id

    def snapshot(self) -> AnalysisState:
        """Deep copy of the observable state."""
        with self._lock:
            return self._state.model_copy(deep=True)

    @property
    def run_state(self) -> RunState:
        return self.snapshot().run

    def subscribe(self, listener: Callable[[AnalysisState], None]) -> Callable[[], None]:
        """Register a callback receiving a snapshot after every state change.

        Returns:
            A function that removes the listener again
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _load_state(self) -> AnalysisState:
        if self.store is None:
            return AnalysisState()
        state = self.store.load()
        if state.run.status == RunStatus.RUNNING:
            # The run that was in flight died with the previous process
            state.run = state.run.model_copy(update={"status": RunStatus.IDLE, "stage": None, "progress": 0.0})
        return state

    def hydrate(self) -> AnalysisState:
        """Reload the last saved snapshot, dropping any in-flight run."""
        with self._lock:
            self._current_run_id = None
            self._baseline = None
            self._state = self._load_state()
            self._publish(persist=False)
            return self._state.model_copy(deep=True)

    def _publish(self, persist: bool = True) -> None:
        """Write through to the store and notify listeners. Caller holds the lock."""
        snapshot = self._state.model_copy(deep=True)
        if persist and self.store is not None:
            self._persist(self.store.save, snapshot)
        if self._listeners:
            for listener in list(self._listeners):
                try:
                    listener(snapshot)
                except Exception:
                    logger.exception("State listener failed")

    def _persist(self, operation: Callable[..., object], *args) -> None:
        """Run a store operation without blocking a running event loop.

        Inside a loop the operation is queued behind earlier ones and executed
        on a worker thread, so writes reach the store in commit order. Outside
        a loop it runs inline.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            operation(*args)
            return
        self._pending_write = loop.create_task(_run_after(self._pending_write, operation, *args))

    async def flush(self) -> None:
        """Wait until every queued store operation has finished."""
        pending = self._pending_write
        if pending is not None and not pending.done():
            await pending

    def _snapshot_baseline(self) -> None:
        self._baseline = (
            self._state.profile.model_copy(deep=True),
            [evaluation.model_copy() for evaluation in self._state.evaluations],
        )

    def _restore_baseline(self) -> None:
        """Drop whatever the interrupted run published. Caller holds the lock."""
        if self._baseline is None:
            return
        profile, evaluations = self._baseline
        self._state.profile = profile.model_copy(deep=True)
        self._state.evaluations = [evaluation.model_copy() for evaluation in evaluations]

    def _touch(self) -> None:
        self._state.run.last_active = utcnow()

    def _commit(self, token: RunToken, **changes) -> None:
        """Apply run-scoped changes if the token is still current.

        Keys matching AnalysisState fields replace those fields; the rest are
        applied to RunState. Progress never moves backwards within a run.

        Raises:
            RunCancelled: If the run is no longer current
        """
        with self._lock:
            token.ensure_current()
            run_changes = {}
            for key, value in changes.items():
                if key in AnalysisState.model_fields:
                    setattr(self._state, key, value)
                else:
                    run_changes[key] = value
            if "progress" in run_changes:
                run_changes["progress"] = max(self._state.run.progress, run_changes["progress"])
            if run_changes:
                self._state.run = self._state.run.model_copy(update=run_changes)
            self._publish()

    def _commit_if_current(self, token: RunToken, **changes) -> bool:
        """Like _commit, but a stale run's write is dropped instead of raising."""
        try:
            self._commit(token, **changes)
        except RunCancelled:
            return False
        return True

    async def _call(self, awaitable: Awaitable[T]) -> T:
        if self.call_timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=self.call_timeout)

    # ---- inputs ----

    def update_manual_fields(self, **changes) -> ManualFields:
        """Merge advisor input. Residence defaults to citizenship when left empty."""
        with self._lock:
            current = self._state.manual_fields
            updated = ManualFields.model_validate({**current.model_dump(), **changes})
            if "citizenship" in changes and updated.citizenship and not current.country_of_residence \
                    and "country_of_residence" not in changes:
                updated = updated.model_copy(update={"country_of_residence": updated.citizenship})
            self._state.manual_fields = updated
            self._touch()
            self._publish()
            return updated

    def add_documents(self, *documents: Document) -> List[Document]:
        with self._lock:
            self._state.documents = add_documents(self._state.documents, documents)
            self._touch()
            self._publish()
            return list(self._state.documents)

    def remove_document(self, name: str, doc_type: str) -> List[Document]:
        with self._lock:
            self._state.documents = remove_document(self._state.documents, name, doc_type)
            self._touch()
            self._publish()
            return list(self._state.documents)

    def readiness(self) -> Dict[str, List[str]]:
        """Required inputs and document slots that are still empty."""
        with self._lock:
            manual = self._state.manual_fields
            return {
                "inputs": missing_inputs(manual),
                "documents": missing_documents(self._state.documents, manual.customer_type),
            }

    def clear_session(self) -> None:
        """Forget inputs and results, invalidate any in-flight run, drop the saved snapshot.

        Inside an event loop the snapshot is dropped after queued writes; await
        flush() to wait for it.
        """
        with self._lock:
            self._current_run_id = None
            self._baseline = None
            self._state = AnalysisState()
            if self.store is not None:
                self._persist(self.store.clear)
            self._publish(persist=False)

    # ---- run control ----

    def start_run(self) -> RunToken:
        """Mint a fresh run id, make it current and mark the state running.

        A run still in flight is superseded: whatever it already published is
        rolled back before the new run starts.
        """
        with self._lock:
            if self._state.run.status == RunStatus.RUNNING:
                self._restore_baseline()
            else:
                self._snapshot_baseline()
            run_id = f"run-{next(self._run_counter):04d}-{uuid.uuid4().hex[:8]}"
            self._current_run_id = run_id
            self._state.run = RunState(
                run_id=run_id,
                stage=Stage.VALIDATING,
                status=RunStatus.RUNNING,
                progress=0.0,
                last_active=utcnow(),
            )
            self._publish()
        logger.info("Analysis %s started", run_id)
        return RunToken(run_id, self)

    def cancel(self) -> bool:
        """Invalidate the running analysis and roll back what it published.

        Returns False when nothing was running.
        """
        with self._lock:
            if self._state.run.status != RunStatus.RUNNING:
                return False
            logger.info("Analysis %s cancelled", self._current_run_id)
            self._current_run_id = None
            self._restore_baseline()
            self._state.run = self._state.run.model_copy(
                update={"status": RunStatus.IDLE, "stage": None, "progress": 0.0}
            )
            self._publish()
            return True

    async def run_analysis(self) -> RunState:
        """Run the whole pipeline for the current inputs.

        Returns:
            The run state once this run finished, failed or was superseded
        """
        token = self.start_run()
        try:
            await self._execute(token)
        except RunCancelled:
            logger.info("Analysis %s superseded; results discarded", token.run_id)
        except Exception as exc:
            self._fail(token, exc)
        await self.flush()
        return self.run_state

    def run_sync(self) -> RunState:
        """Blocking variant of run_analysis for synchronous hosts."""
        return run_async(self.run_analysis())

    def _fail(self, token: RunToken, exc: Exception) -> None:
        category, message = classify_error(exc)
        if category == ErrorCategory.VALIDATION:
            logger.info("Analysis %s rejected documents: %s", token.run_id, exc)
        else:
            logger.error("Analysis %s failed", token.run_id, exc_info=exc)
        if not self._commit_if_current(token, status=RunStatus.FAILED, error=message, error_category=category):
            logger.info("Analysis %s failed after being superseded; error discarded", token.run_id)

    async def _execute(self, token: RunToken) -> None:
        with self._lock:
            manual = self._state.manual_fields.model_copy(deep=True)
            documents = [document.model_copy() for document in self._state.documents]

        # Stage 1: validate documents
        validations = await self._call(
            self.validator.validate(documents, manual.customer_type, manual.name or "")
        )
        token.ensure_current()
        issues = collect_validation_issues(validations, manual.name)
        if issues:
            raise DocumentValidationError(issues)
        self._commit(token, progress=VALIDATED_PROGRESS, stage=Stage.EXTRACTING)

        # Stage 2: extract profile
        extracted = await self._call(self.extractor.extract(documents, manual))
        token.ensure_current()
        profile = merge_manual_fields(extracted, manual)
        self._commit(token, profile=profile, progress=EXTRACTED_PROGRESS, stage=Stage.SCORING)

        # Stage 3: score, published before explanations exist
        products = self.catalog.products_for(profile.customer_type)
        evaluations = evaluate_all(profile, products)
        self._commit(token, evaluations=evaluations, progress=SCORED_PROGRESS, stage=Stage.EXPLAINING)
        logger.info("Analysis %s scored %d products", token.run_id, len(evaluations))

        # Stage 4: explanations, concurrently
        explained = await self._explain_all(token, profile, products, evaluations)
        self._commit(
            token,
            evaluations=explained,
            progress=COMPLETE_PROGRESS,
            stage=Stage.COMPLETE,
            status=RunStatus.SUCCESS,
            last_active=utcnow(),
        )
        logger.info("Analysis %s completed", token.run_id)

    async def _explain_all(
        self,
        token: RunToken,
        profile: CustomerProfile,
        products: Tuple[Product, ...],
        evaluations: List[EvaluationResult],
    ) -> List[EvaluationResult]:
        """Fan out one explanation call per evaluation and join on all of them.

        A failure in one call only degrades that product's text to the fallback.
        """
        by_id = {product.id: product for product in products}
        slots: Dict[str, EvaluationResult] = {}
        total = len(evaluations)
        completed = 0

        async def explain_one(evaluation: EvaluationResult) -> None:
            nonlocal completed
            if not token.is_current:
                return
            try:
                explanation = await self._call(
                    self.explainer.explain(profile, by_id[evaluation.product_id], evaluation)
                )
            except Exception:
                logger.error("Explanation for %s failed; using fallback", evaluation.product_id, exc_info=True)
                explanation = FALLBACK_EXPLANATION
            slots[evaluation.product_id] = evaluation.model_copy(
                update={
                    "customer_explanation": explanation.customer,
                    "advisor_explanation": explanation.advisor,
                }
            )
            completed += 1
            progress = min(SCORED_PROGRESS + completed / total * EXPLANATION_SPAN, EXPLANATION_CAP)
            self._commit_if_current(token, progress=progress)

        async with asyncio.TaskGroup() as group:
            for evaluation in evaluations:
                group.create_task(explain_one(evaluation))

        token.ensure_current()
        return [slots.get(evaluation.product_id, evaluation) for evaluation in evaluations]
