from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Iterator, TypedDict

from langgraph.graph import END, START, StateGraph

from .artifacts import fingerprint_artifact, prepare_generated_artifact
from .compiler import compile_specification
from .errors import (
    ForgeError,
    NotAuthorized,
    PipelineStateError,
    RateLimited,
    TestRunnerError,
    Transient,
)
from .llm import ArtifactGenerator, SupportsGenerate, classify_generation_failure
from .models import (
    ArtifactKind,
    Draft,
    InflightToken,
    PipelineState,
    Specification,
    SurfacedError,
    TestRun,
    VERDICT_STATES,
)
from .publication import PublicationGate
from .settings import RuntimeSettings
from .state_store import PipelineStateStore, new_record_id
from .test_runner import ComplianceTestRunner, select_sub_competency

logger = logging.getLogger(__name__)

CREATOR_ROLE = "creator"


class CertifyState(TypedDict, total=False):
    draft_id: str
    sub_competency_id: str | None
    generation_timeout: float | None
    testing_timeout: float | None
    needs_generation: bool
    generated: bool
    test_run: TestRun


class PipelineOrchestrator:
    """Sequences compile -> generate (if needed) -> test for one draft at a time.

    Every step that enters ``generating`` or ``testing`` holds the draft's
    in-flight token for its whole duration, so a concurrent request for the
    same draft is rejected with ``AlreadyRunning`` instead of queued.
    """

    def __init__(
        self,
        store: PipelineStateStore,
        settings: RuntimeSettings | None = None,
        *,
        generator: SupportsGenerate | None = None,
        runner: ComplianceTestRunner | None = None,
        gate: PublicationGate | None = None,
    ) -> None:
        self.store = store
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self._generator = generator
        self.runner = runner if runner is not None else ComplianceTestRunner(store, self.settings)
        self.gate = (
            gate if gate is not None else PublicationGate(store, lease_seconds=self.settings.inflight_lease_seconds)
        )
        self.certify_graph = self._build_certify_graph().compile()

    @property
    def generator(self) -> SupportsGenerate:
        if self._generator is None:
            self._generator = ArtifactGenerator(self.settings)
        return self._generator

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _surface(self, error: ForgeError) -> SurfacedError:
        retry_after = None
        if isinstance(error, RateLimited):
            retry_after = error.retry_after_seconds or self.settings.default_rate_limit_backoff_seconds
        return SurfacedError(
            code=error.code,
            message=error.message,
            remediation=error.remediation,
            retryable=error.retryable,
            retry_after_seconds=retry_after,
        )

    @staticmethod
    def _ensure_owner(draft: Draft, author_id: str) -> None:
        if draft.author_id != author_id:
            raise NotAuthorized(f"Author {author_id} does not own draft {draft.draft_id}", {"draft_id": draft.draft_id})

    @staticmethod
    def _artifact_fields(artifact: str, revision: int) -> dict[str, Any]:
        return {
            "artifact": artifact,
            "artifact_fingerprint": fingerprint_artifact(artifact),
            "artifact_revision": revision,
        }

    def _recover_abandoned(self, draft_id: str, reclaimed: bool) -> None:
        """Put a draft left in an active state by a dead run back into a stable one.

        Only called while holding the in-flight token, so an active state here
        cannot belong to a live run.
        """
        with self.store.draft_transaction(draft_id) as txn:
            draft = txn.draft
            if draft.state == PipelineState.GENERATING:
                txn.transition(
                    PipelineState.DRAFT,
                    last_error=self._surface(Transient("A previous generation was abandoned before completing")),
                )
            elif draft.state == PipelineState.TESTING:
                stable = (
                    PipelineState.GENERATED
                    if draft.artifact_kind == ArtifactKind.GENERATED and draft.has_artifact
                    else PipelineState.DRAFT
                )
                txn.transition(stable)
            else:
                return
        logger.warning("Recovered draft %s from abandoned %s (token reclaimed=%s)", draft_id, draft.state.value, reclaimed)

    @contextmanager
    def _single_flight(self, draft_id: str, operation: str) -> Iterator[InflightToken]:
        token, reclaimed = self.store.acquire_inflight(
            draft_id, operation, lease_seconds=self.settings.inflight_lease_seconds
        )
        try:
            self._recover_abandoned(draft_id, reclaimed)
            yield token
        finally:
            self.store.release_inflight(token)

    # ------------------------------------------------------------------
    # Draft lifecycle
    # ------------------------------------------------------------------

    def create_draft(
        self,
        author_id: str,
        role: str,
        specification: Specification,
        artifact_kind: ArtifactKind = ArtifactKind.GENERATED,
        artifact: str | None = None,
    ) -> Draft:
        """Compile the specification and persist a new draft.

        Raises:
            NotAuthorized: If the role claim is not ``creator``.
            InvalidSceneLayout: If the specification does not compile.
            PipelineStateError: If an artifact is supplied for a generated draft.
        """
        if role != CREATOR_ROLE:
            raise NotAuthorized(f"Role {role!r} may not create validators", {"author_id": author_id})
        request = compile_specification(specification)
        if artifact is not None and artifact_kind != ArtifactKind.UPLOADED:
            raise PipelineStateError("Only uploaded drafts may be created with an artifact", {"author_id": author_id})
        if artifact is not None and not artifact.strip():
            raise PipelineStateError("Uploaded artifact is empty", {"author_id": author_id})

        draft = Draft(
            draft_id=new_record_id("DRF"),
            author_id=author_id,
            specification=specification,
            artifact_kind=artifact_kind,
        )
        if artifact is not None:
            draft = draft.model_copy(update=self._artifact_fields(artifact, revision=1))
        self.store.create_draft(draft)
        logger.info(
            "Draft %s created by %s (%s, request %s)",
            draft.draft_id,
            author_id,
            artifact_kind.value,
            request.fingerprint[:12],
        )
        return draft

    def attach_upload(self, draft_id: str, author_id: str, artifact: str) -> Draft:
        """Replace the artifact of an uploaded draft.

        A draft holding a verdict for the previous revision goes back to
        ``draft``, since the new revision has never been tested. Any
        publication is withdrawn.
        """
        if not artifact.strip():
            raise PipelineStateError("Uploaded artifact is empty", {"draft_id": draft_id})
        with self._single_flight(draft_id, "upload"):
            with self.store.draft_transaction(draft_id) as txn:
                self._ensure_owner(txn.draft, author_id)
                if txn.draft.artifact_kind != ArtifactKind.UPLOADED:
                    raise PipelineStateError(
                        f"Draft {draft_id} is generated; use regeneration instead of upload",
                        {"draft_id": draft_id},
                    )
                txn.withdraw_publication("artifact replaced by upload")
                fields = self._artifact_fields(artifact, revision=txn.draft.artifact_revision + 1)
                if txn.draft.state in VERDICT_STATES.values():
                    draft = txn.transition(PipelineState.DRAFT, last_error=None, **fields)
                else:
                    draft = txn.update(last_error=None, **fields)
        logger.info("Draft %s received upload revision %d", draft_id, draft.artifact_revision)
        return draft

    def delete_draft(self, draft_id: str, author_id: str) -> None:
        with self._single_flight(draft_id, "delete"):
            self._ensure_owner(self.store.read_draft(draft_id), author_id)
            self.store.delete_draft(draft_id)

    def get_draft(self, draft_id: str) -> Draft:
        return self.store.read_draft(draft_id)

    def list_drafts(self, author_id: str | None = None) -> list[Draft]:
        return self.store.list_drafts(author_id=author_id)

    def list_test_runs(self, draft_id: str) -> list[TestRun]:
        return self.store.list_test_runs(draft_id)

    def latest_test_run(self, draft_id: str) -> TestRun | None:
        return self.store.latest_test_run(draft_id)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    @staticmethod
    def _check_can_generate(draft: Draft, regenerate: bool) -> None:
        if draft.artifact_kind != ArtifactKind.GENERATED:
            raise PipelineStateError(
                f"Draft {draft.draft_id} holds an uploaded artifact and is never generated",
                {"draft_id": draft.draft_id},
            )
        if draft.has_artifact and not regenerate:
            raise PipelineStateError(
                f"Draft {draft.draft_id} already has an artifact; request regeneration explicitly",
                {"draft_id": draft.draft_id, "state": draft.state.value},
            )

    async def generate(self, draft_id: str, *, regenerate: bool = False, timeout: float | None = None) -> Draft:
        """Materialize the draft's artifact through the generation service.

        On any failure the draft returns to ``draft`` with ``last_error`` set
        and the classified ``GenerationError`` is raised. Nothing is retried.
        """
        limit = timeout if timeout is not None else self.settings.generation_timeout_seconds
        with self._single_flight(draft_id, "generate"):
            draft = self.store.read_draft(draft_id)
            self._check_can_generate(draft, regenerate)
            request = compile_specification(draft.specification)
            self.store.transition_draft(draft_id, PipelineState.GENERATING, last_error=None)

            try:
                raw = await asyncio.wait_for(
                    self.generator.generate(request.payload, draft.specification.theme),
                    timeout=limit,
                )
            except asyncio.CancelledError:
                self.store.transition_draft(draft_id, PipelineState.DRAFT)
                raise
            except Exception as exc:  # noqa: BLE001 - classified and re-raised.
                error = classify_generation_failure(exc)
                self.store.transition_draft(draft_id, PipelineState.DRAFT, last_error=self._surface(error))
                logger.warning("Generation for draft %s failed: %s [%s]", draft_id, error, error.code)
                if error is exc:
                    raise
                raise error from exc

            artifact = prepare_generated_artifact(raw)
            with self.store.draft_transaction(draft_id) as txn:
                txn.withdraw_publication("artifact regenerated")
                generated = txn.transition(
                    PipelineState.GENERATED,
                    last_error=None,
                    **self._artifact_fields(artifact, revision=txn.draft.artifact_revision + 1),
                )
        logger.info("Draft %s generated revision %d", draft_id, generated.artifact_revision)
        return generated

    # ------------------------------------------------------------------
    # Testing
    # ------------------------------------------------------------------

    async def run_tests(
        self,
        draft_id: str,
        sub_competency_id: str | None = None,
        *,
        timeout: float | None = None,
    ) -> TestRun:
        """Run the compliance battery against the current artifact and record the TestRun.

        A timeout or ``TestRunnerError`` returns the draft to the state it was
        in before testing and records nothing.
        """
        limit = timeout if timeout is not None else self.settings.testing_timeout_seconds
        with self._single_flight(draft_id, "test"):
            draft = self.store.read_draft(draft_id)
            if not draft.has_artifact:
                raise PipelineStateError(
                    f"Draft {draft_id} has no artifact to test", {"draft_id": draft_id, "state": draft.state.value}
                )
            competency = select_sub_competency(draft, sub_competency_id)
            prior = draft.state
            testing = self.store.transition_draft(draft_id, PipelineState.TESTING)

            try:
                results = await asyncio.wait_for(
                    asyncio.to_thread(self.runner.evaluate, testing, competency.sub_competency_id),
                    timeout=limit,
                )
            except TimeoutError as exc:
                error = TestRunnerError(
                    f"Compliance run for draft {draft_id} exceeded {limit:g}s", {"draft_id": draft_id}
                )
                self.store.transition_draft(draft_id, prior, last_error=self._surface(error))
                raise error from exc
            except ForgeError as exc:
                self.store.transition_draft(draft_id, prior, last_error=self._surface(exc))
                raise
            except BaseException:
                self.store.transition_draft(draft_id, prior)
                raise

            return self.runner.record(draft_id, competency.sub_competency_id, results)

    # ------------------------------------------------------------------
    # Certification graph
    # ------------------------------------------------------------------

    def _build_certify_graph(self) -> StateGraph:
        graph = StateGraph(CertifyState)
        graph.add_node("compile", self._compile_node)
        graph.add_node("generate", self._generate_node)
        graph.add_node("test", self._test_node)

        graph.add_edge(START, "compile")
        graph.add_conditional_edges(
            "compile",
            self._route_after_compile,
            {"generate": "generate", "test": "test"},
        )
        graph.add_edge("generate", "test")
        graph.add_edge("test", END)
        return graph

    def _compile_node(self, state: CertifyState) -> dict[str, Any]:
        draft = self.store.read_draft(state["draft_id"])
        compile_specification(draft.specification)
        needs_generation = draft.artifact_kind == ArtifactKind.GENERATED and not draft.has_artifact
        return {"needs_generation": needs_generation, "generated": False}

    @staticmethod
    def _route_after_compile(state: CertifyState) -> str:
        return "generate" if state.get("needs_generation") else "test"

    async def _generate_node(self, state: CertifyState) -> dict[str, Any]:
        await self.generate(state["draft_id"], timeout=state.get("generation_timeout"))
        return {"generated": True}

    async def _test_node(self, state: CertifyState) -> dict[str, Any]:
        test_run = await self.run_tests(
            state["draft_id"],
            state.get("sub_competency_id"),
            timeout=state.get("testing_timeout"),
        )
        return {"test_run": test_run}

    async def certify(
        self,
        draft_id: str,
        sub_competency_id: str | None = None,
        *,
        generation_timeout: float | None = None,
        testing_timeout: float | None = None,
    ) -> TestRun:
        """Generate the artifact if the draft still needs one, then test it.

        Errors from either step propagate unchanged; the draft is already
        back in a re-enterable state when they do.
        """
        result = await self.certify_graph.ainvoke(
            {
                "draft_id": draft_id,
                "sub_competency_id": sub_competency_id,
                "generation_timeout": generation_timeout,
                "testing_timeout": testing_timeout,
            }
        )
        return result["test_run"]

    # ------------------------------------------------------------------
    # Publication
    # ------------------------------------------------------------------

    def publish(self, draft_id: str, author_id: str) -> Draft:
        self._ensure_owner(self.store.read_draft(draft_id), author_id)
        return self.gate.publish(draft_id)

    def unpublish(self, draft_id: str, author_id: str) -> Draft:
        return self.gate.unpublish(draft_id, author_id)

