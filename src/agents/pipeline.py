import logging
import time
import typing as typ

import pydantic
from pydantic.alias_generators import to_camel

from agents.base import ChatBackend
from agents.enhancer import SingleModelEnhancer, UnifiedResultItem
from agents.orchestrator import AgenticCodingOrchestrator, FinalCodingPackage
from agents.reconciler import DualModelReconciler, DualReconciliation
from agents.selection import ModelSelector
from core.errors import CatalogUnavailable
from core.settings import Settings, get_settings
from core.timing import elapsed_ms
from retrieval.models import CandidateItem
from retrieval.retriever import NEIGHBOUR_RADIUS, CandidateRetriever, Position
from retrieval.rubrics import (
    AttributeDefinitionCache,
    InMemoryAttributeSource,
    JsonAttributeSource,
    RubricAssembler,
)
from retrieval.vector import HashEmbeddingProvider, InMemoryCatalogStore, OpenAIEmbeddingProvider

logger = logging.getLogger(__name__)

Status = typ.Literal["matched", "not_found"]

CCI = "CCI"
ICD = "ICD-10-CA"


class _Envelope(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(populate_by_name=True, alias_generator=to_camel)

    status: Status
    query: str
    elapsed_ms: float


class LookupResponse(_Envelope):
    item: CandidateItem | None = None


class SearchResponse(_Envelope):
    results: list[CandidateItem] = pydantic.Field(default_factory=list)


class EnhancementResponse(_Envelope):
    backend: str
    results: list[UnifiedResultItem] = pydantic.Field(default_factory=list)


class ReconciliationResponse(_Envelope):
    reconciliation: DualReconciliation | None = None


class DiagnosisResponse(_Envelope):
    package: FinalCodingPackage


class CodingPipeline:
    """Entry point for the coding flows.

    `enhance` and `reconcile` code interventions against the CCI catalog with one or two
    backends; `code_diagnosis` runs the tool-calling agent over the ICD-10-CA catalog, and
    `icd_search`, `icd_lookup` and `icd_neighbours` browse that catalog without a model.
    Either catalog may be missing; the flows that need it then raise `CatalogUnavailable`.
    Zero candidates come back as `status="not_found"`; every other failure is raised.
    """

    def __init__(
        self,
        cci_retriever: CandidateRetriever | None,
        assembler: RubricAssembler,
        selectors: typ.Mapping[str, ModelSelector],
        orchestrator: AgenticCodingOrchestrator | None = None,
        *,
        icd_retriever: CandidateRetriever | None = None,
        enhancer: SingleModelEnhancer | None = None,
        cci_candidate_limit: int = 40,
        icd_candidate_limit: int = 100,
    ):
        if not selectors:
            raise ValueError("At least one backend selector is required.")
        self.cci_retriever = cci_retriever
        self.assembler = assembler
        self.selectors = dict(selectors)
        self.orchestrator = orchestrator
        if icd_retriever is None and orchestrator is not None:
            icd_retriever = orchestrator.retriever
        self.icd_retriever = icd_retriever
        self.enhancer = enhancer or SingleModelEnhancer()
        self.cci_candidate_limit = cci_candidate_limit
        self.icd_candidate_limit = icd_candidate_limit

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "CodingPipeline":
        """Build the stores, attribute cache and both backends from configuration.

        A missing catalog file disables only the flows that read it, with a warning.
        """
        settings = settings or get_settings()
        if settings.embedding_model:
            embedder = OpenAIEmbeddingProvider(model=settings.embedding_model)
        else:
            embedder = HashEmbeddingProvider(dim=settings.embedding_dim)

        cci_retriever = None
        if settings.cci_catalog_path.exists():
            cci_store = InMemoryCatalogStore.from_json(settings.cci_catalog_path, embedder=embedder)
            cci_retriever = CandidateRetriever(cci_store)
        else:
            logger.warning(
                "CCI catalog %s not found, intervention coding is disabled",
                settings.cci_catalog_path,
            )

        if settings.attributes_path.exists():
            source = JsonAttributeSource(settings.attributes_path)
        else:
            if cci_retriever is not None:
                logger.warning(
                    "Attribute reference %s not found, attributes will not be described",
                    settings.attributes_path,
                )
            source = InMemoryAttributeSource([])
        cache = AttributeDefinitionCache.load(source)

        backend_kwargs = dict(
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            timeout=settings.request_timeout,
            max_retries=settings.max_retries,
        )
        backend_a = ChatBackend.from_provider(
            settings.model_a, settings.provider_a, settings.model_a, **backend_kwargs
        )
        backend_b = ChatBackend.from_provider(
            settings.model_b, settings.provider_b, settings.model_b, **backend_kwargs
        )
        selectors = {"a": ModelSelector(backend_a), "b": ModelSelector(backend_b)}

        orchestrator = None
        if settings.icd_catalog_path.exists():
            icd_store = InMemoryCatalogStore.from_json(
                settings.icd_catalog_path, embedder=embedder
            )
            orchestrator = AgenticCodingOrchestrator(
                CandidateRetriever(icd_store),
                icd_store,
                backend_a,
                candidate_limit=settings.icd_candidate_limit,
                max_rounds=settings.max_agent_rounds,
                min_code_length=settings.min_code_length,
            )
        else:
            logger.warning(
                "ICD-10-CA catalog %s not found, diagnosis coding is disabled",
                settings.icd_catalog_path,
            )

        return cls(
            cci_retriever,
            RubricAssembler(cache),
            selectors,
            orchestrator,
            enhancer=SingleModelEnhancer(top_k=settings.top_k),
            cci_candidate_limit=settings.cci_candidate_limit,
            icd_candidate_limit=settings.icd_candidate_limit,
        )

    def _selector(self, backend: str) -> ModelSelector:
        try:
            return self.selectors[backend]
        except KeyError:
            raise ValueError(
                f"Unknown backend: {backend}. Configured: {list(self.selectors)}"
            ) from None

    def _cci(self) -> CandidateRetriever:
        if self.cci_retriever is None:
            raise CatalogUnavailable(CCI)
        return self.cci_retriever

    def _icd(self) -> CandidateRetriever:
        if self.icd_retriever is None:
            raise CatalogUnavailable(ICD)
        return self.icd_retriever

    def candidates(self, query: str, limit: int | None = None) -> list[CandidateItem]:
        """Retrieve CCI candidates and resolve their attribute descriptions."""
        found = self._cci().retrieve(query, limit or self.cci_candidate_limit)
        return self.assembler.assemble(found)

    def lookup_code(self, code: str) -> LookupResponse:
        start = time.perf_counter()
        item = self._cci().lookup(code)
        if item is not None:
            item = self.assembler.assemble([item])[0]
        return LookupResponse(
            status="matched" if item is not None else "not_found",
            query=code,
            item=item,
            elapsed_ms=elapsed_ms(start),
        )

    def enhance(self, query: str, backend: str = "a", limit: int | None = None) -> EnhancementResponse:
        start = time.perf_counter()
        selector = self._selector(backend)
        candidates = self.candidates(query, limit)
        results = self.enhancer.enhance(query, candidates, selector)
        return EnhancementResponse(
            status="matched" if results else "not_found",
            query=query,
            backend=selector.name,
            results=results,
            elapsed_ms=elapsed_ms(start),
        )

    def reconcile(self, query: str, limit: int | None = None) -> ReconciliationResponse:
        start = time.perf_counter()
        selector_a, selector_b = self._selector("a"), self._selector("b")
        candidates = self.candidates(query, limit)
        if not candidates:
            return ReconciliationResponse(
                status="not_found", query=query, elapsed_ms=elapsed_ms(start)
            )

        reconciler = DualModelReconciler(selector_a, selector_b, self.enhancer)
        return ReconciliationResponse(
            status="matched",
            query=query,
            reconciliation=reconciler.reconcile(query, candidates),
            elapsed_ms=elapsed_ms(start),
        )

    def code_diagnosis(self, query: str) -> DiagnosisResponse:
        if self.orchestrator is None:
            raise CatalogUnavailable(ICD)
        start = time.perf_counter()
        package = self.orchestrator.run(query)
        return DiagnosisResponse(
            status="matched" if package.results else "not_found",
            query=query,
            package=package,
            elapsed_ms=elapsed_ms(start),
        )

    def icd_search(self, query: str, limit: int | None = None) -> SearchResponse:
        """Plain similarity search over the ICD-10-CA catalog, no model involved."""
        start = time.perf_counter()
        results = self._icd().retrieve(query, limit or self.icd_candidate_limit)
        return SearchResponse(
            status="matched" if results else "not_found",
            query=query,
            results=results,
            elapsed_ms=elapsed_ms(start),
        )

    def icd_lookup(self, code: str) -> LookupResponse:
        start = time.perf_counter()
        item = self._icd().lookup(code)
        return LookupResponse(
            status="matched" if item is not None else "not_found",
            query=code,
            item=item,
            elapsed_ms=elapsed_ms(start),
        )

    def icd_neighbours(
        self, code: str, position: Position = "context", radius: int = NEIGHBOUR_RADIUS
    ) -> SearchResponse:
        start = time.perf_counter()
        results = self._icd().neighbours(code, position, radius)
        return SearchResponse(
            status="matched" if results else "not_found",
            query=code,
            results=results,
            elapsed_ms=elapsed_ms(start),
        )
