import enum
import json
import logging
import time
import typing as typ

import pydantic
from langchain_core.messages import BaseMessage, ToolCall, ToolMessage
from langchain_core.tools import BaseTool
from pydantic.alias_generators import to_camel

from agents.base import ChatBackend, load_prompt, message_text, render_template, strip_code_fences
from core.errors import (
    AgentExhaustedError,
    CodeValidationFailure,
    CodingEngineError,
    ResponseParseError,
    RetrievalFailure,
)
from core.timing import elapsed_ms
from retrieval.base import CatalogStore
from retrieval.models import CandidateItem, CatalogRecord
from retrieval.retriever import CandidateRetriever
from tools.catalog_tools import BLOCK_RANGE_TOOL, build_block_range_tool, record_summary
from tools.codes import ancestor_codes, code_variants

logger = logging.getLogger(__name__)

MAX_ROUNDS = 5
MIN_CODE_LENGTH = 3
NO_MATCH_SUMMARY = "No relevant ICD-10-CA codes were found for the provided term."
INFECTION_KEYWORDS = ("mrsa", "vre", "infection", "cellulitis", "abscess", "sepsis", "bacterial")


class AgentState(str, enum.Enum):
    RETRIEVING = "retrieving"
    PROMPTING = "prompting"
    AWAITING_MODEL = "awaiting_model"
    TOOL_DISPATCH = "tool_dispatch"
    FINALIZING = "finalizing"
    VALIDATING = "validating"
    DONE = "done"
    FAILED = "failed"


class AgentRun:
    """State of one coding request as it moves through the agent loop."""

    def __init__(self, query: str):
        self.query = query
        self.state: AgentState | None = None
        self.history: list[AgentState] = []
        self.rounds = 0
        self.tool_calls = 0

    def transition(self, state: AgentState) -> None:
        logger.debug("Agent %s -> %s", self.state.value if self.state else "start", state.value)
        self.state = state
        self.history.append(state)


class _Model(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(
        populate_by_name=True, alias_generator=to_camel, extra="ignore"
    )


class FinalCodingResult(_Model):
    """One code of the final package, with its rationale and abstracting fields."""

    code: str
    description: str = ""
    rationale: str = ""
    diagnosis_type: str = ""
    diagnosis_cluster: str | None = None
    prefix: str | None = None
    includes: list[str] = pydantic.Field(default_factory=list)
    excludes: list[str] = pydantic.Field(default_factory=list)
    notes: list[str] = pydantic.Field(default_factory=list)

    @pydantic.field_validator("code", mode="before")
    @classmethod
    def _validate_code(cls, value: typ.Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("code must be a non-empty string")
        return value.strip()


class _ModelPackage(_Model):
    results: list[FinalCodingResult]
    summary: str = ""


class FinalCodingPackage(_Model):
    results: list[FinalCodingResult]
    summary: str
    processing_time_ms: float
    discarded_codes: list[str] = pydantic.Field(default_factory=list)


class AgenticCodingOrchestrator:
    """Bounded tool-calling loop that codes a diagnosis scenario and validates every code.

    Each request runs strictly in sequence: one model call per round, then the requested
    tool calls one after the other. After `max_rounds` model calls without a final answer
    the request fails with `AgentExhaustedError`. Codes in the final answer that are not in
    the catalog are replaced by their nearest existing ancestor, or dropped.
    """

    prompt_name = "code_diagnosis"

    def __init__(
        self,
        retriever: CandidateRetriever,
        store: CatalogStore,
        backend: ChatBackend,
        *,
        candidate_limit: int = 100,
        max_rounds: int = MAX_ROUNDS,
        min_code_length: int = MIN_CODE_LENGTH,
    ):
        self.retriever = retriever
        self.store = store
        self.backend = backend
        self.candidate_limit = candidate_limit
        self.max_rounds = max_rounds
        self.min_code_length = min_code_length
        self.tools: dict[str, BaseTool] = {BLOCK_RANGE_TOOL: build_block_range_tool(store)}

    def run(self, query: str, trace: AgentRun | None = None) -> FinalCodingPackage:
        start = time.perf_counter()
        run = trace or AgentRun(query)
        try:
            return self._run(run, start)
        except CodingEngineError:
            run.transition(AgentState.FAILED)
            raise

    def _run(self, run: AgentRun, start: float) -> FinalCodingPackage:
        run.transition(AgentState.RETRIEVING)
        candidates = self.retriever.retrieve(run.query, self.candidate_limit)
        if not candidates:
            run.transition(AgentState.DONE)
            return FinalCodingPackage(
                results=[], summary=NO_MATCH_SUMMARY, processing_time_ms=elapsed_ms(start)
            )

        run.transition(AgentState.PROMPTING)
        messages = self.build_messages(run.query, candidates)
        tools = list(self.tools.values())

        while run.rounds < self.max_rounds:
            run.rounds += 1
            run.transition(AgentState.AWAITING_MODEL)
            response = self.backend.complete(messages, tools)

            if response.tool_calls:
                run.transition(AgentState.TOOL_DISPATCH)
                messages.append(response)
                for call in response.tool_calls:
                    run.tool_calls += 1
                    messages.append(self._dispatch(call))
                continue

            run.transition(AgentState.FINALIZING)
            package = self.parse_final(message_text(response))

            run.transition(AgentState.VALIDATING)
            results, discarded = self.validate(package.results)

            run.transition(AgentState.DONE)
            logger.info(
                "Coded `%s` in %d round(s): %s",
                run.query,
                run.rounds,
                [result.code for result in results],
            )
            return FinalCodingPackage(
                results=results,
                summary=package.summary,
                processing_time_ms=elapsed_ms(start),
                discarded_codes=discarded,
            )

        raise AgentExhaustedError(self.max_rounds)

    def build_messages(self, query: str, candidates: typ.Sequence[CandidateItem]) -> list[BaseMessage]:
        special_rules = ""
        if any(keyword in query.lower() for keyword in INFECTION_KEYWORDS):
            logger.info("Infection keywords detected, adding the drug-resistance rule")
            special_rules = render_template("infection_rule.j2").strip()

        candidates_json = json.dumps(
            [record_summary(candidate) for candidate in candidates], indent=2, ensure_ascii=False
        )
        return load_prompt(
            self.prompt_name,
            query=query,
            candidates_json=candidates_json,
            candidate_count=len(candidates),
            special_rules=special_rules,
            tool_name=BLOCK_RANGE_TOOL,
        )

    def _dispatch(self, call: ToolCall) -> ToolMessage:
        name = call["name"]
        tool = self.tools.get(name)
        if tool is None:
            logger.warning("Model requested unknown tool %s", name)
            output: typ.Any = {"error": f"Unknown tool called: {name}"}
        else:
            logger.info("Model requested %s with %s", name, call["args"])
            output = tool.invoke(call["args"])
        return ToolMessage(content=json.dumps(output, ensure_ascii=False), tool_call_id=call["id"])

    def parse_final(self, content: str) -> _ModelPackage:
        cleaned = strip_code_fences(content)
        if not cleaned:
            raise ResponseParseError("model returned an empty final response", raw=content)
        try:
            return _ModelPackage.model_validate_json(cleaned)
        except pydantic.ValidationError as e:
            raise ResponseParseError(
                f"final package does not match the expected shape: {e.errors()[0]['msg']}",
                raw=cleaned,
            ) from e

    def validate(
        self, results: typ.Sequence[FinalCodingResult]
    ) -> tuple[list[FinalCodingResult], list[str]]:
        """Check every code against the catalog; returns `(kept, discarded_codes)`."""
        kept: list[FinalCodingResult] = []
        discarded: list[str] = []
        for result in results:
            corrected = self._correct(result)
            if corrected is None:
                discarded.append(result.code)
                continue
            kept.append(corrected)

        if discarded and not kept:
            raise CodeValidationFailure(
                ", ".join(discarded), "No returned code could be matched to the catalog."
            )
        return kept, discarded

    def _correct(self, result: FinalCodingResult) -> FinalCodingResult | None:
        record = self._find_any(code_variants(result.code))
        if record is not None:
            return self._with_record(result, record)

        for ancestor in ancestor_codes(result.code, self.min_code_length):
            record = self._find_any(code_variants(ancestor))
            if record is not None:
                logger.warning("Corrected hallucinated code %s to %s", result.code, record.code)
                corrected = self._with_record(result, record, description=record.description)
                return corrected.model_copy(
                    update={
                        "rationale": f"[System correction: {result.code} -> {record.code}] "
                        f"{result.rationale}".strip()
                    }
                )

        logger.warning(
            "%s",
            CodeValidationFailure(result.code, "Discarding it; no ancestor exists in the catalog either."),
        )
        return None

    @staticmethod
    def _with_record(
        result: FinalCodingResult, record: CatalogRecord, description: str | None = None
    ) -> FinalCodingResult:
        return result.model_copy(
            update={
                "code": record.code,
                "description": description or result.description or record.description,
                "includes": record.includes,
                "excludes": record.excludes,
                "notes": record.notes,
            }
        )

    def _find_any(self, codes: typ.Iterable[str]) -> CatalogRecord | None:
        for code in codes:
            record = self._find(code)
            if record is not None:
                return record
        return None

    def _find(self, code: str) -> CatalogRecord | None:
        try:
            return self.store.find_exact(code)
        except Exception as e:
            raise RetrievalFailure(f"Exact lookup failed for code `{code}`: {e}") from e
