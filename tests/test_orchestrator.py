import json
import sys
from pathlib import Path
import unittest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = PROJECT_ROOT / "src"
sys.path.insert(0, str(PROJECT_ROOT))
sys.path.insert(0, str(SRC_ROOT))

from langchain_core.messages import AIMessage, SystemMessage, ToolMessage

from agents.orchestrator import (
    NO_MATCH_SUMMARY,
    AgentRun,
    AgentState,
    AgenticCodingOrchestrator,
)
from core.errors import (
    AgentExhaustedError,
    CodeValidationFailure,
    EmptyQueryError,
    ResponseParseError,
    RetrievalFailure,
)
from retrieval import CandidateRetriever, CatalogRecord, HashEmbeddingProvider, InMemoryCatalogStore
from tools.catalog_tools import BLOCK_RANGE_TOOL

_ICD_RECORDS = [
    CatalogRecord(code="Z99", description="Dependence on enabling machines and devices"),
    CatalogRecord(code="Z99.1", description="Dependence on respirator"),
    CatalogRecord(code="L03.1", description="Cellulitis of other parts of limb"),
    CatalogRecord(code="B95", description="Streptococcus as the cause of diseases"),
    CatalogRecord(
        code="B95.6",
        description="Staphylococcus aureus as the cause of diseases classified to other chapters",
        notes=["Use additional code to identify resistance"],
    ),
    CatalogRecord(code="B96", description="Other bacterial agents"),
    CatalogRecord(code="U82.1", description="Resistance to methicillin"),
]


class ScriptedBackend:
    """Replays canned replies and records what each call received."""

    name = "scripted"

    def __init__(self, *replies: AIMessage):
        self.replies = list(replies)
        self.calls: list[tuple[list, list]] = []

    def complete(self, messages, tools=None) -> AIMessage:
        self.calls.append((list(messages), list(tools or [])))
        if len(self.replies) == 1:
            return self.replies[0]
        return self.replies.pop(0)


def _tool_call(start: str, end: str, call_id: str = "call_1", name: str = BLOCK_RANGE_TOOL) -> AIMessage:
    return AIMessage(
        content="", tool_calls=[{"name": name, "args": {"start": start, "end": end}, "id": call_id}]
    )


def _final(*results: dict, summary: str = "Coded.") -> AIMessage:
    return AIMessage(content=json.dumps({"results": list(results), "summary": summary}))


def _result(code: str, rationale: str = "Documented in the scenario.") -> dict:
    return {
        "code": code,
        "description": "model description",
        "rationale": rationale,
        "diagnosisType": "M",
        "diagnosisCluster": None,
        "prefix": None,
    }


class _RangeDownStore(InMemoryCatalogStore):
    def find_by_range(self, start_code: str, end_code: str):
        raise ConnectionError("catalog is down")


def _orchestrator(backend: ScriptedBackend, records: list[CatalogRecord] = _ICD_RECORDS) -> AgenticCodingOrchestrator:
    store = InMemoryCatalogStore(records, embedder=HashEmbeddingProvider(dim=128))
    return AgenticCodingOrchestrator(CandidateRetriever(store), store, backend, candidate_limit=5)


class AgenticCodingOrchestratorTests(unittest.TestCase):
    def test_direct_final_answer_is_validated_and_enriched(self) -> None:
        backend = ScriptedBackend(_final(_result("B95.6"), summary="Organism coded."))
        trace = AgentRun("staphylococcus aureus")
        package = _orchestrator(backend).run("staphylococcus aureus", trace=trace)

        [result] = package.results
        self.assertEqual(result.code, "B95.6")
        self.assertEqual(result.description, "model description")
        self.assertEqual(result.notes, ["Use additional code to identify resistance"])
        self.assertEqual(result.diagnosis_type, "M")
        self.assertEqual(package.summary, "Organism coded.")
        self.assertEqual(package.discarded_codes, [])
        self.assertGreaterEqual(package.processing_time_ms, 0)
        self.assertEqual(trace.state, AgentState.DONE)
        self.assertEqual(trace.rounds, 1)
        self.assertEqual(len(backend.calls), 1)

        messages, tools = backend.calls[0]
        self.assertEqual([tool.name for tool in tools], [BLOCK_RANGE_TOOL])
        self.assertIsInstance(messages[0], SystemMessage)
        self.assertIn('"staphylococcus aureus"', messages[1].content)

    def test_tool_calls_are_dispatched_and_answered(self) -> None:
        backend = ScriptedBackend(
            _tool_call("B95", "B96", call_id="call_42"),
            _final(_result("B95.6")),
        )
        trace = AgentRun("MRSA cellulitis")
        _orchestrator(backend).run("MRSA cellulitis", trace=trace)

        self.assertEqual(len(backend.calls), 2)
        second_messages, _ = backend.calls[1]
        tool_message = second_messages[-1]
        self.assertIsInstance(tool_message, ToolMessage)
        self.assertEqual(tool_message.tool_call_id, "call_42")
        codes = [row["code"] for row in json.loads(tool_message.content)]
        self.assertEqual(codes, ["B95", "B95.6", "B96"])
        self.assertIn(AgentState.TOOL_DISPATCH, trace.history)
        self.assertEqual(trace.tool_calls, 1)

    def test_unknown_tool_gets_an_error_payload(self) -> None:
        backend = ScriptedBackend(
            _tool_call("B95", "B96", name="search_web"),
            _final(_result("Z99")),
        )
        _orchestrator(backend).run("ventilator dependence")
        tool_message = backend.calls[1][0][-1]
        self.assertIn("Unknown tool called: search_web", json.loads(tool_message.content)["error"])

    def test_range_tool_failure_surfaces_as_retrieval_failure(self) -> None:
        store = _RangeDownStore(_ICD_RECORDS, embedder=HashEmbeddingProvider(dim=128))
        backend = ScriptedBackend(_tool_call("B95", "B96"), _final(_result("B95.6")))
        orchestrator = AgenticCodingOrchestrator(CandidateRetriever(store), store, backend, candidate_limit=5)
        trace = AgentRun("MRSA cellulitis")

        with self.assertRaises(RetrievalFailure) as ctx:
            orchestrator.run("MRSA cellulitis", trace=trace)
        self.assertIn("B95-B96", str(ctx.exception))
        self.assertIsInstance(ctx.exception.__cause__, ConnectionError)
        self.assertEqual(trace.state, AgentState.FAILED)
        self.assertEqual(len(backend.calls), 1)

    def test_agent_gives_up_after_five_rounds(self) -> None:
        backend = ScriptedBackend(_tool_call("B95", "B97"))
        trace = AgentRun("endless")
        with self.assertRaises(AgentExhaustedError) as ctx:
            _orchestrator(backend).run("endless", trace=trace)
        self.assertEqual(ctx.exception.rounds, 5)
        self.assertEqual(len(backend.calls), 5)
        self.assertEqual(trace.state, AgentState.FAILED)

    def test_hallucinated_code_is_corrected_to_existing_ancestor(self) -> None:
        backend = ScriptedBackend(_final(_result("Z99.XX", rationale="Ventilator dependence.")))
        with self.assertLogs("agents.orchestrator", level="WARNING"):
            package = _orchestrator(backend).run("ventilator dependence")

        [result] = package.results
        self.assertEqual(result.code, "Z99")
        self.assertEqual(result.description, "Dependence on enabling machines and devices")
        self.assertTrue(result.rationale.startswith("[System correction: Z99.XX -> Z99]"))
        self.assertIn("Ventilator dependence.", result.rationale)

    def test_compact_code_matches_dotted_catalog_entry(self) -> None:
        backend = ScriptedBackend(_final(_result("U821")))
        [result] = _orchestrator(backend).run("methicillin resistance").results
        self.assertEqual(result.code, "U82.1")
        self.assertNotIn("System correction", result.rationale)

    def test_compact_hallucination_is_corrected_to_dotted_ancestor(self) -> None:
        backend = ScriptedBackend(_final(_result("B9569", rationale="MRSA organism.")))
        with self.assertLogs("agents.orchestrator", level="WARNING"):
            package = _orchestrator(backend).run("staphylococcus aureus")

        [result] = package.results
        self.assertEqual(result.code, "B95.6")
        self.assertEqual(package.discarded_codes, [])
        self.assertTrue(result.rationale.startswith("[System correction: B9569 -> B95.6]"))
        self.assertEqual(result.notes, ["Use additional code to identify resistance"])

    def test_unrecoverable_code_is_dropped_and_rest_returned(self) -> None:
        backend = ScriptedBackend(_final(_result("L03.1"), _result("Q00.0")))
        with self.assertLogs("agents.orchestrator", level="WARNING") as logs:
            package = _orchestrator(backend).run("cellulitis of leg")
        self.assertEqual([result.code for result in package.results], ["L03.1"])
        self.assertEqual(package.discarded_codes, ["Q00.0"])
        self.assertTrue(
            any("Code `Q00.0` could not be validated against the catalog." in line for line in logs.output)
        )

    def test_all_codes_unrecoverable_raises(self) -> None:
        backend = ScriptedBackend(_final(_result("Q00.0"), _result("Q01")))
        trace = AgentRun("anencephaly")
        with self.assertRaises(CodeValidationFailure):
            _orchestrator(backend).run("anencephaly", trace=trace)
        self.assertEqual(trace.state, AgentState.FAILED)

    def test_fenced_final_answer_is_accepted(self) -> None:
        content = "```json\n" + json.dumps({"results": [_result("Z99.1")], "summary": "ok"}) + "\n```"
        package = _orchestrator(ScriptedBackend(AIMessage(content=content))).run("respirator")
        self.assertEqual(package.results[0].code, "Z99.1")

    def test_malformed_final_answer_raises(self) -> None:
        for content in ["", "The answer is Z99.", json.dumps({"summary": "no results"})]:
            with self.subTest(content=content):
                with self.assertRaises(ResponseParseError):
                    _orchestrator(ScriptedBackend(AIMessage(content=content))).run("respirator")

    def test_no_candidates_returns_not_found_without_model_call(self) -> None:
        backend = ScriptedBackend(_final(_result("Z99")))
        package = _orchestrator(backend, records=[]).run("anything")
        self.assertEqual(package.results, [])
        self.assertEqual(package.summary, NO_MATCH_SUMMARY)
        self.assertEqual(backend.calls, [])

    def test_blank_query_is_rejected(self) -> None:
        with self.assertRaises(EmptyQueryError):
            _orchestrator(ScriptedBackend(_final(_result("Z99")))).run("  ")

    def test_infection_rule_only_added_for_infection_scenarios(self) -> None:
        orchestrator = _orchestrator(ScriptedBackend(_final(_result("Z99"))))
        candidates = orchestrator.retriever.retrieve("cellulitis", 3)

        infection = orchestrator.build_messages("MRSA cellulitis of the leg", candidates)
        plain = orchestrator.build_messages("ventilator dependence", candidates)

        self.assertIn("Drug-Resistant Infections", infection[0].content)
        self.assertNotIn("Drug-Resistant Infections", plain[0].content)
        self.assertIn(BLOCK_RANGE_TOOL, plain[1].content)
        self.assertIn("Top 3 candidate codes", plain[1].content)


if __name__ == "__main__":
    unittest.main()
