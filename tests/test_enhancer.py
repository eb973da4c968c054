import json
import random
import sys
from pathlib import Path
import unittest
from unittest import mock

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = PROJECT_ROOT / "src"
sys.path.insert(0, str(PROJECT_ROOT))
sys.path.insert(0, str(SRC_ROOT))

import pydantic
from langchain_core.language_models.fake_chat_models import FakeListChatModel

from agents.base import ChatBackend
from agents.enhancer import SingleModelEnhancer, UnifiedResultItem, rank_results
from agents.selection import ModelSelector, Selection
from retrieval import (
    AttributeDefinition,
    AttributeDefinitionCache,
    CandidateItem,
    CatalogRecord,
    RubricAssembler,
)
from tools.codes import code_sort_key

_CACHE = AttributeDefinitionCache(
    [
        AttributeDefinition(domain="S", code="IN", description="Inpatient"),
        AttributeDefinition(domain="S", code="OP", description="Outpatient"),
    ]
)


def _candidates(*records: CatalogRecord, scores: list[float] | None = None) -> list[CandidateItem]:
    scores = scores or [1.0 - 0.1 * idx for idx in range(len(records))]
    items = [CandidateItem.from_record(record, score) for record, score in zip(records, scores)]
    return RubricAssembler(_CACHE).assemble(items)


def _selector(selections: list[dict]) -> ModelSelector:
    return ModelSelector(ChatBackend("fake", FakeListChatModel(responses=[json.dumps(selections)])))


_APPENDECTOMY = [
    CatalogRecord(
        code="1.NT.89.DA",
        description="Excision total, appendix, endoscopic [laparoscopic] approach",
        qualifiers=[{"code": "LAP", "description": "laparoscopic approach"}],
        attributes={"S": {"type": "Mandatory", "codes": ["IN", "OP"]}, "L": {"type": "N/A"}},
    ),
    CatalogRecord(
        code="1.NT.89.WK",
        description="Excision total, appendix, open approach",
        qualifiers=[{"code": "OPN", "description": "open approach"}],
        attributes={"S": {"type": "Mandatory", "codes": ["IN", "OP"]}},
    ),
]


class SingleModelEnhancerTests(unittest.TestCase):
    def test_laparoscopic_appendectomy_is_the_only_chosen_item(self) -> None:
        selector = _selector(
            [
                {
                    "code": "1.NT.89.DA",
                    "chosenQualifier": "LAP",
                    "chosenAttributes": [{"type": "S", "code": "IN"}, {"type": "L", "code": "/"}],
                    "rationale": "Laparoscopic approach documented.",
                }
            ]
        )
        items = SingleModelEnhancer().enhance(
            "laparoscopic appendectomy", _candidates(*_APPENDECTOMY), selector
        )

        chosen = [item for item in items if item.is_chosen]
        self.assertEqual(len(items), 2)
        self.assertEqual(len(chosen), 1)
        self.assertEqual(chosen[0].code, "1.NT.89.DA")
        self.assertEqual(chosen[0].applied_qualifier.code, "LAP")
        self.assertEqual(chosen[0].reasoning, "Laparoscopic approach documented.")
        self.assertEqual(chosen[0].applied_attributes["S"].description, "Inpatient")
        self.assertTrue(chosen[0].applied_attributes["L"].is_not_applicable)
        self.assertIsNone(chosen[0].applied_attributes["E"])

        unchosen = items[1]
        self.assertFalse(unchosen.is_chosen)
        self.assertIsNone(unchosen.applied_qualifier)
        self.assertIsNone(unchosen.applied_attributes)
        self.assertEqual(unchosen.reasoning, "")

    def test_no_candidates_skips_the_backend(self) -> None:
        selector = mock.Mock(spec=ModelSelector)
        self.assertEqual(SingleModelEnhancer().enhance("anything", [], selector), [])
        selector.select.assert_not_called()

    def test_full_code_selection_merges_onto_rubric_candidate(self) -> None:
        candidates = _candidates(
            CatalogRecord(
                code="1.NT.89",
                qualifiers=[{"code": "1.NT.89.DA"}, {"code": "1.NT.89.WK"}],
            )
        )
        selections = [
            Selection(code="1.NT.89.DA", chosen_qualifier="WK", rationale="Open approach."),
        ]
        [item] = SingleModelEnhancer().merge(candidates, selections)
        self.assertTrue(item.is_chosen)
        self.assertEqual(item.applied_qualifier.code, "1.NT.89.WK")

    def test_unknown_qualifier_leaves_item_chosen_without_qualifier(self) -> None:
        candidates = _candidates(*_APPENDECTOMY)
        selections = [Selection(code="1.NT.89.WK", chosen_qualifier="XYZ", rationale="open")]
        items = SingleModelEnhancer().merge(candidates, selections)
        self.assertTrue(items[1].is_chosen)
        self.assertIsNone(items[1].applied_qualifier)

    def test_supplemental_reference_outside_pool_is_dropped(self) -> None:
        candidates = _candidates(*_APPENDECTOMY)
        selections = [
            Selection(code="1.NT.89.DA", chosen_qualifier="LAP", rationale="lap"),
            Selection(code="3.IP.30.^^", rationale="Code also imaging."),
        ]
        with self.assertLogs("agents.enhancer", level="WARNING") as logs:
            items = SingleModelEnhancer().merge(candidates, selections)
        self.assertIn("3.IP.30.^^", logs.output[0])
        self.assertEqual([item.code for item in items], ["1.NT.89.DA", "1.NT.89.WK"])
        self.assertEqual(sum(item.is_chosen for item in items), 1)

    def test_unchosen_item_cannot_carry_annotations(self) -> None:
        with self.assertRaises(pydantic.ValidationError):
            UnifiedResultItem(code="1.NT.89", is_chosen=False, applied_attributes={})


class RankResultsTests(unittest.TestCase):
    def _random_items(self, rng: random.Random, count: int) -> list[UnifiedResultItem]:
        items = []
        for _ in range(count):
            code = f"{rng.randint(1, 8)}.{rng.choice(['IJ', 'NT', 'VA'])}.{rng.randint(1, 99)}"
            items.append(
                UnifiedResultItem(
                    code=code,
                    similarity_score=rng.random(),
                    is_chosen=rng.random() < 0.3,
                )
            )
        return items

    def test_chosen_items_come_first_in_numeric_code_order(self) -> None:
        candidates = _candidates(
            CatalogRecord(code="1.IJ.50"),
            CatalogRecord(code="1.IJ.10"),
            CatalogRecord(code="2.IJ.70"),
            CatalogRecord(code="1.IJ.9"),
            scores=[0.9, 0.8, 0.95, 0.1],
        )
        selections = [
            Selection(code=code, rationale="chosen") for code in ["1.IJ.50", "1.IJ.10", "1.IJ.9"]
        ]
        ranked = rank_results(SingleModelEnhancer().merge(candidates, selections))
        self.assertEqual(
            [item.code for item in ranked], ["1.IJ.9", "1.IJ.10", "1.IJ.50", "2.IJ.70"]
        )

    def test_ordering_holds_for_random_pools(self) -> None:
        rng = random.Random(7)
        for _ in range(50):
            ranked = rank_results(self._random_items(rng, rng.randint(0, 40)), top_k=20)
            self.assertLessEqual(len(ranked), 20)
            flags = [item.is_chosen for item in ranked]
            self.assertEqual(flags, sorted(flags, reverse=True))

            chosen = [item for item in ranked if item.is_chosen]
            keys = [code_sort_key(item.code) for item in chosen]
            self.assertEqual(keys, sorted(keys))

            scores = [item.similarity_score for item in ranked if not item.is_chosen]
            self.assertEqual(scores, sorted(scores, reverse=True))

    def test_truncation_is_idempotent(self) -> None:
        rng = random.Random(11)
        for _ in range(20):
            items = self._random_items(rng, 30)
            once = rank_results(items, top_k=12)
            self.assertEqual(rank_results(once, top_k=12), once)


if __name__ == "__main__":
    unittest.main()
