import logging
import typing as typ

import pydantic

from agents.selection import (
    CCI_DOMAIN_RULES,
    DEFAULT_DOMAINS,
    ModelSelector,
    Selection,
    SelectionPromptBuilder,
)
from retrieval.models import CandidateItem, Qualifier, ResolvedAttribute
from tools.codes import base_code, code_sort_key

logger = logging.getLogger(__name__)

TOP_K = 20


class UnifiedResultItem(CandidateItem):
    """A candidate annotated with one backend's choice, in the shape every backend shares."""

    is_chosen: bool = False
    applied_qualifier: Qualifier | None = None
    applied_attributes: dict[str, ResolvedAttribute | None] | None = None
    reasoning: str = ""

    @pydantic.model_validator(mode="after")
    def _unchosen_has_no_annotations(self) -> "UnifiedResultItem":
        if not self.is_chosen and (
            self.applied_qualifier is not None or self.applied_attributes is not None
        ):
            raise ValueError("An unchosen item cannot carry an applied qualifier or attributes")
        return self

    def applied_attribute_code(self, domain: str) -> str | None:
        if not self.applied_attributes:
            return None
        attribute = self.applied_attributes.get(domain)
        return attribute.code if attribute is not None else None


def _rank_key(item: UnifiedResultItem) -> tuple[int, typ.Any]:
    if item.is_chosen:
        return 0, code_sort_key(item.code)
    return 1, -(item.similarity_score or 0.0)


def rank_results(
    items: typ.Iterable[UnifiedResultItem], top_k: int = TOP_K
) -> list[UnifiedResultItem]:
    """Chosen items first in numeric code order, the rest by descending similarity; keep `top_k`."""
    return sorted(items, key=_rank_key)[:top_k]


class SingleModelEnhancer:
    """Merges one backend's selections onto the candidate pool.

    The backend is a parameter (`selector`), so every backend goes through the same
    merge and ranking path.
    """

    def __init__(
        self,
        prompt_builder: SelectionPromptBuilder | None = None,
        *,
        domain_rules: str = CCI_DOMAIN_RULES,
        top_k: int = TOP_K,
    ):
        self.prompt_builder = prompt_builder or SelectionPromptBuilder()
        self.domain_rules = domain_rules
        self.top_k = top_k

    def enhance(
        self,
        query: str,
        candidates: typ.Sequence[CandidateItem],
        selector: ModelSelector,
    ) -> list[UnifiedResultItem]:
        if not candidates:
            return []

        prompt = self.prompt_builder.build(query, candidates, self.domain_rules)
        selections = selector.select(prompt)
        merged = self.merge(candidates, selections)
        ranked = rank_results(merged, self.top_k)
        logger.info(
            "Backend %s: %d of %d candidates chosen, returning %d",
            selector.name,
            sum(item.is_chosen for item in merged),
            len(merged),
            len(ranked),
        )
        return ranked

    def merge(
        self,
        candidates: typ.Sequence[CandidateItem],
        selections: typ.Sequence[Selection],
    ) -> list[UnifiedResultItem]:
        by_code = self._index_selections(candidates, selections)
        return [self._apply(candidate, by_code.get(candidate.code)) for candidate in candidates]

    @staticmethod
    def _index_selections(
        candidates: typ.Sequence[CandidateItem],
        selections: typ.Sequence[Selection],
    ) -> dict[str, Selection]:
        candidate_codes = {candidate.code for candidate in candidates}
        by_code: dict[str, Selection] = {}
        for selection in selections:
            code = selection.code if selection.code in candidate_codes else base_code(selection.code)
            if code not in candidate_codes:
                # Supplemental reference to a code outside the pool: nothing to merge onto.
                logger.warning("Selected code %s is not among the candidates", selection.code)
                continue
            by_code[code] = selection
        return by_code

    @staticmethod
    def _resolve_qualifier(
        candidate: CandidateItem, chosen: str | None
    ) -> Qualifier | None:
        if not chosen:
            return None
        qualifier = candidate.find_qualifier(chosen)
        if qualifier is None and not chosen.startswith(f"{candidate.code}."):
            qualifier = candidate.find_qualifier(f"{candidate.code}.{chosen}")
        if qualifier is None:
            logger.debug("Qualifier %s is not listed on %s", chosen, candidate.code)
        return qualifier

    @staticmethod
    def _resolve_attributes(
        candidate: CandidateItem, selection: Selection
    ) -> dict[str, ResolvedAttribute | None]:
        chosen = selection.attribute_codes
        domains = list(DEFAULT_DOMAINS) + [
            domain for domain in candidate.attributes if domain not in DEFAULT_DOMAINS
        ]
        return {
            domain: (
                candidate.find_attribute(domain, chosen[domain]) if domain in chosen else None
            )
            for domain in domains
        }

    def _apply(
        self, candidate: CandidateItem, selection: Selection | None
    ) -> UnifiedResultItem:
        base = dict(candidate)
        if selection is None:
            return UnifiedResultItem(**base)
        return UnifiedResultItem(
            **base,
            is_chosen=True,
            applied_qualifier=self._resolve_qualifier(candidate, selection.chosen_qualifier),
            applied_attributes=self._resolve_attributes(candidate, selection),
            reasoning=selection.rationale,
        )
