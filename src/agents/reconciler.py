import logging
import time
import typing as typ
from concurrent.futures import ThreadPoolExecutor, wait

import pydantic
from pydantic.alias_generators import to_camel

from agents.enhancer import SingleModelEnhancer, UnifiedResultItem
from agents.selection import DEFAULT_DOMAINS, ModelSelector
from retrieval.models import CandidateItem, ResolvedAttribute

logger = logging.getLogger(__name__)


class _Model(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(
        frozen=True, populate_by_name=True, alias_generator=to_camel
    )


class ComparisonDetail(_Model):
    """How two backends treated one code."""

    code: str
    chosen_by_a: bool
    chosen_by_b: bool
    qualifier_match: bool
    attribute_match: dict[str, bool]
    attributes_a: dict[str, ResolvedAttribute | None] | None = None
    attributes_b: dict[str, ResolvedAttribute | None] | None = None
    full_match: bool

    @property
    def agreed(self) -> bool:
        return self.chosen_by_a and self.chosen_by_b


class ComparisonSummary(_Model):
    """Aggregate agreement counts. Only ever built from details, see `from_details`."""

    total_codes: int
    chosen_by_a_count: int
    chosen_by_b_count: int
    codes_agreed: int
    codes_disagreed: int
    full_matches: int
    partial_matches: int

    @classmethod
    def from_details(cls, details: typ.Sequence[ComparisonDetail]) -> "ComparisonSummary":
        total = len(details)
        agreed = sum(detail.agreed for detail in details)
        full = sum(detail.full_match for detail in details)
        return cls(
            total_codes=total,
            chosen_by_a_count=sum(detail.chosen_by_a for detail in details),
            chosen_by_b_count=sum(detail.chosen_by_b for detail in details),
            codes_agreed=agreed,
            codes_disagreed=total - agreed,
            full_matches=full,
            partial_matches=agreed - full,
        )


class DualReconciliation(_Model):
    """Both backends' ranked results plus their per-code comparison."""

    backend_a: str
    backend_b: str
    items_a: list[UnifiedResultItem]
    items_b: list[UnifiedResultItem]
    details: list[ComparisonDetail]
    elapsed_ms_a: float = 0.0
    elapsed_ms_b: float = 0.0

    @pydantic.computed_field
    @property
    def summary(self) -> ComparisonSummary:
        return ComparisonSummary.from_details(self.details)


def compare_items(
    code: str,
    item_a: UnifiedResultItem | None,
    item_b: UnifiedResultItem | None,
    domains: typ.Sequence[str] = DEFAULT_DOMAINS,
) -> ComparisonDetail:
    """Compare two backends' results for one code; only codes chosen by both can match."""
    chosen_a = item_a is not None and item_a.is_chosen
    chosen_b = item_b is not None and item_b.is_chosen
    both = chosen_a and chosen_b

    if both:
        qualifier_a = item_a.applied_qualifier.code if item_a.applied_qualifier else None
        qualifier_b = item_b.applied_qualifier.code if item_b.applied_qualifier else None
        qualifier_match = qualifier_a == qualifier_b
        attribute_match = {
            domain: item_a.applied_attribute_code(domain) == item_b.applied_attribute_code(domain)
            for domain in domains
        }
    else:
        qualifier_match = False
        attribute_match = {domain: False for domain in domains}

    return ComparisonDetail(
        code=code,
        chosen_by_a=chosen_a,
        chosen_by_b=chosen_b,
        qualifier_match=qualifier_match,
        attribute_match=attribute_match,
        attributes_a=item_a.applied_attributes if item_a is not None else None,
        attributes_b=item_b.applied_attributes if item_b is not None else None,
        full_match=both and qualifier_match and all(attribute_match.values()),
    )


def compare_results(
    items_a: typ.Sequence[UnifiedResultItem],
    items_b: typ.Sequence[UnifiedResultItem],
) -> list[ComparisonDetail]:
    """One detail per code chosen by either side, A's codes first."""
    by_code_a = {item.code: item for item in items_a}
    by_code_b = {item.code: item for item in items_b}

    codes: list[str] = []
    for item in [*items_a, *items_b]:
        if item.is_chosen and item.code not in codes:
            codes.append(item.code)

    domains = list(DEFAULT_DOMAINS)
    for item in [*items_a, *items_b]:
        for domain in item.applied_attributes or {}:
            if domain not in domains:
                domains.append(domain)

    return [
        compare_items(code, by_code_a.get(code), by_code_b.get(code), domains) for code in codes
    ]


class DualModelReconciler:
    """Runs the same enhancement against two backends at once and measures their agreement."""

    def __init__(
        self,
        selector_a: ModelSelector,
        selector_b: ModelSelector,
        enhancer: SingleModelEnhancer | None = None,
    ):
        self.selector_a = selector_a
        self.selector_b = selector_b
        self.enhancer = enhancer or SingleModelEnhancer()

    def _timed_enhance(
        self,
        query: str,
        candidates: typ.Sequence[CandidateItem],
        selector: ModelSelector,
    ) -> tuple[list[UnifiedResultItem], float]:
        start = time.perf_counter()
        items = self.enhancer.enhance(query, candidates, selector)
        return items, (time.perf_counter() - start) * 1000

    def reconcile(
        self,
        query: str,
        candidates_a: typ.Sequence[CandidateItem],
        candidates_b: typ.Sequence[CandidateItem] | None = None,
    ) -> DualReconciliation:
        """Enhance with both backends concurrently, then compare.

        Both calls always run to completion; if either raised, its error is re-raised
        since a one-sided comparison is meaningless.
        """
        if candidates_b is None:
            candidates_b = candidates_a

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="reconcile") as executor:
            future_a = executor.submit(self._timed_enhance, query, candidates_a, self.selector_a)
            future_b = executor.submit(self._timed_enhance, query, candidates_b, self.selector_b)
            wait([future_a, future_b])

        for future, selector in ((future_a, self.selector_a), (future_b, self.selector_b)):
            error = future.exception()
            if error is not None:
                logger.error("Reconciliation aborted, backend %s failed: %s", selector.name, error)
                raise error

        items_a, elapsed_a = future_a.result()
        items_b, elapsed_b = future_b.result()
        details = compare_results(items_a, items_b)

        result = DualReconciliation(
            backend_a=self.selector_a.name,
            backend_b=self.selector_b.name,
            items_a=items_a,
            items_b=items_b,
            details=details,
            elapsed_ms_a=elapsed_a,
            elapsed_ms_b=elapsed_b,
        )
        summary = result.summary
        logger.info(
            "Reconciled %s vs %s: %d codes, %d agreed, %d full matches",
            result.backend_a,
            result.backend_b,
            summary.total_codes,
            summary.codes_agreed,
            summary.full_matches,
        )
        return result
