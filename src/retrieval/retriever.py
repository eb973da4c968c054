import logging
import typing as typ

from core.errors import EmptyQueryError, RetrievalFailure
from retrieval.base import CatalogStore
from retrieval.models import CandidateItem, CatalogRecord
from tools.codes import base_code, code_variants

logger = logging.getLogger(__name__)

NEIGHBOUR_RADIUS = 30
Position = typ.Literal["context", "above", "below"]
_POSITIONS = typ.get_args(Position)


class CandidateRetriever:
    """Turns a free-text query into candidates ranked by the catalog store."""

    def __init__(self, store: CatalogStore):
        self.store = store

    def retrieve(self, query: str, limit: int = 40) -> list[CandidateItem]:
        """Return up to `limit` candidates in the store's ranking order.

        Raises `EmptyQueryError` for a blank query without touching the store, and
        `RetrievalFailure` when the store errors. Zero hits is an empty list.
        """
        if not query or not query.strip():
            raise EmptyQueryError()

        try:
            hits = self.store.similarity_search(query.strip(), limit)
        except Exception as e:
            raise RetrievalFailure(f"Similarity search failed for query `{query}`: {e}") from e

        logger.info("Retrieved %d candidates for query `%s`", len(hits), query)
        return [CandidateItem.from_record(hit.record, hit.score) for hit in hits[:limit]]

    def lookup(self, code: str) -> CandidateItem | None:
        """Exact lookup of a catalog entry.

        A CCI qualifier suffix is ignored (`1.NT.89.DA` finds `1.NT.89`) and a compact ICD
        code also matches its dotted spelling (`B956` finds `B95.6`).
        """
        record = self._resolve(code)
        if record is None:
            return None
        return CandidateItem.from_record(record)

    def neighbours(
        self, code: str, position: Position = "context", radius: int = NEIGHBOUR_RADIUS
    ) -> list[CandidateItem]:
        """Records adjacent to `code` in catalog order.

        `above` and `below` exclude the code itself; `context` is both sides with the code
        in the middle. An unknown code has no neighbours.
        """
        if position not in _POSITIONS:
            raise ValueError(f"Unknown position: {position}. Expected one of {_POSITIONS}")

        record = self._resolve(code)
        if record is None:
            return []
        try:
            if position == "above":
                records = self.store.find_above(record.code, radius)
            elif position == "below":
                records = self.store.find_below(record.code, radius)
            else:
                records = self.store.find_context(record.code, radius)
        except Exception as e:
            raise RetrievalFailure(f"Neighbour lookup failed for code `{record.code}`: {e}") from e
        return [CandidateItem.from_record(neighbour) for neighbour in records]

    def _resolve(self, code: str) -> CatalogRecord | None:
        if not code or not code.strip():
            raise EmptyQueryError("Code cannot be empty.")

        for variant in code_variants(base_code(code)):
            try:
                record = self.store.find_exact(variant)
            except Exception as e:
                raise RetrievalFailure(f"Exact lookup failed for code `{variant}`: {e}") from e
            if record is not None:
                return record
        return None
