import typing as typ
from abc import ABC, abstractmethod

from retrieval.models import AttributeDefinition, CatalogRecord


class ScoredRecord(typ.NamedTuple):
    """A record returned by similarity search, with its score."""

    record: CatalogRecord
    score: float


class CatalogStore(ABC):
    """Backend-agnostic catalog contract used by retrieval and the coding agent."""

    @abstractmethod
    def similarity_search(self, query_text: str, limit: int = 40) -> list[ScoredRecord]:
        """Return records ranked by semantic similarity, best first."""

    @abstractmethod
    def find_exact(self, code: str) -> CatalogRecord | None:
        """Return the record with exactly this code, if any."""

    @abstractmethod
    def find_by_range(self, start_code: str, end_code: str) -> list[CatalogRecord]:
        """Return records whose code falls in the block range, sorted by code."""

    @abstractmethod
    def find_above(self, code: str, limit: int = 30) -> list[CatalogRecord]:
        """Return up to `limit` records sorted immediately before `code`, excluding it.

        An unknown code has no neighbours and returns an empty list.
        """

    @abstractmethod
    def find_below(self, code: str, limit: int = 30) -> list[CatalogRecord]:
        """Return up to `limit` records sorted immediately after `code`, excluding it."""

    def find_context(self, code: str, radius: int = 30) -> list[CatalogRecord]:
        """The record for `code` between its `radius` neighbours on each side."""
        record = self.find_exact(code)
        if record is None:
            return []
        return [*self.find_above(code, radius), record, *self.find_below(code, radius)]


class AttributeDefinitionSource(ABC):
    """Provider of attribute reference data, read once at startup."""

    @abstractmethod
    def load_all(self) -> list[AttributeDefinition]:
        """Return every attribute definition."""
