import json
import logging
import typing as typ
from pathlib import Path
from types import MappingProxyType

from retrieval.base import AttributeDefinitionSource
from retrieval.models import (
    NOT_APPLICABLE_CODE,
    NOT_APPLICABLE_DESCRIPTION,
    AttributeDefinition,
    CandidateItem,
    CatalogRecord,
    Cardinality,
    ResolvedAttribute,
)

logger = logging.getLogger(__name__)

# Domain labels as used on rubrics, keyed by the section names of the reference document.
DOMAIN_LABELS: dict[str, str] = {"status": "S", "location": "L", "extent": "E"}


class InMemoryAttributeSource(AttributeDefinitionSource):
    def __init__(self, definitions: typ.Iterable[AttributeDefinition]):
        self._definitions = list(definitions)

    def load_all(self) -> list[AttributeDefinition]:
        return list(self._definitions)


class JsonAttributeSource(AttributeDefinitionSource):
    """Reads attribute definitions from a JSON file.

    Two layouts are accepted: a flat list of `{domain, code, description}` rows, or
    the reference document keyed by section (`{"status": [{"code", "desc"}], ...}`).
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def load_all(self) -> list[AttributeDefinition]:
        with self.path.open("r", encoding="utf-8") as f:
            data = json.load(f)

        if isinstance(data, list):
            return [AttributeDefinition.model_validate(row) for row in data]

        definitions: list[AttributeDefinition] = []
        for section, rows in data.items():
            domain = DOMAIN_LABELS.get(section.lower(), section)
            if not isinstance(rows, list):
                continue
            for row in rows:
                definitions.append(
                    AttributeDefinition(
                        domain=domain,
                        code=str(row["code"]),
                        description=str(row.get("desc") or row.get("description") or ""),
                    )
                )
        return definitions


class AttributeDefinitionCache:
    """Read-only `(domain, code) -> definition` table shared by every request.

    Built once at process start with `load()` and never mutated afterwards; the
    underlying tables are exposed only through `MappingProxyType`, so concurrent
    readers need no locking.
    """

    def __init__(self, definitions: typ.Iterable[AttributeDefinition]):
        tables: dict[str, dict[str, AttributeDefinition]] = {}
        for definition in definitions:
            tables.setdefault(definition.domain, {})[definition.code] = definition
        self._tables = MappingProxyType(
            {domain: MappingProxyType(codes) for domain, codes in tables.items()}
        )

    @classmethod
    def load(cls, source: AttributeDefinitionSource) -> "AttributeDefinitionCache":
        definitions = source.load_all()
        cache = cls(definitions)
        logger.info(
            "Cached %d attribute definitions across domains %s",
            len(definitions),
            sorted(cache.domains),
        )
        return cache

    @property
    def domains(self) -> typ.KeysView[str]:
        return self._tables.keys()

    def get(self, domain: str, code: str) -> AttributeDefinition | None:
        return self._tables.get(domain, MappingProxyType({})).get(code)

    def __len__(self) -> int:
        return sum(len(codes) for codes in self._tables.values())


class RubricAssembler:
    """Resolves each candidate's attribute domains into described attribute entries."""

    def __init__(self, cache: AttributeDefinitionCache):
        self.cache = cache

    def assemble(
        self, records: typ.Iterable[CatalogRecord | CandidateItem]
    ) -> list[CandidateItem]:
        assembled: list[CandidateItem] = []
        for record in records:
            candidate = (
                record if isinstance(record, CandidateItem) else CandidateItem.from_record(record)
            )
            assembled.append(
                candidate.model_copy(update={"all_attributes": self.resolve(candidate)})
            )
        return assembled

    def resolve(self, record: CatalogRecord) -> list[ResolvedAttribute]:
        resolved: list[ResolvedAttribute] = []
        for domain, spec in record.attributes.items():
            if spec.type is Cardinality.NOT_APPLICABLE or not spec.codes:
                resolved.append(
                    ResolvedAttribute(
                        domain=domain,
                        code=NOT_APPLICABLE_CODE,
                        description=NOT_APPLICABLE_DESCRIPTION,
                        type=spec.type,
                    )
                )
                continue

            for code in spec.codes:
                definition = self.cache.get(domain, code)
                if definition is None:
                    logger.warning(
                        "No definition for attribute %s=%s on %s", domain, code, record.code
                    )
                    description = f"Definition for {code} not found"
                else:
                    description = definition.description
                resolved.append(
                    ResolvedAttribute(
                        domain=domain, code=code, description=description, type=spec.type
                    )
                )
        return resolved
