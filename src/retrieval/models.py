import enum
import typing as typ

import pydantic
from pydantic.alias_generators import to_camel

NOT_APPLICABLE_CODE = "/"
NOT_APPLICABLE_DESCRIPTION = "N/A"


class Cardinality(str, enum.Enum):
    """Declared cardinality of an attribute domain on a rubric."""

    MANDATORY = "Mandatory"
    OPTIONAL = "Optional"
    NOT_APPLICABLE = "N/A"

    @classmethod
    def _missing_(cls, value: object) -> "Cardinality | None":
        if not isinstance(value, str):
            return None
        key = value.strip().lower().replace(" ", "").replace("-", "")
        aliases = {
            "mandatory": cls.MANDATORY,
            "optional": cls.OPTIONAL,
            "n/a": cls.NOT_APPLICABLE,
            "na": cls.NOT_APPLICABLE,
            "notapplicable": cls.NOT_APPLICABLE,
        }
        return aliases.get(key)


class _Model(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(
        frozen=True, populate_by_name=True, alias_generator=to_camel
    )


def _none_to_list(value: typ.Any) -> typ.Any:
    return [] if value is None else value


class Qualifier(_Model):
    """A code-scoped sub-code (approach/technique/agent) of a rubric."""

    code: str
    description: str = ""
    approach: str = ""
    includes: list[str] = pydantic.Field(default_factory=list)

    @pydantic.field_validator("includes", mode="before")
    @classmethod
    def _validate_includes(cls, value: typ.Any) -> typ.Any:
        return _none_to_list(value)


class AttributeSpec(_Model):
    """Cardinality and applicable codes of one attribute domain."""

    type: Cardinality = Cardinality.NOT_APPLICABLE
    codes: list[str] = pydantic.Field(default_factory=list)

    @pydantic.field_validator("codes", mode="before")
    @classmethod
    def _validate_codes(cls, value: typ.Any) -> typ.Any:
        return _none_to_list(value)

    @pydantic.field_validator("type", mode="before")
    @classmethod
    def _validate_type(cls, value: typ.Any) -> typ.Any:
        if value is None:
            return Cardinality.NOT_APPLICABLE
        if isinstance(value, str):
            return Cardinality(value)
        return value


class AttributeDefinition(_Model):
    """Reference description of one attribute code in one domain."""

    domain: str
    code: str
    description: str


class ResolvedAttribute(_Model):
    """An attribute code with its description resolved from reference data."""

    domain: str = pydantic.Field(validation_alias=pydantic.AliasChoices("domain", "name"))
    code: str
    description: str
    type: Cardinality

    @property
    def is_not_applicable(self) -> bool:
        return self.code == NOT_APPLICABLE_CODE


class CatalogRecord(_Model):
    """A coding record as stored in the catalog."""

    code: str
    description: str = ""
    includes: list[str] = pydantic.Field(default_factory=list)
    excludes: list[str] = pydantic.Field(default_factory=list)
    notes: list[str] = pydantic.Field(
        default_factory=list,
        validation_alias=pydantic.AliasChoices("notes", "note"),
    )
    code_also: list[str] = pydantic.Field(
        default_factory=list,
        validation_alias=pydantic.AliasChoices("codeAlso", "code_also"),
    )
    qualifiers: list[Qualifier] = pydantic.Field(
        default_factory=list,
        validation_alias=pydantic.AliasChoices("qualifiers", "otherQualifiers"),
    )
    attributes: dict[str, AttributeSpec] = pydantic.Field(default_factory=dict)

    @pydantic.field_validator(
        "includes", "excludes", "notes", "code_also", "qualifiers", mode="before"
    )
    @classmethod
    def _validate_lists(cls, value: typ.Any) -> typ.Any:
        if isinstance(value, str):
            return [value]
        return _none_to_list(value)

    @pydantic.field_validator("attributes", mode="before")
    @classmethod
    def _validate_attributes(cls, value: typ.Any) -> typ.Any:
        return value or {}

    @pydantic.field_validator("code", mode="before")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        value = str(value).strip()
        if value:
            return value
        raise ValueError("Code cannot be empty")


class CandidateItem(CatalogRecord):
    """A catalog record retrieved for one request, with its score and resolved attributes."""

    similarity_score: float | None = None
    all_attributes: list[ResolvedAttribute] = pydantic.Field(default_factory=list)

    @classmethod
    def from_record(cls, record: CatalogRecord, score: float | None = None) -> "CandidateItem":
        return cls(**dict(record), similarity_score=score)

    def find_qualifier(self, code: str) -> Qualifier | None:
        for qualifier in self.qualifiers:
            if qualifier.code == code:
                return qualifier
        return None

    def find_attribute(self, domain: str, code: str) -> ResolvedAttribute | None:
        for attribute in self.all_attributes:
            if attribute.domain == domain and attribute.code == code:
                return attribute
        return None

    def prompt_payload(self) -> dict[str, typ.Any]:
        """Full JSON-ready view of the candidate, as shown to the model."""
        return self.model_dump(mode="json", by_alias=True)
