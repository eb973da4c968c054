import json
import logging
import typing as typ

import pydantic
from pydantic.alias_generators import to_camel

from agents.base import ChatBackend, message_text, render_template, strip_code_fences
from core.errors import ResponseParseError
from retrieval.models import CandidateItem

logger = logging.getLogger(__name__)

DEFAULT_DOMAINS = ("S", "L", "E")

CCI_DOMAIN_RULES = """\
Sections of the classification:
  1 = Therapeutic interventions
  2 = Diagnostic interventions
  3 = Diagnostic imaging interventions
  5 = Obstetrical and fetal interventions
  6 = Cognitive, psychosocial and sensory therapeutic interventions
  7 = Other healthcare interventions
  8 = Therapeutic interventions strengthening the immune system and/or genetic composition
Qualifiers carry the approach/technique, the agent or device, and the tissue used.
Attribute domains are S = status, L = location, E = extent."""


class ChosenAttribute(pydantic.BaseModel):
    """One `(domain, code)` pick made by the model."""

    domain: str = pydantic.Field(validation_alias=pydantic.AliasChoices("type", "domain", "name"))
    code: str

    model_config = pydantic.ConfigDict(frozen=True, extra="ignore")

    @pydantic.field_validator("domain", "code", mode="before")
    @classmethod
    def _validate_text(cls, value: typ.Any) -> str:
        if not isinstance(value, str):
            raise ValueError("must be a string")
        return value.strip()


class Selection(pydantic.BaseModel):
    """A model's pick of one code, with its qualifier, attributes and rationale."""

    code: str
    chosen_qualifier: str | None = None
    chosen_attributes: list[ChosenAttribute] = pydantic.Field(default_factory=list)
    rationale: str

    model_config = pydantic.ConfigDict(
        frozen=True, populate_by_name=True, alias_generator=to_camel, extra="ignore"
    )

    @pydantic.field_validator("code", mode="before")
    @classmethod
    def _validate_code(cls, value: typ.Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("code must be a non-empty string")
        return value.strip()

    @pydantic.field_validator("chosen_qualifier", mode="before")
    @classmethod
    def _validate_qualifier(cls, value: typ.Any) -> str | None:
        # Some backends answer with the full qualifier object instead of its code.
        if isinstance(value, dict):
            value = value.get("code")
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValueError("chosenQualifier must be a string, an object with a code, or null")
        return value.strip() or None

    @pydantic.field_validator("chosen_attributes", mode="before")
    @classmethod
    def _validate_attributes(cls, value: typ.Any) -> typ.Any:
        return [] if value is None else value

    @pydantic.model_validator(mode="after")
    def _one_code_per_domain(self) -> "Selection":
        domains = [attribute.domain for attribute in self.chosen_attributes]
        duplicates = sorted({domain for domain in domains if domains.count(domain) > 1})
        if duplicates:
            raise ValueError(f"more than one code selected for domain(s) {duplicates}")
        return self

    @property
    def attribute_codes(self) -> dict[str, str]:
        return {attribute.domain: attribute.code for attribute in self.chosen_attributes}


_SELECTIONS = pydantic.TypeAdapter(list[Selection])


class SelectionPromptBuilder:
    """Builds the selection instructions, embedding every candidate in full."""

    template_name = "select_codes.j2"

    def build(
        self,
        query: str,
        candidates: typ.Sequence[CandidateItem],
        domain_rules: str = CCI_DOMAIN_RULES,
    ) -> str:
        serialized = [
            json.dumps(candidate.prompt_payload(), indent=2, ensure_ascii=False).replace("`", "")
            for candidate in candidates
        ]
        return render_template(
            self.template_name,
            query=query,
            candidates=serialized,
            domain_rules=domain_rules.strip(),
            domains=self._domains(candidates),
        )

    @staticmethod
    def _domains(candidates: typ.Sequence[CandidateItem]) -> list[str]:
        seen = {domain for candidate in candidates for domain in candidate.attributes}
        if not seen:
            return list(DEFAULT_DOMAINS)
        ordered = [domain for domain in DEFAULT_DOMAINS if domain in seen]
        return ordered + sorted(seen.difference(DEFAULT_DOMAINS))


class ModelSelector:
    """Asks one backend to pick among candidates and parses its answer."""

    def __init__(self, backend: ChatBackend):
        self.backend = backend

    @property
    def name(self) -> str:
        return self.backend.name

    def select(self, prompt: str) -> list[Selection]:
        response = self.backend.complete(prompt)
        return self.parse(message_text(response))

    def parse(self, content: str) -> list[Selection]:
        """Parse a JSON array of selections, tolerating markdown fences around it."""
        cleaned = strip_code_fences(content)
        if not cleaned:
            raise ResponseParseError("empty response", raw=content)

        try:
            data = json.loads(cleaned)
        except json.JSONDecodeError as e:
            logger.error("Backend %s returned non-JSON output", self.name)
            raise ResponseParseError(f"invalid JSON ({e})", raw=cleaned) from e

        if not isinstance(data, list):
            raise ResponseParseError(
                f"expected a JSON array, got {type(data).__name__}", raw=cleaned
            )

        try:
            selections = _SELECTIONS.validate_python(data)
        except pydantic.ValidationError as e:
            raise ResponseParseError(
                f"{e.error_count()} invalid selection field(s): {e.errors()[0]['msg']}",
                raw=cleaned,
            ) from e

        logger.info(
            "Backend %s selected %s", self.name, [selection.code for selection in selections]
        )
        return selections
