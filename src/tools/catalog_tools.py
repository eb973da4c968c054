import logging
import typing as typ

import pydantic
from langchain_core.tools import StructuredTool

from core.errors import RetrievalFailure
from retrieval.base import CatalogStore
from retrieval.models import CatalogRecord

logger = logging.getLogger(__name__)

BLOCK_RANGE_TOOL = "get_codes_by_block_range"

_PROMPT_FIELDS = {"code", "description", "includes", "excludes", "notes"}


class BlockRangeInput(pydantic.BaseModel):
    start: str = pydantic.Field(description="First code of the block, e.g. `B95`.")
    end: str = pydantic.Field(description="Last code of the block (inclusive), e.g. `B97`.")


def record_summary(record: CatalogRecord) -> dict[str, typ.Any]:
    """The slice of a record the diagnosis agent gets to see."""
    return record.model_dump(mode="json", include=_PROMPT_FIELDS)


def build_block_range_tool(store: CatalogStore) -> StructuredTool:
    """Expose `CatalogStore.find_by_range` to a tool-calling model."""

    def get_codes_by_block_range(start: str, end: str) -> list[dict[str, typ.Any]]:
        try:
            records = store.find_by_range(start, end)
        except Exception as e:
            raise RetrievalFailure(f"Range lookup {start}-{end} failed: {e}") from e
        logger.info("Block range %s-%s returned %d codes", start, end, len(records))
        return [record_summary(record) for record in records]

    return StructuredTool.from_function(
        func=get_codes_by_block_range,
        name=BLOCK_RANGE_TOOL,
        description=(
            "Fetch every ICD-10-CA code in a block range (inclusive), e.g. start=B95 end=B97. "
            "Use it when a code needed for the scenario is missing from the candidates."
        ),
        args_schema=BlockRangeInput,
        handle_validation_error=True,
    )
