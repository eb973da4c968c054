from retrieval.base import AttributeDefinitionSource, CatalogStore, ScoredRecord
from retrieval.models import (
    AttributeDefinition,
    AttributeSpec,
    CandidateItem,
    Cardinality,
    CatalogRecord,
    Qualifier,
    ResolvedAttribute,
)
from retrieval.retriever import CandidateRetriever
from retrieval.rubrics import (
    AttributeDefinitionCache,
    InMemoryAttributeSource,
    JsonAttributeSource,
    RubricAssembler,
)
from retrieval.vector import (
    HashEmbeddingProvider,
    InMemoryCatalogStore,
    OpenAIEmbeddingProvider,
)

__all__ = [
    "AttributeDefinition",
    "AttributeDefinitionCache",
    "AttributeDefinitionSource",
    "AttributeSpec",
    "CandidateItem",
    "CandidateRetriever",
    "Cardinality",
    "CatalogRecord",
    "CatalogStore",
    "HashEmbeddingProvider",
    "InMemoryAttributeSource",
    "InMemoryCatalogStore",
    "JsonAttributeSource",
    "OpenAIEmbeddingProvider",
    "Qualifier",
    "ResolvedAttribute",
    "RubricAssembler",
    "ScoredRecord",
]
