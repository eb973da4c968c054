import hashlib
import json
import logging
import re
from collections import Counter
from pathlib import Path
from typing import Iterable, Iterator, Protocol, Sequence

import numpy as np
from openai import OpenAI

from retrieval.base import CatalogStore, ScoredRecord
from retrieval.models import CatalogRecord
from tools.codes import code_sort_key, normalize_code, within_range

logger = logging.getLogger(__name__)

_TOKEN_PATTERN = re.compile(r"[a-z0-9]+")
_EPSILON = 1e-12


def tokenize(text: str) -> list[str]:
    return _TOKEN_PATTERN.findall(text.lower())


def _unit_length(matrix: np.ndarray) -> np.ndarray:
    """Scale rows to unit length so a dot product between rows is their cosine similarity."""
    if matrix.size == 0:
        return matrix
    lengths = np.linalg.norm(matrix, axis=1, keepdims=True)
    return matrix / np.maximum(lengths, _EPSILON)


class EmbeddingProvider(Protocol):
    """Turns record text (and queries against it) into one dense row per input."""

    def embed(self, texts: Sequence[str]) -> np.ndarray: ...


class HashEmbeddingProvider:
    """Embeds catalog text without a model: every token adds +1 or -1 to a hashed bucket.

    Deterministic across runs, so a catalog can be embedded at startup and tests can
    rely on the ranking. Used whenever no embedding model is configured.
    """

    def __init__(self, dim: int = 768):
        if dim <= 0:
            raise ValueError("Embedding dimension must be positive.")
        self.dim = dim

    def _bucket(self, token: str) -> tuple[int, float]:
        digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
        value = int.from_bytes(digest, "big")
        return value % self.dim, -1.0 if value & 0b10 else 1.0

    def embed(self, texts: Sequence[str]) -> np.ndarray:
        matrix = np.zeros((len(texts), self.dim), dtype=np.float32)
        for row, text in enumerate(texts):
            for token, count in Counter(tokenize(text)).items():
                bucket, sign = self._bucket(token)
                matrix[row, bucket] += sign * count
        return _unit_length(matrix)


class OpenAIEmbeddingProvider:
    """Embeds catalog records through an OpenAI embeddings endpoint, in fixed-size batches.

    `base_url` points it at any compatible server; `client` lets callers pass a
    preconfigured (or fake) client.
    """

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        base_url: str | None = None,
        batch_size: int = 128,
        client: OpenAI | None = None,
    ):
        if batch_size <= 0:
            raise ValueError("`batch_size` must be positive.")
        self.model = model
        self.batch_size = batch_size
        self.client = client or (OpenAI(base_url=base_url) if base_url else OpenAI())

    def _batches(self, texts: Sequence[str]) -> Iterator[list[str]]:
        for start in range(0, len(texts), self.batch_size):
            # Record text is multi-line; the endpoint gets one line per record.
            yield [" ".join(text.split()) for text in texts[start : start + self.batch_size]]

    def embed(self, texts: Sequence[str]) -> np.ndarray:
        rows: list[list[float]] = []
        for batch in self._batches(texts):
            response = self.client.embeddings.create(model=self.model, input=batch)
            rows.extend(item.embedding for item in sorted(response.data, key=lambda item: item.index))
        if not rows:
            return np.zeros((0, 0), dtype=np.float32)
        return _unit_length(np.asarray(rows, dtype=np.float32))


def document_text(record: CatalogRecord) -> str:
    """Flatten a record into the text blob that gets embedded."""
    parts = [f"{record.code} - {record.description}"]
    if record.includes:
        parts.append(f"Includes: {', '.join(record.includes)}")
    if record.excludes:
        parts.append(f"Excludes: {', '.join(record.excludes)}")
    if record.attributes:
        attrs = [
            f"{domain}({spec.type.value}): {', '.join(spec.codes)}"
            for domain, spec in record.attributes.items()
        ]
        parts.append(f"Attributes: {'; '.join(attrs)}")
    if record.qualifiers:
        quals = [f"{q.code} - {q.description}" for q in record.qualifiers]
        parts.append(f"Qualifiers: {'; '.join(quals)}")
    return "\n".join(parts)


class InMemoryCatalogStore(CatalogStore):
    """Catalog held in memory, ranked by cosine similarity over embedded record text."""

    def __init__(self, records: Iterable[CatalogRecord], *, embedder: EmbeddingProvider):
        self.embedder = embedder
        self.records: list[CatalogRecord] = sorted(
            records, key=lambda record: code_sort_key(record.code)
        )
        self._by_code = {normalize_code(record.code): record for record in self.records}
        self._position = {normalize_code(record.code): idx for idx, record in enumerate(self.records)}
        self._vectors = self._build_vectors([document_text(record) for record in self.records])

    @classmethod
    def from_json(
        cls, path: Path, *, embedder: EmbeddingProvider | None = None
    ) -> "InMemoryCatalogStore":
        """Load records from a `.json` array or a `.jsonl` file."""
        path = Path(path)
        with path.open("r", encoding="utf-8") as f:
            if path.suffix == ".jsonl":
                rows = [json.loads(line) for line in f if line.strip()]
            else:
                rows = json.load(f)
        records = [CatalogRecord.model_validate(row) for row in rows]
        logger.info("Loaded %d catalog records from %s", len(records), path)
        return cls(records, embedder=embedder or HashEmbeddingProvider())

    def __len__(self) -> int:
        return len(self.records)

    def similarity_search(self, query_text: str, limit: int = 40) -> list[ScoredRecord]:
        query_text = query_text.strip()
        if not query_text or limit <= 0 or self._vectors.size == 0:
            return []

        query_vector = self._build_vectors([query_text])[0]
        scores = self._vectors @ query_vector
        k = min(limit, scores.shape[0])
        candidate_indices = np.argpartition(scores, -k)[-k:]
        ranked = sorted(
            ((int(idx), float(scores[idx])) for idx in candidate_indices),
            key=lambda pair: pair[1],
            reverse=True,
        )
        return [ScoredRecord(self.records[idx], score) for idx, score in ranked]

    def find_exact(self, code: str) -> CatalogRecord | None:
        return self._by_code.get(normalize_code(code))

    def find_by_range(self, start_code: str, end_code: str) -> list[CatalogRecord]:
        return [
            record
            for record in self.records
            if within_range(record.code, start_code, end_code)
        ]

    def find_above(self, code: str, limit: int = 30) -> list[CatalogRecord]:
        index = self._position.get(normalize_code(code))
        if index is None or limit <= 0:
            return []
        return self.records[max(index - limit, 0) : index]

    def find_below(self, code: str, limit: int = 30) -> list[CatalogRecord]:
        index = self._position.get(normalize_code(code))
        if index is None or limit <= 0:
            return []
        return self.records[index + 1 : index + 1 + limit]

    def _build_vectors(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, 1), dtype=np.float32)
        vectors = self.embedder.embed(texts)
        if vectors.ndim != 2:
            raise ValueError("Embedding provider must return a 2D array.")
        return _unit_length(vectors.astype(np.float32))
