import re
import typing as typ

_CHUNK_PATTERN = re.compile(r"\d+|\D+")
_ICD_COMPACT_PATTERN = re.compile(r"^[A-Z]\d{2}[0-9A-Z]+$")

RUBRIC_SEGMENTS = 3


def normalize_code(code: str) -> str:
    return code.strip().upper()


def base_code(code: str, segments: int = RUBRIC_SEGMENTS) -> str:
    """Reduce a full CCI code (`1.IJ.50.GQ-OA`) to its rubric (`1.IJ.50`)."""
    return ".".join(code.strip().split(".")[:segments])


def _segment_key(segment: str) -> tuple[tuple[int, int | str], ...]:
    return tuple(
        (0, int(chunk)) if chunk.isdigit() else (1, chunk.casefold())
        for chunk in _CHUNK_PATTERN.findall(segment)
    )


def code_sort_key(code: str) -> tuple[tuple[tuple[int, int | str], ...], ...]:
    """Numeric-aware key over dot-separated segments, so `1.IJ.9` sorts before `1.IJ.10`."""
    return tuple(_segment_key(segment) for segment in code.split("."))


def code_variants(code: str) -> list[str]:
    """Spellings of the same code to try before falling back to ancestors."""
    normalized = normalize_code(code)
    if not normalized:
        return []
    variants = [normalized]
    if "." not in normalized and _ICD_COMPACT_PATTERN.match(normalized):
        variants.append(f"{normalized[:3]}.{normalized[3:]}")
    return variants


def ancestor_codes(code: str, min_length: int = 3) -> typ.Iterator[str]:
    """Yield the code with its last character stripped, repeatedly, down to `min_length`.

    Trailing separators are dropped so `Z99.X` is followed by `Z99`, not `Z99.`.
    """
    current = normalize_code(code)
    while True:
        current = current[:-1].rstrip(".")
        if len(current) < min_length:
            return
        yield current


def within_range(code: str, start: str, end: str) -> bool:
    """Block-level inclusive range check: `B95..B97` covers `B95` through `B97.9`."""
    code, start, end = normalize_code(code), normalize_code(start), normalize_code(end)
    if code < start:
        return False
    return code <= end or code.startswith(end)
