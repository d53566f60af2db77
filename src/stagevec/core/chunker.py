"""Text chunking: normalized text -> ordered, overlapping spans."""

from typing import Iterable, Iterator, List, Protocol, Sequence

from langchain_text_splitters import RecursiveCharacterTextSplitter

from .config import IngestConfig
from .errors import ConfigurationError

DEFAULT_SEPARATORS = ("\n\n", "\n", ". ", " ")


class Chunker(Protocol):
    def split(self, text: str) -> Iterable[str]:
        ...


def _check_sizes(chunk_size: int, chunk_overlap: int) -> None:
    if chunk_size <= 0:
        raise ConfigurationError("chunk_size must be positive")
    if chunk_overlap < 0 or chunk_overlap >= chunk_size:
        raise ConfigurationError("chunk_overlap must be >= 0 and smaller than chunk_size")


class ChunkSequence:
    """Lazy spans of one text. Each iteration starts over from the beginning."""

    def __init__(self, chunker: "WindowChunker", text: str):
        self._chunker = chunker
        self._text = text

    def __iter__(self) -> Iterator[str]:
        return self._chunker._spans(self._text)

    def __len__(self) -> int:
        return sum(1 for _ in self)


class WindowChunker:
    """Fixed-size windows with an exact overlap, cut at natural boundaries when possible.

    Span ``i + 1`` always starts ``chunk_overlap`` characters before span ``i``
    ends, so ``reassemble`` restores the input exactly. A window ends after the
    last separator it contains (tried in order: paragraph, line, sentence,
    word) as long as that keeps the span at least half full; otherwise it is
    cut hard at ``chunk_size``. Empty or whitespace-only text has no spans.
    """

    def __init__(self, chunk_size: int = 4000, chunk_overlap: int = 400,
                 separators: Sequence[str] = DEFAULT_SEPARATORS):
        _check_sizes(chunk_size, chunk_overlap)
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.separators = tuple(separators)
        self._min_span = max(chunk_overlap + 1, chunk_size // 2)

    def split(self, text: str) -> ChunkSequence:
        return ChunkSequence(self, text)

    def _boundary(self, text: str, start: int, limit: int) -> int:
        for sep in self.separators:
            idx = text.rfind(sep, start, limit)
            if idx == -1:
                continue
            cut = idx + len(sep)
            if cut - start >= self._min_span:
                return cut
        return limit

    def _spans(self, text: str) -> Iterator[str]:
        if not text.strip():
            return
        start = 0
        length = len(text)
        while start < length:
            limit = start + self.chunk_size
            if limit >= length:
                yield text[start:]
                return
            end = self._boundary(text, start, limit)
            yield text[start:end]
            start = end - self.chunk_overlap


def reassemble(spans: Iterable[str], overlap: int) -> str:
    """Join spans produced with a fixed overlap back into the original text."""
    parts: List[str] = []
    for i, span in enumerate(spans):
        parts.append(span if i == 0 else span[overlap:])
    return "".join(parts)


class RecursiveChunker:
    """RecursiveCharacterTextSplitter backend. Overlap is approximate."""

    def __init__(self, chunk_size: int = 4000, chunk_overlap: int = 400,
                 separators: Sequence[str] = DEFAULT_SEPARATORS):
        _check_sizes(chunk_size, chunk_overlap)
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.splitter = RecursiveCharacterTextSplitter(
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            length_function=len,
            separators=list(separators) + [""],
        )

    def split(self, text: str) -> List[str]:
        if not text.strip():
            return []
        return self.splitter.split_text(text)


def build_chunker(config: IngestConfig) -> Chunker:
    """Build the chunker named in the configuration."""
    if config.chunker == "window":
        return WindowChunker(config.chunk_size, config.chunk_overlap)
    if config.chunker == "recursive":
        return RecursiveChunker(config.chunk_size, config.chunk_overlap)
    raise ConfigurationError(f"Unknown chunker: {config.chunker}")
