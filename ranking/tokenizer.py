"""Tokenization and corpus term statistics for BM25 scoring.

Tokenization pipeline:
1. Case-fold
2. Split on every run of non-alphanumeric characters (underscore included)
3. Drop empty tokens

No stemming and no stopword removal: terms match by exact string equality
after normalization.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from rank_bm25 import BM25

from retrieval_core.errors import MalformedInputError

# Unicode letters and digits; underscore is a separator
_TOKEN_PATTERN = re.compile(r"[^\W_]+")


def tokenize(text: str) -> List[str]:
    """Split text into normalized terms.

    Examples:
        >>> tokenize("The Wizard's fire-spell!")
        ['the', 'wizard', 's', 'fire', 'spell']

        >>> tokenize("   ")
        []
    """
    if not isinstance(text, str):
        raise MalformedInputError(
            f"Expected text to be str, got {type(text).__name__}"
        )
    return _TOKEN_PATTERN.findall(text.casefold())


@dataclass(frozen=True)
class TermStatistics:
    """Corpus-wide and per-document term counts for one indexed corpus."""

    document_count: int = 0
    average_length: float = 0.0
    document_lengths: List[int] = field(default_factory=list)
    term_frequencies: List[Dict[str, int]] = field(default_factory=list)
    document_frequency: Dict[str, int] = field(default_factory=dict)

    def document_frequency_of(self, term: str) -> int:
        return self.document_frequency.get(term, 0)


class _CorpusCounter(BM25):
    """rank_bm25 corpus pass that keeps the raw document frequencies.

    Only the counting done by ``BM25._initialize`` is used; scoring lives in
    ``ranking.bm25``. Relies on rank_bm25 0.2.x calling ``_calc_idf(nd)`` once
    from ``BM25.__init__`` with the per-term document counts.
    """

    def __init__(self, corpus: Sequence[List[str]]) -> None:
        self.document_frequency: Dict[str, int] = {}
        super().__init__(corpus)

    def _calc_idf(self, nd: Dict[str, int]) -> None:
        self.document_frequency = dict(nd)

    def get_scores(self, query):  # pragma: no cover - never scored
        raise NotImplementedError


def build_term_statistics(tokenized_corpus: Sequence[List[str]]) -> TermStatistics:
    """Build statistics for exactly the given corpus.

    The result never shares state with statistics built earlier; callers
    replace their previous statistics wholesale.
    """
    if not tokenized_corpus:
        return TermStatistics()

    counter = _CorpusCounter(tokenized_corpus)
    return TermStatistics(
        document_count=counter.corpus_size,
        average_length=float(counter.avgdl),
        document_lengths=list(counter.doc_len),
        term_frequencies=[dict(freqs) for freqs in counter.doc_freqs],
        document_frequency=counter.document_frequency,
    )
