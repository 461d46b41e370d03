"""BM25 index over an in-memory corpus.

Formula:
    score(D, Q) = sum over query terms q of
        IDF(q) * f(q, D) * (k1 + 1) / (f(q, D) + k1 * (1 - b + b * |D| / avgdl))

    IDF(q) = ln((N - df(q) + 0.5) / (df(q) + 0.5) + 1)

Where:
    f(q, D) = raw count of q in D
    |D|     = token count of D
    avgdl   = mean token count over the indexed corpus
    N       = number of indexed documents
    df(q)   = number of documents containing q

The "+ 1" inside the logarithm keeps IDF positive even for terms that occur
in most documents, so a matching term never lowers a score.
"""

import math
from typing import List, Sequence

import numpy as np

from retrieval_core.errors import MalformedInputError
from retrieval_core.logging_setup import get_logger
from retrieval_core.state import Document, ScoredDocument
from ranking.tokenizer import TermStatistics, build_term_statistics, tokenize

DEFAULT_K1 = 1.5
DEFAULT_B = 0.75


class BM25Index:
    """Okapi BM25 scoring over the most recently indexed corpus.

    ``index_documents`` replaces the whole corpus; there is no incremental
    update. Parameters are fixed for the lifetime of the instance.
    """

    def __init__(self, k1: float = DEFAULT_K1, b: float = DEFAULT_B) -> None:
        """Initialize an empty index.

        Args:
            k1: Term frequency saturation. Higher values let repeated terms
                keep adding to the score for longer.
            b: Length normalization strength in [0, 1]. 0 disables length
                normalization, 1 applies it fully.
        """
        if k1 < 0:
            raise ValueError(f"k1 must be non-negative, got {k1}")
        if not 0.0 <= b <= 1.0:
            raise ValueError(f"b must be within [0, 1], got {b}")
        self._k1 = float(k1)
        self._b = float(b)
        self._documents: List[Document] = []
        self._stats = TermStatistics()
        self._logger = get_logger(__name__)

    @property
    def k1(self) -> float:
        return self._k1

    @property
    def b(self) -> float:
        return self._b

    @property
    def statistics(self) -> TermStatistics:
        return self._stats

    @property
    def document_count(self) -> int:
        return self._stats.document_count

    @property
    def average_length(self) -> float:
        return self._stats.average_length

    @property
    def documents(self) -> List[Document]:
        return list(self._documents)

    def index_documents(self, documents: Sequence[Document]) -> None:
        """Rebuild the index from scratch over ``documents``.

        Raises:
            MalformedInputError: If any document body is not a string. The
                previous index is left untouched in that case.
        """
        documents = list(documents)
        for position, document in enumerate(documents):
            if not isinstance(document.text, str):
                raise MalformedInputError(
                    f"Document {document.identifier!r} at position {position} "
                    f"has a non-text body ({type(document.text).__name__})"
                )

        stats = build_term_statistics([tokenize(doc.text) for doc in documents])
        # Single swap so readers never see documents and stats out of step
        self._documents, self._stats = documents, stats
        self._logger.debug(
            "bm25_index_built",
            extra={
                "documents": stats.document_count,
                "unique_terms": len(stats.document_frequency),
                "average_length": stats.average_length,
            },
        )

    def idf(self, term: str) -> float:
        stats = self._stats
        df = stats.document_frequency_of(term)
        return math.log((stats.document_count - df + 0.5) / (df + 0.5) + 1.0)

    def score_all(self, query: str) -> np.ndarray:
        """Return the BM25 score of every indexed document, in index order."""
        stats = self._stats
        scores = np.zeros(stats.document_count, dtype="float64")
        query_terms = tokenize(query)
        if not query_terms or stats.document_count == 0:
            return scores

        doc_len = np.asarray(stats.document_lengths, dtype="float64")
        if stats.average_length > 0:
            length_ratio = doc_len / stats.average_length
        else:
            # Every document is empty; nothing can match anyway
            length_ratio = np.ones_like(doc_len)
        norm = self._k1 * (1.0 - self._b + self._b * length_ratio)

        for term in query_terms:
            if stats.document_frequency_of(term) == 0:
                continue
            tf = np.array(
                [freqs.get(term, 0) for freqs in stats.term_frequencies],
                dtype="float64",
            )
            matched = tf > 0
            scores[matched] += (
                self.idf(term)
                * (tf[matched] * (self._k1 + 1.0))
                / (tf[matched] + norm[matched])
            )
        return scores

    def search(self, query: str, top_k: int = 10) -> List[ScoredDocument]:
        """Return up to ``top_k`` documents with a positive score.

        Results are ordered by descending score; equal scores keep corpus
        order. Documents sharing no term with the query are never returned.
        """
        if top_k <= 0 or not query or not self._documents:
            return []

        scores = self.score_all(query)
        # Stable sort on the negated scores keeps corpus order for ties
        order = np.argsort(-scores, kind="stable")
        results: List[ScoredDocument] = []
        for idx in order[:top_k]:
            score = float(scores[idx])
            if score <= 0:
                break
            results.append(ScoredDocument(document=self._documents[idx], score=score))

        self._logger.debug(
            "bm25_search_complete",
            extra={
                "top_k": top_k,
                "results": len(results),
                "top_score": results[0].score if results else 0,
            },
        )
        return results
