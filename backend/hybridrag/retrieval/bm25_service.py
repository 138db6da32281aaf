"""
BM25 scoring engine.

Wraps rank_bm25's BM25Okapi behind a narrow interface:
    configure, add_document, consolidate, export_state, import_state, search

One BM25Okapi scorer is kept per document field; a query's score is the
field-weighted sum of the per-field scores. The exported state is plain
JSON-compatible data (vocabulary, term frequencies, document lengths, field
weights and BM25 parameters). It never contains the tokenization pipeline,
which must be configured again after ``import_state``.
"""

from typing import Any, Dict, List, Mapping, Optional, Tuple

from rank_bm25 import BM25Okapi

from .tokenizer import TokenizationPipeline


STATE_FORMAT = "hybridrag.bm25"
STATE_VERSION = 1

DEFAULT_FIELD_WEIGHTS: Dict[str, float] = {"text": 1.0}

# (document_id, score)
ScoredResult = Tuple[int, float]


def _term_frequencies(tokens: List[str]) -> Dict[str, int]:
    frequencies: Dict[str, int] = {}
    for token in tokens:
        frequencies[token] = frequencies.get(token, 0) + 1
    return frequencies


def _scorer_from_frequencies(
    doc_freqs: List[Dict[str, int]],
    k1: float,
    b: float,
    epsilon: float,
) -> Optional[BM25Okapi]:
    """
    Build a BM25Okapi scorer from per-document term frequencies.

    Build and import share this path, so a reloaded index scores exactly
    like the one it was exported from. Returns None when the field holds
    no tokens at all (BM25 is undefined for a zero average length).
    """
    if not doc_freqs or not any(doc_freqs):
        return None
    corpus = [
        [term for term, count in frequencies.items() for _ in range(count)]
        for frequencies in doc_freqs
    ]
    return BM25Okapi(corpus, k1=k1, b=b, epsilon=epsilon)


class BM25Service:
    """
    BM25 index over tokenized documents with one or more weighted fields.

    Example:
        >>> service = BM25Service()
        >>> service.configure(TokenizationPipeline())
        >>> service.add_document(0, {"text": "Bitcoin is a peer-to-peer cash system"})
        >>> service.add_document(1, {"text": "Ethereum runs smart contracts"})
        >>> service.add_document(2, {"text": "Proof of stake secures the chain"})
        >>> service.consolidate()
        >>> service.search("smart contracts", limit=1)
        [(1, ...)]
    """

    def __init__(
        self,
        k1: float = 1.5,
        b: float = 0.75,
        epsilon: float = 0.25,
    ) -> None:
        self._k1 = k1
        self._b = b
        self._epsilon = epsilon
        self._pipeline: Optional[TokenizationPipeline] = None
        self._field_weights: Dict[str, float] = dict(DEFAULT_FIELD_WEIGHTS)
        self._doc_ids: List[int] = []
        self._doc_id_set: set = set()
        self._term_freqs: Dict[str, List[Dict[str, int]]] = {}
        self._scorers: Dict[str, Optional[BM25Okapi]] = {}
        self._consolidated = False

    @property
    def is_configured(self) -> bool:
        return self._pipeline is not None

    @property
    def is_consolidated(self) -> bool:
        return self._consolidated

    @property
    def document_count(self) -> int:
        return len(self._doc_ids)

    @property
    def field_weights(self) -> Dict[str, float]:
        return dict(self._field_weights)

    @property
    def vocabulary(self) -> Dict[str, List[str]]:
        """Indexed terms per field."""
        return {
            name: sorted(scorer.idf) if scorer is not None else []
            for name, scorer in self._scorers.items()
        }

    def configure(
        self,
        pipeline: TokenizationPipeline,
        field_weights: Optional[Mapping[str, float]] = None,
    ) -> None:
        """
        Set the tokenization pipeline and, before any document is added,
        the field weights.
        """
        if field_weights is not None:
            if self._doc_ids or self._consolidated:
                raise RuntimeError("Field weights can only be changed on an empty index")
            if not field_weights:
                raise ValueError("At least one field weight is required")
            self._field_weights = {name: float(w) for name, w in field_weights.items()}
        self._pipeline = pipeline

    def add_document(self, doc_id: int, fields: Mapping[str, str]) -> None:
        """
        Tokenize and add a document.

        Args:
            doc_id: Unique integer id of the document
            fields: Field name -> text; fields without a weight are ignored

        Raises:
            RuntimeError: If no pipeline is configured or the index is consolidated
            ValueError: If doc_id was already added
        """
        if self._pipeline is None:
            raise RuntimeError("No tokenization pipeline configured. Call configure() first.")
        if self._consolidated:
            raise RuntimeError("Index is consolidated; rebuild to add documents")
        if doc_id in self._doc_id_set:
            raise ValueError(f"Duplicate document id: {doc_id}")

        self._doc_ids.append(doc_id)
        self._doc_id_set.add(doc_id)
        for name in self._field_weights:
            tokens = self._pipeline(fields.get(name) or "")
            self._term_freqs.setdefault(name, []).append(_term_frequencies(tokens))

    def consolidate(self) -> None:
        """
        Freeze term statistics (IDF, average lengths). Must run exactly once,
        after the last add_document and before the first search.
        """
        if self._consolidated:
            raise RuntimeError("Index is already consolidated")
        self._scorers = {
            name: _scorer_from_frequencies(
                self._term_freqs.get(name, []), self._k1, self._b, self._epsilon,
            )
            for name in self._field_weights
        }
        self._consolidated = True

    def export_state(self) -> Dict[str, Any]:
        """Export the consolidated index as JSON-compatible data."""
        if not self._consolidated:
            raise RuntimeError("Cannot export an index that is not consolidated")

        fields: Dict[str, Any] = {}
        for name in self._field_weights:
            scorer = self._scorers.get(name)
            fields[name] = {
                "doc_freqs": [dict(f) for f in self._term_freqs.get(name, [])],
                "doc_len": list(scorer.doc_len) if scorer is not None else [],
                "avgdl": scorer.avgdl if scorer is not None else 0.0,
                "idf": {t: float(v) for t, v in scorer.idf.items()} if scorer is not None else {},
            }

        return {
            "format": STATE_FORMAT,
            "version": STATE_VERSION,
            "params": {"k1": self._k1, "b": self._b, "epsilon": self._epsilon},
            "field_weights": dict(self._field_weights),
            "doc_ids": list(self._doc_ids),
            "fields": fields,
        }

    def import_state(self, state: Mapping[str, Any]) -> None:
        """
        Replace this engine's index with an exported state.

        The pipeline is not part of the state; call configure() afterwards.

        Raises:
            ValueError: If the state is not a supported or consistent export
        """
        if state.get("format") != STATE_FORMAT or state.get("version") != STATE_VERSION:
            raise ValueError(
                f"Unsupported index state: format={state.get('format')!r} "
                f"version={state.get('version')!r}"
            )

        params = state["params"]
        k1, b, epsilon = float(params["k1"]), float(params["b"]), float(params["epsilon"])
        field_weights = {name: float(w) for name, w in state["field_weights"].items()}
        doc_ids = [int(i) for i in state["doc_ids"]]
        if len(set(doc_ids)) != len(doc_ids):
            raise ValueError("Index state contains duplicate document ids")

        term_freqs: Dict[str, List[Dict[str, int]]] = {}
        scorers: Dict[str, Optional[BM25Okapi]] = {}
        for name in field_weights:
            field_state = state["fields"][name]
            doc_freqs = [
                {str(t): int(c) for t, c in frequencies.items()}
                for frequencies in field_state["doc_freqs"]
            ]
            if len(doc_freqs) != len(doc_ids):
                raise ValueError(f"Field {name!r} does not cover every document")
            scorer = _scorer_from_frequencies(doc_freqs, k1, b, epsilon)
            stored_vocabulary = set(field_state["idf"])
            rebuilt_vocabulary = set(scorer.idf) if scorer is not None else set()
            if stored_vocabulary != rebuilt_vocabulary:
                raise ValueError(f"Vocabulary mismatch in field {name!r}")
            term_freqs[name] = doc_freqs
            scorers[name] = scorer

        self._k1, self._b, self._epsilon = k1, b, epsilon
        self._field_weights = field_weights
        self._doc_ids = doc_ids
        self._doc_id_set = set(doc_ids)
        self._term_freqs = term_freqs
        self._scorers = scorers
        self._consolidated = True

    def search(self, query: str, limit: int = 10) -> List[ScoredResult]:
        """
        Score all documents against the query.

        Only documents containing at least one query token are returned,
        ordered by descending score, ties by ascending document id.

        Raises:
            RuntimeError: If the index is not consolidated or not configured
        """
        if not self._consolidated:
            raise RuntimeError("Index is not consolidated. Call consolidate() first.")
        if self._pipeline is None:
            raise RuntimeError("No tokenization pipeline configured. Call configure() first.")

        if limit <= 0 or not query or not query.strip():
            return []

        query_tokens = self._pipeline(query)
        if not query_tokens:
            return []

        totals: Dict[int, float] = {}
        for name, weight in self._field_weights.items():
            scorer = self._scorers.get(name)
            if scorer is None or weight == 0:
                continue
            scores = scorer.get_scores(query_tokens)
            for position, frequencies in enumerate(self._term_freqs[name]):
                if any(token in frequencies for token in query_tokens):
                    doc_id = self._doc_ids[position]
                    totals[doc_id] = totals.get(doc_id, 0.0) + weight * float(scores[position])

        ranked = sorted(totals.items(), key=lambda item: (-item[1], item[0]))
        return ranked[:limit]
