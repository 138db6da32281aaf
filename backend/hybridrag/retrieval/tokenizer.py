"""
Tokenization pipeline for BM25 indexing and querying.

Stages run in a fixed order:
    lowercase -> segmentation -> stop-word removal -> stemming -> negation propagation

Chinese runs are segmented with jieba, everything else is split on
non-word characters. Tokens that follow a negator are prefixed with ``!``
so "not good" and "good" score as different terms.

CRITICAL: The same pipeline configuration MUST be used for both indexing
and querying. The persisted index does not store it, so it has to be
supplied again on every load.
"""

import re
import string
from typing import FrozenSet, List, Optional

import jieba
import snowballstemmer
from pydantic import BaseModel, ConfigDict, Field


# CJK Unicode ranges (characters only, not punctuation)
CJK_RANGES = [
    (0x4E00, 0x9FFF),    # CJK Unified Ideographs
    (0x3400, 0x4DBF),    # CJK Unified Ideographs Extension A
    (0x20000, 0x2A6DF),  # CJK Unified Ideographs Extension B
    (0x2A700, 0x2B73F),  # CJK Unified Ideographs Extension C
    (0x2B740, 0x2B81F),  # CJK Unified Ideographs Extension D
    (0x2B820, 0x2CEAF),  # CJK Unified Ideographs Extension E
    (0xF900, 0xFAFF),    # CJK Compatibility Ideographs
    (0x2F800, 0x2FA1F),  # CJK Compatibility Ideographs Supplement
]

# Chinese punctuation characters to filter out
CHINESE_PUNCTUATION = set('，。！？、；：""''（）【】《》〈〉「」『』…—～·')

# Threshold for determining if text is primarily Chinese
CJK_RATIO_THRESHOLD = 0.3

NEGATION_PREFIX = "!"

NEGATORS = frozenset({
    "no", "not", "never", "none", "nor", "neither", "nobody", "nothing",
    "nowhere", "cannot", "without",
})

# Must never contain a negator.
DEFAULT_STOP_WORDS = frozenset({
    "a", "about", "above", "after", "again", "all", "am", "an", "and", "any",
    "are", "as", "at", "be", "because", "been", "before", "being", "below",
    "between", "both", "but", "by", "can", "could", "did", "do", "does",
    "doing", "down", "during", "each", "few", "for", "from", "further", "had",
    "has", "have", "having", "he", "her", "here", "hers", "herself", "him",
    "himself", "his", "how", "i", "if", "in", "into", "is", "it", "its",
    "itself", "just", "me", "more", "most", "my", "myself", "of", "off", "on",
    "once", "only", "or", "other", "our", "ours", "ourselves", "out", "over",
    "own", "same", "she", "should", "so", "some", "such", "than", "that",
    "the", "their", "theirs", "them", "themselves", "then", "there", "these",
    "they", "this", "those", "through", "to", "too", "under", "until", "up",
    "very", "was", "we", "were", "what", "when", "where", "which", "while",
    "who", "whom", "why", "will", "with", "would", "you", "your", "yours",
    "yourself", "yourselves",
    # common Chinese function words
    "的", "了", "和", "是", "在", "也", "就", "都", "而", "及", "与", "或",
})

_WORD_PATTERN = re.compile(r"\w+(?:'\w+)*")


def _is_cjk_char(char: str) -> bool:
    """Check if a character is a CJK character."""
    code_point = ord(char)
    return any(start <= code_point <= end for start, end in CJK_RANGES)


def _calculate_cjk_ratio(text: str) -> float:
    """Calculate the ratio of CJK characters in the text."""
    if not text:
        return 0.0

    # Count only actual characters (not whitespace or punctuation)
    chars = [c for c in text if c.strip() and c not in string.punctuation]
    if not chars:
        return 0.0

    cjk_count = sum(1 for c in chars if _is_cjk_char(c))
    return cjk_count / len(chars)


def is_chinese_text(text: str) -> bool:
    """
    Determine if text is primarily Chinese based on CJK character ratio.

    Args:
        text: Input text to analyze

    Returns:
        True if CJK character ratio exceeds threshold (0.3)
    """
    return _calculate_cjk_ratio(text) >= CJK_RATIO_THRESHOLD


def _is_punctuation(token: str) -> bool:
    """Check if a token is purely punctuation (English or Chinese)."""
    return all(
        c in string.punctuation or c in CHINESE_PUNCTUATION or c.isspace()
        for c in token
    )


def _segment_chinese(text: str) -> List[str]:
    """Segment Chinese text into words with jieba."""
    tokens = jieba.cut(text, cut_all=False)
    return [
        t.strip() for t in tokens
        if t.strip() and not _is_punctuation(t)
    ]


def _segment_words(text: str) -> List[str]:
    """Split non-CJK text into word tokens, keeping in-word apostrophes."""
    return _WORD_PATTERN.findall(text)


def _segment_mixed(text: str) -> List[str]:
    """
    Segment text that may mix Chinese and other scripts.

    Each contiguous run is handed to the segmenter for its script.
    """
    tokens: List[str] = []
    current_segment: List[str] = []
    current_is_cjk: Optional[bool] = None

    def flush() -> None:
        if not current_segment:
            return
        segment_text = ''.join(current_segment)
        if current_is_cjk:
            tokens.extend(_segment_chinese(segment_text))
        else:
            tokens.extend(_segment_words(segment_text))

    for char in text:
        char_is_cjk = _is_cjk_char(char)

        # An apostrophe inside a latin word belongs to the word ("don't")
        if char == "'" and current_segment and current_is_cjk is False:
            current_segment.append(char)
            continue

        if char.isspace() or char in string.punctuation or char in CHINESE_PUNCTUATION:
            flush()
            current_segment = []
            current_is_cjk = None
            continue

        if current_is_cjk is None:
            current_is_cjk = char_is_cjk
            current_segment.append(char)
        elif char_is_cjk == current_is_cjk:
            current_segment.append(char)
        else:
            flush()
            current_segment = [char]
            current_is_cjk = char_is_cjk

    flush()
    return tokens


def is_negator(token: str) -> bool:
    return token in NEGATORS or token.endswith("n't")


class PipelineConfig(BaseModel):
    """Runtime configuration of a tokenization pipeline (never persisted)."""
    model_config = ConfigDict(frozen=True)

    language: str = "english"
    stop_words: FrozenSet[str] = DEFAULT_STOP_WORDS
    negation_window: int = Field(default=2, ge=0)
    stemming: bool = True


class TokenizationPipeline:
    """
    Deterministic text -> tokens transform shared by indexing and querying.

    Example:
        >>> pipeline = TokenizationPipeline()
        >>> pipeline("The engines are not running")
        ['engin', 'not', '!run']
    """

    def __init__(self, config: Optional[PipelineConfig] = None) -> None:
        self._config = config or PipelineConfig()
        overlap = self._config.stop_words & NEGATORS
        if overlap:
            raise ValueError(f"Stop words must not contain negators: {sorted(overlap)}")
        self._stemmer = (
            snowballstemmer.stemmer(self._config.language)
            if self._config.stemming else None
        )

    @property
    def config(self) -> PipelineConfig:
        return self._config

    def __call__(self, text: str) -> List[str]:
        return self.tokenize(text)

    def tokenize(self, text: str) -> List[str]:
        if not text or not text.strip():
            return []
        tokens = self.segment(self.normalize(text))
        tokens = self.remove_stop_words(tokens)
        tokens = self.stem(tokens)
        return self.propagate_negations(tokens)

    @staticmethod
    def normalize(text: str) -> str:
        return text.lower()

    @staticmethod
    def segment(text: str) -> List[str]:
        if is_chinese_text(text):
            return _segment_chinese(text)
        return _segment_mixed(text)

    def remove_stop_words(self, tokens: List[str]) -> List[str]:
        stop_words = self._config.stop_words
        return [t for t in tokens if t not in stop_words]

    def stem(self, tokens: List[str]) -> List[str]:
        if self._stemmer is None:
            return tokens
        return [
            t if _is_cjk_char(t[0]) or is_negator(t) else self._stemmer.stemWord(t)
            for t in tokens
        ]

    def propagate_negations(self, tokens: List[str]) -> List[str]:
        window = self._config.negation_window
        result: List[str] = []
        remaining = 0
        for token in tokens:
            if is_negator(token):
                result.append(token)
                remaining = window
            elif remaining > 0:
                result.append(NEGATION_PREFIX + token)
                remaining -= 1
            else:
                result.append(token)
        return result


_DEFAULT_PIPELINE: Optional[TokenizationPipeline] = None


def default_pipeline() -> TokenizationPipeline:
    global _DEFAULT_PIPELINE
    if _DEFAULT_PIPELINE is None:
        _DEFAULT_PIPELINE = TokenizationPipeline()
    return _DEFAULT_PIPELINE


def pipeline_from_settings(settings) -> TokenizationPipeline:
    return TokenizationPipeline(PipelineConfig(
        language=settings.tokenizer_language,
        negation_window=settings.tokenizer_negation_window,
        stemming=settings.tokenizer_stemming,
    ))


def tokenize(text: str) -> List[str]:
    """
    Tokenize text with the default pipeline.

    Examples:
        >>> tokenize("Hello world")
        ['hello', 'world']
        >>> tokenize("你好世界")
        ['你好', '世界']
    """
    return default_pipeline()(text)
