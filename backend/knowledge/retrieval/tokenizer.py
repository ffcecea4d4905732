"""
Unified tokenizer for lexical indexing, querying and keyword extraction.

Text is split into Latin-alphabet runs and CJK runs. Latin runs become whole
lowercase words. CJK runs have no whitespace word boundaries, so they are
segmented with jieba, or, when the jieba dictionary cannot be loaded, expanded
into every contiguous 1..4 character n-gram. Japanese kana and Korean hangul
runs are always n-gram segmented.

CRITICAL: index build and query time MUST tokenize with the same options.
Use ``INDEX_TOKENIZER_OPTIONS`` for both; never rebuild the options inline.
"""

import logging
import re
import string
from collections import Counter
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

import jieba


logger = logging.getLogger(__name__)


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

# Japanese kana and Korean hangul; jieba has no dictionary for these, so they
# are always n-gram segmented
KANA_HANGUL_RANGES = [
    (0x3041, 0x3096),    # Hiragana
    (0x309D, 0x309F),    # Hiragana iteration marks
    (0x30A1, 0x30FA),    # Katakana
    (0x30FC, 0x30FF),    # Katakana prolonged sound and iteration marks
    (0x31F0, 0x31FF),    # Katakana Phonetic Extensions
    (0x1100, 0x11FF),    # Hangul Jamo
    (0x3131, 0x318E),    # Hangul Compatibility Jamo
    (0xAC00, 0xD7AF),    # Hangul Syllables
]


def _char_class(ranges) -> str:
    return "".join(f"\\U{start:08x}-\\U{end:08x}" for start, end in ranges)


_SEGMENT_RE = re.compile(
    "(?P<latin>[A-Za-z]+)"
    f"|(?P<cjk>[{_char_class(CJK_RANGES)}]+)"
    f"|(?P<kana>[{_char_class(KANA_HANGUL_RANGES)}]+)"
)

# Upper bound of the CJK n-gram window
MAX_NGRAM = 4

# Threshold for determining if text is primarily Chinese
CJK_RATIO_THRESHOLD = 0.3
LATIN_RATIO_THRESHOLD = 0.1

SEGMENTER_JIEBA = "jieba"
SEGMENTER_NGRAM = "ngram"

CHINESE_STOP_WORDS = frozenset([
    "的", "了", "是", "在", "我", "有", "和", "就", "不", "人", "都", "一",
    "一个", "上", "也", "很", "到", "说", "要", "去", "你", "会", "着", "没有",
    "看", "好", "自己", "这", "那", "什么", "怎么", "如何", "为什么", "哪些",
    "哪个", "请", "能", "可以", "帮", "帮我", "告诉", "介绍", "关于", "以及",
    "或者", "并且", "之", "与", "及", "等", "其", "为", "以", "于", "而", "或",
    "但", "如", "若", "则", "因", "故", "所", "者", "矣", "焉", "乎", "哉",
    "兮", "尔", "耳",
])

ENGLISH_STOP_WORDS = frozenset([
    "the", "a", "an", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "can", "must", "shall", "of", "to", "in", "for",
    "on", "with", "at", "by", "from", "as", "into", "through", "during",
    "before", "after", "above", "below", "between", "under", "again",
    "further", "then", "once", "here", "there", "when", "where", "why", "how",
    "all", "each", "few", "more", "most", "other", "some", "such", "no", "nor",
    "not", "only", "own", "same", "so", "than", "too", "very", "just", "and",
    "but", "if", "or", "because", "until", "while", "about", "against",
    "what", "which", "who", "whom", "this", "that", "these", "those", "am",
    "it", "its", "my", "your", "his", "her", "their", "our", "i", "me", "you",
    "he", "she", "they", "we", "us", "him", "them",
])


@dataclass(frozen=True)
class TokenizerOptions:
    """Post-processing applied to raw segments."""
    filter_stop_words: bool = True
    min_word_length: int = 1
    max_word_length: int = 50


# Shared by lexical index build and lexical index query.
INDEX_TOKENIZER_OPTIONS = TokenizerOptions(
    filter_stop_words=True,
    min_word_length=1,
    max_word_length=50,
)

# Keyword extraction drops single characters; they match far too broadly.
KEYWORD_TOKENIZER_OPTIONS = TokenizerOptions(
    filter_stop_words=True,
    min_word_length=2,
    max_word_length=50,
)

DEFAULT_MAX_KEYWORDS = 10


def _is_cjk_char(char: str) -> bool:
    """Check if a character is a CJK character."""
    code_point = ord(char)
    return any(
        start <= code_point <= end for start, end in CJK_RANGES + KANA_HANGUL_RANGES
    )


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
    """True if the CJK character ratio reaches the threshold (0.3)."""
    return _calculate_cjk_ratio(text) >= CJK_RATIO_THRESHOLD


def is_stop_word(word: str) -> bool:
    return word in CHINESE_STOP_WORDS or word.lower() in ENGLISH_STOP_WORDS


def _iter_segments(text: str) -> Iterator[Tuple[str, str]]:
    """Yield ``("latin" | "cjk" | "kana", run)`` pairs in text order."""
    for match in _SEGMENT_RE.finditer(text):
        kind = match.lastgroup
        yield kind, match.group(kind)


def ngram_segment(segment: str, max_n: int = MAX_NGRAM) -> List[str]:
    """
    Over-generate every contiguous 1..max_n character substring of a CJK run.

    Runs no longer than ``max_n`` are also emitted whole.

    Examples:
        >>> ngram_segment("区块链")
        ['区', '块', '链', '区块', '块链', '区块链', '区块链']
    """
    grams: List[str] = []
    for size in range(1, min(max_n, len(segment)) + 1):
        for start in range(len(segment) - size + 1):
            grams.append(segment[start:start + size])
    if 1 <= len(segment) <= max_n:
        grams.append(segment)
    return grams


class Tokenizer:
    """
    Mixed CJK/Latin tokenizer with stopword and length filtering.

    The segmentation backend is chosen once, at construction. If the jieba
    dictionary fails to load, the instance falls back to n-gram segmentation
    for its whole lifetime; callers see the same interface and invariants,
    only recall differs.

    Example:
        >>> tokenizer = Tokenizer(segmenter="ngram")
        >>> tokenizer.tokenize("The Bitcoin whitepaper")
        ['bitcoin', 'whitepaper']
    """

    def __init__(self, segmenter: str = SEGMENTER_JIEBA) -> None:
        if segmenter not in (SEGMENTER_JIEBA, SEGMENTER_NGRAM):
            raise ValueError(f"Unknown segmenter: {segmenter!r}")
        self._segmenter = segmenter
        if segmenter == SEGMENTER_JIEBA:
            self._segmenter = self._load_jieba()

    @staticmethod
    def _load_jieba() -> str:
        try:
            jieba.initialize()
        except Exception as e:
            logger.warning(
                "Failed to load jieba dictionary, falling back to n-gram segmentation",
                extra={"error": str(e)},
            )
            return SEGMENTER_NGRAM
        logger.info("Jieba tokenizer initialized")
        return SEGMENTER_JIEBA

    @property
    def segmenter(self) -> str:
        """Active backend: ``"jieba"`` or ``"ngram"``."""
        return self._segmenter

    @property
    def is_ready(self) -> bool:
        """True when dictionary-based segmentation is active."""
        return self._segmenter == SEGMENTER_JIEBA

    def tokenize(self, text: str, options: Optional[TokenizerOptions] = None) -> List[str]:
        """
        Split text into normalized terms.

        Returns the term multiset in text order; duplicates are kept so that
        term frequencies survive into the lexical index. Never raises; empty
        or whitespace-only input yields an empty list.

        Args:
            text: Input text (Chinese, English or mixed)
            options: Post-processing options, ``INDEX_TOKENIZER_OPTIONS`` by default
        """
        if not text or not text.strip():
            return []
        options = options or INDEX_TOKENIZER_OPTIONS
        return self._post_process(self._segment(text), options)

    def extract_keywords(
        self,
        text: str,
        max_keywords: int = DEFAULT_MAX_KEYWORDS,
    ) -> List[str]:
        """
        Most frequent distinct terms of ``text``, at most ``max_keywords``.

        Ties keep first-seen order, so the output is deterministic.
        """
        if max_keywords <= 0:
            return []
        tokens = self.tokenize(text, KEYWORD_TOKENIZER_OPTIONS)
        # Counter preserves insertion order and sorted() is stable
        frequency = Counter(tokens)
        ranked = sorted(frequency.items(), key=lambda item: item[1], reverse=True)
        return [word for word, _ in ranked[:max_keywords]]

    def detect_language(self, text: str) -> str:
        """Classify text as ``"zh"``, ``"en"`` or ``"mixed"``."""
        if not text:
            return "en"
        chinese = sum(1 for c in text if _is_cjk_char(c))
        latin = sum(1 for c in text if c.isascii() and c.isalpha())
        chinese_ratio = chinese / len(text)
        latin_ratio = latin / len(text)
        if chinese_ratio > CJK_RATIO_THRESHOLD and latin_ratio > LATIN_RATIO_THRESHOLD:
            return "mixed"
        if chinese_ratio > latin_ratio:
            return "zh"
        return "en"

    def _segment(self, text: str) -> List[str]:
        tokens: List[str] = []
        for kind, run in _iter_segments(text):
            if kind == "latin":
                tokens.append(run.lower())
            elif kind == "cjk" and self._segmenter == SEGMENTER_JIEBA:
                tokens.extend(self._jieba_segment(run))
            else:
                tokens.extend(ngram_segment(run))
        return tokens

    @staticmethod
    def _jieba_segment(run: str) -> List[str]:
        # Precise mode; the run holds only CJK ideographs, so no punctuation survives
        return [t for t in jieba.cut(run, cut_all=False) if t.strip()]

    @staticmethod
    def _post_process(tokens: List[str], options: TokenizerOptions) -> List[str]:
        processed = tokens
        if options.filter_stop_words:
            processed = [t for t in processed if not is_stop_word(t)]
        return [
            t for t in processed
            if options.min_word_length <= len(t) <= options.max_word_length
        ]


_default_tokenizer: Optional[Tokenizer] = None


def get_tokenizer() -> Tokenizer:
    """Process-wide tokenizer; the segmentation backend is decided on first use."""
    global _default_tokenizer
    if _default_tokenizer is None:
        from ..core.config import get_settings

        _default_tokenizer = Tokenizer(segmenter=get_settings().tokenizer_segmenter)
    return _default_tokenizer


def tokenize(text: str, options: Optional[TokenizerOptions] = None) -> List[str]:
    """Tokenize with the process-wide tokenizer."""
    return get_tokenizer().tokenize(text, options)
