"""Script detection and word segmentation for mixed Chinese/English text."""

import logging
import re

import jieba

jieba.setLogLevel(logging.ERROR)

# CJK unified ideographs (incl. extension A and compatibility block)
CJK_IDEOGRAPH = "\u3400-\u4dbf\u4e00-\u9fff\uf900-\ufaff"
# CJK symbols/punctuation and full-width forms
CJK_PUNCTUATION = "\u3000-\u303f\uff00-\uffef"

_CJK_RE = re.compile(f"[{CJK_IDEOGRAPH}]")
_CJK_OR_PUNCT_RE = re.compile(f"[{CJK_IDEOGRAPH}{CJK_PUNCTUATION}\u201c\u201d\u2018\u2019]")
_LATIN_RE = re.compile(r"[A-Za-z]")
_CJK_RUN_RE = re.compile(f"[{CJK_IDEOGRAPH}]+")
_WORD_RE = re.compile(r"\w+", re.UNICODE)

# Spacing between CJK runs and Latin letters/digits: "用Python写" -> "用 Python 写"
_CJK_THEN_LATIN = re.compile(f"([{CJK_IDEOGRAPH}])([A-Za-z0-9])")
_LATIN_THEN_CJK = re.compile(f"([A-Za-z0-9])([{CJK_IDEOGRAPH}])")

# Punctuation dropped before building lexical queries
_QUERY_PUNCT_RE = re.compile(
    r"[\"“”‘’'`，。！？；：、（）【】《》「」『』,.;:()\[\]{}<>]"
)


def contains_cjk(text: str) -> bool:
    return bool(_CJK_RE.search(text or ""))


def contains_latin(text: str) -> bool:
    return bool(_LATIN_RE.search(text or ""))


def is_cjk_char(ch: str) -> bool:
    """True for CJK ideographs and CJK/full-width punctuation."""
    return bool(ch) and bool(_CJK_OR_PUNCT_RE.fullmatch(ch))


def space_mixed_script(text: str) -> str:
    """Insert spaces at CJK/Latin boundaries."""
    text = _CJK_THEN_LATIN.sub(r"\1 \2", text)
    return _LATIN_THEN_CJK.sub(r"\1 \2", text)


def strip_query_punctuation(text: str) -> str:
    return re.sub(r"\s+", " ", _QUERY_PUNCT_RE.sub(" ", text)).strip()


def segment(text: str, language: str = "chinese") -> list[str]:
    """Split text into word tokens.

    With ``chinese`` CJK runs are segmented by jieba (precise mode); other
    languages fall back to unicode word boundaries.
    """
    if not text:
        return []
    if language == "chinese" and contains_cjk(text):
        return [tok for tok in (t.strip() for t in jieba.lcut(text)) if tok and _WORD_RE.search(tok)]
    return _WORD_RE.findall(text)


def segment_for_index(text: str, language: str) -> str:
    """Text as it should be stored in the lexical index for ``language``."""
    if language == "chinese":
        return " ".join(segment(text, language))
    return text or ""


def query_terms(text: str) -> list[str]:
    """Lower-cased terms longer than one character, used for keyword scoring."""
    terms: list[str] = []
    for chunk in (text or "").lower().split():
        if contains_cjk(chunk):
            for piece in _CJK_RUN_RE.split(chunk):
                terms.extend(_WORD_RE.findall(piece))
            for run in _CJK_RUN_RE.findall(chunk):
                terms.extend(jieba.lcut(run))
        else:
            terms.extend(_WORD_RE.findall(chunk))
    return [t for t in terms if len(t) > 1]


def segmentation_works() -> bool:
    """Segmentation smoke test: a known phrase must split into several words."""
    tokens = segment("中文分词功能测试", "chinese")
    return len(tokens) > 1 and "".join(tokens) == "中文分词功能测试"
