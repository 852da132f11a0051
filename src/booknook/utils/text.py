"""Text encoding resolution and script-based language detection."""

from __future__ import annotations

import codecs

from booknook.errors import UnsupportedEncodingError

LANGUAGE_SAMPLE_SIZE = 1000

_UTF16_BOMS = (codecs.BOM_UTF16_LE, codecs.BOM_UTF16_BE)


def decode_text(data: bytes, legacy_encoding: str = "gb18030") -> tuple[str, str]:
    """Decode raw bytes, returning ``(text, encoding_used)``.

    Tries UTF-8 (a leading BOM is dropped), then UTF-16 when the data starts
    with a UTF-16 byte order mark, then ``legacy_encoding``.
    """
    try:
        return data.decode("utf-8-sig"), "utf-8"
    except UnicodeDecodeError:
        pass

    # Without a BOM almost any even-length byte string "decodes" as UTF-16,
    # which would shadow the legacy fallback.
    if data.startswith(_UTF16_BOMS):
        try:
            return data.decode("utf-16"), "utf-16"
        except UnicodeDecodeError:
            pass

    if legacy_encoding:
        try:
            return data.decode(legacy_encoding), legacy_encoding
        except (UnicodeDecodeError, LookupError):
            pass

    raise UnsupportedEncodingError()


def _is_cjk_ideograph(ch: str) -> bool:
    return "一" <= ch <= "鿿"


def _is_kana(ch: str) -> bool:
    return "぀" <= ch <= "ヿ"


def _is_hangul(ch: str) -> bool:
    return "가" <= ch <= "힯" or "ᄀ" <= ch <= "ᇿ"


def detect_language(text: str, sample_size: int = LANGUAGE_SAMPLE_SIZE) -> str:
    """Guess a language tag (zh-Hans, ja, ko or en) from Unicode block ratios."""
    sample = text[:sample_size]
    total = len(sample)
    if total == 0:
        return "en"

    ideographs = kana = hangul = 0
    for ch in sample:
        if _is_cjk_ideograph(ch):
            ideographs += 1
        elif _is_kana(ch):
            kana += 1
        elif _is_hangul(ch):
            hangul += 1

    # Japanese mixes kanji with kana, so kana is checked before ideographs.
    if kana / total > 0.1:
        return "ja"
    if hangul / total > 0.3:
        return "ko"
    if ideographs / total > 0.3:
        return "zh-Hans"
    return "en"
