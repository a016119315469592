"""Language code to category-name lookup."""

from __future__ import annotations

from types import MappingProxyType
from typing import Mapping

LANGUAGE_CATEGORIES: Mapping[str, str] = MappingProxyType(
    {
        "ar": "Arabic",
        "bn": "Bengali",
        "ca": "Catalan",
        "cs": "Czech",
        "da": "Danish",
        "de": "German",
        "el": "Greek",
        "en": "English",
        "es": "Spanish",
        "et": "Estonian",
        "fa": "Persian",
        "fi": "Finnish",
        "fr": "French",
        "he": "Hebrew",
        "hi": "Hindi",
        "hu": "Hungarian",
        "hy": "Armenian",
        "it": "Italian",
        "ja": "Japanese",
        "kn": "Kannada",
        "ko": "Korean",
        "la": "Latin",
        "ml": "Malayalam",
        "mr": "Marathi",
        "nl": "Dutch",
        "no": "Norwegian",
        "pl": "Polish",
        "pt": "Portuguese",
        "ro": "Romanian",
        "ru": "Russian",
        "sa": "Sanskrit",
        "sl": "Slovenian",
        "sv": "Swedish",
        "ta": "Tamil",
        "te": "Telugu",
        "uk": "Ukrainian",
        "vi": "Vietnamese",
        "zh": "Chinese",
    }
)


def normalize_language_code(
    language: str,
    categories: Mapping[str, str] = LANGUAGE_CATEGORIES,
) -> str:
    """Reduce an archive language value to a two-letter code where possible.

    Two-letter codes pass through, three-letter codes keep their first two
    letters, and full names ("French") are looked up by category name.
    Anything else is returned unchanged.
    """
    if len(language) == 2:
        return language
    if len(language) == 3:
        return language[:2]
    for code, name in categories.items():
        if language == name:
            return code
    return language


def language_category(
    language: str,
    categories: Mapping[str, str] = LANGUAGE_CATEGORIES,
) -> str | None:
    """Return the display category for *language*, or ``None`` if unknown."""
    return categories.get(normalize_language_code(language, categories))
