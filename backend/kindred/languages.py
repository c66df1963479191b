"""Languages the companion can listen and reply in."""

from typing import NamedTuple


class Language(NamedTuple):
    code: str
    name: str


SUPPORTED_LANGUAGES: list[Language] = [
    Language("ar-SA", "Arabic"),
    Language("bn-IN", "Bengali"),
    Language("zh-CN", "Chinese (Mandarin)"),
    Language("en-US", "English"),
    Language("fr-FR", "French"),
    Language("de-DE", "German"),
    Language("gu-IN", "Gujarati"),
    Language("hi-IN", "Hindi"),
    Language("it-IT", "Italian"),
    Language("ja-JP", "Japanese"),
    Language("kn-IN", "Kannada"),
    Language("ko-KR", "Korean"),
    Language("ml-IN", "Malayalam"),
    Language("mr-IN", "Marathi"),
    Language("pt-BR", "Portuguese"),
    Language("pa-IN", "Punjabi"),
    Language("ru-RU", "Russian"),
    Language("es-ES", "Spanish"),
    Language("ta-IN", "Tamil"),
    Language("te-IN", "Telugu"),
    Language("vi-VN", "Vietnamese"),
]

_BY_CODE = {lang.code.lower(): lang for lang in SUPPORTED_LANGUAGES}


def get_language(code: str) -> Language:
    """Look up a language by tag; unknown tags fall back to English."""
    return _BY_CODE.get((code or "").lower(), _BY_CODE["en-us"])
