"""
Voice catalog and preference-based voice selection.

A preference id such as ``female-uk`` names a gender and a region. Selection
falls back in order: exact region and gender, then any voice of the same
base language (gender match first, then a Google voice), then the first
voice available.
"""

from dataclasses import dataclass
from typing import Optional, Sequence

FEMALE_INDICATORS = (
    "samantha", "victoria", "karen", "moira", "tessa", "susan", "fiona",
    "zira", "jenny", "aria", "salli", "kimberly", "joanna", "kendra", "ivy",
    "kate", "serena", "hazel", "catherine", "amelie", "rachel",
    "female", "woman", "girl",
)
MALE_INDICATORS = (
    "alex", "tom", "daniel", "oliver", "fred", "ralph", "david", "mark",
    "adam", "josh", "google us english", "google uk english male",
    "male", "man",
)

# Legacy voice names from an older model-voice picker.
LEGACY_VOICE_NAMES = {"Zephyr", "Kore", "Puck", "Charon", "Fenrir"}

PREFERENCES = {
    "female-us": ("female", "US"),
    "female-uk": ("female", "GB"),
    "female-natural": ("female", None),
    "male-us": ("male", "US"),
    "male-uk": ("male", "GB"),
    "auto": (None, None),
}

DEFAULT_PREFERENCE = "female-us"


@dataclass(frozen=True)
class Voice:
    """A synthesis voice; ``lang`` is a BCP-47 tag such as ``en-GB``."""

    name: str
    lang: str
    voice_id: Optional[str] = None
    gender: Optional[str] = None

    @property
    def base_language(self) -> str:
        return self.lang.replace("_", "-").split("-")[0].lower()

    @property
    def region(self) -> Optional[str]:
        parts = self.lang.replace("_", "-").split("-")
        return parts[1].upper() if len(parts) > 1 else None

    def guess_gender(self) -> Optional[str]:
        if self.gender:
            return self.gender.lower()
        name = self.name.lower()
        # "female" contains "male", so check female indicators first.
        if any(ind in name for ind in FEMALE_INDICATORS) and not any(
            ind in name for ind in MALE_INDICATORS if ind not in ("male", "man")
        ):
            return "female"
        if any(ind in name for ind in MALE_INDICATORS):
            return "male"
        return None


def normalize_preference(preference: Optional[str]) -> str:
    if not preference or preference in LEGACY_VOICE_NAMES:
        return DEFAULT_PREFERENCE
    return preference if preference in PREFERENCES else "auto"


def select_voice(
    voices: Sequence[Voice],
    language_code: str,
    preference: Optional[str] = None,
) -> Optional[Voice]:
    """
    Pick the voice to speak ``language_code`` with.

    Returns:
        The chosen voice, or None when no voices are available
    """
    if not voices:
        return None

    gender, pref_region = PREFERENCES[normalize_preference(preference)]
    base = language_code.replace("_", "-").split("-")[0].lower()
    parts = language_code.replace("_", "-").split("-")
    lang_region = parts[1].upper() if len(parts) > 1 else None

    same_language = [v for v in voices if v.base_language == base]
    if not same_language:
        return voices[0]

    # A regional preference only applies to English; other languages use
    # the region of the requested language tag.
    region = pref_region if base == "en" and pref_region else lang_region

    def gender_ok(voice: Voice) -> bool:
        return gender is None or voice.guess_gender() == gender

    for voice in same_language:
        if voice.region == region and gender_ok(voice):
            return voice

    if gender is not None:
        for voice in same_language:
            if gender_ok(voice):
                return voice

    for voice in same_language:
        if "google" in voice.name.lower():
            return voice

    return same_language[0]
