from kindred.tts.voices import Voice, normalize_preference, select_voice

VOICES = [
    Voice("Google Deutsch", "de-DE"),
    Voice("Daniel", "en-GB"),
    Voice("Kate", "en-GB"),
    Voice("Alex", "en-US"),
    Voice("Samantha", "en-US"),
    Voice("Google español", "es-ES"),
]


def test_no_voices():
    assert select_voice([], "en-US", "female-us") is None


def test_exact_region_and_gender():
    assert select_voice(VOICES, "en-US", "female-us").name == "Samantha"
    assert select_voice(VOICES, "en-GB", "male-uk").name == "Daniel"
    assert select_voice(VOICES, "en-US", "female-uk").name == "Kate"


def test_gender_match_in_other_region():
    voices = [Voice("Alex", "en-US"), Voice("Kate", "en-GB")]
    assert select_voice(voices, "en-US", "female-us").name == "Kate"


def test_non_english_uses_language_region():
    voices = [Voice("Amelie", "fr-CA"), Voice("Thomas", "fr-FR")]
    assert select_voice(voices, "fr-FR", "auto").name == "Thomas"


def test_google_voice_before_first_same_language():
    voices = [Voice("Monica", "es-MX"), Voice("Google español", "es-ES")]
    assert select_voice(voices, "es-AR", "male-us").name == "Google español"


def test_first_same_language_voice():
    voices = [Voice("Monica", "es-MX"), Voice("Paulina", "es-MX")]
    assert select_voice(voices, "es-AR", "male-us").name == "Monica"


def test_falls_back_to_first_voice_when_language_missing():
    assert select_voice(VOICES, "ja-JP", "female-us").name == "Google Deutsch"


def test_legacy_and_unknown_preferences():
    assert normalize_preference(None) == "female-us"
    assert normalize_preference("Kore") == "female-us"
    assert normalize_preference("robot") == "auto"
    assert normalize_preference("male-uk") == "male-uk"


def test_gender_guess():
    assert Voice("Samantha", "en-US").guess_gender() == "female"
    assert Voice("Google UK English Male", "en-GB").guess_gender() == "male"
    assert Voice("Rachel", "en-US", gender="female").guess_gender() == "female"
    assert Voice("Nova", "en-US").guess_gender() is None
