# coding=utf-8
from __future__ import annotations

import re
from typing import Dict, List

# Whisper language table, in the model's token order.
WHISPER_LANGUAGES: Dict[str, str] = {
    "en": "english",
    "zh": "chinese",
    "de": "german",
    "es": "spanish",
    "ru": "russian",
    "ko": "korean",
    "fr": "french",
    "ja": "japanese",
    "pt": "portuguese",
    "tr": "turkish",
    "pl": "polish",
    "ca": "catalan",
    "nl": "dutch",
    "ar": "arabic",
    "sv": "swedish",
    "it": "italian",
    "id": "indonesian",
    "hi": "hindi",
    "fi": "finnish",
    "vi": "vietnamese",
    "he": "hebrew",
    "uk": "ukrainian",
    "el": "greek",
    "ms": "malay",
    "cs": "czech",
    "ro": "romanian",
    "da": "danish",
    "hu": "hungarian",
    "ta": "tamil",
    "no": "norwegian",
    "th": "thai",
    "ur": "urdu",
    "hr": "croatian",
    "bg": "bulgarian",
    "lt": "lithuanian",
    "la": "latin",
    "mi": "maori",
    "ml": "malayalam",
    "cy": "welsh",
    "sk": "slovak",
    "te": "telugu",
    "fa": "persian",
    "lv": "latvian",
    "bn": "bengali",
    "sr": "serbian",
    "az": "azerbaijani",
    "sl": "slovenian",
    "kn": "kannada",
    "et": "estonian",
    "mk": "macedonian",
    "br": "breton",
    "eu": "basque",
    "is": "icelandic",
    "hy": "armenian",
    "ne": "nepali",
    "mn": "mongolian",
    "bs": "bosnian",
    "kk": "kazakh",
    "sq": "albanian",
    "sw": "swahili",
    "gl": "galician",
    "mr": "marathi",
    "pa": "punjabi",
    "si": "sinhala",
    "km": "khmer",
    "sn": "shona",
    "yo": "yoruba",
    "so": "somali",
    "af": "afrikaans",
    "oc": "occitan",
    "ka": "georgian",
    "be": "belarusian",
    "tg": "tajik",
    "sd": "sindhi",
    "gu": "gujarati",
    "am": "amharic",
    "yi": "yiddish",
    "lo": "lao",
    "uz": "uzbek",
    "fo": "faroese",
    "ht": "haitian creole",
    "ps": "pashto",
    "tk": "turkmen",
    "nn": "nynorsk",
    "mt": "maltese",
    "sa": "sanskrit",
    "lb": "luxembourgish",
    "my": "myanmar",
    "bo": "tibetan",
    "tl": "tagalog",
    "mg": "malagasy",
    "as": "assamese",
    "tt": "tatar",
    "haw": "hawaiian",
    "ln": "lingala",
    "ha": "hausa",
    "ba": "bashkir",
    "jw": "javanese",
    "su": "sundanese",
    "yue": "cantonese",
}


def is_valid_source_lang(lang: str) -> bool:
    code = str(lang or "")
    return code == "auto" or code in WHISPER_LANGUAGES


def is_multilingual_model(model_path: str) -> bool:
    name = str(model_path or "").strip().rstrip("/").lower()
    return not re.search(r"(^|[./_-])en(\.bin)?$", name)


def to_title_case_ascii(text: str) -> str:
    out = []
    capitalize = True
    for c in str(text or ""):
        if c in " \t\n\v\f\r-_":
            capitalize = True
            out.append(c)
            continue
        if c.isascii() and c.isalpha():
            out.append(c.upper() if capitalize else c.lower())
            capitalize = False
            continue
        out.append(c)
        capitalize = False
    return "".join(out)


def source_languages(multilingual: bool = True) -> List[Dict[str, str]]:
    out = [{"code": "auto", "name": "Auto"}]
    if not multilingual:
        out.append({"code": "en", "name": "English"})
        return out
    for code, name in WHISPER_LANGUAGES.items():
        out.append({"code": code, "name": to_title_case_ascii(name)})
    return out
