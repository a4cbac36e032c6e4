"""Alt-tag and filename rules shared by the description and finishing stages."""
import re
import time as time_module

# Generic nouns meaning "image/photo" add nothing to an alt text.
_STOP_WORDS_RE = re.compile(
    r"\b(?:изображение|изображения|фото|фотография|картинка|image|photo|picture)\b",
    re.IGNORECASE,
)
_WHITESPACE_RE = re.compile(r"\s+")
_FILENAME_INVALID_RE = re.compile(r"[^a-z0-9-]+")
_HYPHENS_RE = re.compile(r"-{2,}")
_EXTENSION_RE = re.compile(r"\.[A-Za-z0-9]{1,5}$")

ALT_TAG_MAX_LENGTH = 125
FILENAME_MAX_LENGTH = 60

_TRANSLIT = {
    "а": "a", "б": "b", "в": "v", "г": "g", "д": "d", "е": "e", "ё": "yo",
    "ж": "zh", "з": "z", "и": "i", "й": "y", "к": "k", "л": "l", "м": "m",
    "н": "n", "о": "o", "п": "p", "р": "r", "с": "s", "т": "t", "у": "u",
    "ф": "f", "х": "kh", "ц": "ts", "ч": "ch", "ш": "sh", "щ": "sch", "ъ": "",
    "ы": "y", "ь": "", "э": "e", "ю": "yu", "я": "ya",
}


def transliterate(text: str) -> str:
    """Latinise Cyrillic characters, preserving case of the first letter."""
    out = []
    for char in text:
        latin = _TRANSLIT.get(char.lower())
        if latin is None:
            out.append(char)
        elif char.isupper():
            out.append(latin.capitalize())
        else:
            out.append(latin)
    return "".join(out)


def placeholder_filename() -> str:
    return f"product-image-{int(time_module.time() * 1000)}"


def validate_alt_tag(alt_tag: str, product_name: str, max_length: int = ALT_TAG_MAX_LENGTH) -> str:
    """Collapse whitespace, drop stop words and cap the length.

    Returns the product name when nothing usable is left.
    """
    text = _WHITESPACE_RE.sub(" ", alt_tag or "").strip()
    text = _STOP_WORDS_RE.sub("", text)
    text = _WHITESPACE_RE.sub(" ", text).strip(" ,;:-")
    if len(text) > max_length:
        text = text[: max_length - 3].rstrip() + "..."
    return text or (product_name.strip()[:max_length] or "Product")


def validate_seo_filename(filename: str, max_length: int = FILENAME_MAX_LENGTH) -> str:
    """Reduce `filename` to `[a-z0-9-]`, without extension or edge hyphens.

    Never returns an empty string; falls back to a timestamped placeholder.
    """
    name = _EXTENSION_RE.sub("", (filename or "").strip())
    name = transliterate(name).lower()
    name = _FILENAME_INVALID_RE.sub("-", name)
    name = _HYPHENS_RE.sub("-", name).strip("-")
    name = name[:max_length].rstrip("-")
    return name or placeholder_filename()


def fallback_alt_tag(product_name: str, index: int, max_length: int = ALT_TAG_MAX_LENGTH) -> str:
    """Synthesised alt text for image `index` (1-based)."""
    suffix = f" - image {index}"
    name = _WHITESPACE_RE.sub(" ", product_name).strip() or "Product"
    return name[: max_length - len(suffix)].rstrip() + suffix


def fallback_filename(product_name: str, index: int, max_length: int = FILENAME_MAX_LENGTH) -> str:
    # No extension to strip here; "Model 2.0" must keep its dot-digit.
    name = transliterate(f"{product_name}-{index}").lower()
    name = _HYPHENS_RE.sub("-", _FILENAME_INVALID_RE.sub("-", name)).strip("-")
    return name[:max_length].rstrip("-") or placeholder_filename()
