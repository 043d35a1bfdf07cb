import html
import re
import unicodedata

_REGEX_MARKERS = (".*", ".+", "\\d+", "\\d{", "[", "(", "|")

# Letters that NFKD does not decompose into an ASCII base
_ASCII_EXTRAS = {
    "đ": "d",
    "Đ": "D",
    "ø": "o",
    "Ø": "O",
    "ß": "ss",
    "æ": "ae",
    "Æ": "AE",
    "ł": "l",
    "Ł": "L",
}


def decode_html_entities(value: str) -> str:
    """Decode named, decimal and hex HTML entities found in hierarchy attributes."""
    if "&" not in value:
        return value
    return html.unescape(value).replace("\u00a0", " ")


def normalize_text(value: str) -> str:
    return value.replace("\u00a0", " ").strip()


def is_regex_string(value: str) -> bool:
    """Whether an authored selector string should be treated as a regex."""
    if value.startswith("^") and value.endswith("$") and len(value) > 1:
        return True
    return any(marker in value for marker in _REGEX_MARKERS)


def is_id_regex(value: str) -> bool:
    """Whether a resource-id pattern needs regex matching."""
    if ".*" in value or ".+" in value:
        return True
    return value.startswith("^") and value.endswith("$") and len(value) > 1


def to_ascii_fallback(text: str) -> str:
    """Strip diacritics so text can be typed through plain ASCII input."""
    result = []
    for char in text:
        if char in _ASCII_EXTRAS:
            result.append(_ASCII_EXTRAS[char])
            continue
        decomposed = unicodedata.normalize("NFKD", char)
        ascii_chars = decomposed.encode("ascii", "ignore").decode()
        result.append(ascii_chars)
    return "".join(result)


def safe_file_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "_", name)


_ANDROID_SHELL_SPECIAL = ('"', "'", "&", "<", ">", "|", ";")


def escape_for_android_shell(text: str) -> str:
    """Escape text for `input text`, which reads `%s` as a space."""
    escaped = text.replace("\\", "\\\\").replace(" ", "%s")
    for char in _ANDROID_SHELL_SPECIAL:
        escaped = escaped.replace(char, f"\\{char}")
    return escaped
