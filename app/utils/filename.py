import re
import unicodedata

DEFAULT_BASENAME = "youtube-media"

EXTENSION_RE = re.compile(r"\.[A-Za-z][A-Za-z0-9]{0,4}$")

WINDOWS_RESERVED = {
    'CON', 'PRN', 'AUX', 'NUL',
    'COM1', 'COM2', 'COM3', 'COM4', 'COM5', 'COM6', 'COM7', 'COM8', 'COM9',
    'LPT1', 'LPT2', 'LPT3', 'LPT4', 'LPT5', 'LPT6', 'LPT7', 'LPT8', 'LPT9'
}


def sanitize_filename(name: str, max_length: int = 200) -> str:
    """Drop path and shell-hostile characters, collapse whitespace"""
    name = unicodedata.normalize("NFKC", name or "")
    name = re.sub(r'[<>:"/\\|?*\x00-\x1f]+', '', name)
    name = re.sub(r'\s+', ' ', name).strip()
    # No hidden files or parent-directory names
    name = name.lstrip('.').strip()

    if name.upper() in WINDOWS_RESERVED:
        name = f"_{name}"

    return name[:max_length].strip()


def with_extension(name: str, ext: str) -> str:
    """Append .ext unless the name already ends with it"""
    if name.lower().endswith(f".{ext.lower()}"):
        return name
    return f"{name}.{ext}"


def force_extension(name: str, ext: str) -> str:
    """Replace a trailing extension (a short suffix starting with a letter) with .ext"""
    root = EXTENSION_RE.sub("", name)
    return f"{root or name}.{ext}"
