from typing import List, Optional, Tuple
from urllib.parse import parse_qs, urlparse
from app.config.settings import config


def _parse_accept_language(header: str) -> List[Tuple[str, float]]:
    """'ja-JP,ja;q=0.9,en;q=0.8' -> [('ja', 1.0), ('ja', 0.9), ('en', 0.8)]"""
    ranked = []
    for item in header.split(","):
        parts = item.strip().split(";")
        language = parts[0].split("-")[0].strip().lower()
        if not language or language == "*":
            continue
        weight = 1.0
        for param in parts[1:]:
            name, _, value = param.strip().partition("=")
            if name == "q":
                try:
                    weight = float(value)
                except ValueError:
                    weight = 0.0
        ranked.append((language, weight))
    # sorted() is stable, so equal weights keep header order
    return sorted(ranked, key=lambda pair: pair[1], reverse=True)


def get_locale(accept_language: Optional[str] = None) -> str:
    """Best supported locale for an Accept-Language header"""
    if accept_language:
        for language, weight in _parse_accept_language(accept_language):
            if weight > 0 and language in config.i18n.supported_locales:
                return language
    return config.i18n.default_locale


def safe_url_for_log(url: str) -> str:
    """Source URL without query noise, keeping the video id"""
    try:
        parsed = urlparse(url)
    except ValueError:
        return "invalid_url"

    base_url = f"{parsed.scheme}://{parsed.netloc}{parsed.path}"
    video_id = parse_qs(parsed.query).get("v", [None])[0]
    if video_id:
        return f"{base_url}?v={video_id}"
    return base_url
