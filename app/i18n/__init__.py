import json
import logging
import os
from typing import Any, Dict, Iterator, List, Optional, Tuple
from app.config.settings import config

logger = logging.getLogger(__name__)

LOCALES_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "locales")


def _flatten(tree: Dict[str, Any], prefix: str = "") -> Iterator[Tuple[str, str]]:
    """{"error": {"extraction": {"live": "..."}}} -> ("error.extraction.live", "...")"""
    for name, value in tree.items():
        key = f"{prefix}{name}"
        if isinstance(value, dict):
            yield from _flatten(value, f"{key}.")
        else:
            yield key, str(value)


class I18n:
    """Message catalogs keyed by dotted names, one per locale file"""

    def __init__(self, locales_dir: str = LOCALES_DIR):
        self.catalogs: Dict[str, Dict[str, str]] = {}
        self.default_locale = config.i18n.default_locale
        self.load_locales(locales_dir)

    def load_locales(self, locales_dir: str) -> None:
        if not os.path.isdir(locales_dir):
            logger.warning(f"Locales directory not found at {locales_dir}")
            return

        for filename in sorted(os.listdir(locales_dir)):
            locale_code, ext = os.path.splitext(filename)
            if ext != ".json":
                continue
            try:
                with open(os.path.join(locales_dir, filename), "r", encoding="utf-8") as f:
                    self.catalogs[locale_code] = dict(_flatten(json.load(f)))
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Error loading locale {locale_code}: {e}")

    def _chain(self, locale: Optional[str]) -> List[str]:
        chain = [locale, self.default_locale, "en"]
        return [code for i, code in enumerate(chain) if code and code in self.catalogs and code not in chain[:i]]

    def has(self, key: str, locale: Optional[str] = None) -> bool:
        return any(key in self.catalogs[code] for code in self._chain(locale))

    def get(self, key: str, locale: Optional[str] = None, **kwargs) -> str:
        """
        Look the key up in the requested locale, then the default locale,
        then English. Unknown keys come back unchanged; a template whose
        placeholders are not all supplied is returned uninterpolated.
        """
        for code in self._chain(locale):
            template = self.catalogs[code].get(key)
            if template is None:
                continue
            try:
                return template.format(**kwargs)
            except (KeyError, IndexError):
                return template
        return key


i18n = I18n()
