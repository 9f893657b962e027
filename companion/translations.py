"""
Locale strings used in prompts and notifications (data/locales/<code>.json).
Unknown codes fall back to English.
"""

import json
import logging
import os
from functools import lru_cache
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

LOCALES_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "data", "locales")
DEFAULT_LOCALE = "en"


@lru_cache(maxsize=None)
def _load(code: str) -> Dict[str, Any]:
    path = os.path.join(LOCALES_DIR, f"{code}.json")
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def load_translations(lang: Optional[str]) -> Dict[str, Any]:
    """Fresh copy of the translation table for a language code."""
    code = (lang or DEFAULT_LOCALE).lower()[:2]
    if not os.path.exists(os.path.join(LOCALES_DIR, f"{code}.json")):
        code = DEFAULT_LOCALE
    return json.loads(json.dumps(_load(code)))
