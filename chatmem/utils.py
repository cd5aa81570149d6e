from __future__ import annotations

import datetime as dt
import re
import time
from uuid import uuid4

_SURROGATES = re.compile("[\ud800-\udfff]")


def now_iso() -> str:
    return dt.datetime.now(dt.UTC).isoformat()


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id(prefix: str) -> str:
    """Return an id that sorts by creation time: ``<prefix>_<ms hex><random hex>``."""
    return f"{prefix}_{now_ms():012x}{uuid4().hex[:16]}"


def scrub_surrogates(text: str) -> str:
    """Replace each UTF-16 surrogate code point, which UTF-8 cannot encode, with U+FFFD."""
    return _SURROGATES.sub("\ufffd", text)
