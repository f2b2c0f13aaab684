"""Legacy metadata block embedded in event memos.

Older clients stored fields the hosted table had no column for (``endDate``
and friends) as a JSON object appended to the memo after a reserved
delimiter line. The delimiter is reserved: user text containing it is
truncated at that point. New rows keep these fields in real columns; this
module only reads and writes the legacy encoding.
"""

from __future__ import annotations

import json
import logging
from typing import Any

logger = logging.getLogger(__name__)

META_SENTINEL = "======VIVIDLY_META======"


def strip_meta(memo: str | None) -> str:
    if not memo:
        return ""
    return memo.split(META_SENTINEL, 1)[0].rstrip()


def serialize_memo(memo: str | None, meta: dict[str, Any] | None) -> str:
    clean = strip_meta(memo)
    if not meta:
        return clean
    payload = json.dumps(meta, ensure_ascii=False, sort_keys=True)
    return f"{clean}\n{META_SENTINEL}\n{payload}"


def parse_memo(memo: str | None) -> tuple[str, dict[str, Any]]:
    if not memo or META_SENTINEL not in memo:
        return memo or "", {}
    clean, raw = memo.split(META_SENTINEL, 1)
    try:
        meta = json.loads(raw.strip() or "{}")
    except json.JSONDecodeError:
        logger.warning("Unreadable memo metadata block, keeping memo as-is")
        return memo, {}
    if not isinstance(meta, dict):
        return memo, {}
    return clean.rstrip(), meta
