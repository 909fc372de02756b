from __future__ import annotations

import hashlib
import re

_WHITESPACE_RE = re.compile(r"\s+")
_NON_WORD_RE = re.compile(r"[^\w\s]|_")


def collapse_whitespace(value: str) -> str:
    return _WHITESPACE_RE.sub(" ", value).strip()


def normalize_optional_text(value: str | None) -> str | None:
    if not value:
        return None
    collapsed = collapse_whitespace(value)
    return collapsed or None


def normalize_for_hash(value: str) -> str:
    return _NON_WORD_RE.sub("", collapse_whitespace(value).lower())


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def candidate_key(
    *,
    source_key: str,
    source_url: str,
    title: str,
    description: str | None = None,
) -> str:
    payload = "|".join(
        [
            normalize_for_hash(source_key),
            normalize_for_hash(source_url),
            normalize_for_hash(title),
            normalize_for_hash(description or ""),
        ]
    )
    return sha256_hex(payload)
