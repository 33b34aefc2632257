from __future__ import annotations

import re

from .exchange_client import CandleSource, to_storage_symbol


MAX_SUGGESTIONS = 10
MIN_SUGGESTION_SCORE = 0.2

_SEPARATORS = re.compile(r"[\s_-]+")


def normalize_symbol(value: str) -> str:
    return _SEPARATORS.sub("/", value).upper()


def score_symbol(query: str, candidate: str) -> float:
    """Similarity in ``[0, 1]`` between a typed symbol and a market symbol.

    Matching base and quote each count 0.4, a swapped pair 0.1, and shared
    characters contribute at most another 0.1.
    """
    a = normalize_symbol(query)
    b = normalize_symbol(candidate)
    if a == b:
        return 1.0
    a_base, _, a_quote = a.partition("/")
    b_base, _, b_quote = b.partition("/")
    score = 0.0
    if a_base == b_base:
        score += 0.4
    if a_quote and a_quote == b_quote:
        score += 0.4
    if a_base == b_quote or (a_quote and a_quote == b_base):
        score += 0.1
    shared = len(set(a) & set(b))
    score += min(0.1, shared / max(10, len(set(b))))
    return score


def resolve_symbol(source: CandleSource, exchange_id: str, query: str) -> dict:
    symbol = query.strip()
    if not symbol:
        return {
            "ok": False,
            "error": "symbol is required",
            "exchange_id": exchange_id,
            "input": symbol,
        }

    candidates = source.list_symbols(symbol)
    canonical = normalize_symbol(symbol)
    direct = next(
        (item for item in candidates if normalize_symbol(item) == canonical), None
    )
    if direct is not None:
        return {
            "ok": True,
            "matched": True,
            "exchange_id": exchange_id,
            "input": symbol,
            "result": {"unified": direct, "storage_symbol": to_storage_symbol(direct)},
        }

    scored = sorted(
        ((item, score_symbol(symbol, item)) for item in candidates),
        key=lambda pair: pair[1],
        reverse=True,
    )[:MAX_SUGGESTIONS]
    suggestions = [
        {
            "unified": item,
            "storage_symbol": to_storage_symbol(item),
            "score": round(score, 3),
        }
        for item, score in scored
        if score > MIN_SUGGESTION_SCORE
    ]
    return {
        "ok": True,
        "matched": False,
        "exchange_id": exchange_id,
        "input": symbol,
        "suggestions": suggestions,
    }
