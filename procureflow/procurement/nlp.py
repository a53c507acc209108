# procureflow/procurement/nlp.py
from __future__ import annotations

import difflib
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

# ----------------------------
# Regex helpers
# ----------------------------
# Quantity prefix: "2x pens", "2 x pens", "2× pens", "2 pens"
_QTY_RE = re.compile(r"^\s*(\d+)\s*(?:[x×](?=\s)\s*|\s)(.+?)\s*$", re.IGNORECASE)

# Keep letters/numbers/spaces (and $ . for prices)
_PUNCT_RE = re.compile(r"[^\w\s$.]+")

# "under $50", "less than 20", "< 15.5", "below $10", "max 30"
_PRICE_RES = [
    re.compile(r"\bunder\s*\$?\s*(\d+(?:\.\d+)?)", re.IGNORECASE),
    re.compile(r"\bless\s+than\s*\$?\s*(\d+(?:\.\d+)?)", re.IGNORECASE),
    re.compile(r"<\s*\$?\s*(\d+(?:\.\d+)?)", re.IGNORECASE),
    re.compile(r"\bbelow\s*\$?\s*(\d+(?:\.\d+)?)", re.IGNORECASE),
    re.compile(r"\bmax(?:imum)?\s*\$?\s*(\d+(?:\.\d+)?)", re.IGNORECASE),
]
_PRICE_STRIP_RE = re.compile(
    r"(?:\b(?:under|less\s+than|below|max(?:imum)?)\s*|<\s*)\$?\s*\d+(?:\.\d+)?",
    re.IGNORECASE,
)

# Leading filler words
_LEADING_FILLER_RE = re.compile(
    r"^\s*(?:"
    r"hi|hello|hey|yo|morning|evening|"
    r"pls|plz|please|"
    r"i\s*would\s*like|i'?d\s*like|i\s*need|we\s*need|"
    r"can\s*i\s*get|could\s*i\s*get|can\s*i\s*have|"
    r"can\s*you|could\s*you|"
    r"show\s*me|find\s*me|find|search\s*for|search|look\s*for|looking\s*for|"
    r"get\s*me|give\s*me|i\s*want"
    r")\b[,\s]*",
    re.IGNORECASE,
)

_ARTICLES_RE = re.compile(r"^\s*(?:and\s+)?(?:a|an|the|some|any)\b[,\s]*", re.IGNORECASE)
_TRAILING_POLITE_RE = re.compile(r"\b(?:please|pls|plz)\b\.?\s*$", re.IGNORECASE)

_GREETINGS = {"hi", "hello", "hey", "yo", "help", "what can you do", "morning", "evening"}


@dataclass
class ParsedMessage:
    query: str
    quantity: Optional[int] = None
    max_price: Optional[float] = None


# ----------------------------
# Canonicalization pipeline
# ----------------------------
def basic_normalize(s: str) -> str:
    """
    Basic cleanup:
    - lower
    - replace &/+ with 'and'
    - strip punctuation to spaces
    - collapse whitespace
    """
    s = (s or "").strip().lower()
    s = s.replace("&", " and ").replace("+", " and ")
    s = _PUNCT_RE.sub(" ", s)
    s = re.sub(r"\s+", " ", s).strip()
    return s.rstrip(".").strip()


def strip_filler_prefix(raw: str) -> str:
    """
    Removes greetings, request filler and leading articles.
    Example:
      "Hey can I get some blue pens please" -> "blue pens"
    """
    s = (raw or "").strip()

    while True:
        s2 = _LEADING_FILLER_RE.sub("", s).strip()
        if s2 == s:
            break
        s = s2

    s = _ARTICLES_RE.sub("", s).strip()
    s = _TRAILING_POLITE_RE.sub("", s).strip()
    return s


def is_greeting(msg: str) -> bool:
    return basic_normalize(msg) in _GREETINGS


def stem_word(word: str) -> str:
    """
    Naive stem used as a LIKE substring: boxes -> box, pens -> pen.

    -ies and consonant+y both become -i, so "batteries" and "battery" share
    "batteri", which matches either spelling in the catalog.
    """
    if word.endswith("ies") and len(word) > 4:
        return word[:-2]
    if word.endswith("y") and len(word) > 3 and word[-2] not in "aeiouy":
        return word[:-1] + "i"
    if word.endswith(("ses", "xes", "zes", "ches", "shes")) and len(word) > 4:
        return word[:-2]
    if word.endswith("s") and not word.endswith("ss") and len(word) > 2:
        return word[:-1]
    return word


def stem_query(query: str) -> str:
    return " ".join(stem_word(w) for w in query.split())


# ----------------------------
# Quantity + price parsing
# ----------------------------
def parse_qty_prefix(msg: str) -> Tuple[int, str]:
    m = _QTY_RE.match(msg or "")
    if not m:
        return 1, (msg or "").strip()
    return max(1, int(m.group(1))), (m.group(2) or "").strip()


def parse_max_price(msg: str) -> Optional[float]:
    for pattern in _PRICE_RES:
        m = pattern.search(msg or "")
        if m:
            return float(m.group(1))
    return None


def parse_user_message(message: str) -> ParsedMessage:
    """
    Split a free-text request into query, quantity and price cap.

    "I need 5 staplers under $20" -> ParsedMessage("stapler", 5, 20.0)
    """
    raw = (message or "").strip()
    max_price = parse_max_price(raw)

    text = _PRICE_STRIP_RE.sub(" ", raw)
    text = strip_filler_prefix(basic_normalize(text))

    quantity: Optional[int] = None
    if _QTY_RE.match(text):
        quantity, text = parse_qty_prefix(text)
        text = strip_filler_prefix(text)

    query = stem_query(re.sub(r"\s+", " ", text).strip().replace("$", ""))
    return ParsedMessage(query=query or basic_normalize(raw), quantity=quantity, max_price=max_price)


# ----------------------------
# Fuzzy matching
# ----------------------------
def fuzzy_best_key(keys: List[str], query: str, cutoff: float = 0.72) -> Optional[str]:
    if not query or not keys:
        return None
    q = query.strip().lower()
    if q in keys:
        return q
    matches = difflib.get_close_matches(q, keys, n=1, cutoff=cutoff)
    return matches[0] if matches else None
