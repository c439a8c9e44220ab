"""
candidate_search.py
-------------------
Finds the block a pin / modify / remove request refers to.

Responsibilities:
  1. Clean the subject token (generic suffixes such as "class" / "반" / "수업",
     filler words) and split off an optional actor (instructor-like) token.
  2. Match against the candidate pool (uploaded timetable entries) or the
     fixed set, case- and space-insensitively.
  3. Narrow by day hint, then by time hint (closest start wins), otherwise
     report AMBIGUOUS with the option list; option_number picks 1-based.

Deterministic string logic only.
"""

from __future__ import annotations

import re
from typing import List, Optional, Sequence, Tuple

from models import PinQuery, SearchResult, SearchStatus, TimeBlock
from time_model import Weekday, to_minutes, weekday_of

_GENERIC_WORDS = {"class", "classes", "session", "lesson", "lessons", "수업"}
_GENERIC_SUFFIXES = ("수업", "반")
_FILLER_WORDS = {"the", "my", "a", "please", "pin", "fix", "고정", "고정해줘", "해줘", "좀"}

_WEEKLY_PATTERN = re.compile(r"주\s*\d+\s*회|^\d+\s*x$", re.IGNORECASE)
_HANGUL_ACTOR = re.compile(r"^[가-힣]{2,3}$")
_LATIN_ACTOR = re.compile(r"^[a-z]{2,3}$", re.IGNORECASE)
_ACTOR_MARKER = re.compile(r"(?:(?<=[가-힣])t|쌤|선생님)$", re.IGNORECASE)


# ── text helpers ──────────────────────────────────────────────────────────────

def _squash(text: Optional[str]) -> str:
    return re.sub(r"\s+", "", text or "").lower()


def strip_actor_marker(token: Optional[str]) -> str:
    """'린아T' -> '린아', '민수쌤' -> '민수'."""
    return _ACTOR_MARKER.sub("", (token or "").strip())


def clean_query_text(text: Optional[str]) -> str:
    """Drop generic suffixes and filler words; keeps token boundaries."""
    tokens = []
    for token in (text or "").split():
        lowered = token.lower()
        if lowered in _GENERIC_WORDS or lowered in _FILLER_WORDS:
            continue
        for suffix in _GENERIC_SUFFIXES:
            if token.endswith(suffix) and len(token) > len(suffix):
                token = token[: -len(suffix)]
                break
        tokens.append(token)
    return " ".join(tokens)


def split_actor_subject(query: PinQuery) -> Tuple[Optional[str], str]:
    """
    Returns (actor, subject), both squashed to lowercase without spaces.

    An explicit actor_token always wins. Otherwise a multi-token query whose
    head is 2-3 Hangul characters, or whose head/tail is a single 2-3 letter
    Latin token, carries the actor there. A weekly-frequency token ("주3회",
    "3x") means the whole text is the subject.
    """
    subject_text = clean_query_text(query.subject_token)

    if query.actor_token:
        actor = _squash(strip_actor_marker(query.actor_token))
        return (actor or None), _squash(subject_text)

    tokens = [strip_actor_marker(t) for t in subject_text.split()]
    tokens = [t for t in tokens if t]
    if len(tokens) < 2 or any(_WEEKLY_PATTERN.search(t) for t in tokens):
        return None, _squash(subject_text)

    head, tail = tokens[0], tokens[-1]
    if _HANGUL_ACTOR.match(head) or _LATIN_ACTOR.match(head):
        return _squash(head), _squash(" ".join(tokens[1:]))
    if _LATIN_ACTOR.match(tail):
        return _squash(tail), _squash(" ".join(tokens[:-1]))
    return None, _squash(subject_text)


# ── matching ──────────────────────────────────────────────────────────────────

def matches_candidate(block: TimeBlock, actor: Optional[str], subject: str) -> bool:
    title = _squash(block.title)
    tag = _squash(strip_actor_marker(block.secondary_tag))

    if actor and subject:
        if subject in title and actor in tag:
            return True
        # noisy extraction: the actor ended up in the title as "<actor>t"
        return (actor + "t") in title and actor in tag
    if actor:
        return actor in tag
    if not subject or not title:
        return False
    return subject in title or title in subject


def _time_distance(block: TimeBlock, hint: str) -> int:
    return abs(block.start_min - to_minutes(hint))


def active_on_weekday(block: TimeBlock, day: Weekday) -> bool:
    if block.specific_date is not None:
        return weekday_of(block.specific_date) == day
    return not block.days or day in block.days


def _narrow(
    found: List[TimeBlock],
    query: PinQuery,
    option_number: Optional[int],
) -> SearchResult:
    if query.day_hint is not None:
        found = [b for b in found if active_on_weekday(b, query.day_hint)]

    if not found:
        return SearchResult(status=SearchStatus.NOT_FOUND)

    if option_number is not None:
        if 1 <= option_number <= len(found):
            return SearchResult(status=SearchStatus.MATCHED, match=found[option_number - 1], options=found)
        return SearchResult(status=SearchStatus.INDEX_OUT_OF_RANGE, options=found)

    if len(found) == 1:
        return SearchResult(status=SearchStatus.MATCHED, match=found[0], options=found)

    if query.time_hint:
        # min() keeps the first of equally close candidates
        best = min(found, key=lambda b: _time_distance(b, query.time_hint))
        return SearchResult(status=SearchStatus.MATCHED, match=best, options=found)

    return SearchResult(status=SearchStatus.AMBIGUOUS, options=found)


def find_candidate(
    pool: Sequence[TimeBlock],
    query: PinQuery,
    option_number: Optional[int] = None,
) -> SearchResult:
    """Search the read-only candidate pool for a pin request."""
    actor, subject = split_actor_subject(query)
    found = [b for b in pool if matches_candidate(b, actor, subject)]
    return _narrow(found, query, option_number)


def find_fixed_entries(
    fixed_set: Sequence[TimeBlock],
    query: PinQuery,
    option_number: Optional[int] = None,
) -> SearchResult:
    """
    Search the fixed set for a modify / remove request.

    Keyword containment against title, original title and secondary tag;
    every keyword of the cleaned subject must appear somewhere. A time hint
    must equal the entry's start.
    """
    keywords = [_squash(strip_actor_marker(k)) for k in clean_query_text(query.subject_token).split()]
    if query.actor_token:
        keywords.append(_squash(strip_actor_marker(query.actor_token)))
    keywords = [k for k in keywords if k]

    found = []
    for entry in fixed_set:
        haystack = "|".join([
            _squash(entry.title),
            _squash(getattr(entry, "original_title", None)),
            _squash(strip_actor_marker(entry.secondary_tag)),
        ])
        if keywords and all(k in haystack for k in keywords):
            found.append(entry)
    if query.time_hint:
        # a fixed entry is named by its exact start, never the nearest one
        found = [e for e in found if e.start_min == to_minutes(query.time_hint)]
    return _narrow(found, query, option_number)
