"""
Scored column matching: which source header feeds each canonical field.

Every pairing of a rule candidate with a source header becomes an explicit
ScoredCandidate.  Resolution runs in three passes:

1. Exact: a header identical to the rule's ``source`` or one of its aliases
   scores 1.0.
2. Fuzzy: headers and candidates are normalised (casefold, separators
   collapsed) and scored with difflib's SequenceMatcher ratio; normalised
   equality scores 0.99.  The words of the two names must line up one for
   one, each pair equal or one a prefix of the other ("Units" for "Unit",
   "Unit Costs" for "Unit Cost").  Otherwise the ratio is halved, so a
   near-spelling such as "Quality" for "Quantity" cannot pass.  A pairing
   is accepted only when its score, rounded to 4 places, is strictly above
   the rule set's min_confidence.
3. Positional: a rule's ``position`` hint claims the header at that index
   with confidence 0.75, if that header is still free and 0.75 clears
   min_confidence.

A header is claimed by at most one field.  Exact claims settle before fuzzy
ones.  Fuzzy claims are assigned greedily from the highest score down.

Tie-break for equal scores: the rule declared first in the rule set, then
the candidate name declared first on that rule (``source`` before
``aliases``, aliases in order), then the header that appears first in the
record.
"""

from __future__ import annotations

import re
import threading
from difflib import SequenceMatcher

from migration_config.schema import MappingRuleSet
from migration_ingestion.domain.types import ColumnResolution, MatchMethod, ScoredCandidate

EXACT_CONFIDENCE = 1.0
NORMALIZED_EQUAL_CONFIDENCE = 0.99
POSITIONAL_CONFIDENCE = 0.75
MISALIGNED_WORDS_FACTOR = 0.5

_SEPARATORS = re.compile(r"[^0-9a-z%#]+")


def normalize_header(value: str) -> str:
    return _SEPARATORS.sub(" ", str(value).casefold()).strip()


def words_align(a: str, b: str) -> bool:
    """Same word count, and each word pair equal or one a prefix of the other."""
    left, right = a.split(), b.split()
    return len(left) == len(right) and all(
        x.startswith(y) or y.startswith(x) for x, y in zip(left, right)
    )


def similarity(header: str, candidate: str) -> float:
    """Confidence in [0, 1) that ``header`` names the same column as ``candidate``."""
    a, b = normalize_header(header), normalize_header(candidate)
    if not a or not b:
        return 0.0
    if a == b:
        return NORMALIZED_EQUAL_CONFIDENCE
    ratio = SequenceMatcher(None, a, b).ratio()
    if not words_align(a, b):
        ratio *= MISALIGNED_WORDS_FACTOR
    return round(min(ratio, NORMALIZED_EQUAL_CONFIDENCE), 4)


def resolve_columns(headers: tuple[str, ...], rule_set: MappingRuleSet) -> ColumnResolution:
    matches: dict[str, ScoredCandidate] = {}
    rejected: dict[str, ScoredCandidate] = {}
    claimed: set[str] = set()
    usable = [h for h in headers if str(h).strip()]

    # Pass 1: exact
    for rule in rule_set.rules:
        for candidate in rule.candidates:
            if candidate in usable and candidate not in claimed:
                matches[rule.target] = ScoredCandidate(
                    rule.target, candidate, candidate, EXACT_CONFIDENCE, MatchMethod.EXACT
                )
                claimed.add(candidate)
                break

    # Pass 2: fuzzy, best score first
    scored: list[tuple[float, int, int, int, ScoredCandidate]] = []
    for r_idx, rule in enumerate(rule_set.rules):
        if rule.target in matches:
            continue
        for c_idx, candidate in enumerate(rule.candidates):
            for h_idx, header in enumerate(usable):
                if header in claimed:
                    continue
                score = similarity(header, candidate)
                if score <= 0.0:
                    continue
                scored.append((
                    score, r_idx, c_idx, h_idx,
                    ScoredCandidate(rule.target, header, candidate, score, MatchMethod.FUZZY),
                ))
    scored.sort(key=lambda s: (-s[0], s[1], s[2], s[3]))
    for score, _, _, _, sc in scored:
        if sc.target in matches:
            continue
        if score <= rule_set.min_confidence:
            rejected.setdefault(sc.target, sc)
            continue
        if sc.header in claimed:
            continue
        matches[sc.target] = sc
        claimed.add(sc.header)

    # Pass 3: positional hints
    for rule in rule_set.rules:
        if rule.target in matches or rule.position is None:
            continue
        if rule.position >= len(headers) or POSITIONAL_CONFIDENCE <= rule_set.min_confidence:
            continue
        header = headers[rule.position]
        if header in claimed:
            continue
        matches[rule.target] = ScoredCandidate(
            rule.target, header, None, POSITIONAL_CONFIDENCE, MatchMethod.POSITIONAL
        )
        claimed.add(header)
        rejected.pop(rule.target, None)

    for target in matches:
        rejected.pop(target, None)
    return ColumnResolution(matches=matches, rejected=rejected)


class ColumnResolver:
    """Caches resolutions per distinct header tuple for one rule set."""

    def __init__(self, rule_set: MappingRuleSet, max_entries: int = 256):
        self.rule_set = rule_set
        self._max_entries = max_entries
        self._cache: dict[tuple[str, ...], ColumnResolution] = {}
        self._lock = threading.Lock()

    def resolve(self, headers: tuple[str, ...]) -> ColumnResolution:
        with self._lock:
            cached = self._cache.get(headers)
        if cached is not None:
            return cached
        resolution = resolve_columns(headers, self.rule_set)
        with self._lock:
            if len(self._cache) >= self._max_entries:
                self._cache.clear()
            self._cache[headers] = resolution
        return resolution
