"""
Title Signals for Vector Search

Notes whose titles name the query are usually what the user meant, even when
their body text is not the nearest vector. This module scores that:

- keyword_title_score: how many extracted query terms a title contains
- title_overlap_score: bidirectional overlap between query words and the
  words of a title (and optionally its path), tolerant of plurals, one-letter
  typos in long words and shared stems
- title_boost: additive score bump for results in the high and medium
  overlap tiers
- fuzzy_title_match: one-edit typo match for long query terms

Usage:
    from search.title_ranking import query_words_for_title_match, title_boost

    words = query_words_for_title_match("deployment runbook")
    score = min(1.0, score + title_boost(words, result.title, result.path))
"""

import re
from typing import List, Set

WORD_RE = re.compile(r'\w+')

# Overlap tiers. 3/5 * 3/9 lands just under 0.2 in floating point.
HIGH_TIER_OVERLAP = 0.199
MIN_TITLE_OVERLAP = 0.10

HIGH_TIER_BOOST = 0.15
MEDIUM_TIER_BOOST = 0.05

# Keyword title scores
EXACT_TITLE_SCORE = 0.95
NO_TITLE_MATCH_SCORE = 0.5
TITLE_MATCH_SPAN = 0.35

# Keyword hits at or above this are fused into the matching vector result
FUSION_THRESHOLD = 0.7
FUSION_WEIGHT = 0.5

FUZZY_TITLE_SCORE = 0.4
MIN_FUZZY_TERM_LENGTH = 5

TITLE_SEPARATORS = re.compile(r'[\s\-_(),./:\u2014&]+')

TITLE_STOP_WORDS = frozenset('''
    the and for are but not you all can has her his how its may new now our
    out own too use was who why did get got had let say she any way yet
    also area back been best call case come data does done each even find
    from give goes good have help here into just keep kind know last left
    like list long look made main make many more most much must need next
    once only open over part show side some such sure take talk tell test
    than that them then they this time turn type used uses very want well
    went were what when will with work your
    about above after again being below between could doing during every
    found going having might never other should their there these thing
    think those under until using where which while would write yours
    really please right since still today
    explain tracked defined
'''.split())

MEANINGFUL_TITLE_SHORT_TERMS = frozenset([
    'ai', 'os', 'pm', 'qa', 'ui', 'ux', 'hr', 'ml', 'v1', 'v2', 'v3', 'v4', 'v5',
])


def query_words_for_title_match(query: str) -> List[str]:
    """
    Words of a query worth comparing against titles.

    More permissive than keyword term extraction: any three-letter word and
    known two-letter abbreviations survive, since overlap scoring is
    bidirectional and penalises noise on its own.
    """
    words = []
    seen = set()
    for word in WORD_RE.findall(query):
        lower = word.lower()
        if len(lower) < 3 and lower not in MEANINGFUL_TITLE_SHORT_TERMS:
            continue
        if lower in TITLE_STOP_WORDS or lower in seen:
            continue
        seen.add(lower)
        words.append(word)
    return words


def _title_word_set(title: str, path: str) -> Set[str]:
    words = WORD_RE.findall(title)
    if path:
        stem = path[:-3] if path.endswith('.md') else path
        for part in stem.replace('\\', '/').split('/'):
            words.extend(WORD_RE.findall(part))

    word_set = set()
    for word in words:
        for sub in word.split('_'):
            if len(sub) >= 2:
                word_set.add(sub.lower())
    return word_set


def _long_word_one_edit(a: str, b: str) -> bool:
    """At most one edit apart, considered only when either word has 7+ characters."""
    if len(a) < 7 and len(b) < 7:
        return False
    return a != b and within_one_edit(a, b)


def _shares_stem(a: str, b: str) -> bool:
    """Both 5+ characters, lengths within 3, sharing all but the last letter of the shorter."""
    if len(a) < 5 or len(b) < 5 or abs(len(a) - len(b)) > 3:
        return False
    shorter = min(len(a), len(b))
    common = 0
    while common < shorter and a[common] == b[common]:
        common += 1
    return common >= shorter - 1 and common >= 5


def title_overlap_score(query_terms: List[str], title: str, path: str = '') -> float:
    """
    Bidirectional overlap between query words and title (plus path) words.

    Returns:
        query coverage * word coverage, in [0, 1]. Each title word can match
        one query term. Tiny word sets matched by under 30% of the query
        score 0.
    """
    if not query_terms:
        return 0.0

    word_set = _title_word_set(title, path)
    if not word_set:
        return 0.0

    terms = []
    for term in query_terms:
        terms.extend(p for p in term.split('-') if len(p) >= 2)
    if not terms:
        return 0.0

    matched: Set[str] = set()
    for term in terms:
        lower = term.lower()
        candidates = [lower, lower + 's']
        if len(lower) > 2 and lower.endswith('s'):
            candidates.append(lower[:-1])

        hit = next((c for c in candidates if c in word_set and c not in matched), None)
        if hit is None:
            hit = next(
                (w for w in sorted(word_set - matched)
                 if _long_word_one_edit(lower, w) or _shares_stem(lower, w)),
                None
            )
        if hit is not None:
            matched.add(hit)

    if not matched:
        return 0.0

    query_coverage = len(matched) / len(terms)
    word_coverage = len(matched) / len(word_set)
    if len(word_set) <= 2 and query_coverage < 0.30:
        return 0.0
    return query_coverage * word_coverage


def overlap_for_sort(query_terms: List[str], title: str, path: str) -> float:
    """Title-only overlap, or half of a strong title+path overlap."""
    title_only = title_overlap_score(query_terms, title)
    if title_only > 0:
        return title_only
    full = title_overlap_score(query_terms, title, path)
    return full * 0.5 if full >= 0.25 else 0.0


def title_boost(query_terms: List[str], title: str, path: str) -> float:
    overlap = overlap_for_sort(query_terms, title, path)
    if overlap >= HIGH_TIER_OVERLAP:
        return HIGH_TIER_BOOST
    if overlap >= MIN_TITLE_OVERLAP:
        return MEDIUM_TIER_BOOST
    return 0.0


def keyword_title_score(title: str, terms: List[str]) -> float:
    """
    Score a title-match hit by the share of search terms its title contains.

    An exact title match scores 0.95; otherwise 0.5 plus up to 0.35.
    """
    lowered = title.lower()
    if lowered.strip() in set(terms):
        return EXACT_TITLE_SCORE

    matches = sum(1 for term in terms if term in lowered)
    if matches == 0:
        return NO_TITLE_MATCH_SCORE
    return round(NO_TITLE_MATCH_SCORE + TITLE_MATCH_SPAN * matches / len(terms), 3)


def within_one_edit(a: str, b: str) -> bool:
    """True when a and b differ by at most one substitution, insertion or deletion."""
    if abs(len(a) - len(b)) > 1:
        return False
    if len(a) == len(b):
        return sum(1 for x, y in zip(a, b) if x != y) <= 1

    longer, shorter = (a, b) if len(a) > len(b) else (b, a)
    i = j = 0
    skipped = False
    while i < len(longer) and j < len(shorter):
        if longer[i] == shorter[j]:
            i += 1
            j += 1
        elif skipped:
            return False
        else:
            skipped = True
            i += 1
    return True


def fuzzy_title_match(terms: List[str], title: str) -> bool:
    """Whether a title has a word exactly one edit away from a long search term."""
    long_terms = [t.lower() for t in terms if len(t) >= MIN_FUZZY_TERM_LENGTH]
    if not long_terms:
        return False
    words = [w for w in TITLE_SEPARATORS.split(title.lower()) if w]
    return any(
        word != term and within_one_edit(term, word)
        for term in long_terms
        for word in words
    )
