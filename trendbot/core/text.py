"""Text normalization helpers shared by aggregation and deduplication.

Event keys, normalized labels, stemmed token sets and event-phrase
classification all live here so ingestion and reconcile agree on them.
"""

import re
from typing import Iterable, List, Optional, Sequence, Set

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")

STOPWORDS: Set[str] = {
    "a", "an", "the", "and", "or", "but", "of", "to", "in", "on", "at", "for",
    "by", "with", "from", "as", "is", "are", "was", "were", "be", "been",
    "has", "have", "had", "it", "its", "this", "that", "after", "over",
    "into", "about", "amid", "than", "then", "will", "would", "could",
}

# Titles made only of these carry no topic; the primary entity is used instead
GENERIC_TERMS: Set[str] = {
    "breaking", "news", "update", "updates", "report", "latest", "today",
    "live", "watch", "video", "photo", "opinion", "editorial", "new",
    "developing", "story", "alert", "just", "in",
}

EVENT_VERBS: Set[str] = {
    # legislative
    "vote", "pass", "block", "reject", "approve", "sign", "veto", "filibuster",
    # executive
    "fire", "resign", "nominate", "appoint", "order", "pardon", "commute", "revoke",
    # judicial
    "rule", "overturn", "uphold", "strike", "dismiss", "grant", "deny", "affirm",
    # law enforcement
    "arrest", "indict", "sue", "charge", "convict", "acquit", "sentence", "raid",
    "seize", "deport", "detain",
    # policy and diplomacy
    "announce", "launch", "ban", "sanction", "threaten", "warn", "demand",
    "propose", "withdraw", "suspend", "expand", "cut",
    # conflict
    "attack", "invade", "bomb", "collapse", "halt", "escalate", "cease", "freeze",
    # economic
    "raise", "lower", "surge", "drop",
    # general
    "face", "win", "lose", "defeat", "confirm", "release", "reveal", "expose",
    "target", "kill", "end", "begin", "start", "stop",
}

# Inflections the suffix stripper cannot map back onto a verb above
IRREGULAR_EVENT_FORMS: Set[str] = {
    "won", "winning", "lost", "began", "beginning", "upheld", "struck",
    "withdrew", "withdrawn", "froze", "frozen", "stopped", "stopping",
    "dropped", "dropping", "acquitted", "cutting", "banned", "banning",
}

EVENT_NOUNS: Set[str] = {
    "ruling", "trial", "hearing", "verdict", "indictment", "conviction", "acquittal",
    "lawsuit", "injunction", "subpoena", "testimony", "deposition", "sentencing",
    "vote", "bill", "election", "impeachment", "nomination", "confirmation", "veto",
    "filibuster", "shutdown", "debate", "speech", "summit", "rally", "resignation",
    "shooting", "protest", "crisis", "scandal", "attack", "bombing", "strike", "raid",
    "ceasefire", "invasion", "collapse", "evacuation", "explosion", "assassination",
    "sanctions", "tariffs", "investigation", "probe", "audit", "deportation",
    "pardon", "ban", "order", "mandate", "regulation", "reform",
}

_SUFFIXES = ("ing", "ed", "es", "s")
MIN_STEM_LENGTH = 3


def tokenize(text: str) -> List[str]:
    """
    Tokenize text into alphanumeric lowercase tokens.

    Args:
        text: Input text to tokenize

    Returns:
        List of lowercase alphanumeric tokens
    """
    if not text:
        return []
    text = _NON_ALNUM.sub(" ", text.lower())
    return text.split()


def stem(word: str) -> str:
    """
    Light suffix stemmer.

    Strips one of ``ing``/``ed``/``es``/``s`` (never the ``s`` of ``ss``)
    when at least three characters remain, then a trailing ``e``. Enough to
    fold "fires", "fired", "firing" and "fire" onto one stem.
    """
    if len(word) <= 3:
        return word

    for suffix in _SUFFIXES:
        if not word.endswith(suffix):
            continue
        if suffix == "s" and word.endswith("ss"):
            break
        base = word[: -len(suffix)]
        if len(base) >= MIN_STEM_LENGTH:
            word = base
        break

    if len(word) > 3 and word.endswith("e"):
        word = word[:-1]
    return word


_STEMMED_VERBS = {stem(v) for v in EVENT_VERBS}
_STEMMED_NOUNS = {stem(n) for n in EVENT_NOUNS}


def content_tokens(text: str) -> List[str]:
    """Tokens with stopwords removed, in order."""
    return [t for t in tokenize(text) if t not in STOPWORDS]


def stemmed_token_set(text: str) -> Set[str]:
    """Set of stemmed content tokens used for similarity."""
    return {stem(t) for t in content_tokens(text)}


def jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    """Jaccard similarity of two token collections; 0.0 when both are empty."""
    set_a, set_b = set(a), set(b)
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)


def label_similarity(label_a: str, label_b: str) -> float:
    """Jaccard similarity over stemmed content-token sets of two labels."""
    return jaccard(stemmed_token_set(label_a), stemmed_token_set(label_b))


def normalize_label(label: str) -> str:
    """Lowercase, punctuation and stopwords removed, whitespace collapsed."""
    return " ".join(content_tokens(label))


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text or "").strip()


def _is_generic(tokens: Sequence[str]) -> bool:
    return all(t in GENERIC_TERMS or t in STOPWORDS for t in tokens)


def derive_event_key(title: str, entities: Optional[Sequence[str]] = None) -> str:
    """
    Compute the grouping key of an evidence item.

    Lowercases the title, strips punctuation, collapses whitespace and joins
    the tokens with ``_``. Titles made only of generic terms ("Breaking news:
    update") fall back to the first named entity.

    Args:
        title: Evidence title
        entities: Named entities attached to the evidence, most relevant first

    Returns:
        Event key string (empty when neither title nor entities carry a topic)
    """
    tokens = tokenize(title)
    if (not tokens or _is_generic(tokens)) and entities:
        for entity in entities:
            entity_tokens = tokenize(entity)
            if entity_tokens:
                tokens = entity_tokens
                break
    return "_".join(tokens)[:160]


def is_event_phrase(label: str) -> bool:
    """True for labels of two or more words containing an action verb or event noun."""
    words = tokenize(label)
    if len(words) < 2:
        return False
    for word in words:
        if word in IRREGULAR_EVENT_FORMS or word in EVENT_NOUNS:
            return True
        stemmed = stem(word)
        if stemmed in _STEMMED_VERBS or stemmed in _STEMMED_NOUNS:
            return True
    return False


def primary_entity_for(label: str, entities: Optional[Sequence[str]] = None) -> Optional[str]:
    """First entity, or the label itself when it is at most two words."""
    if entities:
        for entity in entities:
            normalized = normalize_label(entity)
            if normalized:
                return normalized
    normalized = normalize_label(label)
    if normalized and len(normalized.split()) <= 2:
        return normalized
    return None


def is_abbreviation(name: str) -> bool:
    """Single all-caps token such as ``NY``, ``ICE`` or ``NATO``."""
    return " " not in name and name.isupper()


class EntityMatcher:
    """Matches known entity names in free text on word boundaries.

    ``NY`` matches "NY governor" but never the "ny" inside "many". Names are
    matched case-insensitively, except all-caps abbreviations, which must
    appear in capitals: ``ICE`` tags "ICE raid" but not "ice storm".
    """

    def __init__(self, entities: Iterable[str]):
        self.entities = [e for e in (collapse_whitespace(x) for x in entities) if e]
        self._patterns = [
            (
                entity,
                re.compile(r"\b" + re.escape(entity) + r"\b", 0 if is_abbreviation(entity) else re.IGNORECASE),
            )
            for entity in self.entities
        ]

    def find(self, text: str) -> List[str]:
        """Entities present in ``text``, in registration order."""
        if not text:
            return []
        return [entity for entity, pattern in self._patterns if pattern.search(text)]

    def __len__(self) -> int:
        return len(self.entities)
