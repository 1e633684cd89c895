"""Lexical relevance scoring for structural search."""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "as", "is", "was", "are", "were", "been",
    "be", "have", "has", "had", "do", "does", "did", "will", "would",
    "could", "should", "may", "might", "must", "can", "this", "that",
    "how", "what", "when", "where", "which", "who", "why", "into", "use",
    "using", "need", "want", "get", "set", "about", "your", "you", "my",
})

_WORD_RE = re.compile(r"\w+")
_CODE_TERM_RE = re.compile(r"\b\w+(?:\.\w+)+\b")
_CAMEL_CASE_RE = re.compile(r"\b[a-z]+(?:[A-Z][a-z0-9]*)+\b")

DEFAULT_FIELD_WEIGHTS = {
    "title": 3.0,
    "section": 2.5,
    "heading_context": 2.0,
    "filepath": 1.5,
    "content": 1.0,
}

DEFAULT_TYPE_WEIGHTS = {
    "heading": 1.0,
    "code": 0.9,
    "table": 0.85,
    "list": 0.85,
    "paragraph": 0.8,
}


def tokenize(text: str) -> List[str]:
    """Lower-cased word tokens."""
    return _WORD_RE.findall(text.lower())


def token_set(text: str) -> FrozenSet[str]:
    return frozenset(tokenize(text))


def jaccard(a: FrozenSet[str], b: FrozenSet[str]) -> float:
    """Jaccard similarity of two token sets. Two empty sets are identical."""
    if not a and not b:
        return 1.0
    return len(a & b) / len(a | b)


def extract_keywords(text: str) -> List[str]:
    """
    Extract search keywords from a task description.

    Drops stop words and words of two characters or fewer, then adds
    dotted code terms (``os.path.join``) and camelCase identifiers.

    Returns:
        Unique lower-cased keywords in order of first appearance
    """
    words = [
        word for word in re.sub(r"[^\w\s]", " ", text.lower()).split()
        if len(word) > 2 and word not in STOP_WORDS
    ]
    code_terms = [term.lower() for term in _CODE_TERM_RE.findall(text)]
    camel_terms = [term.lower() for term in _CAMEL_CASE_RE.findall(text)]

    seen = set()
    keywords = []
    for word in words + code_terms + camel_terms:
        if word not in seen:
            seen.add(word)
            keywords.append(word)
    return keywords


@dataclass
class LexicalMatch:
    score: float
    matched: List[str] = field(default_factory=list)


class LexicalScorer:
    """Keyword relevance of a chunk payload.

    ``score = type_weight * (coverage + saturation) / 2`` where coverage is
    the field-weighted fraction of keywords found and saturation grows with
    the number of keyword occurrences in the body, capped at 1.
    """

    def __init__(
        self,
        field_weights: Optional[Dict[str, float]] = None,
        type_weights: Optional[Dict[str, float]] = None,
        saturation_count: int = 10,
    ):
        self.field_weights = dict(field_weights or DEFAULT_FIELD_WEIGHTS)
        self.type_weights = dict(type_weights or DEFAULT_TYPE_WEIGHTS)
        self.saturation_count = saturation_count
        self._max_field_weight = max(self.field_weights.values()) if self.field_weights else 1.0

    def _fields(self, payload: Dict[str, Any]) -> Dict[str, str]:
        metadata = payload.get("metadata") or {}
        return {
            "title": str(metadata.get("title") or ""),
            "section": str(metadata.get("section") or ""),
            "heading_context": str(metadata.get("heading_context") or ""),
            "filepath": payload.get("filepath", ""),
            "content": payload.get("content", ""),
        }

    def score(self, keywords: List[str], payload: Dict[str, Any]) -> LexicalMatch:
        """Score one payload against pre-extracted keywords."""
        if not keywords:
            return LexicalMatch(0.0)

        fields = self._fields(payload)
        lowered = {name: text.lower() for name, text in fields.items()}
        tokens = {name: set(tokenize(text)) for name, text in fields.items()}
        content_tokens = tokenize(fields["content"])

        weighted = 0.0
        occurrences = 0
        matched = []
        for keyword in keywords:
            dotted = "." in keyword
            best = 0.0
            for name, weight in self.field_weights.items():
                found = keyword in lowered.get(name, "") if dotted else keyword in tokens.get(name, ())
                if found and weight > best:
                    best = weight
            if best > 0:
                matched.append(keyword)
                weighted += best
            if dotted:
                occurrences += lowered["content"].count(keyword)
            else:
                occurrences += content_tokens.count(keyword)

        coverage = weighted / (len(keywords) * self._max_field_weight)
        saturation = min(occurrences / self.saturation_count, 1.0)
        type_weight = self.type_weights.get(payload.get("type", ""), 1.0)
        score = type_weight * (coverage + saturation) / 2
        return LexicalMatch(min(max(score, 0.0), 1.0), matched)
