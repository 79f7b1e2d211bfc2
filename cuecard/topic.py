"""
Rule-based topic-change detection.

Each signal is cheap and explainable; the decision records which signals
fired so the display can show why a new topic was declared.
"""
from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Set

from cuecard.models import ConversationSegment

STOPWORDS = frozenset("""
a about above after again against all also am an and any are aren't as at be because been before being
below between both but by can can't cannot could couldn't did didn't do does doesn't doing don't down
during each few for from further get got had hadn't has hasn't have haven't having he he'd he'll he's her
here here's hers herself him himself his how how's i i'd i'll i'm i've if in into is isn't it it's its
itself just let's like me more most mustn't my myself no nor not now of off on once only or other ought
our ours ourselves out over own really same say said shan't she she'd she'll she's should shouldn't so
some such than that that's the their theirs them themselves then there there's these they they'd
they'll they're they've this those through to too under until up us very was wasn't we we'd we'll we're
we've well were weren't what what's when when's where where's which while who who's whom why why's will
with won't would wouldn't yeah yes you you'd you'll you're you've your yours yourself yourselves okay ok
um uh so oh
""".split())

WH_WORDS = frozenset(["what", "who", "whom", "whose", "where", "when", "why", "how", "which"])

# Only interrogative when the sentence is also punctuated as a question
AUX_WORDS = frozenset([
    "is", "are", "was", "were", "do", "does", "did", "can", "could", "would",
    "should", "will", "shall", "have", "has", "had", "may", "might",
])

STRONG_SIGNALS = frozenset(["interrogative_opener", "new_entities"])

_WORD_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9'$%-]*")
_TOKEN_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9'$%-]*|[.!?]")


@dataclass(frozen=True)
class TopicDecision:
    changed: bool
    confidence: float
    signals: List[str] = field(default_factory=list)
    label: Optional[str] = None


def words(text: str) -> List[str]:
    return _WORD_RE.findall(text or "")


def terms(text: str) -> Set[str]:
    """Lower-cased content words with stopwords removed."""
    out = set()
    for w in words(text):
        w = w.lower().strip("'")
        if len(w) > 1 and w not in STOPWORDS:
            out.add(w)
    return out


def entities(text: str) -> List[str]:
    """Capitalized tokens that do not start a sentence, in order of appearance."""
    found: List[str] = []
    sentence_start = True
    for tok in _TOKEN_RE.findall(text or ""):
        if tok in ".!?":
            sentence_start = True
            continue
        if not sentence_start and tok[0].isupper() and tok != "I" and tok not in found:
            found.append(tok)
        sentence_start = False
    return found


def is_question(text: str) -> bool:
    stripped = (text or "").strip()
    if not stripped:
        return False
    if stripped.endswith("?"):
        return True
    first = words(stripped)[:1]
    return bool(first) and first[0].lower() in WH_WORDS


def has_interrogative_opener(text: str) -> bool:
    stripped = (text or "").strip()
    first = words(stripped)[:1]
    if not first:
        return False
    opener = first[0].lower()
    if opener in WH_WORDS:
        return True
    return opener in AUX_WORDS and stripped.endswith("?")


def jaccard(a: Set[str], b: Set[str]) -> float:
    union = a | b
    if not union:
        return 1.0
    return len(a & b) / len(union)


class TopicDetector:
    """Compares an incoming segment against the last few segments of the window."""

    def __init__(
        self,
        *,
        silence_gap_s: float = 5.0,
        overlap_threshold: float = 0.2,
        entity_threshold: int = 3,
        baseline_segments: int = 2,
        max_label_terms: int = 3,
    ):
        self.silence_gap_s = silence_gap_s
        self.overlap_threshold = overlap_threshold
        self.entity_threshold = entity_threshold
        self.baseline_segments = baseline_segments
        self.max_label_terms = max_label_terms
        self._seen = 0

    def reset(self) -> None:
        self._seen = 0

    def evaluate(self, segment: ConversationSegment, recent: Sequence[ConversationSegment]) -> TopicDecision:
        self._seen += 1
        label = self.label_for(segment.text)

        if self._seen <= self.baseline_segments:
            return TopicDecision(True, 1.0, ["baseline"], label)

        signals = self.signals_for(segment, recent)
        if not signals:
            return TopicDecision(False, 0.0, [], label)
        if STRONG_SIGNALS.intersection(signals):
            confidence = 0.9
        elif len(signals) >= 2:
            confidence = 0.8
        else:
            confidence = 0.5
        return TopicDecision(True, confidence, signals, label)

    def signals_for(self, segment: ConversationSegment, recent: Sequence[ConversationSegment]) -> List[str]:
        text = segment.text
        signals: List[str] = []

        if has_interrogative_opener(text):
            signals.append("interrogative_opener")

        if recent:
            previous = recent[-1]
            if segment.timestamp - previous.end_timestamp >= self.silence_gap_s:
                signals.append("silence_gap")

            current_terms = terms(text)
            prior_terms: Set[str] = set()
            for seg in recent:
                prior_terms |= terms(seg.text)
            if current_terms and prior_terms and jaccard(current_terms, prior_terms) < self.overlap_threshold:
                signals.append("low_overlap")

            seen_words = {w.lower() for seg in recent for w in words(seg.text)}
            fresh = [e for e in entities(text) if e.lower() not in seen_words]
            if len(fresh) >= self.entity_threshold:
                signals.append("new_entities")

            if is_question(text) != is_question(previous.text):
                signals.append("sentence_type_shift")

        return signals

    def label_for(self, text: str) -> Optional[str]:
        picked: List[str] = []
        for ent in entities(text):
            if ent.lower() not in STOPWORDS:
                picked.append(ent)
            if len(picked) >= self.max_label_terms:
                return " ".join(picked)

        counts = Counter()
        order: List[str] = []
        for w in words(text):
            w = w.lower().strip("'")
            if len(w) <= 2 or w in STOPWORDS:
                continue
            if w not in counts:
                order.append(w)
            counts[w] += 1
        lowered = {p.lower() for p in picked}
        for w in sorted(order, key=lambda t: (-counts[t], order.index(t))):
            if len(picked) >= self.max_label_terms:
                break
            if w not in lowered:
                picked.append(w)
        return " ".join(picked) if picked else None
