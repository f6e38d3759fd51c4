"""Wake-phrase gate over streaming transcripts.

The gate decides, from a (possibly partial) transcript and its word timings,
whether the speaker said a trigger phrase, paused, and then started a
command. It is a pure function of its inputs and is safe to call on every
partial update.
"""

from __future__ import annotations

import unicodedata
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

DEFAULT_MIN_POST_TRIGGER_GAP = 0.45


def normalize_text(text: str) -> str:
    """Lowercase, strip diacritics and punctuation, collapse whitespace."""
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFKD", text)
    chars: List[str] = []
    for ch in decomposed:
        if unicodedata.combining(ch):
            continue
        if ch in "'’":
            continue
        chars.append(ch.lower() if ch.isalnum() else " ")
    return " ".join("".join(chars).split())


@dataclass(frozen=True)
class TriggerPhrase:
    text: str
    words: Tuple[str, ...]

    @classmethod
    def parse(cls, raw: str) -> Optional["TriggerPhrase"]:
        words = tuple(normalize_text(raw or "").split())
        if not words:
            return None
        return cls(text=(raw or "").strip(), words=words)


@dataclass(frozen=True)
class WordSegment:
    text: str
    start: float
    end: float


@dataclass(frozen=True)
class MatchResult:
    command: str
    trigger: TriggerPhrase


def sanitize_trigger_words(words: Iterable[str]) -> List[str]:
    """Trim entries and drop empty or duplicate ones, keeping first-seen order."""
    seen = set()
    cleaned: List[str] = []
    for raw in words or ():
        text = str(raw).strip()
        key = normalize_text(text)
        if not key or key in seen:
            continue
        seen.add(key)
        cleaned.append(text)
    return cleaned


def parse_triggers(words: Iterable[str]) -> List[TriggerPhrase]:
    phrases = (TriggerPhrase.parse(w) for w in sanitize_trigger_words(words))
    return [p for p in phrases if p is not None]


def segments_from_words(words: Iterable) -> List[WordSegment]:
    """Build segments from engine word timings (objects or dicts with word/start/end)."""
    segments: List[WordSegment] = []
    for w in words or ():
        if isinstance(w, dict):
            text, start, end = w.get("word", ""), w.get("start", 0.0), w.get("end", 0.0)
        else:
            text, start, end = getattr(w, "word", ""), getattr(w, "start", 0.0), getattr(w, "end", 0.0)
        text = (text or "").strip()
        if text:
            segments.append(WordSegment(text=text, start=float(start), end=float(end)))
    return segments


def _tokenize(words: Sequence[str]) -> Tuple[List[str], List[int]]:
    """Normalized tokens plus, for each token, the index of the word it came from."""
    tokens: List[str] = []
    owners: List[int] = []
    for index, word in enumerate(words):
        for token in normalize_text(word).split():
            tokens.append(token)
            owners.append(index)
    return tokens, owners


def _last_occurrence(
    tokens: Sequence[str], triggers: Sequence[TriggerPhrase]
) -> Optional[Tuple[int, int, TriggerPhrase]]:
    best: Optional[Tuple[int, int, TriggerPhrase]] = None
    for trigger in triggers:
        size = len(trigger.words)
        for start in range(len(tokens) - size, -1, -1):
            if tuple(tokens[start : start + size]) == trigger.words:
                end = start + size
                # Rightmost end wins; on a tie prefer the longer phrase
                if best is None or end > best[1] or (end == best[1] and start < best[0]):
                    best = (start, end, trigger)
                break
    return best


def match_command(
    transcript: str,
    segments: Sequence[WordSegment],
    triggers: Sequence[TriggerPhrase],
    min_post_trigger_gap: float = DEFAULT_MIN_POST_TRIGGER_GAP,
) -> Optional[MatchResult]:
    if not triggers or not transcript or not transcript.strip():
        return None

    raw_words = transcript.split()
    tokens, raw_owners = _tokenize(raw_words)
    found = _last_occurrence(tokens, triggers)
    if found is None:
        return None
    start, end, trigger = found

    seg_tokens, seg_owners = _tokenize([s.text for s in segments])
    if len(seg_tokens) < end or seg_tokens[start:end] != tokens[start:end]:
        # No timing for the phrase yet
        return None

    trigger_seg = seg_owners[end - 1]
    if end < len(seg_tokens) and seg_owners[end] == trigger_seg:
        return None

    next_seg = trigger_seg + 1
    if next_seg >= len(segments):
        return None

    gap = segments[next_seg].start - segments[trigger_seg].end
    if gap < min_post_trigger_gap:
        return None

    parts = [s.text for s in segments[next_seg:]]
    covered = len(seg_tokens)
    if covered < len(tokens) and seg_tokens == tokens[:covered]:
        owner = raw_owners[covered]
        if covered and raw_owners[covered - 1] == owner:
            # Segments stopped inside a transcript word; take only its uncovered tokens
            rest = covered
            while rest < len(tokens) and raw_owners[rest] == owner:
                rest += 1
            parts.extend(tokens[covered:rest])
            owner += 1
        parts.extend(raw_words[owner:])

    command = " ".join(" ".join(parts).split())
    if not normalize_text(command):
        return None
    return MatchResult(command=command, trigger=trigger)


def extract_command(
    transcript: str,
    segments: Sequence[WordSegment],
    triggers: Iterable[str],
    min_post_trigger_gap: float = DEFAULT_MIN_POST_TRIGGER_GAP,
) -> Optional[str]:
    result = match_command(transcript, segments, parse_triggers(triggers), min_post_trigger_gap)
    return result.command if result else None
