"""
Text heuristics used by the coaching feedback loop.

Keyword sentiment, sentence-level question detection, window speaking pace
and mean recognizer confidence.  Plain functions over TranscriptRecord lists;
no I/O, no state.
"""

from __future__ import annotations

import re
from typing import Sequence

from .models import TranscriptRecord

POSITIVE_WORDS = frozenset({
    "good", "great", "excellent", "amazing", "wonderful", "fantastic", "awesome", "perfect",
    "love", "like", "enjoy", "happy", "pleased", "satisfied", "excited", "thrilled",
    "success", "successful", "achievement", "accomplish", "win", "victory", "triumph",
    "beautiful", "brilliant", "outstanding", "remarkable", "impressive", "superb",
    "positive", "optimistic", "confident", "proud", "grateful", "thankful", "appreciate",
    "yes", "absolutely", "definitely", "certainly", "sure", "agree", "right", "correct",
})

NEGATIVE_WORDS = frozenset({
    "bad", "terrible", "awful", "horrible", "worst", "hate", "dislike", "disgusting",
    "sad", "angry", "frustrated", "annoyed", "disappointed", "upset", "worried", "anxious",
    "fail", "failure", "mistake", "error", "wrong", "problem", "issue", "trouble",
    "difficult", "hard", "challenging", "struggle", "stress", "pressure", "burden",
    "negative", "pessimistic", "doubt", "uncertain", "confused", "lost", "helpless",
    "no", "never", "nothing", "nobody", "nowhere", "disagree", "refuse", "reject",
})

INTENSIFIERS = frozenset({
    "very", "extremely", "incredibly", "really", "quite", "pretty", "rather",
    "absolutely", "completely", "totally", "entirely", "highly", "deeply",
})

QUESTION_MARKERS = (
    "what", "how", "why", "when", "where", "who", "which", "can", "could",
    "would", "should", "do", "did", "does", "is", "are", "was", "were",
)

_NON_WORD = re.compile(r"[^\w]")
_SENTENCE = re.compile(r"[^.!?]+[.!?]*")


def sentiment_label(text: str) -> str:
    """POSITIVE / NEUTRAL / NEGATIVE by keyword balance.

    An intensifier multiplies the next sentiment word by 1.5.  Intensifiers are
    checked first, so "absolutely" only ever boosts.
    """
    positive = negative = 0.0
    multiplier = 1.0
    for token in text.lower().split():
        word = _NON_WORD.sub("", token)
        if word in INTENSIFIERS:
            multiplier = 1.5
            continue
        if word in POSITIVE_WORDS:
            positive += multiplier
        elif word in NEGATIVE_WORDS:
            negative += multiplier
        multiplier = 1.0

    total = positive + negative
    score = (positive - negative) / total if total > 0 else 0.0
    if score > 0.2:
        return "POSITIVE"
    if score < -0.2:
        return "NEGATIVE"
    return "NEUTRAL"


def positive_percentage(transcripts: Sequence[TranscriptRecord]) -> float:
    if not transcripts:
        return 0.0
    positive = sum(1 for t in transcripts if sentiment_label(t.text) == "POSITIVE")
    return positive / len(transcripts) * 100.0


def split_sentences(text: str) -> list[str]:
    return [s.strip() for s in _SENTENCE.findall(text) if s.strip(" .!?")]


def is_question(sentence: str) -> bool:
    stripped = sentence.strip()
    if stripped.endswith("?"):
        return True
    first = stripped.split(maxsplit=1)[0].lower() if stripped else ""
    return _NON_WORD.sub("", first) in QUESTION_MARKERS


def question_ratio(text: str) -> float:
    """Percentage of sentences that are questions."""
    sentences = split_sentences(text)
    if not sentences:
        return 0.0
    return sum(1 for s in sentences if is_question(s)) / len(sentences) * 100.0


def timed_speech_sec(transcripts: Sequence[TranscriptRecord]) -> float:
    """Seconds of speech covered by word timings (first word start → last word end)."""
    total_ms = 0
    for t in transcripts:
        if t.words:
            total_ms += max(0, t.words[-1].end - t.words[0].start)
    return total_ms / 1000.0


def window_wpm(transcripts: Sequence[TranscriptRecord]) -> float:
    seconds = timed_speech_sec(transcripts)
    if seconds <= 0:
        return 0.0
    return sum(t.word_count for t in transcripts) / seconds * 60.0


def mean_confidence(transcripts: Sequence[TranscriptRecord]) -> float:
    if not transcripts:
        return 0.0
    return sum(t.confidence for t in transcripts) / len(transcripts)
