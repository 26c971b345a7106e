"""String and message similarity used for batch grouping."""

from rule_arbiter.models import Message

DEFAULT_SUBJECT_THRESHOLD = 0.7


def edit_distance(a: str, b: str) -> int:
    """Levenshtein distance between two strings (insert, delete, substitute)."""
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            if char_a == char_b:
                current.append(previous[j - 1])
            else:
                current.append(1 + min(previous[j - 1], previous[j], current[j - 1]))
        previous = current
    return previous[-1]


def string_similarity(a: str, b: str) -> float:
    """
    Normalized similarity in [0, 1].

    Computed as (longer length - edit distance) / longer length; two empty
    strings are identical.
    """
    longer = max(len(a), len(b))
    if longer == 0:
        return 1.0
    return (longer - edit_distance(a, b)) / longer


def _normalize_sender(sender: str) -> str:
    return (sender or "").strip().lower()


def messages_are_similar(
    first: Message,
    second: Message,
    threshold: float = DEFAULT_SUBJECT_THRESHOLD,
) -> bool:
    """
    Check whether two messages can share rule-evaluation work.

    Args:
        first: A message.
        second: Another message.
        threshold: Subject similarity must exceed this value.

    Returns:
        True if the senders match (case-insensitive, non-empty) or the subjects
        are more similar than the threshold.
    """
    sender = _normalize_sender(first.sender)
    if sender and sender == _normalize_sender(second.sender):
        return True
    return string_similarity(first.subject or "", second.subject or "") > threshold
