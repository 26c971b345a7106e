"""Greedy grouping of similar messages for batch evaluation."""

from rule_arbiter.models import Message
from rule_arbiter.rules.similarity import DEFAULT_SUBJECT_THRESHOLD, messages_are_similar


class BatchGrouper:
    """Clusters messages so one evaluation can serve a whole group."""

    def __init__(self, subject_threshold: float = DEFAULT_SUBJECT_THRESHOLD) -> None:
        self.subject_threshold = subject_threshold

    def group_indices(self, messages: list[Message]) -> list[list[int]]:
        """
        Group message positions in a single greedy pass.

        The next ungrouped message seeds a group; every remaining ungrouped
        message similar to that seed joins it. Group members keep input order
        and the seed is always first.

        Args:
            messages: Messages to group.

        Returns:
            Groups of indices into ``messages``, covering each index exactly once.
        """
        groups: list[list[int]] = []
        grouped: set[int] = set()

        for index, seed in enumerate(messages):
            if index in grouped:
                continue
            group = [index]
            grouped.add(index)

            for other_index in range(index + 1, len(messages)):
                if other_index in grouped:
                    continue
                if messages_are_similar(seed, messages[other_index], self.subject_threshold):
                    group.append(other_index)
                    grouped.add(other_index)

            groups.append(group)

        return groups

    def group_by_similarity(self, messages: list[Message]) -> list[list[Message]]:
        """Group messages; see ``group_indices`` for the grouping rules."""
        return [[messages[i] for i in group] for group in self.group_indices(messages)]
