"""
Tests for shuffle/selector.py: least-shown rotation.
"""

from shuffle.selector import ShuffleSelector


class TestShuffleSelector:
    def test_round_robin_by_identity(self):
        selector = ShuffleSelector()
        candidates = ["c", "a", "b"]
        picks = [selector.pick_next(candidates) for _ in range(4)]
        assert picks == ["a", "b", "c", "a"]

    def test_empty_set(self):
        selector = ShuffleSelector()
        assert selector.pick_next([]) is None
        assert selector.pick_next(set()) is None

    def test_new_candidate_picked_first(self):
        selector = ShuffleSelector()
        for _ in range(3):
            selector.pick_next(["a", "b"])
        assert selector.pick_next(["a", "b", "z"]) == "z"

    def test_counts_and_reset(self):
        selector = ShuffleSelector()
        selector.pick_next(["a"])
        selector.pick_next(["a"])
        assert selector.count("a") == 2
        assert selector.count("b") == 0
        selector.reset()
        assert selector.count("a") == 0

    def test_duplicates_in_input_ignored(self):
        selector = ShuffleSelector()
        assert selector.pick_next(["b", "b", "a"]) == "a"
        assert selector.pick_next(["b", "b", "a"]) == "b"
