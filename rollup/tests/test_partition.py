import unittest

from rollup.services.project_stats import partition


class PartitionTests(unittest.TestCase):
    def test_empty_input_yields_no_chunks(self) -> None:
        self.assertEqual(partition([], 10), [])

    def test_exact_multiple_fills_every_chunk(self) -> None:
        ids = [f"f{i}" for i in range(20)]
        chunks = partition(ids, 10)
        self.assertEqual([len(chunk) for chunk in chunks], [10, 10])

    def test_remainder_lands_in_last_chunk(self) -> None:
        ids = [f"f{i:02d}" for i in range(25)]
        chunks = partition(ids, 10)

        self.assertEqual([len(chunk) for chunk in chunks], [10, 10, 5])
        self.assertEqual([item for chunk in chunks for item in chunk], ids)

    def test_chunks_are_disjoint_and_deduplicated(self) -> None:
        chunks = partition(["a", "b", "a", "c", "b", "d"], 2)

        self.assertEqual(chunks, [["a", "b"], ["c", "d"]])
        flat = [item for chunk in chunks for item in chunk]
        self.assertEqual(len(flat), len(set(flat)))

    def test_accepts_any_iterable(self) -> None:
        self.assertEqual(partition(iter(["x", "y", "z"]), 2), [["x", "y"], ["z"]])

    def test_rejects_non_positive_ceiling(self) -> None:
        with self.assertRaises(ValueError):
            partition(["a"], 0)


if __name__ == "__main__":
    unittest.main()
