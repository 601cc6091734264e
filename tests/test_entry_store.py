import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from pck_tweaker import EntryStore, TableEntry, TruncatedError


def _decoded_store() -> EntryStore:
    data = b"AAAABBBCC"
    entries = [
        TableEntry("a.txt", 0, 4, b"\x00" * 16),
        TableEntry("b.txt", 4, 3, b"\x00" * 16),
        TableEntry("c.txt", 7, 2, b"\x00" * 16),
    ]
    return EntryStore.from_decoded(entries, data)


class EntryStoreTests(unittest.TestCase):
    def test_from_decoded_slices_content_in_file_order(self) -> None:
        store = _decoded_store()

        self.assertEqual(
            store.finalize(), [("a.txt", b"AAAA"), ("b.txt", b"BBB"), ("c.txt", b"CC")]
        )
        self.assertEqual(len(store), 3)
        self.assertIn("b.txt", store)
        self.assertEqual(store["c.txt"], b"CC")

    def test_override_keeps_position(self) -> None:
        store = _decoded_store()

        store.apply_overlay("b.txt", b"new content")

        self.assertEqual(list(store), ["a.txt", "b.txt", "c.txt"])
        self.assertEqual(store["b.txt"], b"new content")
        self.assertEqual(store["a.txt"], b"AAAA")
        self.assertEqual(store["c.txt"], b"CC")

    def test_new_entries_append_in_overlay_order(self) -> None:
        store = _decoded_store()

        store.apply_overlay("e.txt", b"E")
        store.apply_overlay("d.txt", b"D")
        store.apply_overlay("a.txt", b"A2")

        self.assertEqual(list(store), ["a.txt", "b.txt", "c.txt", "e.txt", "d.txt"])
        self.assertEqual(store["a.txt"], b"A2")

    def test_repeated_overlay_last_one_wins(self) -> None:
        store = EntryStore()

        store.apply_overlay("x", b"1")
        store.apply_overlay("y", b"2")
        store.apply_overlay("x", b"3")

        self.assertEqual(store.finalize(), [("x", b"3"), ("y", b"2")])

    def test_finalize_is_a_snapshot(self) -> None:
        store = _decoded_store()
        snapshot = store.finalize()

        store.apply_overlay("z.txt", b"Z")

        self.assertEqual(len(snapshot), 3)
        self.assertEqual(len(store.finalize()), 4)

    def test_entry_outside_buffer_is_truncated(self) -> None:
        entries = [TableEntry("a.txt", 4, 10, b"\x00" * 16)]

        with self.assertRaises(TruncatedError):
            EntryStore.from_decoded(entries, b"0123456789")

    def test_zero_length_entry(self) -> None:
        store = EntryStore.from_decoded([TableEntry("empty", 3, 0, b"\x00" * 16)], b"abc")

        self.assertEqual(store["empty"], b"")


if __name__ == "__main__":
    unittest.main()
