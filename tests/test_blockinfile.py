import io
import unittest

from nodetune import blockinfile

BEGIN = "# BEGIN MARKER NODETUNE"
END = "# END MARKER NODETUNE"


class TestWriteBlock(unittest.TestCase):
    def _write(self, text, block="line11"):
        return blockinfile.write_block(io.StringIO(text), BEGIN, END, block)

    def test_block_not_in_file_is_appended(self):
        self.assertEqual(
            self._write("line0\nline1"),
            f"line0\nline1\n{BEGIN}\nline11\n{END}",
        )

    def test_block_already_in_file_is_unchanged(self):
        text = f"line0\n{BEGIN}\nline11\n{END}\nline1"
        self.assertEqual(self._write(text), text)

    def test_block_in_file_is_replaced(self):
        self.assertEqual(
            self._write(f"line0\n{BEGIN}\nline99\nline98\n{END}\nline1"),
            f"line0\n{BEGIN}\nline11\n{END}\nline1",
        )

    def test_unterminated_block_is_closed(self):
        self.assertEqual(
            self._write(f"line0\nline1\n{BEGIN}\nline11"),
            f"line0\nline1\n{BEGIN}\nline11\n{END}",
        )

    def test_unterminated_block_drops_stale_tail_once(self):
        out = self._write(f"line0\n{BEGIN}\nstale1\nstale2\n", block="fresh")
        self.assertEqual(out, f"line0\n{BEGIN}\nfresh\n{END}\n")
        self.assertEqual(out.count(BEGIN), 1)
        self.assertEqual(out.count(END), 1)
        self.assertNotIn("stale", out)

    def test_empty_file_gets_terminated_block(self):
        self.assertEqual(self._write(""), f"{BEGIN}\nline11\n{END}\n")

    def test_trailing_newline_is_preserved(self):
        self.assertEqual(
            self._write("line0\n"),
            f"line0\n{BEGIN}\nline11\n{END}\n",
        )

    def test_only_first_begin_marker_counts(self):
        text = f"{BEGIN}\nold\n{END}\n{BEGIN}\nother\n{END}\n"
        out = self._write(text, block="new")
        self.assertEqual(out, f"{BEGIN}\nnew\n{END}\n{BEGIN}\nother\n{END}\n")

    def test_multiline_block_trailing_newline_is_not_doubled(self):
        out = self._write("a\n", block="x\ny\n")
        self.assertEqual(out, f"a\n{BEGIN}\nx\ny\n{END}\n")


class TestDeleteBlock(unittest.TestCase):
    def test_delete_block(self):
        text = f"line0\n{BEGIN}\nline11\n{END}\nline1"
        self.assertEqual(blockinfile.delete_text(text, BEGIN, END), "line0\nline1")

    def test_no_markers_returns_input(self):
        text = "line0\nline1\n"
        self.assertEqual(blockinfile.delete_text(text, BEGIN, END), text)

    def test_unterminated_block_is_removed_to_eof(self):
        text = f"line0\n{BEGIN}\nline11\nline12\n"
        self.assertEqual(blockinfile.delete_text(text, BEGIN, END), "line0\n")

    def test_only_first_pair_is_removed(self):
        text = f"{BEGIN}\na\n{END}\nkeep\n{BEGIN}\nb\n{END}\n"
        self.assertEqual(
            blockinfile.delete_text(text, BEGIN, END),
            f"keep\n{BEGIN}\nb\n{END}\n",
        )


class TestRoundTrip(unittest.TestCase):
    def test_insert_is_idempotent(self):
        for original in ("", "a\nb\n", "a\nb"):
            once = blockinfile.insert_text(original, BEGIN, END, "B")
            twice = blockinfile.insert_text(once, BEGIN, END, "B")
            self.assertEqual(once, twice)

    def test_delete_restores_original(self):
        for original in ("a\nb\n", "a\nb", "127.0.0.1 localhost\n"):
            inserted = blockinfile.insert_text(original, BEGIN, END, "B\nC")
            self.assertEqual(
                blockinfile.delete_text(inserted, BEGIN, END), original)

    def test_owner_markers(self):
        self.assertEqual(
            blockinfile.owner_markers("default_web"),
            ("# BEGIN NODETUNE default_web", "# END NODETUNE default_web"),
        )
        self.assertEqual(
            blockinfile.owner_markers("default_web", "HOSTS")[0],
            "# BEGIN NODETUNE HOSTS default_web",
        )


if __name__ == "__main__":
    unittest.main()
