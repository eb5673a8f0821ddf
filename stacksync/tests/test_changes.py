"""Unit tests for change detection."""

from stacksync.changes import ChangeKind, classify, content_hash, detect_changes, normalize_diff
from stacksync.metadata import CommitMetadata, encode
from stacksync.typing import CommitID
from stacksync.tests.utils import make_entry

DIFF = """diff --git a/widget.py b/widget.py
index 83db48f..bf269f4 100644
--- a/widget.py
+++ b/widget.py
@@ -10,3 +10,4 @@ class Widget:
     def spin(self):
         pass
+        self.hum()
"""

# The same change after a rebase: other blob ids, other line numbers
REBASED_DIFF = """diff --git a/widget.py b/widget.py
index 1234567..89abcde 100644
--- a/widget.py
+++ b/widget.py
@@ -22,3 +22,4 @@ class Widget:
     def spin(self):
         pass
+        self.hum()
"""


class TestContentHash:

    def test_normalize_diff_drops_moving_parts(self) -> None:
        normalized = normalize_diff(DIFF)
        assert "index " not in normalized
        assert "@@ class Widget:" in normalized
        assert normalized == normalize_diff(REBASED_DIFF)

    def test_clean_rebase_keeps_hash(self) -> None:
        assert content_hash(DIFF, "Title\n") == content_hash(REBASED_DIFF, "Title\n")

    def test_metadata_trailer_is_ignored(self) -> None:
        tracked = encode("Title\n\nBody\n", CommitMetadata(CommitID("1a2b3c4d"), 3, "a" * 40))
        assert content_hash(DIFF, tracked) == content_hash(DIFF, "Title\n\nBody\n")

    def test_message_edit_changes_hash(self) -> None:
        assert content_hash(DIFF, "Title\n") != content_hash(DIFF, "Better title\n")

    def test_patch_edit_changes_hash(self) -> None:
        assert content_hash(DIFF, "Title\n") != content_hash(DIFF.replace("hum", "buzz"), "Title\n")


class TestClassify:

    def test_untracked_is_new(self) -> None:
        assert classify(make_entry(0)) == ChangeKind.NEW

    def test_matching_sync_hash_is_unchanged(self) -> None:
        assert classify(make_entry(0, pr_number=5)) == ChangeKind.UNCHANGED

    def test_differing_sync_hash_is_modified(self) -> None:
        assert classify(make_entry(0, pr_number=5, modified=True)) == ChangeKind.MODIFIED

    def test_detect_changes_is_index_aligned(self) -> None:
        entries = [make_entry(0, pr_number=5), make_entry(1, pr_number=6, modified=True), make_entry(2)]
        assert detect_changes(entries) == [ChangeKind.UNCHANGED, ChangeKind.MODIFIED, ChangeKind.NEW]
