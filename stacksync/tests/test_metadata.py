"""Unit tests for the commit metadata trailer codec."""

import pytest

from stacksync.errors import ErrorKind, MetadataCorrupt
from stacksync.metadata import CommitMetadata, decode, encode, new_commit_id, strip_metadata
from stacksync.typing import CommitID

SYNC_HASH = "0123456789abcdef0123456789abcdef01234567"
META = CommitMetadata(CommitID("1a2b3c4d"), 42, SYNC_HASH)


class TestEncodeDecode:
    """Writing and reading the trailer block."""

    def test_title_only_message(self) -> None:
        encoded = encode("Add widget\n", META)
        assert encoded == (
            "Add widget\n"
            "\n"
            "commit-id: 1a2b3c4d\n"
            "pr-number: 42\n"
            f"sync-hash: {SYNC_HASH}\n"
        )
        assert decode(encoded) == META

    def test_body_is_preserved(self) -> None:
        message = "Add widget\n\nThe widget spins.\nIt also hums.\n"
        encoded = encode(message, META)
        assert encoded.startswith(message + "\n")
        assert decode(encoded) == META
        assert strip_metadata(encoded) == message

    def test_foreign_trailers_share_the_block(self) -> None:
        message = "Add widget\n\nBody\n\nSigned-off-by: Dev <dev@example.com>\n"
        encoded = encode(message, META)
        lines = encoded.splitlines()
        assert lines[:5] == ["Add widget", "", "Body", "", "Signed-off-by: Dev <dev@example.com>"]
        assert lines[5] == "commit-id: 1a2b3c4d"
        assert decode(encoded) == META
        assert strip_metadata(encoded) == message

    def test_encode_is_idempotent(self) -> None:
        for message in ["Title\n", "Title\n\nBody\n", "Title\n\nSigned-off-by: Dev <dev@example.com>\n"]:
            once = encode(message, META)
            assert encode(once, META) == once

    def test_reencode_replaces_previous_values(self) -> None:
        encoded = encode("Title\n\nBody\n", META)
        updated = CommitMetadata(CommitID("1a2b3c4d"), 43, "f" * 40)
        reencoded = encode(encoded, updated)
        assert decode(reencoded) == updated
        assert reencoded.count("commit-id:") == 1
        assert "pr-number: 42" not in reencoded

    def test_trailing_blank_lines_are_normalized(self) -> None:
        assert encode("Title\n\n\n\n", META) == encode("Title\n", META)

    def test_new_commit_id_format(self) -> None:
        commit_id = new_commit_id()
        assert len(commit_id) == 8
        int(commit_id, 16)


class TestUntracked:
    """Messages without our trailer decode to None."""

    @pytest.mark.parametrize("message", [
        "",
        "Title\n",
        "Title\n\nJust a body.\n",
        "Title\n\nSigned-off-by: Dev <dev@example.com>\n",
        # The title paragraph is never a trailer block
        "commit-id: 1a2b3c4d\n",
    ])
    def test_decode_returns_none(self, message: str) -> None:
        assert decode(message) is None

    def test_strip_metadata_of_untracked_message(self) -> None:
        assert strip_metadata("Title\n\nBody") == "Title\n\nBody\n"
        assert strip_metadata("") == ""


class TestCorrupt:
    """Malformed trailers are reported, never guessed at."""

    @pytest.mark.parametrize("trailer,fragment", [
        ("commit-id: 1a2b3c4d\ncommit-id: 1a2b3c4d\npr-number: 4\nsync-hash: " + SYNC_HASH,
         "duplicate 'commit-id'"),
        ("commit-id: 1a2b3c4d", "lacks pr-number, sync-hash"),
        ("commit-id: 1a2b3c4d\npr-number: 4", "lacks sync-hash"),
        ("commit-id: nothex!!\npr-number: 4\nsync-hash: " + SYNC_HASH, "invalid commit-id"),
        ("commit-id: 1a2b3c4d\npr-number: four\nsync-hash: " + SYNC_HASH, "invalid pr-number"),
        ("commit-id: 1a2b3c4d\npr-number: 0\nsync-hash: " + SYNC_HASH, "invalid pr-number"),
        ("commit-id: 1a2b3c4d\npr-number: 4\nsync-hash: abc123", "invalid sync-hash"),
    ])
    def test_decode_raises(self, trailer: str, fragment: str) -> None:
        with pytest.raises(MetadataCorrupt) as exc_info:
            decode(f"Title\n\n{trailer}\n")
        assert exc_info.value.kind == ErrorKind.METADATA_CORRUPT
        assert fragment in str(exc_info.value)

    def test_keys_are_case_insensitive(self) -> None:
        message = f"Title\n\nCommit-Id: 1a2b3c4d\nPR-Number: 7\nSync-Hash: {SYNC_HASH}\n"
        assert decode(message) == CommitMetadata(CommitID("1a2b3c4d"), 7, SYNC_HASH)

    @pytest.mark.parametrize("message", [
        # Two tracked commits squashed together keep both trailer blocks
        "Add alpha\n\ncommit-id: 1a2b3c4d\npr-number: 1\nsync-hash: " + SYNC_HASH + "\n\n"
        "Add beta\n\ncommit-id: 5e6f7a8b\npr-number: 2\nsync-hash: " + SYNC_HASH + "\n",
        # A non-trailer line turns the paragraph into body text
        "Title\n\ncommit-id: 1a2b3c4d\npr-number: 1\nsync-hash: " + SYNC_HASH + "\nsome note\n",
        # Our keys in a paragraph that is not the last one
        "Title\n\ncommit-id: 1a2b3c4d\npr-number: 4\n\nMore text\n",
    ])
    def test_keys_outside_final_block(self, message: str) -> None:
        with pytest.raises(MetadataCorrupt) as exc_info:
            decode(message)
        assert "outside the final trailer block" in str(exc_info.value)
