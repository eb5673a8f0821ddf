"""Commit metadata trailer codec.

A tracked commit ends with a trailer block linking it to its pull request:

    commit-id: 1a2b3c4d
    pr-number: 42
    sync-hash: 0123456789abcdef0123456789abcdef01234567

The trailer block is the last paragraph of the message, provided it is not the
title paragraph and every line in it is a ``Key: value`` line. Foreign trailers
(Signed-off-by, Co-authored-by, ...) share the block and are left alone.
"""

import re
import uuid
from dataclasses import dataclass
from typing import List, Optional, Tuple

from ..errors import MetadataCorrupt
from ..typing import CommitID

KEY_COMMIT_ID = 'commit-id'
KEY_PR_NUMBER = 'pr-number'
KEY_SYNC_HASH = 'sync-hash'
METADATA_KEYS = (KEY_COMMIT_ID, KEY_PR_NUMBER, KEY_SYNC_HASH)

TRAILER_RE = re.compile(r'^([A-Za-z0-9][A-Za-z0-9-]*):\s*(.*?)\s*$')
COMMIT_ID_RE = re.compile(r'^[0-9a-f]{8}$')
SYNC_HASH_RE = re.compile(r'^[0-9a-f]{40}$')

@dataclass(frozen=True)
class CommitMetadata:
    """Link between a commit and its PR, as of the last sync."""
    commit_id: CommitID
    pr_number: int
    sync_hash: str

    def trailer_lines(self) -> List[str]:
        return [
            f"{KEY_COMMIT_ID}: {self.commit_id}",
            f"{KEY_PR_NUMBER}: {self.pr_number}",
            f"{KEY_SYNC_HASH}: {self.sync_hash}",
        ]

def new_commit_id() -> CommitID:
    """Generate a fresh stable commit ID."""
    return CommitID(str(uuid.uuid4())[:8])

def _is_blank(line: str) -> bool:
    return not line.strip()

def _split_lines(message: str) -> List[str]:
    lines = message.rstrip('\n').split('\n')
    while lines and _is_blank(lines[-1]):
        lines.pop()
    return lines

def _title_end(lines: List[str]) -> int:
    """Index of the first line after the title paragraph."""
    index = 0
    while index < len(lines) and _is_blank(lines[index]):
        index += 1
    while index < len(lines) and not _is_blank(lines[index]):
        index += 1
    return index

def _trailer_block(lines: List[str]) -> Optional[Tuple[int, int]]:
    """Return [start, end) of the trailer block, or None if there isn't one."""
    if not lines:
        return None
    end = len(lines)
    start = end
    while start > 0 and not _is_blank(lines[start - 1]):
        start -= 1
    # The first paragraph is the title, never a trailer block
    if start < _title_end(lines):
        return None
    for index in range(start, end):
        line = lines[index]
        if line[:1] in (' ', '\t') and index > start:
            continue  # Folded continuation of the previous trailer
        if not TRAILER_RE.match(line):
            return None
    return start, end

def _metadata_key(line: str) -> Optional[str]:
    match = TRAILER_RE.match(line)
    if match and match.group(1).lower() in METADATA_KEYS:
        return match.group(1).lower()
    return None

def decode(message: str) -> Optional[CommitMetadata]:
    """Read the metadata trailer from a commit message.

    Returns None if the commit is untracked.

    Raises:
        MetadataCorrupt: duplicated keys, missing companion keys, bad values or
            our keys anywhere outside the final trailer block
    """
    lines = _split_lines(message)
    block = _trailer_block(lines)
    # Our keys may only appear in the final block
    body_end = block[0] if block is not None else len(lines)
    for line in lines[_title_end(lines):body_end]:
        key = _metadata_key(line)
        if key is not None:
            raise MetadataCorrupt(f"'{key}' trailer outside the final trailer block")
    if block is None:
        return None

    values = {}
    for line in lines[block[0]:block[1]]:
        key = _metadata_key(line)
        if key is None:
            continue
        if key in values:
            raise MetadataCorrupt(f"duplicate '{key}' trailer")
        values[key] = TRAILER_RE.match(line).group(2)  # type: ignore[union-attr]

    if not values:
        return None
    missing = [key for key in METADATA_KEYS if key not in values]
    if missing:
        raise MetadataCorrupt(f"trailer block lacks {', '.join(missing)}")

    commit_id = values[KEY_COMMIT_ID]
    if not COMMIT_ID_RE.match(commit_id):
        raise MetadataCorrupt(f"invalid commit-id '{commit_id}'")
    try:
        pr_number = int(values[KEY_PR_NUMBER])
    except ValueError:
        raise MetadataCorrupt(f"invalid pr-number '{values[KEY_PR_NUMBER]}'")
    if pr_number <= 0:
        raise MetadataCorrupt(f"invalid pr-number '{values[KEY_PR_NUMBER]}'")
    sync_hash = values[KEY_SYNC_HASH]
    if not SYNC_HASH_RE.match(sync_hash):
        raise MetadataCorrupt(f"invalid sync-hash '{sync_hash}'")

    return CommitMetadata(CommitID(commit_id), pr_number, sync_hash)

def _without_metadata(lines: List[str]) -> Tuple[List[str], bool]:
    """Drop our trailer lines. Returns (lines, foreign_trailers_remain)."""
    block = _trailer_block(lines)
    if block is None:
        return lines, False
    start, end = block
    kept = [line for line in lines[start:end] if _metadata_key(line) is None]
    if kept:
        return lines[:start] + kept, True
    head = lines[:start]
    while head and _is_blank(head[-1]):
        head.pop()
    return head, False

def strip_metadata(message: str) -> str:
    """Return the message without the metadata trailer lines."""
    lines, _ = _without_metadata(_split_lines(message))
    if not lines:
        return ""
    return "\n".join(lines) + "\n"

def encode(message: str, metadata: CommitMetadata) -> str:
    """Write metadata into a commit message, replacing any previous trailer.

    Every other line is preserved. Encoding an already encoded message with the
    same metadata returns it unchanged.
    """
    lines, in_block = _without_metadata(_split_lines(message))
    if not in_block:
        lines = lines + [""]
    lines = lines + metadata.trailer_lines()
    return "\n".join(lines) + "\n"
