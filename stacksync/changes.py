"""Change detection between the local stack and the last sync."""

import hashlib
import logging
import re
from enum import Enum
from typing import List

from .metadata import strip_metadata
from .typing import StackEntry

logger = logging.getLogger(__name__)

HUNK_HEADER_RE = re.compile(r'^@@ -\d+(?:,\d+)? \+\d+(?:,\d+)? @@')

class ChangeKind(str, Enum):
    NEW = "New"
    UNCHANGED = "Unchanged"
    MODIFIED = "Modified"

def normalize_diff(diff: str) -> str:
    """Drop the parts of a patch that move when its base moves.

    Blob ids on ``index`` lines and the line numbers in hunk headers change on a
    clean rebase even though the change itself is the same.
    """
    out = []
    for line in diff.splitlines():
        if line.startswith('index '):
            continue
        if line.startswith('@@'):
            line = HUNK_HEADER_RE.sub('@@', line)
        out.append(line)
    return "\n".join(out)

def content_hash(diff: str, message: str) -> str:
    """Hash a commit's patch and message, ignoring the metadata trailer."""
    h = hashlib.sha1()
    h.update(normalize_diff(diff).encode('utf-8', errors='surrogateescape'))
    h.update(b'\0')
    h.update(strip_metadata(message).encode('utf-8', errors='surrogateescape'))
    return h.hexdigest()

def classify(entry: StackEntry) -> ChangeKind:
    if entry.metadata is None:
        return ChangeKind.NEW
    if entry.metadata.sync_hash == entry.content_hash:
        return ChangeKind.UNCHANGED
    return ChangeKind.MODIFIED

def detect_changes(entries: List[StackEntry]) -> List[ChangeKind]:
    """Classify every entry, index-aligned with entries."""
    changes = [classify(entry) for entry in entries]
    for entry, change in zip(entries, changes):
        logger.debug(f"{entry}: {change.value}")
    return changes
