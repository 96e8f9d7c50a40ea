"""PatchSummary.py -- Parser for the patch summary written by ``sca patch``.

Format version 1::

    # <title>
    ...free text...
    ## Files that have been modified:
    - *path/one*
    - `path/two`
    ...free text / further headings...

The first line is a markdown heading carrying the title.  The file section
starts at the ``Files that have been modified`` heading and runs until the
next heading or the end of the document; every non-blank line inside it is a
list item holding one path, optionally wrapped in ``*`` or backticks.
Anything else means the document shape changed and we refuse to guess.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from typing import List

from CodeSecErrors import PatchSummaryFormatError

FORMAT_VERSION = 1
FILES_HEADING = "Files that have been modified"

_TITLE_RE = re.compile(r"^#+\s*(?P<title>.*?)\s*$")
_HEADING_RE = re.compile(r"^#+\s")
_FILES_HEADING_RE = re.compile(r"^#+\s*" + re.escape(FILES_HEADING) + r"\s*:?\s*$")
_ITEM_RE = re.compile(r"^[-*]\s+(?P<path>.+?)\s*$")
_WRAPPERS = ("*", "`")


@dataclass
class PatchSummary:
    title: str
    modified_files: List[str] = field(default_factory=list)
    text: str = ""
    version: int = FORMAT_VERSION

    @classmethod
    def parse(cls, text: str, source: str = "patchSummary.md") -> "PatchSummary":
        lines = text.splitlines()
        if not lines:
            raise PatchSummaryFormatError(source, "document is empty")

        title_match = _TITLE_RE.match(lines[0])
        title = title_match.group("title") if title_match else ""
        if not title:
            raise PatchSummaryFormatError(source, "first line is not a '# <title>' heading")

        start = None
        for idx, line in enumerate(lines):
            if _FILES_HEADING_RE.match(line.strip()):
                start = idx + 1
                break
        if start is None:
            raise PatchSummaryFormatError(source, f"no '{FILES_HEADING}' section")

        files: List[str] = []
        for line in lines[start:]:
            stripped = line.strip()
            if not stripped:
                continue
            if _HEADING_RE.match(stripped):
                break
            item = _ITEM_RE.match(stripped)
            if not item:
                raise PatchSummaryFormatError(
                    source, f"unexpected line in modified-files section: {stripped!r}"
                )
            path = _unwrap(item.group("path"))
            if path:
                files.append(path)

        return cls(title=title, modified_files=files, text=text)


def _unwrap(value: str) -> str:
    # "**path**" and "`path`" both reduce to "path"
    changed = True
    while changed:
        changed = False
        for wrapper in _WRAPPERS:
            if len(value) >= 2 and value.startswith(wrapper) and value.endswith(wrapper):
                value = value[1:-1].strip()
                changed = True
    return value


def normalize_title(title: str) -> str:
    """Collapse non-alphanumeric runs to ``_`` and trim the ends."""
    slug = re.sub(r"[^A-Za-z0-9]+", "_", title)
    return slug.strip("_")


def derive_branch_name(prefix: str, current_branch: str, title: str) -> str:
    """``<prefix><current>/<slug>_<hash>`` -- stable per title, distinct across titles.

    The leaf is not the bare ``<slug>``: titles differing only in
    punctuation share a slug, so the first 8 hex digits of the title's
    SHA-1 are appended, e.g. ``codesec/sca/main/Upgrade_lodash_1a2b3c4d``.
    """
    digest = hashlib.sha1(title.encode("utf-8")).hexdigest()[:8]
    slug = normalize_title(title)
    leaf = f"{slug}_{digest}" if slug else digest
    return f"{prefix.rstrip('/')}/{current_branch}/{leaf}"
