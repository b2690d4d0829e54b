"""File handler module: encoding-aware reads and atomic writes.

Every file tbd owns (issue files, the id mapping, attic entries, meta.yml)
goes through these two functions:

* **Atomic writes** -- ``write_file_atomic()`` writes to a temp file in
  the target directory then calls ``os.replace()`` so readers never see
  partial data.  A crash between two writes leaves both files as plain
  pending changes for the next sync commit.
* **Encoding detection** -- issue files may be hand-edited on any
  platform, so ``read_file_with_encoding()`` detects the encoding with
  charset-normalizer instead of assuming UTF-8.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from charset_normalizer import from_bytes

TEMP_SUFFIX = ".tmp"


def read_file_with_encoding(path: Path) -> tuple[str, str]:
    """Read a file with automatic encoding detection.

    Reads raw bytes first, then uses charset-normalizer to detect encoding.
    UTF-8 input (with or without BOM) is decoded directly.  Defaults to
    UTF-8 for empty files or when detection fails.

    Args:
        path: Path to the file to read.

    Returns:
        Tuple of (content_string, detected_encoding).
    """
    raw = path.read_bytes()
    if not raw:
        return ("", "utf-8")

    try:
        return (raw.decode("utf-8-sig"), "utf-8")
    except UnicodeDecodeError:
        pass

    result = from_bytes(raw).best()
    if result is None:
        # Detection failed, fall back to utf-8
        encoding = "utf-8"
        content = raw.decode(encoding, errors="replace")
    else:
        encoding = result.encoding
        if encoding == "ascii":
            encoding = "utf-8"
        content = str(result)
    return (content, encoding)


def read_text(path: Path) -> str:
    """Return the decoded contents of *path*."""
    content, _ = read_file_with_encoding(path)
    return content


def write_file_atomic(
    path: Path, content: str, encoding: str = "utf-8"
) -> int:
    """Write *content* to *path* atomically.

    Creates parent directories as needed, writes to a temporary file in
    the same directory and replaces the target in one step.  Content is
    written with ``\\n`` line endings on every platform.

    Returns:
        Number of bytes written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    encoded = content.encode(encoding)

    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent), prefix=f".{path.name}.", suffix=TEMP_SUFFIX
    )
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(encoded)
        os.replace(tmp_path, path)
    except BaseException:
        # Clean up temp file on any failure.
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
    return len(encoded)
