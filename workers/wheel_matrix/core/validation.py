"""
Validation — structural contract for produced wheel files.

Checks, in order:
  - non-empty file
  - wheel filename convention and a platform tag matching the cell
  - readable zip archive with dist-info METADATA (Name, Version) and WHEEL
  - linux wheels: every native ``.so`` member parses as ELF

Presence/shape checks only; no import of the built extension.
"""
from __future__ import annotations

import io
import logging
import re
import zipfile
import zlib
from pathlib import Path
from typing import List, Optional

from elftools.elf.elffile import ELFFile

from wheel_matrix.core.axes import MatrixCell
from wheel_matrix.policy.profile import Profile
from wheel_matrix.policy.verdict import ValidationReason

logger = logging.getLogger(__name__)

WHEEL_RE = re.compile(
    r"^(?P<name>[A-Za-z0-9_.]+)-(?P<version>[A-Za-z0-9_.!+]+)"
    r"(?:-(?P<build>\d[A-Za-z0-9_.]*))?"
    r"-(?P<python>[A-Za-z0-9_.]+)-(?P<abi>[A-Za-z0-9_.]+)-(?P<platform>[A-Za-z0-9_.]+)\.whl$"
)

PLATFORM_TAG_PREFIXES = {
    "linux": ("manylinux", "musllinux", "linux"),
    "macos": ("macosx",),
    "windows": ("win",),
}

TAGS_32BIT = ("win32", "i686")

# Raised while opening the archive or inflating one of its members.
ARCHIVE_READ_ERRORS = (zipfile.BadZipFile, zlib.error, OSError, RuntimeError, NotImplementedError)


def parse_wheel_name(filename: str) -> Optional[dict]:
    m = WHEEL_RE.match(filename)
    return m.groupdict() if m else None


def _platform_tag_ok(platform_tag: str, cell: MatrixCell) -> bool:
    """Every dotted platform tag must belong to the cell's os family."""
    os_family = cell.lookup("os_family")
    prefixes = PLATFORM_TAG_PREFIXES.get(os_family or "")
    tags = platform_tag.split(".")
    if prefixes is not None and platform_tag != "any":
        if not all(t.startswith(prefixes) for t in tags):
            return False
    if cell.lookup("variant") == "32bit" and platform_tag != "any":
        return all(t.endswith(TAGS_32BIT) for t in tags)
    return True


def _check_metadata(archive: zipfile.ZipFile) -> bool:
    names = archive.namelist()
    metadata = [n for n in names if re.match(r"^[^/]+\.dist-info/METADATA$", n)]
    wheel = [n for n in names if re.match(r"^[^/]+\.dist-info/WHEEL$", n)]
    if len(metadata) != 1 or len(wheel) != 1:
        return False
    text = archive.read(metadata[0]).decode("utf-8", errors="replace")
    headers = {
        line.split(":", 1)[0].strip().lower()
        for line in text.splitlines()
        if ":" in line
    }
    return "name" in headers and "version" in headers


def _check_elf_members(archive: zipfile.ZipFile, path: Path) -> bool:
    for member in archive.namelist():
        if not re.search(r"\.so(\.\d+)*$", member):
            continue
        data = archive.read(member)
        try:
            ELFFile(io.BytesIO(data))
        except Exception as e:
            logger.warning(f"ELF validation failed for {path.name}:{member}: {e}")
            return False
    return True


def validate_artifact(path: Path, cell: MatrixCell, profile: Profile) -> List[ValidationReason]:
    """Return every contract violation for ``path``; empty means valid."""
    reasons: List[ValidationReason] = []

    if not path.is_file() or path.stat().st_size == 0:
        return [ValidationReason.EMPTY_FILE]

    if path.suffix != ".whl":
        # Non-wheel artifacts only get the presence check.
        return reasons

    parsed = parse_wheel_name(path.name)
    if parsed is None:
        reasons.append(ValidationReason.BAD_FILENAME)
    elif not _platform_tag_ok(parsed["platform"], cell):
        reasons.append(ValidationReason.PLATFORM_TAG_MISMATCH)

    if not zipfile.is_zipfile(path):
        reasons.append(ValidationReason.BAD_ARCHIVE)
        return reasons

    try:
        with zipfile.ZipFile(path) as archive:
            if profile.require_metadata and not _check_metadata(archive):
                reasons.append(ValidationReason.MISSING_METADATA)
            if (
                profile.check_elf_extensions
                and cell.lookup("os_family") == "linux"
                and not _check_elf_members(archive, path)
            ):
                reasons.append(ValidationReason.NON_ELF_EXTENSION)
    except ARCHIVE_READ_ERRORS as e:
        logger.warning(f"Unreadable archive {path}: {e}")
        reasons.append(ValidationReason.BAD_ARCHIVE)

    return reasons
