#!/usr/bin/env python3
"""Utility helpers for editing Godot ``.pck`` resource packages in place.

A ``.pck`` file starts with a fixed header followed by a table of contents.
Every table record stores the absolute offset of its payload, so changing the
size of a single file shifts the position of every payload behind it.  This
script decodes the table, merges replacement or additional files ("overlays")
and writes a complete, consistent archive from scratch:

```
python pck_tweaker.py game.pck scenes/main.tscn icon.png --alignment 16
```

Overlay names are taken from the paths exactly as given, so the command should
be executed from the directory that mirrors the ``res://`` root.  Entries that
already exist keep their position in the table; new entries are appended in the
order they were supplied on the command line.

The rewrite happens in two passes.  The table is written first with zeroed
offset fields while the position of every offset field is recorded.  The
payloads are then appended one after another and each recorded field is
overwritten with the real offset.  The result is written to ``<archive>.tmp``
and renamed over the original so the archive is never left half written.
"""

from __future__ import annotations

import argparse
import hashlib
import logging
import os
import struct
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, NamedTuple, Sequence, Tuple

logger = logging.getLogger(__name__)

PCK_MAGIC = b"GDPC"
SUPPORTED_VERSION = 1
RES_PREFIX = "res://"
RESERVED_SIZE = 16 * 4
DIGEST_SIZE = 16

HEADER_STRUCT = struct.Struct("<4sIIII")  # magic, version, major, minor, patch
COUNT_STRUCT = struct.Struct("<I")
OFFSET_STRUCT = struct.Struct("<Q")
ENTRY_TAIL_STRUCT = struct.Struct("<QQ16s")  # offset, size, md5

HEADER_SIZE = HEADER_STRUCT.size + RESERVED_SIZE + COUNT_STRUCT.size

# Default alignment for payload blocks when --alignment is not given.
DEFAULT_ALIGNMENT = int(os.environ.get("PCK_TWEAKER_ALIGNMENT", 0))


class PckError(RuntimeError):
    """Raised when a package cannot be read, edited or written."""


class MissingInputFileError(PckError):
    """The archive to edit does not exist."""


class BadMagicError(PckError):
    """The file does not start with the GDPC signature."""


class UnsupportedVersionError(PckError):
    """The package format version is not the one this tool understands."""


class TruncatedError(PckError):
    """A field or payload reaches past the end of the archive."""


class NonTextOverlayNameError(PckError):
    """An overlay path cannot be stored as a UTF-8 entry name."""


class TemporaryFileConflictError(PckError):
    """The temporary output file is left over from an earlier failed run."""


class IoFailureError(PckError):
    """Reading, writing or renaming a file failed."""


class EngineVersion(NamedTuple):
    major: int
    minor: int
    patch: int


class ArchiveHeader(NamedTuple):
    version: int
    engine_version: EngineVersion
    entry_count: int


class TableEntry(NamedTuple):
    name: str
    offset: int
    size: int
    digest: bytes


class PatchLocation(NamedTuple):
    position: int
    width: int


def normalize_relative_path(name: str) -> str:
    """Return a normalised relative path using forward slashes."""

    normalised = name.replace("\\", "/")
    while normalised.startswith("./"):
        normalised = normalised[2:]
    return normalised.lstrip("/")


def strip_res_prefix(name: str) -> str:
    if name.startswith(RES_PREFIX):
        return name[len(RES_PREFIX) :]
    return name


# --------------------------------------------------------------- hashing --
def compute_digest(content: bytes) -> bytes:
    """Return the 16 byte MD5 fingerprint stored next to every entry."""

    return hashlib.md5(content).digest()


# ------------------------------------------------------------- alignment --
def padding_for(current_length: int, alignment: int) -> int:
    """Return how many zero bytes bring *current_length* to *alignment*.

    An alignment of ``0`` disables padding.
    """

    if alignment < 0:
        raise ValueError("alignment must not be negative")
    if alignment == 0:
        return 0
    return (-current_length) % alignment


def _pad(buffer: bytearray, alignment: int) -> None:
    padding = padding_for(len(buffer), alignment)
    if padding:
        buffer.extend(b"\x00" * padding)


# ----------------------------------------------------------------- codec --
def _unpack_field(layout: struct.Struct, data: bytes, cursor: int, field: str) -> Tuple:
    if cursor + layout.size > len(data):
        raise TruncatedError(
            f"{field} at offset {cursor} needs {layout.size} bytes, "
            f"only {max(0, len(data) - cursor)} left"
        )
    return layout.unpack_from(data, cursor)


def _read_name(data: bytes, cursor: int) -> Tuple[str, int]:
    """Return the decoded entry name and the cursor behind it.

    Godot pads some names with extra NUL bytes, those are dropped.  Invalid
    UTF-8 is replaced rather than rejected.
    """

    (name_length,) = _unpack_field(COUNT_STRUCT, data, cursor, "name length")
    cursor += COUNT_STRUCT.size
    end = cursor + name_length
    if end > len(data):
        raise TruncatedError(
            f"entry name at offset {cursor} declares {name_length} bytes, "
            f"only {len(data) - cursor} left"
        )
    raw = bytes(data[cursor:end])
    text = raw.decode("utf-8", errors="replace").rstrip("\x00")
    return text, end


def decode_archive(data: bytes) -> Tuple[ArchiveHeader, List[TableEntry]]:
    """Parse the header and table of contents of a package."""

    if len(data) < len(PCK_MAGIC) or bytes(data[: len(PCK_MAGIC)]) != PCK_MAGIC:
        raise BadMagicError(f"file is not a Godot package (magic {bytes(data[:4])!r})")

    _magic, version, major, minor, patch = _unpack_field(HEADER_STRUCT, data, 0, "header")
    if version != SUPPORTED_VERSION:
        raise UnsupportedVersionError(
            f"package version {version} is not supported (expected {SUPPORTED_VERSION})"
        )

    cursor = HEADER_STRUCT.size
    if cursor + RESERVED_SIZE > len(data):
        raise TruncatedError("reserved header block is incomplete")
    cursor += RESERVED_SIZE

    (entry_count,) = _unpack_field(COUNT_STRUCT, data, cursor, "entry count")
    cursor += COUNT_STRUCT.size

    header = ArchiveHeader(version, EngineVersion(major, minor, patch), entry_count)
    logger.debug(
        "decoding package v%d (engine %d.%d.%d) with %d entries",
        version,
        major,
        minor,
        patch,
        entry_count,
    )

    entries: List[TableEntry] = []
    for index in range(entry_count):
        name, cursor = _read_name(data, cursor)
        offset, size, digest = _unpack_field(
            ENTRY_TAIL_STRUCT, data, cursor, f"entry #{index} ({name})"
        )
        cursor += ENTRY_TAIL_STRUCT.size
        entries.append(TableEntry(strip_res_prefix(name), offset, size, digest))

    return header, entries


def encode_header(header: ArchiveHeader, entry_count: int) -> bytes:
    """Return the fixed size header for a package holding *entry_count* files."""

    engine = header.engine_version
    return (
        HEADER_STRUCT.pack(PCK_MAGIC, header.version, engine.major, engine.minor, engine.patch)
        + b"\x00" * RESERVED_SIZE
        + COUNT_STRUCT.pack(entry_count)
    )


def encode_table_entry(
    name: str, size: int, digest: bytes, entry_start: int
) -> Tuple[bytes, PatchLocation]:
    """Return a table record with a zeroed offset and where that offset lives.

    *entry_start* is the absolute position the record will be written to; the
    offset field sits behind the variable length name.
    """

    encoded_name = (RES_PREFIX + name).encode("utf-8")
    if len(digest) != DIGEST_SIZE:
        raise ValueError(f"digest for {name} must be {DIGEST_SIZE} bytes")

    record = bytearray(COUNT_STRUCT.pack(len(encoded_name)))
    record.extend(encoded_name)
    record.extend(ENTRY_TAIL_STRUCT.pack(0, size, digest))

    location = PatchLocation(
        entry_start + COUNT_STRUCT.size + len(encoded_name), OFFSET_STRUCT.size
    )
    return bytes(record), location


# ----------------------------------------------------------- entry store --
class RuntimeEntry:
    """A named payload while a package is being edited."""

    __slots__ = ("name", "content")

    def __init__(self, name: str, content: bytes) -> None:
        self.name = name
        self.content = content

    def __repr__(self) -> str:
        return f"RuntimeEntry({self.name!r}, {len(self.content)} bytes)"


class EntryStore:
    """Ordered name -> content mapping that only ever updates or appends."""

    def __init__(self) -> None:
        self._entries: List[RuntimeEntry] = []
        self._index: Dict[str, int] = {}

    @classmethod
    def from_decoded(cls, entries: Iterable[TableEntry], data: bytes) -> "EntryStore":
        store = cls()
        for entry in entries:
            end = entry.offset + entry.size
            if end > len(data):
                raise TruncatedError(
                    f"entry {entry.name} spans {entry.offset}..{end} "
                    f"but the archive is only {len(data)} bytes"
                )
            store.apply_overlay(entry.name, bytes(data[entry.offset : end]))
        return store

    def apply_overlay(self, name: str, content: bytes) -> None:
        """Replace the content of *name* in place or append a new entry."""

        index = self._index.get(name)
        if index is not None:
            self._entries[index].content = content
            logger.debug("replaced %s (%d bytes)", name, len(content))
            return

        self._index[name] = len(self._entries)
        self._entries.append(RuntimeEntry(name, content))

    def finalize(self) -> List[Tuple[str, bytes]]:
        return [(entry.name, entry.content) for entry in self._entries]

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._index

    def __iter__(self) -> Iterator[str]:
        return (entry.name for entry in self._entries)

    def __getitem__(self, name: str) -> bytes:
        return self._entries[self._index[name]].content


# -------------------------------------------------------------- patching --
def build_archive(
    header: ArchiveHeader,
    entries: Sequence[Tuple[str, bytes]],
    alignment: int = 0,
) -> bytearray:
    """Return the bytes of a package holding *entries* in the given order."""

    if alignment < 0:
        raise ValueError("alignment must not be negative")

    output = bytearray(encode_header(header, len(entries)))
    locations: List[PatchLocation] = []

    # Table pass: offsets are unknown yet, remember where each one goes.
    for name, content in entries:
        record, location = encode_table_entry(
            name, len(content), compute_digest(content), len(output)
        )
        output.extend(record)
        locations.append(location)

    _pad(output, alignment)
    logger.debug("%d table records, payload region starts at %d", len(locations), len(output))

    # Payload pass: every offset is the absolute position in the output.
    for (_name, content), location in zip(entries, locations):
        offset = len(output)
        OFFSET_STRUCT.pack_into(output, location.position, offset)
        output.extend(content)
        _pad(output, alignment)

    return output


# ---------------------------------------------------------- edit session --
def _read_file(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as exc:
        raise IoFailureError(f"unable to read {path}: {exc}") from exc


def load_archive(archive_path: Path) -> Tuple[bytes, ArchiveHeader, List[TableEntry]]:
    """Read a package and return its bytes, header and table."""

    if not archive_path.exists():
        raise MissingInputFileError(f"missing file: {archive_path}")

    data = _read_file(archive_path)
    header, entries = decode_archive(data)
    return data, header, entries


def overlay_name(path: Path) -> str:
    """Return the entry name used for the overlay file at *path*."""

    name = normalize_relative_path(str(path))
    try:
        # Undecodable bytes in argv surface as lone surrogates.
        name.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise NonTextOverlayNameError(f"non UTF-8 file name: {name!r}") from exc
    return name


def read_overlays(paths: Iterable[Path]) -> List[Tuple[str, bytes]]:
    """Return ``(name, content)`` pairs for every overlay, in order."""

    overlays: List[Tuple[str, bytes]] = []
    for path in paths:
        path = Path(path)
        name = overlay_name(path)
        overlays.append((name, _read_file(path)))
    return overlays


def rewrite_archive(
    data: bytes,
    overlays: Sequence[Tuple[str, bytes]],
    alignment: int = 0,
) -> bytearray:
    """Return a rebuilt copy of the package in *data* with *overlays* merged."""

    header, entries = decode_archive(data)
    store = EntryStore.from_decoded(entries, data)
    original_count = len(store)

    for name, content in overlays:
        store.apply_overlay(name, content)

    logger.debug(
        "%d entries (%d added), alignment %d",
        len(store),
        len(store) - original_count,
        alignment,
    )
    return build_archive(header, store.finalize(), alignment)


def temporary_path(archive_path: Path) -> Path:
    return archive_path.with_name(f"{archive_path.name}.tmp")


def write_atomically(path: Path, data: bytes) -> None:
    """Write *data* next to *path* and rename it over *path*.

    The temporary file must not exist yet.  A stale one from an earlier run
    is reported and left alone.
    """

    tmp_path = temporary_path(path)
    try:
        with tmp_path.open("xb") as handle:
            handle.write(data)
    except FileExistsError as exc:
        raise TemporaryFileConflictError(
            f"temporary file {tmp_path} already exists; remove it and retry"
        ) from exc
    except OSError as exc:
        raise IoFailureError(f"failed to write {tmp_path}: {exc}") from exc

    try:
        os.replace(tmp_path, path)
    except OSError as exc:
        raise IoFailureError(f"failed to replace {path}: {exc}") from exc


def tweak_archive(
    archive_path: Path,
    overlay_paths: Sequence[Path],
    alignment: int = 0,
) -> List[TableEntry]:
    """Merge *overlay_paths* into the package at *archive_path* in place.

    Returns the table of the rewritten package.
    """

    data, _header, _entries = load_archive(archive_path)
    overlays = read_overlays(overlay_paths)

    rebuilt = bytes(rewrite_archive(data, overlays, alignment))
    write_atomically(archive_path, rebuilt)
    logger.info("rewrote %s (%d -> %d bytes)", archive_path, len(data), len(rebuilt))

    return decode_archive(rebuilt)[1]


# ------------------------------------------------------------ inspection --
def list_entries(archive_path: Path) -> Tuple[ArchiveHeader, List[TableEntry]]:
    _data, header, entries = load_archive(archive_path)
    return header, entries


def verify_archive(data: bytes) -> List[str]:
    """Return the names of entries whose stored digest does not match."""

    _header, entries = decode_archive(data)
    mismatched: List[str] = []
    for entry in entries:
        end = entry.offset + entry.size
        if end > len(data) or compute_digest(bytes(data[entry.offset : end])) != entry.digest:
            mismatched.append(entry.name)
    return mismatched


def extract_archive(archive_path: Path, output_dir: Path) -> List[Path]:
    """Write every entry of the package below *output_dir*."""

    data, _header, entries = load_archive(archive_path)
    store = EntryStore.from_decoded(entries, data)
    root = output_dir.resolve()

    written: List[Path] = []
    for name, content in store.finalize():
        target = (root / Path(*normalize_relative_path(name).split("/"))).resolve()
        if root != target and root not in target.parents:
            raise PckError(f"entry {name} would be written outside of {output_dir}")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        except OSError as exc:
            raise IoFailureError(f"unable to write {target}: {exc}") from exc
        written.append(target)
    return written


# ------------------------------------------------------------------- cli --
def _format_entry(entry: TableEntry) -> str:
    return f"{entry.offset:>12} {entry.size:>12} {entry.digest.hex()} {entry.name}"


def build_cli() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pck-tweaker", description="Add or override files inside a Godot .pck package"
    )
    parser.add_argument("pck_file", type=Path, help="the package to modify in place")
    parser.add_argument(
        "overlay_files",
        type=Path,
        nargs="*",
        help="files to add or override; the path as given becomes the entry name, "
        "so run from the package's base directory",
    )
    parser.add_argument(
        "-a",
        "--alignment",
        type=int,
        default=DEFAULT_ALIGNMENT,
        help="alignment after the table and between files, 0 disables (default: %(default)s)",
    )
    parser.add_argument(
        "-l", "--list", action="store_true", help="print the table of contents and exit"
    )
    parser.add_argument(
        "--verify", action="store_true", help="check stored digests against the content and exit"
    )
    parser.add_argument(
        "-x", "--extract", type=Path, metavar="DIR", help="extract every entry into DIR and exit"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    return parser


def main(argv: Iterable[str] | None = None) -> None:
    parser = build_cli()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if args.alignment < 0:
        parser.error("alignment must not be negative")

    try:
        if args.list:
            header, entries = list_entries(args.pck_file)
            engine = header.engine_version
            print(f"engine {engine.major}.{engine.minor}.{engine.patch}, {len(entries)} entries")
            for entry in entries:
                print(_format_entry(entry))
        elif args.verify:
            data, _header, entries = load_archive(args.pck_file)
            mismatched = verify_archive(data)
            for name in mismatched:
                print(f"digest mismatch: {name}")
            if mismatched:
                raise SystemExit(1)
            print(f"All {len(entries)} entries verified")
        elif args.extract is not None:
            written = extract_archive(args.pck_file, args.extract)
            print(f"Extracted {len(written)} file(s) to {args.extract}")
        else:
            entries = tweak_archive(args.pck_file, args.overlay_files, args.alignment)
            print(f"Rewrote {args.pck_file} ({len(entries)} entries)")
    except PckError as exc:
        raise SystemExit(f"error: {exc}") from exc


if __name__ == "__main__":
    main()
