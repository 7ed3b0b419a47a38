"""On-disk format versioning for bucket directories.

Version 1 layout (written by older releases):
    __ninja_public                 public visibility marker
    <raw name>                     object data, key stored verbatim
    __ninja_<raw name>.properties  object metadata

Version 2 layout (current):
    $version                       format marker, holds "2"
    $public                        public visibility marker
    <encoded key>                  object data, see ``keys.encode_key``
    $<encoded key>.properties      object metadata

Migration runs lazily the first time a bucket is touched. It is safe to
interrupt: a rename whose target already exists is treated as done and
the legacy file is removed, and a small journal (``$migration``) records
every name produced so that a resumed run never encodes a migrated name
a second time. The version marker is written last and is never lowered.
"""

import logging
import os
from pathlib import Path

from s3emu.storage.keys import (
    PUBLIC_MARKER,
    VERSION_MARKER,
    encode_key,
    is_reserved,
    properties_name,
)

logger = logging.getLogger(__name__)

CURRENT_VERSION = 2

_LEGACY_PREFIX = "__ninja_"
_LEGACY_PUBLIC_MARKER = "__ninja_public"
_LEGACY_PROPERTIES_SUFFIX = ".properties"
_JOURNAL = "$migration"


def read_version(bucket_dir: Path) -> int:
    """Return the on-disk format version of a bucket directory.

    A directory without a version marker predates versioning and is
    reported as version 1.
    """
    try:
        return int((bucket_dir / VERSION_MARKER).read_text().strip())
    except FileNotFoundError:
        return 1
    except ValueError:
        logger.warning("Unreadable version marker in %s, assuming version 1", bucket_dir)
        return 1


def write_version(bucket_dir: Path, version: int = CURRENT_VERSION) -> None:
    """Write the version marker, refusing to downgrade an existing one."""
    marker = bucket_dir / VERSION_MARKER
    if marker.exists() and read_version(bucket_dir) >= version:
        return
    tmp = bucket_dir / f"{VERSION_MARKER}.tmp"
    tmp.write_text(str(version))
    os.replace(tmp, marker)


def migrate_bucket(bucket_dir: Path) -> int:
    """Bring a bucket directory up to the current on-disk version.

    Args:
        bucket_dir: The bucket's directory.

    Returns:
        The version the directory is at after the call.
    """
    version = read_version(bucket_dir)
    if version >= CURRENT_VERSION:
        return version

    logger.info("Migrating bucket %s from version %d to %d", bucket_dir.name, version, CURRENT_VERSION)
    if version <= 1:
        _migrate_1_to_2(bucket_dir)

    write_version(bucket_dir, CURRENT_VERSION)
    (bucket_dir / _JOURNAL).unlink(missing_ok=True)
    return CURRENT_VERSION


def _move_or_drop(source: Path, target: Path) -> None:
    """Rename ``source`` to ``target`` unless the target already exists.

    An existing target counts as already migrated; the now redundant
    source is deleted instead of overwriting it.
    """
    if source == target:
        return
    if target.exists():
        logger.info("Dropping redundant legacy file %s", source.name)
        source.unlink()
    else:
        os.rename(source, target)


def _load_journal(bucket_dir: Path) -> set[str]:
    try:
        return set((bucket_dir / _JOURNAL).read_text(encoding="utf-8").splitlines())
    except FileNotFoundError:
        return set()


def _migrate_1_to_2(bucket_dir: Path) -> None:
    legacy_public = bucket_dir / _LEGACY_PUBLIC_MARKER
    if legacy_public.exists():
        _move_or_drop(legacy_public, bucket_dir / PUBLIC_MARKER)

    done = _load_journal(bucket_dir)
    names = sorted(entry.name for entry in os.scandir(bucket_dir) if entry.is_file())

    with open(bucket_dir / _JOURNAL, "a", encoding="utf-8") as journal:
        for name in names:
            if is_reserved(name) or name.startswith(_LEGACY_PREFIX) or name in done:
                continue
            encoded = encode_key(name)
            # Record the produced name before renaming so a resumed run
            # recognises it as migrated.
            journal.write(encoded + "\n")
            journal.flush()
            done.add(encoded)
            _move_or_drop(bucket_dir / name, bucket_dir / encoded)

            legacy_props = bucket_dir / f"{_LEGACY_PREFIX}{name}{_LEGACY_PROPERTIES_SUFFIX}"
            if legacy_props.exists():
                _move_or_drop(legacy_props, bucket_dir / properties_name(encoded))

        # Sidecars whose data file already moved in an interrupted run.
        leftovers = [
            entry.name
            for entry in os.scandir(bucket_dir)
            if entry.is_file()
            and entry.name.startswith(_LEGACY_PREFIX)
            and entry.name.endswith(_LEGACY_PROPERTIES_SUFFIX)
        ]
        for name in leftovers:
            raw = name[len(_LEGACY_PREFIX) : -len(_LEGACY_PROPERTIES_SUFFIX)]
            _move_or_drop(bucket_dir / name, bucket_dir / properties_name(encode_key(raw)))
