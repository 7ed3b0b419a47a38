"""Reversible mapping between object keys and file names.

Object keys may contain any character, including ``/``. Each key is
stored as a single file in its bucket directory, so it is percent-encoded
into a name that is safe on every filesystem:

    photos/2024 summer.jpg  ->  photos%2F2024%20summer.jpg

The encoding is form URL-encoding with ``%20`` for spaces: ASCII letters,
digits and ``*_.-`` are kept, everything else (``~`` included) becomes
``%XX`` of its UTF-8 bytes. Buckets written by earlier releases use the
same names. An encoded name never begins with ``$``, so file names
starting with ``$`` are free for control files (markers, sidecars, temp
files).
"""

import urllib.parse

RESERVED_PREFIX = "$"

PUBLIC_MARKER = "$public"
VERSION_MARKER = "$version"
TEMP_PREFIX = "$tmp."

_PROPERTIES_SUFFIX = ".properties"

# Longest file name common filesystems accept.
MAX_NAME_LENGTH = 255


def encode_key(key: str) -> str:
    """Encode an object key into a file name.

    Args:
        key: The logical object key.

    Returns:
        The file name used for the object's data file.
    """
    encoded = urllib.parse.quote(key, safe="*").replace("~", "%7E")
    # "." and ".." are not usable as file names.
    if encoded and encoded.strip(".") == "":
        encoded = encoded.replace(".", "%2E")
    return encoded


def decode_key(name: str) -> str:
    """Decode a data file name back into its object key."""
    return urllib.parse.unquote(name)


def properties_name(encoded: str) -> str:
    """Return the sidecar file name for an encoded data file name."""
    return f"{RESERVED_PREFIX}{encoded}{_PROPERTIES_SUFFIX}"


def fits_filesystem(encoded: str) -> bool:
    """Return True if the data file and its sidecar have storable names."""
    return len(properties_name(encoded)) <= MAX_NAME_LENGTH


def is_reserved(name: str) -> bool:
    """Return True for control files that must never be listed as objects."""
    return name.startswith(RESERVED_PREFIX)
