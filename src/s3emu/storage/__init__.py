"""Filesystem-backed bucket and object storage for s3emu."""

from s3emu.storage.store import Bucket, ObjectListing, ObjectStore, StoredObject

__all__ = ["Bucket", "ObjectListing", "ObjectStore", "StoredObject"]
