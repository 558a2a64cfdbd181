"""
Storage package.

  base.py     StorageProvider interface + hint sanitizing
  s3.py       S3-compatible object store (aioboto3)
  local.py    local filesystem
  factory.py  provider construction from settings
  hybrid.py   HybridStorageManager — policy, locations, sync, drift
"""

from doclib.storage.base import StorageProvider
from doclib.storage.hybrid import BackupDeferred, BackupStored, HybridStorageManager, StoreResult

__all__ = [
    "StorageProvider",
    "HybridStorageManager",
    "StoreResult",
    "BackupStored",
    "BackupDeferred",
]
