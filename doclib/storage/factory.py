"""
Storage Provider Factory

Builds one provider per backend kind. The Hybrid Storage Manager receives the
resulting mapping and never touches the concrete classes directly.
"""

from __future__ import annotations

from doclib.core.config import Settings, settings as default_settings
from doclib.models.records import StorageBackend
from doclib.storage.base import StorageProvider


def get_storage_providers(cfg: Settings | None = None) -> dict[StorageBackend, StorageProvider]:
    """
    Return providers for every backend an organization policy may select.
    Both are always built: policies are per organization, so any of them can
    ask for either backend at runtime.
    """
    from doclib.storage.local import LocalFilesystemProvider
    from doclib.storage.s3 import ObjectStoreProvider

    cfg = cfg or default_settings
    return {
        StorageBackend.OBJECT_STORE: ObjectStoreProvider(cfg),
        StorageBackend.LOCAL:        LocalFilesystemProvider(cfg),
    }
