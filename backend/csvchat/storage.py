"""元CSVを保管するオブジェクトストレージ（既定はローカルディスク実装）。"""

import logging
from pathlib import Path
from typing import Protocol

from .config import StorageConfig

logger = logging.getLogger(__name__)


class StorageError(RuntimeError):
    pass


class ObjectStorage(Protocol):
    def upload(self, path: str, data: bytes) -> str:  # pragma: no cover
        """path に data を保存し、保存先パスを返す。失敗時は StorageError。"""


class LocalObjectStorage:
    """<root_dir>/<bucket>/<path> に保存する。同じパスへの再アップロードは上書き（upsert）。"""

    def __init__(self, config: StorageConfig):
        self.base = Path(config.root_dir) / config.bucket

    def upload(self, path: str, data: bytes) -> str:
        target = (self.base / path).resolve()
        if self.base.resolve() not in target.parents:
            raise StorageError(f"Invalid storage path: {path}")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise StorageError(f"Failed to store object: {type(e).__name__}") from e
        logger.info("Stored %d bytes at %s", len(data), path)
        return path
