"""Atomic, lock-guarded JSON and JSONL documents on local disk."""

import json
import os
import tempfile
from contextlib import contextmanager
from typing import Any, Iterator

from filelock import FileLock


class FileStore:

    @staticmethod
    def _lock(file_path: str) -> FileLock:
        os.makedirs(os.path.dirname(file_path) or ".", exist_ok=True)
        return FileLock(f"{file_path}.lock")

    @staticmethod
    def _load(file_path: str, default: Any) -> Any:
        if not os.path.exists(file_path):
            return default if default is not None else {}
        with open(file_path, "r") as f:
            return json.load(f)

    @staticmethod
    def _replace(file_path: str, data: Any) -> None:
        fd, tmp = tempfile.mkstemp(dir=os.path.dirname(file_path) or ".", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2, default=str)
            os.replace(tmp, file_path)
        except Exception:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    @staticmethod
    def read_json(file_path: str, default: Any = None) -> Any:
        with FileStore._lock(file_path):
            return FileStore._load(file_path, default)

    @staticmethod
    def write_json(file_path: str, data: Any) -> None:
        with FileStore._lock(file_path):
            FileStore._replace(file_path, data)

    @staticmethod
    @contextmanager
    def transaction(file_path: str, default: Any = None) -> Iterator[Any]:
        """Hold the document lock across a read-modify-write.

        The yielded object is written back only if the block exits cleanly,
        so a raised error leaves the stored document untouched. Do not call
        other FileStore methods on the same path inside the block.
        """
        with FileStore._lock(file_path):
            data = FileStore._load(file_path, default)
            yield data
            FileStore._replace(file_path, data)

    @staticmethod
    def append_jsonl(file_path: str, record: dict) -> None:
        with FileStore._lock(file_path):
            with open(file_path, "a") as f:
                f.write(json.dumps(record, default=str) + "\n")

    @staticmethod
    def read_jsonl(file_path: str) -> list[dict]:
        with FileStore._lock(file_path):
            if not os.path.exists(file_path):
                return []
            records = []
            with open(file_path, "r") as f:
                for line in f:
                    line = line.strip()
                    if line:
                        records.append(json.loads(line))
            return records
