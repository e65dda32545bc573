"""MaterialFlow object storage interface and in-memory backend."""

from __future__ import annotations

from typing import Protocol


class Storage(Protocol):
    async def get_bytes(self, path: str) -> bytes: ...

    async def put_bytes(self, path: str, data: bytes, content_type: str) -> str: ...


class InMemoryStorage:
    """Dict-backed storage for the CLI runner and tests."""

    def __init__(self) -> None:
        self._objects: dict[str, tuple[bytes, str]] = {}

    async def get_bytes(self, path: str) -> bytes:
        try:
            return self._objects[path][0]
        except KeyError:
            raise FileNotFoundError(f"No object stored at {path}") from None

    async def put_bytes(self, path: str, data: bytes, content_type: str) -> str:
        self._objects[path] = (data, content_type)
        return path

    def __contains__(self, path: str) -> bool:
        return path in self._objects
