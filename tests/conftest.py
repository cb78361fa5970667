# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for dbbackupman tests.

Provides a fake process runner, in-memory storage destinations, a fake
S3 client and test configuration helpers.
"""

import tempfile
from dataclasses import dataclass
from datetime import datetime, UTC
from pathlib import Path
from typing import Callable, Dict, Generator, List

import pytest
from botocore.exceptions import ClientError

from dbbackupman.config import BackupConfig, ConnectionProfile, Engine
from dbbackupman.exceptions import StorageError

RUN_AT = datetime(2025, 1, 2, 3, 4, 5, tzinfo=UTC)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


# ============================================================================
# Process runner
# ============================================================================

@dataclass
class Call:
    cmd: List[str]
    env: Dict[str, str] | None
    path: Path | None = None
    append: bool = False

    @property
    def program(self) -> str:
        return self.cmd[0]


class FakeProcessRunner:
    """
    Records commands instead of running them.

    ``handler(cmd)`` returns the bytes the program "writes" to stdout (or
    to its --file argument), or an exception to raise after writing
    ``partial_output``.
    """

    def __init__(self, handler: Callable[[List[str]], object] | None = None, partial_output: bytes = b""):
        self.handler = handler or (lambda cmd: b"")
        self.partial_output = partial_output
        self.calls: List[Call] = []
        self.checked: List[str] = []

    def _result(self, cmd: List[str]):
        return self.handler(list(cmd))

    async def run(self, cmd, env=None) -> bytes:
        self.calls.append(Call(list(cmd), env))
        result = self._result(cmd)
        if isinstance(result, Exception):
            raise result
        if "--file" in cmd:
            target = Path(cmd[cmd.index("--file") + 1])
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(result or b"PGDMP")
        return result or b""

    async def run_to_file(self, cmd, path, env=None, append=False) -> int:
        self.calls.append(Call(list(cmd), env, Path(path), append))
        result = self._result(cmd)
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "ab" if append else "wb") as fh:
            if isinstance(result, Exception):
                fh.write(self.partial_output)
            else:
                fh.write(result or b"")
        if isinstance(result, Exception):
            raise result
        return path.stat().st_size

    async def check_tool(self, binary: str) -> None:
        self.checked.append(binary)

    async def check_tools(self, binaries: List[str]) -> None:
        for binary in binaries:
            await self.check_tool(binary)

    def calls_to(self, program: str) -> List[Call]:
        return [c for c in self.calls if c.program == program]


# ============================================================================
# Storage
# ============================================================================

class MemoryDestination:
    """In-memory storage destination that records write order."""

    def __init__(self, name: str, fail_put: Callable[[str], bool] | None = None):
        self.name = name
        self.objects: Dict[str, bytes] = {}
        self.put_order: List[str] = []
        self.deleted: List[str] = []
        self.fail_put = fail_put or (lambda key: False)

    async def __aenter__(self) -> "MemoryDestination":
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None

    async def exists(self, key: str) -> bool:
        return key in self.objects

    async def get(self, key: str) -> bytes:
        if key not in self.objects:
            raise StorageError(f"No such key: {key}")
        return self.objects[key]

    async def put(self, key: str, data: bytes) -> None:
        if self.fail_put(key):
            raise StorageError(f"Simulated failure writing {key}", details={"key": key})
        self.objects[key] = data
        self.put_order.append(key)

    async def put_file(self, key: str, path: Path) -> int:
        try:
            data = Path(path).read_bytes()
        except OSError as e:
            raise StorageError(f"Cannot read {path}: {e}", details={"key": key}) from e
        await self.put(key, data)
        return len(data)

    async def list(self, prefix: str = "") -> List[str]:
        return sorted(k for k in self.objects if k.startswith(prefix))

    async def delete(self, key: str) -> None:
        self.objects.pop(key, None)
        self.deleted.append(key)


class _FakeBody:
    def __init__(self, data: bytes):
        self._data = data

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return None

    async def read(self) -> bytes:
        return self._data


class _FakePaginator:
    def __init__(self, objects: Dict[str, bytes]):
        self._objects = objects

    async def paginate(self, Bucket: str, Prefix: str = "", MaxKeys: int = 1000):
        keys = sorted(k for k in self._objects if k.startswith(Prefix))
        for i in range(0, max(len(keys), 1), MaxKeys):
            chunk = keys[i : i + MaxKeys]
            page = {"Contents": [{"Key": k} for k in chunk]} if chunk else {}
            yield page


class FakeS3Client:
    """
    The subset of the aiobotocore S3 client used by S3Destination.

    ``errors`` maps an operation name (``put_object``, ``head_object``,
    ``upload_part``, ...) to the exception that operation raises.
    """

    def __init__(self, errors: Dict[str, Exception] | None = None):
        self.objects: Dict[str, bytes] = {}
        self.errors: Dict[str, Exception] = dict(errors or {})
        self.uploads: Dict[str, Dict[int, bytes]] = {}
        self.aborted: List[str] = []
        self.part_sizes: List[int] = []

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.errors:
            raise self.errors[operation]

    @staticmethod
    def _not_found(operation: str) -> ClientError:
        return ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, operation)

    async def head_object(self, Bucket: str, Key: str):
        self._maybe_fail("head_object")
        if Key not in self.objects:
            raise self._not_found("HeadObject")
        return {"ContentLength": len(self.objects[Key])}

    async def get_object(self, Bucket: str, Key: str):
        self._maybe_fail("get_object")
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject")
        return {"Body": _FakeBody(self.objects[Key])}

    async def put_object(self, Bucket: str, Key: str, Body: bytes):
        self._maybe_fail("put_object")
        self.objects[Key] = Body
        return {}

    async def delete_object(self, Bucket: str, Key: str):
        self._maybe_fail("delete_object")
        self.objects.pop(Key, None)
        return {}

    async def create_multipart_upload(self, Bucket: str, Key: str):
        self._maybe_fail("create_multipart_upload")
        upload_id = f"upload-{len(self.uploads) + 1}"
        self.uploads[upload_id] = {}
        return {"UploadId": upload_id}

    async def upload_part(self, Bucket: str, Key: str, PartNumber: int, UploadId: str, Body: bytes):
        self._maybe_fail("upload_part")
        self.uploads[UploadId][PartNumber] = Body
        self.part_sizes.append(len(Body))
        return {"ETag": f'"etag-{PartNumber}"'}

    async def complete_multipart_upload(self, Bucket: str, Key: str, UploadId: str, MultipartUpload):
        self._maybe_fail("complete_multipart_upload")
        parts = self.uploads.pop(UploadId)
        numbers = [p["PartNumber"] for p in MultipartUpload["Parts"]]
        self.objects[Key] = b"".join(parts[n] for n in numbers)
        return {}

    async def abort_multipart_upload(self, Bucket: str, Key: str, UploadId: str):
        self.uploads.pop(UploadId, None)
        self.aborted.append(UploadId)
        return {}

    def get_paginator(self, name: str) -> _FakePaginator:
        self._maybe_fail("list_objects_v2")
        assert name == "list_objects_v2"
        return _FakePaginator(self.objects)


# ============================================================================
# Configuration helpers
# ============================================================================

def make_config(temp_dir: Path, engine: Engine = Engine.POSTGRES, **overrides) -> BackupConfig:
    values = dict(
        connection_name="main",
        engine=engine,
        database="shop",
        username="backup",
        password="s3cret",
        output_dir=temp_dir / "out",
        check_tools=False,
    )
    values.update(overrides)
    return BackupConfig(**values)


def make_profile(temp_dir: Path, engine: Engine = Engine.POSTGRES, now: datetime = RUN_AT, **overrides) -> ConnectionProfile:
    return ConnectionProfile.from_config(make_config(temp_dir, engine, **overrides), now)


@pytest.fixture
def pg_profile(temp_dir: Path) -> ConnectionProfile:
    return make_profile(temp_dir, Engine.POSTGRES)


@pytest.fixture
def mysql_profile(temp_dir: Path) -> ConnectionProfile:
    return make_profile(temp_dir, Engine.MYSQL)
