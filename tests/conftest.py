"""Shared pytest fixtures."""

from dataclasses import dataclass
from datetime import UTC, datetime

import pytest
import yaml

import hybrid_storage.config as config_mod
from hybrid_storage.config import clear_settings_cache
from hybrid_storage.lib.hooks import HookRegistry, hooks
from hybrid_storage.lib.storage.availability import AvailabilityMonitor
from hybrid_storage.lib.storage.base import (
    DEFAULT_CONTENT_TYPE,
    BackendKind,
    DeleteAck,
    FileContent,
    FileMetadata,
    StorageMode,
    StorageResult,
)
from hybrid_storage.lib.storage.errors import NotFoundError
from hybrid_storage.lib.storage.location_cache import LocationCache
from hybrid_storage.lib.storage.manager import StorageManager


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProbe:
    """Availability probe with a switchable answer and a call counter."""

    def __init__(self, healthy: bool = True):
        self.healthy = healthy
        self.calls = 0

    async def __call__(self) -> bool:
        self.calls += 1
        if isinstance(self.healthy, Exception):
            raise self.healthy
        return self.healthy


class FakeBackend:
    """In-memory storage backend recording every call.

    Set ``failures[op] = exc`` to make an operation raise. The remote
    flavour raises ``NotFoundError`` when deleting a missing object, like
    the R2 backend does.
    """

    def __init__(self, kind: BackendKind):
        self.kind = kind
        self.files = {}
        self.calls = []
        self.failures = {}
        self.closed = False

    def calls_for(self, op: str) -> list:
        return [ref for name, ref in self.calls if name == op]

    def _enter(self, op, ref):
        self.calls.append((op, ref))
        if op in self.failures:
            raise self.failures[op]

    def _metadata(self, ref) -> FileMetadata:
        return FileMetadata(
            ref=ref,
            backend=self.kind,
            location=f"{self.kind.value}:{ref}",
            size=len(self.files[ref]),
        )

    def _require(self, ref):
        if ref not in self.files:
            raise NotFoundError(f"File not found: {ref.filename}", ref=ref)

    async def put(self, ref, data, content_type=DEFAULT_CONTENT_TYPE, metadata=None):
        self._enter("put", ref)
        self.files[ref] = bytes(data)
        return StorageResult(
            success=True,
            ref=ref,
            backend_used=self.kind,
            location=f"{self.kind.value}:{ref}",
            size=len(data),
            content_type=content_type,
            stored_at=datetime.now(UTC),
            metadata=dict(metadata or {}),
        )

    async def get(self, ref):
        self._enter("get", ref)
        self._require(ref)
        return FileContent(metadata=self._metadata(ref), data=self.files[ref])

    async def get_stream(self, ref):
        self._enter("get_stream", ref)
        self._require(ref)
        data = self.files[ref]

        async def chunks():
            yield data

        return FileContent(metadata=self._metadata(ref), stream=chunks())

    async def head(self, ref):
        self._enter("head", ref)
        if ref not in self.files:
            return None
        return self._metadata(ref)

    async def delete(self, ref):
        self._enter("delete", ref)
        existed = self.files.pop(ref, None) is not None
        if not existed and self.kind is BackendKind.REMOTE:
            raise NotFoundError(f"File not found: {ref.filename}", ref=ref)
        return DeleteAck(
            ref=ref,
            backend=self.kind,
            existed=existed,
            deleted_at=datetime.now(UTC),
            note=None if existed else "File did not exist",
        )

    async def close(self):
        self.closed = True


@dataclass
class StorageHarness:
    manager: StorageManager
    local: FakeBackend
    remote: FakeBackend
    probe: FakeProbe
    clock: FakeClock
    registry: HookRegistry


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def probe():
    return FakeProbe(True)


@pytest.fixture
def registry():
    """A fresh HookRegistry so tests never touch the global one."""
    return HookRegistry()


@pytest.fixture
def make_storage(clock, registry):
    """Factory building a StorageManager over fake backends."""

    def _make(
        mode=StorageMode.HYBRID,
        *,
        remote_healthy=True,
        check_interval=60.0,
        cache_ttl=300.0,
        cache_size=1000,
        max_upload_size=None,
        max_avatar_size=None,
    ) -> StorageHarness:
        local = FakeBackend(BackendKind.LOCAL)
        remote = FakeBackend(BackendKind.REMOTE)
        probe = FakeProbe(remote_healthy)
        manager = StorageManager(
            local,
            remote,
            mode=mode,
            availability=AvailabilityMonitor(
                probe, check_interval, hook_registry=registry, clock=clock
            ),
            location_cache=LocationCache(ttl=cache_ttl, capacity=cache_size, clock=clock),
            hook_registry=registry,
            max_upload_size=max_upload_size,
            max_avatar_size=max_avatar_size,
        )
        return StorageHarness(manager, local, remote, probe, clock, registry)

    return _make


@pytest.fixture
def temp_app_yaml(tmp_path):
    """Create a temporary app.yaml file for testing."""
    config_path = tmp_path / "app.yaml"

    def _create_config(config: dict):
        with open(config_path, "w") as f:
            yaml.safe_dump(config, f)
        return config_path

    return _create_config


@pytest.fixture(autouse=True)
def clean_config():
    """Reset the config path override and settings cache around each test."""
    config_mod._config_path_override = None
    clear_settings_cache()
    yield
    config_mod._config_path_override = None
    clear_settings_cache()


@pytest.fixture
def clean_hooks():
    """Save and restore hooks state around a test."""
    original_filters = hooks._filters.copy()
    original_actions = hooks._actions.copy()
    yield
    hooks._filters = original_filters
    hooks._actions = original_actions
