"""Tests for the durable token pair store."""

import asyncio
import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from civicsession.storage.credentials import (
    ACCESS_TOKEN_KEY,
    REFRESH_TOKEN_KEY,
    CredentialStore,
)
from civicsession.storage.errors import CredentialStoreError
from civicsession.storage.kv import (
    FileKeyValueStore,
    MemoryKeyValueStore,
    RedisKeyValueStore,
)
from civicsession.storage.models import Credentials


class RecordingKeyValueStore(MemoryKeyValueStore):
    """Memory store that remembers the order of writes and removals."""

    def __init__(self, initial=None):
        super().__init__(initial)
        self.ops = []

    async def set(self, key, value):
        self.ops.append(("set", key))
        await super().set(key, value)

    async def remove(self, key):
        self.ops.append(("remove", key))
        await super().remove(key)


class TestPairWrites:
    async def test_refresh_token_written_before_access_token(self):
        kv = RecordingKeyValueStore()
        store = CredentialStore(kv)

        await store.save(Credentials("A1", "R1"))

        assert kv.ops == [("set", REFRESH_TOKEN_KEY), ("set", ACCESS_TOKEN_KEY)]

    async def test_clear_removes_access_token_first(self):
        kv = RecordingKeyValueStore()
        store = CredentialStore(kv)
        await store.save(Credentials("A1", "R1"))
        kv.ops.clear()

        await store.clear()

        assert kv.ops == [("remove", ACCESS_TOKEN_KEY), ("remove", REFRESH_TOKEN_KEY)]
        assert await store.load() is None

    async def test_round_trip(self):
        store = CredentialStore(MemoryKeyValueStore())
        await store.save(Credentials("A1", "R1"))

        assert await store.load() == Credentials("A1", "R1")
        assert await store.access_token() == "A1"

    async def test_key_prefix_scopes_keys(self):
        kv = MemoryKeyValueStore()
        store = CredentialStore(kv, key_prefix="civic:")
        await store.save(Credentials("A1", "R1"))

        assert kv.values == {"civic:refresh-token": "R1", "civic:access-token": "A1"}


class YieldingKeyValueStore(MemoryKeyValueStore):
    """Yields to the loop on every write so concurrent callers can interleave."""

    def __init__(self, initial=None):
        super().__init__(initial)
        self.writes = []

    async def set(self, key, value):
        self.writes.append((key, value))
        await asyncio.sleep(0)
        await super().set(key, value)


class PausingKeyValueStore(MemoryKeyValueStore):
    """Holds a write after the refresh token lands until ``resume`` is set."""

    def __init__(self, initial=None):
        super().__init__(initial)
        self.paused = asyncio.Event()
        self.resume = asyncio.Event()

    async def set(self, key, value):
        await super().set(key, value)
        if key == REFRESH_TOKEN_KEY and not self.resume.is_set():
            self.paused.set()
            await self.resume.wait()


class TestConcurrency:
    async def test_concurrent_saves_do_not_interleave(self):
        kv = YieldingKeyValueStore()
        store = CredentialStore(kv)

        await asyncio.gather(
            *(store.save(Credentials(f"A{n}", f"R{n}")) for n in (1, 2, 3))
        )

        pairs = [kv.writes[i : i + 2] for i in range(0, len(kv.writes), 2)]
        assert len(pairs) == 3
        for refresh_write, access_write in pairs:
            assert refresh_write[0] == REFRESH_TOKEN_KEY
            assert access_write[0] == ACCESS_TOKEN_KEY
            assert refresh_write[1][1:] == access_write[1][1:]
        assert await store.load() == Credentials("A3", "R3")

    async def test_load_waits_for_rotation_in_progress(self):
        kv = PausingKeyValueStore({ACCESS_TOKEN_KEY: "A1", REFRESH_TOKEN_KEY: "R1"})
        store = CredentialStore(kv)

        rotation = asyncio.create_task(store.save(Credentials("A2", "R2")))
        await kv.paused.wait()
        reader = asyncio.create_task(store.load())
        for _ in range(5):
            await asyncio.sleep(0)

        assert not reader.done()
        kv.resume.set()
        await rotation

        assert await reader == Credentials("A2", "R2")


class TestPartialPair:
    """A crash between the two writes must read back as 'needs full login'."""

    async def test_refresh_token_alone_is_not_credentials(self):
        store = CredentialStore(MemoryKeyValueStore({REFRESH_TOKEN_KEY: "R1"}))
        assert await store.load() is None

    async def test_access_token_alone_is_not_credentials(self):
        store = CredentialStore(MemoryKeyValueStore({ACCESS_TOKEN_KEY: "A1"}))
        assert await store.load() is None
        assert await store.access_token() is None


class TestGenerations:
    async def test_save_with_stale_generation_is_rejected(self):
        store = CredentialStore(MemoryKeyValueStore())
        await store.begin_identity(Credentials("A1", "R1"))
        generation = store.generation

        await store.clear()
        saved = await store.save(Credentials("A2", "R2"), generation=generation)

        assert saved is False
        assert await store.load() is None

    async def test_save_with_current_generation_keeps_generation(self):
        store = CredentialStore(MemoryKeyValueStore())
        generation = await store.begin_identity(Credentials("A1", "R1"))

        assert await store.save(Credentials("A2", "R2"), generation=generation) is True
        assert store.generation == generation
        assert await store.load() == Credentials("A2", "R2")

    async def test_begin_identity_starts_new_generation(self):
        store = CredentialStore(MemoryKeyValueStore())
        first = await store.begin_identity(Credentials("A1", "R1"))
        second = await store.begin_identity(Credentials("B1", "S1"))

        assert second == first + 1
        assert await store.load() == Credentials("B1", "S1")

    async def test_conditional_clear_skips_newer_identity(self):
        store = CredentialStore(MemoryKeyValueStore())
        old = await store.begin_identity(Credentials("A1", "R1"))
        await store.begin_identity(Credentials("B1", "S1"))

        assert await store.clear(generation=old) is False
        assert await store.load() == Credentials("B1", "S1")


class TestFileBackend:
    async def test_pair_survives_new_store_instance(self, tmp_path):
        path = tmp_path / "nested" / "credentials.json"
        await CredentialStore(FileKeyValueStore(path)).save(Credentials("A1", "R1"))

        reopened = CredentialStore(FileKeyValueStore(path))

        assert await reopened.load() == Credentials("A1", "R1")
        assert (path.stat().st_mode & 0o777) == 0o600

    async def test_clear_empties_file(self, tmp_path):
        path = tmp_path / "credentials.json"
        store = CredentialStore(FileKeyValueStore(path))
        await store.save(Credentials("A1", "R1"))

        await store.clear()

        assert json.loads(path.read_text()) == {}

    async def test_missing_file_loads_nothing(self, tmp_path):
        store = CredentialStore(FileKeyValueStore(tmp_path / "absent.json"))
        assert await store.load() is None

    async def test_corrupt_file_raises(self, tmp_path):
        path = tmp_path / "credentials.json"
        path.write_text("{not json")
        store = CredentialStore(FileKeyValueStore(path))

        with pytest.raises(CredentialStoreError):
            await store.load()

    async def test_clear_replaces_corrupt_file(self, tmp_path):
        path = tmp_path / "credentials.json"
        path.write_text("{not json")
        store = CredentialStore(FileKeyValueStore(path))

        assert await store.clear() is True

        assert json.loads(path.read_text()) == {}
        assert await store.load() is None


class StubRedis:
    """Async stand-in for ``redis.asyncio.Redis`` with decoded responses."""

    def __init__(self):
        self.data = {}
        self.closed = False

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value):
        self.data[key] = value
        return True

    async def delete(self, key):
        return 1 if self.data.pop(key, None) is not None else 0

    async def aclose(self):
        self.closed = True


class UnreachableRedis(StubRedis):
    async def get(self, key):
        raise RedisConnectionError("connection refused")

    async def set(self, key, value):
        raise RedisConnectionError("connection refused")

    async def delete(self, key):
        raise RedisError("READONLY replica")


class TestRedisBackend:
    async def test_pair_round_trip(self):
        client = StubRedis()
        store = CredentialStore(RedisKeyValueStore(client=client), key_prefix="civic:")

        await store.save(Credentials("A1", "R1"))

        assert client.data == {"civic:refresh-token": "R1", "civic:access-token": "A1"}
        assert await store.load() == Credentials("A1", "R1")

        await store.clear()

        assert client.data == {}
        assert await store.load() is None

    @pytest.mark.parametrize(
        "operation,message",
        [
            (lambda kv: kv.get("access-token"), "redis get failed"),
            (lambda kv: kv.set("access-token", "A1"), "redis set failed"),
            (lambda kv: kv.remove("access-token"), "redis delete failed"),
        ],
    )
    async def test_redis_errors_become_store_errors(self, operation, message):
        kv = RedisKeyValueStore(client=UnreachableRedis())

        with pytest.raises(CredentialStoreError) as excinfo:
            await operation(kv)

        assert excinfo.value.message == message
        assert excinfo.value.detail["key"] == "access-token"
        assert isinstance(excinfo.value.__cause__, RedisError)

    async def test_close_releases_client(self):
        client = StubRedis()
        kv = RedisKeyValueStore(client=client)

        await kv.close()

        assert client.closed

    def test_url_or_client_is_required(self):
        with pytest.raises(ValueError):
            RedisKeyValueStore()


def test_credentials_repr_hides_tokens():
    text = repr(Credentials("secret-access", "secret-refresh"))
    assert "secret" not in text
