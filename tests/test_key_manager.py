"""
Tests for key ring construction, rotation, fallback and revocation.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import timedelta
from uuid import uuid4

import pytest

from conftest import T0, FakeClock, FlakyRepository
from data_protection import (
    AlgorithmConfiguration,
    CertificateKeyProtector,
    ConfigError,
    EncryptionAlgorithm,
    InMemoryKeyRepository,
    InvalidKeyStateError,
    KeyGenerationError,
    KeyManagementOptions,
    KeyManager,
    KeyNotFoundError,
    KeyRecord,
    LocalSecretKeyProtector,
    StorageError,
)

DAY = timedelta(days=1)


class TestKeyManagementOptions:
    def test_defaults(self):
        options = KeyManagementOptions()
        assert options.key_lifetime == 90 * DAY
        assert options.rotation_threshold == 2 * DAY
        assert options.refresh_period == timedelta(hours=24)
        assert not options.allow_revoked_decryption

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"key_lifetime": timedelta(0)},
            {"rotation_threshold": 100 * DAY},
            {"refresh_period": timedelta(0)},
            {"io_retries": -1},
        ],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ConfigError):
            KeyManagementOptions(**kwargs)


class TestKeyGeneration:
    async def test_first_use_creates_key(self, manager: KeyManager, memory_repository):
        key = await manager.get_current_key()

        assert key.activation_time == T0
        assert key.expiration_time == T0 + 90 * DAY
        assert key.is_usable
        assert key.algorithm == AlgorithmConfiguration()

        records = await memory_repository.load_all()
        assert [r.key_id for r in records] == [key.key_id]
        assert key.master_key.as_bytes() not in records[0].wrapped_key

    async def test_cached_ring_is_reused(self, manager: KeyManager, memory_repository):
        first = await manager.get_current_key()
        second = await manager.get_current_key()
        assert first.key_id == second.key_id
        assert len(await memory_repository.load_all()) == 1

    async def test_concurrent_first_use_generates_once(
        self, manager: KeyManager, memory_repository
    ):
        keys = await asyncio.gather(*(manager.get_current_key() for _ in range(10)))
        assert len({k.key_id for k in keys}) == 1
        assert len(await memory_repository.load_all()) == 1

    async def test_auto_generation_disabled(self, memory_repository, local_protector, clock):
        manager = KeyManager(
            memory_repository,
            local_protector,
            KeyManagementOptions(auto_generate_keys=False),
            clock=clock,
        )
        with pytest.raises(InvalidKeyStateError, match="No default key"):
            await manager.get_current_key()
        assert await memory_repository.load_all() == []

    async def test_create_key_with_future_activation(self, manager: KeyManager, clock: FakeClock):
        current = await manager.get_current_key()
        future = await manager.create_key(activation_time=T0 + 10 * DAY)

        assert (await manager.get_current_key()).key_id == current.key_id
        clock.advance(10 * DAY)
        assert (await manager.get_current_key()).key_id == future.key_id

    async def test_create_key_with_explicit_expiration(self, manager: KeyManager):
        key = await manager.create_key(expiration_time=T0 + 7 * DAY)
        assert key.expiration_time == T0 + 7 * DAY
        assert (await manager.get_current_key()).key_id == key.key_id

    async def test_create_key_rejects_inverted_window(self, manager: KeyManager):
        with pytest.raises(KeyGenerationError):
            await manager.create_key(activation_time=T0, expiration_time=T0 - DAY)


class TestRotation:
    async def test_successor_created_inside_threshold(
        self, manager: KeyManager, clock: FakeClock, memory_repository
    ):
        first = await manager.get_current_key()

        clock.advance(87 * DAY)
        await manager.get_ring()
        assert len(await memory_repository.load_all()) == 1

        clock.advance(2 * DAY)
        assert (await manager.get_current_key()).key_id == first.key_id

        records = await memory_repository.load_all()
        assert len(records) == 2
        successor = next(r for r in records if r.key_id != first.key_id)
        assert successor.activation_time == first.expiration_time
        assert successor.expiration_time == first.expiration_time + 90 * DAY

    async def test_successor_becomes_default_at_expiration(
        self, manager: KeyManager, clock: FakeClock
    ):
        first = await manager.get_current_key()
        clock.advance(89 * DAY)
        await manager.get_current_key()

        clock.current = first.expiration_time
        second = await manager.get_current_key()
        assert second.key_id != first.key_id
        assert second.activation_time == first.expiration_time

        # The old key stays in the ring for decryption.
        assert (await manager.get_key(first.key_id)).is_usable

    async def test_no_duplicate_successor(
        self, manager: KeyManager, clock: FakeClock, memory_repository
    ):
        await manager.get_current_key()
        clock.advance(89 * DAY)
        await manager.refresh_ring()
        await manager.refresh_ring()
        clock.advance(timedelta(hours=12))
        await manager.refresh_ring()
        assert len(await memory_repository.load_all()) == 2

    async def test_expired_default_is_replaced_immediately(
        self, manager: KeyManager, clock: FakeClock
    ):
        first = await manager.get_current_key()
        clock.advance(200 * DAY)
        replacement = await manager.get_current_key()
        assert replacement.key_id != first.key_id
        assert replacement.activation_time == clock()

    async def test_algorithm_change_only_affects_new_keys(
        self, manager: KeyManager, memory_repository
    ):
        original = await manager.get_current_key()
        gcm = AlgorithmConfiguration(EncryptionAlgorithm.AES_256_GCM)
        manager.set_algorithm(gcm)

        assert (await manager.get_key(original.key_id)).algorithm == AlgorithmConfiguration()
        created = await manager.create_key()
        assert created.algorithm == gcm

        stored = {r.key_id: r.algorithm for r in await memory_repository.load_all()}
        assert stored[original.key_id] == AlgorithmConfiguration()
        assert stored[created.key_id] == gcm


class TestSharedRepository:
    async def test_two_managers_converge(self, memory_repository, local_protector, clock):
        options = KeyManagementOptions(io_retries=0, retry_backoff=0)
        first = KeyManager(memory_repository, local_protector, options, clock=clock)
        second = KeyManager(memory_repository, local_protector, options, clock=clock)

        await asyncio.gather(first.get_current_key(), second.get_current_key())
        clock.advance(timedelta(minutes=2))

        a = await first.get_current_key()
        b = await second.get_current_key()
        assert a.key_id == b.key_id

        records = await memory_repository.load_all()
        assert 1 <= len(records) <= 2
        assert a.key_id == max(records, key=lambda r: r.key_id.bytes).key_id

    async def test_get_key_refreshes_on_miss(self, memory_repository, local_protector, clock):
        first = KeyManager(memory_repository, local_protector, clock=clock)
        second = KeyManager(memory_repository, local_protector, clock=clock)
        await second.get_ring()

        key = await first.create_key(activation_time=T0 + DAY)
        found = await second.get_key(key.key_id)
        assert found.master_key.as_bytes() == key.master_key.as_bytes()

    async def test_unknown_key(self, manager: KeyManager):
        with pytest.raises(KeyNotFoundError):
            await manager.get_key(uuid4())

    async def test_additional_unwrappers(self, memory_repository, rsa_certificate, clock):
        certificate, private_key = rsa_certificate
        old_protector = CertificateKeyProtector(certificate, private_key)
        old = KeyManager(memory_repository, old_protector, clock=clock)
        key = await old.get_current_key()

        new = KeyManager(
            memory_repository,
            LocalSecretKeyProtector("new-secret"),
            additional_unwrappers=[old_protector],
            clock=clock,
        )
        assert (await new.get_current_key()).key_id == key.key_id


class TestFailures:
    async def test_repository_outage_keeps_previous_ring(
        self, flaky_repository: FlakyRepository, local_protector, options, clock: FakeClock
    ):
        manager = KeyManager(flaky_repository, local_protector, options, clock=clock)
        key = await manager.get_current_key()

        flaky_repository.load_failures = 100
        clock.advance(timedelta(hours=25))
        assert (await manager.get_current_key()).key_id == key.key_id

        ring = await manager.get_ring()
        assert ring.expires_at == clock() + options.fallback_retry_period

        flaky_repository.load_failures = 0
        clock.advance(timedelta(minutes=2))
        assert (await manager.refresh_ring()).default_key.key_id == key.key_id

    async def test_outage_without_cached_ring_raises(
        self, flaky_repository: FlakyRepository, local_protector, options, clock
    ):
        manager = KeyManager(flaky_repository, local_protector, options, clock=clock)
        flaky_repository.load_failures = 100
        with pytest.raises(StorageError):
            await manager.get_current_key()

    async def test_outage_after_default_expired_raises(
        self, flaky_repository: FlakyRepository, local_protector, options, clock: FakeClock
    ):
        manager = KeyManager(flaky_repository, local_protector, options, clock=clock)
        await manager.get_current_key()
        flaky_repository.load_failures = 100
        clock.advance(100 * DAY)
        with pytest.raises(StorageError):
            await manager.get_current_key()

    async def test_transient_failures_are_retried(
        self, flaky_repository: FlakyRepository, local_protector, clock
    ):
        options = KeyManagementOptions(io_retries=2, retry_backoff=0)
        manager = KeyManager(flaky_repository, local_protector, options, clock=clock)
        flaky_repository.load_failures = 2
        flaky_repository.save_failures = 2

        key = await manager.get_current_key()
        assert key.is_usable
        assert len(await flaky_repository.load_all()) == 1

    async def test_persist_failure_is_fatal_without_default(
        self, flaky_repository: FlakyRepository, local_protector, options, clock
    ):
        manager = KeyManager(flaky_repository, local_protector, options, clock=clock)
        flaky_repository.save_failures = 100
        with pytest.raises(KeyGenerationError, match="Failed to persist"):
            await manager.get_current_key()
        assert await flaky_repository.load_all() == []

    async def test_persist_failure_keeps_valid_default(
        self,
        flaky_repository: FlakyRepository,
        local_protector,
        options,
        clock: FakeClock,
        caplog,
    ):
        manager = KeyManager(flaky_repository, local_protector, options, clock=clock)
        key = await manager.get_current_key()

        flaky_repository.save_failures = 100
        clock.advance(89 * DAY)
        with caplog.at_level(logging.ERROR, logger="data_protection"):
            assert (await manager.get_current_key()).key_id == key.key_id
        assert "Could not generate successor" in caplog.text

        flaky_repository.save_failures = 0
        clock.advance(timedelta(minutes=2))
        await manager.get_ring()
        assert len(await flaky_repository.load_all()) == 2

    async def test_unwrappable_record_is_skipped(self, manager: KeyManager, memory_repository):
        foreign = LocalSecretKeyProtector("someone-else").wrap(b"\x00" * 64)
        record = KeyRecord(
            key_id=uuid4(),
            creation_time=T0,
            activation_time=T0 - DAY,
            expiration_time=T0 + 30 * DAY,
            algorithm=AlgorithmConfiguration(),
            protector="local-secret",
            wrapped_key=foreign.blob,
            protector_info=foreign.info,
        )
        await memory_repository.save(record)

        default = await manager.get_current_key()
        assert default.key_id != record.key_id

        unusable = await manager.get_key(record.key_id)
        assert not unusable.is_usable
        assert "different local secret" in unusable.unwrap_error

    async def test_unknown_protector_is_skipped(self, manager: KeyManager, memory_repository):
        record = KeyRecord(
            key_id=uuid4(),
            creation_time=T0,
            activation_time=T0,
            expiration_time=T0 + 30 * DAY,
            algorithm=AlgorithmConfiguration(),
            protector="hsm",
            wrapped_key=b"opaque",
        )
        await memory_repository.save(record)

        keys = {k.key_id: k for k in await manager.list_keys()}
        assert "No key protector named 'hsm'" in keys[record.key_id].unwrap_error
        assert len(keys) == 2

    async def test_inverted_window_record_is_skipped(
        self, manager: KeyManager, memory_repository, caplog
    ):
        good = await manager.get_current_key()
        stored = await memory_repository.get(good.key_id)
        inverted = replace(
            stored,
            key_id=uuid4(),
            activation_time=stored.expiration_time,
            expiration_time=stored.activation_time,
        )
        await memory_repository.save(inverted)

        ring = await manager.refresh_ring()
        assert ring.default_key.key_id == good.key_id
        assert ring.get(inverted.key_id) is None
        assert "Skipping invalid key record" in caplog.text
        with pytest.raises(KeyNotFoundError):
            await manager.get_key(inverted.key_id)


class TestRevocation:
    async def test_revoke_default_generates_replacement(
        self, manager: KeyManager, memory_repository
    ):
        key = await manager.get_current_key()
        await manager.revoke_key(key.key_id, "compromised")

        revoked = await manager.get_key(key.key_id)
        assert revoked.revoked
        assert revoked.revocation_reason == "compromised"
        assert (await manager.get_current_key()).key_id != key.key_id

        stored = await memory_repository.get(key.key_id)
        assert stored.revoked

    async def test_revoke_unknown_key(self, manager: KeyManager):
        with pytest.raises(KeyNotFoundError):
            await manager.revoke_key(uuid4())

    async def test_revoke_all(self, manager: KeyManager, clock: FakeClock):
        first = await manager.get_current_key()
        second = await manager.create_key(activation_time=T0 + DAY)
        clock.advance(DAY)

        assert await manager.revoke_all_keys(reason="rotation drill") == 2
        keys = {k.key_id: k for k in await manager.list_keys()}
        assert keys[first.key_id].revoked and keys[second.key_id].revoked

        replacement = await manager.get_current_key()
        assert replacement.key_id not in (first.key_id, second.key_id)
        assert not replacement.revoked

    async def test_revoke_all_respects_cutoff(self, manager: KeyManager, clock: FakeClock):
        old = await manager.get_current_key()
        clock.advance(DAY)
        newer = await manager.create_key()

        assert await manager.revoke_all_keys(revocation_date=T0) == 1
        keys = {k.key_id: k for k in await manager.list_keys()}
        assert keys[old.key_id].revoked
        assert not keys[newer.key_id].revoked
        assert (await manager.get_current_key()).key_id == newer.key_id

    async def test_list_keys_oldest_first(self, manager: KeyManager, clock: FakeClock):
        first = await manager.get_current_key()
        clock.advance(DAY)
        second = await manager.create_key()
        assert [k.key_id for k in await manager.list_keys()] == [first.key_id, second.key_id]


async def test_manager_with_default_clock():
    manager = KeyManager(InMemoryKeyRepository(), LocalSecretKeyProtector("real-clock"))
    key = await manager.get_current_key()
    assert key.is_activated(manager.now())
    assert not key.is_expired(manager.now())
