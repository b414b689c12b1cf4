"""
Fingerprint Store tests: persistence, uniqueness and encryption at rest
"""

import dataclasses

import pytest

from context_auth.db.fingerprints import DuplicateRecordError, FingerprintStore, FingerprintStoreError
from context_auth.utils.crypto import DecryptionError, FieldCipher

FINGERPRINT_COLUMNS = ("ip", "country", "city", "browser", "platform", "os", "device", "device_type")


class TestEncryptionAtRest:

    async def test_pending_record_holds_ciphertext_only(self, store, paris_fp):
        record = await store.create_pending("user-1", "u1@example.com", paris_fp)
        row = await store.fetchone("SELECT * FROM pending_logins WHERE id=?", (record.id,))

        for column in FINGERPRINT_COLUMNS:
            assert row[column].startswith("v1:")
        stored = " ".join(str(row[c]) for c in row.keys())
        for plaintext in ("9.9.9.9", "Paris", "Chrome 120", "Win32", "Desktop"):
            assert plaintext not in stored
        assert row["is_trusted"] == 0
        assert row["is_blocked"] == 0
        assert row["unverified_attempts"] == 0

    async def test_canonical_context_holds_ciphertext_only(self, store, canonical_fp):
        await store.create_canonical_context("user-1", None, canonical_fp)
        row = await store.fetchone("SELECT * FROM canonical_contexts WHERE user_id=?", ("user-1",))
        for column in FINGERPRINT_COLUMNS:
            assert row[column].startswith("v1:")
        assert "NYC" not in row["city"]

    async def test_reads_return_plaintext(self, store, paris_fp):
        created = await store.create_pending("user-1", None, paris_fp)
        assert (await store.get_pending(created.id)).fingerprint == paris_fp

    async def test_wrong_key_cannot_read(self, store, db_path, canonical_fp):
        await store.create_canonical_context("user-1", None, canonical_fp)
        other = FingerprintStore(db_path, FieldCipher({"v1": bytes(32)}, "v1"))
        try:
            with pytest.raises(DecryptionError):
                await other.get_canonical_context("user-1")
        finally:
            await other.close()

    async def test_reopen_with_same_key(self, store, db_path, cipher, canonical_fp):
        await store.create_canonical_context("user-1", None, canonical_fp)
        await store.close()
        reopened = FingerprintStore(db_path, cipher)
        try:
            assert (await reopened.get_canonical_context("user-1")).fingerprint == canonical_fp
        finally:
            await reopened.close()


class TestCanonicalContexts:

    async def test_missing(self, store):
        assert await store.get_canonical_context("nobody") is None

    async def test_one_per_user(self, store, canonical_fp, paris_fp):
        await store.create_canonical_context("user-1", None, canonical_fp)
        with pytest.raises(DuplicateRecordError):
            await store.create_canonical_context("user-1", None, paris_fp)
        assert (await store.get_canonical_context("user-1")).fingerprint == canonical_fp

    async def test_replace_keeps_first_recorded_at(self, store, canonical_fp, paris_fp):
        created = await store.create_canonical_context("user-1", "u1@example.com", canonical_fp)
        await store.exec("UPDATE canonical_contexts SET created_at=1000, updated_at=1000 WHERE user_id=?",
                         ("user-1",))

        replaced = await store.replace_canonical_context("user-1", paris_fp)

        assert replaced.id == created.id
        assert replaced.fingerprint == paris_fp
        assert replaced.first_recorded_at == 1000
        assert replaced.updated_at > 1000
        assert replaced.email == "u1@example.com"

    async def test_replace_creates_when_missing(self, store, paris_fp):
        replaced = await store.replace_canonical_context("user-9", paris_fp, "u9@example.com")
        assert replaced.fingerprint == paris_fp


class TestPendingRecords:

    async def test_duplicate_fingerprint_rejected(self, store, paris_fp):
        await store.create_pending("user-1", None, paris_fp)
        with pytest.raises(DuplicateRecordError):
            await store.create_pending("user-1", None, paris_fp)

    async def test_duplicate_is_store_error(self):
        assert issubclass(DuplicateRecordError, FingerprintStoreError)

    async def test_same_fingerprint_different_users(self, store, paris_fp):
        a = await store.create_pending("user-1", None, paris_fp)
        b = await store.create_pending("user-2", None, paris_fp)
        assert a.id != b.id

    async def test_get_or_create(self, store, paris_fp):
        first, created = await store.get_or_create_pending("user-1", None, paris_fp)
        again, created_again = await store.get_or_create_pending("user-1", None, paris_fp)
        assert created is True
        assert created_again is False
        assert again.id == first.id

    async def test_find_requires_exact_tuple(self, store, paris_fp):
        await store.create_pending("user-1", None, paris_fp)
        assert await store.find_pending("user-1", paris_fp) is not None
        assert await store.find_pending("user-1", dataclasses.replace(paris_fp, city="Lyon")) is None
        assert await store.find_pending("user-2", paris_fp) is None

    async def test_attempt_counter_and_threshold(self, store, paris_fp):
        record = await store.create_pending("user-1", None, paris_fp)
        one = await store.record_unverified_attempt(record.id, 2)
        assert (one.unverified_attempts, one.is_blocked) == (1, False)
        two = await store.record_unverified_attempt(record.id, 2)
        assert (two.unverified_attempts, two.is_blocked) == (2, True)
        assert await store.record_unverified_attempt(record.id, 2) is None
        assert (await store.get_pending(record.id)).unverified_attempts == 2

    async def test_attempt_on_trusted_record_is_ignored(self, store, paris_fp):
        record = await store.create_pending("user-1", None, paris_fp)
        await store.set_pending_flags(record.id, is_trusted=True, is_blocked=False)
        assert await store.record_unverified_attempt(record.id, 3) is None

    async def test_flags_are_exclusive(self, store, paris_fp):
        record = await store.create_pending("user-1", None, paris_fp)
        with pytest.raises(ValueError):
            await store.set_pending_flags(record.id, is_trusted=True, is_blocked=True)
        with pytest.raises(FingerprintStoreError):
            await store.exec("UPDATE pending_logins SET is_trusted=1, is_blocked=1 WHERE id=?", (record.id,))

    async def test_set_flags_unknown_record(self, store):
        assert await store.set_pending_flags(404, is_trusted=True, is_blocked=False) is None

    async def test_list_filters(self, store, paris_fp):
        trusted = await store.create_pending("user-1", None, paris_fp)
        blocked = await store.create_pending("user-1", None, dataclasses.replace(paris_fp, city="Lyon"))
        waiting = await store.create_pending("user-1", None, dataclasses.replace(paris_fp, city="Nice"))
        await store.set_pending_flags(trusted.id, is_trusted=True, is_blocked=False)
        await store.set_pending_flags(blocked.id, is_trusted=False, is_blocked=True)

        assert [r.id for r in await store.list_pending("user-1", is_trusted=True, is_blocked=False)] == [trusted.id]
        assert [r.id for r in await store.list_pending("user-1", is_trusted=False, is_blocked=True)] == [blocked.id]
        assert {r.id for r in await store.list_pending("user-1")} == {trusted.id, blocked.id, waiting.id}
        assert await store.list_pending("user-2") == []

    async def test_delete(self, store, paris_fp):
        record = await store.create_pending("user-1", None, paris_fp)
        assert await store.delete_pending(record.id) is True
        assert await store.delete_pending(record.id) is False
        assert await store.get_pending(record.id) is None


class TestSecurityLogs:

    async def test_context_encrypted(self, store, paris_fp):
        await store.append_security_log("Device blocked", "sign in", "warn", user_id="user-1",
                                        context=paris_fp.to_public_dict())
        row = await store.fetchone("SELECT context FROM security_logs")
        assert row["context"].startswith("v1:")
        assert "Paris" not in row["context"]

        [entry] = await store.list_security_logs("user-1")
        assert entry.context["city"] == "Paris"
        assert entry.message == "Device blocked"
        assert entry.level == "warn"

    async def test_entry_without_context(self, store):
        await store.append_security_log("Sign-in error", "sign in", "error", user_id="user-1")
        [entry] = await store.list_security_logs("user-1")
        assert entry.context is None

    async def test_purge(self, store):
        await store.append_security_log("old", "sign in", "info", user_id="user-1")
        await store.append_security_log("new", "sign in", "info", user_id="user-1")
        await store.exec("UPDATE security_logs SET created_at=created_at-700000 WHERE message='old'")

        assert await store.purge_security_logs(604800) == 1
        assert [e.message for e in await store.list_security_logs("user-1")] == ["new"]
