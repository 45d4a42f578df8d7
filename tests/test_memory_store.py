"""Tests for the in-memory store and keyed locks."""
import threading
from datetime import timedelta

import pytest
from cryptography.fernet import InvalidToken

from bastion.storage.errors import ConstraintViolation
from bastion.storage.locks import KeyedLocks
from bastion.storage.memory import MemoryStore
from bastion.storage.models import PendingTwoFactorChallenge, SessionRecord, VerificationToken


class TestIdentities:
    def test_create_and_lookup(self, store):
        identity = store.create_identity("a@example.com", "A", "B")

        assert store.get_identity(identity.id) == identity
        assert store.get_identity_by_email("a@example.com") == identity
        assert store.get_identity_by_email("A@example.com") is None

    def test_duplicate_email_violates_constraint(self, store):
        store.create_identity("a@example.com", "A", "B")
        with pytest.raises(ConstraintViolation):
            store.create_identity("a@example.com", "C", "D")

    def test_update_rejects_unknown_fields(self, store):
        identity = store.create_identity("a@example.com", "A", "B")
        with pytest.raises(ValueError):
            store.update_identity(identity.id, email="b@example.com")

    def test_phone_index_follows_updates(self, store):
        first = store.create_identity("a@example.com", "A", "B")
        second = store.create_identity("b@example.com", "C", "D")
        store.update_identity(first.id, phone_number="+14155550100")

        with pytest.raises(ConstraintViolation):
            store.update_identity(second.id, phone_number="+14155550100")

        store.update_identity(first.id, phone_number=None)
        store.update_identity(second.id, phone_number="+14155550100")
        assert store.get_identity_by_phone("+14155550100").id == second.id

    def test_password_requires_identity(self, store):
        with pytest.raises(ConstraintViolation):
            store.save_password("missing", "hash")

    def test_concurrent_registration_admits_one(self, store):
        errors = []

        def register():
            try:
                store.create_identity("race@example.com", "A", "B")
            except ConstraintViolation as exc:
                errors.append(exc)

        threads = [threading.Thread(target=register) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(errors) == 7
        assert store.get_identity_by_email("race@example.com") is not None


class TestSessionsAndTokens:
    def test_session_token_index(self, store, clock):
        identity = store.create_identity("a@example.com", "A", "B")
        record = SessionRecord(
            id="s1",
            identity_id=identity.id,
            token="tok",
            created_at=clock.now(),
            last_active_at=clock.now(),
        )
        store.add_session(record)

        assert store.get_session_by_token("tok") == record
        assert store.delete_session("s1") is True
        assert store.get_session_by_token("tok") is None
        assert store.delete_session("s1") is False

    def test_session_for_unknown_identity(self, store, clock):
        record = SessionRecord(
            id="s1",
            identity_id="missing",
            token="tok",
            created_at=clock.now(),
            last_active_at=clock.now(),
        )
        with pytest.raises(ConstraintViolation):
            store.add_session(record)

    def test_find_token_by_value(self, store, clock):
        token = VerificationToken("id-1", "password_reset", "value-1", clock.now())
        store.put_token(token)

        assert store.find_token("password_reset", "value-1") == token
        assert store.find_token("email_verification", "value-1") is None
        assert store.find_token("password_reset", "value-2") is None


class TestTwoFactorSecrets:
    def test_secret_round_trips_through_cipher(self, store):
        identity = store.create_identity("a@example.com", "A", "B")
        store.set_two_factor_secret(identity.id, "JBSWY3DPEHPK3PXP", enabled=True)

        assert store.two_factor_secrets[identity.id].secret != "JBSWY3DPEHPK3PXP"
        record = store.get_two_factor_secret(identity.id)
        assert record.secret == "JBSWY3DPEHPK3PXP"
        assert record.enabled is True

    def test_configured_key_is_stable_across_stores(self, clock):
        writer = MemoryStore(clock=clock, encryption_key="shared-key-material")
        identity = writer.create_identity("a@example.com", "A", "B")
        writer.set_two_factor_secret(identity.id, "JBSWY3DPEHPK3PXP")

        reader = MemoryStore(clock=clock, encryption_key="shared-key-material")
        reader.identities = writer.identities
        reader.two_factor_secrets = writer.two_factor_secrets
        assert reader.get_two_factor_secret(identity.id).secret == "JBSWY3DPEHPK3PXP"

    def test_wrong_key_fails_loudly(self, clock):
        writer = MemoryStore(clock=clock, encryption_key="key-one")
        identity = writer.create_identity("a@example.com", "A", "B")
        writer.set_two_factor_secret(identity.id, "JBSWY3DPEHPK3PXP")

        reader = MemoryStore(clock=clock, encryption_key="key-two")
        reader.two_factor_secrets = writer.two_factor_secrets
        with pytest.raises(InvalidToken):
            reader.get_two_factor_secret(identity.id)


class TestChallenges:
    def _challenge(self, token, identity_id, expires_at):
        return PendingTwoFactorChallenge(token=token, identity_id=identity_id, expires_at=expires_at)

    def test_delete_only_expired_for_identity(self, store, clock):
        now = clock.now()
        store.put_challenge(self._challenge("old", "id-1", now - timedelta(minutes=1)))
        store.put_challenge(self._challenge("live", "id-1", now + timedelta(minutes=5)))
        store.put_challenge(self._challenge("other", "id-2", now - timedelta(minutes=1)))

        assert store.delete_identity_challenges("id-1", expired_before=now) == 1
        assert set(store.challenges) == {"live", "other"}

    def test_delete_all_for_identity(self, store, clock):
        store.put_challenge(self._challenge("a", "id-1", clock.now()))
        store.put_challenge(self._challenge("b", "id-1", clock.now()))

        assert store.delete_identity_challenges("id-1") == 2
        assert store.challenges == {}


class TestKeyedLocks:
    def test_entries_released_after_hold(self):
        locks = KeyedLocks()
        with locks.hold("a"):
            with locks.hold("a"):
                assert len(locks) == 1
            with locks.hold("b"):
                assert len(locks) == 2
        assert len(locks) == 0

    def test_entry_released_when_body_raises(self):
        locks = KeyedLocks()
        with pytest.raises(RuntimeError):
            with locks.hold("a"):
                raise RuntimeError("boom")
        assert len(locks) == 0

    def test_waiters_share_one_entry(self):
        locks = KeyedLocks()
        entered = threading.Event()
        release = threading.Event()
        order = []

        def holder():
            with locks.hold("k"):
                entered.set()
                release.wait(timeout=5)
                order.append("first")

        def waiter():
            entered.wait(timeout=5)
            with locks.hold("k"):
                order.append("second")

        threads = [threading.Thread(target=holder), threading.Thread(target=waiter)]
        for t in threads:
            t.start()
        entered.wait(timeout=5)
        release.set()
        for t in threads:
            t.join()

        assert order == ["first", "second"]
        assert len(locks) == 0
