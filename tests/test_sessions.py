"""Tests for session lifecycle, timeouts and termination."""
import pytest

from bastion.service.errors import AuthenticationError, NotFoundError, ValidationError
from bastion.service.sessions import SessionManager

ALICE_EMAIL = "alice@example.com"
ALICE_PASSWORD = "Password123!"


@pytest.fixture
def bob(auth):
    identity, code = auth.register("Bob", "Roe", "bob@example.com", ALICE_PASSWORD)
    return auth.verify_email(identity.id, code)


class TestTimeout:
    """Validity is anchored on activity or creation."""

    def test_session_expires_after_timeout(self, auth, alice, clock):
        session = auth.sessions.create(alice)

        clock.advance(minutes=29)
        assert auth.sessions.is_valid(session.id) is True

        clock.advance(minutes=1)
        assert auth.sessions.is_valid(session.id) is False

    def test_touch_extends_when_enabled(self, auth, alice, clock):
        session = auth.sessions.create(alice)
        clock.advance(minutes=20)
        auth.sessions.touch(session.id)

        clock.advance(minutes=20)
        assert auth.sessions.is_valid(session.id) is True

    def test_touch_does_not_extend_when_disabled(self, auth, alice, clock):
        auth.sessions.configure_timeout(alice.id, 30, extend_on_activity=False)
        identity = auth.store.get_identity(alice.id)
        session = auth.sessions.create(identity)
        clock.advance(minutes=20)
        touched = auth.sessions.touch(session.id)

        assert touched.last_active_at == clock.now()
        clock.advance(minutes=10)
        assert auth.sessions.is_valid(session.id) is False

    def test_expired_session_is_pruned(self, auth, alice, clock):
        session = auth.sessions.create(alice)
        clock.advance(minutes=31)

        assert auth.sessions.is_valid(session.id) is False
        assert auth.store.get_session(session.id) is None

    def test_touch_expired_raises_not_found(self, auth, alice, clock):
        session = auth.sessions.create(alice)
        clock.advance(hours=1)

        with pytest.raises(NotFoundError):
            auth.sessions.touch(session.id)


class TestConfigureTimeout:
    @pytest.mark.parametrize("minutes", [4, 1441, 0, -5])
    def test_out_of_range_rejected(self, auth, alice, minutes):
        with pytest.raises(ValidationError):
            auth.sessions.configure_timeout(alice.id, minutes)

    @pytest.mark.parametrize("minutes", [5, 1440])
    def test_bounds_accepted(self, auth, alice, minutes):
        identity = auth.sessions.configure_timeout(alice.id, minutes)
        assert identity.session_timeout_minutes == minutes

    def test_propagates_to_existing_sessions(self, auth, alice, clock):
        session = auth.sessions.create(alice)
        auth.sessions.configure_timeout(alice.id, 120)

        clock.advance(minutes=90)
        assert auth.sessions.is_valid(session.id) is True

    def test_applies_to_future_sessions(self, auth, alice):
        auth.sessions.configure_timeout(alice.id, 60, extend_on_activity=False)

        result = auth.login(ALICE_EMAIL, ALICE_PASSWORD)
        record = auth.store.get_session(result.session_id)
        assert record.timeout_minutes == 60
        assert record.extend_on_activity is False

    def test_unknown_identity(self, auth):
        with pytest.raises(NotFoundError):
            auth.sessions.configure_timeout("missing", 30)


class TestTermination:
    def test_terminate_requires_ownership(self, auth, alice, bob):
        session = auth.sessions.create(alice)

        with pytest.raises(NotFoundError):
            auth.sessions.terminate(bob.id, session.id)
        assert auth.sessions.is_valid(session.id) is True

        auth.sessions.terminate(alice.id, session.id)
        assert auth.sessions.is_valid(session.id) is False

    def test_terminate_unknown_session(self, auth, alice):
        with pytest.raises(NotFoundError):
            auth.sessions.terminate(alice.id, "missing")

    def test_password_change_terminates_only_own_sessions(self, auth, alice, bob):
        auth.sessions.create(alice)
        auth.sessions.create(alice)
        other = auth.sessions.create(bob)

        terminated = auth.change_password(alice.id, ALICE_PASSWORD, "NewPassword456!")

        assert terminated == 2
        assert auth.sessions.list_active(alice.id) == []
        assert auth.sessions.is_valid(other.id) is True

    def test_deactivation_terminates_sessions(self, auth, alice):
        auth.sessions.create(alice)
        auth.set_active(alice.id, False)
        assert auth.sessions.list_active(alice.id) == []

    def test_terminate_all_unknown_identity(self, auth):
        with pytest.raises(NotFoundError):
            auth.sessions.terminate_all("missing")

    def test_terminate_all_returns_count(self, auth, alice):
        auth.sessions.create(alice)
        auth.sessions.create(alice)
        assert auth.sessions.terminate_all(alice.id) == 2
        assert auth.sessions.terminate_all(alice.id) == 0


class TestListAndAuthenticate:
    def test_list_active_newest_activity_first(self, auth, alice, clock):
        first = auth.sessions.create(alice)
        clock.advance(minutes=1)
        second = auth.sessions.create(alice)
        clock.advance(minutes=1)
        auth.sessions.touch(first.id)

        assert [s.id for s in auth.sessions.list_active(alice.id)] == [first.id, second.id]

    def test_authenticate_resolves_token(self, auth, alice, clock):
        session = auth.sessions.create(alice)
        clock.advance(minutes=5)

        record = auth.sessions.authenticate(session.token)

        assert record.id == session.id
        assert record.last_active_at == clock.now()

    def test_authenticate_rejects_unknown_token(self, auth):
        with pytest.raises(AuthenticationError):
            auth.sessions.authenticate("nope")


class TestConcurrentCap:
    def test_oldest_session_evicted(self, store, settings, clock, auth, alice):
        manager = SessionManager(store, clock=clock, max_concurrent_sessions=2)
        first = manager.create(alice)
        clock.advance(seconds=1)
        second = manager.create(alice)
        clock.advance(seconds=1)
        third = manager.create(alice)

        assert manager.is_valid(first.id) is False
        assert manager.is_valid(second.id) is True
        assert manager.is_valid(third.id) is True

    def test_unlimited_by_default(self, auth, alice):
        for _ in range(5):
            auth.sessions.create(alice)
        assert len(auth.sessions.list_active(alice.id)) == 5
