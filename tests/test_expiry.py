"""
Tests for the expiry policy.
"""
from datetime import timedelta

from ephemera.core.expiry import NOT_EXPIRING, is_reachable, remaining


class TestRemaining:
    """Tests for remaining()."""

    def test_non_ephemeral_never_expires(self, make_message, clock):
        message = make_message(is_ephemeral=False, expires_at=clock.now() - timedelta(hours=1))
        assert remaining(message, clock.now()) == NOT_EXPIRING

    def test_ephemeral_counts_down_in_whole_seconds(self, make_message, clock):
        message = make_message(is_ephemeral=True, expires_at=clock.now() + timedelta(seconds=60))

        status = remaining(message, clock.now())
        assert status.seconds_left == 60
        assert status.is_expired is False

        status = remaining(message, clock.now() + timedelta(seconds=0.4))
        assert status.seconds_left == 59

    def test_expired_at_zero(self, make_message, clock):
        message = make_message(is_ephemeral=True, expires_at=clock.now() + timedelta(seconds=10))

        status = remaining(message, clock.now() + timedelta(seconds=10))
        assert status.seconds_left == 0
        assert status.is_expired is True

    def test_never_negative(self, make_message, clock):
        message = make_message(is_ephemeral=True, expires_at=clock.now() - timedelta(minutes=5))
        assert remaining(message, clock.now()).seconds_left == 0

    def test_monotonically_non_increasing(self, make_message, clock):
        """Later instants never report more time left."""
        message = make_message(is_ephemeral=True, expires_at=clock.now() + timedelta(seconds=30))
        previous = None
        for tenths in range(0, 400, 7):
            status = remaining(message, clock.now() + timedelta(seconds=tenths / 10))
            if previous is not None:
                assert status.seconds_left <= previous.seconds_left
                if previous.is_expired:
                    assert status.is_expired
            previous = status

    def test_ephemeral_without_expiry_is_treated_as_non_expiring(self, make_message, clock):
        """A malformed record does not crash the countdown."""
        message = make_message(is_ephemeral=True, expires_at=None)
        assert remaining(message, clock.now()) == NOT_EXPIRING


class TestIsReachable:
    """Tests for is_reachable()."""

    def test_plain_message_is_always_reachable(self, make_message, clock):
        message = make_message(viewed_at=clock.now())
        assert is_reachable(message, clock.now())

    def test_live_ephemeral_is_reachable(self, make_message, clock):
        message = make_message(is_ephemeral=True, expires_at=clock.now() + timedelta(seconds=5))
        assert is_reachable(message, clock.now())

    def test_expired_ephemeral_is_unreachable(self, make_message, clock):
        message = make_message(is_ephemeral=True, expires_at=clock.now() + timedelta(seconds=5))
        assert not is_reachable(message, clock.now() + timedelta(seconds=5))

    def test_viewed_ephemeral_is_unreachable(self, make_message, clock):
        message = make_message(
            is_ephemeral=True,
            expires_at=clock.now() + timedelta(seconds=60),
            viewed_at=clock.now(),
        )
        assert not is_reachable(message, clock.now())
