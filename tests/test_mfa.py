"""Unit tests for the MFA engine.

Tests cover:
- RFC 6238 code generation and drift tolerance
- Enrolment state machine (disabled -> pending -> enabled -> disabled)
- Challenge tokens: expiry, purpose binding, single use
- Backup codes: single use, normalization, low-count warning
- Failed attempt lockout
"""

import asyncio

import pytest

from dormauth.service.errors import (
    AuthenticationError,
    ExpiredTokenError,
    LockoutError,
    ValidationError,
)
from dormauth.service.mfa import generate_totp
from dormauth.storage.models import MFADisabled, MFAEnabled, MFAPendingSetup

from conftest import STRONG_PASSWORD

# RFC 6238 appendix B secret ("12345678901234567890") in base32
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


def _enable(runtime, user, clock):
    info = runtime.mfa.begin_setup(user)
    codes = runtime.mfa.complete_setup(user, runtime.mfa.totp_at(info.secret, clock.now))
    return info.secret, codes


def _wrong_code(runtime, secret):
    """A well-formed code that no step inside the drift window produces."""
    for candidate in ("000000", "111111", "222222", "333333"):
        if not runtime.mfa.verify_totp(secret, candidate):
            return candidate
    raise AssertionError("no rejected candidate code")


class _YieldingCache:
    """Async cache double that yields to the loop on every call."""

    def __init__(self):
        self.claimed = set()
        self.attempts = {}

    async def check_mfa_lockout(self, user_id):
        await asyncio.sleep(0)
        return 0

    async def atomic_mfa_attempt(self, user_id, max_attempts=5, lockout_seconds=300):
        await asyncio.sleep(0)
        self.attempts[user_id] = self.attempts.get(user_id, 0) + 1
        return self.attempts[user_id] >= max_attempts, self.attempts[user_id]

    async def clear_mfa_attempts(self, user_id):
        await asyncio.sleep(0)
        self.attempts.pop(user_id, None)

    async def consume_once(self, key, ttl_seconds):
        await asyncio.sleep(0)
        if key in self.claimed:
            return False
        self.claimed.add(key)
        return True

    async def release_once(self, key):
        await asyncio.sleep(0)
        self.claimed.discard(key)


class TestTOTP:
    """Tests for time-based codes."""

    @pytest.mark.parametrize(
        "timestamp,expected",
        [(59, "287082"), (1111111109, "081804"), (1234567890, "005924"), (2000000000, "279037")],
    )
    def test_rfc6238_vectors(self, timestamp, expected):
        assert generate_totp(RFC_SECRET, timestamp) == expected

    def test_invalid_secret_yields_no_code(self):
        assert generate_totp("not base32!", 59) == ""

    def test_adjacent_step_accepted(self, runtime, clock):
        secret = runtime.mfa.new_secret()
        previous = generate_totp(secret, clock.now.timestamp() - 30)
        following = generate_totp(secret, clock.now.timestamp() + 30)
        assert runtime.mfa.verify_totp(secret, previous)
        assert runtime.mfa.verify_totp(secret, following)

    def test_two_steps_away_rejected(self, runtime, clock):
        secret = runtime.mfa.new_secret()
        stale = generate_totp(secret, clock.now.timestamp() - 90)
        current = runtime.mfa.totp_at(secret, clock.now)
        if stale != current:
            assert not runtime.mfa.verify_totp(secret, stale)

    @pytest.mark.parametrize("code", ["", "12345", "1234567", "abcdef"])
    def test_malformed_codes_rejected(self, runtime, code):
        assert not runtime.mfa.verify_totp(runtime.mfa.new_secret(), code)

    def test_provisioning_uri(self, runtime):
        uri = runtime.mfa.provisioning_uri("ABCDEF", "asha@example.com")
        assert uri.startswith("otpauth://totp/DormAxis:asha@example.com?")
        assert "secret=ABCDEF" in uri
        assert "issuer=DormAxis" in uri
        assert "period=30" in uri


class TestEnrolment:
    """Tests for the enrolment state machine."""

    def test_begin_setup_moves_to_pending(self, runtime, make_user):
        user = make_user()
        info = runtime.mfa.begin_setup(user)
        assert isinstance(runtime.mfa.state(user.id), MFAPendingSetup)
        assert info.qr_code.startswith("data:image/svg+xml;base64,")
        assert info.secret in info.provisioning_uri

    def test_secret_encrypted_at_rest(self, runtime, make_user):
        user = make_user()
        info = runtime.mfa.begin_setup(user)
        raw = runtime.store.mfa_states[user.id]
        assert raw.secret != info.secret
        assert runtime.mfa.state(user.id).secret == info.secret

    def test_complete_setup_returns_backup_codes(self, runtime, make_user, clock):
        user = make_user()
        _secret, codes = _enable(runtime, user, clock)
        assert len(codes) == 10
        assert len(set(codes)) == 10
        state = runtime.mfa.state(user.id)
        assert isinstance(state, MFAEnabled)
        assert state.remaining_backup_codes == 10
        assert runtime.mfa.status(user) == {
            "mfa_enabled": True,
            "state": "enabled",
            "mfa_method": "totp",
            "backup_codes_remaining": 10,
        }

    def test_complete_setup_wrong_code(self, runtime, make_user):
        user = make_user()
        info = runtime.mfa.begin_setup(user)
        with pytest.raises(ValidationError) as exc:
            runtime.mfa.complete_setup(user, _wrong_code(runtime, info.secret))
        assert exc.value.message == "Invalid verification code"
        assert isinstance(runtime.mfa.state(user.id), MFAPendingSetup)

    def test_complete_without_setup(self, runtime, make_user):
        user = make_user()
        with pytest.raises(ValidationError) as exc:
            runtime.mfa.complete_setup(user, "123456")
        assert exc.value.message == "MFA setup not initiated. Please start setup first."

    def test_setup_twice_when_enabled(self, runtime, make_user, clock):
        user = make_user()
        _enable(runtime, user, clock)
        with pytest.raises(ValidationError):
            runtime.mfa.begin_setup(user)

    def test_restarting_setup_replaces_secret(self, runtime, make_user):
        user = make_user()
        first = runtime.mfa.begin_setup(user)
        second = runtime.mfa.begin_setup(user)
        assert runtime.mfa.state(user.id).secret == second.secret != first.secret

    def test_disable_requires_password(self, runtime, make_user, clock):
        user = make_user()
        _enable(runtime, user, clock)
        with pytest.raises(AuthenticationError) as exc:
            runtime.mfa.disable(user, "wrong-password")
        assert exc.value.message == "Invalid password"
        assert runtime.mfa.is_enabled(user.id)
        runtime.mfa.disable(user, STRONG_PASSWORD)
        assert isinstance(runtime.mfa.state(user.id), MFADisabled)

    def test_disable_when_not_enabled(self, runtime, make_user):
        user = make_user()
        with pytest.raises(ValidationError) as exc:
            runtime.mfa.disable(user, STRONG_PASSWORD)
        assert exc.value.message == "MFA is not enabled"

    def test_regenerate_invalidates_old_codes(self, runtime, make_user, clock):
        user = make_user()
        _secret, old_codes = _enable(runtime, user, clock)
        new_codes = runtime.mfa.regenerate_backup_codes(user, STRONG_PASSWORD)
        assert set(new_codes).isdisjoint(old_codes)
        assert runtime.store.consume_backup_code(
            user.id, runtime.mfa._hash_backup_code(old_codes[0]), now=clock.now
        ) is None


class TestChallenge:
    """Tests for the login challenge."""

    async def test_challenge_opens_session(self, runtime, make_user, clock):
        user = make_user()
        secret, _codes = _enable(runtime, user, clock)
        token = runtime.mfa.issue_challenge(user)
        result = await runtime.mfa.challenge(token, runtime.mfa.totp_at(secret, clock.now))
        assert result.user.id == user.id
        assert runtime.sessions.validate(result.grant.token).user_id == user.id

    async def test_challenge_single_use(self, runtime, make_user, clock):
        user = make_user()
        secret, _codes = _enable(runtime, user, clock)
        token = runtime.mfa.issue_challenge(user)
        code = runtime.mfa.totp_at(secret, clock.now)
        await runtime.mfa.challenge(token, code)
        with pytest.raises(AuthenticationError) as exc:
            await runtime.mfa.challenge(token, code)
        assert exc.value.message == "Invalid or expired temporary token"

    async def test_wrong_code_keeps_challenge_usable(self, runtime, make_user, clock):
        user = make_user()
        secret, _codes = _enable(runtime, user, clock)
        token = runtime.mfa.issue_challenge(user)
        good = runtime.mfa.totp_at(secret, clock.now)
        with pytest.raises(AuthenticationError) as exc:
            await runtime.mfa.challenge(token, _wrong_code(runtime, secret))
        assert exc.value.message == "Invalid MFA code"
        assert await runtime.mfa.challenge(token, good)

    async def test_challenge_expires_after_five_minutes(self, runtime, make_user, clock):
        user = make_user()
        secret, _codes = _enable(runtime, user, clock)
        token = runtime.mfa.issue_challenge(user)
        clock.advance(minutes=5)
        with pytest.raises(ExpiredTokenError):
            await runtime.mfa.challenge(token, runtime.mfa.totp_at(secret, clock.now))

    async def test_session_token_is_not_a_challenge(self, runtime, make_user, clock):
        user = make_user()
        secret, _codes = _enable(runtime, user, clock)
        forged = runtime.codec.encode(
            {"sub": user.id, "purpose": "something_else", "jti": "x", "exp": clock.now.timestamp() + 60}
        )
        with pytest.raises(AuthenticationError):
            await runtime.mfa.challenge(forged, runtime.mfa.totp_at(secret, clock.now))

    async def test_lockout_after_five_failures(self, runtime, make_user, clock):
        user = make_user()
        secret, _codes = _enable(runtime, user, clock)
        token = runtime.mfa.issue_challenge(user)
        good = runtime.mfa.totp_at(secret, clock.now)
        bad = _wrong_code(runtime, secret)
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await runtime.mfa.challenge(token, bad)
        with pytest.raises(LockoutError) as exc:
            await runtime.mfa.challenge(token, good)
        assert exc.value.message == "Too many failed MFA attempts. Try again in 5 minutes"

        clock.advance(minutes=5)
        fresh = runtime.mfa.issue_challenge(user)
        result = await runtime.mfa.challenge(fresh, runtime.mfa.totp_at(secret, clock.now))
        assert result.grant.token


class TestBackupCodes:
    """Tests for backup code redemption."""

    async def test_backup_code_single_use(self, runtime, make_user, clock):
        user = make_user()
        _secret, codes = _enable(runtime, user, clock)
        outcome = await runtime.mfa.redeem_backup_code(runtime.mfa.issue_challenge(user), codes[0])
        assert outcome.remaining == 9
        assert outcome.warning is None
        with pytest.raises(AuthenticationError) as exc:
            await runtime.mfa.redeem_backup_code(runtime.mfa.issue_challenge(user), codes[0])
        assert exc.value.message == "Invalid or already used backup code"

    async def test_spent_challenge_does_not_burn_a_code(self, runtime, make_user, clock):
        user = make_user()
        _secret, codes = _enable(runtime, user, clock)
        token = runtime.mfa.issue_challenge(user)
        await runtime.mfa.redeem_backup_code(token, codes[0])
        with pytest.raises(AuthenticationError) as exc:
            await runtime.mfa.redeem_backup_code(token, codes[1])
        assert exc.value.message == "Invalid or expired temporary token"
        assert runtime.mfa.status(user)["backup_codes_remaining"] == 9

    async def test_concurrent_redemptions_spend_one_code(self, runtime, make_user, clock):
        user = make_user()
        _secret, codes = _enable(runtime, user, clock)
        runtime.mfa.cache = _YieldingCache()
        token = runtime.mfa.issue_challenge(user)
        results = await asyncio.gather(
            runtime.mfa.redeem_backup_code(token, codes[0]),
            runtime.mfa.redeem_backup_code(token, codes[1]),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], AuthenticationError)
        assert failures[0].message == "Invalid or expired temporary token"
        assert runtime.mfa.status(user)["backup_codes_remaining"] == 9

    async def test_wrong_backup_code_keeps_challenge_usable(self, runtime, make_user, clock):
        user = make_user()
        _secret, codes = _enable(runtime, user, clock)
        token = runtime.mfa.issue_challenge(user)
        with pytest.raises(AuthenticationError) as exc:
            await runtime.mfa.redeem_backup_code(token, "ZZZZZZZZ")
        assert exc.value.message == "Invalid or already used backup code"
        outcome = await runtime.mfa.redeem_backup_code(token, codes[0])
        assert outcome.remaining == 9

    async def test_backup_code_case_and_separator_insensitive(self, runtime, make_user, clock):
        user = make_user()
        _secret, codes = _enable(runtime, user, clock)
        code = codes[0]
        typed = f" {code[:4].lower()}-{code[4:].lower()} "
        outcome = await runtime.mfa.redeem_backup_code(runtime.mfa.issue_challenge(user), typed)
        assert outcome.remaining == 9

    async def test_low_backup_code_warning(self, runtime, make_user, clock):
        user = make_user()
        _secret, codes = _enable(runtime, user, clock)
        outcome = None
        for code in codes[:8]:
            outcome = await runtime.mfa.redeem_backup_code(runtime.mfa.issue_challenge(user), code)
        assert outcome.remaining == 2
        assert outcome.warning == (
            "Only 2 backup code(s) remaining. Consider regenerating backup codes."
        )
        assert runtime.mfa.status(user)["backup_codes_remaining"] == 2


class TestLoginWithMFA:
    """Tests for MFA as seen through login."""

    async def test_login_returns_challenge_instead_of_session(self, runtime, make_user, clock):
        user = make_user()
        secret, _codes = _enable(runtime, user, clock)
        result = await runtime.auth.login(email="asha@example.com", password=STRONG_PASSWORD)
        assert result.mfa_required
        assert result.grant is None
        assert result.message == "MFA verification required"
        assert runtime.store.list_user_sessions(user.id) == []

        verified = await runtime.auth.verify_mfa(
            result.mfa_token, runtime.mfa.totp_at(secret, clock.now), ip_addr="10.0.0.5"
        )
        assert verified.grant is not None
        assert runtime.credentials.get(user.id).last_login_ip == "10.0.0.5"

    async def test_backup_code_login_reports_remaining(self, runtime, make_user, clock):
        user = make_user()
        _secret, codes = _enable(runtime, user, clock)
        result = await runtime.auth.login(email="asha@example.com", password=STRONG_PASSWORD)
        redeemed = await runtime.auth.redeem_backup_code(result.mfa_token, codes[3])
        assert redeemed.backup_codes_remaining == 9
        assert redeemed.grant is not None
