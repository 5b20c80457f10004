from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from tutorauth.service.email import EmailService
from tutorauth.service.errors import DependencyError, OtpError, ValidationError
from tutorauth.service.otp import OtpManager
from tutorauth.storage.memory import MemoryStore
from tutorauth.storage.models import OtpPurpose, utcnow


class CapturingEmail(EmailService):
    """Email service that records codes instead of sending them."""

    def __init__(self, succeed=True):
        super().__init__()
        self.sent = []
        self.succeed = succeed

    def send_otp(self, to_email, code, purpose):
        self.sent.append((to_email, code, purpose))
        return self.succeed

    @property
    def last_code(self):
        return self.sent[-1][1]


@pytest.fixture
def store():
    store = MemoryStore()
    store.create_user("member@example.com", "member", password_hash="x")
    return store


@pytest.fixture
def email():
    return CapturingEmail()


@pytest.fixture
def manager(store, email):
    return OtpManager(store, email)


class TestSend:
    def test_code_is_six_digits_and_hashed_at_rest(self, manager, store, email):
        record = manager.send("member@example.com", OtpPurpose.LOGIN)
        code = email.last_code

        assert len(code) == 6 and code.isdigit()
        stored = store.otps[record.id]
        assert stored.code_hash != code
        assert code not in stored.code_hash
        assert len(stored.salt) == 32

    def test_expiry_depends_on_purpose(self, manager):
        signup = manager.send("new@example.com", OtpPurpose.SIGNUP)
        login = manager.send("member@example.com", OtpPurpose.LOGIN)
        assert signup.expires_at - signup.created_at == timedelta(minutes=5)
        assert login.expires_at - login.created_at == timedelta(minutes=10)

    def test_recipient_is_normalized(self, manager, store, email):
        manager.send("  Member@Example.COM ", OtpPurpose.LOGIN)
        assert email.sent[-1][0] == "member@example.com"
        assert store.count_unused_otps("member@example.com", OtpPurpose.LOGIN) == 1

    def test_signup_for_existing_account_rejected(self, manager, store):
        with pytest.raises(ValidationError, match="Account already exists with this email"):
            manager.send("member@example.com", OtpPurpose.SIGNUP)
        assert store.count_unused_otps("member@example.com", OtpPurpose.SIGNUP) == 0

    @pytest.mark.parametrize("purpose", [OtpPurpose.LOGIN, OtpPurpose.PASSWORD_RESET])
    def test_unknown_account_rejected(self, manager, store, purpose):
        with pytest.raises(ValidationError, match="No account found with this email"):
            manager.send("ghost@example.com", purpose)
        assert store.count_unused_otps("ghost@example.com", purpose) == 0

    def test_resend_supersedes_previous_code(self, manager, store, email):
        manager.send("member@example.com", OtpPurpose.LOGIN)
        first = email.last_code
        manager.send("member@example.com", OtpPurpose.LOGIN)
        second = email.last_code

        assert store.count_unused_otps("member@example.com", OtpPurpose.LOGIN) == 1
        if first != second:
            result = manager.verify("member@example.com", OtpPurpose.LOGIN, first)
            assert result.reason == "incorrect_code"
        assert manager.verify("member@example.com", OtpPurpose.LOGIN, second).success

    def test_purposes_do_not_supersede_each_other(self, manager, store):
        manager.send("member@example.com", OtpPurpose.LOGIN)
        manager.send("member@example.com", OtpPurpose.PASSWORD_RESET)
        assert store.count_unused_otps("member@example.com", OtpPurpose.LOGIN) == 1
        assert store.count_unused_otps("member@example.com", OtpPurpose.PASSWORD_RESET) == 1

    def test_delivery_failure_raises_dependency_error(self, store):
        manager = OtpManager(store, CapturingEmail(succeed=False))
        with pytest.raises(DependencyError) as excinfo:
            manager.send("member@example.com", OtpPurpose.LOGIN)
        assert excinfo.value.status_code == 500

    def test_store_failure_propagates(self, email):
        store = MagicMock()
        store.get_user_by_email.return_value = None
        store.create_otp.side_effect = RuntimeError("db down")
        with pytest.raises(RuntimeError):
            OtpManager(store, email).send("new@example.com", OtpPurpose.SIGNUP)
        assert email.sent == []


class TestVerify:
    def test_correct_code_is_consumed_once(self, manager, email):
        manager.send("member@example.com", OtpPurpose.LOGIN)
        code = email.last_code

        assert manager.verify("member@example.com", OtpPurpose.LOGIN, code).success
        again = manager.verify("member@example.com", OtpPurpose.LOGIN, code)
        assert again.success is False
        assert again.reason == "not_found"

    def test_verify_without_consuming_leaves_code_usable(self, manager, email):
        manager.send("member@example.com", OtpPurpose.PASSWORD_RESET)
        code = email.last_code

        first = manager.verify(
            "member@example.com", OtpPurpose.PASSWORD_RESET, code, consume=False
        )
        assert first.success
        manager.consume(first.record_id)
        assert not manager.verify("member@example.com", OtpPurpose.PASSWORD_RESET, code).success

    def test_wrong_purpose_not_found(self, manager, email):
        manager.send("member@example.com", OtpPurpose.LOGIN)
        result = manager.verify("member@example.com", OtpPurpose.SIGNUP, email.last_code)
        assert result.reason == "not_found"

    def test_expired_code_is_deleted(self, manager, store, email):
        record = manager.send("member@example.com", OtpPurpose.LOGIN)
        store.otps[record.id].expires_at = utcnow() - timedelta(seconds=1)

        result = manager.verify("member@example.com", OtpPurpose.LOGIN, email.last_code)
        assert result.reason == "expired"
        assert record.id not in store.otps
        assert result.to_error().message == "Verification code has expired. Please request a new one."

    def test_wrong_codes_count_down_then_exhaust(self, manager, store, email):
        manager.send("member@example.com", OtpPurpose.LOGIN)
        code = email.last_code
        wrong = "000000" if code != "000000" else "111111"

        remaining = [
            manager.verify("member@example.com", OtpPurpose.LOGIN, wrong).attempts_remaining
            for _ in range(5)
        ]
        assert remaining == [4, 3, 2, 1, 0]

        # Even the right code is refused once attempts are used up
        result = manager.verify("member@example.com", OtpPurpose.LOGIN, code)
        assert result.reason == "attempts_exhausted"
        assert store.count_unused_otps("member@example.com", OtpPurpose.LOGIN) == 0

    def test_error_messages(self, manager, email):
        manager.send("member@example.com", OtpPurpose.LOGIN)
        wrong = "000000" if email.last_code != "000000" else "111111"

        with pytest.raises(OtpError) as excinfo:
            manager.verify_or_raise("member@example.com", OtpPurpose.LOGIN, wrong)
        assert excinfo.value.message == "Invalid OTP. 4 attempts remaining."
        assert excinfo.value.status_code == 401

        with pytest.raises(OtpError) as excinfo:
            manager.verify_or_raise("other@example.com", OtpPurpose.LOGIN, wrong)
        assert excinfo.value.message == (
            "OTP not found or expired. Please request a new verification code."
        )
        assert excinfo.value.status_code == 400
