"""登录挑战会话测试

测试会话创建、过期、第二步验证和单次使用
"""

from datetime import timedelta

import pytest

from ytwofactor.exceptions import ErrorCode, InvalidSetupDataException, SessionInvalidException
from ytwofactor.login_session import SESSION_ID_PREFIX, generate_session_id
from ytwofactor.mfa.base import GENERIC_INVALID_MESSAGE


PAYLOAD = {"sub": "user-enrolled", "roles": ["admin"]}


@pytest.fixture
def challenge(login_manager, enrolled_user):
    return login_manager.create(
        user_id=enrolled_user["user_id"],
        email="enrolled@example.com",
        name="Enrolled",
        original_payload=PAYLOAD,
        tenant_id="tenant-1",
    )


class TestSessionLifecycle:
    """会话生命周期测试"""

    def test_session_id_format(self):
        session_id = generate_session_id()

        assert session_id.startswith(SESSION_ID_PREFIX)
        assert len(session_id) == len(SESSION_ID_PREFIX) + 64

    def test_create(self, login_manager, challenge, clock):
        assert challenge.created_at == clock.now
        assert challenge.expires_at == clock.now + timedelta(minutes=5)
        assert challenge.tenant_id == "tenant-1"
        assert login_manager.get(challenge.session_id) is challenge

    def test_payload_is_copied(self, challenge):
        assert challenge.original_payload == PAYLOAD
        assert challenge.original_payload is not PAYLOAD

    def test_unknown_session(self, login_manager):
        with pytest.raises(SessionInvalidException) as exc_info:
            login_manager.get("2fa_session_missing")

        assert exc_info.value.code == ErrorCode.INVALID_OR_EXPIRED

    def test_expired_session_removed_on_access(self, login_manager, challenge, clock):
        """测试过期会话在访问时被删除，不会被当作有效会话返回"""
        clock.advance(minutes=5)

        with pytest.raises(SessionInvalidException):
            login_manager.get(challenge.session_id)

        assert login_manager.get_stats()["total_sessions"] == 0

    def test_delete_session(self, login_manager, challenge):
        assert login_manager.delete_session(challenge.session_id) is True
        assert login_manager.delete_session(challenge.session_id) is False

    def test_cleanup_removes_only_expired(self, login_manager, challenge, clock, enrolled_user):
        clock.advance(minutes=3)
        fresh = login_manager.create(enrolled_user["user_id"], "e@example.com", "E", {})
        clock.advance(minutes=2)

        assert login_manager.cleanup() == 1
        stats = login_manager.get_stats()
        assert stats["total_sessions"] == 1
        assert stats["oldest_session"] == fresh.created_at

    def test_stats_when_empty(self, login_manager):
        assert login_manager.get_stats() == {"total_sessions": 0, "oldest_session": None}


class TestVerifyLoginCode:
    """第二步验证测试"""

    def test_totp_success_returns_payload(self, login_manager, challenge, enrolled_user, totp_provider):
        code = totp_provider.generate_code(enrolled_user["secret"])

        outcome = login_manager.verify_login_code(challenge.session_id, code, code_type="totp")

        assert outcome.success is True
        assert outcome.code_type == "totp"
        assert outcome.payload == PAYLOAD

    def test_session_is_single_use(self, login_manager, challenge, enrolled_user, totp_provider):
        """测试验证成功后会话被删除"""
        code = totp_provider.generate_code(enrolled_user["secret"])
        login_manager.verify_login_code(challenge.session_id, code)

        with pytest.raises(SessionInvalidException):
            login_manager.verify_login_code(challenge.session_id, code)

    def test_failure_keeps_session(self, login_manager, challenge, enrolled_user, wrong_code, totp_provider):
        """测试失败后会话保留，可在有效期内重试"""
        outcome = login_manager.verify_login_code(challenge.session_id, wrong_code(enrolled_user["secret"]))

        assert outcome.success is False
        assert outcome.payload is None
        assert outcome.message == GENERIC_INVALID_MESSAGE

        code = totp_provider.generate_code(enrolled_user["secret"])
        assert login_manager.verify_login_code(challenge.session_id, code).success is True

    def test_failures_do_not_consume_verification_attempts(self, login_manager, service, challenge,
                                                         enrolled_user, wrong_code):
        """测试登录挑战的失败不计入验证限流"""
        bad = wrong_code(enrolled_user["secret"])
        for _ in range(6):
            login_manager.verify_login_code(challenge.session_id, bad)

        assert service.get_rate_limit_status(enrolled_user["user_id"]).remaining_attempts == 5

    def test_repeated_failures_leave_session_open(self, login_manager, challenge, enrolled_user,
                                                   wrong_code, totp_provider):
        """测试会话本身不限制尝试次数，限流由调用方负责"""
        bad = wrong_code(enrolled_user["secret"])
        for _ in range(50):
            assert login_manager.verify_login_code(challenge.session_id, bad).success is False

        assert login_manager.get(challenge.session_id) is not None
        code = totp_provider.generate_code(enrolled_user["secret"])
        assert login_manager.verify_login_code(challenge.session_id, code).success is True

    def test_backup_code(self, login_manager, challenge, enrolled_user):
        outcome = login_manager.verify_login_code(
            challenge.session_id, enrolled_user["backup_codes"][0], code_type="backup"
        )

        assert outcome.success is True
        assert outcome.remaining_backup_codes == 9
        assert outcome.payload == PAYLOAD

    def test_wrong_backup_code(self, login_manager, challenge):
        outcome = login_manager.verify_login_code(challenge.session_id, "0000-0000", code_type="backup")

        assert outcome.success is False
        assert outcome.remaining_backup_codes == 10

    def test_unsupported_code_type(self, login_manager, challenge):
        with pytest.raises(InvalidSetupDataException):
            login_manager.verify_login_code(challenge.session_id, "123456", code_type="sms")

    def test_expired_session_rejected(self, login_manager, challenge, enrolled_user, totp_provider, clock):
        clock.advance(minutes=6)
        code = totp_provider.generate_code(enrolled_user["secret"])

        with pytest.raises(SessionInvalidException):
            login_manager.verify_login_code(challenge.session_id, code)


class TestRequirement:

    def test_requirement_for_enrolled_user(self, login_manager, enrolled_user):
        assert login_manager.requirement_for(enrolled_user["user_id"]) == {
            "enabled": True,
            "available_methods": ["totp", "backup"],
        }

    def test_requirement_for_new_user(self, login_manager):
        assert login_manager.requirement_for("nobody") == {"enabled": False, "available_methods": []}
