"""双因素认证编排服务测试

测试设置、验证、启用、禁用、主要方式选举、状态查询和备用码流程
"""

from datetime import timedelta

import pytest

from ytwofactor.exceptions import (
    AlreadyEnabledException,
    ErrorCode,
    InvalidSetupDataException,
    MethodNotFoundException,
    MethodNotSupportedException,
    PolicyDeniedException,
    RateLimitedException,
    SetupRequiredException,
)
from ytwofactor.mfa.base import GENERIC_INVALID_MESSAGE, MethodType
from ytwofactor.models import AuditAction
from ytwofactor.service import (
    DEFAULT_MASK,
    TOTP_MASK,
    SetupRequest,
    TwoFactorService,
    VerifyRequest,
    mask_secret_data,
)


@pytest.fixture
def sms_service(service, sms_provider):
    """同时注册了 TOTP 和测试用 SMS 的服务"""
    service.registry.register(sms_provider)
    return service


class TestSetup:
    """设置测试"""

    def test_setup_creates_pending_method(self, service, method_store):
        result = service.setup("user-1", SetupRequest(email="alice@example.com"))

        assert result.method_type == MethodType.TOTP
        assert len(result.secret) == 32
        assert result.uri.startswith("otpauth://totp/TestApp%3Aalice%40example.com")
        assert result.qr_code.startswith("data:image/png;base64,")
        assert result.instructions

        record = method_store.find_by_id(result.method_id)
        assert record.is_enabled is False
        assert record.name == "Authenticator App"
        assert record.secret_data == result.secret
        assert service.status("user-1").is_enabled is False

    def test_custom_name(self, service, method_store):
        result = service.setup("user-1", SetupRequest(name="Work phone"))
        assert method_store.find_by_id(result.method_id).name == "Work phone"

    def test_repeated_setup_rotates_secret_in_place(self, service, method_store, totp_provider):
        """测试未启用时重复设置复用同一行并轮换密钥"""
        first = service.setup("user-1", SetupRequest())
        second = service.setup("user-1", SetupRequest())

        assert second.method_id == first.method_id
        assert second.secret != first.secret
        assert len(method_store.find_all_for_user("user-1")) == 1

        code = totp_provider.generate_code(second.secret)
        assert service.verify("user-1", VerifyRequest(code=code)).success is True

    def test_setup_rejected_when_enabled(self, service, enrolled_user):
        with pytest.raises(AlreadyEnabledException) as exc_info:
            service.setup(enrolled_user["user_id"], SetupRequest())

        assert exc_info.value.code == ErrorCode.ALREADY_ENABLED

    @pytest.mark.parametrize("method_type", [MethodType.SMS, MethodType.EMAIL, MethodType.WEBAUTHN, "fax"])
    def test_unregistered_method_not_supported(self, service, method_type):
        with pytest.raises(MethodNotSupportedException):
            service.setup("user-1", SetupRequest(method_type=method_type))

    def test_setup_after_disable_reuses_row(self, service, enrolled_user):
        """测试禁用后重新设置复用原记录"""
        user_id = enrolled_user["user_id"]
        service.disable(user_id, enrolled_user["method_id"])

        result = service.setup(user_id, SetupRequest())

        assert result.method_id == enrolled_user["method_id"]
        assert result.secret != enrolled_user["secret"]

    def test_setup_audited_with_request_context(self, service, method_store):
        result = service.setup("user-1", SetupRequest(), ip_address="10.1.1.1", user_agent="ua")

        events = method_store.list_audit_events(method_id=result.method_id)

        assert events[0].action == AuditAction.SETUP
        assert events[0].ip_address == "10.1.1.1"


class TestVerify:
    """验证测试"""

    def test_verify_success(self, service, enrolled_user, totp_provider, method_store):
        code = totp_provider.generate_code(enrolled_user["secret"])

        result = service.verify(enrolled_user["user_id"], VerifyRequest(code=code))

        assert result.success is True
        assert result.method_id == enrolled_user["method_id"]
        assert method_store.find_by_id(enrolled_user["method_id"]).last_used_at is not None

    def test_verify_pending_method(self, service, totp_provider):
        """测试启用前的确认验证"""
        setup = service.setup("user-1", SetupRequest())
        code = totp_provider.generate_code(setup.secret)

        assert service.verify("user-1", VerifyRequest(code=code, method_id=setup.method_id)).success is True

    def test_wrong_code_returns_generic_failure(self, service, enrolled_user, wrong_code):
        result = service.verify(
            enrolled_user["user_id"], VerifyRequest(code=wrong_code(enrolled_user["secret"]))
        )

        assert result.success is False
        assert result.message == GENERIC_INVALID_MESSAGE
        assert result.remaining_attempts == 4
        assert result.error_code == ErrorCode.INVALID_CODE
        assert result.lockout_until is None

    def test_lockout_after_five_failures(self, service, enrolled_user, wrong_code, totp_provider, clock):
        """测试连续 5 次失败后第 6 次抛出 RATE_LIMITED，正确代码也被拒绝"""
        user_id = enrolled_user["user_id"]
        bad = VerifyRequest(code=wrong_code(enrolled_user["secret"]))

        results = [service.verify(user_id, bad) for _ in range(5)]

        assert [r.remaining_attempts for r in results] == [4, 3, 2, 1, 0]
        assert results[-1].lockout_until == clock.now + timedelta(minutes=15)

        good = VerifyRequest(code=totp_provider.generate_code(enrolled_user["secret"]))
        with pytest.raises(RateLimitedException) as exc_info:
            service.verify(user_id, good)

        assert exc_info.value.code == ErrorCode.RATE_LIMITED
        assert exc_info.value.status_code == 429
        assert exc_info.value.lockout_until == results[-1].lockout_until

    def test_lockout_expires(self, service, enrolled_user, wrong_code, totp_provider, clock):
        user_id = enrolled_user["user_id"]
        bad = VerifyRequest(code=wrong_code(enrolled_user["secret"]))
        for _ in range(5):
            service.verify(user_id, bad)

        clock.advance(minutes=15)
        code = totp_provider.generate_code(enrolled_user["secret"])

        assert service.verify(user_id, VerifyRequest(code=code)).success is True

    def test_success_resets_counter(self, service, enrolled_user, wrong_code, totp_provider):
        """测试验证成功后计数归零"""
        user_id = enrolled_user["user_id"]
        bad = VerifyRequest(code=wrong_code(enrolled_user["secret"]))
        service.verify(user_id, bad)
        service.verify(user_id, bad)

        service.verify(user_id, VerifyRequest(code=totp_provider.generate_code(enrolled_user["secret"])))

        assert service.get_rate_limit_status(user_id).remaining_attempts == 5

    def test_verify_without_setup(self, service):
        with pytest.raises(SetupRequiredException) as exc_info:
            service.verify("user-1", VerifyRequest(code="123456"))

        assert exc_info.value.code == ErrorCode.SETUP_REQUIRED

    def test_verify_unknown_method_id(self, service):
        with pytest.raises(SetupRequiredException):
            service.verify("user-1", VerifyRequest(code="123456", method_id=999))

    def test_verify_other_users_method(self, service, enrolled_user, totp_provider):
        """测试不能使用其他用户的方式验证"""
        code = totp_provider.generate_code(enrolled_user["secret"])

        with pytest.raises(InvalidSetupDataException):
            service.verify("intruder", VerifyRequest(code=code, method_id=enrolled_user["method_id"]))

    def test_verify_unregistered_type(self, service):
        with pytest.raises(MethodNotSupportedException):
            service.verify("user-1", VerifyRequest(code="123456", method_type="bogus"))

    def test_failure_still_counted_when_method_missing(self, service):
        """测试找不到方式时该次尝试也计入限流"""
        with pytest.raises(SetupRequiredException):
            service.verify("user-1", VerifyRequest(code="123456"))

        assert service.get_rate_limit_status("user-1").remaining_attempts == 4

    def test_verify_without_rate_limit(self, service, enrolled_user, wrong_code):
        user_id = enrolled_user["user_id"]
        bad = VerifyRequest(code=wrong_code(enrolled_user["secret"]))

        for _ in range(10):
            result = service.verify(user_id, bad, consume_rate_limit=False)
            assert result.remaining_attempts is None

        assert service.get_rate_limit_status(user_id).remaining_attempts == 5


class TestEnable:
    """启用与主要方式选举测试"""

    def test_first_enable_becomes_primary_with_backup_codes(self, service):
        setup = service.setup("user-1", SetupRequest())

        result = service.enable("user-1", setup.method_id)

        assert result.is_primary is True
        assert len(result.backup_codes) == 10
        assert service.backup_codes_remaining("user-1") == 10

    def test_second_enable_is_not_primary(self, sms_service, enrolled_user, method_store):
        """测试已有启用方式时，新启用的方式不是主要方式，也不重新生成备用码"""
        user_id = enrolled_user["user_id"]
        setup = sms_service.setup(user_id, SetupRequest(method_type=MethodType.SMS, phone_number="13812345678"))

        result = sms_service.enable(user_id, setup.method_id)

        assert result.is_primary is False
        assert result.backup_codes is None
        assert method_store.find_primary(user_id).id == enrolled_user["method_id"]
        assert sms_service.backup_codes_remaining(user_id) == 10

    def test_enable_twice(self, service, enrolled_user):
        with pytest.raises(AlreadyEnabledException):
            service.enable(enrolled_user["user_id"], enrolled_user["method_id"])

    def test_enable_missing_method(self, service):
        with pytest.raises(MethodNotFoundException):
            service.enable("user-1", 999)

    def test_enable_other_users_method(self, service, enrolled_user):
        with pytest.raises(InvalidSetupDataException):
            service.enable("intruder", enrolled_user["method_id"])

    def test_re_enable_after_disable_regenerates_codes(self, service, enrolled_user):
        user_id = enrolled_user["user_id"]
        service.disable(user_id, enrolled_user["method_id"])
        setup = service.setup(user_id, SetupRequest())

        result = service.enable(user_id, setup.method_id)

        assert result.is_primary is True
        assert set(result.backup_codes).isdisjoint(enrolled_user["backup_codes"])


class TestDisableAndDelete:
    """禁用 / 删除测试"""

    def test_disable(self, service, enrolled_user):
        user_id = enrolled_user["user_id"]

        record = service.disable(user_id, enrolled_user["method_id"])

        assert record.is_enabled is False
        assert record.is_primary is False
        assert service.has_enabled_methods(user_id) is False
        status = service.status(user_id)
        assert status.is_enabled is False
        assert status.can_disable is False

    def test_disable_denied_by_policy(self, method_store, registry, rate_limiter, backup_codes):
        strict = TwoFactorService(method_store, registry, rate_limiter, backup_codes, allow_disable_by_user=False)
        setup = strict.setup("user-1", SetupRequest())
        strict.enable("user-1", setup.method_id)

        with pytest.raises(PolicyDeniedException) as exc_info:
            strict.disable("user-1", setup.method_id)

        assert exc_info.value.status_code == 403
        assert strict.has_enabled_methods("user-1") is True
        assert strict.status("user-1").can_disable is False

    def test_disable_primary_promotes_next(self, sms_service, enrolled_user, method_store):
        """测试禁用主要方式后，剩余启用方式中最早的一个成为主要方式"""
        user_id = enrolled_user["user_id"]
        sms = sms_service.setup(user_id, SetupRequest(method_type="sms", phone_number="13812345678"))
        sms_service.enable(user_id, sms.method_id)

        sms_service.disable(user_id, enrolled_user["method_id"])

        assert method_store.find_primary(user_id).id == sms.method_id

    def test_disable_other_users_method(self, service, enrolled_user):
        with pytest.raises(InvalidSetupDataException):
            service.disable("intruder", enrolled_user["method_id"])

    def test_delete_method(self, service, enrolled_user, method_store):
        user_id = enrolled_user["user_id"]

        service.delete_method(user_id, enrolled_user["method_id"])

        assert method_store.find_by_id(enrolled_user["method_id"]) is None
        actions = [e.action for e in method_store.list_audit_events(method_id=enrolled_user["method_id"])]
        assert actions[-1] == AuditAction.DELETE

    def test_delete_enabled_method_denied_by_policy(self, method_store, registry, rate_limiter, backup_codes):
        strict = TwoFactorService(method_store, registry, rate_limiter, backup_codes, allow_disable_by_user=False)
        setup = strict.setup("user-1", SetupRequest())
        strict.enable("user-1", setup.method_id)

        with pytest.raises(PolicyDeniedException):
            strict.delete_method("user-1", setup.method_id)

    def test_delete_pending_method_allowed_by_policy(self, method_store, registry, rate_limiter, backup_codes):
        strict = TwoFactorService(method_store, registry, rate_limiter, backup_codes, allow_disable_by_user=False)
        setup = strict.setup("user-1", SetupRequest())

        strict.delete_method("user-1", setup.method_id)

        assert method_store.find_by_id(setup.method_id) is None

    def test_delete_primary_promotes_next(self, sms_service, enrolled_user, method_store):
        user_id = enrolled_user["user_id"]
        sms = sms_service.setup(user_id, SetupRequest(method_type="sms", phone_number="13812345678"))
        sms_service.enable(user_id, sms.method_id)

        sms_service.delete_method(user_id, enrolled_user["method_id"])

        assert method_store.find_primary(user_id).id == sms.method_id


class TestPrimaryAndStatus:
    """主要方式切换和状态查询"""

    def test_set_primary(self, sms_service, enrolled_user, method_store):
        user_id = enrolled_user["user_id"]
        sms = sms_service.setup(user_id, SetupRequest(method_type="sms", phone_number="13812345678"))
        sms_service.enable(user_id, sms.method_id)

        sms_service.set_primary(user_id, sms.method_id)

        primaries = [m.id for m in method_store.find_all_for_user(user_id) if m.is_primary]
        assert primaries == [sms.method_id]

    def test_set_primary_requires_enabled(self, service):
        setup = service.setup("user-1", SetupRequest())

        with pytest.raises(InvalidSetupDataException):
            service.set_primary("user-1", setup.method_id)

    def test_status_masks_secrets(self, sms_service, enrolled_user):
        user_id = enrolled_user["user_id"]
        sms = sms_service.setup(user_id, SetupRequest(method_type="sms", phone_number="13812345678"))
        sms_service.enable(user_id, sms.method_id)

        status = sms_service.status(user_id)

        assert status.is_enabled is True
        assert status.has_enabled_methods is True
        assert status.can_disable is True
        assert status.backup_codes_remaining == 10
        assert status.primary_method.id == enrolled_user["method_id"]
        assert status.primary_method.masked_data == TOTP_MASK
        assert set(status.available_methods) == {"totp", "sms"}
        masked = {m.method_type: m.masked_data for m in status.enabled_methods}
        assert masked[MethodType.SMS] == "138***5678"
        assert enrolled_user["secret"] not in str(status)

    def test_status_of_new_user(self, service):
        status = service.status("nobody")

        assert status.is_enabled is False
        assert status.enabled_methods == []
        assert status.primary_method is None
        assert status.available_methods == ["totp"]
        assert status.backup_codes_remaining == 0


class TestMaskSecretData:

    def test_totp(self):
        assert mask_secret_data(MethodType.TOTP, "JBSWY3DPEHPK3PXP") == TOTP_MASK

    def test_sms(self):
        assert mask_secret_data(MethodType.SMS, "13812345678") == "138***5678"

    @pytest.mark.parametrize("phone,masked", [
        ("8613812345678", "861***5678"),
        ("12345678", "123***5678"),
    ])
    def test_sms_keeps_only_head_and_tail(self, phone, masked):
        """测试手机号只保留前 3 位和后 4 位，中间全部隐藏"""
        assert mask_secret_data(MethodType.SMS, phone) == masked

    def test_sms_non_numeric_unchanged(self):
        assert mask_secret_data(MethodType.SMS, "+86 138") == "+86 138"

    def test_email(self):
        assert mask_secret_data(MethodType.EMAIL, "alice@example.com") == "al***@example.com"

    def test_other(self):
        assert mask_secret_data(MethodType.WEBAUTHN, "credential-id") == DEFAULT_MASK


class TestBackupCodes:
    """备用码流程测试"""

    def test_verify_backup_code(self, service, enrolled_user):
        user_id = enrolled_user["user_id"]

        first = service.verify_backup_code(user_id, enrolled_user["backup_codes"][0])
        again = service.verify_backup_code(user_id, enrolled_user["backup_codes"][0])

        assert (first.is_valid, first.remaining_count) == (True, 9)
        assert again.is_valid is False
        assert service.backup_codes_remaining(user_id) == 9

    def test_backup_code_attempts_are_rate_limited(self, service, enrolled_user):
        user_id = enrolled_user["user_id"]
        for _ in range(5):
            service.verify_backup_code(user_id, "0000-0000")

        with pytest.raises(RateLimitedException):
            service.verify_backup_code(user_id, enrolled_user["backup_codes"][0])

        assert service.backup_codes_remaining(user_id) == 10

    def test_valid_backup_code_resets_counter(self, service, enrolled_user):
        user_id = enrolled_user["user_id"]
        service.verify_backup_code(user_id, "0000-0000")

        service.verify_backup_code(user_id, enrolled_user["backup_codes"][0])

        assert service.get_rate_limit_status(user_id).remaining_attempts == 5

    def test_regenerate_requires_enabled_method(self, service):
        with pytest.raises(SetupRequiredException):
            service.regenerate_backup_codes("user-1")

    def test_regenerate_invalidates_old_codes(self, service, enrolled_user):
        user_id = enrolled_user["user_id"]

        batch = service.regenerate_backup_codes(user_id)

        assert len(batch.codes) == 10
        old = enrolled_user["backup_codes"][0]
        if old not in batch.codes:
            assert service.verify_backup_code(user_id, old).is_valid is False
        assert service.verify_backup_code(user_id, batch.codes[0]).is_valid is True
