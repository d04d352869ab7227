"""
Pytest 公共配置和 Fixtures

提供测试所需的公共资源：
- 内存数据库（每个测试独立的 StaticPool 引擎）
- 加密器、存储、提供者
- 可控时钟
- 装配完成的编排服务与登录挑战管理器
"""

from datetime import datetime, timedelta, timezone

import pytest

from ytwofactor.mfa.backup_codes import BackupCodesProvider
from ytwofactor.mfa.base import MethodType, SetupData, VerifyResult
from ytwofactor.mfa.registry import MethodRegistry
from ytwofactor.mfa.totp import TOTPProvider
from ytwofactor.login_session import LoginChallengeManager
from ytwofactor.orm import DatabaseManager
from ytwofactor.rate_limiter import VerificationRateLimiter
from ytwofactor.service import SetupRequest, TwoFactorService
from ytwofactor.store import BackupCodeStore, MethodStore
from ytwofactor.utils.encryption import SecretCipher


TEST_ENCRYPTION_KEY = "test-encryption-key-0123456789abcdef"


# ==================== 辅助类 ====================

class FakeClock:
    """可手动推进的时钟"""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class StaticCodeProvider:
    """测试用 SMS 提供者：密钥为手机号，固定验证码 123456"""

    CODE = "123456"

    @property
    def method_type(self) -> MethodType:
        return MethodType.SMS

    def setup(self, user_id: str, phone_number: str = None, **kwargs) -> SetupData:
        return SetupData(method_type=MethodType.SMS, secret=phone_number or "13800000000")

    def verify(self, user_id: str, code: str, secret: str, **kwargs) -> VerifyResult:
        if code == self.CODE:
            return VerifyResult.ok()
        return VerifyResult.fail()


def wrong_totp_code(provider: TOTPProvider, secret: str) -> str:
    """构造一个不落在当前验证窗口内的 6 位错误代码"""
    valid = {provider.generate_code(secret, ts) for ts in _window_timestamps(provider)}
    candidate = 0
    while f"{candidate:06d}" in valid:
        candidate += 1
    return f"{candidate:06d}"


def _window_timestamps(provider: TOTPProvider):
    import time
    now = int(time.time())
    # 多覆盖一个步长，避免生成与验证之间跨越步长边界
    return [now + offset * provider.period for offset in range(-2, 3)]


# ==================== 数据库 Fixtures ====================

@pytest.fixture
def db():
    """每个测试独立的内存数据库"""
    manager = DatabaseManager("sqlite:///:memory:")
    manager.create_all()
    yield manager
    manager.drop_all()
    manager.dispose()


@pytest.fixture
def cipher():
    return SecretCipher(TEST_ENCRYPTION_KEY)


@pytest.fixture
def method_store(db, cipher):
    return MethodStore(db, cipher)


@pytest.fixture
def backup_code_store(db):
    return BackupCodeStore(db)


# ==================== 提供者 Fixtures ====================

@pytest.fixture
def totp_provider():
    return TOTPProvider(issuer="TestApp", digits=6, period=30, window=1)


@pytest.fixture
def backup_codes(backup_code_store, cipher):
    return BackupCodesProvider(backup_code_store, cipher, code_count=10)


@pytest.fixture
def registry(totp_provider):
    return MethodRegistry().register(totp_provider)


# ==================== 服务 Fixtures ====================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rate_limiter(clock):
    return VerificationRateLimiter(max_attempts=5, window_minutes=5, lockout_minutes=15, clock=clock)


@pytest.fixture
def service(method_store, registry, rate_limiter, backup_codes):
    return TwoFactorService(
        store=method_store,
        registry=registry,
        rate_limiter=rate_limiter,
        backup_codes=backup_codes,
    )


@pytest.fixture
def login_manager(service, clock):
    return LoginChallengeManager(service, ttl_minutes=5, clock=clock)


@pytest.fixture
def enrolled_user(service):
    """已完成 TOTP 设置并启用的用户

    Returns:
        dict: user_id / secret / method_id / backup_codes
    """
    user_id = "user-enrolled"
    setup = service.setup(user_id, SetupRequest(email="enrolled@example.com"))
    enabled = service.enable(user_id, setup.method_id)
    return {
        "user_id": user_id,
        "secret": setup.secret,
        "method_id": setup.method_id,
        "backup_codes": enabled.backup_codes,
    }


@pytest.fixture
def sms_provider():
    return StaticCodeProvider()


@pytest.fixture
def wrong_code(totp_provider):
    """返回构造错误 TOTP 代码的函数"""
    return lambda secret: wrong_totp_code(totp_provider, secret)
