"""组件装配

按配置一次性创建双因素认证子系统的全部组件，并管理其生命周期：
进程启动时调用 create_two_factor()，关闭时调用 container.shutdown()。

使用示例:
    from ytwofactor import create_two_factor
    from ytwofactor.config import AppSettings

    tfa = create_two_factor(AppSettings())
    tfa.service.setup("u1", SetupRequest())
    ...
    tfa.shutdown()
"""

from dataclasses import dataclass
from typing import Optional

from ytwofactor.config import AppSettings
from ytwofactor.log import get_logger, setup_root_logger
from ytwofactor.login_session import LoginChallengeManager
from ytwofactor.mfa.backup_codes import BackupCodesProvider
from ytwofactor.mfa.registry import MethodRegistry
from ytwofactor.mfa.totp import TOTPProvider
from ytwofactor.orm import DatabaseManager
from ytwofactor.rate_limiter import VerificationRateLimiter
from ytwofactor.service import TwoFactorService
from ytwofactor.store import BackupCodeStore, MethodStore
from ytwofactor.sweeper import BackgroundSweeper
from ytwofactor.utils.encryption import SecretCipher

logger = get_logger()

RATE_LIMIT_SWEEP_JOB = "two_factor_rate_limit_sweep"
SESSION_SWEEP_JOB = "two_factor_session_sweep"


@dataclass
class TwoFactorContainer:
    """已装配的组件集合"""
    settings: AppSettings
    db: DatabaseManager
    cipher: SecretCipher
    method_store: MethodStore
    backup_code_store: BackupCodeStore
    registry: MethodRegistry
    rate_limiter: VerificationRateLimiter
    backup_codes: BackupCodesProvider
    service: TwoFactorService
    login_sessions: LoginChallengeManager
    sweeper: BackgroundSweeper

    def shutdown(self, wait: bool = True) -> None:
        """停止后台清理并释放数据库连接"""
        self.sweeper.shutdown(wait=wait)
        self.db.dispose()
        logger.info("Two-factor subsystem shut down")


def create_two_factor(
    settings: Optional[AppSettings] = None,
    db: Optional[DatabaseManager] = None,
    start_sweeper: Optional[bool] = None,
    create_tables: bool = True,
    configure_logging: bool = True,
) -> TwoFactorContainer:
    """创建双因素认证子系统

    Args:
        settings: 应用配置，默认从环境变量读取
        db: 已有的数据库管理器，默认按 settings.database 创建
        start_sweeper: 是否启动后台清理，默认取 settings.two_factor.enable_background_sweeps
        create_tables: 是否自动建表
        configure_logging: 是否按 settings.logging 配置包根日志器 ``ytwofactor``
    """
    settings = settings or AppSettings()
    if configure_logging:
        setup_root_logger(config=settings.logging)
    tfa = settings.two_factor

    if tfa.uses_dev_key:
        logger.warning("Two-factor encryption key is the development default; set YTWOFACTOR_2FA_ENCRYPTION_KEY")

    db = db or DatabaseManager.from_settings(settings.database)
    if create_tables:
        db.create_all()

    cipher = SecretCipher(tfa.encryption_key)
    method_store = MethodStore(db, cipher)
    backup_code_store = BackupCodeStore(db)

    registry = MethodRegistry().register(
        TOTPProvider(
            issuer=tfa.issuer,
            digits=tfa.totp_digits,
            period=tfa.totp_period,
            window=tfa.totp_window,
            secret_bytes=tfa.totp_secret_bytes,
        )
    )

    rate_limiter = VerificationRateLimiter(
        max_attempts=tfa.max_attempts,
        window_minutes=tfa.window_minutes,
        lockout_minutes=tfa.lockout_minutes,
    )
    backup_codes = BackupCodesProvider(backup_code_store, cipher, code_count=tfa.backup_code_count)

    service = TwoFactorService(
        store=method_store,
        registry=registry,
        rate_limiter=rate_limiter,
        backup_codes=backup_codes,
        allow_disable_by_user=tfa.allow_disable_by_user,
    )
    login_sessions = LoginChallengeManager(service, ttl_minutes=tfa.session_ttl_minutes)

    sweeper = BackgroundSweeper()
    sweeper.add_interval_job(rate_limiter.cleanup, minutes=tfa.rate_limit_sweep_minutes, job_id=RATE_LIMIT_SWEEP_JOB)
    sweeper.add_interval_job(login_sessions.cleanup, minutes=tfa.session_sweep_minutes, job_id=SESSION_SWEEP_JOB)

    if start_sweeper is None:
        start_sweeper = tfa.enable_background_sweeps
    if start_sweeper:
        sweeper.start()

    logger.info(f"Two-factor subsystem ready: methods={[t.value for t in registry.list_supported()]}")
    return TwoFactorContainer(
        settings=settings,
        db=db,
        cipher=cipher,
        method_store=method_store,
        backup_code_store=backup_code_store,
        registry=registry,
        rate_limiter=rate_limiter,
        backup_codes=backup_codes,
        service=service,
        login_sessions=login_sessions,
        sweeper=sweeper,
    )
