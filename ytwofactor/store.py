"""双因素认证 - 持久化存储

MethodStore 负责认证方式的增删改查及审计日志，BackupCodeStore 负责备用码密文的存取。

每个公开方法都是一次独立的事务：
- 读路径找不到记录时返回 None / 空列表
- 写路径找不到记录时抛出 MethodNotFoundException
- 设为主要方式时，清除旧主要方式与设置新值在同一事务内完成
- 审计日志在主事务提交后单独写入，失败只记录错误日志，不影响状态变更

使用示例:
    store = MethodStore(db, cipher)

    method = store.create("u1", MethodType.TOTP, secret, "Authenticator App")
    store.enable(method.id, is_primary=True)
    store.find_all_for_user("u1", enabled_only=True)
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ytwofactor.exceptions import DuplicateMethodException, MethodNotFoundException
from ytwofactor.log import get_logger, log_filter_hook_manager
from ytwofactor.mfa.base import MethodType
from ytwofactor.models import AuditAction, TwoFactorAuditLog, TwoFactorBackupCode, TwoFactorMethod
from ytwofactor.orm import DatabaseManager, utcnow
from ytwofactor.utils.encryption import SecretCipher

logger = get_logger()


@dataclass
class MethodRecord:
    """认证方式（已解密、与会话分离的只读视图）"""
    id: int
    user_id: str
    method_type: MethodType
    secret_data: str
    name: str
    is_enabled: bool
    is_primary: bool
    created_at: datetime
    updated_at: datetime
    last_used_at: Optional[datetime] = None
    secret_was_legacy: bool = False


@dataclass
class AuditEvent:
    """审计日志条目"""
    id: int
    method_id: int
    user_id: Optional[str]
    action: AuditAction
    success: bool
    metadata: Optional[Dict[str, Any]]
    ip_address: Optional[str]
    user_agent: Optional[str]
    timestamp: datetime


class MethodStore:
    """认证方式存储

    Args:
        db: 数据库管理器
        cipher: 密钥加解密器
    """

    def __init__(self, db: DatabaseManager, cipher: SecretCipher):
        self.db = db
        self.cipher = cipher

    # ==================== 写操作 ====================

    def create(
        self,
        user_id: str,
        method_type: MethodType,
        secret_data: str,
        name: str,
        is_primary: bool = False,
        ip_address: str = None,
        user_agent: str = None,
    ) -> MethodRecord:
        """创建认证方式（初始为未启用状态）

        Raises:
            DuplicateMethodException: 同一用户同一类型已存在（并发设置竞争失败）
        """
        method_type = MethodType(method_type)
        try:
            with self.db.session_scope() as session:
                if is_primary:
                    self._clear_primary(session, user_id)

                row = TwoFactorMethod(
                    user_id=user_id,
                    method_type=method_type.value,
                    secret_data=self.cipher.encrypt(secret_data),
                    name=name,
                    is_enabled=False,
                    is_primary=is_primary,
                )
                session.add(row)
                session.flush()
                record = self._to_record(row)
        except IntegrityError as e:
            logger.warning(f"Duplicate two-factor method: user={user_id}, type={method_type.value}")
            raise DuplicateMethodException(user_id=user_id, method_type=method_type.value) from e

        logger.info(f"Two-factor method created: id={record.id}, user={user_id}, type={method_type.value}")
        self._log_audit(
            record.id, user_id, AuditAction.SETUP,
            metadata={"method_type": method_type.value, "name": name, "is_primary": is_primary},
            ip_address=ip_address, user_agent=user_agent,
        )
        return record

    def enable(self, method_id: int, is_primary: bool = False, ip_address: str = None,
               user_agent: str = None) -> MethodRecord:
        """启用认证方式，is_primary 为 True 时先清除该用户其他主要方式"""
        with self.db.session_scope() as session:
            row = self._get_row(session, method_id)
            if is_primary:
                self._clear_primary(session, row.user_id, exclude_id=row.id)
            row.is_enabled = True
            row.is_primary = is_primary
            session.flush()
            record = self._to_record(row)

        logger.info(f"Two-factor method enabled: id={method_id}, primary={is_primary}")
        self._log_audit(
            method_id, record.user_id, AuditAction.ENABLE,
            metadata={"is_primary": is_primary},
            ip_address=ip_address, user_agent=user_agent,
        )
        return record

    def disable(self, method_id: int, ip_address: str = None, user_agent: str = None) -> MethodRecord:
        """禁用认证方式，同时取消主要方式标记"""
        with self.db.session_scope() as session:
            row = self._get_row(session, method_id)
            row.is_enabled = False
            row.is_primary = False
            session.flush()
            record = self._to_record(row)

        logger.info(f"Two-factor method disabled: id={method_id}")
        self._log_audit(
            method_id, record.user_id, AuditAction.DISABLE,
            ip_address=ip_address, user_agent=user_agent,
        )
        return record

    def update_secret(self, method_id: int, secret_data: str, ip_address: str = None,
                      user_agent: str = None) -> MethodRecord:
        """重新加密并覆盖密钥（仅用于未启用的方式重新设置）"""
        with self.db.session_scope() as session:
            row = self._get_row(session, method_id)
            row.secret_data = self.cipher.encrypt(secret_data)
            session.flush()
            record = self._to_record(row)

        logger.info(f"Two-factor method secret rotated: id={method_id}")
        self._log_audit(
            method_id, record.user_id, AuditAction.SETUP,
            metadata={"rotated": True},
            ip_address=ip_address, user_agent=user_agent,
        )
        return record

    def update_last_used(self, method_id: int) -> None:
        """更新最后使用时间"""
        with self.db.session_scope() as session:
            result = session.execute(
                update(TwoFactorMethod)
                .where(TwoFactorMethod.id == method_id)
                .values(last_used_at=utcnow())
            )
            if result.rowcount == 0:
                raise MethodNotFoundException(method_id=method_id)

    def set_primary(self, method_id: int) -> MethodRecord:
        """将指定方式设为主要方式（清除旧主要方式与设置在同一事务内）"""
        with self.db.session_scope() as session:
            row = self._get_row(session, method_id)
            self._clear_primary(session, row.user_id, exclude_id=row.id)
            row.is_primary = True
            session.flush()
            record = self._to_record(row)

        logger.info(f"Two-factor primary method changed: id={method_id}, user={record.user_id}")
        return record

    def delete(self, method_id: int, ip_address: str = None, user_agent: str = None) -> MethodRecord:
        """删除认证方式，返回删除前的记录"""
        with self.db.session_scope() as session:
            row = self._get_row(session, method_id)
            record = self._to_record(row)
            session.delete(row)

        logger.info(f"Two-factor method deleted: id={method_id}, user={record.user_id}")
        self._log_audit(
            method_id, record.user_id, AuditAction.DELETE,
            metadata={"method_type": record.method_type.value},
            ip_address=ip_address, user_agent=user_agent,
        )
        return record

    # ==================== 读操作 ====================

    def find_by_id(self, method_id: int) -> Optional[MethodRecord]:
        with self.db.session_scope() as session:
            row = session.get(TwoFactorMethod, method_id)
            return self._to_record(row) if row is not None else None

    def find_by_user_and_type(self, user_id: str, method_type: MethodType) -> Optional[MethodRecord]:
        method_type = MethodType(method_type)
        with self.db.session_scope() as session:
            row = session.execute(
                select(TwoFactorMethod).where(
                    TwoFactorMethod.user_id == user_id,
                    TwoFactorMethod.method_type == method_type.value,
                )
            ).scalar_one_or_none()
            return self._to_record(row) if row is not None else None

    def find_all_for_user(self, user_id: str, enabled_only: bool = False) -> List[MethodRecord]:
        """查询用户的全部认证方式，主要方式在前，其余按创建时间排序"""
        stmt = select(TwoFactorMethod).where(TwoFactorMethod.user_id == user_id)
        if enabled_only:
            stmt = stmt.where(TwoFactorMethod.is_enabled.is_(True))
        stmt = stmt.order_by(
            TwoFactorMethod.is_primary.desc(),
            TwoFactorMethod.created_at.asc(),
            TwoFactorMethod.id.asc(),
        )
        with self.db.session_scope() as session:
            return [self._to_record(row) for row in session.execute(stmt).scalars()]

    def find_primary(self, user_id: str) -> Optional[MethodRecord]:
        with self.db.session_scope() as session:
            row = session.execute(
                select(TwoFactorMethod).where(
                    TwoFactorMethod.user_id == user_id,
                    TwoFactorMethod.is_enabled.is_(True),
                    TwoFactorMethod.is_primary.is_(True),
                )
            ).scalars().first()
            return self._to_record(row) if row is not None else None

    def has_any_enabled(self, user_id: str) -> bool:
        with self.db.session_scope() as session:
            count = session.execute(
                select(func.count(TwoFactorMethod.id)).where(
                    TwoFactorMethod.user_id == user_id,
                    TwoFactorMethod.is_enabled.is_(True),
                )
            ).scalar_one()
            return count > 0

    def list_audit_events(self, method_id: int = None, user_id: str = None) -> List[AuditEvent]:
        """按时间顺序查询审计日志"""
        stmt = select(TwoFactorAuditLog)
        if method_id is not None:
            stmt = stmt.where(TwoFactorAuditLog.method_id == method_id)
        if user_id is not None:
            stmt = stmt.where(TwoFactorAuditLog.user_id == user_id)
        stmt = stmt.order_by(TwoFactorAuditLog.timestamp.asc(), TwoFactorAuditLog.id.asc())

        with self.db.session_scope() as session:
            return [
                AuditEvent(
                    id=row.id,
                    method_id=row.method_id,
                    user_id=row.user_id,
                    action=AuditAction(row.action),
                    success=row.success,
                    metadata=row.event_metadata,
                    ip_address=row.ip_address,
                    user_agent=row.user_agent,
                    timestamp=row.timestamp,
                )
                for row in session.execute(stmt).scalars()
            ]

    # ==================== 内部方法 ====================

    @staticmethod
    def _get_row(session: Session, method_id: int) -> TwoFactorMethod:
        row = session.get(TwoFactorMethod, method_id)
        if row is None:
            raise MethodNotFoundException(method_id=method_id)
        return row

    @staticmethod
    def _clear_primary(session: Session, user_id: str, exclude_id: int = None) -> None:
        stmt = (
            update(TwoFactorMethod)
            .where(
                TwoFactorMethod.user_id == user_id,
                TwoFactorMethod.is_primary.is_(True),
            )
            .values(is_primary=False)
        )
        if exclude_id is not None:
            stmt = stmt.where(TwoFactorMethod.id != exclude_id)
        # 批量更新后同步会话中已加载对象的状态
        session.execute(stmt, execution_options={"synchronize_session": "fetch"})

    def _to_record(self, row: TwoFactorMethod) -> MethodRecord:
        decoded = self.cipher.decrypt(row.secret_data)
        if decoded.was_legacy_format:
            logger.warning(f"Two-factor method {row.id} secret is stored in legacy format")
        return MethodRecord(
            id=row.id,
            user_id=row.user_id,
            method_type=MethodType(row.method_type),
            secret_data=decoded.value,
            name=row.name,
            is_enabled=row.is_enabled,
            is_primary=row.is_primary,
            created_at=row.created_at,
            updated_at=row.updated_at,
            last_used_at=row.last_used_at,
            secret_was_legacy=decoded.was_legacy_format,
        )

    def _log_audit(
        self,
        method_id: int,
        user_id: Optional[str],
        action: AuditAction,
        success: bool = True,
        metadata: Dict[str, Any] = None,
        ip_address: str = None,
        user_agent: str = None,
    ) -> None:
        """写入审计日志，失败只记录错误，不影响调用方"""
        try:
            with self.db.session_scope() as session:
                session.add(TwoFactorAuditLog(
                    method_id=method_id,
                    user_id=user_id,
                    action=action.value,
                    success=success,
                    event_metadata=log_filter_hook_manager.apply_filters(metadata) if metadata else None,
                    ip_address=ip_address,
                    user_agent=user_agent,
                ))
        except Exception as e:
            logger.error(f"Failed to write two-factor audit log: method={method_id}, action={action.value}, error={e}")


class BackupCodeStore:
    """备用码密文存储

    仅负责密文的存取；加解密和比较由 BackupCodesProvider 完成。
    """

    def __init__(self, db: DatabaseManager):
        self.db = db

    def replace_all(self, user_id: str, encrypted_codes: List[str]) -> None:
        """在一个事务内删除用户的全部旧备用码并写入新码"""
        with self.db.session_scope() as session:
            session.execute(delete(TwoFactorBackupCode).where(TwoFactorBackupCode.user_id == user_id))
            session.add_all(
                TwoFactorBackupCode(user_id=user_id, code_data=code) for code in encrypted_codes
            )

    def list_for_user(self, user_id: str) -> List[Tuple[int, str]]:
        """返回 [(id, 密文), ...]"""
        with self.db.session_scope() as session:
            rows = session.execute(
                select(TwoFactorBackupCode.id, TwoFactorBackupCode.code_data)
                .where(TwoFactorBackupCode.user_id == user_id)
                .order_by(TwoFactorBackupCode.id.asc())
            ).all()
            return [(row.id, row.code_data) for row in rows]

    def consume(self, code_id: int) -> bool:
        """删除指定备用码

        Returns:
            True 表示本次调用删除了该码；False 表示已被其他请求消费
        """
        with self.db.session_scope() as session:
            result = session.execute(delete(TwoFactorBackupCode).where(TwoFactorBackupCode.id == code_id))
            return result.rowcount == 1

    def count_for_user(self, user_id: str) -> int:
        with self.db.session_scope() as session:
            return session.execute(
                select(func.count(TwoFactorBackupCode.id)).where(TwoFactorBackupCode.user_id == user_id)
            ).scalar_one()

    def delete_all(self, user_id: str) -> int:
        """删除用户的全部备用码，返回删除数量"""
        with self.db.session_scope() as session:
            result = session.execute(delete(TwoFactorBackupCode).where(TwoFactorBackupCode.user_id == user_id))
            return result.rowcount
