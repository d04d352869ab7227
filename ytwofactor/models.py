"""双因素认证 - 数据模型

- TwoFactorMethod: 用户的认证方式，每个 (user_id, method_type) 至多一行
- TwoFactorAuditLog: 认证方式状态变更审计日志，只追加不修改
- TwoFactorBackupCode: 备用码，每个码一行，加密存储，使用即删除

审计日志不对 two_factor_method 建外键，方法被删除后其 DELETE 记录仍然保留。
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ytwofactor.orm import Base, utcnow


class AuditAction(str, Enum):
    """审计动作"""
    SETUP = "SETUP"
    ENABLE = "ENABLE"
    DISABLE = "DISABLE"
    DELETE = "DELETE"


class TwoFactorMethod(Base):
    """用户双因素认证方式"""
    __tablename__ = "two_factor_method"
    __table_args__ = (
        UniqueConstraint("user_id", "method_type", name="uq_two_factor_method_user_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
        comment="用户ID"
    )

    method_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="认证方式类型：totp/sms/email/webauthn"
    )

    secret_data: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="加密后的密钥数据"
    )

    name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="显示名称"
    )

    is_enabled: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        comment="是否已启用"
    )

    is_primary: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        comment="是否为主要认证方式"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    last_used_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="最后使用时间"
    )

    def __repr__(self) -> str:
        return (
            f"<TwoFactorMethod(id={self.id}, user_id={self.user_id!r}, "
            f"method_type={self.method_type!r}, is_enabled={self.is_enabled}, "
            f"is_primary={self.is_primary})>"
        )


class TwoFactorAuditLog(Base):
    """认证方式审计日志"""
    __tablename__ = "two_factor_audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    method_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True, comment="认证方式ID")

    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True, comment="用户ID")

    action: Mapped[str] = mapped_column(String(20), nullable=False, comment="SETUP/ENABLE/DISABLE/DELETE")

    success: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)

    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # "metadata" 是声明式基类的保留属性名，列名保持 metadata
    event_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)

    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        index=True,
    )


class TwoFactorBackupCode(Base):
    """备用码（加密存储）"""
    __tablename__ = "two_factor_backup_code"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True, comment="用户ID")

    code_data: Mapped[str] = mapped_column(Text, nullable=False, comment="加密后的备用码")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
