"""ORM 声明式基类"""

from datetime import datetime, timezone

from sqlalchemy.orm import DeclarativeBase


def utcnow() -> datetime:
    """当前 UTC 时间（带时区）"""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """所有双因素认证模型的声明式基类"""
    pass
