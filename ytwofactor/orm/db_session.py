"""
数据库会话管理模块

提供引擎创建、会话生命周期管理和表结构初始化。
与进程级单例不同，DatabaseManager 由调用方构造并注入到各个 Store，便于测试隔离。
"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from ytwofactor.log import get_logger
from .base import Base

logger = get_logger()


class DatabaseManager:
    """数据库管理器

    使用示例:
        from ytwofactor.orm import DatabaseManager

        db = DatabaseManager("sqlite:///:memory:")
        db.create_all()

        with db.session_scope() as session:
            session.add(obj)
        # 自动提交；异常时自动回滚
    """

    def __init__(
        self,
        database_url: str,
        echo: bool = False,
        pool_size: int = 5,
        max_overflow: int = 10,
        pool_timeout: int = 30,
        pool_recycle: int = 3600,
        pool_pre_ping: bool = True,
    ):
        if not database_url:
            raise ValueError("database_url 不能为空")

        self.database_url = database_url
        self._engine = self._create_engine(
            database_url,
            echo=echo,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
            pool_pre_ping=pool_pre_ping,
        )
        self._session_maker = sessionmaker(
            autocommit=False,
            autoflush=True,
            bind=self._engine,
        )
        logger.info("数据库session创建成功")

    @classmethod
    def from_settings(cls, settings) -> "DatabaseManager":
        """从 DatabaseSettings 创建"""
        return cls(
            settings.url,
            echo=settings.echo,
            pool_size=settings.pool_size,
            max_overflow=settings.max_overflow,
            pool_timeout=settings.pool_timeout,
            pool_recycle=settings.pool_recycle,
            pool_pre_ping=settings.pool_pre_ping,
        )

    @staticmethod
    def _create_engine(database_url: str, echo: bool, **pool_options) -> Engine:
        if database_url.startswith("sqlite://"):
            db_path = database_url.split("sqlite:///", 1)[-1] if "sqlite:///" in database_url else ""
            is_memory_db = db_path in ("", ":memory:")

            if is_memory_db:
                # 内存数据库：使用 StaticPool（单连接），多线程共享
                engine = create_engine(
                    database_url,
                    echo=echo,
                    connect_args={"check_same_thread": False},
                    poolclass=StaticPool,
                )
                logger.info("SQLite内存数据库引擎创建成功（StaticPool）")
                return engine

            engine = create_engine(
                database_url,
                echo=echo,
                connect_args={
                    "check_same_thread": False,
                    "timeout": pool_options["pool_timeout"],
                },
                poolclass=QueuePool,
                pool_size=pool_options["pool_size"],
                max_overflow=pool_options["max_overflow"],
                pool_timeout=pool_options["pool_timeout"],
                pool_pre_ping=pool_options["pool_pre_ping"],
                pool_recycle=pool_options["pool_recycle"],
            )
            logger.info(f"SQLite文件数据库引擎创建成功（QueuePool, pool_size={pool_options['pool_size']}）")
            return engine

        engine = create_engine(database_url, echo=echo, **pool_options)
        logger.info("数据库引擎创建成功")
        return engine

    @property
    def engine(self) -> Engine:
        return self._engine

    def create_all(self) -> None:
        """创建所有表"""
        # 延迟导入，确保模型已注册到 Base.metadata
        from ytwofactor import models  # noqa: F401
        Base.metadata.create_all(self._engine)

    def drop_all(self) -> None:
        Base.metadata.drop_all(self._engine)

    def dispose(self) -> None:
        """释放连接池"""
        self._engine.dispose()
        logger.info("数据库引擎已释放")

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """事务会话上下文管理器

        - 正常退出时提交
        - 异常时回滚并重新抛出
        - 总是关闭会话
        """
        session = self._session_maker()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
