"""后台清理调度器

使用 APScheduler 的 BackgroundScheduler 周期性清理内存中的过期状态：
- 限流记录（默认每 5 分钟）
- 登录挑战会话（默认每 2 分钟）

清理任务只在各组件自己的锁内操作内存字典，不涉及 I/O。

使用示例:
    sweeper = BackgroundSweeper()
    sweeper.add_interval_job(rate_limiter.cleanup, minutes=5, job_id="rate_limit_sweep")
    sweeper.start()
    ...
    sweeper.shutdown()
"""

from typing import Callable, List, Optional

from apscheduler.events import EVENT_JOB_ERROR, JobExecutionEvent
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ytwofactor.log import get_logger

logger = get_logger()


class BackgroundSweeper:
    """周期清理任务调度器

    Args:
        scheduler: 自定义的 BackgroundScheduler，默认创建单线程内存调度器
    """

    def __init__(self, scheduler: Optional[BackgroundScheduler] = None):
        self._scheduler = scheduler or BackgroundScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": ThreadPoolExecutor(max_workers=1)},
            job_defaults={"coalesce": True, "max_instances": 1},
            timezone="UTC",
        )
        self._scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def add_interval_job(self, func: Callable[[], int], minutes: float, job_id: str, name: str = None):
        """添加周期任务

        Args:
            func: 清理函数，返回清理的记录数
            minutes: 执行间隔（分钟）
            job_id: 任务 ID
            name: 任务名称
        """
        def run():
            cleaned = func()
            if cleaned:
                logger.info(f"Sweep job {job_id} removed {cleaned} expired entries")
            return cleaned

        return self._scheduler.add_job(
            run,
            trigger=IntervalTrigger(minutes=minutes),
            id=job_id,
            name=name or job_id,
            replace_existing=True,
        )

    def get_job_ids(self) -> List[str]:
        return [job.id for job in self._scheduler.get_jobs()]

    def start(self) -> None:
        """启动调度器"""
        if self._scheduler.running:
            logger.warning("Sweeper is already running")
            return
        self._scheduler.start()
        logger.info(f"Sweeper started with {len(self._scheduler.get_jobs())} jobs")

    def shutdown(self, wait: bool = True) -> None:
        """关闭调度器

        Args:
            wait: 是否等待正在执行的任务完成
        """
        if not self._scheduler.running:
            return
        self._scheduler.shutdown(wait=wait)
        logger.info("Sweeper shutdown complete")

    def _on_job_error(self, event: JobExecutionEvent) -> None:
        logger.error(f"Sweep job {event.job_id} failed: {event.exception}")
