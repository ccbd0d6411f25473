"""
Celery 任务模块：订阅续费
"""
from app.tasks.subscription_tasks import process_subscription_renewals_task

__all__ = [
    "process_subscription_renewals_task",
]
