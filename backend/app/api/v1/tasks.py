"""
异步任务状态 API：轮询 GET /tasks/{task_id} 获取续费任务结果
"""
from fastapi import APIRouter, Depends
from celery.result import AsyncResult

from app.celery_app import celery_app
from app.schemas.subscription import TaskStatusResponse
from app.schemas.auth import UserResponse
from app.api.v1.auth import require_admin

router = APIRouter()


@router.get("/{task_id}", response_model=TaskStatusResponse)
async def get_task_status(
    task_id: str,
    current_user: UserResponse = Depends(require_admin),
):
    """查询异步任务状态与结果。status: PENDING/STARTED/SUCCESS/FAILURE；成功时 result 有值，失败时 error 有值。"""
    result = AsyncResult(task_id, app=celery_app)
    res = None
    err = None
    if result.successful():
        res = result.result
    elif result.failed():
        err = str(result.result) if result.result else "Unknown error"
    return TaskStatusResponse(task_id=task_id, status=result.state, result=res, error=err)
