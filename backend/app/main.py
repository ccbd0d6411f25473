"""
FastAPI主应用入口
"""
import logging
import uuid
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager

from app.core.config import settings
from app.core.database import engine, Base
from app.core.exceptions import CheckoutError
from app.api.v1 import api_router
from app.core.logging import setup_logging
from app.core.health import check_db, check_redis, check_gateway
from app.services.payment_gateway import close_gateway_client

from app import models  # noqa: F401  注册所有表

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    # 启动时执行
    setup_logging()
    # 创建数据库表
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    if not settings.gateway_configured:
        logger.warning("支付网关凭据未配置，在线支付下单将不可用")

    yield

    # 关闭时执行
    await close_gateway_client()
    await engine.dispose()


app = FastAPI(
    title=settings.PROJECT_NAME,
    description="下单、支付回调校验与订阅续费API",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# CORS配置
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """为每个请求生成或透传 X-Request-ID，并写入 request.state"""
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    response = await call_next(request)
    response.headers["X-Request-ID"] = rid
    return response


def _error_response(
    error: str,
    code: str,
    request_id: Optional[str] = None,
    errors: Optional[List] = None,
) -> dict:
    body = {"success": False, "error": error, "code": code}
    if errors:
        body["errors"] = errors
    if request_id:
        body["request_id"] = request_id
    return body


_HTTP_CODES = {
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    429: "rate_limited",
}


@app.exception_handler(CheckoutError)
async def checkout_exception_handler(request: Request, exc: CheckoutError):
    """业务异常：按异常类型给出状态码与错误码"""
    rid = getattr(request.state, "request_id", None)
    if exc.status_code >= 500:
        logger.error("请求失败 %s %s code=%s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_response(exc.message, exc.code, rid, exc.errors),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """统一 HTTP 异常响应格式"""
    rid = getattr(request.state, "request_id", None)
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_response(
            exc.detail if isinstance(exc.detail, str) else str(exc.detail),
            _HTTP_CODES.get(exc.status_code, "http_error"),
            rid,
        ),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """422 校验错误统一格式"""
    rid = getattr(request.state, "request_id", None)
    errs = [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg", ""), "type": e.get("type", "")}
        for e in exc.errors()
    ]
    detail = errs[0]["msg"] if errs else "请求参数校验失败"
    return JSONResponse(
        status_code=422,
        content=_error_response(detail, "invalid_request", rid, errs),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """未捕获异常统一格式"""
    rid = getattr(request.state, "request_id", None)
    logger.exception("未处理异常 %s %s request_id=%s", request.method, request.url.path, rid)
    return JSONResponse(
        status_code=500,
        content=_error_response("服务器内部错误", "internal_error", rid),
    )


# 注册路由
app.include_router(api_router, prefix=settings.API_V1_STR)


@app.get("/")
async def root():
    """根路径"""
    return {
        "message": settings.PROJECT_NAME,
        "version": "1.0.0",
        "docs": "/docs"
    }


@app.get("/health")
async def health_check():
    """健康检查：返回各依赖连通状态"""
    db_ok, db_msg = await check_db()
    redis_ok, redis_msg = check_redis()
    gateway_ok, gateway_msg = check_gateway()
    all_ok = db_ok and redis_ok and gateway_ok
    return JSONResponse(
        content={
            "status": "healthy" if all_ok else "degraded",
            "service": "checkout-api",
            "dependencies": {
                "database": {"ok": db_ok, "message": db_msg},
                "redis": {"ok": redis_ok, "message": redis_msg},
                "gateway": {"ok": gateway_ok, "message": gateway_msg},
            },
        }
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        reload_excludes=["**/__pycache__/**", "**/*.pyc"],
    )
