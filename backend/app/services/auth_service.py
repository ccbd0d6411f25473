"""
认证服务：签发与解析访问令牌（注册/登录由外部账号系统负责）
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import jwt, JWTError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.core.config import settings
from app.models.user import User


class InvalidCredentialsError(ValueError):
    """令牌无效、过期或用户不存在"""


def create_access_token(subject: str, expires_delta: Optional[timedelta] = None) -> str:
    """签发访问令牌，sub 为用户名"""
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    return jwt.encode(
        {"sub": subject, "exp": expire},
        settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
    )


class AuthService:
    """认证服务类"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_user_by_username(self, username: str) -> Optional[User]:
        """根据用户名获取用户"""
        result = await self.db.execute(select(User).where(User.username == username))
        return result.scalar_one_or_none()

    async def get_current_user(self, token: str) -> User:
        """解析令牌并获取当前用户"""
        try:
            payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
        except JWTError as e:
            raise InvalidCredentialsError("无效的认证凭据") from e
        username = payload.get("sub")
        if not username:
            raise InvalidCredentialsError("无效的认证凭据")

        user = await self.get_user_by_username(username)
        if user is None:
            raise InvalidCredentialsError("无效的认证凭据")
        return user
