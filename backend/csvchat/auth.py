"""
利用者の識別（外部IDプロバイダが発行したJWTを検証するだけ）

ログインやトークン発行は外部サービスの責務。ここではリクエストごとに
Authorization: Bearer <token> を検証し、CurrentUser を依存関係として渡す。
プロセス全体で共有する「現在のユーザー」状態は持たない。
"""

import logging
from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import AuthConfig

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CurrentUser:
    id: str
    email: str | None = None


def get_auth_config() -> AuthConfig:
    return AuthConfig.from_env()


def decode_user_token(token: str, config: AuthConfig) -> CurrentUser | None:
    """目的: JWTを検証して CurrentUser を返す。検証できなければ None。"""
    if not config.jwt_secret:
        logger.error("AUTH_JWT_SECRET is not configured; rejecting request")
        return None
    try:
        payload = jwt.decode(
            token,
            config.jwt_secret,
            algorithms=[config.jwt_algorithm],
            audience=config.jwt_audience,
            options={"verify_aud": config.jwt_audience is not None},
        )
    except JWTError as e:
        logger.info("Rejected bearer token: %s", type(e).__name__)
        return None

    user_id = payload.get("sub")
    if not user_id:
        return None
    email = payload.get("email")
    return CurrentUser(id=str(user_id), email=email if isinstance(email, str) else None)


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    config: AuthConfig = Depends(get_auth_config),
) -> CurrentUser:
    """目的: 認証済みの利用者を返す。未認証なら 401（LLM/SQLの呼び出し前に弾く）。"""
    user = decode_user_token(credentials.credentials, config) if credentials else None
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user
