# Dependency injection utilities
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from navpulse.core.security import is_admin, verify_token

bearer_scheme = HTTPBearer(auto_error=False)


def get_pipeline(request: Request):
    return request.app.state.pipeline


def get_market_data(request: Request):
    return request.app.state.pipeline.market_data


async def get_current_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> dict:
    """Claims of a valid bearer token."""
    claims = verify_token(credentials.credentials if credentials else None)
    if claims is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return claims


async def require_admin(identity: dict = Depends(get_current_identity)) -> dict:
    if not is_admin(identity):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return identity
