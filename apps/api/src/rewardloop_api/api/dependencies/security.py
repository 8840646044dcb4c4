from fastapi import Depends, Header, HTTPException, status

from rewardloop_api.core.settings import settings


async def require_internal_api_key(x_api_key: str = Header("", alias="X-API-Key")) -> None:
    """Reject requests without the shared key; open when no key is configured."""

    if not settings.internal_api_key:
        return

    if x_api_key != settings.internal_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )


def internal_api_key_dependency() -> Depends:
    return Depends(require_internal_api_key)
