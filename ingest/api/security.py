import hmac

from fastapi import Depends, HTTPException, Request, status

from ingest.core.config import Settings, get_settings


async def require_api_key(request: Request, settings: Settings = Depends(get_settings)) -> None:
    if not settings.api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="API key auth is not configured",
        )

    provided = request.headers.get(settings.api_key_header)
    if not provided or not hmac.compare_digest(provided.encode("utf-8"), settings.api_key.encode("utf-8")):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"job endpoints require a valid {settings.api_key_header} header",
        )
