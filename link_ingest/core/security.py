import hashlib
import hmac

from fastapi import Depends, Header, HTTPException, status

from link_ingest.core.auth import INGESTION_READ, INGESTION_WRITE, LINKS_WRITE, Principal, PrincipalType
from link_ingest.core.config import Settings, get_settings

ADMIN_SCOPES: set[str] = {INGESTION_READ, INGESTION_WRITE, LINKS_WRITE}


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


async def get_admin_principal(
    settings: Settings = Depends(get_settings),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> Principal:
    if not x_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"admin auth requires {settings.api_key_header}",
        )
    if not settings.admin_api_key_hashes:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="admin api keys are not configured",
        )

    key_hash = hash_api_key(x_api_key)
    matched = next(
        (candidate for candidate in settings.admin_api_key_hashes if hmac.compare_digest(candidate.lower(), key_hash)),
        None,
    )
    if matched is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid api key")

    return Principal(
        principal_type=PrincipalType.ADMIN,
        subject=f"admin:{matched[:12]}",
        scopes=set(ADMIN_SCOPES),
        role="admin",
    )


def require_scopes(principal: Principal, required: set[str]) -> None:
    try:
        principal.require_scopes(required)
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
