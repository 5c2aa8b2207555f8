import hashlib
import hmac

from fastapi import Depends, Header, HTTPException, status

from brandtrust.core.auth import Principal
from brandtrust.core.config import Settings, get_settings
from brandtrust.services.repository import RepositoryUnavailableError, get_repository


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


async def get_machine_principal(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    x_module_id: str | None = Header(default=None, alias="X-Module-Id"),
) -> Principal:
    if not x_api_key or not x_module_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"machine auth requires {settings.api_key_header} and X-Module-Id",
        )

    try:
        credentials = await repository.get_machine_credentials(x_module_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if not credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid module credentials")

    key_hash = hash_api_key(x_api_key)
    matched = next((record for record in credentials if hmac.compare_digest(record.key_hash, key_hash)), None)
    if not matched:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid module credentials")

    return Principal(module_id=matched.module_id, scopes=set(matched.scopes))


def require_scope(principal: Principal, scope: str) -> None:
    try:
        principal.require_scopes({scope})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
