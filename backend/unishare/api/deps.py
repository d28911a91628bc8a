from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from unishare.core.config import settings
from unishare.db.session import engine, get_db_session
from unishare.services.uploads import UploadCoordinator, build_upload_coordinator, is_usable_user_id
from unishare.utils.security import decode_access_token

bearer_scheme = HTTPBearer(auto_error=False)

MODERATOR_ROLES = frozenset({"admin", "moderator"})


@dataclass(frozen=True)
class CurrentUser:
    id: str
    roles: frozenset[str] = field(default_factory=frozenset)

    @property
    def can_moderate(self) -> bool:
        return bool(self.roles & MODERATOR_ROLES)


DatabaseSessionDep = Annotated[AsyncSession, Depends(get_db_session)]


@lru_cache
def get_upload_coordinator() -> UploadCoordinator:
    return build_upload_coordinator(settings, engine)


UploadCoordinatorDep = Annotated[UploadCoordinator, Depends(get_upload_coordinator)]


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> CurrentUser:
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    try:
        payload = decode_access_token(credentials.credentials)
        user_id = payload.get("sub")
        if not user_id or not is_usable_user_id(str(user_id)):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
        roles = frozenset(str(role) for role in payload.get("roles") or ())
    except HTTPException:
        raise
    except Exception as exc:  # noqa: BLE001
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc
    return CurrentUser(id=str(user_id), roles=roles)
