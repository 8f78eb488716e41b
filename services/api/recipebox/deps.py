"""FastAPI dependencies for RecipeBox API.

Provides:
- Caller resolution (header → env → 401)
"""

import uuid
from typing import Optional

from fastapi import Header, HTTPException

from .settings import settings


def get_current_user_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
) -> str:
    """Resolve the calling user.

    Authentication happens in front of this service; the gateway forwards
    the authenticated id in X-User-Id.

    Resolution order:
    1. X-User-Id header (must be a UUID, otherwise 401)
    2. settings.dev_user_id (local development)

    Raises:
        HTTPException 401 if no user can be resolved
    """
    if x_user_id:
        try:
            return str(uuid.UUID(x_user_id))
        except ValueError:
            raise HTTPException(status_code=401, detail="Unauthorized.")

    if settings.dev_user_id:
        return str(uuid.UUID(settings.dev_user_id))

    raise HTTPException(status_code=401, detail="Unauthorized.")
