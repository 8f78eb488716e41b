"""Recipe import API router.

Endpoints:
- POST /api/recipes/import - Start importing a recipe from a URL (202)
- POST /api/recipes/{id}/import/retry - Re-run a failed import (202)
- GET /api/recipe-imports - Import history for the caller

The pipeline itself runs after the response via BackgroundTasks.
"""

import uuid
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.orm import Session

from ..db import get_db, get_session_factory
from ..deps import get_current_user_id
from ..exceptions import ConflictError, InvalidQueryError, NotFoundError
from ..infra.idempotency import idempotency_precheck, idempotency_store_result, idempotency_clear_key
from ..schemas import (
    RecipeImportCreate,
    RecipeImportListOut,
    RecipeImportOut,
    RecipeImportResult,
    RecipeOut,
    RecipeStatus,
)
from ..services import recipe_import
from ..services.recipes import DEFAULT_PAGE_SIZE
from ..settings import settings
from ..storage.s3_compat import get_store

router = APIRouter()
limiter = Limiter(key_func=get_remote_address)
logger = logging.getLogger("recipebox.imports")


def _import_result(recipe, record) -> RecipeImportResult:
    return RecipeImportResult(
        recipe=RecipeOut.model_validate(recipe),
        import_=RecipeImportOut.model_validate(record),
    )


@router.post("/recipes/import", response_model=RecipeImportResult, status_code=202)
@limiter.limit(settings.rate_limit_import)
async def import_recipe(
    request: Request,
    payload: RecipeImportCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    session_factory=Depends(get_session_factory),
    store=Depends(get_store),
):
    """Create a placeholder recipe and import it from source_url in the background."""
    pre = await idempotency_precheck(request, user_id=user_id, route_key="recipe_import")
    if isinstance(pre, JSONResponse):
        return pre
    redis_key, req_hash = (pre[0], pre[1]) if pre else (None, None)

    try:
        recipe, record = recipe_import.create_recipe_import(db, user_id, str(payload.source_url))
    except ConflictError as e:
        if redis_key:
            await idempotency_clear_key(redis_key)
        raise HTTPException(status_code=409, detail=str(e))

    result = _import_result(recipe, record)
    if redis_key:
        await idempotency_store_result(
            redis_key, req_hash, status=202, body=result.model_dump(mode="json", by_alias=True)
        )

    background_tasks.add_task(recipe_import.process_recipe_import, session_factory, record.id, store)
    return result


@router.post("/recipes/{recipe_id}/import/retry", response_model=RecipeImportResult, status_code=202)
@limiter.limit(settings.rate_limit_import)
async def retry_import(
    request: Request,
    recipe_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    session_factory=Depends(get_session_factory),
    store=Depends(get_store),
):
    """Re-run the import pipeline for a failed recipe."""
    try:
        recipe, record = recipe_import.retry_recipe_import(db, user_id, str(recipe_id))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))

    background_tasks.add_task(recipe_import.process_recipe_import, session_factory, record.id, store)
    return _import_result(recipe, record)


@router.get("/recipe-imports", response_model=RecipeImportListOut)
def list_imports(
    status: Optional[RecipeStatus] = Query(None),
    limit: int = Query(DEFAULT_PAGE_SIZE),
    cursor: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    try:
        records, next_cursor = recipe_import.list_recipe_imports(
            db, user_id, status=status, limit=limit, cursor=cursor
        )
    except InvalidQueryError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return RecipeImportListOut(
        data=[RecipeImportOut.model_validate(r) for r in records],
        next_cursor=next_cursor,
    )
