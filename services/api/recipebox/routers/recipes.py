"""Recipes CRUD API router.

Endpoints:
- GET /api/recipes - List the caller's recipes (status, ingredient search, cursor)
- POST /api/recipes - Create recipe with ingredients and steps
- GET /api/recipes/{id} - Recipe with ingredients, steps, latest import, images
- PATCH /api/recipes/{id} - Partial update, replaces child lists when given
- DELETE /api/recipes/{id} - Delete recipe and its stored images
- GET /api/recipes/{id}/revisions - Edit history
"""

import uuid
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..db import get_db
from ..deps import get_current_user_id
from ..exceptions import ConflictError, InvalidQueryError, NotFoundError
from ..models import Recipe
from ..schemas import (
    RecipeCreate,
    RecipeDetailOut,
    RecipeImportOut,
    RecipeIngredientOut,
    RecipeListItemOut,
    RecipeListOut,
    RecipeOut,
    RecipePatch,
    RecipeRevisionListOut,
    RecipeRevisionOut,
    RecipeStatus,
    RecipeStepOut,
    RecipeWriteResult,
)
from ..services import recipes as recipe_service
from ..services.recipe_images import image_out
from ..storage.s3_compat import get_store

router = APIRouter()
logger = logging.getLogger("recipebox.recipes")


def _write_result(recipe: Recipe) -> RecipeWriteResult:
    return RecipeWriteResult(
        recipe=RecipeOut.model_validate(recipe),
        ingredients=[RecipeIngredientOut.model_validate(i) for i in recipe.ingredients],
        steps=[RecipeStepOut.model_validate(s) for s in recipe.steps],
    )


@router.get("/recipes", response_model=RecipeListOut)
def list_recipes(
    status: Optional[RecipeStatus] = Query(None),
    q: Optional[str] = Query(None, description="Ingredient name search"),
    limit: int = Query(recipe_service.DEFAULT_PAGE_SIZE),
    cursor: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    """List recipes, most recently updated first."""
    try:
        recipes, next_cursor = recipe_service.list_recipes(
            db, user_id, status=status, q=q, limit=limit, cursor=cursor
        )
    except InvalidQueryError as e:
        raise HTTPException(status_code=400, detail=str(e))

    items = [
        RecipeListItemOut(
            id=r.id,
            title=r.title,
            status=r.status,
            error_message=r.error_message,
            source_url=r.source_url,
            created_at=r.created_at,
            updated_at=r.updated_at,
            ingredients_preview=recipe_service.ingredients_preview(r),
        )
        for r in recipes
    ]
    return RecipeListOut(data=items, next_cursor=next_cursor)


@router.post("/recipes", response_model=RecipeWriteResult, status_code=201)
def create_recipe(
    payload: RecipeCreate,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    """Create a recipe by hand."""
    try:
        recipe = recipe_service.create_recipe(db, user_id, payload)
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _write_result(recipe)


@router.get("/recipes/{recipe_id}", response_model=RecipeDetailOut)
def get_recipe(
    recipe_id: uuid.UUID,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    store=Depends(get_store),
):
    """Get a recipe with everything needed to render it."""
    try:
        recipe = recipe_service.get_recipe_detail(db, user_id, str(recipe_id))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    latest = recipe.latest_import
    return RecipeDetailOut(
        recipe=RecipeOut.model_validate(recipe),
        ingredients=[RecipeIngredientOut.model_validate(i) for i in recipe.ingredients],
        steps=[RecipeStepOut.model_validate(s) for s in recipe.steps],
        import_=RecipeImportOut.model_validate(latest) if latest else None,
        recipe_images=[image_out(store, img) for img in recipe.images],
    )


@router.patch("/recipes/{recipe_id}", response_model=RecipeWriteResult)
def update_recipe(
    recipe_id: uuid.UUID,
    payload: RecipePatch,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    """Update title/times; ingredients and steps are replaced when present."""
    try:
        recipe = recipe_service.update_recipe(db, user_id, str(recipe_id), payload)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _write_result(recipe)


@router.delete("/recipes/{recipe_id}", status_code=204)
def delete_recipe(
    recipe_id: uuid.UUID,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    store=Depends(get_store),
):
    """Delete a recipe with its ingredients, steps, images and revisions."""
    try:
        recipe_service.delete_recipe(db, user_id, str(recipe_id), store=store)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return None


@router.get("/recipes/{recipe_id}/revisions", response_model=RecipeRevisionListOut)
def list_revisions(
    recipe_id: uuid.UUID,
    limit: int = Query(recipe_service.DEFAULT_PAGE_SIZE),
    cursor: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    try:
        revisions, next_cursor = recipe_service.list_revisions(
            db, user_id, str(recipe_id), limit=limit, cursor=cursor
        )
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidQueryError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return RecipeRevisionListOut(
        data=[RecipeRevisionOut.model_validate(r) for r in revisions],
        next_cursor=next_cursor,
    )
