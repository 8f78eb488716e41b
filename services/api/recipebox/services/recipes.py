"""Recipe service: manual authoring, listing, detail, edits and deletion.

Imported recipes are created by recipe_import; once they exist they are
ordinary recipes for everything in this module.
"""

import logging
from typing import Iterable, Optional, Sequence

from sqlalchemy import desc, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from ..core.text import normalize_ingredient_name, normalize_search_query, normalize_text
from ..exceptions import ConflictError, InvalidQueryError, NotFoundError, StorageError
from ..models import (
    STATUS_SUCCEEDED,
    Recipe,
    RecipeIngredient,
    RecipeRevision,
    RecipeStep,
    utcnow,
)
from ..schemas import RecipeCreate, RecipeIngredientIn, RecipePatch, RecipeStepIn

logger = logging.getLogger("recipebox.recipes")

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100

DUPLICATE_SOURCE_MESSAGE = "Recipe source_url already exists."


def in_position_order(items: Sequence) -> list:
    """Order submitted children by their position; unset positions keep submission order."""
    keyed = [
        (item.position if item.position is not None else index, item)
        for index, item in enumerate(items)
    ]
    keyed.sort(key=lambda pair: pair[0])
    return [item for _, item in keyed]


def build_ingredients(items: Iterable[RecipeIngredientIn]) -> list[RecipeIngredient]:
    return [
        RecipeIngredient(
            raw_text=normalize_text(item.raw_text),
            normalized_name=normalize_ingredient_name(item.normalized_name),
            position=position,
        )
        for position, item in enumerate(in_position_order(list(items)))
    ]


def build_steps(items: Iterable[RecipeStepIn]) -> list[RecipeStep]:
    return [
        RecipeStep(step_text=item.step_text.strip(), position=position)
        for position, item in enumerate(in_position_order(list(items)))
    ]


def decode_cursor(cursor: Optional[str]) -> int:
    if not cursor:
        return 0
    try:
        offset = int(cursor)
    except ValueError:
        raise InvalidQueryError("Invalid cursor.")
    if offset < 0:
        raise InvalidQueryError("Invalid cursor.")
    return offset


def check_page_size(limit: int) -> int:
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise InvalidQueryError(f"limit must be between 1 and {MAX_PAGE_SIZE}.")
    return limit


def paginate(stmt, db: Session, limit: int, cursor: Optional[str]):
    """Run an ordered select one row past the page; returns (rows, next_cursor)."""
    offset = decode_cursor(cursor)
    limit = check_page_size(limit)
    rows = db.execute(stmt.offset(offset).limit(limit + 1)).scalars().unique().all()
    next_cursor = str(offset + limit) if len(rows) > limit else None
    return list(rows[:limit]), next_cursor


def get_owned_recipe(db: Session, user_id: str, recipe_id: str) -> Recipe:
    recipe = db.execute(
        select(Recipe).where(Recipe.id == recipe_id, Recipe.user_id == user_id)
    ).scalar_one_or_none()
    if recipe is None:
        raise NotFoundError("Recipe")
    return recipe


def ingredients_preview(recipe: Recipe) -> list[str]:
    """Unique normalized names in position order, blanks dropped."""
    seen = []
    for ing in recipe.ingredients:
        name = (ing.normalized_name or "").strip()
        if name and name not in seen:
            seen.append(name)
    return seen


def create_recipe(db: Session, user_id: str, command: RecipeCreate) -> Recipe:
    recipe = Recipe(
        user_id=user_id,
        title=command.title,
        cook_time_minutes=command.cook_time_minutes,
        prep_time_minutes=command.prep_time_minutes,
        source_url=str(command.source_url) if command.source_url else None,
        status=STATUS_SUCCEEDED,
        ingredients=build_ingredients(command.ingredients),
        steps=build_steps(command.steps),
    )
    db.add(recipe)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError(DUPLICATE_SOURCE_MESSAGE)
    db.refresh(recipe)
    logger.info(f"Created recipe {recipe.id} for user {user_id}")
    return recipe


def list_recipes(
    db: Session,
    user_id: str,
    *,
    status: Optional[str] = None,
    q: Optional[str] = None,
    limit: int = DEFAULT_PAGE_SIZE,
    cursor: Optional[str] = None,
) -> tuple[list[Recipe], Optional[str]]:
    """List a user's recipes, newest edit first.

    q matches recipes having any ingredient whose normalized name contains
    it (case-insensitive). Recipes come back with ingredients loaded so
    ingredients_preview() does not hit the database again.
    """
    stmt = (
        select(Recipe)
        .where(Recipe.user_id == user_id)
        .options(selectinload(Recipe.ingredients))
        .order_by(desc(Recipe.updated_at), desc(Recipe.id))
    )
    if status:
        stmt = stmt.where(Recipe.status == status)

    term = normalize_search_query(q or "")
    if term:
        escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        matching = select(RecipeIngredient.recipe_id).where(
            RecipeIngredient.normalized_name.ilike(f"%{escaped}%", escape="\\")
        )
        stmt = stmt.where(Recipe.id.in_(matching))

    return paginate(stmt, db, limit, cursor)


def get_recipe_detail(db: Session, user_id: str, recipe_id: str) -> Recipe:
    recipe = db.execute(
        select(Recipe)
        .where(Recipe.id == recipe_id, Recipe.user_id == user_id)
        .options(
            selectinload(Recipe.ingredients),
            selectinload(Recipe.steps),
            selectinload(Recipe.images),
            selectinload(Recipe.imports),
        )
    ).scalar_one_or_none()
    if recipe is None:
        raise NotFoundError("Recipe")
    return recipe


def _child_summary(items) -> dict:
    return {"count": len(items)}


def update_recipe(db: Session, user_id: str, recipe_id: str, command: RecipePatch) -> Recipe:
    """Apply a partial update and record what changed as a revision."""
    recipe = get_owned_recipe(db, user_id, recipe_id)
    changes: dict = {}

    fields = command.model_dump(exclude_unset=True, include={"title", "cook_time_minutes", "prep_time_minutes"})
    for field, value in fields.items():
        if field == "title" and value is None:
            continue
        old = getattr(recipe, field)
        if old != value:
            changes[field] = {"from": old, "to": value}
            setattr(recipe, field, value)

    if command.ingredients is not None:
        changes["ingredients"] = {
            "from": _child_summary(recipe.ingredients),
            "to": _child_summary(command.ingredients),
        }
        recipe.ingredients = build_ingredients(command.ingredients)

    if command.steps is not None:
        changes["steps"] = {
            "from": _child_summary(recipe.steps),
            "to": _child_summary(command.steps),
        }
        recipe.steps = build_steps(command.steps)

    recipe.updated_at = utcnow()
    if changes:
        db.add(RecipeRevision(recipe_id=recipe.id, user_id=user_id, changes=changes))

    db.commit()
    db.refresh(recipe)
    logger.info(f"Updated recipe {recipe.id}: {sorted(changes)}")
    return recipe


def delete_recipe(db: Session, user_id: str, recipe_id: str, store=None) -> None:
    """Delete the recipe and its children; stored image objects are removed best-effort."""
    recipe = get_owned_recipe(db, user_id, recipe_id)
    storage_paths = [img.storage_path for img in recipe.images]

    db.delete(recipe)
    db.commit()
    logger.info(f"Deleted recipe {recipe_id}")

    if store is None:
        return
    for path in storage_paths:
        try:
            store.delete(path)
        except StorageError as e:
            logger.warning(f"Could not remove image object {path} for deleted recipe {recipe_id}: {e}")


def list_revisions(
    db: Session,
    user_id: str,
    recipe_id: str,
    *,
    limit: int = DEFAULT_PAGE_SIZE,
    cursor: Optional[str] = None,
) -> tuple[list[RecipeRevision], Optional[str]]:
    get_owned_recipe(db, user_id, recipe_id)
    stmt = (
        select(RecipeRevision)
        .where(RecipeRevision.recipe_id == recipe_id)
        .order_by(desc(RecipeRevision.created_at), desc(RecipeRevision.id))
    )
    return paginate(stmt, db, limit, cursor)
