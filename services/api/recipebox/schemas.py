"""Pydantic schemas for RecipeBox API.

Request/response models for:
- Recipes (with ingredients and steps)
- Recipe imports
- Recipe images
- Recipe revisions
"""

from datetime import datetime
from typing import Annotated, Optional, Literal

from pydantic import AfterValidator, AliasChoices, BaseModel, ConfigDict, Field, HttpUrl


RecipeStatus = Literal["processing", "succeeded", "failed"]


def _strip_required(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("must not be blank")
    return value


StrippedStr = Annotated[str, AfterValidator(_strip_required)]


# --- Ingredients / Steps ---

class RecipeIngredientIn(BaseModel):
    raw_text: StrippedStr = Field(..., min_length=1)
    normalized_name: StrippedStr = Field(..., min_length=1, max_length=200)
    position: Optional[int] = Field(None, ge=0)


class RecipeStepIn(BaseModel):
    step_text: StrippedStr = Field(..., min_length=1)
    position: Optional[int] = Field(None, ge=0)


class RecipeIngredientOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    recipe_id: str
    raw_text: str
    normalized_name: str
    position: int
    created_at: datetime
    updated_at: datetime


class RecipeStepOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    recipe_id: str
    step_text: str
    position: int
    created_at: datetime
    updated_at: datetime


# --- Recipe ---

class RecipeCreate(BaseModel):
    title: StrippedStr = Field(..., min_length=1, max_length=200)
    cook_time_minutes: Optional[int] = Field(None, ge=0)
    prep_time_minutes: Optional[int] = Field(None, ge=0)
    source_url: Optional[HttpUrl] = None
    ingredients: list[RecipeIngredientIn] = Field(..., min_length=1)
    steps: list[RecipeStepIn] = Field(..., min_length=1)


class RecipePatch(BaseModel):
    title: Optional[StrippedStr] = Field(None, min_length=1, max_length=200)
    cook_time_minutes: Optional[int] = Field(None, ge=0)
    prep_time_minutes: Optional[int] = Field(None, ge=0)
    ingredients: Optional[list[RecipeIngredientIn]] = None  # Replaces all ingredients if provided
    steps: Optional[list[RecipeStepIn]] = None  # Replaces all steps if provided


class RecipeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    title: str
    cook_time_minutes: Optional[int]
    prep_time_minutes: Optional[int]
    source_url: Optional[str]
    status: RecipeStatus
    error_message: Optional[str]
    created_at: datetime
    updated_at: datetime


class RecipeListItemOut(BaseModel):
    """Lighter recipe model for list views."""
    id: str
    title: str
    status: RecipeStatus
    error_message: Optional[str]
    source_url: Optional[str]
    created_at: datetime
    updated_at: datetime
    ingredients_preview: list[str] = []


class RecipeListOut(BaseModel):
    data: list[RecipeListItemOut]
    next_cursor: Optional[str] = None


class RecipeWriteResult(BaseModel):
    """Response for create/update: the recipe and its children."""
    recipe: RecipeOut
    ingredients: list[RecipeIngredientOut]
    steps: list[RecipeStepOut]


# --- Recipe Import ---

class RecipeImportCreate(BaseModel):
    source_url: HttpUrl


class RecipeImportOut(BaseModel):
    """Import row as returned to clients (no user_id)."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    recipe_id: Optional[str]
    source_url: str
    status: RecipeStatus
    attempt_count: int
    error_code: Optional[str]
    error_message: Optional[str]
    metadata: dict = Field(default_factory=dict, validation_alias=AliasChoices("import_metadata", "metadata"))
    created_at: datetime
    updated_at: datetime


class RecipeImportResult(BaseModel):
    recipe: RecipeOut
    import_: RecipeImportOut = Field(..., alias="import")

    model_config = ConfigDict(populate_by_name=True)


class RecipeImportListOut(BaseModel):
    data: list[RecipeImportOut]
    next_cursor: Optional[str] = None


# --- Recipe Image ---

class RecipeImageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    recipe_id: str
    storage_path: str
    position: int
    content_type: Optional[str]
    width: Optional[int]
    height: Optional[int]
    created_at: datetime
    url: str = ""  # Signed, time-limited


# --- Recipe Detail ---

class RecipeDetailOut(BaseModel):
    recipe: RecipeOut
    ingredients: list[RecipeIngredientOut]
    steps: list[RecipeStepOut]
    import_: Optional[RecipeImportOut] = Field(None, alias="import")
    recipe_images: list[RecipeImageOut] = []

    model_config = ConfigDict(populate_by_name=True)


# --- Revisions ---

class RecipeRevisionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    recipe_id: str
    changes: dict
    created_at: datetime


class RecipeRevisionListOut(BaseModel):
    data: list[RecipeRevisionOut]
    next_cursor: Optional[str] = None
