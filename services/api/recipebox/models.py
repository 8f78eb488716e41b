"""SQLAlchemy ORM models for RecipeBox.

Tables:
- recipes: Recipe owned by a user, with import status tracking
- recipe_ingredients: Ordered ingredient lines for a recipe
- recipe_steps: Ordered cooking steps for a recipe
- recipe_images: Stored images, served through signed URLs
- recipe_imports: One row per URL import attempt
- recipe_revisions: Change log for recipe edits
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Text,
    Integer,
    ForeignKey,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from .db import Base
from .orm_types import JSONDocument


STATUS_PROCESSING = "processing"
STATUS_SUCCEEDED = "succeeded"
STATUS_FAILED = "failed"
RECIPE_STATUSES = (STATUS_PROCESSING, STATUS_SUCCEEDED, STATUS_FAILED)

IMPORT_PLACEHOLDER_TITLE = "Importing recipe"


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Recipe(Base):
    """Core recipe scoped to its owner."""
    __tablename__ = "recipes"
    __table_args__ = (
        Index("ix_recipes_user_id", "user_id"),
        Index("ix_recipes_user_updated", "user_id", "updated_at"),
        UniqueConstraint("user_id", "source_url", name="uq_recipes_user_source_url"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    cook_time_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    prep_time_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    source_url: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)

    # Status: processing | succeeded | failed
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=STATUS_SUCCEEDED)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    # Relationships
    ingredients: Mapped[list["RecipeIngredient"]] = relationship(
        "RecipeIngredient", back_populates="recipe", cascade="all, delete-orphan",
        order_by="RecipeIngredient.position"
    )
    steps: Mapped[list["RecipeStep"]] = relationship(
        "RecipeStep", back_populates="recipe", cascade="all, delete-orphan",
        order_by="RecipeStep.position"
    )
    images: Mapped[list["RecipeImage"]] = relationship(
        "RecipeImage", back_populates="recipe", cascade="all, delete-orphan",
        order_by="RecipeImage.position"
    )
    imports: Mapped[list["RecipeImport"]] = relationship(
        "RecipeImport", back_populates="recipe",
        order_by="desc(RecipeImport.created_at)"
    )
    revisions: Mapped[list["RecipeRevision"]] = relationship(
        "RecipeRevision", back_populates="recipe", cascade="all, delete-orphan",
        order_by="desc(RecipeRevision.created_at)"
    )

    @property
    def latest_import(self) -> Optional["RecipeImport"]:
        return self.imports[0] if self.imports else None


class RecipeIngredient(Base):
    """Ingredient line as written, plus its normalized name."""
    __tablename__ = "recipe_ingredients"
    __table_args__ = (
        Index("ix_recipe_ingredients_recipe_id", "recipe_id"),
        Index("ix_recipe_ingredients_normalized_name", "normalized_name"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    recipe_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("recipes.id", ondelete="CASCADE"), nullable=False
    )

    raw_text: Mapped[str] = mapped_column(Text, nullable=False)
    normalized_name: Mapped[str] = mapped_column(String(200), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    recipe: Mapped["Recipe"] = relationship("Recipe", back_populates="ingredients")


class RecipeStep(Base):
    """Ordered cooking step within a recipe."""
    __tablename__ = "recipe_steps"
    __table_args__ = (
        Index("ix_recipe_steps_recipe_id", "recipe_id"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    recipe_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("recipes.id", ondelete="CASCADE"), nullable=False
    )

    step_text: Mapped[str] = mapped_column(Text, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    recipe: Mapped["Recipe"] = relationship("Recipe", back_populates="steps")


class RecipeImage(Base):
    """Image stored in the private bucket."""
    __tablename__ = "recipe_images"
    __table_args__ = (
        Index("ix_recipe_images_recipe_id", "recipe_id"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    recipe_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("recipes.id", ondelete="CASCADE"), nullable=False
    )

    storage_path: Mapped[str] = mapped_column(String(500), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    content_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    width: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    height: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    # Origin URL for images harvested during import
    source_url: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    recipe: Mapped["Recipe"] = relationship("Recipe", back_populates="images")


class RecipeImport(Base):
    """One URL import attempt; status mirrors the recipe it produced."""
    __tablename__ = "recipe_imports"
    __table_args__ = (
        Index("ix_recipe_imports_user_id", "user_id"),
        Index("ix_recipe_imports_recipe_id", "recipe_id"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    recipe_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("recipes.id", ondelete="SET NULL"), nullable=True
    )

    source_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=STATUS_PROCESSING)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Raw extraction output, harvested image report, model info
    # ("metadata" is reserved on declarative classes)
    import_metadata: Mapped[dict] = mapped_column(
        "metadata", JSONDocument, nullable=False, default=dict
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    recipe: Mapped[Optional["Recipe"]] = relationship("Recipe", back_populates="imports")


class RecipeRevision(Base):
    """Field-level change record written on every recipe edit."""
    __tablename__ = "recipe_revisions"
    __table_args__ = (
        Index("ix_recipe_revisions_recipe_lookup", "recipe_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    recipe_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("recipes.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    changes: Mapped[dict] = mapped_column(JSONDocument, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    recipe: Mapped["Recipe"] = relationship("Recipe", back_populates="revisions")
