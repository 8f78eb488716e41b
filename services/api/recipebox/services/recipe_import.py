"""Recipe import from a URL.

The request only creates a placeholder recipe (status=processing) and an
import row; the rest runs as a background task:

    fetch → sanitize → extract → persist → harvest images

Steps up to persist are all-or-nothing. Any failure there marks both the
recipe and the import as failed and leaves the recipe without children.
Image harvesting runs after the recipe is saved and never fails it.
Unexpected errors before the save are recorded as import_failed.
"""

import logging
import os
from typing import Callable, Optional
from urllib.parse import urljoin, urlparse

import httpx
from sqlalchemy import desc, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..exceptions import (
    ConflictError,
    FileTooLargeError,
    ImportPipelineError,
    InvalidFileError,
    StorageError,
)
from ..models import (
    IMPORT_PLACEHOLDER_TITLE,
    STATUS_FAILED,
    STATUS_PROCESSING,
    STATUS_SUCCEEDED,
    Recipe,
    RecipeImport,
    RecipeIngredient,
    RecipeStep,
)
from ..settings import settings
from ..storage.s3_compat import get_store
from .extraction import ExtractedRecipe, extract_recipe_data, sanitize_html
from .recipe_images import inspect_image, store_recipe_image
from .recipes import DEFAULT_PAGE_SIZE, DUPLICATE_SOURCE_MESSAGE, get_owned_recipe, paginate

logger = logging.getLogger("recipebox.imports")

HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")
IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp")


def _request_headers() -> dict:
    return {
        "User-Agent": settings.import_user_agent,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
    }


# --- Request-time operations ---

def create_recipe_import(db: Session, user_id: str, source_url: str) -> tuple[Recipe, RecipeImport]:
    """Create the placeholder recipe and its import row."""
    recipe = Recipe(
        user_id=user_id,
        title=IMPORT_PLACEHOLDER_TITLE,
        source_url=source_url,
        status=STATUS_PROCESSING,
    )
    record = RecipeImport(
        user_id=user_id,
        recipe=recipe,
        source_url=source_url,
        status=STATUS_PROCESSING,
        attempt_count=0,
    )
    db.add_all([recipe, record])
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError(DUPLICATE_SOURCE_MESSAGE)

    db.refresh(recipe)
    db.refresh(record)
    logger.info(f"Queued import {record.id} for {source_url} (recipe {recipe.id})")
    return recipe, record


def retry_recipe_import(db: Session, user_id: str, recipe_id: str) -> tuple[Recipe, RecipeImport]:
    """Put a failed import back into processing."""
    recipe = get_owned_recipe(db, user_id, recipe_id)
    record = recipe.latest_import
    if record is None:
        raise ConflictError("Recipe was not imported from a URL.")
    if recipe.status != STATUS_FAILED:
        raise ConflictError(f"Only failed imports can be retried (status is {recipe.status}).")

    recipe.status = STATUS_PROCESSING
    recipe.error_message = None
    record.status = STATUS_PROCESSING
    record.error_code = None
    record.error_message = None
    db.commit()
    db.refresh(recipe)
    db.refresh(record)
    logger.info(f"Retrying import {record.id} (attempt {record.attempt_count + 1})")
    return recipe, record


def list_recipe_imports(
    db: Session,
    user_id: str,
    *,
    status: Optional[str] = None,
    limit: int = DEFAULT_PAGE_SIZE,
    cursor: Optional[str] = None,
) -> tuple[list[RecipeImport], Optional[str]]:
    stmt = (
        select(RecipeImport)
        .where(RecipeImport.user_id == user_id)
        .order_by(desc(RecipeImport.created_at), desc(RecipeImport.id))
    )
    if status:
        stmt = stmt.where(RecipeImport.status == status)
    return paginate(stmt, db, limit, cursor)


# --- Network ---

async def fetch_page(url: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> tuple[str, str]:
    """GET an HTML page; returns (final_url, html) after redirects."""
    try:
        async with httpx.AsyncClient(
            transport=transport,
            timeout=settings.import_fetch_timeout_sec,
            follow_redirects=True,
            headers=_request_headers(),
        ) as client:
            response = await client.get(url)
    except httpx.HTTPError as e:
        logger.warning(f"Fetching {url} failed: {e}")
        raise ImportPipelineError("fetch_failed", "Could not reach the recipe page.") from e

    if not response.is_success:
        raise ImportPipelineError(
            "fetch_failed", f"The recipe page returned HTTP {response.status_code}."
        )

    content_type = response.headers.get("content-type", "").lower()
    if not any(t in content_type for t in HTML_CONTENT_TYPES):
        raise ImportPipelineError(
            "unsupported_content", f"Unsupported content type: {content_type or 'unknown'}."
        )
    return str(response.url), response.text


async def download_image(client: httpx.AsyncClient, url: str) -> bytes:
    """Stream an image, refusing anything over the configured byte cap."""
    max_bytes = settings.import_max_image_bytes
    async with client.stream("GET", url) as response:
        response.raise_for_status()
        declared = response.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > max_bytes:
            raise FileTooLargeError(f"Image is larger than {max_bytes} bytes.")
        chunks = []
        total = 0
        async for chunk in response.aiter_bytes():
            total += len(chunk)
            if total > max_bytes:
                raise FileTooLargeError(f"Image is larger than {max_bytes} bytes.")
            chunks.append(chunk)
    return b"".join(chunks)


def select_image_urls(urls: list[str], base_url: str, limit: Optional[int] = None) -> list[str]:
    """Absolute, de-duplicated jpg/png/webp URLs, at most `limit` of them."""
    limit = settings.import_max_images if limit is None else limit
    selected: list[str] = []
    for url in urls:
        absolute = urljoin(base_url, url.strip())
        parsed = urlparse(absolute)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            continue
        ext = os.path.splitext(parsed.path)[1].lower()
        if ext not in IMAGE_EXTENSIONS:
            continue
        if absolute not in selected:
            selected.append(absolute)
        if len(selected) >= limit:
            break
    return selected


# --- Background pipeline ---

def _persist_extraction(
    db: Session,
    recipe: Recipe,
    record: RecipeImport,
    extracted: ExtractedRecipe,
    metadata: dict,
) -> None:
    """Write the recipe, its children and the import outcome in one commit."""
    recipe.title = extracted.title
    recipe.cook_time_minutes = extracted.cook_time_minutes
    recipe.prep_time_minutes = extracted.prep_time_minutes
    recipe.status = STATUS_SUCCEEDED
    recipe.error_message = None
    recipe.ingredients = [
        RecipeIngredient(raw_text=ing.raw_text, normalized_name=ing.normalized_name, position=i)
        for i, ing in enumerate(extracted.ingredients)
    ]
    recipe.steps = [
        RecipeStep(step_text=step.step_text, position=i)
        for i, step in enumerate(extracted.steps)
    ]

    record.status = STATUS_SUCCEEDED
    record.error_code = None
    record.error_message = None
    record.import_metadata = metadata
    db.commit()


def _mark_failed(db: Session, recipe_id: Optional[str], import_id: str, code: str, message: str) -> None:
    record = db.get(RecipeImport, import_id)
    if recipe_id is None and record is not None:
        recipe_id = record.recipe_id
    recipe = db.get(Recipe, recipe_id) if recipe_id else None
    if record is not None:
        record.status = STATUS_FAILED
        record.error_code = code
        record.error_message = message
    if recipe is not None:
        recipe.status = STATUS_FAILED
        recipe.error_message = message
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(f"Could not record failure of import {import_id}")
        return
    logger.warning(f"Import {import_id} failed [{code}]: {message}")


async def _harvest_images(
    db: Session,
    store,
    recipe: Recipe,
    record: RecipeImport,
    image_urls: list[str],
    base_url: str,
) -> None:
    candidates = select_image_urls(image_urls, base_url)
    if not candidates:
        return

    report = []
    async with httpx.AsyncClient(
        timeout=settings.import_fetch_timeout_sec,
        follow_redirects=True,
        headers=_request_headers(),
    ) as client:
        for url in candidates:
            try:
                data = await download_image(client, url)
                info = inspect_image(data)
                image = store_recipe_image(db, store, recipe.user_id, recipe.id, data, info, source_url=url)
                report.append({"url": url, "status": "stored", "image_id": image.id})
            except (httpx.HTTPError, InvalidFileError, StorageError) as e:
                logger.warning(f"Skipping image {url} for recipe {recipe.id}: {e}")
                report.append({"url": url, "status": "skipped", "reason": str(e)})

    record.import_metadata = {**(record.import_metadata or {}), "images": report}
    db.commit()


async def run_recipe_import(db: Session, import_id: str, store=None) -> None:
    record = db.get(RecipeImport, import_id)
    if record is None:
        logger.warning(f"Import {import_id} no longer exists")
        return
    if record.status != STATUS_PROCESSING:
        logger.info(f"Import {import_id} is {record.status}, nothing to do")
        return

    record.attempt_count += 1
    db.commit()

    recipe = record.recipe
    recipe_id = recipe.id if recipe is not None else None
    if recipe is None:
        _mark_failed(db, None, import_id, "persist_failed", "The recipe was deleted before the import finished.")
        return

    source_url = record.source_url
    logger.info(f"Import {import_id} attempt {record.attempt_count}: {source_url}")

    try:
        final_url, html = await fetch_page(source_url)
        content = sanitize_html(html, base_url=final_url)
        extracted = await extract_recipe_data(content)
        metadata = {
            "final_url": final_url,
            "content_chars": len(content),
            "model": settings.gemini_text_model,
            "extraction": extracted.model_dump(),
        }
        _persist_extraction(db, recipe, record, extracted, metadata)
    except ImportPipelineError as e:
        db.rollback()
        _mark_failed(db, recipe_id, import_id, e.code, e.message)
        return
    except SQLAlchemyError:
        db.rollback()
        logger.exception(f"Import {import_id} could not be saved")
        _mark_failed(db, recipe_id, import_id, "persist_failed", "Failed to save the imported recipe.")
        return

    logger.info(
        f"Import {import_id} succeeded: {len(extracted.ingredients)} ingredients, {len(extracted.steps)} steps"
    )

    if extracted.images:
        try:
            await _harvest_images(db, store or get_store(), recipe, record, extracted.images, final_url)
        except Exception:
            db.rollback()
            logger.exception(f"Image harvest for import {import_id} crashed; the recipe is kept")


async def process_recipe_import(session_factory: Callable[[], Session], import_id: str, store=None) -> None:
    """Background entry point; owns its session and never raises."""
    db = session_factory()
    try:
        await run_recipe_import(db, import_id, store=store)
    except Exception:
        logger.exception(f"Import {import_id} crashed")
        db.rollback()
        record = db.get(RecipeImport, import_id)
        if record is not None and record.status == STATUS_PROCESSING:
            _mark_failed(db, None, import_id, "import_failed", "Unexpected error while importing the recipe.")
    finally:
        db.close()
