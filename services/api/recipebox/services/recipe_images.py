"""Recipe image storage.

Images live in a private bucket under {user_id}/{recipe_id}/{uuid}.{ext};
clients only ever see short-lived signed URLs.
"""

import io
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from PIL import Image, UnidentifiedImageError
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..exceptions import FileTooLargeError, InvalidFileError, NotFoundError, StorageError
from ..models import RecipeImage
from ..schemas import RecipeImageOut
from ..settings import settings
from .recipes import get_owned_recipe

logger = logging.getLogger("recipebox.images")

ALLOWED_CONTENT_TYPES = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}

PIL_FORMATS = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
}


@dataclass
class ImageInfo:
    content_type: str
    width: int
    height: int


def inspect_image(data: bytes, declared_type: Optional[str] = None) -> ImageInfo:
    """Open the bytes with Pillow and return the real type and dimensions.

    Raises InvalidFileError for anything that is not a decodable
    jpeg/png/webp, or whose contents disagree with declared_type.
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = img.format
            width, height = img.size
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError, Image.DecompressionBombError) as e:
        raise InvalidFileError("File is not a valid image.") from e

    content_type = PIL_FORMATS.get(fmt or "")
    if content_type is None:
        raise InvalidFileError(f"Unsupported image format: {fmt}.")
    if declared_type and declared_type != content_type:
        raise InvalidFileError("File contents do not match its content type.")
    return ImageInfo(content_type=content_type, width=width, height=height)


def image_out(store, image: RecipeImage) -> RecipeImageOut:
    return RecipeImageOut.model_validate(image).model_copy(
        update={"url": store.signed_url(image.storage_path)}
    )


def _next_position(db: Session, recipe_id: str) -> int:
    current = db.execute(
        select(func.max(RecipeImage.position)).where(RecipeImage.recipe_id == recipe_id)
    ).scalar()
    return 0 if current is None else current + 1


def store_recipe_image(
    db: Session,
    store,
    user_id: str,
    recipe_id: str,
    data: bytes,
    info: ImageInfo,
    source_url: Optional[str] = None,
) -> RecipeImage:
    """Upload verified bytes and insert the row; the object is removed if the insert fails."""
    ext = ALLOWED_CONTENT_TYPES[info.content_type]
    path = f"{user_id}/{recipe_id}/{uuid.uuid4()}.{ext}"

    store.put_bytes(key=path, content_type=info.content_type, data=data)

    image = RecipeImage(
        recipe_id=recipe_id,
        storage_path=path,
        position=_next_position(db, recipe_id),
        content_type=info.content_type,
        width=info.width,
        height=info.height,
        source_url=source_url,
    )
    db.add(image)
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to save image row for {path}, removing object: {e}")
        try:
            store.delete(path)
        except StorageError:
            logger.warning(f"Orphaned image object left at {path}")
        raise StorageError("Failed to save image metadata.") from e
    db.refresh(image)
    return image


def upload_recipe_image(
    db: Session,
    store,
    user_id: str,
    recipe_id: str,
    data: bytes,
    content_type: Optional[str],
) -> RecipeImage:
    get_owned_recipe(db, user_id, recipe_id)

    if content_type not in ALLOWED_CONTENT_TYPES:
        raise InvalidFileError("Invalid file type. Only JPEG, PNG and WebP are allowed.")
    if len(data) > settings.image_max_upload_bytes:
        raise FileTooLargeError("File too large.")
    if not data:
        raise InvalidFileError("File is empty.")

    info = inspect_image(data, declared_type=content_type)
    image = store_recipe_image(db, store, user_id, recipe_id, data, info)
    logger.info(f"Uploaded image {image.id} to recipe {recipe_id}")
    return image


def list_recipe_images(db: Session, user_id: str, recipe_id: str) -> list[RecipeImage]:
    get_owned_recipe(db, user_id, recipe_id)
    return list(
        db.execute(
            select(RecipeImage)
            .where(RecipeImage.recipe_id == recipe_id)
            .order_by(RecipeImage.position, RecipeImage.created_at)
        ).scalars()
    )


def delete_recipe_image(db: Session, store, user_id: str, recipe_id: str, image_id: str) -> None:
    """Remove the stored object, then the row. A storage failure keeps the row."""
    get_owned_recipe(db, user_id, recipe_id)
    image = db.execute(
        select(RecipeImage).where(RecipeImage.id == image_id, RecipeImage.recipe_id == recipe_id)
    ).scalar_one_or_none()
    if image is None:
        raise NotFoundError("Image")

    store.delete(image.storage_path)

    db.delete(image)
    db.commit()
    logger.info(f"Deleted image {image_id} from recipe {recipe_id}")
