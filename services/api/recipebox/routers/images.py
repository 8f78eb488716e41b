"""Recipe images API router.

Endpoints:
- GET /api/recipes/{id}/images - Images with signed URLs
- POST /api/recipes/{id}/images - Upload an image (multipart "file")
- DELETE /api/recipes/{id}/images/{image_id} - Remove an image
"""

import uuid
import logging

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from sqlalchemy.orm import Session

from ..db import get_db
from ..deps import get_current_user_id
from ..exceptions import FileTooLargeError, InvalidFileError, NotFoundError, StorageError
from ..schemas import RecipeImageOut
from ..services import recipe_images
from ..settings import settings
from ..storage.s3_compat import get_store

logger = logging.getLogger("recipebox.images")

router = APIRouter()


@router.get("/recipes/{recipe_id}/images", response_model=list[RecipeImageOut])
def list_images(
    recipe_id: uuid.UUID,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    store=Depends(get_store),
):
    try:
        images = recipe_images.list_recipe_images(db, user_id, str(recipe_id))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return [recipe_images.image_out(store, img) for img in images]


@router.post("/recipes/{recipe_id}/images", response_model=RecipeImageOut, status_code=201)
async def upload_image(
    recipe_id: uuid.UUID,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    store=Depends(get_store),
):
    """Upload a JPEG, PNG or WebP image (max 5 MB)."""
    # One byte past the cap is enough to reject an oversized file
    data = await file.read(settings.image_max_upload_bytes + 1)
    try:
        image = recipe_images.upload_recipe_image(
            db, store, user_id, str(recipe_id), data, file.content_type
        )
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except FileTooLargeError as e:
        raise HTTPException(status_code=413, detail=str(e))
    except InvalidFileError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return recipe_images.image_out(store, image)


@router.delete("/recipes/{recipe_id}/images/{image_id}", status_code=204)
def delete_image(
    recipe_id: uuid.UUID,
    image_id: uuid.UUID,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    store=Depends(get_store),
):
    try:
        recipe_images.delete_recipe_image(db, store, user_id, str(recipe_id), str(image_id))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StorageError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return None
