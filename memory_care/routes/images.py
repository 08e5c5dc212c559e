from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from memory_care.database.db import get_db
from memory_care.database.models import ImageStatus, ReferenceImage, User, UserRole
from memory_care.repository import image as image_pool
from memory_care.schemas import (
    DeleteImageResponse,
    GroundTruthResponse,
    GroundTruthUpdate,
    GroundTruthUpsert,
    ImageCreate,
    ImageResponse,
    PaginatedImagesResponse,
)
from memory_care.services.access import (
    admin_access,
    caregiver_access,
    is_admin,
    staff_access,
)


router = APIRouter(prefix="/images", tags=["Images"])


def _ensure_owner(image: ReferenceImage, user: User):
    if image.uploader_id != user.id and not is_admin(user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Фотография загружена другим пользователем.",
        )


@router.post("", response_model=ImageResponse, status_code=status.HTTP_201_CREATED)
async def register_image(
    body: ImageCreate,
    current_user: User = Depends(caregiver_access),
    db: AsyncSession = Depends(get_db),
):
    """Регистрирует загруженную фотографию (по URL) с необязательным эталоном."""
    return await image_pool.register_image(
        db, uploader_id=current_user.id, url=body.url, ground_truth=body.ground_truth
    )


@router.get("", response_model=PaginatedImagesResponse)
async def list_images(
    status_filter: Optional[ImageStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user: User = Depends(staff_access),
    db: AsyncSession = Depends(get_db),
):
    """Галерея: опекун видит только свои фотографии."""
    uploader_id = current_user.id if current_user.role == UserRole.caregiver else None
    items, total = await image_pool.list_images(
        db, uploader_id=uploader_id, status=status_filter, page=page, limit=limit
    )
    return PaginatedImagesResponse(items=items, total=total, page=page, limit=limit)


@router.get(
    "/{image_id}", response_model=ImageResponse, dependencies=[Depends(staff_access)]
)
async def read_image(image_id: str, db: AsyncSession = Depends(get_db)):
    return await image_pool.get_image(db, image_id)


@router.delete("/{image_id}", response_model=DeleteImageResponse)
async def delete_image(
    image_id: str,
    current_user: User = Depends(caregiver_access),
    db: AsyncSession = Depends(get_db),
):
    image = await image_pool.get_image(db, image_id)
    _ensure_owner(image, current_user)
    await image_pool.delete_image(db, image_id)
    return DeleteImageResponse(id=image_id)


@router.put("/{image_id}/ground_truth", response_model=GroundTruthResponse)
async def upsert_ground_truth(
    image_id: str,
    body: GroundTruthUpsert,
    current_user: User = Depends(caregiver_access),
    db: AsyncSession = Depends(get_db),
):
    """Создает или полностью заменяет эталонное описание фотографии."""
    image = await image_pool.get_image(db, image_id)
    _ensure_owner(image, current_user)
    return await image_pool.upsert_ground_truth(db, image_id, body)


@router.patch("/{image_id}/ground_truth", response_model=GroundTruthResponse)
async def update_ground_truth(
    image_id: str,
    body: GroundTruthUpdate,
    current_user: User = Depends(caregiver_access),
    db: AsyncSession = Depends(get_db),
):
    image = await image_pool.get_image(db, image_id)
    _ensure_owner(image, current_user)
    return await image_pool.update_ground_truth(db, image_id, body)


@router.get(
    "/{image_id}/ground_truth",
    response_model=GroundTruthResponse,
    dependencies=[Depends(staff_access)],
)
async def read_ground_truth(image_id: str, db: AsyncSession = Depends(get_db)):
    return await image_pool.get_ground_truth_by_image(db, image_id)


@router.post(
    "/{image_id}/release",
    response_model=ImageResponse,
    dependencies=[Depends(admin_access)],
)
async def release_image(image_id: str, db: AsyncSession = Depends(get_db)):
    """Ручной возврат фотографии в пул свободных."""
    return await image_pool.release(db, image_id)
