from typing import List, Optional, Tuple

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from memory_care.database.models import (
    IMAGES_PER_SESSION,
    GroundTruth,
    ImageStatus,
    ReferenceImage,
)
from memory_care.schemas import GroundTruthUpdate, GroundTruthUpsert
from memory_care.services.errors import (
    ImageAlreadyAssigned,
    ImageInUse,
    InvalidImageSelection,
    NotFoundError,
)


async def register_image(
    db: AsyncSession,
    uploader_id: str,
    url: str,
    ground_truth: Optional[GroundTruthUpsert] = None,
) -> ReferenceImage:
    """
    Регистрирует загруженную в хранилище фотографию как свободную.
    Байты изображения сюда не попадают, только URL.
    """
    image = ReferenceImage(url=url, uploader_id=uploader_id, status=ImageStatus.free)
    if ground_truth:
        image.ground_truth = GroundTruth(
            text=ground_truth.text,
            keywords=ground_truth.keywords,
            guide_questions=ground_truth.guide_questions,
        )
    else:
        image.ground_truth = None
    db.add(image)
    await db.commit()
    logger.info(f"Image {image.id} registered by {uploader_id}")
    return image


async def get_image(db: AsyncSession, image_id: str) -> ReferenceImage:
    image = await db.scalar(select(ReferenceImage).where(ReferenceImage.id == image_id))
    if not image:
        raise NotFoundError(f"Фотография {image_id} не найдена")
    return image


async def mark_free(db: AsyncSession, image_id: str) -> ReferenceImage:
    image = await get_image(db, image_id)
    image.status = ImageStatus.free
    await db.commit()
    return image


async def try_reserve(db: AsyncSession, image_ids: List[str]) -> None:
    """
    Атомарно переводит ровно три свободные фотографии в assigned_to_session.

    Строки фотографий блокируются (SELECT ... FOR UPDATE) и проверяются до
    записи, поэтому при отказе ничего не меняется. Условное UPDATE затем
    повторяет проверку: если изменилось меньше строк, чем запрошено,
    транзакция откатывается целиком. Фиксацию выполняет вызывающий код.

    :raises InvalidImageSelection: не ровно 3 разных ID
    :raises NotFoundError: фотография не существует
    :raises ImageAlreadyAssigned: хотя бы одна фотография не свободна
    """
    unique_ids = set(image_ids)
    if len(image_ids) != IMAGES_PER_SESSION or len(unique_ids) != IMAGES_PER_SESSION:
        raise InvalidImageSelection(
            f"Нужно ровно {IMAGES_PER_SESSION} разных фотографии, получено: {image_ids}"
        )

    locked = await db.execute(
        select(ReferenceImage)
        .where(ReferenceImage.id.in_(unique_ids))
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    images = list(locked.scalars().all())
    missing = unique_ids - {image.id for image in images}
    if missing:
        raise NotFoundError(f"Фотографии не найдены: {sorted(missing)}")
    taken = [image.id for image in images if image.status != ImageStatus.free]
    if taken:
        raise ImageAlreadyAssigned(
            f"Фотографии уже используются в другой сессии: {sorted(taken)}"
        )

    result = await db.execute(
        update(ReferenceImage)
        .where(
            ReferenceImage.id.in_(unique_ids),
            ReferenceImage.status == ImageStatus.free,
        )
        .values(status=ImageStatus.assigned_to_session)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != IMAGES_PER_SESSION:
        await db.rollback()
        raise ImageAlreadyAssigned(
            "Одна или несколько фотографий уже используются в другой сессии"
        )
    # UPDATE прошел мимо identity map
    for image in images:
        set_committed_value(image, "status", ImageStatus.assigned_to_session)


async def release(db: AsyncSession, image_id: str) -> ReferenceImage:
    """
    Административный возврат фотографии в пул. Удаление сессии его не вызывает.
    """
    image = await mark_free(db, image_id)
    logger.warning(f"Image {image_id} manually released back to the pool")
    return image


async def list_images(
    db: AsyncSession,
    uploader_id: Optional[str] = None,
    status: Optional[ImageStatus] = None,
    page: int = 1,
    limit: int = 10,
) -> Tuple[List[ReferenceImage], int]:
    """Галерея фотографий с пагинацией (страницы с 1)."""
    filters = []
    if uploader_id:
        filters.append(ReferenceImage.uploader_id == uploader_id)
    if status:
        filters.append(ReferenceImage.status == status)

    total = await db.scalar(
        select(func.count()).select_from(ReferenceImage).where(*filters)
    )
    result = await db.execute(
        select(ReferenceImage)
        .where(*filters)
        .order_by(ReferenceImage.uploaded_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), total or 0


async def delete_image(db: AsyncSession, image_id: str) -> None:
    """Удалить можно только свободную фотографию."""
    image = await get_image(db, image_id)
    if image.status != ImageStatus.free:
        raise ImageInUse(f"Фотография {image_id} уже используется в сессии")
    await db.delete(image)
    await db.commit()
    logger.info(f"Image {image_id} deleted")


async def get_ground_truth_by_image(db: AsyncSession, image_id: str) -> GroundTruth:
    ground_truth = await db.scalar(
        select(GroundTruth).where(GroundTruth.image_id == image_id)
    )
    if not ground_truth:
        raise NotFoundError(f"Эталонное описание для фотографии {image_id} не найдено")
    return ground_truth


async def upsert_ground_truth(
    db: AsyncSession, image_id: str, body: GroundTruthUpsert
) -> GroundTruth:
    """Последняя запись побеждает: текст, ключевые слова и вопросы заменяются целиком."""
    image = await get_image(db, image_id)
    if image.ground_truth is None:
        image.ground_truth = GroundTruth(
            text=body.text,
            keywords=body.keywords,
            guide_questions=body.guide_questions,
        )
    else:
        image.ground_truth.text = body.text
        image.ground_truth.keywords = list(body.keywords)
        image.ground_truth.guide_questions = list(body.guide_questions)
    await db.commit()
    await db.refresh(image.ground_truth)
    return image.ground_truth


async def update_ground_truth(
    db: AsyncSession, image_id: str, body: GroundTruthUpdate
) -> GroundTruth:
    ground_truth = await get_ground_truth_by_image(db, image_id)
    if body.text is not None:
        ground_truth.text = body.text
    if body.keywords is not None:
        ground_truth.keywords = list(body.keywords)
    if body.guide_questions is not None:
        ground_truth.guide_questions = list(body.guide_questions)
    await db.commit()
    await db.refresh(ground_truth)
    return ground_truth
