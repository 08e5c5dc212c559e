"""
Клиенты внешнего сервиса оценки.

Сам алгоритм сравнения описаний здесь не реализуется: ядро отправляет текст
пациента и эталонное описание и получает готовые показатели. Любая ошибка
транспорта, таймаут или некорректный ответ превращаются в ScorerUnavailable,
повторов внутри нет.
"""

from typing import List, Optional, Protocol

import httpx
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from memory_care.config.config import settings
from memory_care.database.models import GroundTruth
from memory_care.schemas import ConclusionsResult, ScoreResult, SessionRates
from memory_care.services.errors import ScorerUnavailable


class Scorer(Protocol):
    async def score(self, patient_text: str, ground_truth: GroundTruth) -> ScoreResult:
        ...


class ConclusionWriter(Protocol):
    async def write(
        self, rates: SessionRates, scores: List[ScoreResult]
    ) -> ConclusionsResult:
        ...


class HttpScorer:
    def __init__(
        self,
        base_url: str,
        timeout: float,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def _post(self, path: str, payload: dict) -> dict:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.post(url, json=payload)
                response.raise_for_status()
                return response.json()
        except httpx.TimeoutException as e:
            logger.error(f"Scorer timeout after {self.timeout}s on {url}: {e}")
            raise ScorerUnavailable(f"Сервис оценки не ответил за {self.timeout} с")
        except httpx.HTTPStatusError as e:
            logger.error(f"Scorer HTTP error {e.response.status_code}: {e.response.text}")
            raise ScorerUnavailable(
                f"Сервис оценки ответил ошибкой {e.response.status_code}"
            )
        except (httpx.RequestError, ValueError) as e:
            logger.error(f"Scorer request failed on {url}: {e}")
            raise ScorerUnavailable("Не удалось связаться с сервисом оценки")

    async def score(self, patient_text: str, ground_truth: GroundTruth) -> ScoreResult:
        payload = {
            "description": patient_text,
            "ground_truth": {
                "text": ground_truth.text,
                "keywords": ground_truth.keywords or [],
                "guide_questions": ground_truth.guide_questions or [],
            },
        }
        data = await self._post("/score", payload)
        try:
            return ScoreResult.model_validate(data)
        except PydanticValidationError as e:
            logger.error(f"Scorer returned malformed score: {e}")
            raise ScorerUnavailable("Сервис оценки вернул некорректный ответ")


class HttpConclusionWriter(HttpScorer):
    async def write(
        self, rates: SessionRates, scores: List[ScoreResult]
    ) -> ConclusionsResult:
        payload = {
            "rates": rates.model_dump(),
            "scores": [score.model_dump() for score in scores],
        }
        data = await self._post("/conclusions", payload)
        try:
            return ConclusionsResult.model_validate(data)
        except PydanticValidationError as e:
            logger.error(f"Conclusion writer returned malformed body: {e}")
            raise ScorerUnavailable("Сервис заключений вернул некорректный ответ")


_scorer: Optional[HttpScorer] = None
_conclusion_writer: Optional[HttpConclusionWriter] = None


def get_scorer() -> Scorer:
    """Зависимость FastAPI: клиент оценщика из настроек."""
    global _scorer
    if _scorer is None:
        _scorer = HttpScorer(settings.scorer_url, settings.scorer_timeout)
    return _scorer


def get_conclusion_writer() -> ConclusionWriter:
    global _conclusion_writer
    if _conclusion_writer is None:
        _conclusion_writer = HttpConclusionWriter(
            settings.scorer_url, settings.scorer_timeout
        )
    return _conclusion_writer
