import json
import asyncio
import random
import logging
from typing import Optional, Type, TypeVar
from datetime import datetime, timezone
from pydantic import BaseModel, ValidationError
from google import genai
from google.genai import errors, types

from ..settings import settings

logger = logging.getLogger("recipebox.ai")

T = TypeVar("T", bound=BaseModel)


def rate_limit_backoff(attempt: int) -> float:
    """Exponential backoff with jitter: 1s, 2s, 4s... + up to 1s."""
    return (2 ** attempt) + random.random()


class AIClient:
    _instance = None

    def __init__(self):
        self.api_key = settings.gemini_api_key
        self.mode = settings.ai_mode  # "mock" or "gemini"
        self.max_retries = settings.ai_max_retries
        self._client: Optional[genai.Client] = None
        self.last_error: Optional[str] = None
        self.last_error_at: Optional[datetime] = None

        if self.mode == "gemini" and self.api_key:
            self._client = genai.Client(api_key=self.api_key)
        elif self.mode == "gemini":
            logger.warning("GEMINI_API_KEY is missing. Recipe extraction will not work.")

    @classmethod
    def get_instance(cls):
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def is_available(self) -> bool:
        return self.mode == "gemini" and self._client is not None

    def _record_error(self, e: Exception) -> None:
        self.last_error = f"{e.__class__.__name__}: {str(e)}"
        self.last_error_at = datetime.now(timezone.utc)

    async def _generate_with_backoff(self, model_id: str, prompt: str, config: types.GenerateContentConfig):
        attempt = 0
        while True:
            try:
                return await self._client.aio.models.generate_content(
                    model=model_id,
                    contents=prompt,
                    config=config,
                )
            except errors.APIError as e:
                if e.code == 429 and attempt < self.max_retries:
                    delay = rate_limit_backoff(attempt)
                    logger.warning(f"Gemini rate limited, retrying in {delay:.1f}s (attempt {attempt + 1})")
                    await asyncio.sleep(delay)
                    attempt += 1
                    continue
                raise

    async def generate_structured(
        self,
        prompt: str,
        response_model: Type[T],
        model: Optional[str] = None,
        system_instruction: Optional[str] = None,
        temperature: float = 0.1,
    ) -> Optional[T]:
        """
        Generate structured JSON output using Gemini (Async).
        Returns None if AI is disabled/unavailable or fails.
        """
        if not self.is_available():
            logger.warning("AI is not available (mode=%s), skipping generation", self.mode)
            return None

        model_id = model or settings.gemini_text_model

        try:
            config = types.GenerateContentConfig(
                response_mime_type="application/json",
                response_schema=response_model,
                system_instruction=system_instruction,
                temperature=temperature,
            )

            response = await self._generate_with_backoff(model_id, prompt, config)

            if not response.text:
                logger.warning("Gemini returned empty response")
                return None

            if isinstance(response.parsed, response_model):
                return response.parsed

            # SDK could not map the payload onto the schema; parse it ourselves
            return response_model.model_validate(json.loads(response.text))

        except (json.JSONDecodeError, ValidationError) as e:
            self._record_error(e)
            logger.error(f"Failed to parse model response as {response_model.__name__}: {e}")
            return None
        except Exception as e:
            self._record_error(e)
            logger.error(f"Gemini generation failed: {e}")
            return None


# Singleton instance access
ai_client = AIClient.get_instance()
