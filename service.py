# service.py
import asyncio
import json
import logging
import traceback
from dataclasses import dataclass
from typing import Optional

import aiohttp

from config import Settings
from errors import (
    InvalidInput,
    ProxyError,
    ServerConfigurationError,
    UnknownError,
    UpstreamFormatError,
    UpstreamHttpError,
    UpstreamTimeout,
)
from plant_store import SubjectResolver
from prompt import build_prompt
from schemas import GenerateResponse, SubjectRecord

# --- Логи
logger = logging.getLogger(__name__)

# --- Константы генерации
GENERATION_CONFIG = {
    "temperature": 0.2,
    "topK": 40,
    "topP": 0.95,
    "maxOutputTokens": 1000,
}
HARM_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)
SAFETY_THRESHOLD = "BLOCK_MEDIUM_AND_ABOVE"
FINISHED_OK = ("STOP", "MAX_TOKENS")
RETRY_BACKOFF = 0.5
PREVIEW = 120


def build_payload(prompt: str) -> dict:
    return {
        "contents": [{"parts": [{"text": prompt}]}],
        "generationConfig": dict(GENERATION_CONFIG),
        "safetySettings": [
            {"category": c, "threshold": SAFETY_THRESHOLD} for c in HARM_CATEGORIES
        ],
    }


# =========================
#   Gemini
# =========================
class GeminiClient:
    def __init__(self, api_key: Optional[str], url: str, timeout: float = 30.0, retries: int = 1):
        self.api_key = api_key
        self.url = url
        self.timeout = timeout
        self.retries = max(0, retries)

    @classmethod
    def from_settings(cls, settings: Settings) -> "GeminiClient":
        return cls(
            api_key=settings.gemini_api_key,
            url=settings.gemini_api_url,
            timeout=settings.request_timeout,
            retries=settings.upstream_retries,
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def generate(self, prompt: str) -> GenerateResponse:
        """
        One generateContent call. Connection failures are retried
        `retries` more times; HTTP errors and timeouts are not.
        """
        if not self.configured:
            raise ServerConfigurationError("GEMINI_API_KEY is not configured")

        payload = build_payload(prompt)
        attempts = 1 + self.retries
        for attempt in range(1, attempts + 1):
            try:
                return await self._post(payload)
            except asyncio.TimeoutError:
                logger.error(f"[gemini] timeout after {self.timeout}s (attempt {attempt})")
                raise UpstreamTimeout()
            except aiohttp.ClientConnectionError as e:
                logger.warning(f"[gemini] connection error (attempt {attempt}/{attempts}): {e}")
                if attempt >= attempts:
                    raise UnknownError(f"Could not reach Gemini API: {e}")
                await asyncio.sleep(RETRY_BACKOFF)

    async def _post(self, payload: dict) -> GenerateResponse:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(self.url, params={"key": self.api_key}, json=payload) as resp:
                body = await resp.text()
                if resp.status != 200:
                    logger.error(f"[gemini] status={resp.status} body[:200]={body[:200]}")
                    raise UpstreamHttpError(resp.status, resp.reason or "")
        try:
            data = json.loads(body)
        except ValueError:
            logger.error(f"[gemini] non-JSON body[:200]={body[:200]}")
            raise UpstreamFormatError("Gemini API returned a non-JSON response")
        return GenerateResponse.parse(data)


def extract_answer(response: GenerateResponse) -> str:
    if not response.candidates:
        raise UpstreamFormatError("Gemini API returned no candidates")

    candidate = response.candidates[0]
    reason = (candidate.finishReason or "").upper()
    if reason not in FINISHED_OK:
        # partial text is still returned
        logger.warning(f"[extract_answer] unexpected finishReason={candidate.finishReason}")

    if candidate.content is None or not candidate.content.parts:
        raise UpstreamFormatError("Gemini API candidate has no content parts")
    return candidate.content.parts[0].text


# =========================
#   Proxy
# =========================
@dataclass(frozen=True)
class ProxyResult:
    content: Optional[str] = None
    error: Optional[ProxyError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class QueryProxy:
    """
    Turns (query, optional plant record) into one Gemini call and
    always answers with a ProxyResult.
    """

    def __init__(
        self,
        client: GeminiClient,
        resolver: Optional[SubjectResolver] = None,
        lookup_timeout: float = 5.0,
    ):
        self.client = client
        self.resolver = resolver
        self.lookup_timeout = lookup_timeout

    async def answer_query(
        self,
        query: Optional[str],
        subject: Optional[SubjectRecord] = None,
        authorization: Optional[str] = None,
    ) -> ProxyResult:
        try:
            return ProxyResult(content=await self._answer(query, subject, authorization))
        except ProxyError as e:
            return ProxyResult(error=e)
        except Exception as e:
            logger.error(f"[answer_query] unexpected error: {e}\n{traceback.format_exc()}")
            return ProxyResult(error=UnknownError(str(e) or e.__class__.__name__))

    async def _answer(
        self,
        query: Optional[str],
        subject: Optional[SubjectRecord],
        authorization: Optional[str],
    ) -> str:
        if not isinstance(query, str) or not query.strip():
            raise InvalidInput()
        if not self.client.configured:
            raise ServerConfigurationError("GEMINI_API_KEY is not configured")

        if subject is None and authorization and self.resolver is not None:
            subject = await self._resolve_subject(query, authorization)

        prompt = build_prompt(query, subject)
        logger.info(
            f"[answer_query] subject={subject.name if subject else '-'} "
            f"prompt[:{PREVIEW}]={prompt[:PREVIEW]!r}"
        )

        response = await self.client.generate(prompt)
        text = extract_answer(response)
        logger.info(f"[answer_query] answer length={len(text)}")
        return text

    async def _resolve_subject(self, query: str, authorization: str) -> Optional[SubjectRecord]:
        try:
            return await asyncio.wait_for(
                self.resolver.resolve(query, authorization), timeout=self.lookup_timeout
            )
        except Exception as e:
            logger.warning(f"[resolve_subject] lookup skipped: {e!r}")
            return None
