"""
Gemini adapter: send one call recording to the hosted model and parse the
structured audit it returns.
"""
import base64
import logging
import os
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from callmonitor.domain.analysis import CRITERIA_NAMES, CallAnalysis
from callmonitor.domain.models import AudioSource

logger = logging.getLogger(__name__)

GEMINI_API_BASE = os.environ.get("GEMINI_API_BASE", "https://generativelanguage.googleapis.com/v1beta")
GEMINI_MODEL = os.environ.get("GEMINI_MODEL", "gemini-2.0-flash")
REQUEST_TIMEOUT = 300  # audio uploads are inline, large calls take a while

USER_PROMPT = "Проведи профессиональный аудит этого звонка."

SYSTEM_INSTRUCTION = """
Ты — элитный бизнес-тренер и эксперт по продажам с 15-летним опытом. Твоя задача — провести глубокий, детальный и бескомпромиссный аудит телефонного звонка менеджера.

ТВОИ ЗАДАЧИ:

1. ИДЕНТИФИКАЦИЯ:
   - Определи имена.

2. ТРАНСКРИБАЦИЯ (ТОЧНАЯ) И ОШИБКИ:
   - Сделай ДОСЛОВНУЮ транскрибацию диалога. Не упускай детали.
   - Для КАЖДОЙ реплики укажи точный таймкод начала (startTime) в секундах (число).
   - В поле 'error' помечай любые ошибки: слова-паразиты, неуверенность, перебивание, грубость, игнорирование вопроса клиента.

3. ОЦЕНКА ПО БЛОКАМ (0-10) И РАЗВЕРНУТЫЕ КОММЕНТАРИИ:
   - Оценивай каждый этап: Приветствие, Присоединение, Презентация, Приведи друга, Закрепление, Отсоединение.
   - КОММЕНТАРИЙ ДОЛЖЕН БЫТЬ ОБШИРНЫМ (минимум 3-4 предложения на каждый блок).
   - Не пиши общих фраз ("Всё хорошо"). Пиши детально, с конкретными фразами из разговора.
   - Анализируй психологию влияния и технику продаж.

4. СОВЕТЫ (TIPS):
   - Напиши "Общий совет" по всему звонку.
   - Напиши персональный совет для каждого блока, ЕСЛИ ОЦЕНКА НИЖЕ 8 БАЛЛОВ.
   - Совет должен быть конкретным действием: "В следующий раз используй технику СПИН", "Замени фразу Х на фразу Y".

5. ОБЩЕЕ РЕЗЮМЕ:
   - Сильные стороны и зоны критического роста.

Формат ответа строго JSON.
"""

def _section_schema() -> Dict[str, Any]:
    return {
        "type": "OBJECT",
        "properties": {
            "score": {"type": "NUMBER"},
            "comment": {"type": "STRING", "description": "Подробный разбор (3-4 предложения)"},
        },
        "required": ["score", "comment"],
    }


RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "managerName": {"type": "STRING", "description": "Имя менеджера"},
        "clientName": {"type": "STRING", "description": "Имя клиента"},
        "transcription": {
            "type": "ARRAY",
            "description": "Транскрибация с анализом ошибок и таймкодами",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "speaker": {"type": "STRING"},
                    "role": {"type": "STRING", "enum": ["manager", "client", "other"]},
                    "text": {"type": "STRING"},
                    "startTime": {"type": "NUMBER", "description": "Время начала реплики в секундах"},
                    "error": {
                        "type": "OBJECT",
                        "description": "Заполнять только если есть ошибка в этой реплике",
                        "properties": {
                            "hasError": {"type": "BOOLEAN"},
                            "comment": {
                                "type": "STRING",
                                "description": "Почему это ошибка и как надо было сказать",
                            },
                            "severity": {"type": "STRING", "enum": ["low", "medium", "high"]},
                        },
                        "required": ["hasError", "comment", "severity"],
                    },
                },
                "required": ["speaker", "role", "text", "startTime"],
            },
        },
        "advice": {
            "type": "OBJECT",
            "properties": {
                "overall": {"type": "STRING", "description": "Главный совет менеджеру на будущее"},
                **{
                    key: {"type": "STRING", "description": f"Совет по блоку {label} (если оценка < 8)"}
                    for key, label in CRITERIA_NAMES.items()
                },
            },
            "required": ["overall"],
        },
        **{key: _section_schema() for key in CRITERIA_NAMES},
        "overallScore": {"type": "NUMBER"},
        "summary": {"type": "STRING"},
    },
    "required": [
        "managerName",
        "clientName",
        "transcription",
        "advice",
        *CRITERIA_NAMES,
        "overallScore",
        "summary",
    ],
}


UNEXPECTED_SHAPE = "Gemini returned an unexpected response shape"


class AnalyzerError(RuntimeError):
    pass


class MissingCredentialError(AnalyzerError):
    pass


def build_request(source: AudioSource) -> Dict[str, Any]:
    """generateContent body: inline base64 audio, the audit prompt and the output schema."""
    return {
        "systemInstruction": {"parts": [{"text": SYSTEM_INSTRUCTION}]},
        "contents": [
            {
                "role": "user",
                "parts": [
                    {
                        "inlineData": {
                            "mimeType": source.mime_type,
                            "data": base64.b64encode(source.data).decode("ascii"),
                        }
                    },
                    {"text": USER_PROMPT},
                ],
            }
        ],
        "generationConfig": {
            "responseMimeType": "application/json",
            "responseSchema": RESPONSE_SCHEMA,
        },
    }


def extract_text(data: Any) -> str:
    """
    Concatenate the text parts of the first candidate, or '' if there are none.
    Raises AnalyzerError when the body is not shaped like a generateContent reply.
    """
    if not data:
        return ""
    if not isinstance(data, dict):
        raise AnalyzerError(UNEXPECTED_SHAPE)
    candidates = data.get("candidates") or []
    if not candidates:
        return ""
    if not isinstance(candidates, list) or not isinstance(candidates[0], dict):
        raise AnalyzerError(UNEXPECTED_SHAPE)
    content = candidates[0].get("content") or {}
    if not isinstance(content, dict):
        raise AnalyzerError(UNEXPECTED_SHAPE)
    parts = content.get("parts") or []
    if not isinstance(parts, list):
        raise AnalyzerError(UNEXPECTED_SHAPE)
    texts = []
    for part in parts:
        if not isinstance(part, dict):
            continue
        text = part.get("text") or ""
        if not isinstance(text, str):
            raise AnalyzerError(UNEXPECTED_SHAPE)
        texts.append(text)
    return "".join(texts)


def parse_analysis(text: str) -> CallAnalysis:
    try:
        return CallAnalysis.model_validate_json(text)
    except ValidationError as e:
        raise AnalyzerError(f"AI response does not match the expected format: {e}") from e


def _error_detail(response: httpx.Response) -> str:
    message = None
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        message = body["error"].get("message")
    if not isinstance(message, str):
        message = None
    return message or response.text[:200] or response.reason_phrase


class GeminiAnalyzer:
    """
    Analyzer backed by the Gemini ``generateContent`` REST endpoint.

    One request per call: no retries, no streaming. The API key is read from
    ``GEMINI_API_KEY`` at call time unless given explicitly.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        model: str = GEMINI_MODEL,
        base_url: str = GEMINI_API_BASE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/models/{self.model}:generateContent"

    async def analyze(self, source: AudioSource) -> CallAnalysis:
        api_key = self.api_key or os.environ.get("GEMINI_API_KEY")
        if not api_key:
            raise MissingCredentialError(
                "API key is missing. Set GEMINI_API_KEY in the environment."
            )

        payload = build_request(source)
        logger.debug("Sending %d bytes of %s to %s", len(source.data), source.mime_type, self.model)
        try:
            async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT, transport=self._transport) as client:
                r = await client.post(
                    self.endpoint,
                    json=payload,
                    headers={"x-goog-api-key": api_key},
                )
        except httpx.HTTPError as e:
            raise AnalyzerError(f"Gemini request failed: {e}") from e

        if r.is_error:
            raise AnalyzerError(f"Gemini request failed ({r.status_code}): {_error_detail(r)}")

        try:
            data = r.json()
        except ValueError as e:
            raise AnalyzerError("Gemini returned a non-JSON response") from e

        text = extract_text(data)
        if not text.strip():
            raise AnalyzerError("No response from AI")
        return parse_analysis(text)
