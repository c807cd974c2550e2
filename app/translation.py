"""
Translation gateway backed by an OpenAI chat model.

Both operations are stateless and never raise: upstream failures come back
as an ``error`` string on the result so ingestion and dispatch can decide
what to do. No retries happen here.
"""

import json
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from openai import OpenAI

from app.config import Settings
from app.errors import TranslationError
from app.metrics import record_translation

logger = logging.getLogger(__name__)

ENGLISH = "en"
UNKNOWN_LANGUAGE = "unknown"

DETECT_PROMPT = """You are a language detector and translator.

Analyze this text and respond with a JSON object:
- If the text is in English, return: {{"language": "en", "needsTranslation": false}}
- If the text is in another language, return: {{"language": "<ISO-639-1 code>", "needsTranslation": true, "translation": "<English translation>"}}

Text: "{text}"

Respond ONLY with valid JSON, no other text."""

TRANSLATE_PROMPT = (
    "Translate this English text to {language}. "
    "Respond ONLY with the translation, no other text:\n\n"
    '"{text}"'
)


@dataclass
class EnglishTranslation:
    """Result of detecting the language of inbound text and translating it to English."""
    detected_language: str
    is_english: bool
    translated_text: Optional[str] = None
    error: Optional[str] = None


@dataclass
class TargetTranslation:
    """Result of translating English text into a contact's language."""
    translated_text: Optional[str] = None
    error: Optional[str] = None


def _error_text(exc: Exception) -> str:
    return str(exc) or exc.__class__.__name__


def _strip_code_fence(content: str) -> str:
    content = content.strip()
    if content.startswith("```"):
        content = content.strip("`")
        if content.lower().startswith("json"):
            content = content[4:]
    return content.strip()


class TranslationGateway:
    """
    Detects language and translates text in either direction.

    Args:
        client: an ``openai.OpenAI`` client (or anything with the same
            ``chat.completions.create`` surface)
        model: chat model name
        language_names: ISO-639-1 code -> language name used in prompts;
            codes missing from the table are passed to the model as-is
    """

    def __init__(
        self,
        client,
        model: str,
        language_names: Optional[Dict[str, str]] = None,
        max_tokens: int = 1024,
    ):
        self.client = client
        self.model = model
        self.language_names = dict(language_names or {})
        self.max_tokens = max_tokens

    def language_name(self, code: str) -> str:
        return self.language_names.get(code, code)

    def _complete(self, prompt: str) -> str:
        response = self.client.chat.completions.create(
            model=self.model,
            max_tokens=self.max_tokens,
            messages=[{"role": "user", "content": prompt}],
        )
        content = response.choices[0].message.content
        if content is None:
            raise TranslationError("Model returned no content")
        return content

    def to_english(self, text: str) -> EnglishTranslation:
        """
        Detect the language of ``text`` and translate it to English if needed.

        English input yields ``is_english=True`` and no translation. On any
        failure the detected language is ``"unknown"`` and ``error`` is set.
        """
        try:
            content = self._complete(DETECT_PROMPT.format(text=text))
            result = json.loads(_strip_code_fence(content))
            if not isinstance(result, dict):
                raise TranslationError("Model response is not a JSON object")

            language = str(result.get("language") or "").strip().lower()
            if not result.get("needsTranslation") or language == ENGLISH:
                record_translation("to_english", "skipped")
                return EnglishTranslation(detected_language=ENGLISH, is_english=True)

            translation = result.get("translation")
            if not language:
                raise TranslationError("Model response is missing the language code")
            if not isinstance(translation, str) or not translation.strip():
                raise TranslationError("Model response is missing the translation")

            record_translation("to_english", "translated")
            logger.info(f"Detected language '{language}', translated to English")
            return EnglishTranslation(
                detected_language=language,
                is_english=False,
                translated_text=translation.strip(),
            )
        except Exception as e:
            record_translation("to_english", "error")
            logger.error(f"Translation to English failed: {e}")
            return EnglishTranslation(
                detected_language=UNKNOWN_LANGUAGE,
                is_english=False,
                error=_error_text(e),
            )

    def to_target(self, text: str, target_language: str) -> TargetTranslation:
        """
        Translate English ``text`` into ``target_language``.

        English targets return the text unchanged without calling the model.
        """
        target = (target_language or "").strip().lower()
        if target == ENGLISH:
            record_translation("to_target", "skipped")
            return TargetTranslation(translated_text=text)

        if not target or target == UNKNOWN_LANGUAGE:
            record_translation("to_target", "error")
            return TargetTranslation(error="Contact language is unknown")

        try:
            content = self._complete(
                TRANSLATE_PROMPT.format(language=self.language_name(target), text=text)
            )
            translated = content.strip()
            if not translated:
                raise TranslationError("Model returned an empty translation")
            record_translation("to_target", "translated")
            return TargetTranslation(translated_text=translated)
        except Exception as e:
            record_translation("to_target", "error")
            logger.error(f"Translation to '{target}' failed: {e}")
            return TargetTranslation(error=_error_text(e))


def build_translation_gateway(settings: Settings) -> TranslationGateway:
    """Create the production gateway. The OpenAI client does not retry on its own."""
    client = OpenAI(
        api_key=settings.OPENAI_API_KEY,
        timeout=settings.TRANSLATION_TIMEOUT_SECONDS,
        max_retries=0,
    )
    logger.info(f"Translation gateway initialized: {settings.TRANSLATION_MODEL}")
    return TranslationGateway(
        client=client,
        model=settings.TRANSLATION_MODEL,
        language_names=settings.LANGUAGE_NAMES,
        max_tokens=settings.TRANSLATION_MAX_TOKENS,
    )
