"""
Translation Invoker: one structured chat-completion call per target language.

The whole batch of source strings goes out as a JSON object keyed by opaque
ids and must come back as a JSON object keyed by the same ids. Placeholders
are swapped for tokens before the call and restored afterwards; non-string
scalars never reach the model and are copied through unchanged.
"""
import asyncio
import json
import logging
import random
from typing import Dict, Iterable, List, Optional

import tiktoken
from aiolimiter import AsyncLimiter
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    OpenAIError,
    RateLimitError,
)
from openai.types.chat import (
    ChatCompletionSystemMessageParam,
    ChatCompletionUserMessageParam
)

from src.errors import EmptyResponseError, InvalidResponseError, TranslationServiceError
from src.glossary import render_glossary_section
from src.models import GlossaryRule, Language, Scalar
from src.translation_validator import (
    check_placeholder_parity,
    clean_translated_text,
    extract_placeholders,
    parse_translation_response,
    restore_placeholders,
)

logger = logging.getLogger("translation_sync")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0


def count_tokens(text: str, model_name: str = 'gpt-4o-mini') -> int:
    """Count the number of tokens in ``text`` for ``model_name``.

    ``tiktoken.encoding_for_model`` may try to download model data that is not
    cached yet. When that fails the ``gpt2`` encoding bundled with ``tiktoken``
    is used, and as a last resort a whitespace split.
    """
    try:
        encoding = tiktoken.encoding_for_model(model_name)
    except Exception:
        try:
            encoding = tiktoken.get_encoding("gpt2")
        except Exception:
            return len(text.split())

    try:
        return len(encoding.encode(text))
    except Exception:
        return len(text.split())


def format_style_rules(language_name: str, rules: Iterable[str]) -> str:
    """Render style rules as the checklist block used in the system prompt."""
    rules = [rule for rule in rules if rule]
    if not rules:
        return ""
    rules_list = "\n".join(f"- {rule}" for rule in rules)
    return f"**Language-Specific Quality Checklist ({language_name})**:\n{rules_list}"


def build_system_prompt(
        source_language: Optional[Language],
        target_language: Language,
        glossary_rules: List[GlossaryRule],
        style_rules_text: str
) -> str:
    source_name = source_language.name if source_language else "the source language"
    glossary_text = render_glossary_section(glossary_rules)
    return f"""
You are an expert translator specializing in software localization. Translate every value of the JSON object you receive from {source_name} into {target_language.name} (language code: {target_language.code}).

**Instructions**:
- **Keep the keys**: Return a JSON object with exactly the same keys as the input. Keys are opaque ids; never translate or change them.
- **Do not translate or modify placeholder tokens**: Any text enclosed within double underscores `__` (e.g., `__PH_abc123__`) must remain exactly as is.
- **Preserve formatting**: Keep special characters and formatting such as `\\n` and `\\t`.
- **Do not add** any additional characters or punctuation (e.g., no square brackets, quotation marks, etc.).
- **Output JSON only**: No markdown, no explanations before or after the JSON object.

{glossary_text}

{style_rules_text}
""".strip() + "\n"


async def _handle_retry(attempt: int, max_retries: int, base_delay: float, label: str,
                        api_exc: Optional[Exception] = None) -> bool:
    """
    Sleep before the next attempt using exponential backoff with jitter, or
    the server's Retry-After hint when one is present.

    Returns:
        bool: True if the caller should retry, False once attempts are exhausted.
    """
    if attempt >= max_retries:
        logger.error(f"Translation request '{label}' failed after {max_retries} attempts.")
        return False

    retry_after = None
    response = getattr(api_exc, "response", None) if isinstance(api_exc, OpenAIError) else None
    headers = getattr(response, "headers", None) or {}
    retry_after_header = headers.get("Retry-After")
    if retry_after_header:
        try:
            if retry_after_header.endswith("ms"):
                retry_after = float(retry_after_header[:-2]) / 1000
            else:
                retry_after = float(retry_after_header)
        except ValueError:
            logger.warning(f"Failed to parse Retry-After header '{retry_after_header}'. "
                           f"Falling back to exponential backoff.")
    delay = retry_after if retry_after is not None else base_delay * (2 ** (attempt - 1)) + random.uniform(0, 1)

    logger.info(f"Retrying translation request '{label}' in {delay:.2f} seconds (Attempt {attempt}/{max_retries})")
    await asyncio.sleep(delay)
    return True


class TranslationInvoker:
    def __init__(
            self,
            client: Optional[AsyncOpenAI],
            model_name: str,
            semaphore: asyncio.Semaphore,
            rate_limiter: AsyncLimiter,
            max_model_tokens: int = 16000,
            dry_run: bool = False,
            max_retries: int = DEFAULT_MAX_RETRIES,
            base_delay: float = DEFAULT_BASE_DELAY,
            request_timeout: float = 120.0
    ):
        if client is None and not dry_run:
            raise ValueError("An OpenAI client is required unless dry_run is enabled.")
        self.client = client
        self.model_name = model_name
        self.semaphore = semaphore
        self.rate_limiter = rate_limiter
        self.max_model_tokens = max_model_tokens
        self.dry_run = dry_run
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.request_timeout = request_timeout

    async def translate(
            self,
            source_texts: Dict[str, Scalar],
            target_language: Language,
            glossary_rules: List[GlossaryRule],
            style_rules_text: str = "",
            source_language: Optional[Language] = None
    ) -> Dict[str, Scalar]:
        """
        Translate a batch of values into one target language.

        Args:
            source_texts: Source values keyed by opaque id (the key id).
            target_language: Language to translate into.
            glossary_rules: Resolved glossary rules for the target language.
            style_rules_text: Pre-rendered style checklist, may be empty.
            source_language: Language the values are written in.

        Returns:
            Translated values keyed by the same ids. Ids whose translation was
            missing or lost a placeholder are absent.

        Raises:
            EmptyResponseError, InvalidResponseError: unusable service output.
            TranslationServiceError: the service kept failing.
        """
        result: Dict[str, Scalar] = {k: v for k, v in source_texts.items() if not isinstance(v, str)}
        texts = {k: v for k, v in source_texts.items() if isinstance(v, str)}
        if not texts:
            return result

        if self.dry_run:
            logger.info(f"[DRY RUN] Would translate {len(texts)} text(s) into {target_language.code}; "
                        f"echoing source text.")
            result.update(texts)
            return result

        protected: Dict[str, str] = {}
        mappings: Dict[str, Dict[str, str]] = {}
        for key_id, text in texts.items():
            protected[key_id], mappings[key_id] = extract_placeholders(text)

        system_prompt = build_system_prompt(source_language, target_language, glossary_rules, style_rules_text)
        user_prompt = json.dumps(protected, ensure_ascii=False, indent=2)

        prompt_tokens = count_tokens(system_prompt + user_prompt, self.model_name)
        if prompt_tokens > self.max_model_tokens:
            logger.warning(f"Prompt for {target_language.code} is {prompt_tokens} tokens, "
                           f"above the configured limit of {self.max_model_tokens}.")

        translated = await self._request_translations(system_prompt, user_prompt, list(protected),
                                                      target_language.code)

        for key_id, value in translated.items():
            value = restore_placeholders(value, mappings[key_id])
            value = clean_translated_text(value, texts[key_id])
            if not check_placeholder_parity(texts[key_id], value):
                logger.warning(f"Placeholder mismatch for id '{key_id}' in {target_language.code}; "
                               f"discarding translation.")
                continue
            result[key_id] = value

        missing = set(texts) - set(translated)
        if missing:
            logger.warning(f"Translation service omitted {len(missing)} id(s) for {target_language.code}.")
        return result

    async def _request_translations(
            self,
            system_prompt: str,
            user_prompt: str,
            expected_ids: List[str],
            label: str
    ) -> Dict[str, str]:
        last_error: Optional[TranslationServiceError] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                async with self.semaphore, self.rate_limiter:
                    response = await self.client.chat.completions.create(
                        model=self.model_name,
                        messages=[
                            ChatCompletionSystemMessageParam(role="system", content=system_prompt),
                            ChatCompletionUserMessageParam(role="user", content=user_prompt)
                        ],
                        temperature=0.3,
                        response_format={"type": "json_object"},
                        timeout=self.request_timeout,
                    )
                content = response.choices[0].message.content if response.choices else None
                return parse_translation_response(content, expected_ids)

            except (EmptyResponseError, InvalidResponseError) as response_exc:
                logger.error(f"Unusable translation response for {label}: {response_exc}")
                last_error = response_exc
                if not await _handle_retry(attempt, self.max_retries, self.base_delay, label):
                    raise

            except (RateLimitError, APITimeoutError, APIConnectionError, APIStatusError, OpenAIError) as api_exc:
                logger.error(f"API error occurred: {api_exc.__class__.__name__} - {api_exc}")
                if not await _handle_retry(attempt, self.max_retries, self.base_delay, label, api_exc):
                    raise TranslationServiceError(
                        f"Translation into {label} failed: {api_exc.__class__.__name__}"
                    ) from api_exc

        raise last_error or TranslationServiceError(f"Translation into {label} failed")
