from typing import Dict, Iterable, List, Tuple
import json
import re
import uuid
from collections import Counter

import jsonschema

from src.errors import EmptyResponseError, InvalidResponseError

# Matches HTML-like tags, {{mustache}} and {0}/{name} placeholders, in that order.
PLACEHOLDER_PATTERN = re.compile(r'(<[^<>]+>)|(\{\{[^{}]+\}\})|(\{[^{}]+\})')

# The translation service must answer with an object whose every value is a string.
LOCALIZATION_SCHEMA = {
    "type": "object",
    "patternProperties": {
        "^.*$": {"type": "string"}
    },
    "additionalProperties": False
}

_CODE_FENCE = re.compile(r'^```(?:json)?\s*|\s*```$')


def extract_placeholders(text: str) -> Tuple[str, Dict[str, str]]:
    """
    Extract and replace placeholders in the text with unique tokens.

    Args:
        text (str): The text to process.

    Returns:
        Tuple[str, Dict[str, str]]: The processed text and placeholder mapping.
    """
    if not isinstance(text, str):
        raise ValueError("Input text must be a string.")

    placeholder_mapping = {}

    def replace_placeholder(match):
        placeholder_token = f"__PH_{uuid.uuid4().hex}__"
        placeholder_mapping[placeholder_token] = match.group(0)
        return placeholder_token

    processed_text = PLACEHOLDER_PATTERN.sub(replace_placeholder, text)
    return processed_text, placeholder_mapping


def restore_placeholders(text: str, placeholder_mapping: Dict[str, str]) -> str:
    """Put the original placeholders back in place of their tokens."""
    for token, placeholder in placeholder_mapping.items():
        text = text.replace(token, placeholder)
    return text


def check_placeholder_parity(base_string: str, target_string: str) -> bool:
    """
    Checks if the placeholders are identical between a base and a target string.
    Placeholders are ``{0}``, ``{name}``, ``{{name}}`` and HTML-like tags.
    Reordering is allowed; every placeholder must appear as often as in the base.

    Args:
        base_string: The source string.
        target_string: The translated string.

    Returns:
        True if both strings carry the same placeholders, False otherwise.
    """
    base_placeholders = Counter(m.group(0) for m in PLACEHOLDER_PATTERN.finditer(base_string))
    target_placeholders = Counter(m.group(0) for m in PLACEHOLDER_PATTERN.finditer(target_string))

    return base_placeholders == target_placeholders


def clean_translated_text(translated_text: str, original_text: str) -> str:
    """
    Strip quotes or square brackets wrapped around a translation when the
    original text was not wrapped in them.
    """
    if translated_text.startswith('"') and translated_text.endswith('"') and not (
            original_text.startswith('"') and original_text.endswith('"')):
        translated_text = translated_text[1:-1]
    if translated_text.startswith('[') and translated_text.endswith(']') and not (
            original_text.startswith('[') and original_text.endswith(']')):
        translated_text = translated_text[1:-1]
    return translated_text


def strip_code_fences(response_text: str) -> str:
    return _CODE_FENCE.sub('', response_text.strip())


def parse_translation_response(response_text: str, expected_ids: Iterable[str]) -> Dict[str, str]:
    """
    Parse and validate a translation response.

    Fenced output (```json ... ```) is accepted. Ids that were not requested
    are dropped; requested ids missing from the response are simply absent
    from the result.

    Raises:
        EmptyResponseError: the response holds no text.
        InvalidResponseError: the text is not a JSON object of strings.
    """
    if response_text is None or not response_text.strip():
        raise EmptyResponseError("Translation service returned an empty response")

    cleaned = strip_code_fences(response_text)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as json_exc:
        raise InvalidResponseError(f"Response is not valid JSON: {json_exc}") from json_exc

    try:
        jsonschema.validate(instance=parsed, schema=LOCALIZATION_SCHEMA)
    except jsonschema.ValidationError as schema_exc:
        raise InvalidResponseError(f"Response does not match the expected shape: {schema_exc.message}") from schema_exc

    expected = set(expected_ids)
    return {key: value for key, value in parsed.items() if key in expected}


def check_encoding_and_mojibake(file_path: str) -> List[str]:
    """
    Checks a file for UTF-8 encoding and common mojibake patterns.

    Args:
        file_path: The path to the file to check.

    Returns:
        A list of string error messages. An empty list means the file is valid.
    """
    errors = []

    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            content = f.read()
    except UnicodeDecodeError:
        errors.append(f"File '{file_path}' is not a valid UTF-8 file.")
        return errors
    except OSError as e:
        errors.append(f"Could not read file '{file_path}'. Reason: {e}")
        return errors

    # UTF-8 text decoded as latin-1/cp1252 leaves 'Ã' followed by a high byte.
    mojibake_pattern = re.compile(r'Ã[\x80-\xff]')
    if mojibake_pattern.search(content):
        errors.append(f"Potential mojibake detected in '{file_path}'. Found patterns like 'Ã¼', 'Ã¤', etc.")

    if '\uFFFD' in content:
        errors.append(f"File '{file_path}' contains the Unicode replacement character (\uFFFD), "
                      f"indicating a previous encoding/decoding error.")

    return errors
