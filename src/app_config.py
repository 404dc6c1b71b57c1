"""Application configuration module for the translation sync engine."""
import logging
import os
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import yaml
from dotenv import load_dotenv
from openai import AsyncOpenAI

from src.logging_config import setup_logger


@dataclass
class AppConfig:
    """Application configuration dataclass."""
    # Core paths
    project_root: str
    input_folder: str
    output_folder: str
    snapshot_folder: str
    glossary_file_path: str

    # Model configuration
    model_name: str
    max_model_tokens: int

    # Dispatch settings
    dry_run: bool
    dispatch_chunk_size: int
    max_concurrent_dispatches: int
    max_concurrent_api_calls: int
    api_rate_limit: float
    api_rate_period: float
    lock_lease_seconds: float
    manual_edits_win: bool
    show_progress: bool
    workspace_key_limit: int

    # Language configuration
    primary_locale: str
    language_codes: Dict[str, str]
    name_to_code: Dict[str, str]
    style_rules: Dict[str, List[str]]

    # OpenAI client
    openai_client: Optional[AsyncOpenAI]


def _compute_project_root() -> str:
    """The directory above ``src/``."""
    return os.path.abspath(os.path.join(os.path.dirname(os.path.realpath(__file__)), os.pardir))


def _find_dotenv(project_root: str) -> Optional[str]:
    """First existing .env file: the project root wins over ``docker/``."""
    for candidate in (os.path.join(project_root, '.env'), os.path.join(project_root, 'docker', '.env')):
        if os.path.exists(candidate):
            return candidate
    return None


def _config_file_path(project_root: str) -> str:
    return os.path.abspath(os.environ.get('KEYSYNC_CONFIG_FILE', os.path.join(project_root, 'config.yaml')))


def _warn(message: str) -> None:
    # The logger is configured from this file, so problems go straight to stderr.
    print(message, file=sys.stderr)


def _load_yaml_config(project_root: str) -> Dict[str, Any]:
    """
    Read the YAML settings mapping. A missing, unreadable, empty, invalid or
    non-mapping file yields an empty dict and a message on stderr; it never raises.
    """
    config_file = _config_file_path(project_root)
    if not os.path.exists(config_file):
        _warn(f"Warning: Configuration file '{config_file}' not found. Using default configuration. "
              f"Create config.yaml in '{project_root}' or set KEYSYNC_CONFIG_FILE.")
        return {}
    if not os.access(config_file, os.R_OK):
        _warn(f"Error: Configuration file '{config_file}' is not readable. Using default configuration.")
        return {}

    try:
        with open(config_file, 'r', encoding='utf-8') as stream:
            loaded = yaml.safe_load(stream)
    except yaml.YAMLError as yaml_exc:
        _warn(f"Error: Invalid YAML in '{config_file}': {yaml_exc}. Using default configuration.")
        return {}
    except OSError as os_exc:
        _warn(f"Error: Could not read '{config_file}': {os_exc}. Using default configuration.")
        return {}

    if loaded is None:
        _warn(f"Warning: Configuration file '{config_file}' is empty. Using default configuration.")
        return {}
    if not isinstance(loaded, dict):
        _warn(f"Error: Configuration file '{config_file}' must contain a YAML mapping. Using default configuration.")
        return {}
    _warn(f"Loaded configuration from: {config_file}")
    return loaded


def _setup_logger_from_config(config: Dict[str, Any]) -> logging.Logger:
    log_config = config.get('logging') or {}
    return setup_logger(
        str(log_config.get('log_level', 'INFO')),
        log_config.get('log_file_path', 'logs/translation_sync.log'),
        log_config.get('log_to_console', True),
    )


def _build_language_mappings(locales_list: List[Dict[str, str]]) -> Tuple[Dict[str, str], Dict[str, str]]:
    """``{code: name}`` and ``{lowercased name: code}`` from the supported_locales entries."""
    language_codes = {
        locale['code']: locale['name'] for locale in locales_list
        if locale.get('code') and locale.get('name')
    }
    name_to_code = {name.lower(): code for code, name in language_codes.items()}
    return language_codes, name_to_code


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


def _create_openai_client(dry_run: bool, logger: logging.Logger) -> Optional[AsyncOpenAI]:
    """No client in dry-run mode; otherwise OPENAI_API_KEY is mandatory and a missing key exits."""
    if dry_run:
        logger.info("Dry run: translations echo the source text and no OpenAI client is created.")
        return None

    api_key = os.environ.get('OPENAI_API_KEY')
    if not api_key:
        logger.critical("OPENAI_API_KEY environment variable not found. "
                        "Set it, or set 'dry_run: true' in the config file.")
        sys.exit(1)
    if not api_key.startswith('sk-'):
        logger.warning("OPENAI_API_KEY does not start with 'sk-'; it may be invalid.")

    try:
        client = AsyncOpenAI(api_key=api_key)
    except Exception as client_exc:
        logger.critical("Failed to initialize OpenAI client: %s", client_exc)
        sys.exit(1)
    logger.info("OpenAI client initialized.")
    return client


def load_app_config() -> AppConfig:
    """
    Build the AppConfig from ``.env``, the YAML file and environment overrides,
    and configure the shared logger on the way.
    """
    project_root = _compute_project_root()
    dotenv_path = _find_dotenv(project_root)
    if dotenv_path:
        load_dotenv(dotenv_path)
    config = _load_yaml_config(project_root)

    logger = _setup_logger_from_config(config)
    if dotenv_path:
        logger.info("Loaded environment variables from: %s", dotenv_path)
    else:
        logger.info("No .env file found under '%s'; using the system environment.", project_root)

    language_codes, name_to_code = _build_language_mappings(config.get('supported_locales') or [])
    primary_locale = config.get('primary_locale', 'en')
    if primary_locale not in language_codes:
        logger.warning("Primary locale '%s' is not listed in supported_locales; adding it.", primary_locale)
        language_codes[primary_locale] = primary_locale
        name_to_code[primary_locale.lower()] = primary_locale

    dry_run = config.get('dry_run', False)
    model_name = os.environ.get('TRANSLATION_MODEL_NAME', config.get('model_name', 'gpt-4o-mini'))

    # Chunk size can be tuned per environment without touching the config file.
    dispatch_chunk_size = _env_int('DISPATCH_CHUNK_SIZE', config.get('dispatch_chunk_size', 20))

    openai_client = _create_openai_client(dry_run, logger)

    return AppConfig(
        project_root=project_root,
        input_folder=config.get('input_folder', os.path.join(project_root, 'content')),
        output_folder=config.get('output_folder', os.path.join(project_root, 'build')),
        snapshot_folder=config.get('snapshot_folder', os.path.join(project_root, '.snapshots')),
        glossary_file_path=config.get('glossary_file_path', 'glossary.json'),
        model_name=model_name,
        max_model_tokens=config.get('max_model_tokens', 16000),
        dry_run=dry_run,
        dispatch_chunk_size=dispatch_chunk_size,
        max_concurrent_dispatches=config.get('max_concurrent_dispatches', 4),
        max_concurrent_api_calls=config.get('max_concurrent_api_calls', 2),
        api_rate_limit=config.get('api_rate_limit', 60),
        api_rate_period=config.get('api_rate_period', 60),
        lock_lease_seconds=config.get('lock_lease_seconds', 600),
        manual_edits_win=config.get('manual_edits_win', True),
        show_progress=config.get('show_progress', False),
        workspace_key_limit=config.get('workspace_key_limit', 10000),
        primary_locale=primary_locale,
        language_codes=language_codes,
        name_to_code=name_to_code,
        style_rules=config.get('style_rules', {}) or {},
        openai_client=openai_client
    )
