"""
Exception taxonomy for the translation sync engine.

Structural and authorization errors are raised synchronously to the caller of
the mutating operation. Translation-service errors are raised by the invoker
and recovered per language inside a dispatch, where they are recorded as
``PartialDispatchFailure`` entries instead of propagating.
"""
from dataclasses import dataclass


class TranslationSyncError(Exception):
    """Base exception for translation sync errors"""
    pass


class DuplicateKeyError(TranslationSyncError):
    """Raised when a live key with the same (project, namespace, key) exists"""
    pass


class QuotaExceededError(TranslationSyncError):
    """Raised when the workspace key counter is at its configured limit"""
    pass


class KeyLockedError(TranslationSyncError):
    """Raised when a primary-language edit targets a key owned by a dispatch"""
    pass


class KeyNotFoundError(TranslationSyncError):
    """Raised when a translation key does not exist or is deleted"""
    pass


class LanguageNotFoundError(TranslationSyncError):
    """Raised when a language does not exist in the project"""
    pass


class ProjectNotFoundError(TranslationSyncError):
    """Raised when a project does not exist"""
    pass


class NamespaceNotFoundError(TranslationSyncError):
    """Raised when a namespace does not exist in the project"""
    pass


class AccessDeniedError(TranslationSyncError):
    """Raised when the caller's tenant does not own the workspace"""
    pass


class DuplicateTermError(TranslationSyncError):
    """Raised when a glossary term already exists in the project"""
    pass


class TermNotFoundError(TranslationSyncError):
    """Raised when a glossary term does not exist"""
    pass


class TranslationServiceError(TranslationSyncError):
    """Raised when the external translation call fails"""
    pass


class InvalidResponseError(TranslationServiceError):
    """Raised when the translation response cannot be parsed or decoded"""
    pass


class EmptyResponseError(TranslationServiceError):
    """Raised when the translation service returns nothing"""
    pass


@dataclass
class PartialDispatchFailure:
    """A target language that failed inside one dispatch chunk. Recorded, never raised."""
    chunk_id: str
    language_id: str
    language_code: str
    error: str
