"""Data model for translation keys, their projections, glossary terms and usage counters."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

# Values are primitives only; nested structure lives in the dotted key string.
Scalar = Union[str, int, float, bool]


class KeyStatus(Enum):
    ACTIVE = 1
    LOCKED = 2
    DELETED = -1


class RecordStatus(Enum):
    ACTIVE = 1
    DELETED = -1


class Freshness(Enum):
    FRESH = "fresh"
    STALE = "stale"
    # Reported only; never stored on a key.
    NOT_REQUESTED = "not_requested"


@dataclass
class UsageCounter:
    translation_keys: int = 0


@dataclass
class CallerIdentity:
    """Verified identity handed over by the identity provider."""
    user_id: str
    org_id: str


@dataclass
class Workspace:
    id: str
    tenant_id: str
    name: str
    key_limit: int
    usage: UsageCounter = field(default_factory=UsageCounter)


@dataclass
class Project:
    id: str
    workspace_id: str
    name: str
    primary_language_id: Optional[str] = None
    usage: UsageCounter = field(default_factory=UsageCounter)
    status: RecordStatus = RecordStatus.ACTIVE


@dataclass
class Namespace:
    id: str
    project_id: str
    name: str
    usage: UsageCounter = field(default_factory=UsageCounter)
    status: RecordStatus = RecordStatus.ACTIVE


@dataclass
class Language:
    id: str
    project_id: str
    code: str
    name: str = ""
    status: RecordStatus = RecordStatus.ACTIVE
    # Free-form style instructions keyed by a short rule name.
    rules: Dict[str, str] = field(default_factory=dict)


@dataclass
class KeyLease:
    """Single-writer lease held by the dispatch chunk that owns a locked key."""
    owner: str
    expires_at: float
    # Key version when the lease was first taken; later writes count as manual edits.
    locked_version: int = 0

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class TranslationKey:
    id: str
    project_id: str
    namespace_id: str
    key: str
    values: Dict[str, Scalar] = field(default_factory=dict)
    freshness: Dict[str, Freshness] = field(default_factory=dict)
    status: KeyStatus = KeyStatus.ACTIVE
    lease: Optional[KeyLease] = None
    # Bumped on every write; language_versions records the version at which
    # each language was last written.
    version: int = 0
    language_versions: Dict[str, int] = field(default_factory=dict)

    @property
    def is_deleted(self) -> bool:
        return self.status is KeyStatus.DELETED

    def is_locked(self, now: float) -> bool:
        if self.status is not KeyStatus.LOCKED:
            return False
        return self.lease is not None and not self.lease.is_expired(now)

    def locked_by(self, owner: str, now: float) -> bool:
        return self.is_locked(now) and self.lease.owner == owner

    def record_write(self, language_id: str, value: Scalar) -> None:
        self.version += 1
        self.values[language_id] = value
        self.language_versions[language_id] = self.version


@dataclass
class TranslationValue:
    """Queryable projection of one (key, language) pair."""
    project_id: str
    namespace_id: str
    language_id: str
    key_id: str
    key: str
    value: Scalar


@dataclass
class GlossaryTerm:
    """A stored glossary entry; ``translations`` maps language id to a forced translation."""
    id: str
    project_id: str
    term: str
    description: Optional[str] = None
    non_translatable: bool = False
    forbidden: bool = False
    case_sensitive: bool = False
    translations: Dict[str, str] = field(default_factory=dict)


@dataclass
class GlossaryRule:
    """A glossary term resolved against one target language."""
    term: str
    description: Optional[str] = None
    non_translatable: bool = False
    forbidden: bool = False
    case_sensitive: bool = False
    forced_translation: Optional[str] = None


@dataclass
class ReferenceMapping:
    """An external pointer to a key, e.g. a screenshot annotation box."""
    id: str
    key_id: str
    namespace_id: str
    screenshot_id: str
    position: Dict[str, float] = field(default_factory=dict)


@dataclass
class PatchEntry:
    path: str
    old_value: Any = None
    new_value: Any = None


@dataclass
class ChangePatch:
    add: List[PatchEntry] = field(default_factory=list)
    modify: List[PatchEntry] = field(default_factory=list)
    delete: List[PatchEntry] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.add or self.modify or self.delete)

    def to_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            "add": [{"path": e.path, "newValue": e.new_value} for e in self.add],
            "modify": [{"path": e.path, "oldValue": e.old_value, "newValue": e.new_value} for e in self.modify],
            "delete": [{"path": e.path} for e in self.delete],
        }


@dataclass(frozen=True)
class DispatchChunk:
    """One unit of asynchronous translation work.

    ``target_language_ids`` of None means every live project language except
    the source. ``source_language_id`` of None means the project's primary
    language.
    """
    chunk_id: str
    project_id: str
    key_ids: Tuple[str, ...]
    source_language_id: Optional[str] = None
    target_language_ids: Optional[Tuple[str, ...]] = None
