"""Test doubles and seed data shared by unit and integration tests."""
import os
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Union

from src.app_config import AppConfig
from src.models import GlossaryRule, Language, Scalar
from src.storage import InMemoryStorage


class FakeClock:
    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class SeededProject:
    storage: InMemoryStorage
    workspace_id: str
    project_id: str
    namespace_id: str
    en: Language
    fr: Language
    de: Language


def build_seeded_storage(key_limit: int = 100) -> SeededProject:
    """One workspace, one project with en (primary), fr and de, and a 'common' namespace."""
    storage = InMemoryStorage()
    workspace = storage.add_workspace(tenant_id="org_1", name="Acme", key_limit=key_limit)
    project = storage.add_project(workspace.id, name="web")
    namespace = storage.add_namespace(project.id, name="common")
    en = storage.add_language(project.id, "en", "English", primary=True)
    fr = storage.add_language(project.id, "fr", "French")
    de = storage.add_language(project.id, "de", "German")
    return SeededProject(
        storage=storage,
        workspace_id=workspace.id,
        project_id=project.id,
        namespace_id=namespace.id,
        en=en,
        fr=fr,
        de=de,
    )


Behaviour = Union[Exception, Callable[[Dict[str, Scalar]], Dict[str, Scalar]]]


class FakeInvoker:
    """
    Stands in for TranslationInvoker. By default prefixes every string with the
    target code; ``behaviours`` maps a language code to an exception to raise
    or a function producing the result.
    """

    def __init__(self, behaviours: Optional[Dict[str, Behaviour]] = None):
        self.behaviours = behaviours or {}
        self.calls: List[dict] = []
        self.before_return: Optional[Callable] = None

    async def translate(
            self,
            source_texts: Dict[str, Scalar],
            target_language: Language,
            glossary_rules: List[GlossaryRule],
            style_rules_text: str = "",
            source_language: Optional[Language] = None
    ) -> Dict[str, Scalar]:
        self.calls.append({
            "source_texts": dict(source_texts),
            "target": target_language.code,
            "glossary_rules": list(glossary_rules),
            "style_rules_text": style_rules_text,
            "source": source_language.code if source_language else None,
        })
        if self.before_return is not None:
            await self.before_return(target_language)
        behaviour = self.behaviours.get(target_language.code)
        if isinstance(behaviour, Exception):
            raise behaviour
        if behaviour is not None:
            return behaviour(source_texts)
        return {
            key_id: f"[{target_language.code}] {value}" if isinstance(value, str) else value
            for key_id, value in source_texts.items()
        }

    def targets(self) -> List[str]:
        return sorted(call["target"] for call in self.calls)


def make_config(root, **overrides) -> AppConfig:
    """An AppConfig rooted at ``root`` without touching the environment or an OpenAI client."""
    root = str(root)
    values = dict(
        project_root=root,
        input_folder=os.path.join(root, "content"),
        output_folder=os.path.join(root, "build"),
        snapshot_folder=os.path.join(root, "snapshots"),
        glossary_file_path=os.path.join(root, "glossary.json"),
        model_name="gpt-4o-mini",
        max_model_tokens=16000,
        dry_run=False,
        dispatch_chunk_size=20,
        max_concurrent_dispatches=2,
        max_concurrent_api_calls=2,
        api_rate_limit=100,
        api_rate_period=1,
        lock_lease_seconds=600,
        manual_edits_win=True,
        show_progress=False,
        workspace_key_limit=1000,
        primary_locale="en",
        language_codes={"en": "English", "fr": "French", "de": "German"},
        name_to_code={"english": "en", "french": "fr", "german": "de"},
        style_rules={},
        openai_client=None,
    )
    values.update(overrides)
    return AppConfig(**values)
