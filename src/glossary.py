"""
Glossary Resolver and glossary term management.

Each term resolves to at most one directive for the translator, picked in a
fixed precedence: forbidden, then non-translatable, then forced translation,
then the plain description as soft context.
"""
import json
import logging
import os
from typing import Dict, List, Optional

from src.errors import DuplicateTermError, LanguageNotFoundError, ProjectNotFoundError, TermNotFoundError
from src.models import GlossaryRule, GlossaryTerm, RecordStatus
from src.storage import InMemoryStorage, new_id

logger = logging.getLogger("translation_sync")


def render_directive(rule: GlossaryRule) -> Optional[str]:
    """Render one rule as a bullet instruction, or None when it carries no directive."""
    sensitivity = "[Case Sensitive] " if rule.case_sensitive else ""
    if rule.forbidden:
        return f'- {sensitivity}FORBIDDEN TERM: "{rule.term}". This term must never appear in the output.'
    if rule.non_translatable:
        return f'- {sensitivity}DO NOT TRANSLATE: "{rule.term}". Copy it exactly as written.'
    if rule.forced_translation:
        return f'- {sensitivity}MANDATORY TRANSLATION: "{rule.term}" -> "{rule.forced_translation}"'
    if rule.description:
        return f'- CONTEXT for "{rule.term}": {rule.description}'
    return None


def render_glossary_section(rules: List[GlossaryRule]) -> str:
    directives = [d for d in (render_directive(rule) for rule in rules) if d]
    if not directives:
        return ""
    return "**Glossary (mandatory, follow every term rule)**:\n" + "\n".join(directives)


def load_glossary(glossary_file_path: str) -> Dict[str, Dict[str, str]]:
    """
    Load a glossary JSON file of the form ``{language_code: {term: translation}}``.

    Returns an empty dict when the file is missing or unreadable.
    """
    if not os.path.exists(glossary_file_path):
        logger.warning(f"Glossary file '{glossary_file_path}' not found.")
        return {}
    try:
        with open(glossary_file_path, 'r', encoding='utf-8') as f:
            glossary = json.load(f)
    except json.JSONDecodeError as json_exc:
        logger.error(f"Error decoding JSON glossary file: {json_exc}")
        return {}
    except OSError as os_exc:
        logger.error(f"Could not read glossary file '{glossary_file_path}': {os_exc}")
        return {}
    if not isinstance(glossary, dict):
        logger.error(f"Glossary file '{glossary_file_path}' must contain a JSON object.")
        return {}
    return glossary


class GlossaryResolver:
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def resolve(self, project_id: str, language_id: str) -> List[GlossaryRule]:
        """Return the project's glossary rules, ordered by term, as seen by one target language."""
        language = self.storage.languages.get(language_id)
        if language is None or language.project_id != project_id or language.status is not RecordStatus.ACTIVE:
            raise LanguageNotFoundError(f"Language '{language_id}' not found")

        return [
            GlossaryRule(
                term=term.term,
                description=term.description,
                non_translatable=term.non_translatable,
                forbidden=term.forbidden,
                case_sensitive=term.case_sensitive,
                forced_translation=term.translations.get(language_id),
            )
            for term in self.storage.terms_for_project(project_id)
        ]

    def _find_term(self, project_id: str, term: str) -> Optional[GlossaryTerm]:
        for existing in self.storage.terms_for_project(project_id):
            if existing.term == term:
                return existing
        return None

    async def create_term(
            self,
            project_id: str,
            term: str,
            description: Optional[str] = None,
            non_translatable: bool = False,
            forbidden: bool = False,
            case_sensitive: bool = False,
            translations: Optional[Dict[str, str]] = None
    ) -> str:
        async with self.storage.transaction():
            if project_id not in self.storage.projects:
                raise ProjectNotFoundError(f"Project '{project_id}' not found")
            if self._find_term(project_id, term) is not None:
                raise DuplicateTermError("This term already exists in the project.")
            entry = GlossaryTerm(
                id=new_id(),
                project_id=project_id,
                term=term,
                description=description,
                non_translatable=non_translatable,
                forbidden=forbidden,
                case_sensitive=case_sensitive,
                # A verbatim term has nothing to translate to.
                translations={} if non_translatable else dict(translations or {}),
            )
            self.storage.glossary_terms[entry.id] = entry
        return entry.id

    async def update_term(self, term_id: str, **changes) -> None:
        """Update the given fields of a term. Accepts the same keyword names as ``create_term``."""
        async with self.storage.transaction():
            entry = self.storage.glossary_terms.get(term_id)
            if entry is None:
                raise TermNotFoundError("Term not found")

            new_term = changes.get("term")
            if new_term and new_term != entry.term:
                duplicate = self._find_term(entry.project_id, new_term)
                if duplicate is not None and duplicate.id != term_id:
                    raise DuplicateTermError("Another entry with this term already exists.")
                entry.term = new_term

            for name in ("description", "forbidden", "case_sensitive", "non_translatable"):
                if changes.get(name) is not None:
                    setattr(entry, name, changes[name])

            if entry.non_translatable:
                entry.translations = {}
            elif changes.get("translations") is not None:
                entry.translations = dict(changes["translations"])

    async def delete_term(self, term_id: str) -> str:
        async with self.storage.transaction():
            if self.storage.glossary_terms.pop(term_id, None) is None:
                raise TermNotFoundError("Term not found")
        return term_id

    async def import_glossary_file(self, project_id: str, glossary_file_path: str) -> int:
        """
        Merge a ``{language_code: {term: translation}}`` file into the project's
        forced translations. Unknown language codes are skipped. Returns the
        number of (term, language) pairs written.
        """
        glossary = load_glossary(glossary_file_path)
        written = 0
        async with self.storage.transaction():
            for code, entries in glossary.items():
                language = self.storage.language_by_code(project_id, code)
                if language is None:
                    logger.warning(f"Glossary language '{code}' is not part of the project; skipping.")
                    continue
                for term, translation in entries.items():
                    entry = self._find_term(project_id, term)
                    if entry is None:
                        entry = GlossaryTerm(id=new_id(), project_id=project_id, term=term)
                        self.storage.glossary_terms[entry.id] = entry
                    if entry.non_translatable:
                        continue
                    entry.translations[language.id] = translation
                    written += 1
        logger.info(f"Imported {written} glossary translation(s) from '{glossary_file_path}'.")
        return written
