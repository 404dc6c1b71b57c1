"""
File-based sync run.

Folder layout, one sub-folder per namespace:

    <input_folder>/<namespace>/<primary>.json      edited source content
    <snapshot_folder>/<namespace>/<primary>.json   source content as of the last run
    <output_folder>/<namespace>/<code>.json        one content tree per language

Existing output trees are loaded as the current translations, the edited
source is diffed against the snapshot, the patch is reconciled into the key
store (which dispatches translations), and once every dispatch has unlocked
its keys all trees and the new snapshot are written back.
"""
import asyncio
import json
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from src.app_config import AppConfig, load_app_config
from src.change_diff import diff, flatten_content
from src.errors import PartialDispatchFailure
from src.models import ChangePatch, Language
from src.pipeline import SyncPipeline, build_pipeline
from src.reconciler import ReconcileReport
from src.translation_validator import check_encoding_and_mojibake

logger = logging.getLogger("translation_sync")


@dataclass
class NamespaceSummary:
    name: str
    patch: ChangePatch
    reconcile: ReconcileReport
    backfilled_keys: int = 0


@dataclass
class SyncSummary:
    namespaces: List[NamespaceSummary] = field(default_factory=list)
    skipped: Dict[str, List[str]] = field(default_factory=dict)
    failures: List[PartialDispatchFailure] = field(default_factory=list)
    written_files: List[str] = field(default_factory=list)


def read_json_tree(file_path: str) -> Any:
    """Read a content tree, or an empty object when the file does not exist."""
    if not os.path.exists(file_path):
        return {}
    with open(file_path, 'r', encoding='utf-8') as f:
        return json.load(f)


def write_json_tree(file_path: str, tree: Any) -> None:
    os.makedirs(os.path.dirname(file_path), exist_ok=True)
    with open(file_path, 'w', encoding='utf-8') as f:
        json.dump(tree, f, ensure_ascii=False, indent=2)
        f.write('\n')


def discover_namespaces(input_folder: str, primary_locale: str) -> List[str]:
    """Namespace folders under ``input_folder`` that hold a primary-language file."""
    namespaces = []
    for entry in sorted(os.listdir(input_folder)):
        if os.path.isfile(os.path.join(input_folder, entry, f"{primary_locale}.json")):
            namespaces.append(entry)
    return namespaces


def seed_project(pipeline: SyncPipeline, config: AppConfig) -> Tuple[str, Dict[str, Language]]:
    """Create the local workspace and project with one language per supported locale."""
    storage = pipeline.storage
    workspace = storage.add_workspace(tenant_id="local", name="local", key_limit=config.workspace_key_limit)
    project = storage.add_project(workspace.id, name=os.path.basename(config.input_folder.rstrip(os.sep)))
    languages = {}
    for code, name in config.language_codes.items():
        languages[code] = storage.add_language(project.id, code, name, primary=code == config.primary_locale)
    return project.id, languages


async def import_existing_content(
        pipeline: SyncPipeline,
        project_id: str,
        namespace_id: str,
        languages: Dict[str, Language],
        primary_locale: str,
        snapshot_tree: Any,
        output_dir: str
) -> int:
    """Load the last known source tree plus existing translations as fresh values."""
    primary_flat = flatten_content(snapshot_tree)
    language_flats = {}
    for code, language in languages.items():
        if code == primary_locale:
            continue
        language_flats[language.id] = flatten_content(read_json_tree(os.path.join(output_dir, f"{code}.json")))

    imported = 0
    for key, value in primary_flat.items():
        if value is None or value == "":
            logger.warning(f"Snapshot key '{key}' has no primary value; not importing it.")
            continue
        values = {languages[primary_locale].id: value}
        for language_id, flat in language_flats.items():
            if key in flat:
                values[language_id] = flat[key]
        await pipeline.key_store.import_key(project_id, namespace_id, key, values)
        imported += 1
    return imported


async def sync_namespace(
        pipeline: SyncPipeline,
        config: AppConfig,
        project_id: str,
        languages: Dict[str, Language],
        namespace: str
) -> NamespaceSummary:
    storage = pipeline.storage
    namespace_id = storage.add_namespace(project_id, namespace).id
    primary = languages[config.primary_locale]

    source_path = os.path.join(config.input_folder, namespace, f"{config.primary_locale}.json")
    snapshot_path = os.path.join(config.snapshot_folder, namespace, f"{config.primary_locale}.json")
    output_dir = os.path.join(config.output_folder, namespace)

    snapshot_tree = read_json_tree(snapshot_path)
    imported = await import_existing_content(
        pipeline, project_id, namespace_id, languages, config.primary_locale, snapshot_tree, output_dir
    )
    logger.info(f"Namespace '{namespace}': loaded {imported} existing key(s).")

    patch = diff(snapshot_tree, read_json_tree(source_path))
    report = await pipeline.reconciler.reconcile(project_id, namespace_id, primary.id, patch)

    # Keys left untouched by the patch but missing a translation get one too.
    touched = set(report.touched_key_ids)
    language_ids = {language.id for language in languages.values()}
    incomplete = []
    missing_language_ids = set()
    for doc in pipeline.key_store.list_keys(project_id, namespace_id):
        missing = language_ids - set(doc.values)
        if doc.id not in touched and missing:
            incomplete.append(doc.id)
            missing_language_ids.update(missing)
    if incomplete:
        await pipeline.dispatcher.trigger_batch_translation(
            project_id, incomplete, target_language_ids=sorted(missing_language_ids)
        )

    return NamespaceSummary(name=namespace, patch=patch, reconcile=report, backfilled_keys=len(incomplete))


def write_outputs(pipeline: SyncPipeline, config: AppConfig, project_id: str,
                  languages: Dict[str, Language], summary: SyncSummary) -> None:
    for namespace_summary in summary.namespaces:
        namespace = namespace_summary.name
        namespace_doc = next(
            ns for ns in pipeline.storage.namespaces.values()
            if ns.project_id == project_id and ns.name == namespace
        )
        for code, language in languages.items():
            tree = pipeline.key_store.build_content_tree(project_id, namespace_doc.id, language.id)
            output_path = os.path.join(config.output_folder, namespace, f"{code}.json")
            write_json_tree(output_path, tree)
            summary.written_files.append(output_path)

        source_path = os.path.join(config.input_folder, namespace, f"{config.primary_locale}.json")
        snapshot_path = os.path.join(config.snapshot_folder, namespace, f"{config.primary_locale}.json")
        write_json_tree(snapshot_path, read_json_tree(source_path))


async def run_sync(config: AppConfig, pipeline: Optional[SyncPipeline] = None) -> SyncSummary:
    """Run one full sync over ``config.input_folder``."""
    pipeline = pipeline or build_pipeline(config)
    summary = SyncSummary()
    project_id, languages = seed_project(pipeline, config)

    if config.glossary_file_path and os.path.exists(config.glossary_file_path):
        await pipeline.glossary.import_glossary_file(project_id, config.glossary_file_path)

    try:
        for namespace in discover_namespaces(config.input_folder, config.primary_locale):
            source_path = os.path.join(config.input_folder, namespace, f"{config.primary_locale}.json")
            errors = check_encoding_and_mojibake(source_path)
            if errors:
                for error in errors:
                    logger.error(error)
                summary.skipped[namespace] = errors
                continue
            try:
                summary.namespaces.append(await sync_namespace(pipeline, config, project_id, languages, namespace))
            except (json.JSONDecodeError, ValueError) as parse_exc:
                logger.error(f"Skipping namespace '{namespace}': {parse_exc}")
                summary.skipped[namespace] = [str(parse_exc)]

        await pipeline.drain()
    finally:
        await pipeline.close()

    for result in pipeline.queue.results:
        summary.failures.extend(result.failures)
    for failure in summary.failures:
        logger.warning(f"Language {failure.language_code} left stale by chunk {failure.chunk_id}: {failure.error}")

    if config.dry_run:
        logger.info("Dry run enabled; skipping writing content trees and snapshots.")
    else:
        write_outputs(pipeline, config, project_id, languages, summary)
        logger.info(f"Wrote {len(summary.written_files)} content file(s) to '{config.output_folder}'.")
    return summary


async def main():
    """
    Main function to orchestrate the sync run.
    """
    config = load_app_config()
    if not os.path.isdir(config.input_folder):
        logger.critical(f"Input folder '{config.input_folder}' does not exist.")
        sys.exit(1)

    summary = await run_sync(config)
    logger.info(
        f"Synced {len(summary.namespaces)} namespace(s); {len(summary.skipped)} skipped; "
        f"{len(summary.failures)} language failure(s)."
    )


def cli():
    try:
        asyncio.run(main())
    except Exception as main_exc:
        logger.error(f"An unexpected error occurred during execution: {main_exc}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    cli()
