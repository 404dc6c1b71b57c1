import json
import logging
import os
import shutil

import pytest


@pytest.fixture
def sync_folders(tmp_path):
    """
    Function-scoped folder layout for file-based sync runs, with a glossary
    file in the reference JSON format.
    """
    folders = {
        "input_folder": str(tmp_path / "content"),
        "output_folder": str(tmp_path / "build"),
        "snapshot_folder": str(tmp_path / "snapshots"),
        "glossary_file_path": str(tmp_path / "glossary.json"),
    }
    for key in ("input_folder", "output_folder", "snapshot_folder"):
        os.makedirs(folders[key], exist_ok=True)

    with open(folders["glossary_file_path"], 'w', encoding='utf-8') as f:
        json.dump({"de": {"Hello": "Hallo"}}, f, ensure_ascii=False, indent=2)

    yield folders

    for key in ("input_folder", "output_folder", "snapshot_folder"):
        if os.path.exists(folders[key]):
            try:
                shutil.rmtree(folders[key])
            except OSError as e:
                logging.error(f"Failed to delete directory {folders[key]}. Reason: {e}")
