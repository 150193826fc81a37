"""Read-only lookups into the test-file catalog owned by the CRUD layer."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Dict, Iterable, Optional, Protocol

from .models import TestFile, TestStep

log = logging.getLogger(__name__)


class TestFileCatalog(Protocol):
    def get_test_file_with_steps_and_project(self, test_file_id: str) -> Optional[TestFile]:
        ...

    def verify_ownership(self, test_file_id: str, user_id: str) -> bool:
        ...


class InMemoryCatalog:
    """Catalog backed by a dictionary; stands in for the project/folder tables."""

    def __init__(self, test_files: Iterable[TestFile] = ()) -> None:
        self._lock = threading.Lock()
        self._files: Dict[str, TestFile] = {}
        for test_file in test_files:
            self.add_test_file(test_file)

    def add_test_file(self, test_file: TestFile) -> TestFile:
        with self._lock:
            stored = test_file.model_copy(deep=True)
            for step in stored.steps:
                step.test_file_id = stored.id
            self._files[stored.id] = stored
            return stored.model_copy(deep=True)

    def replace_steps(self, test_file_id: str, steps: Iterable[TestStep]) -> TestFile:
        with self._lock:
            test_file = self._files[test_file_id]
            test_file.steps = [step.model_copy(update={"test_file_id": test_file_id}, deep=True) for step in steps]
            return test_file.model_copy(deep=True)

    def remove_test_file(self, test_file_id: str) -> bool:
        with self._lock:
            return self._files.pop(test_file_id, None) is not None

    def get_test_file_with_steps_and_project(self, test_file_id: str) -> Optional[TestFile]:
        with self._lock:
            test_file = self._files.get(test_file_id)
            if test_file is None:
                return None
            copy = test_file.model_copy(deep=True)
        copy.steps = copy.ordered_steps()
        return copy

    def verify_ownership(self, test_file_id: str, user_id: str) -> bool:
        with self._lock:
            test_file = self._files.get(test_file_id)
            return test_file is not None and test_file.owner_id == user_id


def load_catalog(path: Optional[Path | str]) -> InMemoryCatalog:
    """Build a catalog from a JSON list of test files; empty when *path* is unset."""

    if not path:
        return InMemoryCatalog()
    source = Path(path)
    if not source.exists():
        log.warning("Catalog file %s does not exist; starting with an empty catalog", source)
        return InMemoryCatalog()
    with source.open("r", encoding="utf-8") as fh:
        raw = json.load(fh)
    items = raw.get("testFiles", []) if isinstance(raw, dict) else raw
    catalog = InMemoryCatalog(TestFile.model_validate(item) for item in items)
    log.info("Loaded %d test files from %s", len(items), source)
    return catalog
