"""Pytest configuration and fixtures for dbt-ui tests."""

import json
import shutil
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, Generator

import pytest

from dbt_ui.build import build
from dbt_ui.query import QueryEngine
from dbt_ui.storage import StoreHandle


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch, tmp_path: Path):
    """Keep tests away from the caller's environment and dbt_ui.toml."""
    monkeypatch.delenv("DBT_UI_DB_PATH", raising=False)
    monkeypatch.delenv("DBT_UI_CONFIG", raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def sample_manifest_path() -> Path:
    """Path to the sample dbt manifest."""
    return Path(__file__).parent / "fixtures" / "manifest.json"


@pytest.fixture
def write_manifest(temp_dir: Path) -> Callable[[Dict[str, Any]], Path]:
    """Write a manifest dict to a file and return its path."""
    counter = {"n": 0}

    def _write(payload: Dict[str, Any]) -> Path:
        counter["n"] += 1
        path = temp_dir / f"manifest_{counter['n']}.json"
        path.write_text(json.dumps(payload), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def built_store(temp_dir: Path, sample_manifest_path: Path) -> Path:
    """Build the sample manifest into a store file."""
    store_path = temp_dir / "target" / "dbt_ui.sqlite"
    build(sample_manifest_path, store_path)
    return store_path


@pytest.fixture
def store_handle(built_store: Path) -> Generator[StoreHandle, None, None]:
    handle = StoreHandle.open(built_store, readonly=True)
    yield handle
    handle.close()


@pytest.fixture
def engine(store_handle: StoreHandle) -> QueryEngine:
    return QueryEngine(store_handle)


@pytest.fixture
def engine_for(temp_dir: Path, write_manifest) -> Generator[Callable[[Dict[str, Any]], QueryEngine], None, None]:
    """Build an arbitrary manifest dict and return a QueryEngine over it."""
    handles = []

    def _engine(payload: Dict[str, Any]) -> QueryEngine:
        store_path = temp_dir / f"store_{len(handles)}.sqlite"
        build(write_manifest(payload), store_path)
        handle = StoreHandle.open(store_path, readonly=True)
        handles.append(handle)
        return QueryEngine(handle)

    yield _engine
    for handle in handles:
        handle.close()


def model_node(unique_id: str, depends_on=(), **fields: Any) -> Dict[str, Any]:
    """Minimal model node for hand-built manifests."""
    node: Dict[str, Any] = {
        "unique_id": unique_id,
        "resource_type": "model",
        "name": unique_id.split(".")[-1],
        "package_name": "proj",
        "schema": "analytics",
        "depends_on": {"nodes": list(depends_on)},
    }
    node.update(fields)
    return node


def manifest_of(*nodes: Dict[str, Any]) -> Dict[str, Any]:
    return {"nodes": {node["unique_id"]: node for node in nodes}}
