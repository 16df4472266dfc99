import json
import logging
import sys

import pytest
from loguru import logger

from mcp_router.cli import build_index


@pytest.fixture(autouse=True)
def _restore_logging():
    yield
    logger.remove()
    logger.add(sys.stderr)
    logging.basicConfig(handlers=[logging.NullHandler()], force=True)


def _write_config(tmp_path) -> str:
    config = {
        "faiss": {
            "indexPath": str(tmp_path / "out" / "backends.faiss"),
            "metadataPath": str(tmp_path / "out" / "backends.json"),
            "dimension": 64,
        },
        "mcpServers": [
            {
                "id": "fetch",
                "name": "Fetch Server",
                "description": "Fetch web pages and convert them to markdown",
                "command": "uvx",
                "args": ["mcp-server-fetch"],
                "capabilities": ["web browsing", "html to markdown"],
            }
        ],
    }
    path = tmp_path / "config.json"
    path.write_text(json.dumps(config), encoding="utf-8")
    return str(path)


def test_build_index_writes_vectors_and_metadata(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    config_path = _write_config(tmp_path)

    exit_code = build_index(["--config", config_path, "--log-level", "warning"])

    assert exit_code == 0
    assert (tmp_path / "out" / "backends.faiss").exists()
    records = json.loads((tmp_path / "out" / "backends.json").read_text(encoding="utf-8"))
    assert {record["backendId"] for record in records} == {"fetch"}
    assert "Fetch web pages and convert them to markdown" in {
        record["text"] for record in records
    }


def test_build_index_reports_missing_config(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    exit_code = build_index(["--config", str(tmp_path / "absent.json")])

    assert exit_code == 1
    assert not (tmp_path / "out").exists()
