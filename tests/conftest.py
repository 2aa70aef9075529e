import logging
import stat
from datetime import timedelta
from pathlib import Path

import pytest

from pgbackup.config import BackupConfig

FAKE_DUMP_OK = """#!/bin/sh
for arg in "$@"; do
  if [ "$arg" = "$PGPASSWORD" ]; then
    echo "password leaked on command line" >&2
    exit 9
  fi
done
if [ "$PGPASSWORD" != "secret" ]; then
  echo "pg_dump: error: password authentication failed" >&2
  exit 2
fi
echo "-- PostgreSQL database dump"
echo "CREATE TABLE users (id integer, username text);"
echo "COPY users (id, username) FROM stdin;"
"""

FAKE_DUMP_FAIL = """#!/bin/sh
echo "pg_dump: error: connection to server failed" >&2
exit 1
"""


def write_script(path: Path, body: str) -> Path:
    path.write_text(body, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def logger():
    test_logger = logging.getLogger("pgbackup.tests")
    test_logger.setLevel(logging.DEBUG)
    return test_logger


@pytest.fixture
def fake_pg_dump(tmp_path):
    return write_script(tmp_path / "fake_pg_dump", FAKE_DUMP_OK)


@pytest.fixture
def failing_pg_dump(tmp_path):
    return write_script(tmp_path / "failing_pg_dump", FAKE_DUMP_FAIL)


@pytest.fixture
def make_config(tmp_path, fake_pg_dump):
    def _make(**overrides) -> BackupConfig:
        values = {
            "user": "myuser",
            "password": "secret",
            "database": "mydatabase",
            "host": "localhost",
            "port": 5432,
            "backup_root": tmp_path / "backups",
            "retention": timedelta(days=7),
            "prefix": "bica",
            "readiness_interval": 3.0,
            "readiness_timeout": 30.0,
            "pg_dump_bin": str(fake_pg_dump),
            "work_dir": tmp_path / "work",
            "data_dir": tmp_path / "data",
        }
        values.update(overrides)
        return BackupConfig(**values)

    return _make


def visible_files(directory: Path):
    if not directory.exists():
        return []
    return sorted(p.name for p in directory.iterdir() if not p.name.startswith("."))
