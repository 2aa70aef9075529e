import shutil
import subprocess
import tarfile
import uuid
from datetime import datetime
from pathlib import Path

import pytest

from pgbackup.config import load_config
from pgbackup.logging.logger import build_logger
from pgbackup.orchestrator import BackupOrchestrator
from pgbackup.pipeline.readiness import build_probe, wait_until_ready


@pytest.mark.integration
@pytest.mark.skipif(shutil.which("docker") is None, reason="Docker requis pour ce test")
@pytest.mark.skipif(shutil.which("pg_dump") is None, reason="pg_dump requis pour ce test")
def test_backup_real_postgres(tmp_path):
    root_dir = Path(__file__).resolve().parents[1]
    seed_sql = (root_dir / "fixtures" / "sample_db" / "seed.sql").read_text(encoding="utf-8")

    container = f"pgbackup-it-{uuid.uuid4().hex[:8]}"
    subprocess.run(
        [
            "docker", "run", "-d", "--rm", "--name", container,
            "-e", "POSTGRES_USER=myuser",
            "-e", "POSTGRES_PASSWORD=mypass",
            "-e", "POSTGRES_DB=mydatabase",
            "-p", "127.0.0.1::5432",
            "postgres:15",
        ],
        check=True,
        stdout=subprocess.DEVNULL,
    )

    try:
        port = subprocess.run(
            ["docker", "port", container, "5432/tcp"], check=True, capture_output=True, text=True
        ).stdout.strip().splitlines()[0].rsplit(":", 1)[1]

        env = {
            "DB_HOST": "127.0.0.1",
            "DB_PORT": port,
            "DB_USER": "myuser",
            "DB_PASSWORD": "mypass",
            "DB_NAME": "mydatabase",
            "BACKUP_DIR": str(tmp_path / "backups"),
            "BACKUP_TMP_DIR": str(tmp_path / "work"),
            "PGBACKUP_DATA_DIR": str(tmp_path / "data"),
            "READINESS_INTERVAL": "1",
            "READINESS_TIMEOUT": "60",
        }
        config = load_config(env)
        logger = build_logger("integration", config.logs_dir)

        # Le seed passe par psql dans le conteneur une fois la base prête.
        wait_until_ready(
            config.host, config.port, config.user, build_probe(config), logger, interval=1, max_wait=60
        )
        subprocess.run(
            ["docker", "exec", "-i", container, "psql", "-U", "myuser", "-d", "mydatabase"],
            input=seed_sql,
            text=True,
            check=True,
            stdout=subprocess.DEVNULL,
        )

        result = BackupOrchestrator(config, logger=logger, clock=lambda: datetime(2024, 5, 1, 3, 0)).run()

        assert result.ok, result.error
        with tarfile.open(result.artifact, "r:gz") as archive:
            dump = archive.extractfile("db_backup.sql").read().decode("utf-8")
        assert "CREATE TABLE public.users" in dump
        assert "alice@example.com" in dump
    finally:
        subprocess.run(
            ["docker", "rm", "-f", container],
            check=False,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
