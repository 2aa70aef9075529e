"""Production du dump logique via `pg_dump`."""
from __future__ import annotations

import logging
import shutil
import tempfile
from pathlib import Path

from pgbackup.config import BackupConfig
from pgbackup.errors import CommandError, DumpError
from pgbackup.logging.logger import run_command

DUMP_FILENAME = "db_backup.sql"


def build_dump_command(config: BackupConfig) -> list[str]:
    # Le mot de passe passe par PGPASSWORD, jamais par la ligne de commande.
    return [
        config.pg_dump_bin,
        "-h",
        config.host,
        "-p",
        str(config.port),
        "-U",
        config.user,
        "--no-password",
        config.database,
    ]


def produce_dump(config: BackupConfig, logger: logging.Logger) -> Path:
    """Écrit un dump SQL dans un répertoire temporaire privé au run.

    Le répertoire (mode 0700) est créé sous `config.work_dir` ou le répertoire
    temporaire système, jamais dans la racine des sauvegardes : un crash en
    plein dump ne laisse aucun artefact partiel visible.

    Returns:
        Chemin du fichier `db_backup.sql`.

    Raises:
        DumpError: si `pg_dump` échoue ou produit un fichier vide (le
            répertoire temporaire est alors supprimé).
    """

    if config.work_dir is not None:
        config.work_dir.mkdir(parents=True, exist_ok=True)
    tmp_dir = Path(tempfile.mkdtemp(prefix="pgbackup-", dir=config.work_dir))
    dump_path = tmp_dir / DUMP_FILENAME

    logger.info("Dump de %s depuis %s:%s vers %s", config.database, config.host, config.port, dump_path)
    try:
        with dump_path.open("wb") as handle:
            run_command(
                build_dump_command(config),
                logger=logger,
                env={"PGPASSWORD": config.password},
                stdout=handle,
            )
        size = dump_path.stat().st_size
        if size == 0:
            raise DumpError(f"pg_dump a produit un fichier vide pour {config.database}", exit_code=0)
    except CommandError as exc:
        shutil.rmtree(tmp_dir, ignore_errors=True)
        raise DumpError(
            f"pg_dump échoué ({exc.returncode}) pour {config.database}",
            exit_code=exc.returncode,
            stderr_tail=exc.output_tail,
        ) from exc
    except DumpError:
        shutil.rmtree(tmp_dir, ignore_errors=True)
        raise
    except OSError as exc:
        shutil.rmtree(tmp_dir, ignore_errors=True)
        raise DumpError(f"Écriture du dump impossible: {exc}") from exc

    logger.info("Dump terminé (%s octets)", size)
    return dump_path
