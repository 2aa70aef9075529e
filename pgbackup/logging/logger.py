from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import IO, List, Mapping, Optional

from pgbackup.errors import CommandError

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"
OUTPUT_TAIL_LINES = 20


def build_logger(name: str, logs_dir: Path, log_filename: str = "backup.log") -> logging.Logger:
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_file = logs_dir / log_filename

    logger = logging.getLogger(f"pgbackup.{name}")
    logger.setLevel(logging.INFO)
    logger.propagate = False

    if not any(isinstance(handler, logging.FileHandler) and handler.baseFilename == str(log_file) for handler in logger.handlers):
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        formatter = logging.Formatter(LOG_FORMAT)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

        if not any(type(handler) is logging.StreamHandler for handler in logger.handlers):
            stream_handler = logging.StreamHandler()
            stream_handler.setFormatter(formatter)
            logger.addHandler(stream_handler)

    return logger


def tail(text: str, lines: int = OUTPUT_TAIL_LINES) -> str:
    return "\n".join(text.strip().splitlines()[-lines:])


def run_command(
    command: List[str],
    logger: logging.Logger,
    cwd: Path | None = None,
    env: Optional[Mapping[str, str]] = None,
    stdout: Optional[IO[bytes]] = None,
) -> subprocess.CompletedProcess:
    """Exécute une commande externe et trace sa sortie.

    Quand `stdout` est fourni, la sortie standard y est écrite telle quelle
    (dump binaire) et seule la sortie d'erreur est journalisée.

    Raises:
        CommandError: si la commande sort avec un code non nul ou est introuvable.
    """

    logger.info("$ %s", " ".join(command))
    child_env = dict(os.environ)
    if env:
        child_env.update(env)

    try:
        if stdout is None:
            result = subprocess.run(
                command,
                cwd=cwd,
                env=child_env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                check=False,
            )
            output = result.stdout or ""
        else:
            result = subprocess.run(
                command,
                cwd=cwd,
                env=child_env,
                stdout=stdout,
                stderr=subprocess.PIPE,
                check=False,
            )
            output = (result.stderr or b"").decode("utf-8", errors="replace")
    except OSError as exc:
        raise CommandError(f"Commande impossible à lancer: {command[0]} ({exc})", returncode=127) from exc

    if output.strip():
        logger.info(output.strip())

    if result.returncode != 0:
        error_msg = f"Commande échouée ({result.returncode}): {command[0]}"
        logger.error(error_msg)
        raise CommandError(error_msg, returncode=result.returncode, output_tail=tail(output))

    return result
