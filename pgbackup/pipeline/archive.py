"""Compression du dump en archive tar.gz horodatée."""
from __future__ import annotations

import logging
import os
import tarfile
from datetime import datetime
from pathlib import Path

from pgbackup.errors import ArchiveError

TIMESTAMP_FORMAT = "%Y-%m-%d_%H%M"
ARCHIVE_EXT = ".tar.gz"
ENCRYPTED_EXT = ".enc"


def format_timestamp(moment: datetime) -> str:
    return moment.strftime(TIMESTAMP_FORMAT)


def artifact_name(prefix: str, timestamp: str, sequence: int = 0) -> str:
    stem = f"{prefix}-backup-{timestamp}"
    if sequence:
        stem = f"{stem}-{sequence}"
    return stem + ARCHIVE_EXT


def is_artifact(path: Path, prefix: str) -> bool:
    name = path.name
    return name.startswith(f"{prefix}-backup-") and (
        name.endswith(ARCHIVE_EXT) or name.endswith(ARCHIVE_EXT + ENCRYPTED_EXT)
    )


def next_archive_path(backup_root: Path, prefix: str, timestamp: str) -> Path:
    """Premier nom libre pour cet horodatage (en clair comme chiffré).

    Deux runs dans la même minute ne s'écrasent jamais : le second reçoit un
    suffixe `-1`, puis `-2`, etc.
    """

    sequence = 0
    while True:
        candidate = backup_root / artifact_name(prefix, timestamp, sequence)
        encrypted = candidate.with_name(candidate.name + ENCRYPTED_EXT)
        if not candidate.exists() and not encrypted.exists():
            return candidate
        sequence += 1


def _verify_archive(path: Path, member: str) -> None:
    with tarfile.open(path, "r:gz") as archive:
        names = archive.getnames()
        if names != [member]:
            raise ArchiveError(f"Contenu d'archive inattendu dans {path.name}: {names}")
        info = archive.getmember(member)
        if not info.isfile():
            raise ArchiveError(f"{member} n'est pas un fichier dans {path.name}")


def build_archive(
    dump_path: Path,
    backup_root: Path,
    timestamp: str,
    prefix: str,
    logger: logging.Logger,
) -> Path:
    """Empaquette le dump dans `{prefix}-backup-{timestamp}.tar.gz`.

    L'archive est écrite sous un nom caché puis renommée une fois relue et
    vérifiée. Le dump en clair est supprimé dès que l'archive est en place.

    Raises:
        ArchiveError: si la compression échoue ; le fichier partiel est
            supprimé et le dump brut conservé pour récupération manuelle.
    """

    backup_root.mkdir(parents=True, exist_ok=True)
    archive_path = next_archive_path(backup_root, prefix, timestamp)
    partial = backup_root / f".{archive_path.name}.partial"

    logger.info("Compression de %s vers %s", dump_path.name, archive_path)
    try:
        with tarfile.open(partial, "w:gz") as archive:
            archive.add(dump_path, arcname=dump_path.name, recursive=False)
        _verify_archive(partial, dump_path.name)
        os.replace(partial, archive_path)
    except ArchiveError as exc:
        partial.unlink(missing_ok=True)
        exc.dump_path = dump_path
        raise
    except (OSError, tarfile.TarError) as exc:
        partial.unlink(missing_ok=True)
        raise ArchiveError(f"Compression échouée: {exc}", dump_path=dump_path) from exc

    dump_path.unlink()
    logger.info("Archive créée: %s (%s octets)", archive_path, archive_path.stat().st_size)
    return archive_path
