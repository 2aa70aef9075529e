"""Purge des sauvegardes plus anciennes que la fenêtre de rétention."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

from pgbackup.errors import RetentionError


@dataclass
class RetentionSummary:
    deleted: List[Path] = field(default_factory=list)
    kept: List[Path] = field(default_factory=list)
    errors: List[RetentionError] = field(default_factory=list)

    @property
    def deleted_count(self) -> int:
        return len(self.deleted)


def sweep(
    backup_root: Path,
    window: timedelta,
    logger: logging.Logger,
    *,
    now: Optional[float] = None,
) -> RetentionSummary:
    """Supprime les fichiers de `backup_root` modifiés avant `now - window`.

    Le parcours n'est pas récursif et ignore répertoires et fichiers cachés
    (verrou, fichiers partiels). Une suppression en échec est consignée dans
    `errors` sans interrompre la purge des autres fichiers.
    """

    summary = RetentionSummary()
    if not backup_root.is_dir():
        logger.info("Rien à purger: %s n'existe pas", backup_root)
        return summary

    cutoff = (time.time() if now is None else now) - window.total_seconds()
    logger.info("Purge des sauvegardes de plus de %s dans %s...", window, backup_root)

    for entry in sorted(backup_root.iterdir()):
        if entry.name.startswith(".") or entry.is_symlink() or not entry.is_file():
            continue
        try:
            mtime = entry.stat().st_mtime
        except FileNotFoundError:
            continue
        if mtime >= cutoff:
            summary.kept.append(entry)
            continue
        try:
            entry.unlink()
        except OSError as exc:
            error = RetentionError(f"Suppression impossible de {entry.name}: {exc}", path=entry)
            summary.errors.append(error)
            logger.warning(str(error))
            continue
        summary.deleted.append(entry)
        logger.info("Supprimé: %s", entry.name)

    logger.info(
        "Purge terminée: %s supprimé(s), %s conservé(s), %s erreur(s)",
        len(summary.deleted),
        len(summary.kept),
        len(summary.errors),
    )
    return summary
