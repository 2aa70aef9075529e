"""Hiérarchie d'erreurs du pipeline de sauvegarde.

Chaque erreur fatale porte l'étape (`stage`) qui a échoué : l'orchestrateur s'en
sert pour construire le `RunResult` et le code de sortie du processus.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional


class BackupError(RuntimeError):
    """Erreur fonctionnelle lors d'un run de sauvegarde."""

    stage = "backup"


class ConfigurationError(BackupError):
    """Champ obligatoire manquant ou valeur invalide : aucune I/O n'est tentée."""

    stage = "config"


class ConcurrentRunError(BackupError):
    """Un autre run détient déjà le verrou du répertoire de sauvegarde."""

    stage = "lock"


class ReadinessTimeout(BackupError):
    """La base n'est pas devenue joignable avant l'échéance."""

    stage = "readiness"

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


class DumpError(BackupError):
    """`pg_dump` a échoué (code de sortie non nul ou dump vide)."""

    stage = "dump"

    def __init__(self, message: str, exit_code: Optional[int] = None, stderr_tail: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail


class ArchiveError(BackupError):
    """La compression a échoué ; le dump brut est conservé."""

    stage = "archive"

    def __init__(self, message: str, dump_path: Optional[Path] = None) -> None:
        super().__init__(message)
        self.dump_path = dump_path


class EncryptionError(BackupError):
    """Le chiffrement a échoué ; l'archive en clair est conservée."""

    stage = "encryption"

    def __init__(self, message: str, archive_path: Optional[Path] = None) -> None:
        super().__init__(message)
        self.archive_path = archive_path


class RetentionError(BackupError):
    """Suppression impossible d'un fichier pendant la purge (non fatal)."""

    stage = "retention"

    def __init__(self, message: str, path: Optional[Path] = None) -> None:
        super().__init__(message)
        self.path = path


class CommandError(BackupError):
    """Commande externe terminée avec un code non nul."""

    stage = "command"

    def __init__(self, message: str, returncode: int, output_tail: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.output_tail = output_tail


__all__ = [
    "ArchiveError",
    "BackupError",
    "CommandError",
    "ConcurrentRunError",
    "ConfigurationError",
    "DumpError",
    "EncryptionError",
    "ReadinessTimeout",
    "RetentionError",
]
