"""Configuration d'un run de sauvegarde.

La configuration est lue une seule fois depuis l'environnement (`load_config`)
puis transmise explicitement à chaque composant ; aucun composant ne relit
`os.environ` lui-même.
"""
from __future__ import annotations

import math
import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional

from pgbackup.errors import ConfigurationError

ROOT_DIR = Path(__file__).resolve().parents[1]
DATA_DIR = ROOT_DIR / "data"
DEFAULT_HOST = "postgres-db"
DEFAULT_PORT = 5432
DEFAULT_BACKUP_DIR = Path("/mnt/backups")
DEFAULT_RETENTION_DAYS = 7
DEFAULT_PREFIX = "bica"
DEFAULT_READINESS_INTERVAL = 3.0  # secondes
DEFAULT_READINESS_TIMEOUT = 300.0  # secondes, 0 = illimité
READINESS_PROBES = ("psycopg2", "pg_isready")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"", "0", "false", "no", "off"}
_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhdw]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {
    "s": "seconds",
    "m": "minutes",
    "h": "hours",
    "d": "days",
    "w": "weeks",
    "": "days",
}
_PREFIX_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class RunPurpose(str, Enum):
    """Intention transmise par l'ordonnanceur pour un run donné."""

    REGULAR = "regular"
    WITH_RETENTION = "with-retention"

    @classmethod
    def parse(cls, value: str) -> "RunPurpose":
        try:
            return cls(value.strip().lower())
        except ValueError as exc:
            choices = ", ".join(p.value for p in cls)
            raise ConfigurationError(f"Intention de run inconnue: {value!r} (attendu: {choices})") from exc


@dataclass(frozen=True)
class BackupConfig:
    """Paramètres immuables d'un run."""

    user: str
    password: str = field(repr=False)
    database: str
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    backup_root: Path = DEFAULT_BACKUP_DIR
    retention: timedelta = timedelta(days=DEFAULT_RETENTION_DAYS)
    encrypt: bool = False
    encrypt_passphrase: str = field(default="", repr=False)
    prefix: str = DEFAULT_PREFIX
    readiness_interval: float = DEFAULT_READINESS_INTERVAL
    readiness_timeout: Optional[float] = DEFAULT_READINESS_TIMEOUT
    readiness_probe: str = "psycopg2"
    pg_dump_bin: str = "pg_dump"
    pg_isready_bin: str = "pg_isready"
    work_dir: Optional[Path] = None
    data_dir: Path = DATA_DIR

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / "logs"

    @property
    def state_db(self) -> Path:
        return self.data_dir / "state.sqlite"

    @property
    def lock_path(self) -> Path:
        return self.backup_root / ".pgbackup.lock"

    def validate(self) -> None:
        """Vérifie les invariants sans toucher au disque ni au réseau.

        Raises:
            ConfigurationError: au premier champ manquant ou invalide.
        """

        for name, value in (("DB_USER", self.user), ("DB_PASSWORD", self.password), ("DB_NAME", self.database)):
            if not value:
                raise ConfigurationError(f"{name} non défini")
        if not self.host:
            raise ConfigurationError("DB_HOST vide")
        if not 0 < self.port < 65536:
            raise ConfigurationError(f"DB_PORT hors limites: {self.port}")
        if not str(self.backup_root).strip():
            raise ConfigurationError("BACKUP_DIR vide")
        if self.retention <= timedelta(0):
            raise ConfigurationError("La fenêtre de rétention doit être strictement positive")
        if self.encrypt and not self.encrypt_passphrase:
            raise ConfigurationError("ENCRYPT activé mais ENCRYPT_PASS est vide")
        if not _PREFIX_RE.match(self.prefix):
            raise ConfigurationError(f"BACKUP_PREFIX invalide: {self.prefix!r}")
        if self.readiness_interval <= 0:
            raise ConfigurationError("READINESS_INTERVAL doit être strictement positif")
        if self.readiness_timeout is not None and self.readiness_timeout <= 0:
            raise ConfigurationError("READINESS_TIMEOUT doit être positif (0 = illimité)")
        if self.readiness_probe not in READINESS_PROBES:
            raise ConfigurationError(f"READINESS_PROBE inconnue: {self.readiness_probe!r}")


def parse_bool(value: str | None, name: str = "valeur") -> bool:
    normalized = (value or "").strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"{name} doit être un booléen (true/false), reçu {value!r}")


def parse_duration(value: str, name: str = "RETENTION") -> timedelta:
    """Convertit `7d`, `12h`, `90m`, `30s`, `2w` en timedelta ; un nombre seul compte en jours."""

    match = _DURATION_RE.match(value or "")
    if not match:
        raise ConfigurationError(f"{name} invalide: {value!r} (exemples: 7d, 12h, 90m)")
    amount, unit = match.groups()
    return _to_timedelta(name, value, **{_DURATION_UNITS[unit.lower()]: float(amount)})


def _to_timedelta(name: str, raw: str, **amount: float) -> timedelta:
    try:
        return timedelta(**amount)
    except (OverflowError, ValueError) as exc:
        raise ConfigurationError(f"{name} hors limites: {raw!r}") from exc


def _parse_number(value: str, name: str, cast):
    try:
        number = cast(value.strip())
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} doit être numérique, reçu {value!r}") from exc
    if isinstance(number, float) and not math.isfinite(number):
        raise ConfigurationError(f"{name} doit être un nombre fini, reçu {value!r}")
    return number


def load_config(env: Mapping[str, str] | None = None) -> BackupConfig:
    """Construit la configuration depuis les variables d'environnement.

    Les champs obligatoires absents restent vides : c'est `BackupConfig.validate`
    qui les rejette, au début du run. Seules les valeurs mal formées (port non
    numérique, durée illisible) lèvent ici.

    Args:
        env: mapping des variables d'environnement (par défaut os.environ).
    """

    env = os.environ if env is None else env

    if env.get("RETENTION"):
        retention = parse_duration(env["RETENTION"])
    else:
        raw_days = env.get("RETENTION_DAYS") or str(DEFAULT_RETENTION_DAYS)
        days = _parse_number(raw_days, "RETENTION_DAYS", float)
        retention = _to_timedelta("RETENTION_DAYS", raw_days, days=days)

    timeout = _parse_number(
        env.get("READINESS_TIMEOUT") or str(DEFAULT_READINESS_TIMEOUT), "READINESS_TIMEOUT", float
    )
    work_dir = env.get("BACKUP_TMP_DIR")
    data_dir = env.get("PGBACKUP_DATA_DIR")

    return BackupConfig(
        user=env.get("DB_USER", ""),
        password=env.get("DB_PASSWORD", ""),
        database=env.get("DB_NAME", ""),
        host=env.get("DB_HOST") or DEFAULT_HOST,
        port=_parse_number(env.get("DB_PORT") or str(DEFAULT_PORT), "DB_PORT", int),
        backup_root=Path(env.get("BACKUP_DIR") or DEFAULT_BACKUP_DIR),
        retention=retention,
        encrypt=parse_bool(env.get("ENCRYPT"), "ENCRYPT"),
        encrypt_passphrase=env.get("ENCRYPT_PASS", ""),
        prefix=env.get("BACKUP_PREFIX") or DEFAULT_PREFIX,
        readiness_interval=_parse_number(
            env.get("READINESS_INTERVAL") or str(DEFAULT_READINESS_INTERVAL), "READINESS_INTERVAL", float
        ),
        readiness_timeout=timeout if timeout > 0 else None,
        readiness_probe=(env.get("READINESS_PROBE") or "psycopg2").strip().lower(),
        pg_dump_bin=env.get("PG_DUMP_BIN") or "pg_dump",
        pg_isready_bin=env.get("PG_ISREADY_BIN") or "pg_isready",
        work_dir=Path(work_dir) if work_dir else None,
        data_dir=Path(data_dir) if data_dir else DATA_DIR,
    )


__all__ = ["BackupConfig", "RunPurpose", "load_config", "parse_bool", "parse_duration"]
