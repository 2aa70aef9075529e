"""Attente de disponibilité de la base avant le dump."""
from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass
from typing import Callable, Optional

import psycopg2

from pgbackup.config import BackupConfig
from pgbackup.errors import ReadinessTimeout

PROBE_CONNECT_TIMEOUT = 5  # secondes

Probe = Callable[[], bool]


@dataclass(frozen=True)
class Readiness:
    attempts: int
    waited_s: float


def psycopg2_probe(config: BackupConfig) -> Probe:
    """Sonde par ouverture d'une connexion courte (fermée aussitôt)."""

    def probe() -> bool:
        try:
            conn = psycopg2.connect(
                host=config.host,
                port=config.port,
                user=config.user,
                password=config.password,
                dbname=config.database,
                connect_timeout=PROBE_CONNECT_TIMEOUT,
            )
        except psycopg2.OperationalError:
            return False
        conn.close()
        return True

    return probe


def pg_isready_probe(config: BackupConfig) -> Probe:
    """Sonde via `pg_isready` : prêt uniquement sur code de sortie 0."""

    command = [
        config.pg_isready_bin,
        "-h",
        config.host,
        "-p",
        str(config.port),
        "-U",
        config.user,
        "-t",
        str(PROBE_CONNECT_TIMEOUT),
    ]

    def probe() -> bool:
        result = subprocess.run(command, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, check=False)
        return result.returncode == 0

    return probe


def build_probe(config: BackupConfig) -> Probe:
    if config.readiness_probe == "pg_isready":
        return pg_isready_probe(config)
    return psycopg2_probe(config)


def wait_until_ready(
    host: str,
    port: int,
    user: str,
    probe: Probe,
    logger: logging.Logger,
    *,
    interval: float = 3.0,
    max_wait: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Readiness:
    """Sonde la base à intervalle fixe jusqu'à ce qu'elle accepte les connexions.

    Sans `max_wait`, l'attente est illimitée. Chaque sonde en échec est suivie
    d'une pause de `interval` secondes ; une sonde réussie rend la main
    immédiatement. Une exception levée par la sonde compte comme un échec.

    Raises:
        ReadinessTimeout: si `max_wait` est dépassé avant une sonde réussie.
    """

    started = clock()
    attempts = 0

    while True:
        attempts += 1
        try:
            ready = probe()
        except Exception as exc:  # noqa: BLE001 - une sonde défaillante vaut "pas prêt"
            logger.warning("Sonde en erreur (%s:%s): %s", host, port, exc)
            ready = False

        if ready:
            waited = clock() - started
            logger.info("PostgreSQL prêt sur %s:%s (user=%s) après %s tentative(s)", host, port, user, attempts)
            return Readiness(attempts=attempts, waited_s=waited)

        logger.info("En attente de PostgreSQL sur %s:%s... (tentative %s)", host, port, attempts)

        if max_wait is not None and clock() - started + interval > max_wait:
            raise ReadinessTimeout(
                f"PostgreSQL injoignable sur {host}:{port} après {attempts} tentative(s) ({max_wait:g}s)",
                attempts=attempts,
            )
        sleep(interval)
