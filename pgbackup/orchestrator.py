"""Orchestration d'un run de sauvegarde PostgreSQL.

Un run suit une machine à états explicite :

    START -> VALIDATING_CONFIG -> LOCKING -> (SWEEPING) -> WAITING_FOR_READINESS
          -> DUMPING -> ARCHIVING -> (ENCRYPTING) -> DONE | FAILED

- toute erreur d'étape mène directement à FAILED avec l'étape et la cause ;
- aucune étape n'est rejouée dans le run (l'ordonnanceur relancera au créneau suivant) ;
- une configuration invalide échoue avant toute I/O ;
- la purge n'est jamais fatale ;
- le verrou `<backup_root>/.pgbackup.lock` rejette tout run concurrent.
"""
from __future__ import annotations

import logging
import shutil
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Type

from filelock import FileLock, Timeout

from pgbackup.config import BackupConfig, RunPurpose
from pgbackup.errors import (
    ArchiveError,
    BackupError,
    ConcurrentRunError,
    ConfigurationError,
    DumpError,
    EncryptionError,
    ReadinessTimeout,
)
from pgbackup.logging.logger import build_logger
from pgbackup.pipeline.archive import build_archive, format_timestamp
from pgbackup.pipeline.dump import produce_dump
from pgbackup.pipeline.encrypt import maybe_encrypt
from pgbackup.pipeline.readiness import Probe, build_probe, wait_until_ready
from pgbackup.pipeline.retention import RetentionSummary, sweep
from pgbackup.store.sqlite_store import RunHistory

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_LOCKED = 3


class RunState(str, Enum):
    START = "start"
    VALIDATING_CONFIG = "validating_config"
    LOCKING = "locking"
    SWEEPING = "sweeping"
    WAITING_FOR_READINESS = "waiting_for_readiness"
    DUMPING = "dumping"
    ARCHIVING = "archiving"
    ENCRYPTING = "encrypting"
    DONE = "done"
    FAILED = "failed"


STAGE_ERRORS: Dict[RunState, Type[BackupError]] = {
    RunState.VALIDATING_CONFIG: ConfigurationError,
    RunState.LOCKING: ConcurrentRunError,
    RunState.WAITING_FOR_READINESS: ReadinessTimeout,
    RunState.DUMPING: DumpError,
    RunState.ARCHIVING: ArchiveError,
    RunState.ENCRYPTING: EncryptionError,
}


@dataclass
class RunResult:
    run_id: str
    purpose: RunPurpose
    ok: bool
    artifact: Optional[Path] = None
    stage: Optional[str] = None
    error: Optional[BackupError] = None
    retention: Optional[RetentionSummary] = None
    states: List[RunState] = field(default_factory=list)
    duration_s: float = 0.0

    @property
    def exit_code(self) -> int:
        if self.ok:
            return EXIT_OK
        if isinstance(self.error, ConfigurationError):
            return EXIT_CONFIG
        if isinstance(self.error, ConcurrentRunError):
            return EXIT_LOCKED
        return EXIT_FAILED


@dataclass
class _RunContext:
    timestamp: str
    dump_path: Optional[Path] = None
    archive_path: Optional[Path] = None
    artifact: Optional[Path] = None
    retention: Optional[RetentionSummary] = None


class BackupOrchestrator:
    """Enchaîne les étapes d'un run et en rapporte l'issue."""

    def __init__(
        self,
        config: BackupConfig,
        *,
        logger: Optional[logging.Logger] = None,
        probe: Optional[Probe] = None,
        history: Optional[RunHistory] = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._logger = logger
        self._probe = probe
        self._history = history
        self._clock = clock
        self._sleep = sleep
        self._monotonic = monotonic
        self._states: List[RunState] = []

    @property
    def logger(self) -> logging.Logger:
        if self._logger is None:
            self._logger = build_logger("run", self.config.logs_dir)
        return self._logger

    def run(self, purpose: RunPurpose = RunPurpose.REGULAR) -> RunResult:
        run_id = uuid.uuid4().hex[:12]
        now = self._clock()
        started = self._monotonic()
        self._states = [RunState.START]
        self.logger.info(
            "Il est %s, création d'une sauvegarde (run=%s, intention=%s)...",
            now.strftime("%H:%M"),
            run_id,
            purpose.value,
        )

        self._enter(RunState.VALIDATING_CONFIG)
        try:
            self.config.validate()
        except ConfigurationError as exc:
            # Pas d'historique : aucune écriture tant que la configuration est invalide.
            return self._failed(run_id, purpose, RunState.VALIDATING_CONFIG, exc, started)

        history = self._history or RunHistory(self.config.state_db)
        started_at = now.isoformat(timespec="seconds")

        self._enter(RunState.LOCKING)
        try:
            lock = self._acquire_lock()
        except ConcurrentRunError as error:
            result = self._failed(run_id, purpose, RunState.LOCKING, error, started)
            self._record(history, result, started_at)
            return result

        try:
            self._record_running(history, run_id, purpose, started_at)
            result = self._run_locked(run_id, purpose, format_timestamp(now), started)
        finally:
            lock.release()

        self._record(history, result, started_at)
        return result

    def sweep_only(self) -> RetentionSummary:
        """Purge manuelle, sous le même verrou qu'un run de sauvegarde.

        Raises:
            ConfigurationError: configuration invalide.
            ConcurrentRunError: un run (ou une autre purge) tient déjà le verrou.
        """

        self.config.validate()
        lock = self._acquire_lock()
        try:
            return sweep(self.config.backup_root, self.config.retention, self.logger)
        finally:
            lock.release()

    def _acquire_lock(self) -> FileLock:
        try:
            self.config.backup_root.mkdir(parents=True, exist_ok=True)
            lock = FileLock(str(self.config.lock_path), timeout=0)
            lock.acquire()
        except Timeout as exc:
            raise ConcurrentRunError(f"Un run est déjà en cours sur {self.config.backup_root}") from exc
        except OSError as exc:
            raise ConcurrentRunError(f"Verrou impossible sur {self.config.lock_path}: {exc}") from exc
        return lock

    # --- Machine à états ---
    def _run_locked(self, run_id: str, purpose: RunPurpose, timestamp: str, started: float) -> RunResult:
        ctx = _RunContext(timestamp=timestamp)

        if purpose is RunPurpose.WITH_RETENTION:
            self._enter(RunState.SWEEPING)
            self._sweep(ctx)

        steps: List[Tuple[RunState, Callable[[_RunContext], None]]] = [
            (RunState.WAITING_FOR_READINESS, self._wait_for_database),
            (RunState.DUMPING, self._dump),
            (RunState.ARCHIVING, self._archive),
        ]
        if self.config.encrypt:
            steps.append((RunState.ENCRYPTING, self._encrypt))

        for state, handler in steps:
            self._enter(state)
            try:
                handler(ctx)
            except BackupError as exc:
                return self._failed(run_id, purpose, state, exc, started, ctx.retention)
            except Exception as exc:  # noqa: BLE001 - rattachée à l'étape en cours
                error = STAGE_ERRORS[state](f"Erreur inattendue: {exc}")
                error.__cause__ = exc
                self.logger.exception("Erreur inattendue pendant %s", state.value)
                return self._failed(run_id, purpose, state, error, started, ctx.retention)

        self._enter(RunState.DONE)
        self.logger.info("Sauvegarde créée: %s", ctx.artifact)
        return RunResult(
            run_id=run_id,
            purpose=purpose,
            ok=True,
            artifact=ctx.artifact,
            retention=ctx.retention,
            states=list(self._states),
            duration_s=self._monotonic() - started,
        )

    def _enter(self, state: RunState) -> None:
        self._states.append(state)
        self.logger.debug("Etat: %s", state.value)

    def _failed(
        self,
        run_id: str,
        purpose: RunPurpose,
        state: RunState,
        error: BackupError,
        started: float,
        retention: Optional[RetentionSummary] = None,
    ) -> RunResult:
        self._enter(RunState.FAILED)
        self.logger.error("Run %s échoué pendant %s (étape %s): %s", run_id, state.value, error.stage, error)
        return RunResult(
            run_id=run_id,
            purpose=purpose,
            ok=False,
            stage=error.stage,
            error=error,
            retention=retention,
            states=list(self._states),
            duration_s=self._monotonic() - started,
        )

    # --- Etapes ---
    def _sweep(self, ctx: _RunContext) -> None:
        try:
            ctx.retention = sweep(self.config.backup_root, self.config.retention, self.logger)
        except Exception as exc:  # noqa: BLE001 - la purge n'interrompt jamais la sauvegarde
            self.logger.exception("Purge interrompue, sauvegarde poursuivie: %s", exc)

    def _wait_for_database(self, ctx: _RunContext) -> None:
        probe = self._probe or build_probe(self.config)
        wait_until_ready(
            self.config.host,
            self.config.port,
            self.config.user,
            probe,
            self.logger,
            interval=self.config.readiness_interval,
            max_wait=self.config.readiness_timeout,
            sleep=self._sleep,
            clock=self._monotonic,
        )

    def _dump(self, ctx: _RunContext) -> None:
        ctx.dump_path = produce_dump(self.config, self.logger)

    def _archive(self, ctx: _RunContext) -> None:
        if ctx.dump_path is None:
            raise ArchiveError("Aucun dump à archiver")
        try:
            ctx.archive_path = build_archive(
                ctx.dump_path, self.config.backup_root, ctx.timestamp, self.config.prefix, self.logger
            )
        except ArchiveError:
            self.logger.warning("Dump brut conservé pour récupération manuelle: %s", ctx.dump_path)
            raise
        shutil.rmtree(ctx.dump_path.parent, ignore_errors=True)
        ctx.artifact = ctx.archive_path

    def _encrypt(self, ctx: _RunContext) -> None:
        if ctx.archive_path is None:
            raise EncryptionError("Aucune archive à chiffrer")
        ctx.artifact = maybe_encrypt(
            ctx.archive_path, self.config.encrypt, self.config.encrypt_passphrase, self.logger
        )

    # --- Historique ---
    def _record_running(self, history: RunHistory, run_id: str, purpose: RunPurpose, started_at: str) -> None:
        try:
            history.ensure_schema()
            history.record_run(run_id, purpose.value, "RUNNING", "Run démarré", started_at=started_at)
        except Exception as exc:  # noqa: BLE001 - trace secondaire
            self.logger.exception("Impossible d'écrire le démarrage du run: %s", exc)

    def _record(self, history: RunHistory, result: RunResult, started_at: str) -> None:
        if result.ok:
            status, message = "SUCCESS", f"Sauvegarde créée: {result.artifact}"
        else:
            status, message = "FAILED", str(result.error)
        try:
            history.ensure_schema()
            history.record_run(
                result.run_id,
                result.purpose.value,
                status,
                message,
                stage=result.stage,
                artifact=str(result.artifact) if result.artifact else None,
                started_at=started_at,
            )
        except Exception as exc:  # noqa: BLE001 - trace secondaire
            self.logger.exception("Impossible d'écrire le statut du run: %s", exc)

