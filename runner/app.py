from __future__ import annotations

import threading
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse, PlainTextResponse

from pgbackup.config import BackupConfig, RunPurpose, load_config
from pgbackup.errors import ConfigurationError
from pgbackup.logging.logger import build_logger
from pgbackup.orchestrator import BackupOrchestrator
from pgbackup.pipeline.archive import ENCRYPTED_EXT, is_artifact
from pgbackup.store.sqlite_store import RunHistory

LOG_TAIL_BYTES = 64 * 1024

app = FastAPI(title="pgbackup Runner", version="0.1.0")


# --- Helpers ---
def _load_config() -> BackupConfig:
    try:
        return load_config()
    except ConfigurationError as exc:
        raise HTTPException(status_code=500, detail=f"Configuration invalide: {exc}") from exc


def _fetch_runs(config: BackupConfig, limit: int) -> List[Dict[str, Any]]:
    return [asdict(record) for record in RunHistory(config.state_db).list_runs(limit=limit)]


def _list_artifacts(config: BackupConfig) -> List[Dict[str, Any]]:
    root = config.backup_root
    if not root.is_dir():
        return []
    artifacts = []
    for path in sorted(root.iterdir(), reverse=True):
        if not path.is_file() or not is_artifact(path, config.prefix):
            continue
        stat = path.stat()
        artifacts.append(
            {
                "name": path.name,
                "size_bytes": stat.st_size,
                "modified_at": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
                "encrypted": path.name.endswith(ENCRYPTED_EXT),
            }
        )
    return artifacts


def _start_thread(target: Any, *, args: tuple) -> None:
    thread = threading.Thread(target=target, args=args, daemon=True)
    thread.start()


# --- Routes ---
@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/runs")
def list_runs(limit: int = 20) -> List[Dict[str, Any]]:
    if limit <= 0:
        raise HTTPException(status_code=400, detail="limit doit être strictement positif")
    return _fetch_runs(_load_config(), limit)


@app.get("/runs/latest")
def latest_run() -> Dict[str, Any]:
    record = RunHistory(_load_config().state_db).last_run()
    if record is None:
        raise HTTPException(status_code=404, detail="Aucun run enregistré")
    return asdict(record)


@app.post("/runs", status_code=202)
def trigger_run(purpose: str = RunPurpose.REGULAR.value) -> JSONResponse:
    try:
        run_purpose = RunPurpose.parse(purpose)
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    config = _load_config()
    try:
        config.validate()
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=f"Configuration invalide: {exc}") from exc

    def _run() -> None:
        logger = build_logger("run", config.logs_dir)
        try:
            BackupOrchestrator(config, logger=logger).run(run_purpose)
        except Exception:  # noqa: BLE001
            logger.exception("Run déclenché via l'API interrompu")

    _start_thread(_run, args=())
    return JSONResponse(status_code=202, content={"status": "started", "purpose": run_purpose.value})


@app.get("/artifacts")
def list_artifacts() -> List[Dict[str, Any]]:
    return _list_artifacts(_load_config())


@app.get("/logs", response_class=PlainTextResponse)
def view_log() -> PlainTextResponse:
    log_path = _load_config().logs_dir / "backup.log"
    if not log_path.exists():
        raise HTTPException(status_code=404, detail="Fichier de log introuvable")

    with log_path.open("rb") as handle:
        size = log_path.stat().st_size
        handle.seek(max(0, size - LOG_TAIL_BYTES))
        content = handle.read().decode("utf-8", errors="replace")
    return PlainTextResponse(content)
