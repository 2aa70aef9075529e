"""Point d'entrée invoqué par l'ordonnanceur (cron).

Exemples de crontab (deux créneaux quotidiens, purge à 03:00) :

    0 3 * * *  pgbackup run --purpose with-retention >> /var/log/backup.log 2>&1
    0 15 * * * pgbackup run --purpose regular >> /var/log/backup.log 2>&1

Codes de sortie : 0 succès, 1 échec d'étape, 2 configuration invalide,
3 run concurrent rejeté.
"""
from __future__ import annotations

import argparse
import sys
from typing import Mapping, Optional, Sequence

from pgbackup.config import RunPurpose, load_config
from pgbackup.errors import ConcurrentRunError, ConfigurationError
from pgbackup.logging.logger import build_logger
from pgbackup.orchestrator import EXIT_CONFIG, EXIT_FAILED, EXIT_LOCKED, EXIT_OK, BackupOrchestrator
from pgbackup.store.sqlite_store import RunHistory


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pgbackup", description="Sauvegarde planifiée PostgreSQL")
    sub = parser.add_subparsers(dest="command", required=True)

    run_parser = sub.add_parser("run", help="Exécuter un run de sauvegarde")
    run_parser.add_argument(
        "--purpose",
        default=RunPurpose.REGULAR.value,
        choices=[p.value for p in RunPurpose],
        help="with-retention déclenche la purge avant la sauvegarde",
    )

    sub.add_parser("sweep", help="Purger manuellement les sauvegardes expirées")

    history_parser = sub.add_parser("history", help="Afficher les derniers runs")
    history_parser.add_argument("--limit", type=int, default=10)

    serve_parser = sub.add_parser("serve", help="Lancer l'API de statut (FastAPI)")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8080)
    return parser


def _config_error(exc: ConfigurationError) -> int:
    print(f"Configuration invalide: {exc}", file=sys.stderr)
    return EXIT_CONFIG


def main(argv: Optional[Sequence[str]] = None, env: Optional[Mapping[str, str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    if args.command == "serve":
        import uvicorn

        uvicorn.run("runner.app:app", host=args.host, port=args.port)
        return EXIT_OK

    try:
        config = load_config(env)
    except ConfigurationError as exc:
        return _config_error(exc)

    if args.command == "history":
        for record in RunHistory(config.state_db).list_runs(limit=args.limit):
            print(
                " | ".join(
                    [
                        record.started_at,
                        record.run_id,
                        record.purpose,
                        record.status,
                        record.stage or "-",
                        record.artifact or record.message,
                    ]
                )
            )
        return EXIT_OK

    if args.command == "sweep":
        logger = build_logger("sweep", config.logs_dir)
        try:
            summary = BackupOrchestrator(config, logger=logger).sweep_only()
        except ConfigurationError as exc:
            return _config_error(exc)
        except ConcurrentRunError as exc:
            logger.error("Purge refusée: %s", exc)
            return EXIT_LOCKED
        return EXIT_FAILED if summary.errors else EXIT_OK

    logger = build_logger("run", config.logs_dir)
    result = BackupOrchestrator(config, logger=logger).run(RunPurpose.parse(args.purpose))
    return result.exit_code


def main_entry() -> None:
    sys.exit(main())


if __name__ == "__main__":
    main_entry()
