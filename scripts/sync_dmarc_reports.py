"""Entry point that pulls DMARC aggregate reports out of connected mailboxes."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
import sys

from dotenv import load_dotenv

# Ensure project root is on sys.path when running as a script
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from dmarc_sync.config import Settings
from dmarc_sync.exceptions import DmarcSyncError
from dmarc_sync.models import Provider, SyncProgress, SyncResult
from dmarc_sync.orchestrator import SyncOrchestrator

load_dotenv()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sync DMARC aggregate reports from Gmail or Outlook mailboxes.")
    parser.add_argument("--user", help="User id owning the configurations (default: DMARC_SYNC_USER)")
    sub = parser.add_subparsers(dest="command", required=True)

    connect = sub.add_parser("connect", help="Authorize a mailbox and store its credentials")
    connect.add_argument("provider", choices=[p.value for p in Provider])
    connect.add_argument("--modify", action="store_true", help="Request delete permission up front")

    sync = sub.add_parser("sync", help="Run a sync for one configuration or all active ones")
    sync.add_argument("--config-id", type=int, help="Only sync this configuration")

    upgrade = sub.add_parser("upgrade-scope", help="Grant the modify permission needed for deletion")
    upgrade.add_argument("config_id", type=int)

    options = sub.add_parser("set-options", help="Change per-mailbox sync options")
    options.add_argument("config_id", type=int)
    options.add_argument("--delete-after-import", type=_parse_bool)
    options.add_argument("--unread-only", type=_parse_bool)
    options.add_argument("--incremental", type=_parse_bool)
    options.add_argument("--active", type=_parse_bool)

    sub.add_parser("list", help="List configured mailboxes")

    history = sub.add_parser("history", help="Show recent runs of a configuration")
    history.add_argument("config_id", type=int)
    history.add_argument("--limit", type=int, default=10)

    test = sub.add_parser("test-connection", help="Verify credentials and search access")
    test.add_argument("config_id", type=int)

    remove = sub.add_parser("remove", help="Delete a configuration and its stored tokens")
    remove.add_argument("config_id", type=int)
    return parser


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise argparse.ArgumentTypeError(f"Expected true/false, got: {value}")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def print_progress(progress: SyncProgress) -> None:
    prefix = "[retry] " if progress.is_retry else ""
    logging.info("%s%s: %s", prefix, progress.phase.value, progress.message)


def report_result(config_id: int, result: SyncResult) -> None:
    logging.info(
        "Config %s: success=%s found=%s new=%s attachments=%s processed=%s skipped=%s deleted=%s errors=%s (%.1fs)",
        config_id,
        result.success,
        result.emails_found,
        result.new_emails,
        result.attachments_found,
        result.reports_processed,
        result.reports_skipped,
        result.emails_deleted,
        len(result.errors),
        result.duration,
    )
    for error in result.errors:
        logging.warning("Config %s: %s", config_id, error)


def run_sync(orchestrator: SyncOrchestrator, user_id: str, config_id: int | None) -> int:
    if config_id is not None:
        results = {config_id: orchestrator.sync(config_id, user_id, print_progress)}
    else:
        results = orchestrator.sync_all(user_id, print_progress)
        if not results:
            logging.info("No active configurations for user %s", user_id)
    for cid, result in results.items():
        report_result(cid, result)
    return 0 if all(result.success for result in results.values()) else 1


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    settings = Settings()
    configure_logging(settings.log_level)
    user_id = args.user or settings.default_user_id
    orchestrator = SyncOrchestrator.from_settings(settings)
    exit_code = 0

    try:
        if args.command == "connect":
            config_id = orchestrator.credentials.connect(Provider(args.provider), user_id, modify=args.modify)
            logging.info("Connected mailbox as configuration %s", config_id)
        elif args.command == "sync":
            exit_code = run_sync(orchestrator, user_id, args.config_id)
        elif args.command == "upgrade-scope":
            orchestrator.credentials.upgrade_scope(args.config_id, user_id)
            logging.info("Configuration %s can now delete imported emails", args.config_id)
        elif args.command == "set-options":
            updates = {
                key: value
                for key, value in {
                    "sync_unread_only": args.unread_only,
                    "incremental_sync_enabled": args.incremental,
                    "is_active": args.active,
                }.items()
                if value is not None
            }
            if not updates and args.delete_after_import is None:
                parser.error("set-options needs at least one option")
            if updates:
                orchestrator.configs.set_options(args.config_id, user_id, **updates)
            if args.delete_after_import is not None:
                needs_upgrade = orchestrator.update_deletion_preference(
                    args.config_id, user_id, args.delete_after_import
                )
                if needs_upgrade:
                    logging.warning(
                        "Deletion is enabled but configuration %s lacks modify permission; run upgrade-scope",
                        args.config_id,
                    )
            logging.info("Updated options of configuration %s", args.config_id)
        elif args.command == "list":
            for config in orchestrator.configs.list_for_user(user_id):
                print(
                    f"{config.id}\t{config.provider.value}\t{config.email_address}\t"
                    f"active={config.is_active}\tdelete={config.delete_after_import}\t"
                    f"status={config.sync_status.value}\tlast_sync={config.last_sync_at}"
                )
        elif args.command == "history":
            for run in orchestrator.sync_history(args.config_id, user_id, limit=args.limit):
                print(
                    f"{run.id}\t{run.started_at.isoformat()}\t{run.status.value}\t"
                    f"found={run.emails_found}\tprocessed={run.reports_processed}\t"
                    f"skipped={run.reports_skipped}\tdeleted={run.emails_deleted}\terrors={run.errors_count}"
                )
        elif args.command == "test-connection":
            ok, message = orchestrator.test_connection(args.config_id, user_id)
            logging.info(message)
            exit_code = 0 if ok else 1
        elif args.command == "remove":
            if not orchestrator.configs.delete(args.config_id, user_id):
                logging.error("Configuration %s not found", args.config_id)
                exit_code = 1
    except DmarcSyncError as exc:
        logging.error("%s", exc)
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
