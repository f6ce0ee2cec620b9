"""SiteBackup — entry point.

Configures logging, loads the saved connection and settings, and runs one
backup.  Ctrl+C requests a cooperative cancel; the current file finishes
before the run stops.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys

from sitebackup import (
    BackupError,
    BackupProgress,
    CancellationToken,
    FailureKind,
    run_backup,
)
from sitebackup.config import ConfigManager
from sitebackup.transfer import BackupEngine
from sitebackup.utils.path_helpers import human_readable_size

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
_DATE_FORMAT = "%H:%M:%S"

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_FAILED = 2
EXIT_CANCELLED = 130

log = logging.getLogger("sitebackup.main")


def _configure_logging(verbose: bool) -> None:
    """Set up root logging to stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stderr,
    )
    # Quieten noisy third-party loggers
    logging.getLogger("paramiko").setLevel(logging.WARNING)


def _log_progress(progress: BackupProgress) -> None:
    """Progress sink that writes one log line per event."""
    speed = progress.transfer_speed
    log.info(
        "[%s] %d file(s), %s%s%s",
        progress.phase.value,
        progress.transferred_files,
        human_readable_size(progress.transferred_bytes),
        f" at {human_readable_size(speed)}/s" if speed else "",
        f" — {progress.current_file}" if progress.current_file else "",
    )


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="sitebackup", description="Back up a remote folder over SFTP.")
    parser.add_argument("remote", nargs="?", help="remote folder (default: saved remote_folder)")
    parser.add_argument("local", nargs="?", help="local folder (default: saved local_folder)")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Bootstrap and run one backup; return the process exit code."""
    args = _parse_args(argv)
    _configure_logging(args.verbose)
    log.info("Starting SiteBackup")

    config = ConfigManager()
    connection = config.get_connection()
    if connection is None:
        log.error("No saved connection — save one with ConfigManager.save_connection()")
        return EXIT_FAILED

    remote = args.remote or config.get("remote_folder")
    local = args.local or config.get("local_folder")
    if not remote:
        log.error("No remote folder given and none saved")
        return EXIT_FAILED

    cancel = CancellationToken()
    signal.signal(signal.SIGINT, lambda signum, frame: cancel.cancel())

    try:
        result = run_backup(
            connection,
            remote,
            local,
            progress_sink=_log_progress,
            cancel=cancel,
            engine=BackupEngine(**config.engine_options()),
            connect_timeout=float(config.get("connect_timeout")),
        )
    except BackupError as exc:
        if exc.kind is FailureKind.CANCELLED:
            log.warning("%s (%d file(s) copied)", exc, exc.transferred_files)
            return EXIT_CANCELLED
        log.error("%s", exc)
        log.error("%s", exc.guidance)
        return EXIT_FAILED

    log.info("%s", result.message)
    for failed in result.failed_files:
        log.warning("Failed: %s [%s] %s", failed.remote_path, failed.kind.name, failed.error)
    return EXIT_PARTIAL if result.failed_files else EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
