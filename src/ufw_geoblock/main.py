#!/usr/bin/env python3
"""Country allow-list for UFW: keeps loopback, local networks and SSH open,
and re-syncs country IP range allow rules on every run (cron friendly)"""

import argparse
import logging
import os
import shutil
import sys

from .config import DEFAULTS, Config, load_config
from .errors import PreconditionError
from .firewall import FirewallClient, UfwClient
from .reconciler import Mode, RuleReconciler, RunReport

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def setup_logging(log_file: str | None, verbose: bool = False) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    file_error = None
    if log_file:
        try:
            handlers.append(logging.FileHandler(log_file))
        except OSError as e:
            file_error = e

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    if file_error is not None:
        logger.warning(f"Cannot write log file {log_file}: {file_error}; logging to stdout only")


def check_root() -> None:
    try:
        is_root = os.geteuid() == 0
    except AttributeError:
        is_root = False
    if not is_root:
        raise PreconditionError("This script must be run as root (or using sudo)")


def check_command(name: str) -> None:
    if shutil.which(name) is None:
        raise PreconditionError(f"Command '{name}' not found. Please install it.")


def log_plan(config: Config, mode: Mode) -> None:
    cc = config.country_code.upper()
    logger.info("=" * 70)
    if mode is Mode.UPDATE:
        logger.info(f"UFW Geo-Blocking Update: {cc} & local IPs")
        logger.info(f" 1. DELETE existing UFW rules with the comment '{config.country_tag}'")
        logger.info(" 2. Ensure rules exist for local networks, loopback (and SSH if missing)")
        logger.info(f" 3. Download the latest IP list for {cc}")
        logger.info(f" 4. Add new UFW rules for {cc} IPs tagged '{config.country_tag}'")
        logger.info("ASSUMPTION: default incoming policy is DENY")
    else:
        logger.info(f"UFW Geo-Blocking Initial Setup: {cc} & local IPs")
        logger.info(" 1. Ensure rules exist for local networks, loopback and SSH")
        logger.info(f" 2. Download the IP list for {cc}")
        logger.info(f" 3. Add UFW rules for {cc} IPs tagged '{config.country_tag}'")
    logger.info("=" * 70)


def log_summary(config: Config, report: RunReport, client: FirewallClient) -> None:
    cc = config.country_code.upper()
    logger.info("=" * 70)
    logger.info("[5/5] UFW rule management complete")
    if report.mode is Mode.UPDATE:
        logger.info(" - Mode: Update")
        logger.info(f" - Deleted {report.deleted} old rules tagged '{config.country_tag}'")
        if report.delete_failed:
            logger.warning(f" - {report.delete_failed} rules could not be deleted")
    else:
        logger.info(" - Mode: Initial Setup (--init)")
        logger.info(" - Skipped deleting old country rules")

    networks = ", ".join(config.local_networks) or "None"
    logger.info(f" - Ensured rules for loopback, local networks ({networks}) and SSH: {report.static_added} added")
    if report.static_failed or report.invalid_local:
        logger.warning(
            f" - Static rules: {report.static_failed} failed, "
            f"{report.invalid_local} invalid local network entries skipped"
        )

    if report.fetch_failed:
        logger.error(f" - FAILED to add new rules for {cc} due to download error: {report.fetch_error}")
    else:
        logger.info(f" - Added {report.added} new rules for {cc} tagged '{config.country_tag}'")
        logger.info(
            f" - Skipped: {report.skipped_local} local, {report.skipped_invalid} invalid, "
            f"{report.skipped_duplicate} duplicate; {report.add_failed} failed"
        )

    if report.mode is Mode.INIT:
        logger.info("REMINDER: enable UFW ('ufw enable') and set the default policy")
        logger.info("          to deny incoming ('ufw default deny incoming')")
    logger.info("Current UFW status:")
    for line in client.status().splitlines():
        logger.info(f"  {line}")
    logger.info("=" * 70)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ufw-geoblock",
        description="Sync UFW allow rules with a country IP range list.",
        epilog="Example crontab entry: 5 3 * * * ufw-geoblock --env-file /etc/ufw-geoblock.env",
    )
    parser.add_argument(
        "--init",
        action="store_true",
        help="First run: skip deletion of previously tagged country rules",
    )
    parser.add_argument(
        "--env-file",
        default=".env",
        help="KEY=VALUE override file (default: .env in the working directory)",
    )
    parser.add_argument(
        "--log-file",
        help=f"Log file path (default: LOG_FILE or {DEFAULTS['LOG_FILE']})",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def run(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    mode = Mode.INIT if args.init else Mode.UPDATE

    # stdout only until the config names the log file
    setup_logging(None, args.verbose)
    config = load_config(args.env_file, LOG_FILE=args.log_file)
    setup_logging(config.log_file, args.verbose)

    if mode is Mode.INIT:
        logger.info("--- Running in INIT mode ---")

    check_root()
    check_command(config.ufw_bin)

    client = UfwClient(config.ufw_bin)
    log_plan(config, mode)
    report = RuleReconciler(config, client).run(mode)
    log_summary(config, report, client)
    return 0


def main() -> None:
    try:
        sys.exit(run())
    except PreconditionError as e:
        logger.error(f"ERROR: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(130)
    except Exception as e:
        logger.exception(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
