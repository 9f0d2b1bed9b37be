from __future__ import annotations

import argparse
import logging
from typing import Optional

from .backup_log import JournalError
from .config import InstallerConfig, load_config
from .logging_utils import configure_logging
from .precompiled import find_precompiled_package, read_proc_version
from .uninstall import report_driver_information, sanity, uninstall_existing_driver

logger = logging.getLogger(__name__)


DEFAULT_CONFIG_PATH = "/etc/nvidia-installer.yaml"


def _config_from_args(args: argparse.Namespace) -> InstallerConfig:
    cfg = load_config(args.config)
    return cfg.with_overrides(backup_dir=args.backup_dir, log_path=args.log)


def cmd_uninstall(cfg: InstallerConfig, args: argparse.Namespace) -> int:
    try:
        result = uninstall_existing_driver(cfg.backup_dir)
    except JournalError:
        return 1
    if result is None:
        return 0
    for failure in result.failures:
        print(failure)
    return 0 if result.ok else 2


def cmd_sanity(cfg: InstallerConfig, args: argparse.Namespace) -> int:
    try:
        ok = sanity(cfg.backup_dir)
    except JournalError as e:
        logger.error("%s", e)
        return 1
    return 0 if ok else 1


def cmd_info(cfg: InstallerConfig, args: argparse.Namespace) -> int:
    msg = report_driver_information(cfg.backup_dir)
    if msg is None:
        print("There is no driver currently installed.")
        return 1
    print(msg)
    return 0


def cmd_find_precompiled(cfg: InstallerConfig, args: argparse.Namespace) -> int:
    kernel = read_proc_version(cfg.proc_mount_point)
    if kernel is None:
        return 1
    found = find_precompiled_package(
        args.directory or cfg.precompiled_dir,
        version=args.driver_version,
        kernel=kernel,
        required_files=cfg.required_files,
    )
    if found is None:
        print("No precompiled kernel interface was found to match your kernel.")
        return 1
    print(found[0])
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    p = argparse.ArgumentParser(prog="driver-installer")
    p.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to installer config (json|yaml)")
    p.add_argument("--backup-dir", default=None, help="Directory holding the backup log")
    p.add_argument("--log", default=None, help="Path to installer log")
    p.add_argument("--quiet", action="store_true", help="Do not echo log messages to the console")
    p.add_argument("--verbose", action="store_true", help="Log debug detail (overrides logging.level)")

    sub = p.add_subparsers(dest="command", required=True)
    sub.add_parser("uninstall", help="Uninstall the driver recorded in the backup log").set_defaults(
        func=cmd_uninstall
    )
    sub.add_parser("sanity", help="Check that the installed driver is intact").set_defaults(
        func=cmd_sanity
    )
    sub.add_parser("info", help="Print the installed driver version").set_defaults(func=cmd_info)
    fp = sub.add_parser("find-precompiled", help="Find a precompiled package for the running kernel")
    fp.add_argument("driver_version")
    fp.add_argument("--directory", default=None)
    fp.set_defaults(func=cmd_find_precompiled)

    args = p.parse_args(argv)
    try:
        cfg = _config_from_args(args)
        level = logging.DEBUG if args.verbose else cfg.log_level
    except ValueError as e:
        p.error(f"invalid config {args.config}: {e}")
    configure_logging(cfg.log_path, level=level, console_level=None if args.quiet else level)

    return int(args.func(cfg, args))


if __name__ == "__main__":
    raise SystemExit(main())
