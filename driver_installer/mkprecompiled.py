from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .config import load_config
from .lib.crc import crc32
from .logging_utils import configure_logging
from .precompiled import (
    FILE_KIND_INTERFACE,
    FILE_KIND_MODULE,
    ContainerFormatError,
    FileRecord,
    PackageContainer,
    extract_file,
    read_proc_version,
    unpack_container,
    write_container,
)

logger = logging.getLogger(__name__)


def _records_from_args(args: argparse.Namespace) -> List[FileRecord]:
    records: List[FileRecord] = []
    module: Optional[FileRecord] = None

    if args.module:
        module = FileRecord.from_file(
            args.module, kind=FILE_KIND_MODULE, signature_path=args.module_signature
        )

    if args.interface:
        linked_crc = args.linked_module_crc
        linked_name = args.linked_module_name or ""
        if module is not None:
            linked_crc = module.checksum
            linked_name = linked_name or module.name
        records.append(
            FileRecord.from_file(
                args.interface,
                kind=FILE_KIND_INTERFACE,
                signature_path=args.interface_signature,
                linked_module_name=linked_name,
                linked_module_checksum=linked_crc,
                core_object_name=args.core_object or "",
                target_directory=args.target_directory or "",
            )
        )

    if module is not None:
        records.append(module)
    return records


def cmd_pack(args: argparse.Namespace) -> int:
    records = _records_from_args(args)
    if not records:
        raise SystemExit("pack: provide --interface and/or --module")

    output = Path(args.output)
    if args.append:
        container = unpack_container(output)
        if container is None:
            raise SystemExit(f"pack: cannot append to {output}")
    else:
        kernel = args.kernel_version or read_proc_version(args.proc_mount_point)
        if kernel is None:
            raise SystemExit("pack: --kernel-version is required when /proc/version is unreadable")
        container = PackageContainer(
            version=args.driver_version,
            description=args.description or "",
            target_kernel=kernel,
        )

    for r in records:
        container.append(r)
    write_container(container, output)
    return 0


def cmd_unpack(args: argparse.Namespace) -> int:
    container = unpack_container(args.package)
    assert container is not None
    status = 0
    for f in container.files:
        try:
            out = extract_file(f, args.output_dir)
        except (OSError, ContainerFormatError) as e:
            logger.error("%s", e)
            status = 1
            continue
        print(out)
    return status


def cmd_info(args: argparse.Namespace) -> int:
    container = unpack_container(args.package)
    assert container is not None
    print(f"description: {container.description}")
    print(f"version: {container.version}")
    print(f"kernel version: {container.target_kernel}")
    print(f"files: {len(container.files)}")
    for f in container.files:
        state = "ok" if f.is_intact() else f"CORRUPT (computed {crc32(f.data)})"
        print(f"  {f.name}: {f.kind_name}, {len(f.data)} bytes, crc {f.checksum} {state}")
        if f.linked_module_name:
            print(f"    linked module: {f.linked_module_name} (crc {f.linked_module_checksum})")
        if f.signature:
            print(f"    detached signature: {len(f.signature)} bytes")
    return 0


def cmd_match(args: argparse.Namespace) -> int:
    container = unpack_container(args.package)
    assert container is not None
    running = read_proc_version(args.proc_mount_point)
    if running is not None and running == container.target_kernel:
        print("kernel interface matches.")
        return 0
    print("kernel interface doesn't match.")
    return 1


def main(argv: Optional[list[str]] = None) -> int:
    p = argparse.ArgumentParser(prog="mkprecompiled")
    p.add_argument("--config", default=None, help="Installer config (json|yaml)")
    p.add_argument("--log", default=None, help="Log file (default: the installer log from the config)")
    p.add_argument("--verbose", action="store_true", help="Log debug detail")
    p.add_argument("--proc-mount-point", default=None)

    sub = p.add_subparsers(dest="command", required=True)

    pk = sub.add_parser("pack", help="Pack prebuilt kernel objects into a package")
    pk.add_argument("-o", "--output", required=True)
    pk.add_argument("--driver-version", default="")
    pk.add_argument("-d", "--description", default=None)
    pk.add_argument("-v", "--kernel-version", default=None, help="/proc/version string of the target kernel")
    pk.add_argument("-i", "--interface", default=None)
    pk.add_argument("-m", "--module", default=None)
    pk.add_argument("--interface-signature", default=None)
    pk.add_argument("--module-signature", default=None)
    pk.add_argument("--linked-module-name", default=None)
    pk.add_argument("--linked-module-crc", type=int, default=None)
    pk.add_argument("--core-object", default=None)
    pk.add_argument("--target-directory", default=None)
    pk.add_argument("--append", action="store_true", help="Add files to an existing package")
    pk.set_defaults(func=cmd_pack)

    up = sub.add_parser("unpack", help="Extract every file in a package")
    up.add_argument("package")
    up.add_argument("-o", "--output-dir", default=".")
    up.set_defaults(func=cmd_unpack)

    inf = sub.add_parser("info", help="Describe a package")
    inf.add_argument("package")
    inf.set_defaults(func=cmd_info)

    mt = sub.add_parser("match", help="Check a package against the running kernel")
    mt.add_argument("package")
    mt.set_defaults(func=cmd_match)

    args = p.parse_args(argv)
    try:
        cfg = load_config(args.config)
        level = logging.DEBUG if args.verbose else cfg.log_level
    except ValueError as e:
        p.error(f"invalid config {args.config}: {e}")
    if args.proc_mount_point is None:
        args.proc_mount_point = cfg.proc_mount_point
    # stdout carries the command output; only problems go to the console.
    configure_logging(args.log or cfg.log_path, level=level, console_level=logging.WARNING)

    try:
        return int(args.func(args))
    except (OSError, ValueError) as e:
        print(f"mkprecompiled: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
