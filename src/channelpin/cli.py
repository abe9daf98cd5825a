from __future__ import annotations

import argparse
import json
import logging
import sys
import textwrap
from pathlib import Path
from typing import Any

from ._version import __version__
from .channels import ChannelResolver
from .client import ArchiveHTTPError, ChannelpinError
from .config import Config, config_path, load_config, merge_overrides, resolve_state_dir, save_config
from .hooks import reconcile_command, refresh_hook
from .local_host import LocalPackageHost
from .reconcile import ReconciliationEngine
from .report import StdoutReportSink, format_change
from .versions import format_version


def configure_logging(*, level: int = logging.WARNING, force: bool = False) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
        force=force,
    )


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _format_http_error(err: ArchiveHTTPError) -> str:
    if err.status_code == 404:
        base = "HTTP 404 Not Found. The archive no longer serves this file; import a fresh catalog."
    elif err.status_code in (401, 403):
        base = f"HTTP {err.status_code}. The archive refused the download."
    else:
        base = f"HTTP {err.status_code}"
    detail = " ".join(err.body.split())
    # HTML error pages are noise on a terminal.
    if detail and not detail.startswith("<"):
        return f"{base} {detail[:200]}"
    return base


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="channelpin",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Keep installed packages on the stable channel of a MELPA-style feed.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              CHANNELPIN_CONFIG_PATH, CHANNELPIN_STATE_DIR, CHANNELPIN_TIMEOUT_S
            """
        ),
    )
    p.add_argument("--state-dir", help="Directory holding archives, catalog, installed registry and pins")
    p.add_argument("--timeout-s", type=float, help="HTTP timeout in seconds for package downloads")
    p.add_argument("-v", "--verbose", action="store_true", help="Log decisions at debug level")
    p.add_argument("--version", action="version", version=f"channelpin {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # config
    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config")
    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--state-dir", dest="set_state_dir")
    cfg_set.add_argument("--timeout-s", dest="set_timeout_s", type=float)

    # archives
    archives = sub.add_parser("archives", help="Configured package archives, in resolution order")
    archives_sub = archives.add_subparsers(dest="subcmd", required=True)
    archives_list = archives_sub.add_parser("list", help="List archives and their channel role")
    archives_list.add_argument("--json", action="store_true", help="Output JSON")
    archives_add = archives_sub.add_parser("add", help="Append an archive")
    archives_add.add_argument("name")
    archives_add.add_argument("url")
    archives_remove = archives_sub.add_parser("remove", help="Remove an archive and its catalog entries")
    archives_remove.add_argument("name")

    # catalog
    catalog = sub.add_parser("catalog", help="Cached package catalog")
    catalog_sub = catalog.add_subparsers(dest="subcmd", required=True)
    catalog_import = catalog_sub.add_parser(
        "import",
        help="Load an archive.json file for one archive (runs the pre-refresh pin hook first)",
    )
    catalog_import.add_argument("archive", help="Archive name")
    catalog_import.add_argument("file", help="Path to the archive's archive.json")
    catalog_list = catalog_sub.add_parser("list", help="List cached packages")
    catalog_list.add_argument("--archive", help="Only packages offered by this archive")
    catalog_list.add_argument("--json", action="store_true", help="Output JSON")

    installed = sub.add_parser("installed", help="List installed packages")
    installed.add_argument("--json", action="store_true", help="Output JSON")

    pins = sub.add_parser("pins", help="List pinned packages")
    pins.add_argument("--json", action="store_true", help="Output JSON")

    refresh = sub.add_parser("refresh", help="Pin packages offered by both channels to the stable channel")
    refresh.add_argument("--json", action="store_true", help="Output JSON")

    reconcile = sub.add_parser(
        "reconcile",
        help="Replace packages installed from the unstable channel with their stable versions",
    )
    reconcile.add_argument("--json", action="store_true", help="Output JSON")

    install = sub.add_parser("install", aliases=["i"], help="Install a package (pinned archive first)")
    install.add_argument("package")
    install.add_argument("--json", action="store_true", help="Output JSON")

    uninstall = sub.add_parser("uninstall", aliases=["remove", "rm"], help="Uninstall every version of a package")
    uninstall.add_argument("package")
    uninstall.add_argument("--json", action="store_true", help="Output JSON")

    return p


def _runtime_config(args: argparse.Namespace) -> Config:
    return merge_overrides(load_config(), state_dir=args.state_dir, timeout_s=args.timeout_s)


def _make_host(args: argparse.Namespace) -> LocalPackageHost:
    cfg = _runtime_config(args)
    return LocalPackageHost(state_dir=resolve_state_dir(cfg), timeout_s=cfg.timeout_s)


def _make_engine(host: LocalPackageHost) -> ReconciliationEngine:
    engine = ReconciliationEngine(host)
    host.add_refresh_hook(lambda: refresh_hook(engine, host))
    return engine


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        cfg = load_config()
        d = cfg.__dict__.copy()
        d["effective_state_dir"] = str(resolve_state_dir(_runtime_config(args)))
        _print_json(d)
        return 0

    if args.subcmd == "set":
        cfg = load_config()
        new_cfg = Config(
            state_dir=args.set_state_dir if args.set_state_dir is not None else cfg.state_dir,
            timeout_s=args.set_timeout_s if args.set_timeout_s is not None else cfg.timeout_s,
        )
        path = save_config(new_cfg)
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def cmd_archives(args: argparse.Namespace) -> int:
    with _make_host(args) as host:
        if args.subcmd == "list":
            repositories = host.repositories()
            resolver = ChannelResolver(repositories)
            roles = {resolver.stable_name(): "stable", resolver.unstable_name(): "unstable"}
            items = [{"name": r.name, "url": r.url, "role": roles.get(r.name, "")} for r in repositories]
            if args.json:
                _print_json({"archives": items})
                return 0
            rows = [["NAME", "ROLE", "URL"]]
            rows.extend([i["name"], i["role"] or "-", i["url"]] for i in items)
            _print_table(rows)
            return 0

        if args.subcmd == "add":
            entry = host.add_repository(args.name, args.url)
            print(f"added: {entry.name} {entry.url}")
            return 0

        if args.subcmd == "remove":
            host.remove_repository(args.name)
            print(f"removed: {args.name}")
            return 0

    raise AssertionError("unreachable")


def cmd_catalog(args: argparse.Namespace) -> int:
    with _make_host(args) as host:
        if args.subcmd == "import":
            _make_engine(host)
            pins_before = len(host.pins())
            loaded = host.refresh_from_file(args.archive, Path(args.file))
            pinned = len(host.pins()) - pins_before
            print(f"archive: {args.archive}")
            print(f"packages: {len(loaded)}")
            print(f"new_pins: {pinned}")
            return 0

        if args.subcmd == "list":
            items: list[dict[str, Any]] = []
            for name, descriptors in sorted(host.catalog().items()):
                for d in descriptors:
                    if args.archive and d.source_repository_name != args.archive:
                        continue
                    items.append(
                        {
                            "package": name,
                            "version": format_version(d.version),
                            "archive": d.source_repository_name,
                            "kind": d.kind,
                            "summary": d.summary,
                        }
                    )
            if args.json:
                _print_json({"packages": items})
                return 0
            rows = [["PACKAGE", "VERSION", "ARCHIVE", "SUMMARY"]]
            rows.extend([i["package"], i["version"], i["archive"], i["summary"]] for i in items)
            _print_table(rows)
            return 0

    raise AssertionError("unreachable")


def cmd_installed(args: argparse.Namespace) -> int:
    with _make_host(args) as host:
        items = [
            {"package": r.package_name, "version": format_version(r.version), "archive": r.source_repository_name}
            for records in host.installed().values()
            for r in records
        ]
    if args.json:
        _print_json({"installed": items})
        return 0
    rows = [["PACKAGE", "VERSION", "ARCHIVE"]]
    rows.extend([i["package"], i["version"], i["archive"]] for i in items)
    _print_table(rows)
    return 0


def cmd_pins(args: argparse.Namespace) -> int:
    with _make_host(args) as host:
        items = [{"package": p.package_name, "archive": p.repository_name} for p in host.pins()]
    if args.json:
        _print_json({"pins": items})
        return 0
    rows = [["PACKAGE", "ARCHIVE"]]
    rows.extend([i["package"], i["archive"]] for i in items)
    _print_table(rows)
    return 0


def cmd_refresh(args: argparse.Namespace) -> int:
    with _make_host(args) as host:
        added = refresh_hook(ReconciliationEngine(host), host)
    items = [{"package": p.package_name, "archive": p.repository_name} for p in added]
    if args.json:
        _print_json({"added": items})
        return 0
    if not added:
        print("No new pins.")
        return 0
    for i in items:
        print(f"pinned: {i['package']} -> {i['archive']}")
    return 0


def cmd_reconcile(args: argparse.Namespace) -> int:
    with _make_host(args) as host:
        engine = ReconciliationEngine(host)
        if not args.json:
            reconcile_command(engine, StdoutReportSink())
            return 0
        changes = engine.reconcile()
    _print_json(
        {
            "changes": [
                {
                    "package": c.package_name,
                    "old_version": format_version(c.old_version),
                    "new_version": format_version(c.new_version),
                    "summary": format_change(c),
                }
                for c in changes
            ]
        }
    )
    return 0


def cmd_install(args: argparse.Namespace) -> int:
    with _make_host(args) as host:
        descriptor = host.select_descriptor(args.package)
        record = host.install(descriptor)
    payload = {
        "package": record.package_name,
        "version": format_version(record.version),
        "archive": record.source_repository_name,
    }
    if args.json:
        _print_json({"installed": payload})
        return 0
    print(f"installed: {payload['package']} {payload['version']} ({payload['archive']})")
    return 0


def cmd_uninstall(args: argparse.Namespace) -> int:
    with _make_host(args) as host:
        records = host.installed().get(args.package, [])
        if not records:
            raise ChannelpinError(f"Package is not installed: {args.package}")
        for record in records:
            host.uninstall(record)
    items = [{"package": r.package_name, "version": format_version(r.version)} for r in records]
    if args.json:
        _print_json({"removed": items})
        return 0
    for i in items:
        print(f"removed: {i['package']} {i['version']}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(level=logging.DEBUG if args.verbose else logging.WARNING)
    try:
        if args.cmd == "config":
            return cmd_config(args)
        if args.cmd == "archives":
            return cmd_archives(args)
        if args.cmd == "catalog":
            return cmd_catalog(args)
        if args.cmd == "installed":
            return cmd_installed(args)
        if args.cmd == "pins":
            return cmd_pins(args)
        if args.cmd == "refresh":
            return cmd_refresh(args)
        if args.cmd == "reconcile":
            return cmd_reconcile(args)
        if args.cmd in ("install", "i"):
            return cmd_install(args)
        if args.cmd in ("uninstall", "remove", "rm"):
            return cmd_uninstall(args)
        raise AssertionError("unreachable")
    except ChannelpinError as e:
        if isinstance(e.__cause__, ArchiveHTTPError):
            print(f"error: {e}: {_format_http_error(e.__cause__)}", file=sys.stderr)
        else:
            print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
