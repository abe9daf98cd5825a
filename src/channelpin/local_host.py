from __future__ import annotations

import io
import json
import logging
import os
import shutil
import tarfile
import tempfile
import zlib
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .channels import RepositoryEntry
from .client import ArchiveClient, ArchiveHTTPError, ChannelpinError, join_archive_url
from .config import ConfigError
from .reconcile import InstalledPackage, InstallFailure, PackageDescriptor, PinEntry, UninstallFailure
from .versions import Version, format_version, parse_version

log = logging.getLogger(__name__)

ARCHIVES_FILENAME = "archives.json"
CATALOG_FILENAME = "catalog.json"
INSTALLED_FILENAME = "installed.json"
PINS_FILENAME = "pins.json"
PACKAGES_DIRNAME = "packages"
INSTALL_META_FILENAME = ".channelpin-meta.json"

SCHEMA_VERSION = 1
PACKAGE_KINDS = ("tar", "single")


def _write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)


def _read_json_object(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in state file {path}: {e}") from e
    if not isinstance(raw, dict):
        return {}
    return raw


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def package_filename(descriptor: PackageDescriptor) -> str:
    ext = "el" if descriptor.kind == "single" else "tar"
    return f"{descriptor.package_name}-{format_version(descriptor.version)}.{ext}"


def parse_archive_payload(repository_name: str, payload: Any) -> list[PackageDescriptor]:
    """Parse an ``archive.json`` payload as published by MELPA and MELPA Stable.

    Shape: ``{"<name>": {"ver": [1, 2, 0], "type": "tar"|"single", "desc": "..."}}``.
    """
    if not isinstance(payload, dict):
        raise ChannelpinError(f"Archive payload for {repository_name} must be a JSON object")

    descriptors: list[PackageDescriptor] = []
    for name, entry in payload.items():
        if not isinstance(name, str) or not name.strip() or not isinstance(entry, dict):
            log.warning("Skipping malformed entry %r in %s", name, repository_name)
            continue
        try:
            version = parse_version(entry.get("ver", ()))
        except (TypeError, ValueError):
            log.warning("Skipping %s in %s: unsupported version %r", name, repository_name, entry.get("ver"))
            continue
        kind = entry.get("type", "tar")
        if kind not in PACKAGE_KINDS:
            log.warning("Skipping %s in %s: unsupported package type %r", name, repository_name, kind)
            continue
        desc = entry.get("desc")
        descriptors.append(
            PackageDescriptor(
                package_name=name.strip(),
                version=version,
                source_repository_name=repository_name,
                kind=kind,
                summary=desc.strip() if isinstance(desc, str) else "",
            )
        )
    return descriptors


def _safe_extract_tar(tar_bytes: bytes, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    base = dest.resolve()
    try:
        tf = tarfile.open(fileobj=io.BytesIO(tar_bytes), mode="r:*")
    except tarfile.TarError as e:
        raise InstallFailure(f"Not a readable tar archive: {e}") from e

    with tf:
        try:
            _extract_members(tf, dest, base)
        except (tarfile.TarError, EOFError, zlib.error) as e:
            raise InstallFailure(f"Corrupt or truncated tar archive: {e}") from e


def _extract_members(tf: tarfile.TarFile, dest: Path, base: Path) -> None:
    for member in tf.getmembers():
        name = member.name
        if not name:
            continue
        if name.startswith("/"):
            raise InstallFailure(f"Archive contains an absolute path entry: {name!r}")
        target = (dest / name).resolve()
        if not str(target).startswith(str(base) + os.sep) and target != base:
            raise InstallFailure(f"Archive contains an invalid path entry: {name!r}")

        if member.isdir():
            target.mkdir(parents=True, exist_ok=True)
            continue
        # Links and device files are never needed by a package.
        if not member.isfile():
            continue

        src = tf.extractfile(member)
        if src is None:
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        with src, target.open("wb") as out:
            shutil.copyfileobj(src, out)


class LocalPackageHost:
    """
    File-backed package host: repository configuration, catalog cache,
    installed registry and pin list live as JSON files under ``state_dir``.
    """

    def __init__(
        self,
        *,
        state_dir: Path,
        client: ArchiveClient | None = None,
        timeout_s: float | None = None,
    ) -> None:
        self.state_dir = state_dir.expanduser().resolve()
        self.packages_dir = self.state_dir / PACKAGES_DIRNAME
        self.archives_path = self.state_dir / ARCHIVES_FILENAME
        self.catalog_path = self.state_dir / CATALOG_FILENAME
        self.installed_path = self.state_dir / INSTALLED_FILENAME
        self.pins_path = self.state_dir / PINS_FILENAME
        self._client = client
        self._owns_client = False
        self._timeout_s = timeout_s
        self._refresh_hooks: list[Callable[[], object]] = []

    def close(self) -> None:
        if self._owns_client and self._client is not None:
            self._client.close()
            self._client = None
            self._owns_client = False

    def __enter__(self) -> "LocalPackageHost":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _archive_client(self) -> ArchiveClient:
        if self._client is None:
            self._client = ArchiveClient() if self._timeout_s is None else ArchiveClient(timeout_s=self._timeout_s)
            self._owns_client = True
        return self._client

    # Repository configuration

    def repositories(self) -> list[RepositoryEntry]:
        raw = _read_json_object(self.archives_path).get("archives")
        if not isinstance(raw, list):
            return []
        entries: list[RepositoryEntry] = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            name = item.get("name")
            url = item.get("url")
            if isinstance(name, str) and isinstance(url, str) and name and url:
                entries.append(RepositoryEntry(name=name, url=url))
        return entries

    def _save_repositories(self, entries: list[RepositoryEntry]) -> None:
        payload = {
            "schema_version": SCHEMA_VERSION,
            "archives": [{"name": e.name, "url": e.url} for e in entries],
        }
        _write_json_atomic(self.archives_path, payload)

    def get_repository(self, name: str) -> RepositoryEntry | None:
        for entry in self.repositories():
            if entry.name == name:
                return entry
        return None

    def add_repository(self, name: str, url: str) -> RepositoryEntry:
        name = name.strip()
        url = url.strip()
        if not name or not url:
            raise ChannelpinError("Archive name and URL must be non-empty.")
        entries = self.repositories()
        if any(e.name == name for e in entries):
            raise ChannelpinError(f"Archive already configured: {name}")
        entry = RepositoryEntry(name=name, url=url)
        entries.append(entry)
        self._save_repositories(entries)
        return entry

    def remove_repository(self, name: str) -> None:
        entries = self.repositories()
        remaining = [e for e in entries if e.name != name]
        if len(remaining) == len(entries):
            raise ChannelpinError(f"Archive not configured: {name}")
        self._save_repositories(remaining)
        catalog = {
            pkg: [d for d in descriptors if d.source_repository_name != name]
            for pkg, descriptors in self.catalog().items()
        }
        self._save_catalog(catalog)

    # Catalog

    def catalog(self) -> dict[str, list[PackageDescriptor]]:
        raw = _read_json_object(self.catalog_path).get("packages")
        if not isinstance(raw, dict):
            return {}
        catalog: dict[str, list[PackageDescriptor]] = {}
        for name, items in raw.items():
            if not isinstance(name, str) or not isinstance(items, list):
                continue
            descriptors: list[PackageDescriptor] = []
            for item in items:
                if not isinstance(item, dict) or not isinstance(item.get("archive"), str):
                    continue
                try:
                    version = parse_version(item.get("version", ()))
                except (TypeError, ValueError):
                    continue
                descriptors.append(
                    PackageDescriptor(
                        package_name=name,
                        version=version,
                        source_repository_name=item["archive"],
                        kind=item.get("kind") if item.get("kind") in PACKAGE_KINDS else "tar",
                        summary=item.get("summary") if isinstance(item.get("summary"), str) else "",
                    )
                )
            if descriptors:
                catalog[name] = descriptors
        return catalog

    def _save_catalog(self, catalog: Mapping[str, Iterable[PackageDescriptor]]) -> None:
        packages: dict[str, list[dict[str, Any]]] = {}
        for name in sorted(catalog):
            items = [
                {
                    "archive": d.source_repository_name,
                    "version": list(d.version),
                    "kind": d.kind,
                    "summary": d.summary,
                }
                for d in catalog[name]
            ]
            if items:
                packages[name] = items
        payload = {"schema_version": SCHEMA_VERSION, "generated_at": _now_iso(), "packages": packages}
        _write_json_atomic(self.catalog_path, payload)

    def add_refresh_hook(self, callback: Callable[[], object]) -> None:
        self._refresh_hooks.append(callback)

    def refresh(self, repository_name: str, payload: Any) -> list[PackageDescriptor]:
        """Replace one repository's catalog entries with a freshly fetched ``archive.json`` payload.

        Registered refresh hooks run first, against the catalog as it was
        before this refresh. A payload that is rejected outright leaves pins
        and catalog untouched.
        """
        order = [e.name for e in self.repositories()]
        if repository_name not in order:
            raise ChannelpinError(f"Archive not configured: {repository_name}")

        fresh = parse_archive_payload(repository_name, payload)
        for hook in list(self._refresh_hooks):
            hook()

        catalog: dict[str, list[PackageDescriptor]] = {
            name: [d for d in descriptors if d.source_repository_name != repository_name]
            for name, descriptors in self.catalog().items()
        }
        for descriptor in fresh:
            catalog.setdefault(descriptor.package_name, []).append(descriptor)

        # Descriptors follow configured archive order, like the host's own resolution.
        rank = {name: i for i, name in enumerate(order)}
        for name in catalog:
            catalog[name].sort(key=lambda d: rank.get(d.source_repository_name, len(rank)))
        self._save_catalog(catalog)
        log.info("Loaded %d package(s) from %s", len(fresh), repository_name)
        return fresh

    def refresh_from_file(self, repository_name: str, path: Path) -> list[PackageDescriptor]:
        try:
            payload = json.loads(path.expanduser().read_text(encoding="utf-8"))
        except OSError as e:
            raise ChannelpinError(f"Could not read archive file {path}: {e}") from e
        except json.JSONDecodeError as e:
            raise ChannelpinError(f"Invalid JSON in archive file {path}: {e}") from e
        return self.refresh(repository_name, payload)

    # Pins

    def pins(self) -> list[PinEntry]:
        raw = _read_json_object(self.pins_path).get("pins")
        if not isinstance(raw, list):
            return []
        pins: list[PinEntry] = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            pkg = item.get("package")
            archive = item.get("archive")
            if isinstance(pkg, str) and isinstance(archive, str):
                pins.append(PinEntry(package_name=pkg, repository_name=archive))
        return pins

    def append_pins(self, pins: Iterable[PinEntry]) -> list[PinEntry]:
        current = self.pins()
        seen = set(current)
        added: list[PinEntry] = []
        for pin in pins:
            if pin in seen:
                continue
            seen.add(pin)
            added.append(pin)
        if added:
            payload = {
                "schema_version": SCHEMA_VERSION,
                "pins": [{"package": p.package_name, "archive": p.repository_name} for p in current + added],
            }
            _write_json_atomic(self.pins_path, payload)
        return added

    def select_descriptor(self, package_name: str) -> PackageDescriptor:
        """Pick the descriptor a plain install would use: pinned archive first, else highest version."""
        descriptors = self.catalog().get(package_name)
        if not descriptors:
            raise ChannelpinError(f"Package not found in any archive: {package_name}")
        for pin in self.pins():
            if pin.package_name != package_name:
                continue
            for descriptor in descriptors:
                if descriptor.source_repository_name == pin.repository_name:
                    return descriptor
        return max(descriptors, key=lambda d: d.version)

    # Installed registry

    def installed(self) -> dict[str, list[InstalledPackage]]:
        raw = _read_json_object(self.installed_path).get("packages")
        if not isinstance(raw, dict):
            return {}
        registry: dict[str, list[InstalledPackage]] = {}
        for name, items in raw.items():
            if not isinstance(name, str) or not isinstance(items, list):
                continue
            records: list[InstalledPackage] = []
            for item in items:
                if not isinstance(item, dict) or not isinstance(item.get("archive"), str):
                    continue
                try:
                    version = parse_version(item.get("version", ()))
                except (TypeError, ValueError):
                    continue
                records.append(
                    InstalledPackage(package_name=name, version=version, source_repository_name=item["archive"])
                )
            if records:
                registry[name] = records
        return registry

    def _save_installed(self, registry: Mapping[str, list[InstalledPackage]]) -> None:
        packages: dict[str, list[dict[str, Any]]] = {}
        for name in sorted(registry):
            if not registry[name]:
                continue
            packages[name] = [
                {"archive": r.source_repository_name, "version": list(r.version)} for r in registry[name]
            ]
        _write_json_atomic(self.installed_path, {"schema_version": SCHEMA_VERSION, "packages": packages})

    def _package_dir(self, package_name: str, version: Version) -> Path:
        return self.packages_dir / f"{package_name}-{format_version(version)}"

    def _write_installed_meta(self, package_dir: Path, descriptor: PackageDescriptor) -> None:
        meta = {
            "name": descriptor.package_name,
            "version": list(descriptor.version),
            "archive": descriptor.source_repository_name,
            "installed_at": _now_iso(),
        }
        _write_json_atomic(package_dir / INSTALL_META_FILENAME, meta)

    def _unpack(self, descriptor: PackageDescriptor, content: bytes) -> None:
        self.packages_dir.mkdir(parents=True, exist_ok=True)
        dest = self._package_dir(descriptor.package_name, descriptor.version)

        tmp_root = self.packages_dir / ".tmp"
        tmp_root.mkdir(parents=True, exist_ok=True)

        with tempfile.TemporaryDirectory(prefix="channelpin-", dir=tmp_root) as td:
            unpack_root = Path(td) / "unpacked"
            if descriptor.kind == "single":
                unpack_root.mkdir(parents=True)
                (unpack_root / f"{descriptor.package_name}.el").write_bytes(content)
                source_root = unpack_root
            else:
                _safe_extract_tar(content, unpack_root)
                # Package tarballs usually wrap everything in <name>-<version>/.
                children = list(unpack_root.iterdir())
                if len(children) == 1 and children[0].is_dir():
                    source_root = children[0]
                else:
                    source_root = unpack_root

            backup = dest.with_name(dest.name + ".channelpin-backup")
            had_existing = dest.exists()
            if backup.exists():
                shutil.rmtree(backup, ignore_errors=True)
            if had_existing:
                dest.rename(backup)

            try:
                shutil.move(str(source_root), str(dest))
                self._write_installed_meta(dest, descriptor)
            except Exception:
                if dest.exists():
                    shutil.rmtree(dest, ignore_errors=True)
                if had_existing and backup.exists():
                    backup.rename(dest)
                raise
            finally:
                if backup.exists():
                    shutil.rmtree(backup, ignore_errors=True)

    def install(self, descriptor: PackageDescriptor) -> InstalledPackage:
        repo = self.get_repository(descriptor.source_repository_name)
        if repo is None:
            raise InstallFailure(
                f"Cannot install {descriptor.package_name}: archive not configured: {descriptor.source_repository_name}"
            )
        url = join_archive_url(repo.url, package_filename(descriptor))
        try:
            content = self._archive_client().download(url)
        except ArchiveHTTPError as e:
            raise InstallFailure(f"Could not download {descriptor.package_name} from {url}") from e
        except ChannelpinError as e:
            raise InstallFailure(f"Could not download {descriptor.package_name} from {url}: {e}") from e

        try:
            self._unpack(descriptor, content)
        except OSError as e:
            raise InstallFailure(f"Could not unpack {descriptor.package_name}: {e}") from e

        record = InstalledPackage(
            package_name=descriptor.package_name,
            version=descriptor.version,
            source_repository_name=descriptor.source_repository_name,
        )
        registry = self.installed()
        records = [r for r in registry.get(record.package_name, []) if r != record]
        records.append(record)
        registry[record.package_name] = records
        self._save_installed(registry)
        log.info("Installed %s %s from %s", record.package_name, format_version(record.version), repo.name)
        return record

    def uninstall(self, record: InstalledPackage) -> None:
        registry = self.installed()
        records = registry.get(record.package_name, [])
        if record not in records:
            raise UninstallFailure(f"{record.package_name} {format_version(record.version)} is not installed")

        remaining = [r for r in records if r != record]
        package_dir = self._package_dir(record.package_name, record.version)
        # Same name and version from another archive share the directory.
        shared = any(r.version == record.version for r in remaining)
        if package_dir.exists() and not shared:
            try:
                shutil.rmtree(package_dir)
            except OSError as e:
                raise UninstallFailure(f"Could not remove {package_dir}: {e}") from e

        registry[record.package_name] = remaining
        self._save_installed(registry)
        log.info("Uninstalled %s %s", record.package_name, format_version(record.version))
