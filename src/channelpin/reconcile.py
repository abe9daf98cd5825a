from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Protocol

from .channels import STABLE_URL_PATTERNS, UNSTABLE_URL_PATTERNS, ChannelResolver, RepositoryEntry
from .client import ChannelpinError
from .versions import Version, format_version, is_synthetic_version

log = logging.getLogger(__name__)


class InstallFailure(ChannelpinError):
    pass


class UninstallFailure(ChannelpinError):
    pass


@dataclass(frozen=True)
class PackageDescriptor:
    package_name: str
    version: Version
    source_repository_name: str
    kind: str = "tar"  # "tar" or "single"
    summary: str = ""


@dataclass(frozen=True)
class InstalledPackage:
    package_name: str
    version: Version
    source_repository_name: str


@dataclass(frozen=True, order=True)
class PinEntry:
    package_name: str
    repository_name: str


@dataclass(frozen=True)
class ChangeRecord:
    package_name: str
    old_version: Version
    new_version: Version


class PackageHost(Protocol):
    def repositories(self) -> Sequence[RepositoryEntry]:
        ...

    def catalog(self) -> Mapping[str, Sequence[PackageDescriptor]]:
        ...

    def installed(self) -> Mapping[str, Sequence[InstalledPackage]]:
        ...

    def uninstall(self, record: InstalledPackage) -> None:
        ...

    def install(self, descriptor: PackageDescriptor) -> InstalledPackage:
        ...


class PinStore(Protocol):
    def pins(self) -> list[PinEntry]:
        ...

    def append_pins(self, pins: Iterable[PinEntry]) -> list[PinEntry]:
        ...


class ReconciliationEngine:
    """
    Decides which installed packages move to the stable channel and which
    package names get pinned to it. Host state is read at call time.
    """

    def __init__(
        self,
        host: PackageHost,
        *,
        stable_patterns: Sequence[str] = STABLE_URL_PATTERNS,
        unstable_patterns: Sequence[str] = UNSTABLE_URL_PATTERNS,
    ) -> None:
        self.host = host
        self.stable_patterns = tuple(stable_patterns)
        self.unstable_patterns = tuple(unstable_patterns)

    def _resolver(self) -> ChannelResolver:
        return ChannelResolver(
            self.host.repositories(),
            stable_patterns=self.stable_patterns,
            unstable_patterns=self.unstable_patterns,
        )

    def build_pin_list(self) -> set[PinEntry]:
        resolver = self._resolver()
        unstable_name = resolver.unstable_name()
        stable_name = resolver.stable_name()
        if unstable_name is None or stable_name is None:
            log.debug("Channel roles unresolved (stable=%s, unstable=%s); no pins", stable_name, unstable_name)
            return set()

        pins: set[PinEntry] = set()
        for name, descriptors in self.host.catalog().items():
            offered_by = {d.source_repository_name for d in descriptors}
            if stable_name in offered_by and unstable_name in offered_by:
                pins.add(PinEntry(package_name=name, repository_name=stable_name))
        return pins

    def find_unstable_installed(self) -> list[InstalledPackage]:
        # Version shape only; source_repository_name is deliberately not consulted.
        found: list[InstalledPackage] = []
        seen: set[InstalledPackage] = set()
        for records in self.host.installed().values():
            for record in records:
                if record in seen or not is_synthetic_version(record.version):
                    continue
                seen.add(record)
                found.append(record)
        return found

    def find_in_repository(self, package_name: str, repository_name: str | None) -> PackageDescriptor | None:
        for descriptor in self.host.catalog().get(package_name, ()):
            if descriptor.source_repository_name == repository_name:
                return descriptor
        return None

    def reconcile(self) -> list[ChangeRecord]:
        """Replace synthetic-versioned installs with their stable-channel descriptors.

        No version comparison is made: synthetic and upstream versions are not
        comparable, so any stable descriptor wins. Install and uninstall
        failures propagate and abort the run; a package whose uninstall
        succeeded but whose install failed stays absent.
        """
        stable_name = self._resolver().stable_name()
        changes: list[ChangeRecord] = []
        for record in self.find_unstable_installed():
            candidate = self.find_in_repository(record.package_name, stable_name)
            if candidate is None:
                log.debug("No stable descriptor for %s; leaving it installed", record.package_name)
                continue
            changes.append(
                ChangeRecord(
                    package_name=record.package_name,
                    old_version=record.version,
                    new_version=candidate.version,
                )
            )
            self.host.uninstall(record)
            self.host.install(candidate)
            log.info(
                "Replaced %s %s (%s) with %s (%s)",
                record.package_name,
                format_version(record.version),
                record.source_repository_name,
                format_version(candidate.version),
                candidate.source_repository_name,
            )
        return changes
