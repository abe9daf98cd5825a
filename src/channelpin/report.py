"""Human-readable reporting of reconcile runs."""

from __future__ import annotations

import sys
from collections.abc import Sequence
from typing import Protocol, TextIO

from .reconcile import ChangeRecord
from .versions import format_version

NOTHING_TO_DO = "Nothing to reconcile: no installed package has a stable-channel replacement."


class ReportSink(Protocol):
    def status(self, line: str) -> None:
        ...

    def report(self, title: str, lines: Sequence[str]) -> None:
        ...


class StdoutReportSink:
    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream

    @property
    def stream(self) -> TextIO:
        # Resolved lazily so patched sys.stdout is honored.
        return self._stream if self._stream is not None else sys.stdout

    def status(self, line: str) -> None:
        print(line, file=self.stream)

    def report(self, title: str, lines: Sequence[str]) -> None:
        print(title, file=self.stream)
        print("-" * len(title), file=self.stream)
        for line in lines:
            print(f"  {line}", file=self.stream)


def format_change(change: ChangeRecord) -> str:
    return f"{change.package_name} {format_version(change.old_version)} -> {format_version(change.new_version)}"


def report_changes(changes: Sequence[ChangeRecord], sink: ReportSink) -> None:
    if not changes:
        sink.status(NOTHING_TO_DO)
        return
    if len(changes) == 1:
        change = changes[0]
        sink.status(
            f"Reconciled {change.package_name}: "
            f"{format_version(change.old_version)} -> {format_version(change.new_version)}"
        )
        return
    sink.report(
        f"Reconciled {len(changes)} packages from the stable channel",
        [format_change(c) for c in changes],
    )
