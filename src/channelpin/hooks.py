"""Entry points the host calls: before a catalog refresh, and on demand."""

from __future__ import annotations

import logging

from .reconcile import ChangeRecord, PinEntry, PinStore, ReconciliationEngine
from .report import ReportSink, report_changes

log = logging.getLogger(__name__)


def refresh_hook(engine: ReconciliationEngine, pins: PinStore) -> list[PinEntry]:
    """Pin every package offered by both channels to the stable one.

    Returns the pins that were not already present.
    """
    added = pins.append_pins(sorted(engine.build_pin_list()))
    if added:
        log.info("Pinned %d package(s) to the stable channel", len(added))
    return added


def reconcile_command(engine: ReconciliationEngine, sink: ReportSink) -> list[ChangeRecord]:
    changes = engine.reconcile()
    report_changes(changes, sink)
    return changes
