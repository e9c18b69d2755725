"""Concurrent drift detection against live provider state."""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import UTC, datetime

from stackapply.diff import diff_properties
from stackapply.kinds import kind_spec
from stackapply.models import ResourceDrift, ResourceStatus, Snapshot, SnapshotEntry
from stackapply.providers.base import ProviderRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DriftReport:
    """Drift results for every snapshot resource, plus the ones that could not be read."""

    drifts: list[ResourceDrift]
    failed_resources: list[str]

    @property
    def drifted(self) -> list[ResourceDrift]:
        return [
            d
            for d in self.drifts
            if d.status in (ResourceStatus.MODIFIED, ResourceStatus.DELETED)
        ]


class DriftDetector:
    """Reads every resource in a snapshot and compares it with what was last applied."""

    def __init__(self, providers: ProviderRegistry, max_concurrent: int = 5):
        self._providers = providers
        self._max_concurrent = max_concurrent

    def detect(self, snapshot: Snapshot) -> DriftReport:
        """Run drift detection on every snapshot entry and return results in snapshot order."""
        if not len(snapshot):
            return DriftReport(drifts=[], failed_resources=[])

        found: dict[str, ResourceDrift] = {}
        failed_resources: list[str] = []

        with ThreadPoolExecutor(max_workers=self._max_concurrent) as executor:
            futures = {
                executor.submit(self._detect_resource, entry): entry
                for entry in snapshot.entries.values()
            }
            for future in as_completed(futures):
                entry = futures[future]
                try:
                    found[entry.logical_id] = future.result()
                except Exception:
                    logger.exception("Failed to read %s (%s)", entry.logical_id, entry.physical_id)
                    failed_resources.append(entry.logical_id)

        drifts = [found[lid] for lid in snapshot.entries if lid in found]
        return DriftReport(
            drifts=drifts,
            failed_resources=[lid for lid in snapshot.entries if lid in failed_resources],
        )

    def _detect_resource(self, entry: SnapshotEntry) -> ResourceDrift:
        provider = self._providers.for_kind(entry.kind, entry.logical_id)
        try:
            live = provider.read(entry.physical_id)
        except NotImplementedError:
            logger.debug("Provider for %s cannot read live state", entry.kind)
            return self._drift(entry, ResourceStatus.NOT_CHECKED)

        if live is None:
            return self._drift(entry, ResourceStatus.DELETED)

        diffs = diff_properties(entry.applied, live, kind_spec(entry.kind))
        status = ResourceStatus.MODIFIED if diffs else ResourceStatus.IN_SYNC
        return self._drift(entry, status, diffs)

    @staticmethod
    def _drift(entry: SnapshotEntry, status: ResourceStatus, diffs=None) -> ResourceDrift:
        return ResourceDrift(
            logical_id=entry.logical_id,
            physical_id=entry.physical_id,
            kind=entry.kind,
            status=status,
            property_diffs=list(diffs or []),
            timestamp=datetime.now(UTC),
        )
