"""
Fleet view: online/warning/offline status and display ordering.

Everything here is a pure function of (machine, latest sample, now).
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from itertools import groupby
from typing import Iterable, List, Optional, Tuple

from fleetwatch.models import Machine, Sample

ONLINE = 'online'
WARNING = 'warning'
OFFLINE = 'offline'

# Display rank inside a group: problems first
STATUS_RANK = {OFFLINE: 0, WARNING: 1, ONLINE: 2}

DEFAULT_ONLINE_THRESHOLD = timedelta(minutes=70)
DEFAULT_WARNING_THRESHOLD = 85.0


@dataclass(frozen=True)
class Thresholds:
    """Staleness and metric limits used to derive machine status"""
    online_threshold: timedelta = DEFAULT_ONLINE_THRESHOLD
    warning_threshold: float = DEFAULT_WARNING_THRESHOLD


@dataclass
class FleetRow:
    """A machine, its latest sample (None if it has not reported one) and status"""
    machine: Machine
    sample: Optional[Sample]
    status: str

    @property
    def is_online(self) -> bool:
        return self.status != OFFLINE


@dataclass
class FleetGroup:
    name: str
    rows: List[FleetRow]


def is_stale(machine: Machine, now: datetime, thresholds: Thresholds = Thresholds()) -> bool:
    return now - machine.last_seen > thresholds.online_threshold


def exceeds_warning(sample: Optional[Sample], thresholds: Thresholds = Thresholds()) -> bool:
    if sample is None:
        return False
    limit = thresholds.warning_threshold
    return (
        sample.cpu_percent > limit
        or sample.memory_percent > limit
        or sample.disk_percent > limit
    )


def machine_status(
    machine: Machine,
    sample: Optional[Sample],
    now: datetime,
    thresholds: Thresholds = Thresholds()
) -> str:
    """
    Derive the display status of a machine.

    Staleness wins over metric values: a machine that has not reported
    within the online threshold is offline whatever its last sample says.
    """
    if is_stale(machine, now, thresholds):
        return OFFLINE
    if exceeds_warning(sample, thresholds):
        return WARNING
    return ONLINE


def row_sort_key(row: FleetRow) -> Tuple[int, str]:
    return STATUS_RANK[row.status], row.machine.hostname.casefold()


def build_fleet_view(
    rows: Iterable[Tuple[Machine, Optional[Sample]]],
    now: datetime,
    thresholds: Thresholds = Thresholds()
) -> List[FleetGroup]:
    """
    Partition machines by group label and order them for display.

    Groups are sorted by label; inside a group offline machines come first,
    then warning, then online, ties broken by case-insensitive hostname.

    Args:
        rows: (machine, latest sample or None) pairs
        now: Reference time for staleness (naive UTC)
        thresholds: Staleness and warning limits

    Returns:
        Ordered list of FleetGroup
    """
    fleet_rows = [
        FleetRow(machine=machine, sample=sample,
                 status=machine_status(machine, sample, now, thresholds))
        for machine, sample in rows
    ]
    fleet_rows.sort(key=lambda r: (r.machine.group, row_sort_key(r)))

    return [
        FleetGroup(name=name, rows=list(members))
        for name, members in groupby(fleet_rows, key=lambda r: r.machine.group)
    ]


def flatten(groups: Iterable[FleetGroup]) -> List[FleetRow]:
    """Ordered rows of every group, in group order"""
    return [row for group in groups for row in group.rows]
