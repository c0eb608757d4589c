"""
Domain records exchanged between the store, the view builder and the API.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

DEFAULT_GROUP = 'default'
DEFAULT_ROLE = 'none'


def utcnow() -> datetime:
    """Current time as a naive UTC datetime (the storage convention)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class Machine:
    """A reporting host, identified by hostname"""
    id: int
    hostname: str
    ip: str
    group: str
    swarm_role: str
    first_seen: datetime
    last_seen: datetime


@dataclass
class Sample:
    """One immutable metric reading for a machine"""
    cpu_percent: float
    memory_percent: float
    disk_percent: float
    docker_running: int = 0
    docker_stopped: int = 0
    collected_at: Optional[datetime] = None
    id: Optional[int] = None
    machine_id: Optional[int] = None


@dataclass
class MetricReport:
    """Report as sent by an agent on each collection tick"""
    hostname: str
    ip: str = ''
    group: str = ''
    swarm_role: str = DEFAULT_ROLE
    cpu_percent: float = 0.0
    memory_percent: float = 0.0
    disk_percent: float = 0.0
    docker_running: int = 0
    docker_stopped: int = 0

    def to_sample(self) -> Sample:
        return Sample(
            cpu_percent=self.cpu_percent,
            memory_percent=self.memory_percent,
            disk_percent=self.disk_percent,
            docker_running=self.docker_running,
            docker_stopped=self.docker_stopped
        )


@dataclass
class FleetStats:
    """Fleet-wide counters; the three status counts sum to total_machines"""
    total_machines: int = 0
    online: int = 0
    warning: int = 0
    offline: int = 0
    total_containers: int = 0
