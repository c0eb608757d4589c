"""
Persistence engine for the machine registry and sample history.
"""

import logging
import threading
from contextlib import contextmanager, nullcontext
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import and_, func, select, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from fleetwatch.db import create_db_engine, create_schema, machines, samples
from fleetwatch.errors import NotFoundError, StorageError
from fleetwatch.fleet_view import OFFLINE, WARNING, Thresholds, machine_status
from fleetwatch.models import (
    DEFAULT_GROUP,
    DEFAULT_ROLE,
    FleetStats,
    Machine,
    MetricReport,
    Sample,
    utcnow,
)

logger = logging.getLogger(__name__)

MachineRow = Tuple[Machine, Optional[Sample]]

_UPSERT_DIALECTS = {
    'sqlite': sqlite.insert,
    'postgresql': postgresql.insert,
}


def _machine_from_row(row) -> Machine:
    return Machine(
        id=row['id'],
        hostname=row['hostname'],
        ip=row['ip'],
        group=row['group_name'],
        swarm_role=row['swarm_role'],
        first_seen=row['first_seen'],
        last_seen=row['last_seen']
    )


def _sample_from_row(row, id_key: str = 'id') -> Optional[Sample]:
    if row[id_key] is None:
        return None
    return Sample(
        id=row[id_key],
        machine_id=row['machine_id'],
        collected_at=row['collected_at'],
        cpu_percent=row['cpu_percent'],
        memory_percent=row['memory_percent'],
        disk_percent=row['disk_percent'],
        docker_running=row['docker_running'],
        docker_stopped=row['docker_stopped']
    )


class MetricStore:
    """
    Owns the database engine and every read and write against it.

    Writes are serialized through a single lock; save_report() runs the
    machine upsert and sample insert in one transaction, so readers never
    observe one without the other. Any SQLAlchemy failure is re-raised as
    StorageError naming the operation.
    """

    def __init__(
        self,
        engine: Engine,
        thresholds: Thresholds = Thresholds(),
        clock: Callable[[], datetime] = utcnow
    ):
        self._engine = engine
        self.thresholds = thresholds
        self._clock = clock
        self._write_lock = threading.Lock()
        # One shared connection (in-memory SQLite): reads must queue behind writes
        self._shared_connection = isinstance(engine.pool, StaticPool)

    @classmethod
    def from_url(
        cls,
        db_url: str,
        thresholds: Thresholds = Thresholds(),
        clock: Callable[[], datetime] = utcnow
    ) -> 'MetricStore':
        return cls(create_db_engine(db_url), thresholds=thresholds, clock=clock)

    @contextmanager
    def _operation(self, name: str, write: bool = False):
        guard = self._write_lock if (write or self._shared_connection) else nullcontext()
        with guard:
            try:
                yield
            # OverflowError: the sqlite3 driver rejects integers wider than 64 bits
            except (SQLAlchemyError, OverflowError) as e:
                logger.error(
                    "Storage operation failed",
                    extra={'context': {'operation': name, 'error': str(e)}}
                )
                raise StorageError(name, str(e)) from e

    # Schema / lifecycle

    def create_schema(self) -> None:
        with self._operation('create_schema', write=True):
            create_schema(self._engine)

    def ping(self) -> None:
        with self._operation('ping'):
            with self._engine.connect() as conn:
                conn.execute(text('SELECT 1'))

    def close(self) -> None:
        self._engine.dispose()

    # Writes

    def upsert_machine(self, hostname: str, ip: str, group: str, role: str) -> int:
        """
        Insert or update a machine by hostname and return its id.

        ip and role always take the reported value; group only changes when
        the report carries a non-empty one.
        """
        with self._operation('upsert_machine', write=True):
            with self._engine.begin() as conn:
                return self._upsert_machine(conn, hostname, ip, group, role, self._clock())

    def insert_sample(self, machine_id: int, sample: Sample) -> int:
        """Append a sample; collected_at defaults to now. Returns the sample id."""
        with self._operation('insert_sample', write=True):
            with self._engine.begin() as conn:
                return self._insert_sample(conn, machine_id, sample, self._clock())

    def save_report(self, report: MetricReport) -> int:
        """Upsert the reporting machine and append its sample atomically"""
        with self._operation('save_report', write=True):
            with self._engine.begin() as conn:
                now = self._clock()
                machine_id = self._upsert_machine(
                    conn, report.hostname, report.ip, report.group, report.swarm_role, now
                )
                self._insert_sample(conn, machine_id, report.to_sample(), now)
                return machine_id

    def delete_older_than(self, age: timedelta) -> int:
        """Delete samples collected more than `age` ago; machines are untouched"""
        cutoff = self._clock() - age
        with self._operation('delete_older_than', write=True):
            with self._engine.begin() as conn:
                result = conn.execute(samples.delete().where(samples.c.collected_at < cutoff))
                return result.rowcount

    def delete_machine(self, machine_id: int) -> bool:
        """Remove a machine; its samples go with it through the cascade"""
        with self._operation('delete_machine', write=True):
            with self._engine.begin() as conn:
                result = conn.execute(machines.delete().where(machines.c.id == machine_id))
                return result.rowcount > 0

    def _upsert_machine(
        self,
        conn: Connection,
        hostname: str,
        ip: str,
        group: str,
        role: str,
        now: datetime
    ) -> int:
        values = {
            'hostname': hostname,
            'ip': ip or '',
            'group_name': group or DEFAULT_GROUP,
            'swarm_role': role or DEFAULT_ROLE,
            'first_seen': now,
            'last_seen': now,
        }

        insert = _UPSERT_DIALECTS.get(conn.dialect.name)
        if insert is None:
            return self._upsert_machine_portable(conn, values, bool(group))

        stmt = insert(machines).values(**values)
        updates = {
            'ip': stmt.excluded.ip,
            'swarm_role': stmt.excluded.swarm_role,
            'last_seen': stmt.excluded.last_seen,
        }
        if group:
            updates['group_name'] = stmt.excluded.group_name
        conn.execute(stmt.on_conflict_do_update(index_elements=[machines.c.hostname], set_=updates))

        return conn.execute(
            select(machines.c.id).where(machines.c.hostname == hostname)
        ).scalar_one()

    def _upsert_machine_portable(self, conn: Connection, values: dict, has_group: bool) -> int:
        existing = conn.execute(
            select(machines.c.id).where(machines.c.hostname == values['hostname'])
        ).scalar_one_or_none()

        if existing is None:
            return conn.execute(machines.insert().values(**values)).inserted_primary_key[0]

        updates = {k: values[k] for k in ('ip', 'swarm_role', 'last_seen')}
        if has_group:
            updates['group_name'] = values['group_name']
        conn.execute(machines.update().where(machines.c.id == existing).values(**updates))
        return existing

    def _insert_sample(self, conn: Connection, machine_id: int, sample: Sample, now: datetime) -> int:
        result = conn.execute(
            samples.insert().values(
                machine_id=machine_id,
                collected_at=sample.collected_at or now,
                cpu_percent=sample.cpu_percent,
                memory_percent=sample.memory_percent,
                disk_percent=sample.disk_percent,
                docker_running=sample.docker_running,
                docker_stopped=sample.docker_stopped
            )
        )
        return result.inserted_primary_key[0]

    # Reads

    def _latest_query(self, machine_id: Optional[int] = None):
        """
        Machines left-joined to their single most recent sample.

        One window query over the sample table: rank samples per machine by
        (collected_at DESC, id DESC) and keep rank 1, so equal timestamps
        resolve to the highest sample id.
        """
        rank = func.row_number().over(
            partition_by=samples.c.machine_id,
            order_by=(samples.c.collected_at.desc(), samples.c.id.desc())
        ).label('rn')

        inner = select(samples, rank)
        if machine_id is not None:
            inner = inner.where(samples.c.machine_id == machine_id)
        ranked = inner.subquery('ranked')

        query = (
            select(
                machines,
                ranked.c.id.label('sample_id'),
                ranked.c.machine_id,
                ranked.c.collected_at,
                ranked.c.cpu_percent,
                ranked.c.memory_percent,
                ranked.c.disk_percent,
                ranked.c.docker_running,
                ranked.c.docker_stopped,
            )
            .select_from(
                machines.outerjoin(
                    ranked,
                    and_(ranked.c.machine_id == machines.c.id, ranked.c.rn == 1)
                )
            )
            .order_by(machines.c.group_name, machines.c.hostname)
        )
        if machine_id is not None:
            query = query.where(machines.c.id == machine_id)
        return query

    def fleet_rows(self) -> List[MachineRow]:
        """Every machine paired with its latest sample (None if it has none)"""
        with self._operation('fleet_rows'):
            with self._engine.connect() as conn:
                rows = conn.execute(self._latest_query()).mappings().all()
        return [(_machine_from_row(r), _sample_from_row(r, 'sample_id')) for r in rows]

    def latest_sample_by_machine(self) -> Dict[int, Optional[Sample]]:
        """
        Map every machine id to its most recent sample.

        Machines that have never reported a sample map to None rather than
        to a zero-valued sample.
        """
        return {machine.id: sample for machine, sample in self.fleet_rows()}

    def machine_by_id(self, machine_id: int) -> MachineRow:
        """Machine with its latest sample attached; NotFoundError if unknown"""
        with self._operation('machine_by_id'):
            with self._engine.connect() as conn:
                row = conn.execute(self._latest_query(machine_id)).mappings().first()
        if row is None:
            raise NotFoundError(machine_id)
        return _machine_from_row(row), _sample_from_row(row, 'sample_id')

    def history(self, machine_id: int, window: timedelta) -> List[Sample]:
        """
        Samples of one machine collected within `window` of now, newest first.

        Raises NotFoundError when the machine does not exist; a known
        machine without recent samples yields an empty list.
        """
        since = self._clock() - window
        with self._operation('history'):
            with self._engine.connect() as conn:
                rows = conn.execute(
                    select(samples)
                    .where(samples.c.machine_id == machine_id, samples.c.collected_at >= since)
                    .order_by(samples.c.collected_at.desc(), samples.c.id.desc())
                ).mappings().all()

                if not rows:
                    exists = conn.execute(
                        select(machines.c.id).where(machines.c.id == machine_id)
                    ).first()
                    if exists is None:
                        raise NotFoundError(machine_id)

        return [_sample_from_row(r) for r in rows]

    def aggregate_stats(self, now: Optional[datetime] = None) -> FleetStats:
        """Status counts and running-container total over each machine's latest sample"""
        now = now or self._clock()
        stats = FleetStats()

        for machine, sample in self.fleet_rows():
            stats.total_machines += 1
            status = machine_status(machine, sample, now, self.thresholds)
            if status == OFFLINE:
                stats.offline += 1
            elif status == WARNING:
                stats.warning += 1
            else:
                stats.online += 1
            if sample is not None:
                stats.total_containers += sample.docker_running

        return stats

    def now(self) -> datetime:
        return self._clock()
