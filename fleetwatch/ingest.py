"""
Ingestion gateway: validates agent reports and hands them to the store.
"""

import logging
import math
from dataclasses import replace

from fleetwatch.errors import ValidationError
from fleetwatch.models import MetricReport
from fleetwatch.store import MetricStore

logger = logging.getLogger(__name__)

PERCENT_FIELDS = ('cpu_percent', 'memory_percent', 'disk_percent')


class IngestionGateway:
    """Accepts metric reports from agents"""

    def __init__(self, store: MetricStore):
        self.store = store

    def ingest(self, report: MetricReport) -> int:
        """
        Store one report and return the reporting machine's id.

        The hostname is required and percentages must be finite numbers.
        Otherwise values are stored exactly as reported, out-of-range
        percentages included.
        """
        hostname = (report.hostname or '').strip()
        if not hostname:
            raise ValidationError('hostname is required')

        for field in PERCENT_FIELDS:
            if not math.isfinite(getattr(report, field)):
                raise ValidationError(f'{field} must be a finite number')

        machine_id = self.store.save_report(replace(report, hostname=hostname))

        logger.info(
            "Metrics received",
            extra={'context': {'hostname': hostname, 'machine_id': machine_id}}
        )
        return machine_id
