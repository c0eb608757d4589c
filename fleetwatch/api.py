"""
Fleetwatch HTTP API - FastAPI interface for agents and the dashboard
"""
import hmac
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel, ConfigDict, Field
import uvicorn

from fleetwatch import __version__
from fleetwatch.config import Settings, load_settings
from fleetwatch.errors import AuthError, NotFoundError, StorageError, ValidationError
from fleetwatch.fleet_view import FleetRow, Thresholds, build_fleet_view, flatten, machine_status
from fleetwatch.ingest import IngestionGateway
from fleetwatch.logs import configure_logging
from fleetwatch.models import DEFAULT_ROLE, MetricReport, Sample
from fleetwatch.retention import RetentionScheduler
from fleetwatch.store import MetricStore

logger = logging.getLogger(__name__)

# Largest value a 64-bit INTEGER column holds
MAX_COUNTER = 2**63 - 1


# Models
class MetricReportIn(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    hostname: str = ''
    ip: str = ''
    group: str = ''
    swarm_role: str = DEFAULT_ROLE
    cpu_percent: float = 0.0
    memory_percent: float = 0.0
    disk_percent: float = 0.0
    docker_running: int = Field(default=0, ge=0, le=MAX_COUNTER)
    docker_stopped: int = Field(default=0, ge=0, le=MAX_COUNTER)


class IngestResponse(BaseModel):
    status: str
    machine_id: int


class MachineMetrics(BaseModel):
    cpu_percent: float = 0.0
    memory_percent: float = 0.0
    disk_percent: float = 0.0
    docker_running: int = 0
    docker_stopped: int = 0


class MachineOut(BaseModel):
    id: int
    hostname: str
    ip: str
    group: str
    swarm_role: str
    first_seen: datetime
    last_seen: datetime
    status: str
    is_online: bool
    metrics: MachineMetrics


class MachineList(BaseModel):
    machines: List[MachineOut]


class FleetGroupOut(BaseModel):
    group: str
    machines: List[MachineOut]


class HistoryPoint(BaseModel):
    collected_at: datetime
    cpu_percent: float
    memory_percent: float
    disk_percent: float
    docker_running: int
    docker_stopped: int


class HistoryResponse(BaseModel):
    machine_id: int
    hours: int
    metrics: List[HistoryPoint]


class StatsOut(BaseModel):
    total_machines: int
    online: int
    warning: int
    offline: int
    total_containers: int


def _metrics_out(sample: Optional[Sample]) -> MachineMetrics:
    # A machine with no sample yet renders as zeroed metrics
    if sample is None:
        return MachineMetrics()
    return MachineMetrics(
        cpu_percent=sample.cpu_percent,
        memory_percent=sample.memory_percent,
        disk_percent=sample.disk_percent,
        docker_running=sample.docker_running,
        docker_stopped=sample.docker_stopped
    )


def _machine_out(row: FleetRow) -> MachineOut:
    m = row.machine
    return MachineOut(
        id=m.id,
        hostname=m.hostname,
        ip=m.ip,
        group=m.group,
        swarm_role=m.swarm_role,
        first_seen=m.first_seen,
        last_seen=m.last_seen,
        status=row.status,
        is_online=row.is_online,
        metrics=_metrics_out(row.sample)
    )


# Dependencies
def get_store(request: Request) -> MetricStore:
    return request.app.state.store


def get_gateway(request: Request) -> IngestionGateway:
    return request.app.state.gateway


def require_token(request: Request, authorization: Optional[str] = Header(default=None)) -> None:
    """Bearer-token check for agent endpoints; open when no token is configured"""
    token = request.app.state.settings.auth_token
    if not token:
        return
    # Bytes comparison: compare_digest rejects non-ASCII str operands
    expected = f'Bearer {token}'.encode('utf-8')
    if not authorization or not hmac.compare_digest(authorization.encode('utf-8'), expected):
        raise AuthError('Unauthorized')


router = APIRouter()


# Endpoints
@router.post('/api/metrics', response_model=IngestResponse, status_code=201,
             dependencies=[Depends(require_token)])
def receive_metrics(payload: MetricReportIn, gateway: IngestionGateway = Depends(get_gateway)):
    """Receive one metric report from an agent"""
    machine_id = gateway.ingest(MetricReport(**payload.model_dump()))
    return IngestResponse(status='ok', machine_id=machine_id)


@router.get('/api/machines', response_model=MachineList)
def list_machines(store: MetricStore = Depends(get_store)):
    """All machines with their latest metrics, in display order"""
    groups = build_fleet_view(store.fleet_rows(), store.now(), store.thresholds)
    return MachineList(machines=[_machine_out(row) for row in flatten(groups)])


@router.get('/api/groups', response_model=List[FleetGroupOut])
def list_groups(store: MetricStore = Depends(get_store)):
    """Machines partitioned by group label"""
    groups = build_fleet_view(store.fleet_rows(), store.now(), store.thresholds)
    return [
        FleetGroupOut(group=g.name, machines=[_machine_out(row) for row in g.rows])
        for g in groups
    ]


@router.get('/api/machines/{machine_id}', response_model=MachineOut)
def machine_detail(machine_id: int, store: MetricStore = Depends(get_store)):
    """One machine with its latest metrics"""
    machine, sample = store.machine_by_id(machine_id)
    status = machine_status(machine, sample, store.now(), store.thresholds)
    return _machine_out(FleetRow(machine=machine, sample=sample, status=status))


@router.get('/api/machines/{machine_id}/metrics', response_model=HistoryResponse)
def machine_history(
    request: Request,
    machine_id: int,
    hours: int = Query(default=24, ge=1, description="Hours of history to retrieve"),
    store: MetricStore = Depends(get_store)
):
    """Metric history for one machine, newest first"""
    # Nothing older than the retention window survives a prune
    max_hours = request.app.state.settings.retention_days * 24
    if hours > max_hours:
        raise ValidationError(f'hours must be at most {max_hours}')
    history = store.history(machine_id, timedelta(hours=hours))
    return HistoryResponse(
        machine_id=machine_id,
        hours=hours,
        metrics=[
            HistoryPoint(
                collected_at=s.collected_at,
                cpu_percent=s.cpu_percent,
                memory_percent=s.memory_percent,
                disk_percent=s.disk_percent,
                docker_running=s.docker_running,
                docker_stopped=s.docker_stopped
            )
            for s in history
        ]
    )


@router.get('/api/stats', response_model=StatsOut)
def stats(store: MetricStore = Depends(get_store)):
    """Fleet-wide status counts"""
    s = store.aggregate_stats()
    return StatsOut(
        total_machines=s.total_machines,
        online=s.online,
        warning=s.warning,
        offline=s.offline,
        total_containers=s.total_containers
    )


@router.get('/api/health')
def health(store: MetricStore = Depends(get_store)):
    """Health check endpoint"""
    try:
        store.ping()
    except StorageError as e:
        return JSONResponse(status_code=503, content={'status': 'error', 'message': e.message})
    return {'status': 'ok', 'version': __version__}


@router.get('/', response_class=HTMLResponse)
def dashboard():
    """Placeholder page; the dashboard itself is served separately"""
    return HTMLResponse(content="""
    <html>
        <head><title>Fleetwatch</title></head>
        <body>
            <h1>Fleetwatch</h1>
            <p>API endpoints are available at /docs</p>
        </body>
    </html>
    """)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={'status': 'error', 'message': message})


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return _error(400, str(exc))

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError):
        return _error(404, str(exc))

    @app.exception_handler(AuthError)
    async def unauthorized(request: Request, exc: AuthError):
        return _error(401, str(exc))

    @app.exception_handler(StorageError)
    async def storage_error(request: Request, exc: StorageError):
        logger.error(
            "Request failed on storage error",
            extra={'context': {'path': request.url.path, 'operation': exc.operation}}
        )
        return _error(500, f"Database error during {exc.operation}")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application.

    The store, ingestion gateway and retention scheduler are created in the
    app lifespan and live on app.state; nothing is shared through globals.
    """
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store = MetricStore.from_url(
            settings.db_url,
            thresholds=Thresholds(
                online_threshold=settings.online_threshold,
                warning_threshold=settings.warning_threshold
            )
        )
        store.create_schema()
        scheduler = RetentionScheduler(
            store,
            retention_days=settings.retention_days,
            run_at=settings.cleanup_time,
            prune_on_start=settings.prune_on_start,
            grace_seconds=settings.shutdown_grace_seconds
        )

        app.state.store = store
        app.state.gateway = IngestionGateway(store)
        app.state.scheduler = scheduler

        scheduler.start()
        logger.info(
            "Fleetwatch started",
            extra={'context': {'version': __version__, 'auth': bool(settings.auth_token)}}
        )
        try:
            yield
        finally:
            await scheduler.stop()
            store.close()
            logger.info("Fleetwatch stopped")

    app = FastAPI(
        title="Fleetwatch",
        description="Fleet metrics collector and time-series store",
        version=__version__,
        lifespan=lifespan
    )
    app.state.settings = settings
    app.include_router(router)
    _register_error_handlers(app)
    return app


def run_server(settings: Optional[Settings] = None):
    """Run the Fleetwatch server"""
    settings = settings or load_settings()
    configure_logging(settings.log_level, settings.log_file, settings.log_json)
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        timeout_graceful_shutdown=int(settings.shutdown_grace_seconds)
    )
