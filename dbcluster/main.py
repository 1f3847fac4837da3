"""
Main FastAPI application entry point.

The HTTP surface only serves health probes and metrics; the actual work is
done by the leader-elected reconciliation worker started in the lifespan.
"""
import asyncio
import socket
import sys
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import sentry_sdk
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from dbcluster.api.v1 import health
from dbcluster.config.logging import configure_logging, get_logger
from dbcluster.config.redis import RedisConnection
from dbcluster.config.settings import settings
from dbcluster.exceptions import ClusterOperatorException
from dbcluster.services.cluster_reconciler import ClusterReconciler
from dbcluster.services.database_client import SQLDatabaseClientFactory
from dbcluster.services.kubernetes_store import KubernetesClientSet, KubernetesObjectStore
from dbcluster.workers.leader_election import LeaderElection
from dbcluster.workers.reconciliation_worker import ReconciliationWorker

# Configure logging
configure_logging()
logger = get_logger(__name__)

# Initialize Sentry for error tracking (production)
if settings.sentry_dsn and settings.is_production:
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        environment=settings.environment,
        release=settings.app_version,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    Startup connects Redis and the Kubernetes API, then runs the
    reconciliation worker under leader election. Shutdown stops the worker,
    releases the lease and closes the connections.
    """
    logger.info(
        "application_starting",
        version=settings.app_version,
        environment=settings.environment,
    )

    background_tasks = []
    client_set = None

    try:
        logger.info("initializing_redis_connection")
        await RedisConnection.connect()

        logger.info("initializing_kubernetes_client")
        client_set = await KubernetesClientSet.create(
            in_cluster=settings.k8s_in_cluster,
            kubeconfig_path=settings.kubeconfig_path,
        )
        store = KubernetesObjectStore(
            client_set,
            group=settings.cluster_group,
            version=settings.cluster_version,
            plural=settings.cluster_plural,
            backup_plural=settings.backup_plural,
        )
        config = settings.reconciler_config()
        reconciler = ClusterReconciler(
            store,
            SQLDatabaseClientFactory(store, timeout=config.database_client_timeout),
            config,
        )
        worker = ReconciliationWorker(
            reconciler,
            store,
            resync_interval=settings.resync_interval,
            max_concurrent=settings.max_concurrent_reconciles,
            backoff_initial=settings.error_backoff_initial,
            backoff_max=settings.error_backoff_max,
            namespace=settings.watch_namespace,
        )

        instance_id = f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"
        leader_election = LeaderElection(instance_id=instance_id, lease_duration=settings.leader_lease_duration)

        app.state.store = store
        app.state.leader_election = leader_election

        background_tasks.append(asyncio.create_task(leader_election.run(worker)))

        logger.info(
            "application_started",
            version=settings.app_version,
            instance_id=instance_id,
            phases=reconciler.scheduler.phase_names,
        )

    except KeyboardInterrupt:
        logger.info("application_startup_interrupted")
        raise
    except Exception as e:
        logger.error("application_startup_failed", error=str(e))
        raise

    yield

    logger.info("application_shutting_down")

    if background_tasks:
        logger.info("stopping_background_tasks", count=len(background_tasks))
        for task in background_tasks:
            task.cancel()
        try:
            await asyncio.wait_for(
                asyncio.gather(*background_tasks, return_exceptions=True),
                timeout=30.0,
            )
            logger.info("background_tasks_stopped")
        except asyncio.TimeoutError:
            logger.warning("background_tasks_shutdown_timeout")

    if client_set is not None:
        try:
            await client_set.close()
            logger.info("kubernetes_client_closed")
        except Exception as e:
            logger.error("kubernetes_close_error", error=str(e))

    try:
        await RedisConnection.close()
    except Exception as e:
        logger.error("redis_close_error", error=str(e))

    logger.info("application_shutdown_complete")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Operator reconciling replicated database clusters",
    docs_url="/docs" if not settings.is_production else None,
    redoc_url=None,
    openapi_url="/openapi.json" if not settings.is_production else None,
    lifespan=lifespan,
)


@app.exception_handler(ClusterOperatorException)
async def operator_exception_handler(request: Request, exc: ClusterOperatorException) -> JSONResponse:
    """Handle operator exceptions raised while serving a probe."""
    logger.error(
        "operator_exception",
        path=request.url.path,
        method=request.method,
        error=exc.message,
        details=exc.details,
    )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"error": {"message": exc.message, "details": exc.details, "status_code": 503}},
    )


# Initialize Prometheus metrics
if settings.prometheus_enabled:
    Instrumentator().instrument(app).expose(app, endpoint="/metrics")


app.include_router(health.router, prefix="/health", tags=["Health"])


@app.get("/", include_in_schema=False)
async def root():
    """Root endpoint."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
        "status": "running",
    }


if __name__ == "__main__":
    import uvicorn

    try:
        uvicorn.run(
            "dbcluster.main:app",
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level.lower(),
        )
    except (KeyboardInterrupt, SystemExit):
        logger.info("application_stopped")
    finally:
        sys.exit(0)
