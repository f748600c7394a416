"""
Prometheus Metrics Server
=========================

FastAPI server expose metrics cho Prometheus scraping.
Khi có REDIS_URL, đọc metrics từ Redis (shared với agent console);
nếu không thì đọc dashboard trong bộ nhớ của process này.

Usage:
    uvicorn metrics_server:app --host 0.0.0.0 --port 8001
"""

import os
import time
import logging
from dataclasses import asdict
from contextlib import asynccontextmanager

from pathlib import Path
from dotenv import load_dotenv
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from monitoring import MonitoringDashboard, get_monitoring_dashboard, init_monitoring
from redis_manager import init_redis, get_redis_manager


env_path = Path(__file__).parent.parent / ".env"
if env_path.exists():
    load_dotenv(env_path)
else:
    load_dotenv()  # Fallback to default

logger = logging.getLogger(__name__)

start_time = time.time()


def get_dashboard() -> MonitoringDashboard:
    return get_monitoring_dashboard()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("Starting Metrics Server...")
    redis_url = os.getenv("REDIS_URL")
    if redis_url:
        init_monitoring(init_redis(redis_url))
        logger.info("Metrics server reading from Redis")
    yield
    logger.info("Shutting down Metrics Server...")
    redis_manager = get_redis_manager()
    if redis_manager is not None:
        redis_manager.close()


app = FastAPI(
    title="ClearPath Knowledge Base Metrics",
    description="Prometheus metrics endpoint",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    dashboard = get_dashboard()
    healthy, results = dashboard.health.get_overall_health()
    return {
        "status": "healthy" if healthy else "degraded",
        "timestamp": time.time(),
        "checks": {name: status.healthy for name, status in results.items()},
    }


@app.get("/metrics/prometheus")
async def prometheus_metrics():
    """Prometheus metrics endpoint."""
    lines = [get_dashboard().export_metrics("prometheus")]
    lines.append("# HELP clearpath_uptime_seconds Metrics server uptime")
    lines.append("# TYPE clearpath_uptime_seconds counter")
    lines.append(f"clearpath_uptime_seconds {time.time() - start_time:.0f}")

    metrics_text = "\n".join(lines) + "\n"
    return Response(content=metrics_text, media_type="text/plain; charset=utf-8")


@app.get("/metrics/json")
async def json_metrics():
    """JSON metrics endpoint."""
    dashboard = get_dashboard()
    stats = dashboard.get_dashboard_stats()
    return {
        "timestamp": time.time(),
        "stats": asdict(stats),
        "resolutions": dashboard.get_resolution_distribution(),
        "uptime_seconds": time.time() - start_time,
    }


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    port = int(os.getenv("METRICS_PORT", "8001"))
    uvicorn.run("metrics_server:app", host="0.0.0.0", port=port, reload=False, log_level="info")
