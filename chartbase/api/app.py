import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chartbase.api.routes import charts
from chartbase.db import connection as db_connection
from chartbase.services.chart_service import get_chart_service, reset_chart_service
from chartbase.services.chart_store import PostgresChartStore

app = FastAPI(
    title="Chartbase API",
    description="Weekly, monthly, seasonal and yearly listening charts",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.environ.get("CHARTBASE_CORS_ORIGINS", "http://localhost:3000").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(charts.router, prefix="/api/charts", tags=["charts"])


@app.on_event("shutdown")
async def shutdown_services() -> None:
    """Stop bulk workers and close the database pool on shutdown."""
    reset_chart_service()
    db_connection.close_pool()


@app.get("/")
async def root():
    return {"message": "Chartbase API", "version": "1.0.0"}


@app.get("/health")
async def health():
    """Health check with connection pool stats."""
    service = get_chart_service()
    store = type(service.store).__name__
    if not isinstance(service.store, PostgresChartStore):
        return {"status": "healthy", "store": store}
    try:
        return {
            "status": "healthy",
            "store": store,
            "pool": db_connection.get_pool_stats(),
        }
    except Exception as e:
        return {
            "status": "degraded",
            "store": store,
            "error": str(e),
        }
