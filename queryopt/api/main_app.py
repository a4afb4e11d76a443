from dotenv import load_dotenv
load_dotenv()

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, List, Optional, Union

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, field_validator
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError

from queryopt.config.startup_config import load_startup_config
from queryopt.core.engine.optimization_engine import QueryOptimizationEngine
from queryopt.core.sql.catalog import CatalogStatisticsProvider
from queryopt.core.sql.models import (
    ColumnStatistics, IndexInformation, OptimizationLevel, OptimizationRequest,
    OptimizationType, TableStatistics, to_serializable
)

STARTUP_CONFIG = load_startup_config()

logging.basicConfig(
    level=getattr(logging, STARTUP_CONFIG.log_level, logging.INFO),
    format=STARTUP_CONFIG.log_format
)
logger = logging.getLogger(__name__)

# Global state, created in lifespan
OPTIMIZATION_ENGINE: Optional[QueryOptimizationEngine] = None
CATALOG: Optional[CatalogStatisticsProvider] = None
DB_ENGINE = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the optimization engine and, when configured, the catalog adapter."""
    global OPTIMIZATION_ENGINE, CATALOG, DB_ENGINE

    logger.info("Starting SQL query optimization service")
    logger.info(STARTUP_CONFIG.get_startup_summary())
    OPTIMIZATION_ENGINE = QueryOptimizationEngine(STARTUP_CONFIG.engine_config())

    database_url = STARTUP_CONFIG.database_url
    if database_url:
        try:
            DB_ENGINE = create_engine(database_url)
            CATALOG = CatalogStatisticsProvider(DB_ENGINE, STARTUP_CONFIG.config)
        except SQLAlchemyError as e:
            logger.warning(f"Catalog database unavailable: {e}, continuing without catalog statistics")
            CATALOG = None

    try:
        yield
    finally:
        OPTIMIZATION_ENGINE.shutdown()
        if DB_ENGINE is not None:
            DB_ENGINE.dispose()
        OPTIMIZATION_ENGINE = None
        CATALOG = None
        DB_ENGINE = None
        logger.info("SQL query optimization service shut down")


app = FastAPI(
    title=STARTUP_CONFIG.api_title,
    description="Cost-based SQL query optimization: rewrites, index suggestions and plan analysis",
    version="1.0.0",
    lifespan=lifespan
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc):
    logger.error(f"Validation error on {request.method} {request.url}: {exc.errors()}")
    return JSONResponse(
        status_code=422,
        content={"detail": exc.errors(), "message": "Request validation failed"}
    )


# Pydantic Models

class ColumnStatisticsModel(BaseModel):
    column_name: str
    distinct_values: int = 0
    null_percentage: float = 0.0
    min_value: Optional[Any] = None
    max_value: Optional[Any] = None
    average_length: Optional[float] = None
    data_type: Optional[str] = None
    is_indexed: bool = False


class TableStatisticsModel(BaseModel):
    table_name: str
    row_count: int = 0
    schema_name: Optional[str] = None
    data_size: int = 0
    index_size: int = 0
    column_statistics: List[ColumnStatisticsModel] = []
    last_updated: Optional[datetime] = None

    def to_model(self) -> TableStatistics:
        return TableStatistics(
            table_name=self.table_name,
            row_count=self.row_count,
            schema_name=self.schema_name,
            data_size=self.data_size,
            index_size=self.index_size,
            column_statistics={
                column.column_name: ColumnStatistics(**column.model_dump())
                for column in self.column_statistics
            },
            last_updated=self.last_updated,
        )


class IndexInformationModel(BaseModel):
    index_name: str
    table_name: str
    columns: List[str] = []
    index_type: Optional[str] = None
    is_unique: bool = False
    is_primary: bool = False
    size: int = 0
    selectivity: float = 0.0
    usage_count: int = 0
    last_used: Optional[datetime] = None

    def to_model(self) -> IndexInformation:
        return IndexInformation(**self.model_dump())


class QueryModel(BaseModel):
    query: str
    table_statistics: List[TableStatisticsModel] = []
    existing_indexes: List[IndexInformationModel] = []
    use_catalog_statistics: bool = False

    class Config:
        extra = "ignore"


class OptimizeRequestModel(QueryModel):
    database_type: str = "generic"
    schema_name: Optional[str] = None
    optimization_level: Optional[Union[str, int]] = None
    enabled_optimizations: Optional[List[str]] = None
    max_optimization_time_seconds: float = 120.0
    analyze_execution_plan: bool = True
    generate_alternatives: bool = True
    estimate_costs: bool = True
    max_alternatives: int = 5
    timeout_seconds: Optional[float] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None

    @field_validator('max_alternatives', mode='before')
    @classmethod
    def validate_max_alternatives(cls, v):
        if v is None:
            return 5
        return v


def resolve_statistics(body: QueryModel):
    """Table statistics and indexes from the payload, or from the catalog when asked and none were sent."""
    table_stats = [table.to_model() for table in body.table_statistics]
    indexes = [index.to_model() for index in body.existing_indexes]

    if body.use_catalog_statistics and not table_stats:
        if CATALOG is None:
            raise HTTPException(status_code=503, detail="Catalog statistics are not configured")
        try:
            catalog_stats, catalog_indexes = CATALOG.collect()
        except SQLAlchemyError as e:
            logger.error(f"Catalog statistics collection failed: {e}")
            raise HTTPException(status_code=503, detail=f"Catalog statistics unavailable: {str(e)}")
        table_stats = catalog_stats
        indexes = indexes or catalog_indexes

    return table_stats, indexes


def build_optimization_request(body: OptimizeRequestModel) -> OptimizationRequest:
    try:
        level = (OptimizationLevel.from_value(body.optimization_level)
                 if body.optimization_level is not None
                 else STARTUP_CONFIG.default_optimization_level)
        if body.enabled_optimizations is None:
            enabled = frozenset(OptimizationType)
        else:
            enabled = frozenset(OptimizationType[name.strip().upper()] for name in body.enabled_optimizations)
    except (KeyError, ValueError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid optimization policy: {str(e)}")

    table_stats, indexes = resolve_statistics(body)
    return OptimizationRequest(
        original_query=body.query,
        database_type=body.database_type,
        schema_name=body.schema_name,
        table_statistics=table_stats,
        existing_indexes=indexes,
        optimization_level=level,
        enabled_optimizations=enabled,
        max_optimization_time=timedelta(seconds=body.max_optimization_time_seconds),
        analyze_execution_plan=body.analyze_execution_plan,
        generate_alternatives=body.generate_alternatives,
        estimate_costs=body.estimate_costs,
        max_alternatives=body.max_alternatives,
        user_id=body.user_id,
        session_id=body.session_id,
    )


def get_engine() -> QueryOptimizationEngine:
    if OPTIMIZATION_ENGINE is None or not OPTIMIZATION_ENGINE.is_initialized:
        raise HTTPException(status_code=503, detail="Optimization engine not available")
    return OPTIMIZATION_ENGINE


# API Endpoints

@app.post("/optimize")
async def optimize_query(body: OptimizeRequestModel):
    """Full optimization: rewrites, index suggestions, plan analysis and cost analysis."""
    engine = get_engine()
    request = build_optimization_request(body)

    if body.timeout_seconds is not None:
        response = await asyncio.to_thread(engine.optimize, request, body.timeout_seconds)
    else:
        response = await engine.optimize_async(request)
    return to_serializable(response)


@app.post("/analyze")
async def analyze_query(body: QueryModel):
    """Simulated execution plan with bottlenecks and recommendations."""
    engine = get_engine()
    table_stats, _ = resolve_statistics(body)
    try:
        analysis = await asyncio.wrap_future(engine.analyze_query(body.query, table_stats))
    except Exception as e:
        logger.error(f"Plan analysis failed: {e}")
        raise HTTPException(status_code=500, detail=f"Plan analysis failed: {str(e)}")
    return to_serializable(analysis)


@app.post("/indexes")
async def suggest_indexes(body: QueryModel):
    engine = get_engine()
    table_stats, indexes = resolve_statistics(body)
    try:
        suggestions = await asyncio.wrap_future(engine.suggest_indexes(body.query, table_stats, indexes))
    except Exception as e:
        logger.error(f"Index suggestion failed: {e}")
        raise HTTPException(status_code=500, detail=f"Index suggestion failed: {str(e)}")
    return {"query": body.query, "suggestions": to_serializable(suggestions)}


@app.post("/cost")
async def estimate_cost(body: QueryModel):
    engine = get_engine()
    table_stats, _ = resolve_statistics(body)
    try:
        cost = await asyncio.wrap_future(engine.estimate_query_cost(body.query, table_stats))
    except Exception as e:
        logger.error(f"Cost estimation failed: {e}")
        raise HTTPException(status_code=500, detail=f"Cost estimation failed: {str(e)}")
    return {"query": body.query, "cost_estimate": to_serializable(cost)}


@app.get("/catalog")
async def get_catalog_statistics():
    """Statistics collected from the configured database catalog."""
    if CATALOG is None:
        raise HTTPException(status_code=503, detail="Catalog statistics are not configured")
    try:
        table_stats, indexes = await asyncio.to_thread(CATALOG.collect)
    except SQLAlchemyError as e:
        logger.error(f"Catalog statistics collection failed: {e}")
        raise HTTPException(status_code=503, detail=f"Catalog statistics unavailable: {str(e)}")
    return {
        "table_statistics": to_serializable(table_stats),
        "existing_indexes": to_serializable(indexes),
    }


@app.get("/metrics")
async def get_metrics():
    return get_engine().get_metrics()


@app.delete("/cache")
async def clear_cache():
    engine = get_engine()
    cleared = engine.cache.size
    engine.clear_cache()
    return {"status": "cleared", "entries_removed": cleared}


@app.get("/health")
async def health_check():
    engine_ready = OPTIMIZATION_ENGINE is not None and OPTIMIZATION_ENGINE.is_initialized
    return {
        "status": "healthy" if engine_ready else "degraded",
        "components": {
            "optimization_engine": engine_ready,
            "catalog": CATALOG is not None,
        },
        "timestamp": datetime.now().isoformat()
    }


if __name__ == "__main__":
    uvicorn.run(app, host=STARTUP_CONFIG.api_host, port=STARTUP_CONFIG.api_port, log_level="info")
