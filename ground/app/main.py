import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from ground.app.schemas import ControlRequest, IngestResult
from ground.app.store import QUERY_CAP, TelemetryStore

LOG = logging.getLogger("ground.app")

GROUND_HOST = os.getenv("GROUND_HOST", "0.0.0.0")
GROUND_PORT = int(os.getenv("GROUND_PORT", "8000"))
GROUND_LOG_PATH = os.getenv("GROUND_LOG_PATH", "")

NO_CACHE = {"Cache-Control": "no-store, max-age=0"}


def create_app(store: Optional[TelemetryStore] = None) -> FastAPI:
    if store is None:
        store = TelemetryStore(Path(GROUND_LOG_PATH) if GROUND_LOG_PATH else None)

    app = FastAPI(title="SmartFarm telemetry store")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.store = store

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "records": len(store)}

    @app.post("/telemetry")
    def ingest_telemetry(payload: Dict[str, Any]) -> IngestResult:
        try:
            return store.ingest(payload)
        except ValidationError as e:
            LOG.warning("Rejected telemetry payload: %s", e)
            raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False, include_input=False))

    @app.get("/telemetry")
    def query_telemetry(limit: int = Query(QUERY_CAP, ge=1, le=QUERY_CAP)) -> JSONResponse:
        records = store.query(limit)
        return JSONResponse(content=[r.model_dump() for r in records], headers=NO_CACHE)

    @app.post("/control")
    async def control(request: ControlRequest) -> Dict[str, Any]:
        if request.force_pump:
            store.request_force_pump()
        return {"status": "queued" if request.force_pump else "ignored", "force_pump": request.force_pump}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    uvicorn.run("ground.app.main:app", host=GROUND_HOST, port=GROUND_PORT)
