"""HTTP adapter over the snapshot accessor."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException

from .models import TimeWindow, WindowSnapshot
from .service import UsageService


def _snapshot_payload(snapshot: WindowSnapshot, stale: bool) -> dict:
    data = snapshot.model_dump(mode="json")
    data["label"] = snapshot.window.label
    data["total_cost"] = str(snapshot.total_cost)
    data["total_tokens"] = snapshot.total_tokens
    data["stale"] = stale
    return data


def create_app(service: UsageService | None = None) -> FastAPI:
    service = service or UsageService()
    accessor = service.accessor

    @asynccontextmanager
    async def lifespan(app):
        service.start()
        yield
        service.stop()

    app = FastAPI(title="CCWatch", lifespan=lifespan)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "service": "ccwatch",
            "tool_unavailable": accessor.tool_unavailable,
        }

    @app.get("/api/snapshots")
    async def api_snapshots():
        return {
            w.value: _snapshot_payload(s, accessor.is_stale(w))
            for w, s in accessor.snapshots().items()
        }

    @app.get("/api/snapshots/{window}")
    async def api_snapshot(window: str):
        try:
            tw = TimeWindow(window)
        except ValueError:
            raise HTTPException(status_code=404, detail=f"unknown window {window!r}")
        return _snapshot_payload(accessor.current(tw), accessor.is_stale(tw))

    @app.post("/api/refresh")
    async def api_refresh():
        outcome = await accessor.refresh()
        return outcome.model_dump(mode="json")

    return app
