"""aiohttp admin surface for the coordinator.

Routes:
  GET  /healthz
  GET  /api/status
  GET  /api/streams/{tag}
  GET  /api/streams/{tag}/segments
  POST /api/streams/{tag}/start|stop|restart|reconcile
  GET  /hls/{tag}/...        static manifest + segments
"""

from __future__ import annotations

import logging
import time
from typing import Any

from aiohttp import web
from aiohttp.web import AppKey

from ringdvr.coordinator import DualOutputCoordinator, StreamPipeline
from ringdvr.errors import StoreIOError

COORDINATOR_KEY: AppKey[DualOutputCoordinator] = web.AppKey("coordinator", DualOutputCoordinator)
STARTED_AT_KEY: AppKey[float] = web.AppKey("started_at", float)

_NO_STORE = {"Cache-Control": "no-store"}


def _pipeline_or_404(request: web.Request) -> StreamPipeline:
    coordinator = request.app[COORDINATOR_KEY]
    tag = request.match_info["tag"]
    try:
        return coordinator.pipeline(tag)
    except KeyError:
        raise web.HTTPNotFound(reason=f"unknown stream: {tag}") from None


def build_app(coordinator: DualOutputCoordinator) -> web.Application:
    log = logging.getLogger("ringdvr.web")
    app = web.Application()
    app[COORDINATOR_KEY] = coordinator
    app[STARTED_AT_KEY] = time.time()

    async def healthz(request: web.Request) -> web.Response:
        streams = coordinator.status_all()
        problems = [
            tag
            for tag, status in streams.items()
            if status["encoder"]["crash_loop"] or status["encoder"]["spawn_failed"]
        ]
        payload = {"ok": not problems, "problems": problems}
        return web.json_response(payload, status=200 if not problems else 503, headers=_NO_STORE)

    async def status_all(request: web.Request) -> web.Response:
        payload: dict[str, Any] = {
            "ok": True,
            "uptime_sec": round(time.time() - request.app[STARTED_AT_KEY], 3),
            "streams": coordinator.status_all(),
        }
        return web.json_response(payload, headers=_NO_STORE)

    async def stream_status(request: web.Request) -> web.Response:
        pipeline = _pipeline_or_404(request)
        return web.json_response(pipeline.status(), headers=_NO_STORE)

    async def stream_segments(request: web.Request) -> web.Response:
        pipeline = _pipeline_or_404(request)
        items = coordinator.segments(pipeline.tag)
        payload = {
            "tag": pipeline.tag,
            "segments": items,
            "total": len(items),
            "max_segments": pipeline.engine.policy.max_segments,
        }
        return web.json_response(payload, headers=_NO_STORE)

    async def stream_start(request: web.Request) -> web.Response:
        pipeline = _pipeline_or_404(request)
        started = await coordinator.start(pipeline.tag)
        state = pipeline.supervisor.state.value
        if not started:
            return web.json_response(
                {"ok": False, "state": state, "error": f"cannot start while {state}"},
                status=409,
            )
        log.info("stream %s started via api", pipeline.tag)
        return web.json_response({"ok": True, "state": state})

    async def stream_stop(request: web.Request) -> web.Response:
        pipeline = _pipeline_or_404(request)
        stopped = await coordinator.stop(pipeline.tag)
        state = pipeline.supervisor.state.value
        if not stopped:
            return web.json_response(
                {"ok": False, "state": state, "error": "stream is not running"},
                status=409,
            )
        log.info("stream %s stopped via api", pipeline.tag)
        return web.json_response({"ok": True, "state": state})

    async def stream_restart(request: web.Request) -> web.Response:
        pipeline = _pipeline_or_404(request)
        state = await coordinator.restart(pipeline.tag)
        log.info("stream %s restarted via api", pipeline.tag)
        return web.json_response({"ok": True, "state": state.value})

    async def stream_reconcile(request: web.Request) -> web.Response:
        pipeline = _pipeline_or_404(request)
        try:
            report = await coordinator.force_reconcile(pipeline.tag)
        except StoreIOError as exc:
            return web.json_response({"ok": False, "error": str(exc)}, status=500)
        return web.json_response({"ok": not report.aborted, "report": report.summary()})

    app.router.add_get("/healthz", healthz)
    app.router.add_get("/api/status", status_all)
    app.router.add_get("/api/streams/{tag}", stream_status)
    app.router.add_get("/api/streams/{tag}/segments", stream_segments)
    app.router.add_post("/api/streams/{tag}/start", stream_start)
    app.router.add_post("/api/streams/{tag}/stop", stream_stop)
    app.router.add_post("/api/streams/{tag}/restart", stream_restart)
    app.router.add_post("/api/streams/{tag}/reconcile", stream_reconcile)

    for tag in coordinator.tags:
        store = coordinator.pipeline(tag).store
        # add_static refuses directories that do not exist yet
        store.ensure_dir()
        app.router.add_static(f"/hls/{tag}/", store.root_dir, show_index=False)

    return app
