import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from charts.chart_stream import ChartCallbacks, ChartSubscription
from config import config
from ingest.errors import StreamSyncError
from monitoring.async_utils import cancel_task
from monitoring.logging_utils import setup_logging
from orchestration.dispatcher import StreamDispatcher


logger = logging.getLogger(__name__)

dispatcher: Optional[StreamDispatcher] = None
startup_subscriptions: List[ChartSubscription] = []


@asynccontextmanager
async def lifespan(app: FastAPI):
    global dispatcher
    dispatcher = StreamDispatcher()
    for entry in config.get('api', {}).get('charts', []) or []:
        try:
            subscription = await dispatcher.subscribe_chart(entry['symbol'], entry['interval'])
            startup_subscriptions.append(subscription)
        except StreamSyncError as exc:
            logger.error("Startup chart %s@%s unavailable: %s", entry.get('symbol'), entry.get('interval'), exc)
    try:
        yield
    finally:
        if dispatcher:
            await dispatcher.close()
        startup_subscriptions.clear()
        dispatcher = None


app = FastAPI(title="Stream Sync API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(config.get('api', {}).get('cors_origins', []) or []),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _require_dispatcher() -> StreamDispatcher:
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="Stream dispatcher not initialized")
    return dispatcher


@app.get("/")
async def root():
    return {
        "service": "Stream Sync",
        "version": "1.0.0",
        "status": "running" if dispatcher else "stopped",
    }


@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "charts": len(dispatcher.cache) if dispatcher else 0,
        "sessions": len(dispatcher.registry) if dispatcher else 0,
    }


@app.get("/api/charts")
async def get_charts():
    current = _require_dispatcher()
    charts = []
    for stream in current.cache.streams():
        snapshot = stream.snapshot()
        charts.append({
            "symbol": stream.symbol,
            "interval": stream.interval,
            "candles": len(stream.candles),
            "subscribers": len(stream.subscribers),
            "currentPrice": snapshot.current_price,
            "lastClosedOpenTime": snapshot.last_closed.open_time if snapshot.last_closed else None,
        })
    return {"charts": charts, "count": len(charts), "timestamp": datetime.utcnow().isoformat()}


@app.get("/api/charts/{symbol}/{interval}")
async def get_chart(symbol: str, interval: str):
    snapshot = _require_dispatcher().get_chart(symbol, interval)
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"No live chart for {symbol.upper()}@{interval}")
    payload = snapshot.as_dict()
    payload["timestamp"] = datetime.utcnow().isoformat()
    return payload


@app.get("/api/sessions")
async def get_sessions():
    current = _require_dispatcher()
    sessions = [
        {
            "sessionId": session.session_id,
            "state": session.state.value,
            "reloads": session.reload_attempts,
            "pendingRequests": len(session.pending_requests),
        }
        for session in current.sessions()
    ]
    return {"sessions": sessions, "count": len(sessions), "timestamp": datetime.utcnow().isoformat()}


@app.websocket("/ws/charts/{symbol}/{interval}")
async def chart_relay(websocket: WebSocket, symbol: str, interval: str):
    """Relay chart snapshots to one browser client over a shared chart stream."""
    current = _require_dispatcher()
    await websocket.accept()
    queue: asyncio.Queue = asyncio.Queue(maxsize=100)

    def _enqueue(message):
        if queue.full():
            # Slow client: only the newest snapshot matters
            queue.get_nowait()
        queue.put_nowait(message)

    callbacks = ChartCallbacks(
        on_update=lambda snapshot: _enqueue({"type": "update", "chart": snapshot.as_dict()}),
        on_close=lambda: _enqueue({"type": "close"}),
        on_error=lambda exc: _enqueue({"type": "error", "message": str(exc)}),
    )
    try:
        subscription = await current.subscribe_chart(symbol, interval, callbacks=callbacks)
    except StreamSyncError as exc:
        await websocket.send_json({"type": "error", "message": str(exc)})
        await websocket.close()
        return

    async def _pump():
        await websocket.send_json({"type": "snapshot", "chart": subscription.chart.as_dict()})
        while True:
            message = await queue.get()
            await websocket.send_json(message)
            if message["type"] == "close":
                return

    async def _watch_disconnect():
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return

    tasks = [asyncio.create_task(_pump()), asyncio.create_task(_watch_disconnect())]
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            await cancel_task(task)
            error = None if task.cancelled() else task.exception()
            if error is not None and not isinstance(error, WebSocketDisconnect):
                logger.warning("Chart relay for %s@%s ended: %s", symbol, interval, error)
        await current.unsubscribe_chart(subscription.subscription_id)


if __name__ == "__main__":
    import uvicorn
    setup_logging()
    uvicorn.run(
        app,
        host=config.api['host'],
        port=config.api['port'],
        log_level="info"
    )
