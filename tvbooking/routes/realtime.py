"""Websocket change feed - streams batched row changes for one table"""

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..realtime import REALTIME_TABLES, SubscriptionManager, build_row_filter

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Realtime"])

# Query params usable as row filters
FILTER_FIELDS = {"id", "worker_id", "booking_id", "customer_id", "status"}


@router.websocket("/ws/{table}")
async def table_changes(websocket: WebSocket, table: str):
    container = websocket.app.state.container
    if table not in REALTIME_TABLES:
        await websocket.close(code=1008)
        return
    if container.redis_factory is None:
        await websocket.close(code=1013)
        return

    await websocket.accept()
    filters = {k: v for k, v in websocket.query_params.items() if k in FILTER_FIELDS}

    async def send_batch(events: list):
        await websocket.send_json({"table": table, "events": events})

    manager = SubscriptionManager(
        table, send_batch, container.redis_factory, row_filter=build_row_filter(filters)
    )
    try:
        await manager.connect()
        while True:
            # Clients only send keepalives; the feed is server → client
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info(f"👋 Realtime client left {table}")
    finally:
        await manager.dispose()
