"""
Server-Sent Events for dispatcher dashboards.

Each connection subscribes to its tenant's events (ride.created,
ride.updated, tasks.reordered, van.updated, optimization.complete) and is
unsubscribed when the client goes away.
"""
import asyncio
from collections.abc import AsyncGenerator

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from ridedispatch.api.deps import CurrentTenant, PublisherDep

router = APIRouter(tags=["stream"])

KEEPALIVE_SECONDS = 15.0


@router.get("/stream")
async def stream_events(
    request: Request,
    current_tenant: CurrentTenant,
    publisher: PublisherDep,
) -> StreamingResponse:
    tenant_id = current_tenant.id
    queue = publisher.subscribe(tenant_id)

    async def event_source() -> AsyncGenerator[str, None]:
        try:
            while not await request.is_disconnected():
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield event.to_sse()
        finally:
            publisher.unsubscribe(tenant_id, queue)

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
