from typing import Optional

from fastapi import APIRouter, HTTPException, Depends, Header, Request
from fastapi.responses import StreamingResponse

from taskrelay.api.deps import Feed, CorrelationId
from taskrelay.auth.security import get_current_owner
from taskrelay.domain.topics import InvalidTopicError, parse_topic_list
from taskrelay.services.realtime import RealtimeStream, SSE_HEADERS, SSE_MEDIA_TYPE

router = APIRouter()

@router.get("/stream")
async def realtime_stream(
    request: Request,
    feed: Feed,
    correlation_id: CorrelationId,
    topics: Optional[str] = None,
    last_event_id: Optional[str] = Header(None, alias="Last-Event-ID"),
    owner_id: str = Depends(get_current_owner),
):
    try:
        subscribed = parse_topic_list(topics)
    except InvalidTopicError as e:
        raise HTTPException(status_code=400, detail=str(e))

    cursor = await feed.resolve_cursor(owner_id, last_event_id)
    stream = RealtimeStream(
        feed,
        owner_id,
        subscribed,
        cursor,
        is_disconnected=request.is_disconnected,
        correlation_id=correlation_id,
    )
    return StreamingResponse(stream.events(), media_type=SSE_MEDIA_TYPE, headers=SSE_HEADERS)
