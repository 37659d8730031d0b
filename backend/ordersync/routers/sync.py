"""SendCloud sync trigger.

WHAT:
    POST /sync/sendcloud enqueues a SendCloud order pull on the arq worker.

WHY:
    A full pull can take minutes (90 days of orders); the request only
    queues it. Scheduled incremental pulls run from the worker's cron.

REFERENCES:
    - ordersync/workers/arq_worker.py (process_sendcloud_sync_job)
    - ordersync/services/sendcloud_client.py (sync_sendcloud_orders)
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from ordersync.deps import require_api_key
from ordersync.schemas import JobEnqueuedResponse
from ordersync.workers.arq_enqueue import enqueue_sendcloud_sync

logger = logging.getLogger(__name__)


class SendCloudSyncRequest(BaseModel):
    """Request body for a SendCloud pull."""

    mode: Literal["incremental", "full"] = Field(
        default="incremental",
        description="incremental: last 5 minutes (or since `since`); full: last 90 days",
    )
    since: Optional[datetime] = Field(default=None, description="Explicit window start")


router = APIRouter(prefix="/sync", tags=["Sync"], dependencies=[Depends(require_api_key)])


@router.post("/sendcloud", response_model=JobEnqueuedResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_sendcloud_sync(body: Optional[SendCloudSyncRequest] = None) -> JobEnqueuedResponse:
    body = body or SendCloudSyncRequest()
    logger.info("[SYNC_API] SendCloud sync requested (mode=%s, since=%s)", body.mode, body.since)

    try:
        result = await enqueue_sendcloud_sync(mode=body.mode, since=body.since)
    except Exception as e:
        logger.error("[SYNC_API] Could not enqueue SendCloud sync: %s", e)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job queue unavailable, try again later",
        )

    return JobEnqueuedResponse(**result)
