from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.apps.api.deps import get_db, require_ingest_token
from chatrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from chatrelay.apps.api.response import SuccessEnvelope, success_response
from chatrelay.services.ingest import INGEST_FALLBACK, ingest_event

router = APIRouter(prefix="/tenants", tags=["events"], responses=DEFAULT_ERROR_RESPONSES)


@router.post(
    "/{tenant_id}/events",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SuccessEnvelope[dict[str, Any]],
    dependencies=[Depends(require_ingest_token)],
)
async def submit_event(
    tenant_id: str,
    request: Request,
    payload: Any = Body(...),
    db: AsyncSession = Depends(get_db),
) -> Any:
    # Body stays untyped: the normalizer owns shape validation and field-level errors.
    result = await ingest_event(db, tenant_id=tenant_id, raw=payload)
    data: dict[str, Any] = {
        "status": result.status,
        "event_type": result.event.event_type,
        "dedupe_key": result.event.dedupe_key,
    }
    if result.status == INGEST_FALLBACK:
        data["results"] = [item.as_dict() for item in result.fallback_results]
        return JSONResponse(content=success_response(request=request, data=data), status_code=status.HTTP_200_OK)
    data["job_ids"] = result.job_ids
    data["duplicates"] = result.duplicates
    return success_response(request=request, data=data)
