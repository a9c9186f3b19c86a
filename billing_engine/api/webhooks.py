import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from billing_engine.api.deps import get_db
from billing_engine.errors import MalformedEvent
from billing_engine.schemas.billing import IngestResult, ProviderEvent
from billing_engine.services.billing.processor import EventProcessor
from billing_engine.services.payment_gateway import SIGNATURE_HEADER, WebhookSignatureVerifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

INGEST_STATUS_CODES = {
    "accepted": status.HTTP_202_ACCEPTED,
    "duplicate": status.HTTP_200_OK,
    "malformed": 422,
}


def _parse_envelope(body: bytes, source: str) -> ProviderEvent:
    try:
        data = json.loads(body)
    except ValueError as exc:
        raise MalformedEvent("Request body is not valid JSON") from exc
    if not isinstance(data, dict):
        raise MalformedEvent("Request body must be a JSON object")
    try:
        return ProviderEvent.model_validate({**data, "source": source})
    except ValidationError as exc:
        raise MalformedEvent(
            "Event envelope is invalid", details=str(exc)
        ) from exc


@router.post("/{source}", response_model=IngestResult)
async def receive_webhook(
    source: str, request: Request, db: Session = Depends(get_db)
) -> JSONResponse:
    body = await request.body()
    verifier = WebhookSignatureVerifier()
    if not verifier.validate(body, request.headers.get(SIGNATURE_HEADER)):
        logger.warning("Rejected %s webhook with bad signature", source)
        raise HTTPException(status_code=401, detail="Invalid webhook signature")
    event = _parse_envelope(body, source)
    result = await run_in_threadpool(EventProcessor(db).ingest, event)
    return JSONResponse(
        status_code=INGEST_STATUS_CODES[result.status],
        content=result.model_dump(),
    )
