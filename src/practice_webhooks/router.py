import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from practice_webhooks.dependencies import get_queue, get_replay_dispatcher, get_store, get_verifier
from practice_webhooks.dispatcher import DispatchOutcome, EventDispatcher
from practice_webhooks.metrics import EVENTS_TOTAL, QUEUE_DEPTH
from practice_webhooks.models import ReplayResponse, WebhookEventResponse, WebhookReceipt
from practice_webhooks.queue import DispatchQueue
from practice_webhooks.signature import InvalidSignature, SignatureVerifier
from practice_webhooks.store import WebhookEventStore

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    store: WebhookEventStore = Depends(get_store),
    queue: DispatchQueue = Depends(get_queue),
    verifier: SignatureVerifier = Depends(get_verifier),
) -> JSONResponse:
    raw_body = await request.body()
    try:
        event = verifier.verify(raw_body, request.headers.get("stripe-signature"))
    except InvalidSignature as e:
        EVENTS_TOTAL.labels(result="rejected").inc()
        logger.warning("Rejected webhook delivery: %r", e.__cause__)
        raise HTTPException(status_code=400, detail=str(e)) from e

    admission = await store.admit(event, dict(request.headers), str(request.url))
    if admission.status == "duplicate":
        EVENTS_TOTAL.labels(result="duplicate").inc()
        logger.info("Duplicate webhook %s processed=%s", event.event_id, admission.already_processed)
        receipt = WebhookReceipt(alreadyProcessed=admission.already_processed)
        return JSONResponse(content=receipt.model_dump(exclude_none=True))

    if queue.full():
        # Stays in the store; the retry sweep picks it up once the queue drains.
        EVENTS_TOTAL.labels(result="deferred").inc()
        logger.warning("Dispatch queue full, deferring event %s", event.event_id)
    else:
        await queue.put(admission.event_id)
        EVENTS_TOTAL.labels(result="accepted").inc()
        QUEUE_DEPTH.set(queue.qsize())
        logger.info("Accepted event %s type=%s", event.event_id, event.raw_type)
    return JSONResponse(content=WebhookReceipt().model_dump(exclude_none=True))


@router.get("/webhooks/events/exhausted")
async def list_exhausted(
    limit: int = 100,
    store: WebhookEventStore = Depends(get_store),
) -> list[WebhookEventResponse]:
    return [WebhookEventResponse.from_event(event) for event in await store.exhausted(limit)]


@router.get("/webhooks/events/{event_id}")
async def get_by_id(
    event_id: str,
    store: WebhookEventStore = Depends(get_store),
) -> WebhookEventResponse:
    event = await store.get_by_id(event_id)
    if event is None:
        raise HTTPException(status_code=404)
    return WebhookEventResponse.from_event(event)


@router.get("/webhooks/events")
async def get_by_stripe_event_id(
    stripe_event_id: str,
    store: WebhookEventStore = Depends(get_store),
) -> WebhookEventResponse:
    event = await store.get_by_stripe_event_id(stripe_event_id)
    if event is None:
        raise HTTPException(status_code=404)
    return WebhookEventResponse.from_event(event)


@router.post("/webhooks/events/{event_id}/replay")
async def replay(
    event_id: str,
    store: WebhookEventStore = Depends(get_store),
    dispatcher: EventDispatcher = Depends(get_replay_dispatcher),
) -> ReplayResponse:
    outcome = await dispatcher.dispatch(event_id)
    if outcome == DispatchOutcome.NOT_FOUND:
        raise HTTPException(status_code=404)
    logger.info("Manual replay of event %s: %s", event_id, outcome)
    event = await store.get_by_id(event_id)
    return ReplayResponse(outcome=outcome, event=WebhookEventResponse.from_event(event))


@router.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@router.get("/metrics")
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/ready")
async def ready(request: Request) -> dict:
    if not request.app.state.ready:
        raise HTTPException(status_code=503)
    return {"status": "ok"}
