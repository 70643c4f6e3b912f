"""
MODULE OVERVIEW:
The webhook receiver. In webhook mode the backend POSTs every session event to
`<your app>/api/v1/vex/webhooks`, and this router hands it to the matching
orchestrator's `inject_event()`.

WHAT IS HAPPENING HERE:
The router does not know where orchestrators live; it is given a `find_instance`
callable (normally `SessionRegistry.get`). An unknown session still gets a 200 so the
backend does not keep retrying a session that was destroyed on purpose.

    400  body is not a JSON object, or `event` / `sessionUUID` is missing or not a string
    200  {"success": true}                              event injected
    200  {"success": true, "warning": "Session not found"}
    500  anything unexpected while injecting

The optional hooks may be plain functions or coroutines; a failing hook is logged
and does not change the response.
"""
import inspect
from typing import Any, Callable, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import ValidationError

from vex_client.shared.models import WebhookPayload

FindInstance = Callable[[str], Any]
Hook = Callable[..., Any]


async def _call_hook(name: str, hook: Optional[Hook], *args: Any) -> None:
    if hook is None:
        return
    try:
        result = hook(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.error(f"webhook hook={name} failed: {e}")


async def process_webhook_payload(
    payload: Any,
    find_instance: FindInstance,
    on_session_not_found: Optional[Hook] = None,
    on_before_event: Optional[Hook] = None,
    on_after_event: Optional[Hook] = None,
) -> dict:
    """
    Deliver one webhook payload without HTTP (queue consumers, serverless handlers).
    Returns {"success": bool, "error"?: str}; injection errors propagate.
    """
    try:
        envelope = WebhookPayload.model_validate(payload)
    except ValidationError:
        return {"success": False, "error": "Invalid payload - missing event or sessionUUID"}
    if not envelope.event or not envelope.session_id:
        return {"success": False, "error": "Invalid payload - missing event or sessionUUID"}

    instance = find_instance(envelope.session_id)
    if instance is None:
        await _call_hook("on_session_not_found", on_session_not_found, envelope.session_id, envelope.event)
        return {"success": False, "error": "Session not found"}

    await _call_hook("on_before_event", on_before_event, envelope.session_id, envelope.event, envelope.data)
    normalized = instance.inject_event(envelope.event, envelope.data)
    await _call_hook("on_after_event", on_after_event, envelope.session_id, envelope.event, normalized.data)
    return {"success": True}


def create_webhook_router(
    find_instance: FindInstance,
    on_session_not_found: Optional[Hook] = None,
    on_before_event: Optional[Hook] = None,
    on_after_event: Optional[Hook] = None,
    verbose: bool = False,
) -> APIRouter:
    router = APIRouter()

    @router.post("")
    async def receive_webhook(request: Request):
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse(status_code=400, content={"error": "Invalid JSON"})

        envelope = None
        if isinstance(body, dict):
            try:
                envelope = WebhookPayload.model_validate(body)
            except ValidationError:
                envelope = None
        if envelope is None or not envelope.event or not envelope.session_id:
            if verbose:
                logger.warning(f"webhook event=invalid_payload payload={body!r}")
            return JSONResponse(
                status_code=400,
                content={"error": "Invalid payload - missing event or sessionUUID"},
            )

        try:
            session_id = envelope.session_id
            if verbose:
                logger.info(f"session_id={session_id} webhook event={envelope.event} received")

            instance = find_instance(session_id)
            if instance is None:
                if verbose:
                    logger.warning(f"session_id={session_id} webhook event=session_not_found")
                await _call_hook("on_session_not_found", on_session_not_found, session_id, envelope.event)
                return {"success": True, "warning": "Session not found"}

            await _call_hook("on_before_event", on_before_event, session_id, envelope.event, envelope.data)
            normalized = instance.inject_event(envelope.event, envelope.data)
            await _call_hook("on_after_event", on_after_event, session_id, envelope.event, normalized.data)
            return {"success": True}
        except Exception as e:
            logger.exception(f"webhook event=error reason='{e}'")
            return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @router.get("/health")
    async def webhook_health():
        return {"status": "ok", "service": "vex-webhook-receiver"}

    return router
