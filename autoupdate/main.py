import hmac
import hashlib
import json
import asyncio
import logging
from typing import Any, Dict, Optional
from fastapi import BackgroundTasks, FastAPI, Request, Response, Header, HTTPException
from pydantic import ValidationError

from .auth import GitHubAuthenticator
from .config import Settings
from .github import GitHubClient
from .metrics import (
    metrics_response,
    webhook_requests_total,
    webhook_invalid_signatures_total,
)
from .models import parse_event
from .output import ActionOutput
from .updater import AutoUpdater

logger = logging.getLogger(__name__)

SETTINGS = Settings()

app = FastAPI(title="Branch Auto Update Webhook Service", version=SETTINGS.service_version)

# schedule is only ever synthesized by the Actions runner
WEBHOOK_EVENTS = ("push", "pull_request", "workflow_dispatch", "workflow_run")


@app.get("/healthz")
async def healthz():
    return {"status": "ok", "version": SETTINGS.service_version}


@app.get("/readyz")
async def readyz():
    return {"status": "ready"}


@app.get("/metrics")
async def metrics():
    content_type, data = metrics_response()
    return Response(content=data, media_type=content_type)


def verify_signature(secret: str, body: bytes, signature256: Optional[str]) -> bool:
    if not signature256:
        return False
    try:
        algo, sig = signature256.split("=", 1)
        if algo != "sha256":
            return False
    except ValueError:
        return False
    mac = hmac.new(secret.encode("utf-8"), msg=body, digestmod=hashlib.sha256)
    expected = mac.hexdigest()
    return hmac.compare_digest(expected, sig)


def _run_updater(event, owner: Optional[str], installation_id: Optional[int]) -> int:
    auth = GitHubAuthenticator.from_settings(SETTINGS, owner=owner, installation_id=installation_id)
    output = ActionOutput(output_path="")
    updater = AutoUpdater(SETTINGS, GitHubClient(auth, SETTINGS), event, output)
    updated = updater.route()
    if output.failed:
        logger.error("Auto update run for %s failed: %s", event.kind, output.failure_message)
    return updated


async def _run_update(event, owner: Optional[str], installation_id: Optional[int]) -> None:
    try:
        updated = await asyncio.to_thread(_run_updater, event, owner, installation_id)
    except Exception:
        logger.exception("Auto update run for %s event failed", event.kind)
        return
    logger.info("Auto update run for %s event updated %s pull request(s)", event.kind, updated)


@app.post("/webhook")
async def webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_github_event: Optional[str] = Header(None, alias="X-GitHub-Event"),
    x_hub_signature_256: Optional[str] = Header(None, alias="X-Hub-Signature-256"),
):
    event_name = x_github_event or "unknown"
    body = await request.body()

    if not SETTINGS.webhook_secret or not verify_signature(SETTINGS.webhook_secret, body, x_hub_signature_256):
        webhook_invalid_signatures_total.inc()
        webhook_requests_total.labels(event=event_name, code="401").inc()
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload: Dict[str, Any] = json.loads(body.decode("utf-8"))
    except Exception:
        webhook_requests_total.labels(event=event_name, code="400").inc()
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    try:
        event = parse_event(event_name, payload) if event_name in WEBHOOK_EVENTS else None
    except ValidationError:
        webhook_requests_total.labels(event=event_name, code="400").inc()
        raise HTTPException(status_code=400, detail="Unexpected payload shape")
    if event is None:
        logger.debug("Ignoring unsupported webhook event '%s'", event_name)
        webhook_requests_total.labels(event=event_name, code="202").inc()
        return Response(status_code=202)

    owner = ((payload.get("repository") or {}).get("owner") or {}).get("login")
    installation_id = (payload.get("installation") or {}).get("id")
    background_tasks.add_task(_run_update, event, owner, int(installation_id) if installation_id else None)

    webhook_requests_total.labels(event=event_name, code="202").inc()
    return Response(status_code=202)
