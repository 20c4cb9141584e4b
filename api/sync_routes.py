"""
Mail Sync API

Endpoints for triggering sync runs, reading progress, confirming folder
mappings, screening senders, receiving provider webhooks and the scheduled
dispatch tick.
"""

import logging
import secrets
from typing import List, Optional

from fastapi import APIRouter, Header, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse, Response
from pydantic import BaseModel, Field

from mail_sync.dispatch import summarize_tick
from mail_sync.errors import (
    AccountNotFound,
    AlreadySyncing,
    NotOwned,
    ProviderError,
    SetupRequired,
    StorageError,
    SyncError,
    Unauthorized,
)
from mail_sync.models import CanonicalFolder, TriggerReason, TrustVerdict

from api.auth_middleware import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Mail Sync"])


# ============================================================================
# MODELS
# ============================================================================

class SyncRequest(BaseModel):
    account_id: str = Field(..., description="Account to sync")
    reason: TriggerReason = Field(TriggerReason.MANUAL, description="Trigger reason")


class FolderConfirmation(BaseModel):
    folder_id: str
    canonical_type: CanonicalFolder
    enabled: bool = True


class ConfirmFoldersRequest(BaseModel):
    account_id: str
    folders: List[FolderConfirmation]


class ScreeningRequest(BaseModel):
    account_id: str
    sender: str = Field(..., description="Sender email address")
    verdict: TrustVerdict
    apply_to_existing: bool = Field(False, description="Re-categorize stored mail from this sender")


# ============================================================================
# HELPERS
# ============================================================================

def _orchestrator(request: Request):
    orchestrator = getattr(request.app.state, 'orchestrator', None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Sync service not initialized")
    return orchestrator


def _user_id(request: Request) -> str:
    user = get_current_user(request)
    if not user:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user['id']


def _http_error(e: SyncError) -> HTTPException:
    """Map a sync failure to an HTTP error carrying only its safe summary."""
    if isinstance(e, NotOwned):
        status = 403
    elif isinstance(e, Unauthorized):
        status = 401
    elif isinstance(e, AccountNotFound):
        status = 404
    elif isinstance(e, (AlreadySyncing, SetupRequired)):
        status = 409
    elif isinstance(e, ProviderError):
        status = 502
    elif isinstance(e, StorageError):
        status = 500
    else:
        status = 400
    return HTTPException(status_code=status, detail=e.summary())


# ============================================================================
# SYNC
# ============================================================================

@router.post("/sync")
async def trigger_sync(body: SyncRequest, request: Request):
    """Start a sync run for one of the caller's accounts."""
    orchestrator = _orchestrator(request)
    try:
        run_id = await orchestrator.trigger_sync(body.account_id, body.reason, user_id=_user_id(request))
    except SyncError as e:
        logger.info(f"Sync trigger for {body.account_id} refused: {e}")
        raise _http_error(e)
    return {"success": True, "run_id": run_id}


@router.get("/sync/status")
async def sync_status(request: Request, account_id: str = Query(...)):
    """Current state, progress and ETA for an account."""
    orchestrator = _orchestrator(request)
    try:
        status = orchestrator.get_status(account_id, user_id=_user_id(request))
    except SyncError as e:
        raise _http_error(e)
    return {"success": True, **status}


@router.get("/sync/history")
async def sync_history(
    request: Request,
    account_id: str = Query(...),
    limit: int = Query(20, ge=1, le=200)
):
    """Recent sync runs, newest first."""
    orchestrator = _orchestrator(request)
    try:
        runs = orchestrator.get_history(account_id, user_id=_user_id(request), limit=limit)
    except SyncError as e:
        raise _http_error(e)
    return {"success": True, "runs": runs}


# ============================================================================
# FOLDERS
# ============================================================================

@router.get("/folders/detect")
async def detect_folders(request: Request, account_id: str = Query(...)):
    """List the provider's folders with their detected canonical types."""
    orchestrator = _orchestrator(request)
    try:
        folders = await orchestrator.discover_folders(account_id, user_id=_user_id(request))
    except SyncError as e:
        logger.error(f"Folder detection failed for {account_id}: {e}")
        raise _http_error(e)
    return {
        "success": True,
        "folders": folders,
        "needs_review": any(f['needs_review'] for f in folders),
    }


@router.post("/folders/confirm")
async def confirm_folders(body: ConfirmFoldersRequest, request: Request):
    """Confirm folder mappings and complete account setup."""
    orchestrator = _orchestrator(request)
    try:
        result = orchestrator.confirm_mappings(
            body.account_id,
            [f.model_dump(mode='json') for f in body.folders],
            user_id=_user_id(request)
        )
    except SyncError as e:
        raise _http_error(e)
    return {"success": True, **result}


# ============================================================================
# MESSAGES & SCREENING
# ============================================================================

@router.get("/messages/full")
async def full_message(request: Request, account_id: str = Query(...), message_id: str = Query(...)):
    """Fetch the complete content of one synced message."""
    orchestrator = _orchestrator(request)
    try:
        message = await orchestrator.fetch_full_message(account_id, message_id, user_id=_user_id(request))
    except SyncError as e:
        raise _http_error(e)
    if message is None:
        raise HTTPException(status_code=404, detail="Message not found")
    return {"success": True, "message": message}


@router.post("/screening")
async def screen_sender(body: ScreeningRequest, request: Request):
    """Record a trust verdict for a sender."""
    orchestrator = _orchestrator(request)
    try:
        result = orchestrator.screen_sender(
            body.account_id,
            body.sender,
            body.verdict.value,
            apply_to_existing=body.apply_to_existing,
            user_id=_user_id(request)
        )
    except SyncError as e:
        raise _http_error(e)
    return {"success": True, **result}


# ============================================================================
# WEBHOOKS
# ============================================================================

async def _json_body(request: Request) -> dict:
    try:
        payload = await request.json()
    except ValueError:
        logger.warning(f"Non-JSON webhook body on {request.url.path}")
        return {}
    return payload if isinstance(payload, dict) else {}


@router.post("/webhooks/microsoft")
async def microsoft_webhook(request: Request, validationToken: Optional[str] = Query(None)):
    """Graph subscription validation and change notifications."""
    if validationToken is not None:
        return PlainTextResponse(validationToken)

    webhooks = getattr(request.app.state, 'webhooks', None)
    payload = await _json_body(request)
    if webhooks is None:
        logger.error("Microsoft notification received before sync service started")
    else:
        webhooks.handle_microsoft(payload)
    return Response(status_code=202)


@router.post("/webhooks/google")
async def google_webhook(request: Request):
    """Gmail Pub/Sub push notifications."""
    webhooks = getattr(request.app.state, 'webhooks', None)
    payload = await _json_body(request)
    if webhooks is None:
        logger.error("Gmail notification received before sync service started")
    else:
        webhooks.handle_google(payload)
    return {"success": True}


# ============================================================================
# DISPATCH
# ============================================================================

@router.post("/dispatch/tick")
async def dispatch_tick(request: Request, x_dispatch_secret: Optional[str] = Header(None)):
    """Run one scheduled dispatch pass. Guarded by the shared dispatch secret."""
    expected = request.app.state.settings.dispatch_secret
    if not expected or not x_dispatch_secret or not secrets.compare_digest(expected, x_dispatch_secret):
        raise HTTPException(status_code=401, detail="Invalid dispatch secret")

    dispatch = getattr(request.app.state, 'dispatch', None)
    if dispatch is None:
        raise HTTPException(status_code=503, detail="Sync service not initialized")
    try:
        result = dispatch.run_tick()
    except StorageError as e:
        logger.error(f"Dispatch tick failed: {e}")
        raise _http_error(e)
    return {"success": True, **summarize_tick(result)}
