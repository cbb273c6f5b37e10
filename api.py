"""bulk_video_ads.api

FastAPI service around `bulk_ads.py`: upload one or more videos and create one
ad per (video, target ad set), using the newest ad in each target as template.

Endpoints
---------
- GET  /health                      -> basic health check
- GET  /                            -> basic root info
- GET  /api/accounts                -> ad accounts visible to the token
- GET  /api/campaigns/{account_id}  -> active campaigns (id, name, page_id)
- GET  /api/adsets/{campaign_id}    -> ad sets of a campaign (bulk targets)
- POST /api/create-ads              -> multipart: files + targets, runs the batch and returns the report
- POST /api/create-ads-async        -> same form + callback_url, returns 202 and a job id
- GET  /api/jobs/{job_id}           -> async job status and report

Optional API Key
----------------
If you set SERVICE_API_KEY in the environment, requests must include:
  X-API-Key: <SERVICE_API_KEY>

Environment variables
---------------------
Required:
- META_ACCESS_TOKEN
- META_AD_ACCOUNT_ID (or send account_id with each request)

Optional:
- META_API_VERSION (default: v21.0), META_APP_SECRET
- META_TIMEOUT_S, META_VIDEO_UPLOAD_TIMEOUT_S, META_MAX_RETRIES
- BATCH_MAX_WORKERS, BATCH_TIMEOUT_S, UPLOAD_DIR
- VIDEO_UPLOAD_SOURCE ("blob" to host videos in S3 and let Meta fetch them) + BLOB_*
- SERVICE_API_KEY, LOG_LEVEL, PORT
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, Header, HTTPException, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from asset_staging import StagingError, StagingSession
from batch_jobs import JobRegistry, run_batch_job
from bulk_ads import BatchOrchestrator, BatchRequest, BatchSettings, BatchValidationError, build_orchestrator
from meta_client import MetaAPIError, MetaClient, MetaConfig

logging.basicConfig(
    level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Bulk Video Ads API", version="1.0.0")

_job_registry = JobRegistry()


def _require_api_key(x_api_key: Optional[str]) -> None:
    expected = (os.getenv("SERVICE_API_KEY") or "").strip()
    if not expected:
        return
    if not x_api_key or x_api_key.strip() != expected:
        raise HTTPException(status_code=401, detail="Unauthorized")


def _meta_error_detail(e: MetaAPIError) -> Dict[str, Any]:
    return {"message": str(e), "http_status": e.http_status, "meta_error": e.error}


def get_meta_client() -> MetaClient:
    try:
        return MetaClient(MetaConfig.from_env())
    except ValueError as e:
        raise HTTPException(status_code=500, detail=f"Server misconfigured: {e}")


def get_orchestrator() -> BatchOrchestrator:
    try:
        return build_orchestrator(MetaConfig.from_env(), BatchSettings.from_env())
    except ValueError as e:
        raise HTTPException(status_code=500, detail=f"Server misconfigured: {e}")


def get_job_registry() -> JobRegistry:
    return _job_registry


def _build_request(
    targets: Optional[List[str]],
    name_prefix: str,
    status: str,
    ad_name: Optional[str],
    account_id: Optional[str],
    page_id: Optional[str],
) -> BatchRequest:
    try:
        return BatchRequest(
            targets=targets or [],
            name_prefix=name_prefix,
            status=status,
            ad_name=ad_name,
            account_id=account_id,
            page_id=page_id,
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=jsonable_encoder(e.errors()))


def _stage_uploads(session: StagingSession, files: List[UploadFile]) -> List[str]:
    """Stage every file; a file that cannot be staged is reported, not fatal."""
    failures: List[str] = []
    for f in files:
        try:
            session.stage(f.file, f.filename or "upload.mp4", f.content_type, getattr(f, "size", None))
        except StagingError as e:
            logger.warning("Staging failed for %s: %s", f.filename, e)
            failures.append(f"Failed to stage asset {f.filename}: {e}")
    if not session.assets:
        raise HTTPException(
            status_code=422,
            detail={"message": "None of the uploaded files could be staged.", "failures": failures},
        )
    return failures


def _read_thumbnail(thumbnail_file: Optional[UploadFile]) -> Optional[bytes]:
    if thumbnail_file is None:
        return None
    return thumbnail_file.file.read() or None


@app.get("/")
def root() -> JSONResponse:
    return JSONResponse({"ok": True, "docs": "/docs", "health": "/health"})


@app.get("/health")
def health() -> Dict[str, Any]:
    return {"ok": True}


@app.get("/api/accounts")
def accounts(
    client: MetaClient = Depends(get_meta_client),
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> List[Dict[str, Any]]:
    _require_api_key(x_api_key)
    try:
        return client.list_adaccounts()
    except MetaAPIError as e:
        logger.error("Listing ad accounts failed: %s", e)
        raise HTTPException(status_code=502, detail=_meta_error_detail(e))


@app.get("/api/campaigns/{account_id}")
def campaigns(
    account_id: str,
    client: MetaClient = Depends(get_meta_client),
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> List[Dict[str, Any]]:
    _require_api_key(x_api_key)
    try:
        return client.list_campaigns(account_id)
    except MetaAPIError as e:
        logger.error("Listing campaigns for %s failed: %s", account_id, e)
        raise HTTPException(status_code=502, detail=_meta_error_detail(e))


@app.get("/api/adsets/{campaign_id}")
def adsets(
    campaign_id: str,
    client: MetaClient = Depends(get_meta_client),
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> List[Dict[str, Any]]:
    _require_api_key(x_api_key)
    try:
        return client.list_adsets(campaign_id)
    except MetaAPIError as e:
        logger.error("Listing ad sets for %s failed: %s", campaign_id, e)
        raise HTTPException(status_code=502, detail=_meta_error_detail(e))


@app.post("/api/create-ads")
def create_ads(
    files: Optional[List[UploadFile]] = File(None, description="One or more video files"),
    targets: Optional[List[str]] = Form(None, description="Target ad set ids (repeat the field or comma separate)"),
    name_prefix: str = Form(""),
    status: str = Form("PAUSED"),
    ad_name: Optional[str] = Form(None),
    account_id: Optional[str] = Form(None),
    page_id: Optional[str] = Form(None),
    thumbnail_file: Optional[UploadFile] = File(None, description="Optional thumbnail image for every video"),
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> Dict[str, Any]:
    """Run the whole batch inside this request and return {message, success, failures}."""
    _require_api_key(x_api_key)

    if not files:
        raise HTTPException(status_code=422, detail="No video files provided.")
    req = _build_request(targets, name_prefix, status, ad_name, account_id, page_id)
    thumbnail = _read_thumbnail(thumbnail_file)

    try:
        with orchestrator.stager.session() as session:
            staging_failures = _stage_uploads(session, files)
            report = orchestrator.run(session.assets, req, thumbnail=thumbnail, prior_failures=staging_failures)
    except BatchValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return report.to_response()


@app.post("/api/create-ads-async", status_code=202)
def create_ads_async(
    background_tasks: BackgroundTasks,
    files: Optional[List[UploadFile]] = File(None, description="One or more video files"),
    targets: Optional[List[str]] = Form(None),
    name_prefix: str = Form(""),
    status: str = Form("PAUSED"),
    ad_name: Optional[str] = Form(None),
    account_id: Optional[str] = Form(None),
    page_id: Optional[str] = Form(None),
    callback_url: Optional[str] = Form(None),
    correlation_id: Optional[str] = Form(None),
    thumbnail_file: Optional[UploadFile] = File(None),
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
    registry: JobRegistry = Depends(get_job_registry),
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> Dict[str, Any]:
    """Stage the files now, run the batch after the response, report via callback_url."""
    _require_api_key(x_api_key)

    if not files:
        raise HTTPException(status_code=422, detail="No video files provided.")
    callback_url = (callback_url or "").strip() or None
    if callback_url and urlparse(callback_url).scheme not in {"http", "https"}:
        raise HTTPException(status_code=422, detail="callback_url must be an http(s) URL")
    req = _build_request(targets, name_prefix, status, ad_name, account_id, page_id)
    thumbnail = _read_thumbnail(thumbnail_file)

    # The background task owns the staged files; release here only if we never hand them over.
    session = orchestrator.stager.session()
    try:
        staging_failures = _stage_uploads(session, files)
        job = registry.create(correlation_id=(correlation_id or "").strip() or None, callback_url=callback_url)
        background_tasks.add_task(
            run_batch_job,
            registry,
            job.job_id,
            orchestrator,
            session.assets,
            req,
            thumbnail=thumbnail,
            prior_failures=staging_failures,
        )
    except Exception:
        session.release_all()
        raise

    logger.info("Queued batch job %s (%d files)", job.job_id, len(session.assets))
    return {"job_id": job.job_id, "status": job.status, "status_url": f"/api/jobs/{job.job_id}"}


@app.get("/api/jobs/{job_id}")
def job_status(
    job_id: str,
    registry: JobRegistry = Depends(get_job_registry),
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    job = registry.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job.to_dict()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8081")))
