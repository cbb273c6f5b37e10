"""
Meta Marketing API client (Python)
==================================

Thin REST wrapper over the Graph API used by the bulk video ads pipeline.

It supports:
- Connectivity checks (token + ad accounts, campaigns, ad sets)
- Uploading a video (multipart bytes or a remote file_url) and waiting until it is ready
- Uploading a thumbnail image to get image_hash
- Reading the newest ad creative under an ad set / campaign (used as a template)
- Creating AdCreative -> Ad

Every call has its own timeout. Automatic retries are off by default; the pipeline
reports platform errors to the caller instead of retrying them.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import mimetypes
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
from dotenv import load_dotenv

logger = logging.getLogger(__name__)


# -----------------------------
# Exceptions
# -----------------------------

class MetaAPIError(RuntimeError):
    def __init__(self, message: str, *, http_status: int | None = None, error: dict | None = None):
        super().__init__(message)
        self.http_status = http_status
        self.error = error or {}

    @property
    def code(self) -> Optional[int]:
        return self.error.get("code")


class MetaTimeoutError(MetaAPIError):
    """A single Graph API call exceeded its timeout budget."""


# -----------------------------
# Config
# -----------------------------

def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class MetaConfig:
    access_token: str
    ad_account_id: str = ""
    api_version: str = "v21.0"
    app_id: str | None = None
    app_secret: str | None = None
    timeout_s: int = 30
    video_upload_timeout_s: int = 600
    max_retries: int = 0

    @staticmethod
    def from_env() -> "MetaConfig":
        """Loads config from environment variables (optionally via .env)."""
        load_dotenv(override=False)

        token = os.getenv("META_ACCESS_TOKEN", "").strip()
        account_id = os.getenv("META_AD_ACCOUNT_ID", "").strip()
        api_version = os.getenv("META_API_VERSION", "v21.0").strip() or "v21.0"
        app_id = os.getenv("META_APP_ID", "").strip() or None
        app_secret = os.getenv("META_APP_SECRET", "").strip() or None

        if not token:
            raise ValueError("Missing META_ACCESS_TOKEN in environment (.env).")

        return MetaConfig(
            access_token=token,
            ad_account_id=account_id,
            api_version=api_version,
            app_id=app_id,
            app_secret=app_secret,
            timeout_s=_env_int("META_TIMEOUT_S", 30),
            video_upload_timeout_s=_env_int("META_VIDEO_UPLOAD_TIMEOUT_S", 600),
            max_retries=_env_int("META_MAX_RETRIES", 0),
        )


def normalize_ad_account_id(ad_account_id: str) -> str:
    """
    Meta endpoints use act_<AD_ACCOUNT_ID>.
    Accept either 'act_123' or '123' from the user.
    """
    ad_account_id = (ad_account_id or "").strip()
    if ad_account_id.startswith("act_"):
        return ad_account_id
    if ad_account_id.isdigit():
        return f"act_{ad_account_id}"
    return ad_account_id


def _created_time_key(row: dict) -> str:
    # Graph returns ISO-8601 with a fixed +0000 offset, so string order is time order.
    return str(row.get("created_time") or "")


# -----------------------------
# Meta Client (REST via requests)
# -----------------------------

class MetaClient:
    def __init__(self, cfg: MetaConfig, *, session: requests.Session | None = None):
        self.cfg = cfg
        self.session = session or requests.Session()
        self.base_url = f"https://graph.facebook.com/{cfg.api_version}"
        self.video_base_url = f"https://graph-video.facebook.com/{cfg.api_version}"

    def _account(self, account_id: str | None) -> str:
        acct = normalize_ad_account_id(account_id or self.cfg.ad_account_id)
        if not acct:
            raise ValueError("No ad account id given and META_AD_ACCOUNT_ID is not set.")
        return acct

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        data: Optional[dict] = None,
        files: Optional[dict] = None,
        use_video: bool = False,
        timeout_s: Optional[int] = None,
        max_retries: Optional[int] = None,
    ) -> dict:
        base = self.video_base_url if use_video else self.base_url
        url = base + "/" + path.lstrip("/")
        params = dict(params or {})
        data = dict(data or {})
        timeout = timeout_s or self.cfg.timeout_s
        retries = self.cfg.max_retries if max_retries is None else max_retries

        # Graph API accepts access_token as query or form field.
        # Multipart uploads send it as a query param.
        if method.upper() == "GET" or files is not None:
            params.setdefault("access_token", self.cfg.access_token)
        else:
            data.setdefault("access_token", self.cfg.access_token)

        if self.cfg.app_secret:
            proof = hmac.new(
                self.cfg.app_secret.encode("utf-8"),
                self.cfg.access_token.encode("utf-8"),
                hashlib.sha256,
            ).hexdigest()
            if method.upper() == "GET" or files is not None:
                params.setdefault("appsecret_proof", proof)
            else:
                data.setdefault("appsecret_proof", proof)

        last_err: Optional[Exception] = None
        for attempt in range(retries + 1):
            if files:
                # Every attempt must send the whole body.
                for part in files.values():
                    fobj = part[1] if isinstance(part, tuple) else part
                    if hasattr(fobj, "seek"):
                        fobj.seek(0)
            try:
                logger.debug("Meta %s %s (attempt %d)", method.upper(), path, attempt + 1)
                resp = self.session.request(
                    method=method.upper(),
                    url=url,
                    params=params,
                    data=data,
                    files=files,
                    timeout=timeout,
                )
                # Meta often returns JSON even for errors.
                try:
                    payload = resp.json()
                except ValueError:
                    payload = {"raw": resp.text}

                if resp.status_code >= 400 or ("error" in payload):
                    error_obj = payload.get("error", {}) or {}
                    msg = error_obj.get("message") or payload.get("raw") or "Unknown Meta API error"
                    raise MetaAPIError(
                        f"Meta API error ({resp.status_code}): {msg}",
                        http_status=resp.status_code,
                        error=error_obj,
                    )
                return payload
            except MetaAPIError as e:
                last_err = e
                is_retryable = e.http_status in {500, 502, 503, 504, 429}
                if attempt < retries and is_retryable:
                    time.sleep(1.5 * (attempt + 1))
                    continue
                raise
            except requests.Timeout as e:
                last_err = e
                if attempt < retries:
                    time.sleep(1.5 * (attempt + 1))
                    continue
                raise MetaTimeoutError(
                    f"Meta API call {method.upper()} {path} timed out after {timeout}s"
                ) from e
            except requests.RequestException as e:
                last_err = e
                if attempt < retries:
                    time.sleep(1.5 * (attempt + 1))
                    continue
                raise MetaAPIError(f"Network error calling Meta API: {e}") from e

        raise MetaAPIError(f"Meta API request failed after retries: {last_err}")

    def _get_all_pages(self, path: str, *, params: dict, max_pages: int = 8) -> List[dict]:
        """Collects up to `max_pages` pages for a Graph API edge."""
        out: List[dict] = []
        after: str | None = None
        for _ in range(max_pages):
            p = dict(params)
            if after:
                p["after"] = after
            payload = self._request("GET", path, params=p)
            data = payload.get("data") or []
            if isinstance(data, list):
                out.extend(data)
            if not (payload.get("paging") or {}).get("next"):
                break
            after = ((payload.get("paging") or {}).get("cursors") or {}).get("after")
            if not after:
                break
        return out

    # -----------------------------
    # Diagnostics / discovery
    # -----------------------------

    def whoami(self) -> dict:
        return self._request("GET", "/me", params={"fields": "id,name"})

    def list_adaccounts(self, limit: int = 100) -> List[dict]:
        rows = self._get_all_pages("/me/adaccounts", params={"fields": "id,name", "limit": str(limit)}, max_pages=50)
        return [{"id": r.get("id"), "name": r.get("name")} for r in rows]

    def list_campaigns(self, account_id: str | None = None, *, limit: int = 200) -> List[dict]:
        """Active campaigns with the page they promote (if any)."""
        acct = self._account(account_id)
        params = {
            "fields": "id,name,promoted_object",
            "effective_status": json.dumps(["ACTIVE"]),
            "limit": str(limit),
        }
        rows = self._get_all_pages(f"/{acct}/campaigns", params=params)
        return [
            {
                "id": r.get("id"),
                "name": r.get("name"),
                "page_id": (r.get("promoted_object") or {}).get("page_id"),
            }
            for r in rows
        ]

    def list_adsets(self, campaign_id: str, *, limit: int = 200) -> List[dict]:
        params = {
            "fields": "id,name,effective_status",
            "effective_status": json.dumps(["ACTIVE", "PAUSED"]),
            "limit": str(limit),
        }
        return self._get_all_pages(f"/{campaign_id}/adsets", params=params)

    def get_object(self, object_id: str, fields: str) -> dict:
        return self._request("GET", f"/{object_id}", params={"fields": fields})

    # -----------------------------
    # Templates
    # -----------------------------

    def get_recent_ad_creative(self, target_id: str, *, limit: int = 100, max_pages: int = 10) -> Optional[dict]:
        """Newest ad under an ad set / campaign whose creative has an object_story_spec.

        The ads edge has no server-side ordering by creation time, so every page
        (up to `max_pages`) is collected and sorted here.

        Returns {"ad_id", "ad_name", "creative_id", "object_story_spec"} or None.
        """
        params = {
            "fields": "id,name,created_time,creative{id,object_story_spec}",
            "limit": str(limit),
        }
        rows = self._get_all_pages(f"/{target_id}/ads", params=params, max_pages=max_pages)
        for row in sorted(rows, key=_created_time_key, reverse=True):
            creative = row.get("creative") or {}
            oss = creative.get("object_story_spec")
            if isinstance(oss, dict) and oss:
                return {
                    "ad_id": row.get("id"),
                    "ad_name": row.get("name"),
                    "creative_id": creative.get("id"),
                    "object_story_spec": oss,
                }
        return None

    # -----------------------------
    # Create flow (video -> creative -> ad)
    # -----------------------------

    def upload_image(
        self,
        *,
        image_bytes: bytes,
        filename: str = "image.jpg",
        ad_account_id: str | None = None,
    ) -> str:
        """Uploads JPEG bytes and returns image_hash."""
        acct = self._account(ad_account_id)
        files = {"filename": (filename, image_bytes, "image/jpeg")}
        payload = self._request("POST", f"/{acct}/adimages", files=files, data={})

        images = payload.get("images") or {}
        if not images:
            raise MetaAPIError(f"Upload did not return images. Response: {payload}")

        first_key = next(iter(images.keys()))
        image_hash = (images[first_key] or {}).get("hash") or first_key
        if not image_hash:
            raise MetaAPIError(f"Could not parse image_hash from response: {payload}")
        return image_hash

    def upload_video(
        self,
        *,
        video_path: str | None = None,
        filename: str | None = None,
        content_type: str | None = None,
        file_url: str | None = None,
        name: str | None = None,
        ad_account_id: str | None = None,
    ) -> str:
        """Upload a video and return the AdVideo id.

        Either `file_url` (Meta downloads it) or `video_path` (streamed multipart upload).
        """
        acct = self._account(ad_account_id)
        data: Dict[str, Any] = {}
        if name:
            data["name"] = name

        if file_url:
            data["file_url"] = file_url
            payload = self._request(
                "POST",
                f"/{acct}/advideos",
                data=data,
                use_video=True,
                timeout_s=self.cfg.video_upload_timeout_s,
            )
        else:
            if not video_path:
                raise ValueError("Provide file_url or video_path.")
            p = Path(video_path)
            if not p.exists():
                raise FileNotFoundError(f"Video file not found: {p}")
            fname = filename or p.name
            mime = content_type or mimetypes.guess_type(fname)[0] or "video/mp4"
            with p.open("rb") as fh:
                # Meta expects the video under the multipart field 'source'
                files = {"source": (fname, fh, mime)}
                payload = self._request(
                    "POST",
                    f"/{acct}/advideos",
                    files=files,
                    data=data,
                    use_video=True,
                    timeout_s=self.cfg.video_upload_timeout_s,
                )

        video_id = str(payload.get("id") or "").strip()
        if not video_id:
            raise MetaAPIError(f"Video upload did not return id. Response: {payload}")
        return video_id

    def wait_for_video_ready(self, video_id: str, *, timeout_s: int = 600, poll_s: int = 5) -> None:
        """Poll AdVideo status until it's ready (or timeout)."""
        deadline = time.monotonic() + max(1, int(timeout_s))
        last_status = None

        while time.monotonic() < deadline:
            obj = self.get_object(str(video_id), fields="status")
            status = obj.get("status")

            # status is usually a dict: {"video_status":"processing"|"ready", ...}
            video_status = None
            if isinstance(status, dict):
                video_status = (status.get("video_status") or status.get("status") or "").strip().lower() or None
            elif isinstance(status, str):
                video_status = status.strip().lower() or None
            last_status = status

            if video_status in {"ready", "complete", "completed"}:
                return
            if video_status in {"error", "failed"}:
                raise MetaAPIError(f"Video encoding failed for {video_id}. status={status}")

            time.sleep(max(1, int(poll_s)))

        raise MetaTimeoutError(f"Timed out waiting for video {video_id} to become ready. last_status={last_status}")

    def list_video_thumbnails(self, video_id: str, *, limit: int = 10) -> List[dict]:
        """Return available thumbnails for a video (each item typically includes 'uri')."""
        payload = self._request(
            "GET",
            f"/{video_id}/thumbnails",
            params={"fields": "id,uri,is_preferred", "limit": str(limit)},
        )
        data = payload.get("data") or []
        return data if isinstance(data, list) else []

    def create_adcreative(self, *, name: str, object_story_spec: dict, account_id: str | None = None) -> str:
        acct = self._account(account_id)
        data = {
            "name": name,
            "object_story_spec": json.dumps(object_story_spec),
        }
        payload = self._request("POST", f"/{acct}/adcreatives", data=data)
        return str(payload["id"])

    def create_ad(
        self,
        *,
        name: str,
        adset_id: str,
        creative_id: str,
        status: str = "PAUSED",
        account_id: str | None = None,
    ) -> str:
        acct = self._account(account_id)
        data = {
            "name": name,
            "adset_id": adset_id,
            # creative must be a JSON object containing creative_id
            "creative": json.dumps({"creative_id": creative_id}),
            "status": status,
        }
        payload = self._request("POST", f"/{acct}/ads", data=data)
        return str(payload["id"])


def pick_video_thumbnail_uri(thumbnails: List[dict]) -> Optional[str]:
    """Pick the best thumbnail uri from Meta's thumbnail list."""
    for t in thumbnails:
        if t.get("is_preferred") and (t.get("uri") or "").strip():
            return str(t["uri"]).strip()
    for t in thumbnails:
        uri = (t.get("uri") or "").strip()
        if uri:
            return uri
    return None


def wait_for_video_thumbnail_uri(
    client: "MetaClient",
    video_id: str,
    *,
    timeout_s: int = 60,
    poll_s: int = 5,
) -> Optional[str]:
    """Poll Meta until a video thumbnail uri becomes available (or timeout)."""
    deadline = time.monotonic() + max(1, int(timeout_s))
    while True:
        try:
            uri = pick_video_thumbnail_uri(client.list_video_thumbnails(video_id, limit=10))
            if uri:
                return uri
        except MetaAPIError as e:
            # Thumbnails can fail while Meta is still processing the video.
            logger.debug("Thumbnails not available yet for video %s: %s", video_id, e)
        if time.monotonic() >= deadline:
            return None
        time.sleep(max(1, int(poll_s)))
