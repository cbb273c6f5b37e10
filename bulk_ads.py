"""
Bulk video ads
==============

Fan a handful of video files out across many ad sets:

  for each video:   upload once -> video_id (+ Meta thumbnail)
    for each target:  newest ad in target -> template -> AdCreative -> Ad

A failed upload skips that video's targets only; a failed (video, target) unit
is reported and the batch moves on. Staged files are released on every exit.

CLI examples:
  python bulk_ads.py whoami
  python bulk_ads.py campaigns --account act_123
  python bulk_ads.py template --target 2385000000000
  python bulk_ads.py bulk --files a.mp4 b.mp4 --targets 238500001 238500002 --prefix "Spring"
"""

from __future__ import annotations

import argparse
import io
import json
import logging
import os
import re
import sys
import textwrap
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from dotenv import load_dotenv
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, Field, field_validator, model_validator

from asset_staging import AssetStager, StagingSession, UploadedAsset
from blob_store import BlobStore, BlobStoreConfig
from creative_templates import CreativeTemplate, TemplateResolver, build_object_story_spec
from meta_client import MetaAPIError, MetaClient, MetaConfig, wait_for_video_thumbnail_uri

logger = logging.getLogger(__name__)

AD_STATUSES = ("ACTIVE", "PAUSED")
DEADLINE_REASON = "batch deadline exceeded before this ad was attempted"


class BatchValidationError(ValueError):
    """The batch cannot start (no files, no targets)."""


# -----------------------------
# Settings
# -----------------------------

def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw not in {"0", "false", "no", "off"}


@dataclass(frozen=True)
class BatchSettings:
    max_workers: int = 4
    batch_timeout_s: int = 900
    wait_for_ready: bool = True
    wait_timeout_s: int = 600
    wait_poll_s: int = 5
    thumbnail_timeout_s: int = 60
    thumbnail_poll_s: int = 5
    video_upload_source: str = "direct"
    upload_dir: str | None = None

    @staticmethod
    def from_env() -> "BatchSettings":
        load_dotenv(override=False)
        source = (os.getenv("VIDEO_UPLOAD_SOURCE") or "direct").strip().lower()
        if source not in {"direct", "blob"}:
            raise ValueError("VIDEO_UPLOAD_SOURCE must be 'direct' or 'blob'")
        return BatchSettings(
            max_workers=max(1, int(os.getenv("BATCH_MAX_WORKERS", "4"))),
            batch_timeout_s=int(os.getenv("BATCH_TIMEOUT_S", "900")),
            wait_for_ready=_env_bool("VIDEO_WAIT_FOR_READY", True),
            wait_timeout_s=int(os.getenv("VIDEO_WAIT_TIMEOUT_S", "600")),
            wait_poll_s=int(os.getenv("VIDEO_WAIT_POLL_S", "5")),
            thumbnail_timeout_s=int(os.getenv("VIDEO_THUMBNAIL_TIMEOUT_S", "60")),
            thumbnail_poll_s=int(os.getenv("VIDEO_THUMBNAIL_POLL_S", "5")),
            video_upload_source=source,
            upload_dir=(os.getenv("UPLOAD_DIR") or "").strip() or None,
        )


# -----------------------------
# Request / report models
# -----------------------------

class BatchRequest(BaseModel):
    targets: List[str] = Field(min_length=1, description="Ad set ids; duplicates are dropped, order is kept.")
    name_prefix: str = ""
    status: str = "PAUSED"
    ad_name: Optional[str] = Field(
        default=None,
        description="Explicit ad name, used only when the batch is a single (video, target) pair.",
    )
    account_id: Optional[str] = None
    page_id: Optional[str] = Field(default=None, description="Overrides the template's page_id.")

    @field_validator("targets", mode="before")
    @classmethod
    def _coerce_targets(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            v = [v]
        out: List[str] = []
        for item in v:
            for part in re.split(r"[,\s]+", str(item)):
                part = part.strip()
                if part and part not in out:
                    out.append(part)
        return out

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, v):
        s = str(v or "PAUSED").strip().upper()
        if s not in AD_STATUSES:
            raise ValueError("status must be ACTIVE or PAUSED")
        return s

    @model_validator(mode="after")
    def _normalize_strings(self) -> "BatchRequest":
        self.name_prefix = (self.name_prefix or "").strip()
        for field_name in ("ad_name", "account_id", "page_id"):
            val = getattr(self, field_name)
            if val is not None:
                setattr(self, field_name, str(val).strip() or None)
        return self


class UnitState(str, Enum):
    PENDING = "PENDING"
    VIDEO_UPLOADED = "VIDEO_UPLOADED"
    TEMPLATE_RESOLVED = "TEMPLATE_RESOLVED"
    CREATIVE_CREATED = "CREATIVE_CREATED"
    AD_CREATED = "AD_CREATED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class VideoHandle:
    video_id: str
    thumbnail_url: str | None = None


@dataclass(frozen=True)
class UnitOutcome:
    asset: str
    target: str
    state: UnitState
    ad_name: str | None = None
    ad_id: str | None = None
    creative_id: str | None = None
    failed_after: UnitState | None = None
    error: str | None = None


@dataclass(frozen=True)
class BatchReport:
    success: tuple
    failures: tuple
    message: str
    units: tuple = ()

    def to_response(self) -> Dict[str, Any]:
        return {"message": self.message, "success": list(self.success), "failures": list(self.failures)}


def batch_message(created: int, failed: int) -> str:
    if created == 0:
        return "No ads were created."
    if failed == 0:
        return f"Batch complete: {created} ads created."
    return f"Batch finished with errors: {created} created, {failed} failed."


class _ReportBuilder:
    def __init__(self) -> None:
        self.success: List[str] = []
        self.failures: List[str] = []
        self.units: List[UnitOutcome] = []

    def add(self, outcome: UnitOutcome) -> None:
        self.units.append(outcome)
        if outcome.state is UnitState.AD_CREATED and outcome.ad_id:
            self.success.append(outcome.ad_id)
        elif outcome.error:
            self.failures.append(outcome.error)

    def build(self, extra_failures: Sequence[str] = ()) -> BatchReport:
        failures = self.failures + list(extra_failures)
        return BatchReport(
            success=tuple(self.success),
            failures=tuple(failures),
            message=batch_message(len(self.success), len(failures)),
            units=tuple(self.units),
        )


# -----------------------------
# Helpers
# -----------------------------

def build_ad_name(name_prefix: str, asset: UploadedAsset, *, explicit: str | None = None, single_unit: bool = False) -> str:
    if single_unit and explicit:
        return explicit
    prefix = (name_prefix or "").strip()
    return f"{prefix} - {asset.stem}" if prefix else asset.stem


def format_unit_failure(target: str, asset: UploadedAsset, reason: Any) -> str:
    return f"Failed for target {target} on asset {asset.filename}: {reason}"


def normalize_to_jpeg_bytes(raw: bytes) -> bytes:
    """Re-encode any image bytes to a Meta-safe JPEG."""
    if not raw:
        raise ValueError("Thumbnail image is empty")
    try:
        img = Image.open(io.BytesIO(raw))
        img = img.convert("RGB")
    except (UnidentifiedImageError, OSError) as e:
        raise ValueError(f"Thumbnail is not a valid image: {e}") from e

    out = io.BytesIO()
    img.save(out, format="JPEG", quality=92, optimize=True)
    return out.getvalue()


class _TemplateCache:
    """One template lookup per target per batch; failures are remembered too."""

    def __init__(self, resolver: TemplateResolver):
        self.resolver = resolver
        self._lock = threading.Lock()
        self._entries: Dict[str, Any] = {}

    def get(self, target: str) -> CreativeTemplate:
        with self._lock:
            entry = self._entries.get(target)
        if entry is None:
            try:
                entry = self.resolver.resolve(target)
            except Exception as e:
                entry = e
            with self._lock:
                entry = self._entries.setdefault(target, entry)
        if isinstance(entry, Exception):
            raise entry
        return entry


# -----------------------------
# Orchestrator
# -----------------------------

class BatchOrchestrator:
    def __init__(
        self,
        client: Any,
        stager: AssetStager,
        settings: BatchSettings | None = None,
        *,
        blob_store: BlobStore | None = None,
        resolver: TemplateResolver | None = None,
    ):
        self.client = client
        self.stager = stager
        self.settings = settings or BatchSettings()
        self.blob_store = blob_store
        self.resolver = resolver or TemplateResolver(client)

    def run(
        self,
        assets: Sequence[UploadedAsset],
        request: BatchRequest,
        *,
        thumbnail: bytes | None = None,
        prior_failures: Sequence[str] = (),
    ) -> BatchReport:
        """Create one ad per (asset, target). Raises BatchValidationError only before any work.

        `prior_failures` (e.g. files that could not be staged) are carried into the report.
        """
        session = StagingSession(self.stager, assets)
        builder = _ReportBuilder()
        try:
            if not assets:
                raise BatchValidationError("No video files provided.")
            targets = list(request.targets)
            if not targets:
                raise BatchValidationError("No target ad sets provided.")
            builder.failures.extend(prior_failures)

            deadline = time.monotonic() + max(1, int(self.settings.batch_timeout_s))
            single_unit = len(assets) * len(targets) == 1
            templates = _TemplateCache(self.resolver)
            logger.info("Bulk batch started: %d videos x %d targets", len(assets), len(targets))

            thumb_hash = self._upload_thumbnail(thumbnail, request, builder)

            for asset in assets:
                if time.monotonic() >= deadline:
                    for target in targets:
                        builder.add(self._skipped(asset, target, UnitState.PENDING))
                    continue

                try:
                    handle = self._upload_asset(asset, request, want_thumbnail=not thumb_hash)
                except Exception as e:
                    logger.warning("Upload failed for %s: %s", asset.filename, e)
                    builder.failures.append(f"Failed to upload asset {asset.filename}: {e}")
                    continue

                for outcome in self._run_targets(asset, handle, targets, request, thumb_hash, templates, deadline, single_unit):
                    builder.add(outcome)
        finally:
            cleanup_errors = session.release_all()

        report = builder.build(cleanup_errors)
        logger.info("Bulk batch done: %s", report.message)
        return report

    def _upload_thumbnail(self, thumbnail: bytes | None, request: BatchRequest, builder: _ReportBuilder) -> Optional[str]:
        if not thumbnail:
            return None
        try:
            jpeg = normalize_to_jpeg_bytes(thumbnail)
            return self.client.upload_image(image_bytes=jpeg, filename="thumbnail.jpg", ad_account_id=request.account_id)
        except Exception as e:
            logger.warning("Thumbnail upload failed, falling back to Meta thumbnails: %s", e)
            builder.failures.append(f"Failed to upload thumbnail: {e}")
            return None

    def _upload_asset(self, asset: UploadedAsset, request: BatchRequest, *, want_thumbnail: bool) -> VideoHandle:
        s = self.settings
        if self.blob_store is not None:
            key = self.blob_store.build_key(asset.filename)
            with open(asset.path, "rb") as fh:
                url = self.blob_store.put_file(None, key, fh, content_type=asset.content_type)
            video_id = self.client.upload_video(file_url=url, name=asset.stem, ad_account_id=request.account_id)
        else:
            video_id = self.client.upload_video(
                video_path=asset.path,
                filename=asset.filename,
                content_type=asset.content_type,
                name=asset.stem,
                ad_account_id=request.account_id,
            )
        logger.info("Uploaded %s as video %s", asset.filename, video_id)

        if s.wait_for_ready:
            self.client.wait_for_video_ready(video_id, timeout_s=s.wait_timeout_s, poll_s=s.wait_poll_s)

        thumbnail_url = None
        if want_thumbnail and s.thumbnail_timeout_s > 0:
            thumbnail_url = wait_for_video_thumbnail_uri(
                self.client, video_id, timeout_s=s.thumbnail_timeout_s, poll_s=s.thumbnail_poll_s
            )
        return VideoHandle(video_id=video_id, thumbnail_url=thumbnail_url)

    def _run_targets(
        self,
        asset: UploadedAsset,
        handle: VideoHandle,
        targets: List[str],
        request: BatchRequest,
        thumb_hash: Optional[str],
        templates: _TemplateCache,
        deadline: float,
        single_unit: bool,
    ) -> List[UnitOutcome]:
        ad_name = build_ad_name(request.name_prefix, asset, explicit=request.ad_name, single_unit=single_unit)
        args = (asset, handle, request, ad_name, thumb_hash, templates, deadline)
        workers = max(1, min(int(self.settings.max_workers), len(targets)))

        if workers == 1:
            return [self._run_unit(target, *args) for target in targets]

        # Slots keep report order stable regardless of completion order.
        outcomes: List[Optional[UnitOutcome]] = [None] * len(targets)
        with ThreadPoolExecutor(max_workers=workers) as ex:
            futs = {ex.submit(self._run_unit, target, *args): i for i, target in enumerate(targets)}
            for fut in as_completed(futs):
                i = futs[fut]
                try:
                    outcomes[i] = fut.result()
                except Exception as e:
                    outcomes[i] = UnitOutcome(
                        asset=asset.filename,
                        target=targets[i],
                        state=UnitState.FAILED,
                        ad_name=ad_name,
                        error=format_unit_failure(targets[i], asset, e),
                    )
        return [o for o in outcomes if o is not None]

    def _run_unit(
        self,
        target: str,
        asset: UploadedAsset,
        handle: VideoHandle,
        request: BatchRequest,
        ad_name: str,
        thumb_hash: Optional[str],
        templates: _TemplateCache,
        deadline: float,
    ) -> UnitOutcome:
        if time.monotonic() >= deadline:
            return self._skipped(asset, target, UnitState.VIDEO_UPLOADED, ad_name=ad_name)

        state = UnitState.VIDEO_UPLOADED
        creative_id = None
        try:
            template = templates.get(target)
            state = UnitState.TEMPLATE_RESOLVED

            oss = build_object_story_spec(
                template,
                handle.video_id,
                image_hash=thumb_hash,
                image_url=None if thumb_hash else handle.thumbnail_url,
                page_id=request.page_id,
            )
            creative_id = self.client.create_adcreative(
                name=f"Creative - {ad_name}",
                object_story_spec=oss,
                account_id=request.account_id,
            )
            state = UnitState.CREATIVE_CREATED

            ad_id = self.client.create_ad(
                name=ad_name,
                adset_id=target,
                creative_id=creative_id,
                status=request.status,
                account_id=request.account_id,
            )
        except Exception as e:
            logger.warning("Ad for %s in target %s failed after %s: %s", asset.filename, target, state.value, e)
            return UnitOutcome(
                asset=asset.filename,
                target=target,
                state=UnitState.FAILED,
                ad_name=ad_name,
                creative_id=creative_id,
                failed_after=state,
                error=format_unit_failure(target, asset, e),
            )

        logger.info("Created ad %s (%s) in target %s", ad_id, ad_name, target)
        return UnitOutcome(
            asset=asset.filename,
            target=target,
            state=UnitState.AD_CREATED,
            ad_name=ad_name,
            ad_id=ad_id,
            creative_id=creative_id,
        )

    @staticmethod
    def _skipped(asset: UploadedAsset, target: str, reached: UnitState, *, ad_name: str | None = None) -> UnitOutcome:
        return UnitOutcome(
            asset=asset.filename,
            target=target,
            state=UnitState.FAILED,
            ad_name=ad_name,
            failed_after=reached,
            error=format_unit_failure(target, asset, DEADLINE_REASON),
        )


def build_orchestrator(cfg: MetaConfig, settings: BatchSettings) -> BatchOrchestrator:
    """Construct the client, stager and (optional) blob store from config."""
    blob_store = None
    if settings.video_upload_source == "blob":
        blob_store = BlobStore(BlobStoreConfig.from_env())
    return BatchOrchestrator(
        MetaClient(cfg),
        AssetStager(settings.upload_dir),
        settings,
        blob_store=blob_store,
    )


# -----------------------------
# CLI
# -----------------------------

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="bulk_ads.py",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description=textwrap.dedent(
            """
            Bulk video ads tool

            Examples:
              # 1) Validate token
              python bulk_ads.py whoami

              # 2) Find targets
              python bulk_ads.py list-adaccounts
              python bulk_ads.py campaigns --account act_123
              python bulk_ads.py adsets --campaign 2385000000001

              # 3) Inspect the template a target would use
              python bulk_ads.py template --target 2385000000002

              # 4) Create ads (default PAUSED)
              python bulk_ads.py bulk --files a.mp4 b.mp4 --targets 2385000000002 2385000000003 --prefix "Spring"
            """
        ),
    )
    p.add_argument("--env", default=".env", help="Path to .env file (default: .env).")
    p.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"))

    sub = p.add_subparsers(dest="cmd", required=True)
    sub.add_parser("whoami", help="GET /me (validates token).")
    sub.add_parser("list-adaccounts", help="List ad accounts visible to the token.")

    sp = sub.add_parser("campaigns", help="List active campaigns of an ad account.")
    sp.add_argument("--account", default=None)

    sp = sub.add_parser("adsets", help="List ad sets of a campaign.")
    sp.add_argument("--campaign", required=True)

    sp = sub.add_parser("template", help="Show the template a target would use.")
    sp.add_argument("--target", required=True)

    sp = sub.add_parser("bulk", help="Upload videos and create one ad per (video, target).")
    sp.add_argument("--files", nargs="+", required=True)
    sp.add_argument("--targets", nargs="+", required=True)
    sp.add_argument("--prefix", default="")
    sp.add_argument("--status", default="PAUSED", help="ACTIVE or PAUSED")
    sp.add_argument("--ad-name", default=None)
    sp.add_argument("--account", default=None)
    sp.add_argument("--page-id", default=None)
    sp.add_argument("--thumbnail", default=None, help="Optional thumbnail image for every video.")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=str(args.log_level).upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if os.path.exists(args.env):
        load_dotenv(args.env, override=False)

    try:
        cfg = MetaConfig.from_env()
        settings = BatchSettings.from_env()
    except ValueError as e:
        print(f"[CONFIG ERROR] {e}", file=sys.stderr)
        return 2

    client = MetaClient(cfg)

    try:
        if args.cmd == "whoami":
            print(json.dumps(client.whoami(), indent=2))
            return 0

        if args.cmd == "list-adaccounts":
            print(json.dumps(client.list_adaccounts(), indent=2))
            return 0

        if args.cmd == "campaigns":
            print(json.dumps(client.list_campaigns(args.account), indent=2))
            return 0

        if args.cmd == "adsets":
            print(json.dumps(client.list_adsets(args.campaign), indent=2))
            return 0

        if args.cmd == "template":
            t = TemplateResolver(client).resolve(args.target)
            out = {
                "source_ad_id": t.source_ad_id,
                "source_creative_id": t.source_creative_id,
                "object_story_spec": build_object_story_spec(t, "<new video id>"),
            }
            print(json.dumps(out, indent=2, ensure_ascii=False))
            return 0

        if args.cmd == "bulk":
            request = BatchRequest(
                targets=args.targets,
                name_prefix=args.prefix,
                status=args.status,
                ad_name=args.ad_name,
                account_id=args.account,
                page_id=args.page_id,
            )
            orchestrator = build_orchestrator(cfg, settings)
            thumbnail = None
            if args.thumbnail:
                with open(args.thumbnail, "rb") as fh:
                    thumbnail = fh.read()
            with orchestrator.stager.session() as session:
                for path in args.files:
                    session.adopt(orchestrator.stager.stage_path(path))
                report = orchestrator.run(session.assets, request, thumbnail=thumbnail)
            print(json.dumps(report.to_response(), indent=2, ensure_ascii=False))
            return 0 if not report.failures else 1

        print(f"Unknown command: {args.cmd}", file=sys.stderr)
        return 2

    except MetaAPIError as e:
        print("\n[MetaAPIError]", e, file=sys.stderr)
        if e.error:
            print(json.dumps(e.error, indent=2), file=sys.stderr)
        return 1
    except Exception as e:
        print("\n[ERROR]", e, file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
