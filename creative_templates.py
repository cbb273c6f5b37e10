"""Reuse an existing ad's creative as the template for new video ads.

The newest ad under a target provides page identity, copy and call to action.
Its thumbnail (`image_hash` / `image_url`) and `video_id` belong to the old ad,
so they are always dropped before a new video is injected.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

# Fields of video_data that point at the source ad's media.
ASSET_FIELDS = ("image_url", "image_hash", "video_id")


class NoTemplateAvailable(RuntimeError):
    def __init__(self, target_id: str, reason: str = "no prior ad with an object story spec"):
        super().__init__(f"No template ad found for target {target_id}: {reason}")
        self.target_id = target_id
        self.reason = reason


@dataclass(frozen=True)
class CreativeTemplate:
    target_id: str
    page_id: str
    video_data: Mapping[str, Any]
    instagram_actor_id: Optional[str] = None
    source_ad_id: Optional[str] = None
    source_creative_id: Optional[str] = None


def _first_text(v: Any) -> Optional[str]:
    if v is None:
        return None
    if isinstance(v, list):
        if not v:
            return None
        v = v[0]
    s = str(v).strip()
    return s or None


def video_data_from_link_data(ld: Mapping[str, Any]) -> Dict[str, Any]:
    """Map an image-style link_data payload onto the fields valid for video_data."""
    vd: Dict[str, Any] = {}
    msg = _first_text(ld.get("message"))
    name = _first_text(ld.get("name"))
    desc = _first_text(ld.get("description"))
    if msg is not None:
        vd["message"] = msg
    if name is not None:
        vd["title"] = name
    if desc is not None:
        vd["link_description"] = desc

    link = _first_text(ld.get("link"))
    cta = ld.get("call_to_action")
    if isinstance(cta, Mapping):
        cta = copy.deepcopy(dict(cta))
        if link:
            val = cta.get("value")
            if not isinstance(val, dict):
                val = {}
            val.setdefault("link", link)
            cta["value"] = val
        vd["call_to_action"] = cta
    elif link:
        vd["call_to_action"] = {"type": "LEARN_MORE", "value": {"link": link}}
    return vd


def template_from_story_spec(target_id: str, raw: Mapping[str, Any]) -> CreativeTemplate:
    """Build a template from `MetaClient.get_recent_ad_creative` output."""
    oss = raw.get("object_story_spec")
    if not isinstance(oss, Mapping):
        raise NoTemplateAvailable(target_id, "creative has no object story spec")

    page_id = str(oss.get("page_id") or "").strip()
    if not page_id:
        raise NoTemplateAvailable(target_id, "template story spec has no page_id")

    vd = oss.get("video_data")
    if isinstance(vd, Mapping):
        video_data = copy.deepcopy(dict(vd))
    elif isinstance(oss.get("link_data"), Mapping):
        video_data = video_data_from_link_data(oss["link_data"])
    else:
        raise NoTemplateAvailable(target_id, "template has neither video_data nor link_data")

    actor = oss.get("instagram_actor_id") or oss.get("instagram_user_id")
    return CreativeTemplate(
        target_id=target_id,
        page_id=page_id,
        video_data=MappingProxyType(video_data),
        instagram_actor_id=str(actor) if actor else None,
        source_ad_id=raw.get("ad_id"),
        source_creative_id=raw.get("creative_id"),
    )


def sanitize_video_data(template: CreativeTemplate) -> Dict[str, Any]:
    """Deep copy of the template's video_data without the source ad's media fields."""
    return {k: copy.deepcopy(v) for k, v in template.video_data.items() if k not in ASSET_FIELDS}


def build_object_story_spec(
    template: CreativeTemplate,
    video_id: str,
    *,
    image_hash: str | None = None,
    image_url: str | None = None,
    page_id: str | None = None,
) -> Dict[str, Any]:
    """New object_story_spec for `video_id`, derived from `template` without mutating it."""
    if not video_id:
        raise ValueError("video_id is required")

    vd = sanitize_video_data(template)
    vd["video_id"] = video_id
    # Meta requires a thumbnail for video creatives; image_hash wins over image_url.
    if image_hash:
        vd["image_hash"] = image_hash
    elif image_url:
        vd["image_url"] = image_url

    oss: Dict[str, Any] = {"page_id": page_id or template.page_id, "video_data": vd}
    if template.instagram_actor_id:
        oss["instagram_actor_id"] = template.instagram_actor_id
    return oss


class TemplateResolver:
    def __init__(self, client: Any):
        self.client = client

    def resolve(self, target_id: str) -> CreativeTemplate:
        raw = self.client.get_recent_ad_creative(target_id)
        if not raw:
            raise NoTemplateAvailable(target_id)
        template = template_from_story_spec(target_id, raw)
        logger.info(
            "Using ad %s (creative %s) as template for target %s",
            template.source_ad_id,
            template.source_creative_id,
            target_id,
        )
        return template
