"""Turn raw upstream listing pages into canonical video records."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from math import gcd
from typing import Any, Iterable
from urllib.parse import unquote

PRODUCT_LINK_TEMPLATE = "https://shop.tiktok.com/view/product/{product_id}"
_COVER_CDN_PREFIX = "https://p16-oec-ttp.tiktokcdn-us.com/"
_PLACEHOLDER_PRODUCT_RE = re.compile(r'"placeholder_product_id":"(\d+)"')
_ANCHOR_PRODUCT_RE = re.compile(r'\\?"product_id\\?":\s*\\?"?(\d+)')
_MILLISECOND_DURATION_THRESHOLD = 600


@dataclass(slots=True)
class ShopAnchorProduct:
    product_id: str | None
    title: str
    image_url: str


@dataclass(slots=True)
class ExtractedVideo:
    aweme_id: str
    username: str
    caption: str
    views: int
    likes: int
    shares: int
    comments: int
    video_url: str
    audio_url: str
    thumbnail_url: str
    video_duration: int | None
    video_ratio: str
    share_url: str
    music_title: str
    created_at: datetime | None
    on_screen_text: str
    spark: bool
    commission_tag: str
    has_shop: bool
    product_id: str | None
    product_name: str
    product_image: str
    product_link: str

    def to_row(self) -> dict[str, Any]:
        """Map to a ``shop_videos`` row, leaving enrichment-owned fields out."""

        return {
            "aweme_id": self.aweme_id,
            "username": self.username,
            "caption": self.caption,
            "views": self.views,
            "likes": self.likes,
            "shares": self.shares,
            "comments": self.comments,
            "video_url": self.video_url,
            "audio_url": self.audio_url,
            "thumbnail_url": self.thumbnail_url,
            "video_duration": self.video_duration,
            "video_ratio": self.video_ratio,
            "share_url": self.share_url,
            "music_title": self.music_title,
            "created_at": self.created_at,
            "on_screen_text": self.on_screen_text,
            "spark": self.spark,
            "commission_tag": self.commission_tag,
            "shop": self.has_shop,
            "product_id": self.product_id,
            "product_link": self.product_link,
        }


def compute_aspect_ratio(width: Any, height: Any) -> str:
    w = _as_int(width)
    h = _as_int(height)
    if w <= 0 or h <= 0:
        return ""
    divisor = gcd(w, h)
    return f"{w // divisor}:{h // divisor}"


def normalize_duration(raw: Any) -> int | None:
    if raw is None:
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if value > _MILLISECOND_DURATION_THRESHOLD:
        value = value / 1000
    return int(round(value))


def product_link_for(product_id: str | None) -> str:
    if not product_id:
        return ""
    return PRODUCT_LINK_TEMPLATE.format(product_id=product_id)


def placeholder_product_id(share_url: str | None) -> str | None:
    if not share_url:
        return None
    match = _PLACEHOLDER_PRODUCT_RE.search(unquote(share_url))
    if match is None:
        return None
    return match.group(1)


def find_shop_anchor(anchors: Any) -> dict | None:
    if not isinstance(anchors, list):
        return None
    for anchor in anchors:
        if not isinstance(anchor, dict):
            continue
        key = anchor.get("component_key") or ""
        if not isinstance(key, str):
            continue
        if "anchor_complex_shop" in key or key == "anchor_shop":
            return anchor
    return None


def parse_shop_anchor(anchor: dict | None) -> ShopAnchorProduct | None:
    """Best-effort decode of the nested JSON-in-a-string shop anchor payload.

    Returns ``None`` when there is nothing usable. Malformed payloads never raise:
    whatever could be recovered before the failure (usually just the product id)
    is returned with empty title and image.
    """

    if not anchor:
        return None
    extra = anchor.get("extra")
    if not extra:
        return None

    if isinstance(extra, str):
        raw = extra
    else:
        try:
            raw = json.dumps(extra)
        except (TypeError, ValueError):
            return None

    id_match = _ANCHOR_PRODUCT_RE.search(raw)
    product_id = id_match.group(1) if id_match else None

    try:
        outer_list = json.loads(raw)
        outer = outer_list[0] if isinstance(outer_list, list) and outer_list else {}
        if not isinstance(outer, dict):
            outer = {}
        meta_raw = outer.get("extra") or "{}"
        meta = json.loads(meta_raw) if isinstance(meta_raw, str) else meta_raw
        if not isinstance(meta, dict):
            meta = {}
    except (ValueError, TypeError, KeyError, IndexError):
        if product_id is None:
            return None
        return ShopAnchorProduct(product_id=product_id, title="", image_url="")

    if product_id is None:
        meta_id = meta.get("product_id") or outer.get("id")
        if meta_id is not None and str(meta_id).isdigit():
            product_id = str(meta_id)

    title = meta.get("title") or meta.get("elastic_title") or outer.get("keyword") or ""
    image_url = meta.get("cover_url") or ""
    if not image_url and meta.get("cover"):
        image_url = f"{_COVER_CDN_PREFIX}{meta['cover']}"
    if not image_url:
        image_url = _first_url(outer.get("icon"))

    return ShopAnchorProduct(
        product_id=product_id,
        title=str(title),
        image_url=str(image_url),
    )


def extract_video(entry: Any) -> ExtractedVideo | None:
    if not isinstance(entry, dict):
        return None
    aweme_id = entry.get("aweme_id")
    if not aweme_id:
        return None

    video = _as_dict(entry.get("video"))
    share_info = _as_dict(entry.get("share_info"))
    statistics = _as_dict(entry.get("statistics"))
    commerce = _as_dict(entry.get("commerce_info"))
    share_url = share_info.get("share_url") or ""

    product_id = placeholder_product_id(share_url)
    product_name = ""
    product_image = ""

    anchor_product = parse_shop_anchor(find_shop_anchor(entry.get("anchors")))
    if anchor_product is not None:
        if product_id is None:
            product_id = anchor_product.product_id
        product_name = anchor_product.title
        product_image = anchor_product.image_url

    raw_duration = video.get("duration")
    if raw_duration is None:
        raw_duration = _as_dict(entry.get("added_sound_music_info")).get("audition_duration")

    stickers = entry.get("interaction_stickers")
    if not isinstance(stickers, list):
        stickers = []
    on_screen_text = "; ".join(
        str(sticker.get("text_info"))
        for sticker in stickers
        if isinstance(sticker, dict) and sticker.get("text_info") is not None
    )

    return ExtractedVideo(
        aweme_id=str(aweme_id),
        username=str(_as_dict(entry.get("author")).get("unique_id") or ""),
        caption=str(entry.get("desc") or ""),
        views=_as_int(statistics.get("play_count")),
        likes=_as_int(statistics.get("digg_count")),
        shares=_as_int(statistics.get("share_count")),
        comments=_as_int(statistics.get("comment_count")),
        video_url=_first_url(video.get("play_addr")),
        audio_url=_first_url(video.get("download_addr")),
        thumbnail_url=_first_url(video.get("cover")),
        video_duration=normalize_duration(raw_duration),
        video_ratio=compute_aspect_ratio(video.get("width"), video.get("height")),
        share_url=share_url,
        music_title=str(_as_dict(entry.get("music")).get("title") or ""),
        created_at=_epoch_to_datetime(entry.get("create_time")),
        on_screen_text=on_screen_text,
        spark=commerce.get("ad_source") == 1,
        commission_tag=str(commerce.get("bc_label_test_text") or ""),
        has_shop=product_id is not None,
        product_id=product_id,
        product_name=product_name,
        product_image=product_image,
        product_link=product_link_for(product_id),
    )


def page_entries(page: Any) -> list:
    if not isinstance(page, dict):
        return []
    entries = page.get("aweme_list")
    return entries if isinstance(entries, list) else []


def extract_videos(pages: Iterable[Any]) -> list[ExtractedVideo]:
    """Flatten listing pages into video records, preserving input order."""

    videos: list[ExtractedVideo] = []
    for page in pages:
        for entry in page_entries(page):
            extracted = extract_video(entry)
            if extracted is not None:
                videos.append(extracted)
    return videos


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _as_int(value: Any) -> int:
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError):
        return 0


def _first_url(container: Any) -> str:
    urls = _as_dict(container).get("url_list")
    if isinstance(urls, list) and urls:
        return str(urls[0] or "")
    return ""


def _epoch_to_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


__all__ = [
    "ExtractedVideo",
    "ShopAnchorProduct",
    "compute_aspect_ratio",
    "extract_video",
    "extract_videos",
    "find_shop_anchor",
    "normalize_duration",
    "page_entries",
    "parse_shop_anchor",
    "placeholder_product_id",
    "product_link_for",
]
