"""
Platform adapters for publishing finished videos.

Each adapter exposes the same capability:
    get_token(session, owner_id) -> PlatformCredential | None
    post_video(credential, video_url, caption, hashtags) -> PublishedPost
    get_analytics(credential, external_post_id) -> PostAnalytics

Adapters resolve and refresh stored credentials, wrap every remote call in
the retry utility, and normalize provider responses. Errors that leave an
adapter are always AuthError (re-connect needed) or PlatformError with a
sanitized message.
"""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Iterator, Protocol

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adreel.errors import AuthError, PlatformError, TransientExternalError, sanitize_error
from adreel.models import PlatformToken, as_utc
from adreel.services.retry import RetryExhausted, RetryPolicy, is_transient_error, with_retry
from adreel.settings import Settings, get_settings

logger = logging.getLogger(__name__)

# Refresh a little before the provider's deadline
TOKEN_EXPIRY_SKEW = timedelta(seconds=60)


@dataclass
class PlatformCredential:
    platform: str
    owner_id: str
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    account_id: str | None = None
    account_name: str | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return as_utc(self.expires_at) <= now + TOKEN_EXPIRY_SKEW


@dataclass
class PublishedPost:
    id: str
    url: str | None = None


@dataclass
class PostAnalytics:
    views: int = 0
    likes: int = 0
    comments: int = 0
    shares: int = 0
    clicks: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "views": self.views,
            "likes": self.likes,
            "comments": self.comments,
            "shares": self.shares,
            "clicks": self.clicks,
        }


class PlatformAdapter(Protocol):
    platform: str

    async def get_token(self, session: AsyncSession, owner_id: str) -> PlatformCredential | None: ...

    async def post_video(
        self, credential: PlatformCredential, video_url: str, caption: str | None, hashtags: list[str] | None
    ) -> PublishedPost: ...

    async def get_analytics(self, credential: PlatformCredential, external_post_id: str) -> PostAnalytics: ...


# ── Shared helpers ───────────────────────────────────────────

def normalize_hashtags(hashtags: list[str] | None) -> list[str]:
    tags = []
    for raw in hashtags or []:
        tag = raw.strip().lstrip("#").replace(" ", "")
        if tag:
            tags.append(f"#{tag}")
    return tags


def build_caption(caption: str | None, hashtags: list[str] | None, limit: int | None = None) -> str:
    """Caption, blank line, then the hashtag list."""
    parts = [p for p in ((caption or "").strip(), " ".join(normalize_hashtags(hashtags))) if p]
    text = "\n\n".join(parts)
    return text[:limit] if limit else text


@contextmanager
def normalized_errors(platform: str, action: str) -> Iterator[None]:
    """Convert anything raised inside into AuthError or PlatformError."""
    try:
        yield
    except (AuthError, PlatformError):
        raise
    except RetryExhausted as exc:
        last = exc.last_error
        if isinstance(last, (AuthError, PlatformError)):
            raise last from exc
        message = sanitize_error(f"{action} failed after {exc.attempts} attempts: {last}")
        raise PlatformError(platform, message) from exc
    except Exception as exc:
        message = sanitize_error(f"{action} failed: {exc or type(exc).__name__}")
        raise PlatformError(platform, message) from exc


def check_response(platform: str, resp: httpx.Response, action: str) -> None:
    """Map an HTTP error status to the error taxonomy."""
    if resp.status_code < 400:
        return
    body = sanitize_error(resp.text[:300]) or ""
    if resp.status_code in (401, 403):
        raise AuthError(f"{platform} rejected the credential during {action} (HTTP {resp.status_code}): {body}")
    if resp.status_code in (408, 425, 429) or resp.status_code >= 500:
        raise TransientExternalError(f"{platform} {action} HTTP {resp.status_code}: {body}")
    raise PlatformError(platform, f"{action} HTTP {resp.status_code}: {body}")


async def load_token(session: AsyncSession, owner_id: str, platform: str) -> PlatformToken | None:
    return (
        await session.execute(
            select(PlatformToken).where(PlatformToken.owner_id == owner_id, PlatformToken.platform == platform)
        )
    ).scalar_one_or_none()


def _credential_from_row(row: PlatformToken) -> PlatformCredential:
    return PlatformCredential(
        platform=row.platform,
        owner_id=row.owner_id,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        expires_at=as_utc(row.expires_at),
        account_id=row.account_id,
        account_name=row.account_name,
    )


async def store_refreshed_token(
    session: AsyncSession, row: PlatformToken, data: dict[str, Any]
) -> PlatformCredential:
    row.access_token = data["access_token"]
    if data.get("refresh_token"):
        row.refresh_token = data["refresh_token"]
    if data.get("expires_in"):
        row.expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(data["expires_in"]))
    await session.commit()
    logger.info("[%s][owner=%s] access token refreshed", row.platform, row.owner_id)
    return _credential_from_row(row)


class AdapterHttp:
    """HTTP client factory, retry policy and logging shared by the adapters."""

    def __init__(
        self,
        platform: str,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        self.platform = platform
        self.settings = settings or get_settings()
        self.transport = transport
        self.sleep = sleep or asyncio.sleep

    def client(self, timeout: float = 60) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self.transport, follow_redirects=True)

    def policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.settings.retry_max_attempts,
            timeout_ms=self.settings.retry_timeout_ms,
            initial_backoff_ms=self.settings.retry_initial_backoff_ms,
            max_backoff_ms=self.settings.retry_max_backoff_ms,
            should_retry=is_transient_error,
        )

    async def retry(self, op: Callable[[], Awaitable[Any]]) -> Any:
        return await with_retry(op, self.policy(), sleep=self.sleep)

    def log(self, msg: str, *args: Any) -> None:
        logger.info(f"[{self.platform}] {msg}", *args)


# ── TikTok ───────────────────────────────────────────────────

class TikTokAdapter:
    """Content Posting API: PULL_FROM_URL init, then poll the publish status."""

    platform = "tiktok"

    def __init__(self, settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None, sleep=None):
        self.http = AdapterHttp(self.platform, settings, transport, sleep)

    API_URL = "https://open.tiktokapis.com/v2"
    TOKEN_URL = "https://open.tiktokapis.com/v2/oauth/token/"
    CAPTION_LIMIT = 2200

    async def get_token(self, session: AsyncSession, owner_id: str) -> PlatformCredential | None:
        row = await load_token(session, owner_id, self.platform)
        if row is None:
            return None
        credential = _credential_from_row(row)
        if not credential.is_expired():
            return credential
        if not (row.refresh_token and self.http.settings.tiktok_client_key and self.http.settings.tiktok_client_secret):
            raise AuthError("TikTok access token expired; reconnect the account")

        async def refresh() -> dict[str, Any]:
            async with self.http.client(15) as client:
                resp = await client.post(
                    self.TOKEN_URL,
                    data={
                        "client_key": self.http.settings.tiktok_client_key,
                        "client_secret": self.http.settings.tiktok_client_secret,
                        "grant_type": "refresh_token",
                        "refresh_token": row.refresh_token,
                    },
                )
            check_response(self.platform, resp, "token refresh")
            data = resp.json()
            if data.get("error") or not data.get("access_token"):
                raise AuthError(f"TikTok token refresh rejected: {data.get('error_description') or data.get('error')}")
            return data

        with normalized_errors(self.platform, "Token refresh"):
            data = await self.http.retry(refresh)
            return await store_refreshed_token(session, row, data)

    def _headers(self, credential: PlatformCredential) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {credential.access_token}",
            "Content-Type": "application/json; charset=UTF-8",
        }

    @staticmethod
    def _check_envelope(data: dict[str, Any], action: str) -> None:
        error = data.get("error") or {}
        code = error.get("code", "ok")
        if code == "ok":
            return
        if code in ("access_token_invalid", "scope_not_authorized"):
            raise AuthError(f"TikTok {action}: {error.get('message') or code}")
        if code == "rate_limit_exceeded":
            raise TransientExternalError(f"TikTok {action}: {error.get('message') or code}")
        raise PlatformError("tiktok", f"{action}: {error.get('message') or code}")

    async def post_video(self, credential, video_url, caption, hashtags) -> PublishedPost:
        title = build_caption(caption, hashtags, self.CAPTION_LIMIT)
        headers = self._headers(credential)
        payload = {
            "post_info": {
                "title": title,
                "privacy_level": "PUBLIC_TO_EVERYONE",
                "disable_duet": False,
                "disable_stitch": False,
                "disable_comment": False,
                "video_cover_timestamp_ms": 1000,
            },
            "source_info": {"source": "PULL_FROM_URL", "video_url": video_url},
        }

        with normalized_errors(self.platform, "Publish"):
            async with self.http.client() as client:
                async def init() -> str:
                    resp = await client.post(f"{self.API_URL}/post/publish/video/init/", headers=headers, json=payload)
                    check_response(self.platform, resp, "publish init")
                    data = resp.json()
                    self._check_envelope(data, "publish init")
                    publish_id = (data.get("data") or {}).get("publish_id")
                    if not publish_id:
                        raise PlatformError(self.platform, "publish init returned no publish_id")
                    return publish_id

                publish_id = await self.http.retry(init)
                self.http.log("publish started: %s", publish_id)
                return await self._wait_for_publish(client, headers, publish_id, credential)

    async def _wait_for_publish(
        self, client: httpx.AsyncClient, headers: dict[str, str], publish_id: str, credential: PlatformCredential
    ) -> PublishedPost:
        async def fetch_status() -> dict[str, Any]:
            resp = await client.post(
                f"{self.API_URL}/post/publish/status/fetch/", headers=headers, json={"publish_id": publish_id}
            )
            check_response(self.platform, resp, "publish status")
            data = resp.json()
            self._check_envelope(data, "publish status")
            return data.get("data") or {}

        for _ in range(max(1, self.http.settings.tiktok_status_poll_attempts)):
            data = await self.http.retry(fetch_status)
            status = data.get("status")
            if status == "PUBLISH_COMPLETE":
                post_ids = data.get("publicaly_available_post_id") or []
                post_id = str(post_ids[0]) if post_ids else publish_id
                handle = credential.account_name or "user"
                url = f"https://www.tiktok.com/@{handle}/video/{post_id}" if post_ids else None
                self.http.log("published: %s", url or post_id)
                return PublishedPost(id=post_id, url=url)
            if status == "FAILED":
                raise PlatformError(self.platform, f"publish failed: {data.get('fail_reason') or 'unknown reason'}")
            await self.http.sleep(self.http.settings.tiktok_status_poll_interval_sec)

        # Still processing on TikTok's side; the publish id identifies the post
        logger.warning("[tiktok] publish %s still processing after polling", publish_id)
        return PublishedPost(id=publish_id, url=None)

    async def get_analytics(self, credential, external_post_id) -> PostAnalytics:
        with normalized_errors(self.platform, "Analytics"):
            async with self.http.client(30) as client:
                async def query() -> dict[str, Any]:
                    resp = await client.post(
                        f"{self.API_URL}/video/query/",
                        params={"fields": "id,view_count,like_count,comment_count,share_count"},
                        headers=self._headers(credential),
                        json={"filters": {"video_ids": [external_post_id]}},
                    )
                    check_response(self.platform, resp, "video query")
                    data = resp.json()
                    self._check_envelope(data, "video query")
                    return data

                data = await self.http.retry(query)
        videos = (data.get("data") or {}).get("videos") or []
        video = videos[0] if videos else {}
        return PostAnalytics(
            views=int(video.get("view_count") or 0),
            likes=int(video.get("like_count") or 0),
            comments=int(video.get("comment_count") or 0),
            shares=int(video.get("share_count") or 0),
        )


# ── YouTube Shorts ───────────────────────────────────────────

class YouTubeAdapter:
    """Data API v3: download the artifact, then resumable upload."""

    platform = "youtube"

    def __init__(self, settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None, sleep=None):
        self.http = AdapterHttp(self.platform, settings, transport, sleep)

    UPLOAD_URL = "https://www.googleapis.com/upload/youtube/v3/videos"
    VIDEOS_URL = "https://www.googleapis.com/youtube/v3/videos"
    TOKEN_URL = "https://oauth2.googleapis.com/token"
    TITLE_LIMIT = 100

    async def get_token(self, session: AsyncSession, owner_id: str) -> PlatformCredential | None:
        row = await load_token(session, owner_id, self.platform)
        if row is None:
            return None
        credential = _credential_from_row(row)
        if not credential.is_expired():
            return credential
        client_id = self.http.settings.youtube_client_id
        client_secret = self.http.settings.youtube_client_secret
        if not (row.refresh_token and client_id and client_secret):
            raise AuthError("YouTube access token expired; reconnect the channel")

        async def refresh() -> dict[str, Any]:
            async with self.http.client(15) as client:
                resp = await client.post(
                    self.TOKEN_URL,
                    data={
                        "grant_type": "refresh_token",
                        "refresh_token": row.refresh_token,
                        "client_id": client_id,
                        "client_secret": client_secret,
                    },
                )
            if resp.status_code == 400:
                # invalid_grant: the refresh token was revoked
                raise AuthError(f"YouTube token refresh rejected: {sanitize_error(resp.text[:200])}")
            check_response(self.platform, resp, "token refresh")
            data = resp.json()
            if not data.get("access_token"):
                reason = data.get("error_description") or data.get("error") or "no access token"
                raise AuthError(f"YouTube token refresh rejected: {reason}")
            return data

        with normalized_errors(self.platform, "Token refresh"):
            data = await self.http.retry(refresh)
            return await store_refreshed_token(session, row, data)

    @classmethod
    def build_metadata(cls, caption: str | None, hashtags: list[str] | None) -> dict[str, Any]:
        first_line = ((caption or "").strip().splitlines() or ["New video"])[0]
        title = first_line if "#Shorts" in first_line else f"{first_line} #Shorts"
        description = build_caption(caption, hashtags, 5000)
        if "#Shorts" not in description:
            description = f"#Shorts\n{description}"
        return {
            "snippet": {
                "title": title[: cls.TITLE_LIMIT],
                "description": description[:5000],
                "tags": [t.lstrip("#") for t in normalize_hashtags(hashtags)][:30],
                "categoryId": "22",  # People & Blogs
            },
            "status": {
                "privacyStatus": "public",
                "selfDeclaredMadeForKids": False,
            },
        }

    async def post_video(self, credential, video_url, caption, hashtags) -> PublishedPost:
        metadata = self.build_metadata(caption, hashtags)

        with normalized_errors(self.platform, "Upload"):
            async with self.http.client(300) as client:
                async def download() -> bytes:
                    resp = await client.get(video_url)
                    check_response(self.platform, resp, "video download")
                    return resp.content

                content = await self.http.retry(download)
                self.http.log("uploading %d bytes", len(content))

                async def init() -> str:
                    resp = await client.post(
                        self.UPLOAD_URL,
                        params={"uploadType": "resumable", "part": "snippet,status"},
                        headers={
                            "Authorization": f"Bearer {credential.access_token}",
                            "Content-Type": "application/json; charset=UTF-8",
                            "X-Upload-Content-Type": "video/mp4",
                            "X-Upload-Content-Length": str(len(content)),
                        },
                        content=json.dumps(metadata),
                    )
                    check_response(self.platform, resp, "upload init")
                    upload_url = resp.headers.get("location")
                    if not upload_url:
                        raise PlatformError(self.platform, "YouTube did not return an upload URL")
                    return upload_url

                upload_url = await self.http.retry(init)

                async def upload() -> dict[str, Any]:
                    resp = await client.put(upload_url, headers={"Content-Type": "video/mp4"}, content=content)
                    check_response(self.platform, resp, "upload")
                    return resp.json()

                data = await self.http.retry(upload)

        video_id = data.get("id")
        if not video_id:
            raise PlatformError(self.platform, "upload response carried no video id")
        url = f"https://youtube.com/shorts/{video_id}"
        self.http.log("published: %s", url)
        return PublishedPost(id=video_id, url=url)

    async def get_analytics(self, credential, external_post_id) -> PostAnalytics:
        with normalized_errors(self.platform, "Analytics"):
            async with self.http.client(30) as client:
                async def stats() -> dict[str, Any]:
                    resp = await client.get(
                        self.VIDEOS_URL,
                        params={"part": "statistics", "id": external_post_id},
                        headers={"Authorization": f"Bearer {credential.access_token}"},
                    )
                    check_response(self.platform, resp, "statistics")
                    return resp.json()

                data = await self.http.retry(stats)
        items = data.get("items") or []
        statistics = items[0].get("statistics", {}) if items else {}
        return PostAnalytics(
            views=int(statistics.get("viewCount") or 0),
            likes=int(statistics.get("likeCount") or 0),
            comments=int(statistics.get("commentCount") or 0),
        )


# ── Facebook Page video ──────────────────────────────────────

class FacebookAdapter:
    """Graph API page video upload by `file_url`; the stored token is a page token."""

    platform = "facebook"

    def __init__(self, settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None, sleep=None):
        self.http = AdapterHttp(self.platform, settings, transport, sleep)

    GRAPH_URL = "https://graph.facebook.com"
    # OAuthException codes meaning the token is no longer valid
    AUTH_ERROR_CODES = {102, 190}

    @property
    def base_url(self) -> str:
        return f"{self.GRAPH_URL}/{self.http.settings.facebook_graph_version}"

    async def get_token(self, session: AsyncSession, owner_id: str) -> PlatformCredential | None:
        row = await load_token(session, owner_id, self.platform)
        if row is None:
            return None
        credential = _credential_from_row(row)
        if credential.is_expired():
            raise AuthError("Facebook page token expired; reconnect the page")
        if not credential.account_id:
            raise AuthError("No Facebook page selected for this account")
        return credential

    def _graph_json(self, resp: httpx.Response, action: str) -> dict[str, Any]:
        try:
            data = resp.json()
        except ValueError:
            data = {}
        error = data.get("error") if isinstance(data, dict) else None
        if error:
            message = error.get("message") or "unknown Graph API error"
            if error.get("code") in self.AUTH_ERROR_CODES:
                raise AuthError(f"Facebook {action}: {message}")
            if error.get("is_transient") or error.get("code") in (1, 2, 4, 17, 32, 613):
                raise TransientExternalError(f"Facebook {action}: {message}")
            raise PlatformError(self.platform, f"{action}: {message}")
        check_response(self.platform, resp, action)
        return data

    async def post_video(self, credential, video_url, caption, hashtags) -> PublishedPost:
        page_id = credential.account_id
        description = build_caption(caption, hashtags)

        with normalized_errors(self.platform, "Upload"):
            async with self.http.client(300) as client:
                async def upload() -> dict[str, Any]:
                    resp = await client.post(
                        f"{self.base_url}/{page_id}/videos",
                        data={
                            "file_url": video_url,
                            "description": description,
                            "access_token": credential.access_token,
                        },
                    )
                    return self._graph_json(resp, "video upload")

                data = await self.http.retry(upload)

        post_id = data.get("id") or data.get("post_id")
        if not post_id:
            raise PlatformError(self.platform, "upload response carried no video id")
        url = f"https://facebook.com/{page_id}/videos/{post_id}"
        self.http.log("published: %s", url)
        return PublishedPost(id=str(post_id), url=url)

    async def get_analytics(self, credential, external_post_id) -> PostAnalytics:
        with normalized_errors(self.platform, "Analytics"):
            async with self.http.client(30) as client:
                async def insights() -> dict[str, Any]:
                    resp = await client.get(
                        f"{self.base_url}/{external_post_id}/insights",
                        params={
                            "metric": "post_impressions,post_clicks,post_reactions_by_type_total",
                            "access_token": credential.access_token,
                        },
                    )
                    return self._graph_json(resp, "insights")

                data = await self.http.retry(insights)

        metrics: dict[str, Any] = {}
        for item in data.get("data") or []:
            values = item.get("values") or [{}]
            metrics[item.get("name")] = values[0].get("value", 0)
        reactions = metrics.get("post_reactions_by_type_total") or {}
        likes = sum(int(v) for v in reactions.values()) if isinstance(reactions, dict) else int(reactions or 0)
        return PostAnalytics(
            views=int(metrics.get("post_impressions") or 0),
            likes=likes,
            clicks=int(metrics.get("post_clicks") or 0),
        )


# ── Registry ─────────────────────────────────────────────────

ADAPTER_TYPES: dict[str, type] = {
    "tiktok": TikTokAdapter,
    "youtube": YouTubeAdapter,
    "facebook": FacebookAdapter,
}

_adapters: dict[str, PlatformAdapter] = {}


def get_adapter(platform: str) -> PlatformAdapter | None:
    """Adapter for a platform name (case-insensitive), or None if unsupported."""
    key = (platform or "").lower()
    if key not in _adapters:
        adapter_type = ADAPTER_TYPES.get(key)
        if adapter_type is None:
            return None
        _adapters[key] = adapter_type()
    return _adapters[key]


def set_adapter(platform: str, adapter: PlatformAdapter | None) -> None:
    """Replace (or with None, reset) the adapter used for a platform."""
    key = platform.lower()
    if adapter is None:
        _adapters.pop(key, None)
    else:
        _adapters[key] = adapter


def list_platforms() -> list[str]:
    return list(ADAPTER_TYPES)
