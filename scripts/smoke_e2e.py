#!/usr/bin/env python3
"""
Smoke E2E test — produce one video and schedule it against a running API.

No platform tokens required: the post is scheduled, listed and cancelled,
never published. Needs an owner with initialized storage folders and one
of their products (seed them in the database first).

Env vars:
  BASE_URL       (default http://localhost:8000)
  OWNER_ID       (required)
  PRODUCT_ID     (required)
  CRON_SECRET    (optional, for prod/staging)
  TIMEOUT_SEC    (default 300)
  POLL_INTERVAL  (default 3)
"""
from __future__ import annotations

import json
import os
import sys
import time
from datetime import datetime, timedelta, timezone
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

BASE_URL = os.environ.get("BASE_URL", "http://localhost:8000").rstrip("/")
OWNER_ID = os.environ.get("OWNER_ID", "")
PRODUCT_ID = os.environ.get("PRODUCT_ID", "")
CRON_SECRET = os.environ.get("CRON_SECRET", "")
TIMEOUT_SEC = int(os.environ.get("TIMEOUT_SEC", "300"))
POLL_INTERVAL = int(os.environ.get("POLL_INTERVAL", "3"))

SMOKE_TAG = f"smoke_{int(time.time())}"

# ── Helpers ──────────────────────────────────────────────────

class SmokeError(Exception):
    pass


def _headers(extra: dict[str, str] | None = None) -> dict[str, str]:
    h = {"Content-Type": "application/json", "X-Owner-Id": OWNER_ID}
    if extra:
        h.update(extra)
    return h


def _req(method: str, path: str, body: dict | None = None, headers: dict[str, str] | None = None) -> dict:
    url = f"{BASE_URL}{path}"
    data = json.dumps(body).encode() if body else None
    req = Request(url, data=data, headers=_headers(headers), method=method)
    try:
        with urlopen(req, timeout=30) as resp:
            raw = resp.read().decode()
            return json.loads(raw) if raw else {}
    except HTTPError as e:
        raise SmokeError(f"{method} {path} → {e.code}: {e.read().decode()[:500]}")
    except URLError as e:
        raise SmokeError(f"{method} {path} → URLError: {e}")


def GET(path: str) -> dict:
    return _req("GET", path)


def POST(path: str, body: dict | None = None, headers: dict[str, str] | None = None) -> dict:
    return _req("POST", path, body, headers)


def DELETE(path: str) -> dict:
    return _req("DELETE", path)


def step(name: str):
    print(f"\n{'='*60}")
    print(f"  STEP: {name}")
    print(f"{'='*60}")


def ok(msg: str):
    print(f"  ✅ {msg}")


def fail(msg: str):
    print(f"  ❌ {msg}")
    raise SmokeError(msg)


# ── Steps ────────────────────────────────────────────────────

def step1_health():
    step("1. Health check")
    if GET("/ping").get("status") != "ok":
        fail("/ping did not answer ok")
    sched = GET("/api/scheduler/status")
    ok(f"API up, scheduler running={sched.get('running')} jobs={len(sched.get('jobs', []))}")


def step2_create_video() -> str:
    step("2. Create video (auto mode)")
    result = POST("/api/videos", {
        "productId": PRODUCT_ID,
        "mode": "auto",
        "title": f"Smoke {SMOKE_TAG}",
        "aspectRatio": "9:16",
        "duration": 5,
        "style": "tiktok",
        "voice": "female",
        "models": {"video": "stub"},
        "subtitle": {"enabled": True},
        "targetPlatform": "tiktok",
    })
    video_id = result["videoId"]
    ok(f"Video {video_id} accepted (status={result.get('status')})")
    return video_id


def step3_poll(video_id: str) -> dict:
    step("3. Poll production status")
    deadline = time.time() + TIMEOUT_SEC
    last = {}

    while time.time() < deadline:
        last = GET(f"/api/videos/{video_id}/status")
        print(f"  ⏳ {last['status']} {last['progress']}% {last['stepMessage']} (t-{int(deadline - time.time())}s)", end="\r")
        if not last["isProcessing"]:
            print()
            break
        time.sleep(POLL_INTERVAL)
    else:
        print()
        fail(f"Timeout ({TIMEOUT_SEC}s) — last status: {last.get('status')}")

    if last["isFailed"]:
        fail(f"Production failed: {(last.get('errorMessage') or 'unknown')[:200]}")

    ok(f"Completed: {last.get('videoUrl')} ({last.get('duration')}s)")
    return last


def step4_download(status: dict):
    step("4. Download optimized video")
    url = status.get("videoUrl") or ""
    if not url:
        fail("No videoUrl on completed video")
    path = url.split("/files/", 1)[-1]
    req = Request(f"{BASE_URL}/files/{path}", method="GET")
    try:
        with urlopen(req, timeout=60) as resp:
            size = len(resp.read())
    except HTTPError as e:
        fail(f"Download failed: {e.code}")
    except URLError as e:
        fail(f"Download failed: {e}")
    if size == 0:
        fail("Download returned empty body")
    ok(f"Download OK: {size} bytes")


def step5_schedule(video_id: str) -> str:
    step("5. Schedule a post for tomorrow")
    at = (datetime.now(timezone.utc) + timedelta(days=1)).replace(microsecond=0)
    result = POST("/api/posts", {
        "videoId": video_id,
        "platforms": ["youtube"],
        "caption": f"Smoke test {SMOKE_TAG}",
        "hashtags": {"youtube": ["smoke"]},
        "scheduleAt": at.isoformat(),
    })
    post = result["posts"][0]
    if post["status"] != "scheduled":
        fail(f"Expected scheduled post, got {post['status']}")
    ok(f"Post {post['id']} scheduled at {post['scheduled_at']}")
    return post["id"]


def step6_upcoming(post_id: str):
    step("6. List upcoming posts")
    data = GET("/api/posts?upcoming=true&limit=100")
    ids = [p["id"] for p in data["posts"]]
    if post_id not in ids:
        fail(f"Post {post_id} missing from upcoming list")
    ok(f"Upcoming: {data['pagination']['total']} post(s)")


def step7_cron_tick():
    step("7. Cron tick (nothing due)")
    headers = {"Authorization": f"Bearer {CRON_SECRET}"} if CRON_SECRET else None
    result = POST("/api/cron/publish-scheduled", headers=headers)
    ok(f"processed={result['processed']} successful={result['successful']} failed={result['failed']}")


def step8_cancel(post_id: str):
    step("8. Cancel scheduled post")
    DELETE(f"/api/posts/{post_id}/schedule")
    ok(f"Post {post_id} cancelled")


def step9_report(video_id: str, post_id: str):
    step("9. Final Report")
    print(f"""
  ┌─────────────────────────────────────────────┐
  │  SMOKE TEST REPORT                          │
  ├─────────────────────────────────────────────┤
  │  Video ID:  {video_id[:32]:<32}│
  │  Post ID:   {post_id[:32]:<32}│
  │                                             │
  │  RESULT:  ✅ PASS                           │
  └─────────────────────────────────────────────┘
""")


# ── Main ─────────────────────────────────────────────────────

def main():
    print(f"\n🔬 Smoke E2E Test — {BASE_URL}")
    print(f"   OWNER_ID={OWNER_ID or 'unset'}  TIMEOUT={TIMEOUT_SEC}s  POLL={POLL_INTERVAL}s\n")

    if not OWNER_ID or not PRODUCT_ID:
        print("  ❌ OWNER_ID and PRODUCT_ID are required")
        sys.exit(2)

    try:
        step1_health()
        video_id = step2_create_video()
        status = step3_poll(video_id)
        step4_download(status)
        post_id = step5_schedule(video_id)
        step6_upcoming(post_id)
        step7_cron_tick()
        step8_cancel(post_id)
        step9_report(video_id, post_id)

    except SmokeError as e:
        print(f"\n{'='*60}")
        print(f"  ❌ FAIL: {e}")
        print(f"{'='*60}\n")
        sys.exit(1)
    except KeyboardInterrupt:
        print("\n\n  ⏹ Interrupted")
        sys.exit(130)


if __name__ == "__main__":
    main()
