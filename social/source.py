"""
Social Sources - recent posts of a will owner, for intent verification.

Best effort by contract: a source may raise, the intent verifier turns
that into a placeholder line and carries on.

Modes:
- mock      StaticSocialSource (fixed posts, no network)
- tweepy    TweepySocialSource (X API v2, bearer token)
- rapidapi  RapidApiSocialSource (twitter241 user-tweets timeline)
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import aiohttp

logger = logging.getLogger("silene.social")

MAX_POSTS = 10


@dataclass
class SocialPost:
    id: str
    content: str
    date: str

    def to_dict(self) -> dict:
        return {"id": self.id, "content": self.content, "date": self.date}


class SocialSource:
    """Base interface."""

    async def get_recent_posts(self, handle: str) -> list[SocialPost]:
        raise NotImplementedError


class StaticSocialSource(SocialSource):
    """Fixed posts. Handles containing 'hacked' get a distress post."""

    def __init__(self, posts: Optional[list[SocialPost]] = None):
        self._posts = posts

    async def get_recent_posts(self, handle: str) -> list[SocialPost]:
        if self._posts is not None:
            return list(self._posts[:MAX_POSTS])
        now = datetime.now(timezone.utc)
        compromised = "hacked" in (handle or "").lower()
        return [
            SocialPost("mock-1", "Just minted a new NFT.", (now - timedelta(hours=2)).isoformat()),
            SocialPost("mock-2", "GM everyone.", (now - timedelta(hours=24)).isoformat()),
            SocialPost("mock-3", "Prices are looking good today.", (now - timedelta(hours=48)).isoformat()),
            SocialPost(
                "mock-4",
                "HELP I LOST MY WALLET" if compromised else "Building safely.",
                (now - timedelta(hours=72)).isoformat(),
            ),
        ]


class TweepySocialSource(SocialSource):
    """X API v2 via tweepy. Sync client wrapped in run_in_executor."""

    def __init__(self, bearer_token: str):
        import tweepy
        self._client = tweepy.Client(bearer_token=bearer_token, wait_on_rate_limit=False)

    async def get_recent_posts(self, handle: str) -> list[SocialPost]:
        username = (handle or "").lstrip("@")
        loop = asyncio.get_running_loop()

        user = await loop.run_in_executor(
            None, lambda: self._client.get_user(username=username)
        )
        if not user or not user.data:
            logger.warning(f"X user not found: @{username}")
            return []
        user_id = user.data.id

        resp = await loop.run_in_executor(
            None,
            lambda: self._client.get_users_tweets(
                id=user_id,
                max_results=MAX_POSTS,
                tweet_fields=["created_at"],
                exclude=["retweets"],
            ),
        )
        posts = []
        for tweet in resp.data or []:
            created = tweet.created_at.isoformat() if tweet.created_at else ""
            posts.append(SocialPost(str(tweet.id), tweet.text, created))
        logger.info(f"Fetched {len(posts)} posts for @{username} (tweepy)")
        return posts[:MAX_POSTS]


def parse_timeline(data: dict) -> list[SocialPost]:
    """Flatten a twitter241 user-tweets response (top-level and thread entries)."""
    instructions = (((data or {}).get("result") or {}).get("timeline") or {}).get("instructions") or []
    entries = next(
        (i.get("entries") or [] for i in instructions if i.get("type") == "TimelineAddEntries"),
        [],
    )

    def _tweet(item_content: Optional[dict], fallback_id: str) -> Optional[SocialPost]:
        result = (((item_content or {}).get("tweet_results") or {}).get("result")) or {}
        legacy = result.get("legacy") or {}
        text = legacy.get("full_text")
        if not text:
            return None
        date = legacy.get("created_at") or datetime.now(timezone.utc).isoformat()
        return SocialPost(str(result.get("rest_id") or fallback_id), text, date)

    posts: list[SocialPost] = []
    for entry in entries:
        content = entry.get("content") or {}
        post = _tweet(content.get("itemContent"), entry.get("entryId", ""))
        if post:
            posts.append(post)
        # conversation modules (threads)
        for item in content.get("items") or []:
            nested = _tweet((item.get("item") or {}).get("itemContent"), item.get("entryId", ""))
            if nested:
                posts.append(nested)
    return posts


class RapidApiSocialSource(SocialSource):
    """twitter241.p.rapidapi.com user timeline. Needs a numeric user id."""

    HOST = "twitter241.p.rapidapi.com"

    def __init__(self, api_key: str, user_id: str, count: int = 20, timeout: float = 15.0):
        self.api_key = api_key
        self.user_id = user_id
        self.count = count
        self.timeout = timeout

    async def get_recent_posts(self, handle: str) -> list[SocialPost]:
        if not self.api_key:
            raise RuntimeError("RAPIDAPI_KEY required for rapidapi social mode")

        url = f"https://{self.HOST}/user-tweets"
        params = {"user": self.user_id, "count": str(self.count)}
        headers = {"x-rapidapi-host": self.HOST, "x-rapidapi-key": self.api_key}

        async with aiohttp.ClientSession() as session:
            async with session.get(
                url, params=params, headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise RuntimeError(f"Twitter API error {resp.status}: {body[:200]}")
                data = await resp.json()

        posts = parse_timeline(data)
        logger.info(f"Fetched {len(posts)} posts for user {self.user_id} (rapidapi)")
        return posts[:MAX_POSTS]


def get_social_source(
    mode: str = "mock",
    bearer_token: str = "",
    rapidapi_key: str = "",
    user_id: str = "",
) -> SocialSource:
    mode = (mode or "mock").lower()
    if mode == "tweepy" and bearer_token:
        return TweepySocialSource(bearer_token)
    if mode == "rapidapi" and rapidapi_key:
        return RapidApiSocialSource(rapidapi_key, user_id)
    if mode != "mock":
        logger.warning(f"SOCIAL_MODE={mode} missing credentials — using mock source")
    return StaticSocialSource()
