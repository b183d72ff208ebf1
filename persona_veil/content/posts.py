"""Anonymous posts, likes and comments.

Public reads never return expired, removed or author-deleted content, and
never expose integrity or moderation state. Moderator reads see everything.
Every read re-checks the content hash; a mismatch flags the post for
moderation instead of failing the reader's request.
"""
from __future__ import annotations

import asyncio
import json
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Sequence

import aiosqlite

from persona_veil.content.integrity import ContentIntegrityService, integrity_payload
from persona_veil.content.reports import ReportStore
from persona_veil.crypto import primitives
from persona_veil.errors import CryptoError, IntegrityFailure, NotAuthorized, NotFound, ValidationError
from persona_veil.media.sanitizer import VIDEO_EXTENSIONS, MetadataSanitizer, safe_extension
from persona_veil.models import (
    MAX_COMMENT_LENGTH,
    MAX_POST_LENGTH,
    AnonymousPost,
    AnonymousReport,
    Comment,
    ContentType,
    Engagement,
    FeedPage,
    Integrity,
    MetadataSettings,
    Moderation,
    PersonaSummary,
    PostType,
    PublicPost,
    ReportType,
    ToggleAction,
    ToggleResult,
)
from persona_veil.store.db import Database
from persona_veil.store.personas import PersonaStore
from persona_veil.utils.retry import storage_call_with_retry
from persona_veil.utils.timestamps import from_epoch, obfuscate_timestamp, to_epoch, utcnow

_log = logging.getLogger(__name__)

POST_ID_BYTES = 16
MAX_MEDIA_PER_POST = 10
MAX_PAGE_SIZE = 50
FLAG_AFTER_REPORTS = 3

_POST_SELECT = """
    SELECT a.post_id, a.persona_id, a.content, a.media_json, a.post_type, a.created_at,
           a.disappears_at, a.is_hidden, a.views, a.content_hash, a.signature,
           a.public_key_pem, a.integrity_failed, a.is_reported, a.report_count,
           a.is_flagged, a.is_removed, a.author_deleted,
           p.display_name, p.avatar_url, p.public_key_hash, p.metadata_json
    FROM anonymous_posts a
    LEFT JOIN personas p ON p.persona_id = a.persona_id
"""

# bound parameter: now (epoch seconds)
_VISIBLE = "a.is_removed = 0 AND a.author_deleted = 0 AND (a.disappears_at IS NULL OR a.disappears_at > ?)"


@dataclass(frozen=True)
class FeedFilter:
    page: int = 1
    limit: int = 10
    persona_id: str | None = None


@dataclass(frozen=True)
class _Row:
    """A post joined with the bits of its author that reads need."""

    post: AnonymousPost
    author: PersonaSummary | None
    author_key_hash: str | None
    obfuscate: bool


def derive_post_type(content: str | None, media_urls: Sequence[str]) -> PostType:
    if not media_urls:
        return PostType.TEXT
    if content:
        return PostType.MIXED
    if any(safe_extension(url) in VIDEO_EXTENSIONS for url in media_urls):
        return PostType.VIDEO
    return PostType.IMAGE


def _lifespan_end(now: datetime, hours: int) -> datetime | None:
    return now + timedelta(hours=hours) if hours > 0 else None


def _row_to_post(row: Any) -> _Row:
    post = AnonymousPost(
        post_id=row[0],
        persona_id=row[1],
        content=row[2],
        media_urls=tuple(json.loads(row[3] or "[]")),
        post_type=PostType(row[4]),
        created_at=from_epoch(row[5]),
        disappears_at=from_epoch(row[6]),
        is_hidden=bool(row[7]),
        views=row[8],
        integrity=Integrity(content_hash=row[9], signature=row[10], public_key_pem=row[11]),
        integrity_failed=bool(row[12]),
        moderation=Moderation(
            is_reported=bool(row[13]),
            report_count=row[14],
            is_flagged=bool(row[15]),
            is_removed=bool(row[16]),
        ),
        author_deleted=bool(row[17]),
    )
    author = None
    if row[18] is not None:
        author = PersonaSummary(persona_id=row[1], display_name=row[18], avatar_url=row[19])
    obfuscate = row[21] is not None and MetadataSettings.model_validate_json(row[21]).obfuscate_timestamps
    return _Row(post=post, author=author, author_key_hash=row[20], obfuscate=obfuscate)


class AnonymousContentStore:
    def __init__(
        self,
        database: Database,
        personas: PersonaStore,
        integrity: ContentIntegrityService,
        sanitizer: MetadataSanitizer,
        reports: ReportStore,
        *,
        crypto_timeout_seconds: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = database
        self._personas = personas
        self._integrity = integrity
        self._sanitizer = sanitizer
        self._reports = reports
        self.crypto_timeout_seconds = crypto_timeout_seconds
        self._clock = clock

    # ── Internal helpers ─────────────────────────────────────────────────────

    async def _fetch_row(self, db: aiosqlite.Connection, post_id: str, *, visible_only: bool) -> _Row | None:
        query = _POST_SELECT + " WHERE a.post_id = ?"
        params: tuple = (post_id,)
        if visible_only:
            query += " AND " + _VISIBLE
            params += (self._clock().timestamp(),)
        async with db.execute(query, params) as cursor:
            row = await cursor.fetchone()
        return None if row is None else _row_to_post(row)

    async def _require_visible(self, db: aiosqlite.Connection, post_id: str) -> _Row:
        row = await self._fetch_row(db, post_id, visible_only=True)
        if row is None:
            raise NotFound("Post not found")
        return row

    async def _likes(self, db: aiosqlite.Connection, post_ids: Sequence[str]) -> dict[str, frozenset[str]]:
        if not post_ids:
            return {}
        marks = ", ".join("?" for _ in post_ids)
        likes: dict[str, set[str]] = {pid: set() for pid in post_ids}
        async with db.execute(
            f"SELECT post_id, persona_id FROM post_likes WHERE post_id IN ({marks})", tuple(post_ids)
        ) as cursor:
            async for post_id, persona_id in cursor:
                likes[post_id].add(persona_id)
        return {pid: frozenset(v) for pid, v in likes.items()}

    async def _comments(self, db: aiosqlite.Connection, post_ids: Sequence[str], *,
                        visible_only: bool = True) -> dict[str, list[Comment]]:
        if not post_ids:
            return {}
        marks = ", ".join("?" for _ in post_ids)
        query = f"""
            SELECT c.comment_id, c.post_id, c.persona_id, c.content, c.created_at, c.disappears_at,
                   p.display_name, p.avatar_url
            FROM post_comments c
            LEFT JOIN personas p ON p.persona_id = c.persona_id
            WHERE c.post_id IN ({marks})
        """
        params: tuple = tuple(post_ids)
        if visible_only:
            query += " AND c.author_deleted = 0 AND (c.disappears_at IS NULL OR c.disappears_at > ?)"
            params += (self._clock().timestamp(),)
        query += " ORDER BY c.comment_id ASC"
        comments: dict[str, list[Comment]] = {pid: [] for pid in post_ids}
        async with db.execute(query, params) as cursor:
            async for row in cursor:
                author = None
                if row[6] is not None:
                    author = PersonaSummary(persona_id=row[2], display_name=row[6], avatar_url=row[7])
                comments[row[1]].append(Comment(
                    comment_id=row[0],
                    persona_id=row[2],
                    content=row[3],
                    created_at=from_epoch(row[4]),
                    disappears_at=from_epoch(row[5]),
                    persona=author,
                ))
        return comments

    async def _check_integrity(self, row: _Row) -> bool:
        """Re-verify a stored post; flag it on the first mismatch. Returns True when intact."""
        post = row.post
        check = self._integrity.verify(
            integrity_payload(post.content, post.media_urls), post.integrity, row.author_key_hash
        )
        if check.ok:
            return True
        if not post.integrity_failed:
            _log.warning("integrity check failed post=%s reason=%s", post.post_id, check.reason)

            async def _flag() -> None:
                async with self._db.connect() as db:
                    await db.execute(
                        "UPDATE anonymous_posts SET integrity_failed = 1, is_flagged = 1 WHERE post_id = ?",
                        (post.post_id,),
                    )

            await storage_call_with_retry(_flag)
        return False

    def _to_public(self, row: _Row, likes: frozenset[str], comments: list[Comment],
                   views: int | None = None) -> PublicPost:
        post = row.post
        created_at = obfuscate_timestamp(post.created_at) if row.obfuscate else post.created_at
        return PublicPost(
            post_id=post.post_id,
            persona=row.author,
            content=post.content,
            media_urls=post.media_urls,
            post_type=post.post_type,
            created_at=created_at,
            disappears_at=post.disappears_at,
            engagement=Engagement(
                likes=len(likes),
                comments=tuple(comments),
                views=post.views if views is None else views,
            ),
        )

    # ── Posts ────────────────────────────────────────────────────────────────

    async def create_post(
        self,
        persona_id: str,
        content: str | None = None,
        media_urls: Sequence[str] = (),
        lifespan_hours: int | None = None,
        *,
        is_hidden: bool = False,
        private_key_pem: str | None = None,
        signature: str | None = None,
        public_key_pem: str | None = None,
    ) -> PublicPost:
        content = (content or "").strip() or None
        media_urls = tuple(media_urls)
        if content is None and not media_urls:
            raise ValidationError("Post must contain either text content or media")
        if content is not None and len(content) > MAX_POST_LENGTH:
            raise ValidationError(f"Post content must be at most {MAX_POST_LENGTH} characters")
        if len(media_urls) > MAX_MEDIA_PER_POST:
            raise ValidationError(f"At most {MAX_MEDIA_PER_POST} media files per post")
        for url in media_urls:
            if not self._sanitizer.is_sanitized_url(url):
                raise ValidationError("Media must be uploaded through the anonymous upload endpoint")
        if lifespan_hours is not None and lifespan_hours < 0:
            raise ValidationError("Lifespan must not be negative")

        persona = await self._personas.get_persona(persona_id)
        if not persona.is_active:
            raise ValidationError("Persona is inactive")
        hours = persona.default_content_lifespan_hours if lifespan_hours is None else lifespan_hours

        payload = integrity_payload(content, media_urls)
        try:
            integrity = await asyncio.wait_for(
                asyncio.to_thread(
                    self._integrity.seal,
                    payload,
                    public_key_hash=persona.crypto.public_key_hash,
                    private_key_pem=private_key_pem,
                    signature=signature,
                    public_key_pem=public_key_pem,
                ),
                self.crypto_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise CryptoError("Content signing timed out") from exc

        now = self._clock()
        post = AnonymousPost(
            post_id=primitives.random_hex(POST_ID_BYTES),
            persona_id=persona_id,
            content=content,
            media_urls=media_urls,
            post_type=derive_post_type(content, media_urls),
            created_at=now,
            disappears_at=_lifespan_end(now, hours),
            is_hidden=is_hidden,
            integrity=integrity,
        )

        async def _insert() -> None:
            async with self._db.connect() as db:
                await db.execute(
                    """INSERT INTO anonymous_posts (post_id, persona_id, content, media_json, post_type,
                           created_at, disappears_at, is_hidden, content_hash, signature, public_key_pem)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        post.post_id, post.persona_id, post.content, json.dumps(list(post.media_urls)),
                        post.post_type.value, now.timestamp(), to_epoch(post.disappears_at),
                        int(post.is_hidden), integrity.content_hash, integrity.signature,
                        integrity.public_key_pem,
                    ),
                )

        await storage_call_with_retry(_insert)
        _log.info("post created post=%s persona=%s signed=%s",
                  post.post_id, persona_id, integrity.signature is not None)
        row = _Row(
            post=post,
            author=PersonaSummary(persona_id=persona_id, display_name=persona.display_name,
                                  avatar_url=persona.avatar_url),
            author_key_hash=persona.crypto.public_key_hash,
            obfuscate=persona.metadata_settings.obfuscate_timestamps,
        )
        return self._to_public(row, frozenset(), [])

    async def get_post(self, post_id: str) -> PublicPost:
        """Public single-post read. Counts a view."""
        async def _get() -> tuple[_Row, frozenset[str], list[Comment], int]:
            async with self._db.connect() as db:
                row = await self._require_visible(db, post_id)
                await db.execute("UPDATE anonymous_posts SET views = views + 1 WHERE post_id = ?", (post_id,))
                likes = (await self._likes(db, [post_id]))[post_id]
                comments = (await self._comments(db, [post_id]))[post_id]
            return row, likes, comments, row.post.views + 1

        row, likes, comments, views = await storage_call_with_retry(_get)
        await self._check_integrity(row)
        return self._to_public(row, likes, comments, views)

    async def list_feed(self, feed: FeedFilter = FeedFilter()) -> FeedPage:
        page = max(1, feed.page)
        limit = min(max(1, feed.limit), MAX_PAGE_SIZE)
        where = "a.is_hidden = 0 AND " + _VISIBLE
        params: tuple = (self._clock().timestamp(),)
        if feed.persona_id is not None:
            where += " AND a.persona_id = ?"
            params += (feed.persona_id,)

        async def _list() -> tuple[list[_Row], int, dict, dict]:
            async with self._db.connect() as db:
                async with db.execute(
                    f"SELECT COUNT(*) FROM anonymous_posts a WHERE {where}", params
                ) as cursor:
                    total = (await cursor.fetchone())[0]
                async with db.execute(
                    f"{_POST_SELECT} WHERE {where} ORDER BY a.created_at DESC, a.post_id LIMIT ? OFFSET ?",
                    (*params, limit, (page - 1) * limit),
                ) as cursor:
                    rows = [_row_to_post(r) for r in await cursor.fetchall()]
                ids = [r.post.post_id for r in rows]
                likes = await self._likes(db, ids)
                comments = await self._comments(db, ids)
            return rows, total, likes, comments

        rows, total, likes, comments = await storage_call_with_retry(_list)
        for row in rows:
            await self._check_integrity(row)
        return FeedPage(
            posts=tuple(self._to_public(r, likes[r.post.post_id], comments[r.post.post_id]) for r in rows),
            total=total,
            page=page,
            pages=math.ceil(total / limit),
        )

    async def delete_post(self, post_id: str, persona_id: str) -> None:
        async def _delete() -> None:
            async with self._db.transaction() as db:
                # removed and expired posts are gone as far as the author can tell;
                # removed rows stay behind for moderators
                row = await self._require_visible(db, post_id)
                if row.post.persona_id != persona_id:
                    raise NotAuthorized("Post not found")
                await db.execute("DELETE FROM post_likes WHERE post_id = ?", (post_id,))
                await db.execute("DELETE FROM post_comments WHERE post_id = ?", (post_id,))
                await db.execute("DELETE FROM anonymous_posts WHERE post_id = ?", (post_id,))

        await storage_call_with_retry(_delete)
        _log.info("post deleted post=%s", post_id)

    # ── Engagement ───────────────────────────────────────────────────────────

    async def toggle_like(self, post_id: str, persona_id: str) -> ToggleResult:
        async def _toggle() -> ToggleResult:
            async with self._db.transaction() as db:
                await self._require_visible(db, post_id)
                cursor = await db.execute(
                    "DELETE FROM post_likes WHERE post_id = ? AND persona_id = ?", (post_id, persona_id)
                )
                if cursor.rowcount:
                    action = ToggleAction.UNLIKED
                else:
                    await db.execute(
                        "INSERT INTO post_likes (post_id, persona_id) VALUES (?, ?)", (post_id, persona_id)
                    )
                    action = ToggleAction.LIKED
                await cursor.close()
                async with db.execute("SELECT COUNT(*) FROM post_likes WHERE post_id = ?", (post_id,)) as c:
                    count = (await c.fetchone())[0]
            return ToggleResult(action=action, likes=count)

        return await storage_call_with_retry(_toggle)

    async def add_comment(self, post_id: str, persona_id: str, content: str,
                          lifespan_hours: int = 0) -> Comment:
        """Comments expire on their own clock; 0 keeps them until the post goes."""
        content = (content or "").strip()
        if not content:
            raise ValidationError("Comment content is required")
        if len(content) > MAX_COMMENT_LENGTH:
            raise ValidationError(f"Comment must be at most {MAX_COMMENT_LENGTH} characters")
        if lifespan_hours < 0:
            raise ValidationError("Lifespan must not be negative")
        persona = await self._personas.get_persona(persona_id)
        now = self._clock()
        disappears_at = _lifespan_end(now, lifespan_hours)

        async def _insert() -> int:
            async with self._db.transaction() as db:
                await self._require_visible(db, post_id)
                cursor = await db.execute(
                    """INSERT INTO post_comments (post_id, persona_id, content, created_at, disappears_at)
                       VALUES (?, ?, ?, ?, ?)""",
                    (post_id, persona_id, content, now.timestamp(), to_epoch(disappears_at)),
                )
                comment_id = cursor.lastrowid
                await cursor.close()
            return comment_id

        comment_id = await storage_call_with_retry(_insert)
        return Comment(
            comment_id=comment_id,
            persona_id=persona_id,
            content=content,
            created_at=now,
            disappears_at=disappears_at,
            persona=PersonaSummary(persona_id=persona_id, display_name=persona.display_name,
                                   avatar_url=persona.avatar_url),
        )

    async def report_post(self, post_id: str, reporter_persona_id: str, report_type: ReportType,
                          description: str, content_type: ContentType = "post") -> AnonymousReport:
        """File an anonymous report. The reporter is recorded by persona, never by user."""
        async def _report() -> AnonymousReport:
            async with self._db.transaction() as db:
                row = await self._require_visible(db, post_id)
                report = AnonymousReport(
                    reporter_persona_id=reporter_persona_id,
                    reported_content_hash=row.post.integrity.content_hash,
                    report_type=report_type,
                    content_type=content_type,
                    content_id=post_id,
                    description=description,
                )
                await self._reports.insert(db, report)
                await db.execute(
                    """UPDATE anonymous_posts SET is_reported = 1, report_count = report_count + 1,
                           is_flagged = CASE WHEN report_count + 1 >= ? THEN 1 ELSE is_flagged END
                       WHERE post_id = ?""",
                    (FLAG_AFTER_REPORTS, post_id),
                )
            return report

        report = await storage_call_with_retry(_report)
        _log.info("post reported post=%s type=%s", post_id, report_type)
        return report

    # ── Moderation ───────────────────────────────────────────────────────────

    async def get_post_for_moderation(self, post_id: str) -> AnonymousPost:
        """Full record, including removed, expired and author-deleted posts."""
        async def _get() -> tuple[_Row | None, dict, dict]:
            async with self._db.connect() as db:
                row = await self._fetch_row(db, post_id, visible_only=False)
                if row is None:
                    return None, {}, {}
                likes = await self._likes(db, [post_id])
                comments = await self._comments(db, [post_id], visible_only=False)
            return row, likes, comments

        row, likes, comments = await storage_call_with_retry(_get)
        if row is None:
            raise NotFound("Post not found")
        intact = await self._check_integrity(row)
        return row.post.model_copy(update={
            "likes": likes[post_id],
            "comments": tuple(comments[post_id]),
            "integrity_failed": row.post.integrity_failed or not intact,
        })

    async def remove_post(self, post_id: str) -> None:
        async def _remove() -> int:
            async with self._db.connect() as db:
                cursor = await db.execute(
                    "UPDATE anonymous_posts SET is_removed = 1 WHERE post_id = ?", (post_id,)
                )
                changed = cursor.rowcount
                await cursor.close()
            return changed

        if not await storage_call_with_retry(_remove):
            raise NotFound("Post not found")
        _log.info("post removed by moderator post=%s", post_id)

    async def verify_post(self, post_id: str) -> AnonymousPost:
        """Moderator integrity check. Raises IntegrityFailure on mismatch."""
        post = await self.get_post_for_moderation(post_id)
        if post.integrity_failed:
            raise IntegrityFailure("Content hash or signature does not match")
        return post
