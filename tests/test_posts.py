"""Tests for anonymous posts, engagement, expiry and moderation."""
import asyncio
import io
from datetime import datetime, timezone

import pytest
from PIL import Image

from persona_veil.content.posts import FeedFilter
from persona_veil.errors import IntegrityFailure, NotAuthorized, NotFound, ValidationError
from persona_veil.models import PostType, ToggleAction

from conftest import OWNER

pytestmark = pytest.mark.asyncio


async def _persona(personas):
    created = await personas.create_persona(OWNER)
    return created.persona.persona_id, created.private_identity.private_key


def _png() -> bytes:
    out = io.BytesIO()
    Image.new("RGB", (2, 2), (1, 2, 3)).save(out, format="PNG")
    return out.getvalue()


async def test_create_post_requires_content_or_media(personas, content):
    pid, _ = await _persona(personas)
    with pytest.raises(ValidationError):
        await content.create_post(pid, "   ", [])


async def test_create_post_length_limit(personas, content):
    pid, _ = await _persona(personas)
    await content.create_post(pid, "x" * 5000)
    with pytest.raises(ValidationError):
        await content.create_post(pid, "x" * 5001)


async def test_media_must_come_from_sanitizer(personas, content, sanitizer):
    pid, _ = await _persona(personas)
    with pytest.raises(ValidationError):
        await content.create_post(pid, None, ["https://tracker.example/pixel.png"])
    media = sanitizer.sanitize("pic.png", _png())
    post = await content.create_post(pid, None, [media.media_url])
    assert post.post_type is PostType.IMAGE


async def test_created_post_is_decorated_and_hash_only(personas, content, database):
    pid, _ = await _persona(personas)
    post = await content.create_post(pid, "hello")
    assert post.persona.persona_id == pid
    assert post.engagement.likes == 0
    dumped = post.model_dump()
    assert "integrity" not in dumped
    assert "moderation" not in dumped
    async with database.connect() as db:
        async with db.execute("SELECT signature, content_hash FROM anonymous_posts") as cursor:
            signature, content_hash = await cursor.fetchone()
    assert signature is None
    assert len(content_hash) == 64


async def test_signed_post_verifies(personas, content):
    pid, private_key = await _persona(personas)
    post = await content.create_post(pid, "signed words", private_key_pem=private_key)
    full = await content.verify_post(post.post_id)
    assert full.integrity.signature
    assert not full.integrity_failed


async def test_signing_with_another_personas_key_rejected(personas, content):
    pid, _ = await _persona(personas)
    _, other_key = await _persona(personas)
    with pytest.raises(ValidationError):
        await content.create_post(pid, "forged", private_key_pem=other_key)


async def test_default_lifespan_comes_from_persona(personas, content, clock):
    pid, _ = await _persona(personas)
    post = await content.create_post(pid, "ephemeral")
    assert (post.disappears_at - clock.now).total_seconds() == 24 * 3600
    permanent = await content.create_post(pid, "forever", lifespan_hours=0)
    assert permanent.disappears_at is None


async def test_expired_post_is_not_found(personas, content, clock):
    pid, _ = await _persona(personas)
    post = await content.create_post(pid, "one hour only", lifespan_hours=1)
    assert (await content.get_post(post.post_id)).post_id == post.post_id
    clock.advance(hours=2)
    with pytest.raises(NotFound):
        await content.get_post(post.post_id)
    feed = await content.list_feed()
    assert post.post_id not in [p.post_id for p in feed.posts]


async def test_views_increment(personas, content):
    pid, _ = await _persona(personas)
    post = await content.create_post(pid, "look")
    assert (await content.get_post(post.post_id)).engagement.views == 1
    assert (await content.get_post(post.post_id)).engagement.views == 2


async def test_like_unlike_like_yields_one_like(personas, content):
    pid, _ = await _persona(personas)
    post = await content.create_post(pid, "like me")
    assert (await content.toggle_like(post.post_id, pid)).action is ToggleAction.LIKED
    assert (await content.toggle_like(post.post_id, pid)).action is ToggleAction.UNLIKED
    result = await content.toggle_like(post.post_id, pid)
    assert result.action is ToggleAction.LIKED
    assert result.likes == 1
    assert (await content.get_post(post.post_id)).engagement.likes == 1


async def test_concurrent_likes_from_many_personas(personas, content):
    pid, _ = await _persona(personas)
    post = await content.create_post(pid, "popular")
    likers = [f"{i:064x}" for i in range(10)]
    await asyncio.gather(*(content.toggle_like(post.post_id, liker) for liker in likers))
    assert (await content.get_post(post.post_id)).engagement.likes == 10


async def test_comments_expire_independently(personas, content, clock):
    pid, _ = await _persona(personas)
    post = await content.create_post(pid, "discuss", lifespan_hours=0)
    await content.add_comment(post.post_id, pid, "short lived", lifespan_hours=1)
    kept = await content.add_comment(post.post_id, pid, "stays")
    assert kept.persona.persona_id == pid
    assert len((await content.get_post(post.post_id)).engagement.comments) == 2
    clock.advance(hours=2)
    comments = (await content.get_post(post.post_id)).engagement.comments
    assert [c.content for c in comments] == ["stays"]


async def test_comment_limits(personas, content):
    pid, _ = await _persona(personas)
    post = await content.create_post(pid, "discuss")
    with pytest.raises(ValidationError):
        await content.add_comment(post.post_id, pid, "x" * 1001)
    with pytest.raises(ValidationError):
        await content.add_comment(post.post_id, pid, "  ")
    with pytest.raises(NotFound):
        await content.add_comment("missing", pid, "hello")


async def test_feed_pagination_and_order(personas, content, clock):
    pid, _ = await _persona(personas)
    for i in range(5):
        await content.create_post(pid, f"post {i}")
        clock.advance(minutes=1)
    page = await content.list_feed(FeedFilter(page=1, limit=2))
    assert page.total == 5
    assert page.pages == 3
    assert [p.content for p in page.posts] == ["post 4", "post 3"]
    last = await content.list_feed(FeedFilter(page=3, limit=2))
    assert [p.content for p in last.posts] == ["post 0"]


async def test_hidden_posts_reachable_by_id_only(personas, content):
    pid, _ = await _persona(personas)
    post = await content.create_post(pid, "quiet", is_hidden=True)
    assert (await content.list_feed()).total == 0
    assert (await content.get_post(post.post_id)).content == "quiet"


async def test_timestamps_obfuscated_by_default(personas, content, clock):
    pid, _ = await _persona(personas)
    post = await content.create_post(pid, "when?")
    assert post.created_at == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    await personas.update_metadata_settings(pid, OWNER, {"obfuscate_timestamps": False})
    exact = await content.get_post(post.post_id)
    assert exact.created_at == clock.now


async def test_delete_post_checked_by_persona(personas, content):
    pid, _ = await _persona(personas)
    other, _ = await _persona(personas)
    post = await content.create_post(pid, "mine")
    with pytest.raises(NotAuthorized):
        await content.delete_post(post.post_id, other)
    await content.delete_post(post.post_id, pid)
    with pytest.raises(NotFound):
        await content.get_post(post.post_id)


async def test_author_cannot_delete_removed_post(personas, content):
    pid, _ = await _persona(personas)
    post = await content.create_post(pid, "under review")
    await content.remove_post(post.post_id)
    with pytest.raises(NotFound):
        await content.delete_post(post.post_id, pid)
    full = await content.get_post_for_moderation(post.post_id)
    assert full.content == "under review"
    assert full.moderation.is_removed


async def test_author_cannot_delete_expired_post(personas, content, clock):
    pid, _ = await _persona(personas)
    post = await content.create_post(pid, "brief", lifespan_hours=1)
    clock.advance(hours=2)
    with pytest.raises(NotFound):
        await content.delete_post(post.post_id, pid)


async def test_removed_post_hidden_from_public_but_not_moderators(personas, content):
    pid, _ = await _persona(personas)
    post = await content.create_post(pid, "bad")
    await content.remove_post(post.post_id)
    with pytest.raises(NotFound):
        await content.get_post(post.post_id)
    full = await content.get_post_for_moderation(post.post_id)
    assert full.moderation.is_removed
    with pytest.raises(NotFound):
        await content.remove_post("missing")


async def test_persona_delete_cascades_soft_delete(personas, content):
    pid, _ = await _persona(personas)
    other, _ = await _persona(personas)
    post = await content.create_post(pid, "soon orphaned")
    other_post = await content.create_post(other, "survivor")
    await content.add_comment(other_post.post_id, pid, "from the deleted persona")
    await personas.delete_persona(pid, OWNER)

    with pytest.raises(NotFound):
        await content.get_post(post.post_id)
    assert (await content.get_post(other_post.post_id)).engagement.comments == ()
    full = await content.get_post_for_moderation(post.post_id)
    assert full.author_deleted
    assert full.content == "soon orphaned"


async def test_tampered_post_is_flagged(personas, content, database):
    pid, _ = await _persona(personas)
    post = await content.create_post(pid, "original")
    async with database.connect() as db:
        await db.execute("UPDATE anonymous_posts SET content = 'edited' WHERE post_id = ?", (post.post_id,))
    # readers still get the post; moderators see the failure
    assert (await content.get_post(post.post_id)).content == "edited"
    with pytest.raises(IntegrityFailure):
        await content.verify_post(post.post_id)
    full = await content.get_post_for_moderation(post.post_id)
    assert full.integrity_failed
    assert full.moderation.is_flagged


async def test_report_post(personas, content):
    pid, _ = await _persona(personas)
    reporter, _ = await _persona(personas)
    post = await content.create_post(pid, "offensive")
    report = await content.report_post(post.post_id, reporter, "harassment", "not ok")
    assert report.kind == "anonymous"
    assert report.reporter_persona_id == reporter
    full = await content.get_post_for_moderation(post.post_id)
    assert full.moderation.is_reported
    assert full.moderation.report_count == 1

