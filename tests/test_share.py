import json

import httpx
import pytest

from app.core.exceptions import (
    Conflict, Forbidden, NotFound, StorageError, UpstreamError, ValidationError,
)
from app.schemas.share import PublicFileLocator
from app.services.media_proxy import MediaProxyResolver
from app.services.share import ShareCache
from app.services.share_store import (
    note_share_key, public_file_key, public_memo_key, share_lock_key,
)
from tests.fakes import OTHER, OWNER, upload


def public_file_id(url):
    return url.rsplit("/", 1)[-1]


class TestShareStateMachine:
    @pytest.mark.anyio
    async def test_share_is_get_or_create(self, notes, shares, kv):
        note = await notes.create("hello", [], "private", OWNER.id)

        public_id = await shares.share(note.id, OWNER)

        assert await shares.share(note.id, OWNER) == public_id
        assert json.loads(kv.data[public_memo_key(public_id)]) == {"noteId": note.id}
        assert kv.data[note_share_key(note.id)] == public_id
        assert await kv.ttl(public_memo_key(public_id)) == 3600
        assert share_lock_key(note.id) not in kv.data

    @pytest.mark.anyio
    async def test_zero_ttl_never_expires(self, notes, shares, kv):
        note = await notes.create("forever", [], "private", OWNER.id)
        public_id = await shares.share(note.id, OWNER, ttl_seconds=0)
        assert await kv.ttl(public_memo_key(public_id)) == -1
        assert await kv.ttl(note_share_key(note.id)) == -1

    @pytest.mark.anyio
    async def test_negative_ttl_rejected(self, notes, shares):
        note = await notes.create("x", [], "private", OWNER.id)
        with pytest.raises(ValidationError):
            await shares.share(note.id, OWNER, ttl_seconds=-5)

    @pytest.mark.anyio
    async def test_expired_share_is_not_found_and_can_be_recreated(self, notes, shares, kv):
        note = await notes.create("short", [], "private", OWNER.id)
        public_id = await shares.share(note.id, OWNER, ttl_seconds=10)

        kv.advance(11)

        with pytest.raises(NotFound):
            await shares.render_public_note(public_id)
        assert await shares.share(note.id, OWNER) != public_id

    @pytest.mark.anyio
    async def test_lock_contention(self, notes, shares, kv):
        note = await notes.create("x", [], "private", OWNER.id)
        await kv.set(share_lock_key(note.id), "1", ex=30)
        with pytest.raises(Conflict):
            await shares.share(note.id, OWNER)

    @pytest.mark.anyio
    async def test_only_owner_can_share(self, notes, shares):
        note = await notes.create("x", [], "users", OWNER.id)
        with pytest.raises(Forbidden):
            await shares.share(note.id, OTHER)
        with pytest.raises(NotFound):
            await shares.share(4242, OWNER)

    @pytest.mark.anyio
    async def test_renew_requires_existing_share(self, notes, shares):
        note = await notes.create("x", [], "private", OWNER.id)
        with pytest.raises(NotFound):
            await shares.renew(note.id, "not-a-share", 60, OWNER)

        public_id = await shares.share(note.id, OWNER)
        with pytest.raises(ValidationError):
            await shares.renew(note.id, public_id, None, OWNER)
        with pytest.raises(ValidationError):
            await shares.renew(note.id, public_id, -1, OWNER)

    @pytest.mark.anyio
    async def test_renew_rewrites_ttl_and_invalidates_mirrors(self, notes, shares, kv):
        note = await notes.create("![i](/api/v1/images/img-1)", [], "private", OWNER.id)
        public_id = await shares.share(note.id, OWNER, ttl_seconds=100)
        first = await shares.render_public_note(public_id)
        old_file_id = public_file_id(first.content[first.content.index("/api/v1/public/file/"):-1])

        await shares.renew(note.id, public_id, 500, OWNER)

        assert await kv.ttl(public_memo_key(public_id)) == 500
        assert await kv.ttl(note_share_key(note.id)) == 500
        assert public_file_key(old_file_id) not in kv.data

        again = await shares.render_public_note(public_id)
        assert again.content != first.content
        new_file_id = public_file_id(again.content[again.content.index("/api/v1/public/file/"):-1])
        assert await kv.ttl(public_file_key(new_file_id)) == 500

    @pytest.mark.anyio
    async def test_revoke_cascades_to_mirrors(self, notes, shares, kv):
        note = await notes.create("![i](/api/v1/images/img-1)", [upload()], "private", OWNER.id)
        public_id = await shares.share(note.id, OWNER)
        view = await shares.render_public_note(public_id)
        mirror_ids = [public_file_id(f["public_url"]) for f in view.files]

        await shares.revoke(note.id, OWNER)

        with pytest.raises(NotFound):
            await shares.render_public_note(public_id)
        for mirror_id in mirror_ids:
            with pytest.raises(NotFound):
                await shares.resolve_public_file(mirror_id)
        assert not any(k.startswith("public_file_cache:") for k in kv.data)

    @pytest.mark.anyio
    async def test_revoke_is_idempotent(self, notes, shares):
        note = await notes.create("x", [], "private", OWNER.id)
        await shares.revoke(note.id, OWNER)
        await shares.revoke(note.id, OWNER)


class TestMaterialize:
    @pytest.mark.anyio
    async def test_same_url_same_id_different_url_new_id(self, notes, shares):
        note = await notes.create("x", [], "private", OWNER.id)
        public_id = await shares.share(note.id, OWNER)

        a1 = await shares.materialize_public_resource(public_id, "/api/v1/images/a")
        a2 = await shares.materialize_public_resource(public_id, "/api/v1/images/a")
        b = await shares.materialize_public_resource(public_id, "/api/v1/images/b")

        assert a1 == a2
        assert a1 != b
        assert a1.startswith("/api/v1/public/file/")

    @pytest.mark.anyio
    async def test_ttl_capped_to_remaining_share_ttl(self, notes, shares, kv):
        note = await notes.create("x", [], "private", OWNER.id)
        public_id = await shares.share(note.id, OWNER, ttl_seconds=100)
        kv.advance(40)

        url = await shares.materialize_public_resource(public_id, "/api/v1/images/a")

        assert await kv.ttl(public_file_key(public_file_id(url))) == 60

    @pytest.mark.anyio
    async def test_share_in_its_last_second_does_not_mint_lasting_mirrors(self, notes, shares, kv):
        note = await notes.create("x", [], "private", OWNER.id)
        public_id = await shares.share(note.id, OWNER, ttl_seconds=100)
        kv.advance(99.6)

        with pytest.raises(NotFound):
            await shares.materialize_public_resource(public_id, "/api/v1/images/abc")

        kv.advance(3600)
        assert not any(k.startswith(("public_file:", "public_file_cache:")) for k in kv.data)

    @pytest.mark.anyio
    async def test_mirrors_expire_with_their_share(self, notes, shares, kv):
        note = await notes.create("x", [], "private", OWNER.id)
        public_id = await shares.share(note.id, OWNER, ttl_seconds=100)
        kv.advance(98.5)

        url = await shares.materialize_public_resource(public_id, "/api/v1/images/abc")
        kv.advance(1.5)

        with pytest.raises(NotFound):
            await shares.resolve_public_file(public_file_id(url))

    @pytest.mark.anyio
    async def test_trailing_period_is_not_part_of_the_url(self, notes, shares):
        note = await notes.create("see /api/v1/images/img-1.", [], "private", OWNER.id)
        public_id = await shares.share(note.id, OWNER)

        view = await shares.render_public_note(public_id)

        assert view.content.startswith("see /api/v1/public/file/")
        assert view.content.endswith(".")
        assert "/api/v1/images/" not in view.content

    @pytest.mark.anyio
    async def test_other_notes_files_are_not_exposed(self, notes, shares):
        note = await notes.create("x", [], "private", OWNER.id)
        public_id = await shares.share(note.id, OWNER)
        foreign = f"/api/v1/files/{note.id + 1}/abc"
        assert await shares.materialize_public_resource(public_id, foreign) == foreign

    @pytest.mark.anyio
    async def test_unrecognized_urls_pass_through(self, notes, shares):
        note = await notes.create("x", [], "private", OWNER.id)
        public_id = await shares.share(note.id, OWNER)
        url = "https://example.com/a.png"
        assert await shares.materialize_public_resource(public_id, url) == url

    @pytest.mark.anyio
    async def test_classify_proxy_url(self, shares):
        locator = shares.classify("/api/v1/tg-media-proxy/AgAD-1", note_id=1)
        assert locator.is_proxy and locator.telegram_proxy_id == "AgAD-1"


class TestPublicNote:
    @pytest.mark.anyio
    async def test_render_rewrites_private_urls_without_mutating_note(self, db, notes, shares):
        note = await notes.create("", [upload("doc.pdf")], "private", OWNER.id)
        file_id = note.files[0]["id"]
        original = f"look ![x](/api/v1/files/{note.id}/{file_id}) and https://example.com"
        note.content = original
        await db.commit()
        public_id = await shares.share(note.id, OWNER)

        view = await shares.render_public_note(public_id)

        assert "/api/v1/files/" not in view.content
        assert view.content.startswith("look ![x](/api/v1/public/file/")
        assert view.content.endswith(") and https://example.com")
        assert view.files[0]["name"] == "doc.pdf"
        assert view.files[0]["public_url"].startswith("/api/v1/public/file/")
        assert "id" not in view.model_dump()
        assert "pics" not in view.model_dump()
        assert note.content == original

    @pytest.mark.anyio
    async def test_raw_content(self, notes, shares):
        note = await notes.create("raw **text**", [], "private", OWNER.id)
        public_id = await shares.share(note.id, OWNER)
        assert await shares.raw_public_note(public_id) == "raw **text**"

    @pytest.mark.anyio
    async def test_unknown_share(self, shares):
        with pytest.raises(NotFound):
            await shares.raw_public_note("nope")


class TestPublicFiles:
    @pytest.mark.anyio
    async def test_share_file_is_persistent_and_reused(self, notes, shares, kv):
        note = await notes.create("x", [upload("doc.pdf")], "private", OWNER.id)
        file_id = note.files[0]["id"]

        url = await shares.share_file(note.id, file_id, OWNER)

        assert await shares.share_file(note.id, file_id, OWNER) == url
        assert note.files[0]["public_id"] == public_file_id(url)
        assert await kv.ttl(public_file_key(public_file_id(url))) == -1

        locator = await shares.resolve_public_file(public_file_id(url))
        opened = await shares.open_public_file(locator)
        assert opened.body == b"%PDF-1.4 test"
        assert opened.file_name == "doc.pdf"
        assert opened.content_type == "application/pdf"

    @pytest.mark.anyio
    async def test_share_file_unknown_attachment(self, notes, shares):
        note = await notes.create("x", [], "private", OWNER.id)
        with pytest.raises(NotFound):
            await shares.share_file(note.id, "missing", OWNER)

    @pytest.mark.anyio
    async def test_missing_blob_is_not_found(self, shares):
        with pytest.raises(NotFound):
            await shares.open_public_file(PublicFileLocator(note_id=1, file_id="gone"))

    @pytest.mark.anyio
    async def test_standalone_image_defaults(self, shares, blobs):
        await blobs.put("uploads/img-9", b"png")
        opened = await shares.open_public_file(PublicFileLocator(standalone_image_id="img-9"))
        assert opened.file_name == "image_img-9.png"
        assert opened.content_type == "image/png"

    @pytest.mark.anyio
    async def test_malformed_locator_is_rejected(self, shares):
        with pytest.raises(StorageError):
            await shares.open_public_file(PublicFileLocator())


class TestMediaProxy:
    @pytest.mark.anyio
    async def test_resolves_download_url(self, kv):
        await kv.set("telegram_proxy:px", json.dumps({"fileId": "real-file"}))

        def handler(request):
            assert request.url.params["file_id"] == "real-file"
            return httpx.Response(200, json={"ok": True, "result": {"file_path": "docs/a.pdf"}})

        resolver = MediaProxyResolver(
            kv, bot_token="T", api_base="https://tg.test", transport=httpx.MockTransport(handler)
        )
        assert await resolver.resolve("px") == "https://tg.test/file/botT/docs/a.pdf"

    @pytest.mark.anyio
    async def test_api_error(self):
        transport = httpx.MockTransport(
            lambda request: httpx.Response(400, json={"ok": False, "description": "bad file"})
        )
        resolver = MediaProxyResolver(bot_token="T", api_base="https://tg.test", transport=transport)
        with pytest.raises(UpstreamError):
            await resolver.resolve("x")

    @pytest.mark.anyio
    async def test_not_configured(self):
        with pytest.raises(StorageError):
            await MediaProxyResolver(bot_token="").resolve("x")

    @pytest.mark.anyio
    async def test_public_proxy_file_redirects(self, db, kv, blobs):
        transport = httpx.MockTransport(
            lambda request: httpx.Response(200, json={"ok": True, "result": {"file_path": "v.mp4"}})
        )
        resolver = MediaProxyResolver(kv, bot_token="T", api_base="https://tg.test", transport=transport)
        shares = ShareCache(db, kv, blobs, resolver)

        opened = await shares.open_public_file(PublicFileLocator(telegram_proxy_id="abc"))

        assert opened.redirect_url == "https://tg.test/file/botT/v.mp4"
        assert opened.body is None
