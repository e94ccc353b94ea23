import base64

import pytest
from unittest.mock import AsyncMock

from src.services.media_service import (
    MediaGarbageCollector,
    MediaGraceSet,
    MediaStore,
    add_media_usage_from_images,
    collect_media_ids_from_board,
    media_usage_summary,
)

PNG_PAYLOAD = base64.b64encode(b"\x89PNG\r\n\x1a\n0123456789").decode()


class FakeClock:
    def __init__(self, now=1_000_000):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


class TestMediaStore:
    """Тесты файлового хранилища медиа"""

    def setup_method(self):
        self.clock = FakeClock()

    def test_persist_and_read(self, tmp_path):
        media = MediaStore(tmp_path / "media", MediaGraceSet(self.clock), grace_ttl_ms=60_000)

        persisted = media.persist(PNG_PAYLOAD, "image/png", owner_user_id="user-1")

        assert persisted.mime == "image/png"
        assert persisted.media_id.endswith(".png")
        assert persisted.size == 18
        assert media.read_bytes(persisted.media_id) == b"\x89PNG\r\n\x1a\n0123456789"
        assert persisted.media_id in media.grace
        assert media.list_stored_ids() == [persisted.media_id]

    def test_rejects_bad_payload(self, tmp_path):
        media = MediaStore(tmp_path, MediaGraceSet(self.clock))
        assert media.persist(PNG_PAYLOAD, "text/plain") is None
        assert media.persist("", "image/png") is None

    def test_path_traversal(self, tmp_path):
        media = MediaStore(tmp_path, MediaGraceSet(self.clock))
        assert media.path_for("../secret.png") is None
        assert media.stat("missing.png") is None

    def test_temp_files_are_not_media(self, tmp_path):
        media = MediaStore(tmp_path, MediaGraceSet(self.clock))
        (tmp_path / "a.png.123.tmp").write_bytes(b"x")
        (tmp_path / "notes.txt").write_bytes(b"x")
        assert media.list_stored_ids() == []


class TestGraceSet:
    def test_expiry_and_pending_bytes(self):
        clock = FakeClock()
        grace = MediaGraceSet(clock)
        grace.mark("a.png", 5000, owner_user_id="user-1", size=100)
        grace.mark("b.png", 5000, owner_user_id="user-2", size=50)

        assert grace.pending_bytes_for_user("user-1") == 100
        # Файл, на который уже ссылается доска, не считается ожидающим
        assert grace.pending_bytes_for_user("user-1", {"a.png"}) == 0

        clock.advance(5000)
        assert grace.active_ids() == set()

    def test_release_removed(self):
        grace = MediaGraceSet(FakeClock())
        grace.mark("a.png", 5000)
        grace.mark("b.png", 5000)

        assert grace.release_removed({"a.png", "b.png"}, {"b.png"}) == 1
        assert "a.png" not in grace
        assert "b.png" in grace


class TestUsage:
    def test_collect_ids_from_board(self):
        state = {
            "cardsById": {
                "P-1": {
                    "images": [{"fileId": "a.png", "previewFileId": "a-preview.webp"}],
                    "comments": [{"images": [{"dataUrl": "/api/v1/media/c.jpg"}]}],
                },
                "P-2": {"images": [{"dataUrl": "data:image/png;base64,AAAA"}], "comments": []},
            }
        }
        assert collect_media_ids_from_board(state) == {"a.png", "a-preview.webp", "c.jpg"}

    def test_usage_summary(self):
        usage = add_media_usage_from_images(
            [{"fileId": "a.png", "size": 300, "previewFileId": "p.webp", "previewSize": 20}], {}
        )
        grace = MediaGraceSet(FakeClock())
        grace.mark("new.png", 5000, owner_user_id="user-1", size=100)

        assert media_usage_summary(usage, grace, "user-1", 1000) == {
            "limitBytes": 1000,
            "referencedBytes": 320,
            "pendingBytes": 100,
            "usedBytes": 420,
        }


class TestGarbageCollector:
    """Тесты сборщика неиспользуемых медиафайлов"""

    def setup_method(self):
        self.clock = FakeClock()

    def make_collector(self, tmp_path, referenced):
        media = MediaStore(tmp_path, MediaGraceSet(self.clock), grace_ttl_ms=60_000)
        source = AsyncMock(return_value=referenced)
        return media, MediaGarbageCollector(media, reference_source=source, clock=self.clock)

    @pytest.mark.asyncio
    async def test_grace_protects_fresh_upload(self, tmp_path):
        """Свежая загрузка живет до истечения grace, потом удаляется"""
        media, collector = self.make_collector(tmp_path, set())
        orphan = media.persist(PNG_PAYLOAD, "image/png").media_id

        result = await collector.run()
        assert result == {"removed": 0, "scanned": 1}
        assert media.exists(orphan)

        self.clock.advance(60_000)
        result = await collector.run()
        assert result == {"removed": 1, "scanned": 1}
        assert not media.exists(orphan)

    @pytest.mark.asyncio
    async def test_referenced_files_are_kept(self, tmp_path):
        media, collector = self.make_collector(tmp_path, set())
        kept = media.persist(PNG_PAYLOAD, "image/png").media_id
        collector.reference_source.return_value = {kept}

        self.clock.advance(120_000)
        result = await collector.run()

        assert result["removed"] == 0
        assert media.exists(kept)

    @pytest.mark.asyncio
    async def test_reference_drops_grace(self, tmp_path):
        """Ссылка из доски заменяет grace"""
        media, collector = self.make_collector(tmp_path, set())
        media_id = media.persist(PNG_PAYLOAD, "image/png").media_id
        collector.reference_source.return_value = {media_id}

        await collector.run()

        assert media_id not in media.grace

    @pytest.mark.asyncio
    async def test_store_not_ready(self, tmp_path):
        media, collector = self.make_collector(tmp_path, None)
        media.persist(PNG_PAYLOAD, "image/png")
        self.clock.advance(120_000)

        result = await collector.run()

        assert result["skipped"] == "store-not-ready"
        assert len(media.list_stored_ids()) == 1

    @pytest.mark.asyncio
    async def test_stop_cancels_timers(self, tmp_path):
        media, collector = self.make_collector(tmp_path, set())
        collector.schedule("test", 10_000)
        collector.start()

        await collector.stop()

        assert collector._timer is None
        assert collector._periodic is None
