import asyncio
import base64
import threading

import pytest

from src.core.errors import ApiError, BoardVersionConflict
from src.core.limits import REPEATED_DELETE_ERROR_TEXT
from src.services.board_store import parse_media_upload
from src.services.file_board_store import FileBoardStore
from src.services.media_service import MediaGarbageCollector, MediaGraceSet, MediaStore

PNG_PAYLOAD = base64.b64encode(b"\x89PNG\r\n\x1a\n0123456789").decode()


class FakeClock:
    def __init__(self, now=1_000_000):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


ALICE = {"id": "user-alice", "login": "alice", "email": "alice@example.com", "passwordHash": "x"}
BOB = {"id": "user-bob", "login": "bob", "email": "bob@example.com", "passwordHash": "x"}


def board_with_comments(comments):
    return {
        "cardsById": {"P-1": {"title": "Card", "createdAt": 1, "comments": comments}},
        "columns": {"queue": ["P-1"]},
    }


def text_comment(comment_id, created_at, author="alice"):
    return {"id": comment_id, "text": f"comment {comment_id}", "createdAt": created_at, "author": author}


class TestFileBoardStore:
    """Интеграционные тесты файлового хранилища"""

    def setup_method(self):
        self.clock = FakeClock()

    async def make_store(self, tmp_path, media_quota_bytes=160 * 1024 * 1024):
        media = MediaStore(tmp_path / "media", MediaGraceSet(self.clock), grace_ttl_ms=60_000)
        store = FileBoardStore(tmp_path / "db.json", media, clock=self.clock, media_quota_bytes=media_quota_bytes)
        await store.startup()
        await store.create_user(dict(ALICE))
        return store

    @pytest.mark.asyncio
    async def test_new_user_has_empty_board(self, tmp_path):
        store = await self.make_store(tmp_path)

        state, version = await store.read_board(ALICE["id"])

        assert version == 0
        assert state["cardsById"] == {}
        assert state["columns"] == {"queue": [], "doing": [], "review": [], "done": []}
        assert (tmp_path / "db.json").exists()

    @pytest.mark.asyncio
    async def test_login_and_email_are_unique(self, tmp_path):
        store = await self.make_store(tmp_path)

        with pytest.raises(ApiError) as exc_info:
            await store.create_user(dict(BOB, login="ALICE"))
        assert exc_info.value.detail["error"] == "LOGIN_TAKEN"

        with pytest.raises(ApiError) as exc_info:
            await store.create_user(dict(BOB, email="Alice@Example.com"))
        assert exc_info.value.detail["error"] == "EMAIL_TAKEN"

        assert (await store.find_user_by_login_key("alice"))["id"] == ALICE["id"]

    @pytest.mark.asyncio
    async def test_sessions_expire(self, tmp_path):
        store = await self.make_store(tmp_path)
        await store.create_session({"id": "s1", "userId": ALICE["id"], "createdAt": self.clock(), "expiresAt": self.clock() + 1000})

        assert (await store.get_session("s1"))["userId"] == ALICE["id"]
        self.clock.advance(1000)
        assert await store.get_session("s1") is None
        assert await store.delete_session("s1") is True
        assert await store.delete_session("s1") is False

    @pytest.mark.asyncio
    async def test_create_doing_done_timer(self, tmp_path):
        """Создание → «Делаем» → «Сделано»: время в работе накапливается"""
        store = await self.make_store(tmp_path)

        created = await store.create_card(ALICE, " Task ", "desc", None, "pink", "queue", None)
        assert created["card"]["id"] == "P-1"
        assert created["card"]["createdBy"] == "alice"
        assert created["index"] == 0
        assert created["version"] == 1

        self.clock.advance(1000)
        await store.move_card(ALICE["id"], "P-1", "doing", None)
        self.clock.advance(90_000)
        moved = await store.move_card(ALICE["id"], "P-1", "done", 0)

        assert moved["card"]["doingTotalMs"] == 90_000
        assert moved["card"]["doingStartedAt"] is None
        assert moved["version"] == 3

        state, version = await store.read_board(ALICE["id"])
        assert version == 3
        assert state["columns"]["done"] == ["P-1"]
        assert [entry["kind"] for entry in state["history"]] == ["move", "move", "create"]
        assert state["history"][0]["text"].endswith("(таймер +00:01:30)")

    @pytest.mark.asyncio
    async def test_new_cards_go_to_top(self, tmp_path):
        store = await self.make_store(tmp_path)
        await store.create_card(ALICE, "one", "", None, "white", "queue", None)
        second = await store.create_card(ALICE, "two", "", None, "white", "queue", None)

        assert second["card"]["id"] == "P-2"
        state, _ = await store.read_board(ALICE["id"])
        assert state["columns"]["queue"] == ["P-2", "P-1"]

    @pytest.mark.asyncio
    async def test_stale_version_conflict(self, tmp_path):
        """Запись по устаревшей версии отклоняется с 409"""
        store = await self.make_store(tmp_path)
        await store.create_card(ALICE, "one", "", None, "white", "queue", None)
        state, version = await store.read_board(ALICE["id"])

        with pytest.raises(BoardVersionConflict) as exc_info:
            await store.write_board(ALICE["id"], state, expected_version=version - 1)
        assert exc_info.value.status_code == 409
        assert exc_info.value.detail == {"error": "BOARD_VERSION_CONFLICT", "currentVersion": version}

        result = await store.write_board(ALICE["id"], state, expected_version=version)
        assert result["version"] == version + 1
        # Без expectedVersion запись проходит всегда
        result = await store.write_board(ALICE["id"], state)
        assert result["version"] == version + 2

    @pytest.mark.asyncio
    async def test_invalid_board_state(self, tmp_path):
        store = await self.make_store(tmp_path)

        with pytest.raises(ApiError) as exc_info:
            await store.write_board(ALICE["id"], {"cardsById": []})
        assert exc_info.value.detail["error"] == "INVALID_BOARD_STATE"
        assert await store.get_version(ALICE["id"]) == 0

    @pytest.mark.asyncio
    async def test_patch_card(self, tmp_path):
        store = await self.make_store(tmp_path)
        await store.create_card(ALICE, "one", "", None, "white", "review", None)

        result = await store.patch_card(ALICE["id"], "P-1", {
            "title": "renamed",
            "isFavorite": True,
            "checklist": [{"id": "t1", "text": "step", "done": True, "createdAt": 1}],
        })

        assert result["card"]["title"] == "renamed"
        assert result["card"]["isFavorite"] is True
        assert result["card"]["checklist"][0]["done"] is True
        assert result["columnId"] == "review"

        with pytest.raises(ApiError) as exc_info:
            await store.patch_card(ALICE["id"], "P-9", {"title": "x"})
        assert exc_info.value.detail["error"] == "CARD_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_delete_card_archives_comments(self, tmp_path):
        store = await self.make_store(tmp_path)
        await store.write_board(ALICE["id"], board_with_comments([text_comment("c1", 5), text_comment("c2", 6)]))

        deleted = await store.delete_card(ALICE["id"], "P-1")

        assert deleted["archivedComments"] == 2
        assert deleted["fromColumnId"] == "queue"
        entries, total = await store.list_archived_comments(ALICE["id"], "P-1", "card-delete", "asc", 0, 10)
        assert total == 2
        assert [entry["id"] for entry in entries] == ["c1", "c2"]

        with pytest.raises(ApiError) as exc_info:
            await store.delete_card(ALICE["id"], "P-1")
        assert exc_info.value.status_code == 404
        assert exc_info.value.detail["error"] == REPEATED_DELETE_ERROR_TEXT

    @pytest.mark.asyncio
    async def test_bulk_move_continue_on_error(self, tmp_path):
        store = await self.make_store(tmp_path)
        await store.create_card(ALICE, "one", "", None, "white", "queue", None)

        result = await store.bulk_move_cards(ALICE["id"], [
            {"cardId": "P-1", "toColumnId": "review"},
            {"cardId": "P-9", "toColumnId": "done"},
        ], True)

        assert result["ok"] is False
        assert result["partial"] is True
        assert result["moved"] == [{"cardId": "P-1", "fromColumnId": "queue", "toColumnId": "review", "toIndex": 0}]
        assert result["errors"] == [{"index": 1, "error": "CARD_NOT_FOUND", "cardId": "P-9"}]

    @pytest.mark.asyncio
    async def test_bulk_move_aborts_whole_batch(self, tmp_path):
        store = await self.make_store(tmp_path)
        await store.create_card(ALICE, "one", "", None, "white", "queue", None)

        with pytest.raises(ApiError) as exc_info:
            await store.bulk_move_cards(ALICE["id"], [
                {"cardId": "P-1", "toColumnId": "review"},
                {"cardId": "P-1", "toColumnId": "nowhere"},
            ], False)
        assert exc_info.value.detail == {"error": "INVALID_COLUMN", "index": 1, "cardId": "P-1"}

        state, version = await store.read_board(ALICE["id"])
        assert state["columns"]["queue"] == ["P-1"]
        assert version == 1

    @pytest.mark.asyncio
    async def test_bulk_delete(self, tmp_path):
        store = await self.make_store(tmp_path)
        await store.create_card(ALICE, "one", "", None, "white", "queue", None)
        await store.create_card(ALICE, "two", "", None, "white", "doing", None)

        result = await store.bulk_delete_cards(ALICE["id"], ["P-1", "P-1", "P-2"], False)

        assert result["ok"] is True
        assert [item["cardId"] for item in result["deleted"]] == ["P-1", "P-2"]
        state, _ = await store.read_board(ALICE["id"])
        assert state["cardsById"] == {}

    @pytest.mark.asyncio
    async def test_comment_lifecycle(self, tmp_path):
        """Создание, правка, удаление и восстановление комментария"""
        store = await self.make_store(tmp_path)
        await store.create_card(ALICE, "one", "", None, "white", "queue", None)

        added = await store.add_comment(ALICE, "P-1", "first", None)
        comment_id = added["comment"]["id"]
        assert added["commentsCount"] == 1
        assert added["archivedCount"] == 0

        with pytest.raises(ApiError) as exc_info:
            await store.edit_comment(BOB, "P-1", comment_id, {"text": "hijack"})
        assert exc_info.value.status_code == 403

        edited = await store.edit_comment(ALICE, "P-1", comment_id, {"text": "<b>edited</b>"})
        assert edited["comment"]["text"] == "<b>edited</b>"

        deleted = await store.delete_comment(ALICE, "P-1", comment_id)
        assert deleted["commentsCount"] == 0
        assert deleted["deletedId"] == comment_id

        restored = await store.restore_archived_comment(ALICE, "P-1", deleted["archiveId"])
        assert restored["comment"]["id"] == comment_id
        assert restored["comment"]["text"] == "<b>edited</b>"
        assert restored["commentsCount"] == 1

        _, total = await store.list_archived_comments(ALICE["id"], "P-1", None, "desc", 0, 10)
        assert total == 0

        with pytest.raises(ApiError) as exc_info:
            await store.restore_archived_comment(ALICE, "P-1", deleted["archiveId"])
        assert exc_info.value.detail["error"] == "ARCHIVED_COMMENT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_restore_with_id_collision(self, tmp_path):
        """Если id занят живым комментарием, восстановленный получает новый"""
        store = await self.make_store(tmp_path)
        await store.write_board(ALICE["id"], board_with_comments([text_comment("c1", 5)]))
        deleted = await store.delete_comment(ALICE, "P-1", "c1")

        state, _ = await store.read_board(ALICE["id"])
        state["cardsById"]["P-1"]["comments"] = [text_comment("c1", 7)]
        await store.write_board(ALICE["id"], state)

        restored = await store.restore_archived_comment(ALICE, "P-1", deleted["archiveId"])

        assert restored["comment"]["id"] != "c1"
        comments, _ = await store.list_comments(ALICE["id"], "P-1")
        assert len(comments) == 2

    @pytest.mark.asyncio
    async def test_comment_overflow_archives_oldest(self, tmp_path):
        store = await self.make_store(tmp_path)
        await store.write_board(
            ALICE["id"], board_with_comments([text_comment(f"c{index}", index) for index in range(1, 201)])
        )
        self.clock.advance(10)

        added = await store.add_comment(ALICE, "P-1", "newest", None)

        assert added["commentsCount"] == 200
        assert added["archivedCount"] == 1
        entries, total = await store.list_archived_comments(ALICE["id"], "P-1", "overflow", "desc", 0, 10)
        assert total == 1
        assert entries[0]["id"] == "c1"
        assert entries[0]["archiveReason"] == "overflow"

    @pytest.mark.asyncio
    async def test_delete_foreign_comment(self, tmp_path):
        store = await self.make_store(tmp_path)
        await store.write_board(ALICE["id"], board_with_comments([text_comment("c1", 5, author="bob")]))

        with pytest.raises(ApiError) as exc_info:
            await store.delete_comment(ALICE, "P-1", "c1")
        assert exc_info.value.detail["error"] == "COMMENT_FORBIDDEN"

    @pytest.mark.asyncio
    async def test_history(self, tmp_path):
        store = await self.make_store(tmp_path)
        await store.create_card(ALICE, "one", "", None, "white", "queue", None)
        await store.move_card(ALICE["id"], "P-1", "done", None)

        moves, total = await store.list_history(ALICE["id"], "move", "desc", 0, 10)
        assert total == 1
        assert moves[0]["meta"]["toCol"] == "done"

        deleted = await store.delete_history_entry(ALICE["id"], moves[0]["id"])
        assert deleted["deletedId"] == moves[0]["id"]
        with pytest.raises(ApiError) as exc_info:
            await store.delete_history_entry(ALICE["id"], moves[0]["id"])
        assert exc_info.value.status_code == 404

        cleared = await store.clear_history(ALICE["id"])
        assert cleared["deletedCount"] == 1
        _, total = await store.list_history(ALICE["id"], None, "desc", 0, 10)
        assert total == 0

    @pytest.mark.asyncio
    async def test_append_history(self, tmp_path):
        store = await self.make_store(tmp_path)

        result = await store.append_history(ALICE["id"], {"text": "restored", "kind": "restore", "at": 5})
        assert result["entry"]["kind"] == "restore"

        with pytest.raises(ApiError) as exc_info:
            await store.append_history(ALICE["id"], "junk")
        assert exc_info.value.detail["error"] == "INVALID_HISTORY_ENTRY"

    @pytest.mark.asyncio
    async def test_upload_media_and_quota(self, tmp_path):
        """Загрузка учитывается в квоте до того, как доска на нее сослалась"""
        store = await self.make_store(tmp_path, media_quota_bytes=30)
        upload = parse_media_upload("image/png", PNG_PAYLOAD, name="shot.png")

        image = await store.upload_media(ALICE["id"], upload)
        assert image["mime"] == "image/png"
        assert image["size"] == 18
        assert image["dataUrl"] == f"/api/v1/media/{image['fileId']}"
        assert store.read_media(image["fileId"])["mime"] == "image/png"

        with pytest.raises(ApiError) as exc_info:
            await store.upload_media(ALICE["id"], upload)
        assert exc_info.value.status_code == 413
        assert exc_info.value.detail["error"] == "MEDIA_QUOTA_EXCEEDED"
        assert exc_info.value.detail["pendingBytes"] == 18

    @pytest.mark.asyncio
    async def test_board_references_uploaded_media(self, tmp_path):
        store = await self.make_store(tmp_path)
        image = await store.upload_media(ALICE["id"], parse_media_upload("image/png", PNG_PAYLOAD))

        await store.create_card(ALICE, "pic", "", [image], "white", "queue", None)

        assert await store.referenced_media_ids() == {image["fileId"]}
        usage = await store.media_usage(ALICE["id"])
        assert usage == {image["fileId"]: 18}

    @pytest.mark.asyncio
    async def test_favorites(self, tmp_path):
        store = await self.make_store(tmp_path)
        await store.create_card(ALICE, "one", "", None, "white", "queue", None)
        await store.patch_card(ALICE["id"], "P-1", {"isFavorite": True})

        entries, version = await store.list_favorites(ALICE["id"], "desc")

        assert [entry["card"]["id"] for entry in entries] == ["P-1"]
        assert version == 2

    @pytest.mark.asyncio
    async def test_concurrent_writers_same_version(self, tmp_path):
        """Из двух записей по одной версии проходит ровно одна"""
        store = await self.make_store(tmp_path)
        await store.create_card(ALICE, "one", "", None, "white", "queue", None)
        state, version = await store.read_board(ALICE["id"])

        results = await asyncio.gather(
            store.write_board(ALICE["id"], state, expected_version=version),
            store.write_board(ALICE["id"], state, expected_version=version),
            return_exceptions=True,
        )

        conflicts = [result for result in results if isinstance(result, BoardVersionConflict)]
        successes = [result for result in results if isinstance(result, dict)]
        assert len(successes) == 1
        assert len(conflicts) == 1
        assert conflicts[0].current_version == version + 1

    @pytest.mark.asyncio
    async def test_document_io_does_not_block_loop(self, tmp_path):
        """Пока документ пишется, цикл событий продолжает работать"""
        store = await self.make_store(tmp_path)
        started = threading.Event()
        release = threading.Event()
        write_document = store._write_document

        def slow_write(doc):
            started.set()
            release.wait(timeout=5)
            write_document(doc)

        store._write_document = slow_write
        task = asyncio.create_task(store.create_card(ALICE, "one", "", None, "white", "queue", None))
        while not started.is_set():
            await asyncio.sleep(0.01)

        assert not task.done()
        release.set()
        result = await task
        assert result["version"] == 1

    @pytest.mark.asyncio
    async def test_gc_removes_detached_media(self, tmp_path):
        """Отвязанный файл теряет grace и удаляется сборщиком, используемый остается"""
        store = await self.make_store(tmp_path)
        kept = await store.upload_media(ALICE["id"], parse_media_upload("image/png", PNG_PAYLOAD))
        dropped = await store.upload_media(ALICE["id"], parse_media_upload("image/png", PNG_PAYLOAD))
        await store.create_card(ALICE, "pic", "", [kept, dropped], "white", "queue", None)

        state, version = await store.read_board(ALICE["id"])
        card = state["cardsById"]["P-1"]
        card["images"] = [image for image in card["images"] if image["fileId"] == kept["fileId"]]
        await store.write_board(ALICE["id"], state, expected_version=version)

        assert dropped["fileId"] not in store.media.grace
        assert await store.referenced_media_ids() == {kept["fileId"]}

        gc = MediaGarbageCollector(store.media, reference_source=store.referenced_media_ids, clock=self.clock)
        result = await gc.run()

        assert result["removed"] == 1
        assert store.media.exists(kept["fileId"])
        assert not store.media.exists(dropped["fileId"])
        assert store.read_media(kept["fileId"])["mime"] == "image/png"

    @pytest.mark.asyncio
    async def test_concurrent_uploads_respect_quota(self, tmp_path):
        """Две одновременные загрузки не могут вместе превысить квоту"""
        store = await self.make_store(tmp_path, media_quota_bytes=30)
        upload = parse_media_upload("image/png", PNG_PAYLOAD)

        results = await asyncio.gather(
            store.upload_media(ALICE["id"], upload),
            store.upload_media(ALICE["id"], upload),
            return_exceptions=True,
        )

        rejected = [result for result in results if isinstance(result, ApiError)]
        assert len([result for result in results if isinstance(result, dict)]) == 1
        assert len(rejected) == 1
        assert rejected[0].detail["error"] == "MEDIA_QUOTA_EXCEEDED"
        assert len(store.media.list_stored_ids()) == 1
