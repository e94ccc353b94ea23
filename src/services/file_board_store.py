"""Board store backed by one JSON document.

Layout::

    {
      "users": [...], "sessions": [...],
      "boards": {user_id: state}, "boardVersions": {user_id: {"version", "updatedAt"}},
      "commentsArchive": {user_id: [entry, ...]}, "archiveSeq": {user_id: n}
    }

All read-modify-write sequences run under one ``asyncio.Lock``; a write goes
to ``<file>.tmp`` and replaces the document with ``os.replace``. Reads and
writes of the document run in a worker thread so the event loop keeps serving
other requests while the lock is held.
"""
import asyncio
import json
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from fastapi import status

from src.core.clock import Clock, now_ms
from src.core.errors import ApiError, BoardVersionConflict, bad_request
from src.logs import debug_logger, log_function, storage_logger
from src.services.board_ops import (
    bulk_result,
    card_not_found,
    card_text_fields,
    create_history_text,
    dedupe_card_ids,
    delete_card_in_state,
    insert_card,
    make_history_entry,
    move_card_in_state,
    new_card,
    normalize_card_id,
    parse_bulk_move,
    patch_scalar_fields,
    prepend_history,
    repeated_delete,
    run_bulk,
    sort_history,
)
from src.services.board_store import BoardStore
from src.services.etags import board_version_etag, weak_etag_from_stat
from src.services.comment_lifecycle import (
    apply_comment_edit,
    archive_entry,
    archived_comment_not_found,
    build_new_comment,
    comment_not_found,
    ensure_comment_author,
    prune_archive,
    restored_comment,
    sanitize_archived_comment,
    sort_archive,
    split_overflow,
)
from src.services.media_service import (
    MediaStore,
    add_media_usage_from_images,
    collect_media_ids_from_board,
    collect_media_ids_from_images,
)
from src.services.sanitizer import (
    default_board_state,
    get_card_position,
    next_sequential_card_id,
    sanitize_board_state,
    sanitize_card_images,
    sanitize_checklist,
    sanitize_history_entry,
    to_int,
)
from src.services.profile_service import login_key, normalize_email

DOCUMENT_KEYS = {
    "users": list,
    "sessions": list,
    "boards": dict,
    "boardVersions": dict,
    "commentsArchive": dict,
    "archiveSeq": dict,
}


def default_document() -> Dict[str, Any]:
    return {key: factory() for key, factory in DOCUMENT_KEYS.items()}


@dataclass
class _Transaction:
    doc: Dict[str, Any]
    dirty: bool = False


@dataclass
class _BoardMutation:
    doc: Dict[str, Any]
    state: Dict[str, Any]
    now: int
    changed: bool = True
    version: int = 0


class FileBoardStore(BoardStore):
    backend = "file"

    def __init__(self, db_file, media: MediaStore, clock: Clock = now_ms, media_quota_bytes: int = 160 * 1024 * 1024):
        super().__init__(media, clock, media_quota_bytes)
        self.path = Path(db_file)
        self._lock = asyncio.Lock()

    async def startup(self) -> None:
        await super().startup()
        async with self._lock:
            if not self.path.exists():
                await asyncio.to_thread(self._write_document, default_document())
                storage_logger.info(f"[file-store] created {self.path}")

    # --- document I/O -----------------------------------------------------------------

    def _read_document(self) -> Dict[str, Any]:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return default_document()
        except (ValueError, UnicodeDecodeError) as exc:
            # Испорченный файл читается как пустой документ
            storage_logger.warning(f"[file-store] {self.path} is not valid JSON, using defaults: {exc}")
            return default_document()
        if not isinstance(raw, dict):
            return default_document()
        doc = default_document()
        for key, factory in DOCUMENT_KEYS.items():
            if isinstance(raw.get(key), factory):
                doc[key] = raw[key]
        return doc

    def _write_document(self, doc: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f"{self.path.name}.tmp")
        tmp_path.write_text(json.dumps(doc, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp_path, self.path)

    @asynccontextmanager
    async def _transaction(self):
        async with self._lock:
            # Файловый ввод-вывод уходит в поток, блокировка остается за нами
            tx = _Transaction(await asyncio.to_thread(self._read_document))
            yield tx
            if tx.dirty:
                await asyncio.to_thread(self._write_document, tx.doc)

    def _board(self, doc: Dict[str, Any], user_id: str) -> Dict[str, Any]:
        return sanitize_board_state(doc["boards"].get(user_id), self.media) or default_board_state()

    @staticmethod
    def _version(doc: Dict[str, Any], user_id: str) -> int:
        entry = doc["boardVersions"].get(user_id)
        version = to_int(entry.get("version")) if isinstance(entry, dict) else None
        return max(0, version or 0)

    def _bump_version(self, doc: Dict[str, Any], user_id: str, now: int) -> int:
        version = self._version(doc, user_id) + 1
        doc["boardVersions"][user_id] = {"version": version, "updatedAt": now}
        return version

    def _archive_entries(self, doc: Dict[str, Any], user_id: str) -> List[Dict[str, Any]]:
        raw = doc["commentsArchive"].get(user_id)
        entries = [entry for entry in map(sanitize_archived_comment, raw if isinstance(raw, list) else []) if entry]
        doc["commentsArchive"][user_id] = entries
        return entries

    def _user_media_ids(self, doc: Dict[str, Any], user_id: str, state: Dict[str, Any]) -> Set[str]:
        ids = collect_media_ids_from_board(state)
        for entry in self._archive_entries(doc, user_id):
            collect_media_ids_from_images(entry.get("images"), ids)
        return ids

    def _archive_locked(self, doc: Dict[str, Any], user_id: str, card_id: str, comments: Iterable[Dict[str, Any]], reason: str, now: int) -> List[Dict[str, Any]]:
        entries = self._archive_entries(doc, user_id)
        seq = max([to_int(doc["archiveSeq"].get(user_id)) or 0] + [entry["archiveId"] for entry in entries])
        archived = []
        for comment in comments:
            seq += 1
            entry = archive_entry(comment, card_id, reason, now, seq)
            entries.append(entry)
            archived.append(entry)
        doc["archiveSeq"][user_id] = seq
        kept, evicted = prune_archive(entries)
        if evicted:
            debug_logger.debug(f"[file-store] архив {user_id}: вытеснено {len(evicted)} записей")
        doc["commentsArchive"][user_id] = kept
        return archived

    @asynccontextmanager
    async def _mutate_board(self, user_id: str, reason: str):
        """Lock, load the board, yield it for mutation, then bump the version and save."""
        async with self._transaction() as tx:
            state = self._board(tx.doc, user_id)
            before = self._user_media_ids(tx.doc, user_id, state)
            mutation = _BoardMutation(tx.doc, state, self.clock())
            yield mutation
            if mutation.changed:
                tx.doc["boards"][user_id] = state
                mutation.version = self._bump_version(tx.doc, user_id, mutation.now)
                tx.dirty = True
                after = self._user_media_ids(tx.doc, user_id, state)
            else:
                mutation.version = self._version(tx.doc, user_id)
                after = before
        self.release_detached_media(before, after, reason)

    # --- users and sessions -------------------------------------------------------------

    async def create_user(self, user: Dict[str, Any]) -> Dict[str, Any]:
        async with self._transaction() as tx:
            users = tx.doc["users"]
            if any(login_key(existing.get("login")) == login_key(user["login"]) for existing in users):
                raise ApiError(status.HTTP_409_CONFLICT, "LOGIN_TAKEN")
            if any(normalize_email(existing.get("email")) == normalize_email(user["email"]) for existing in users):
                raise ApiError(status.HTTP_409_CONFLICT, "EMAIL_TAKEN")
            users.append(dict(user))
            tx.doc["boards"][user["id"]] = default_board_state()
            tx.dirty = True
        return dict(user)

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        async with self._transaction() as tx:
            return next((dict(user) for user in tx.doc["users"] if user.get("id") == user_id), None)

    async def find_user_by_login_key(self, key: str) -> Optional[Dict[str, Any]]:
        async with self._transaction() as tx:
            return next((dict(user) for user in tx.doc["users"] if login_key(user.get("login")) == key), None)

    async def find_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        email = normalize_email(email)
        async with self._transaction() as tx:
            return next((dict(user) for user in tx.doc["users"] if normalize_email(user.get("email")) == email), None)

    async def update_user(self, user_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        async with self._transaction() as tx:
            user = next((user for user in tx.doc["users"] if user.get("id") == user_id), None)
            if user is None:
                raise ApiError(status.HTTP_401_UNAUTHORIZED, "UNAUTHORIZED")
            if "login" in updates:
                key = login_key(updates["login"])
                if any(other is not user and login_key(other.get("login")) == key for other in tx.doc["users"]):
                    raise ApiError(status.HTTP_409_CONFLICT, "LOGIN_TAKEN")
            user.update(updates)
            tx.dirty = True
            return dict(user)

    async def create_session(self, session: Dict[str, Any]) -> None:
        async with self._transaction() as tx:
            now = self.clock()
            tx.doc["sessions"] = [item for item in tx.doc["sessions"] if (to_int(item.get("expiresAt")) or 0) > now]
            tx.doc["sessions"].append(dict(session))
            tx.dirty = True

    async def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        async with self._transaction() as tx:
            session = next((item for item in tx.doc["sessions"] if item.get("id") == session_id), None)
        if session is None or (to_int(session.get("expiresAt")) or 0) <= self.clock():
            return None
        return dict(session)

    async def delete_session(self, session_id: str) -> bool:
        async with self._transaction() as tx:
            remaining = [item for item in tx.doc["sessions"] if item.get("id") != session_id]
            removed = len(remaining) != len(tx.doc["sessions"])
            tx.doc["sessions"] = remaining
            tx.dirty = removed
        return removed

    # --- board --------------------------------------------------------------------------------

    async def read_board(self, user_id: str) -> Tuple[Dict[str, Any], int]:
        async with self._transaction() as tx:
            return self._board(tx.doc, user_id), self._version(tx.doc, user_id)

    async def get_version(self, user_id: str) -> int:
        async with self._transaction() as tx:
            return self._version(tx.doc, user_id)

    async def board_etag(self, user_id: str) -> str:
        try:
            stat = self.path.stat()
        except FileNotFoundError:
            return board_version_etag(await self.get_version(user_id))
        return weak_etag_from_stat(stat.st_size, stat.st_mtime_ns // 1_000_000)

    @log_function()
    async def write_board(self, user_id: str, raw_state: Any, expected_version: Optional[int] = None) -> Dict[str, Any]:
        async with self._mutate_board(user_id, "board-replace") as m:
            current = self._version(m.doc, user_id)
            if expected_version is not None and expected_version != current:
                raise BoardVersionConflict(current)
            state = sanitize_board_state(raw_state, self.media, persist_data_urls=True, owner_user_id=user_id)
            if state is None:
                raise bad_request("INVALID_BOARD_STATE")
            m.state.clear()
            m.state.update(state)
        return {"state": m.state, "version": m.version, "updatedAt": m.now}

    # --- cards ----------------------------------------------------------------------------------

    async def get_card(self, user_id: str, card_id: str) -> Dict[str, Any]:
        state, version = await self.read_board(user_id)
        card = state["cardsById"].get(card_id)
        if card is None:
            raise card_not_found()
        column_id, index = get_card_position(state["columns"], card_id)
        return {
            "card": card,
            "columnId": column_id,
            "index": index,
            "floating": state["floatingById"].get(card_id),
            "version": version,
        }

    @log_function()
    async def create_card(self, user, title, description, images, urgency, column_id, index):
        title, description = card_text_fields(title, description)
        async with self._mutate_board(user["id"], "card-create") as m:
            card_images = sanitize_card_images(images, self.media, persist_data_urls=True, owner_user_id=user["id"])
            card_id = next_sequential_card_id(m.state["cardsById"])
            card = new_card(card_id, title, description, card_images, urgency, column_id, user.get("login"), m.now)
            m.state["cardsById"][card_id] = card
            position = insert_card(m.state, column_id, card_id, index if index is not None else 0)
            prepend_history(m.state, make_history_entry(
                "create", create_history_text(title, column_id), m.now, card_id=card_id, title=title, to_column=column_id
            ))
        return {"card": card, "columnId": column_id, "index": position, "updatedAt": m.now, "version": m.version}

    @log_function()
    async def move_card(self, user_id, card_id, to_column, to_index):
        async with self._mutate_board(user_id, "card-move") as m:
            result = move_card_in_state(m.state, card_id, to_column, to_index, m.now)
        return {**result, "updatedAt": m.now, "version": m.version}

    @log_function()
    async def patch_card(self, user_id, card_id, patch):
        async with self._mutate_board(user_id, "card-patch") as m:
            card = m.state["cardsById"].get(card_id)
            if card is None:
                raise card_not_found()
            patch_scalar_fields(card, patch)
            if "images" in patch:
                card["images"] = sanitize_card_images(patch["images"], self.media, persist_data_urls=True, owner_user_id=user_id)
            if "checklist" in patch:
                card["checklist"] = sanitize_checklist(patch["checklist"])
        column_id, index = get_card_position(m.state["columns"], card_id)
        return {"card": card, "columnId": column_id, "index": index, "updatedAt": m.now, "version": m.version}

    def _delete_card_locked(self, m: _BoardMutation, user_id: str, card_id: str) -> Dict[str, Any]:
        card = m.state["cardsById"][card_id]
        archived = self._archive_locked(m.doc, user_id, card_id, card.get("comments") or [], "card-delete", m.now)
        result = delete_card_in_state(m.state, card_id, m.now)
        return {"cardId": card_id, "fromColumnId": result["fromColumnId"], "archivedComments": len(archived)}

    @log_function()
    async def delete_card(self, user_id, card_id):
        async with self._mutate_board(user_id, "card-delete") as m:
            if card_id not in m.state["cardsById"]:
                raise repeated_delete()
            deleted = self._delete_card_locked(m, user_id, card_id)
        return {
            "deletedId": card_id,
            "fromColumnId": deleted["fromColumnId"],
            "archivedComments": deleted["archivedComments"],
            "updatedAt": m.now,
            "version": m.version,
        }

    @log_function()
    async def bulk_move_cards(self, user_id, moves, continue_on_error):
        async with self._mutate_board(user_id, "cards-bulk-move") as m:
            async def apply(index, operation):
                card_id, to_column, to_index = parse_bulk_move(operation)
                result = move_card_in_state(m.state, card_id, to_column, to_index, m.now)
                return {
                    "cardId": card_id,
                    "fromColumnId": result["fromColumnId"],
                    "toColumnId": to_column,
                    "toIndex": result["toIndex"],
                }

            moved, errors = await run_bulk(moves, continue_on_error, apply)
            m.changed = bool(moved)
        return {**bulk_result("moved", moved, errors), "updatedAt": m.now, "version": m.version}

    @log_function()
    async def bulk_delete_cards(self, user_id, card_ids, continue_on_error):
        async with self._mutate_board(user_id, "cards-bulk-delete") as m:
            async def apply(index, raw_id):
                card_id = normalize_card_id(raw_id) if isinstance(raw_id, (str, int)) and not isinstance(raw_id, bool) else None
                if not card_id:
                    raise bad_request("INVALID_CARD_ID")
                if card_id not in m.state["cardsById"]:
                    raise card_not_found()
                deleted = self._delete_card_locked(m, user_id, card_id)
                return {"cardId": card_id, "fromColumnId": deleted["fromColumnId"]}

            deleted, errors = await run_bulk(dedupe_card_ids(card_ids), continue_on_error, apply)
            m.changed = bool(deleted)
        return {**bulk_result("deleted", deleted, errors), "updatedAt": m.now, "version": m.version}

    # --- comments --------------------------------------------------------------------------------

    def _card_or_404(self, state: Dict[str, Any], card_id: str) -> Dict[str, Any]:
        card = state["cardsById"].get(card_id)
        if card is None:
            raise card_not_found()
        return card

    def _store_comments(self, m: _BoardMutation, user_id: str, card: Dict[str, Any], comments: List[Dict[str, Any]]) -> int:
        """Save live comments, archiving the overflow; returns how many were archived."""
        kept, overflow = split_overflow(comments)
        if overflow:
            self._archive_locked(m.doc, user_id, card["id"], overflow, "overflow", m.now)
        card["comments"] = kept
        return len(overflow)

    async def list_comments(self, user_id, card_id):
        state, version = await self.read_board(user_id)
        return list(self._card_or_404(state, card_id)["comments"]), version

    @log_function()
    async def add_comment(self, user, card_id, text, images):
        async with self._mutate_board(user["id"], "comment-create") as m:
            card = self._card_or_404(m.state, card_id)
            comment = build_new_comment(text, images, user.get("login"), m.now, self.media, user["id"])
            overflow = self._store_comments(m, user["id"], card, card["comments"] + [comment])
        return {
            "comment": comment,
            "commentsCount": len(card["comments"]),
            "archivedCount": overflow,
            "updatedAt": m.now,
            "version": m.version,
        }

    @log_function()
    async def edit_comment(self, user, card_id, comment_id, patch):
        async with self._mutate_board(user["id"], "comment-edit") as m:
            card = self._card_or_404(m.state, card_id)
            position = next((i for i, item in enumerate(card["comments"]) if item["id"] == comment_id), None)
            if position is None:
                raise comment_not_found()
            ensure_comment_author(card["comments"][position], user.get("login"))
            comment = apply_comment_edit(card["comments"][position], patch, m.now, self.media, user["id"])
            card["comments"][position] = comment
        return {"comment": comment, "updatedAt": m.now, "version": m.version}

    @log_function()
    async def delete_comment(self, user, card_id, comment_id):
        async with self._mutate_board(user["id"], "comment-delete") as m:
            card = self._card_or_404(m.state, card_id)
            comment = next((item for item in card["comments"] if item["id"] == comment_id), None)
            if comment is None:
                raise repeated_delete()
            ensure_comment_author(comment, user.get("login"))
            archived = self._archive_locked(m.doc, user["id"], card_id, [comment], "delete", m.now)
            card["comments"] = [item for item in card["comments"] if item["id"] != comment_id]
        return {
            "deletedId": comment_id,
            "archiveId": archived[0]["archiveId"],
            "commentsCount": len(card["comments"]),
            "updatedAt": m.now,
            "version": m.version,
        }

    @log_function()
    async def archive_comments(self, user_id, card_id, comment_ids, reason):
        wanted = set(comment_ids)
        async with self._mutate_board(user_id, f"comment-archive-{reason}") as m:
            card = self._card_or_404(m.state, card_id)
            chosen = [item for item in card["comments"] if item["id"] in wanted]
            archived = self._archive_locked(m.doc, user_id, card_id, chosen, reason, m.now)
            card["comments"] = [item for item in card["comments"] if item["id"] not in wanted]
            m.changed = bool(chosen)
        return archived

    async def list_archived_comments(self, user_id, card_id, reason, order, offset, limit):
        async with self._transaction() as tx:
            entries = [
                entry
                for entry in self._archive_entries(tx.doc, user_id)
                if entry["cardId"] == card_id and (reason is None or entry["archiveReason"] == reason)
            ]
        ordered = sort_archive(entries, order)
        return ordered[offset:offset + limit], len(ordered)

    @log_function()
    async def restore_archived_comment(self, user, card_id, archive_id):
        user_id = user["id"]
        async with self._mutate_board(user_id, "comment-restore") as m:
            card = self._card_or_404(m.state, card_id)
            entries = self._archive_entries(m.doc, user_id)
            entry = next((item for item in entries if item["archiveId"] == archive_id and item["cardId"] == card_id), None)
            if entry is None:
                raise archived_comment_not_found()
            comment = restored_comment(entry, (item["id"] for item in card["comments"]), m.now)
            m.doc["commentsArchive"][user_id] = [item for item in entries if item is not entry]
            overflow = self._store_comments(m, user_id, card, card["comments"] + [comment])
        return {
            "comment": comment,
            "commentsCount": len(card["comments"]),
            "archivedCount": overflow,
            "updatedAt": m.now,
            "version": m.version,
        }

    # --- history -----------------------------------------------------------------------------------

    async def append_history(self, user_id, entry):
        async with self._mutate_board(user_id, "history-append") as m:
            sanitized = sanitize_history_entry(entry)
            if sanitized is None:
                raise bad_request("INVALID_HISTORY_ENTRY")
            prepend_history(m.state, sanitized)
        return {"entry": sanitized, "updatedAt": m.now, "version": m.version}

    async def list_history(self, user_id, kind, order, offset, limit):
        state, _ = await self.read_board(user_id)
        entries = [entry for entry in state["history"] if kind is None or entry.get("kind") == kind]
        ordered = sort_history(entries, order)
        return ordered[offset:offset + limit], len(ordered)

    async def clear_history(self, user_id):
        async with self._mutate_board(user_id, "history-clear") as m:
            deleted_count = len(m.state["history"])
            m.state["history"] = []
        return {"deletedCount": deleted_count, "updatedAt": m.now, "version": m.version}

    async def delete_history_entry(self, user_id, entry_id):
        async with self._mutate_board(user_id, "history-delete") as m:
            remaining = [entry for entry in m.state["history"] if entry.get("id") != entry_id]
            if len(remaining) == len(m.state["history"]):
                raise repeated_delete()
            m.state["history"] = remaining
        return {"deletedId": entry_id, "updatedAt": m.now, "version": m.version}

    # --- media -----------------------------------------------------------------------------------------

    async def media_usage(self, user_id):
        async with self._transaction() as tx:
            state = self._board(tx.doc, user_id)
            usage: Dict[str, int] = {}
            for card in state["cardsById"].values():
                add_media_usage_from_images(card.get("images"), usage)
                for comment in card.get("comments") or []:
                    add_media_usage_from_images(comment.get("images"), usage)
            for entry in self._archive_entries(tx.doc, user_id):
                add_media_usage_from_images(entry.get("images"), usage)
        return usage

    async def referenced_media_ids(self) -> Optional[Set[str]]:
        async with self._transaction() as tx:
            ids: Set[str] = set()
            for user_id in list(tx.doc["boards"]):
                # Без проверки существования файлов: иначе сборщик не увидит ссылку
                state = sanitize_board_state(tx.doc["boards"][user_id]) or default_board_state()
                collect_media_ids_from_board(state, ids)
            for user_id in list(tx.doc["commentsArchive"]):
                for entry in self._archive_entries(tx.doc, user_id):
                    collect_media_ids_from_images(entry.get("images"), ids)
        return ids
