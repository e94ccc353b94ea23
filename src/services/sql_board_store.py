"""Board store on normalised SQL tables (SQLAlchemy async core).

Every mutation runs in one transaction that locks the user's
``board_versions`` row first, so writers to the same board are serialised.
Column positions are contiguous ``sort_index`` values; splices move the tail
of a column with a two-phase shift through a large offset so the
``(user, column, sort_index)`` unique constraint holds at every step.
"""
import json
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from fastapi import status
from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.clock import Clock, now_ms
from src.core.errors import ApiError, BoardVersionConflict, bad_request
from src.core.limits import COLUMN_IDS, MAX_ARCHIVED_COMMENTS_PER_USER, MAX_HISTORY_ENTRIES
from src.db.database import build_engine, build_session_factory, init_db
from src.logs import log_function, storage_logger
from src.models import (
    BoardColumn,
    BoardVersion,
    Card,
    CardComment,
    CardCommentArchive,
    FloatingCard,
    HistoryEntry,
    MediaFile,
    MediaLink,
    Session,
    User,
)
from src.services.board_ops import (
    apply_doing_transition,
    bulk_result,
    card_not_found,
    card_text_fields,
    create_history_text,
    dedupe_card_ids,
    delete_history_text,
    make_history_entry,
    move_history_text,
    new_card,
    normalize_card_id,
    parse_bulk_move,
    patch_scalar_fields,
    pending_doing_delta,
    repeated_delete,
    run_bulk,
)
from src.services.board_store import BoardStore
from src.services.comment_lifecycle import (
    apply_comment_edit,
    archive_entry,
    archived_comment_not_found,
    build_new_comment,
    comment_not_found,
    ensure_comment_author,
    restored_comment,
    sanitize_archived_comment,
    split_overflow,
)
from src.services.etags import board_version_etag
from src.services.media_service import MediaStore, PersistedMedia, add_media_usage_from_images, collect_media_ids_from_images
from src.services.profile_service import login_key, normalize_email
from src.services.sanitizer import (
    clamp_index,
    compact_card_images,
    next_sequential_card_id,
    sanitize_board_state,
    sanitize_card,
    sanitize_card_images,
    sanitize_checklist,
    sanitize_comment_archive_reason,
    sanitize_comment_entry,
    sanitize_comments,
    sanitize_history_entry,
)

users_t = User.__table__
sessions_t = Session.__table__
cards_t = Card.__table__
comments_t = CardComment.__table__
archive_t = CardCommentArchive.__table__
columns_t = BoardColumn.__table__
floating_t = FloatingCard.__table__
history_t = HistoryEntry.__table__
versions_t = BoardVersion.__table__
media_files_t = MediaFile.__table__
links_t = MediaLink.__table__

SHIFT_OFFSET = 1_000_000

# Поля записи пользователя -> колонки таблицы users
USER_COLUMNS = {
    "id": "id",
    "login": "login",
    "email": "email",
    "passwordHash": "password_hash",
    "createdAt": "created_at_ms",
    "avatarUrl": "avatar_url",
    "firstName": "first_name",
    "lastName": "last_name",
    "birthDate": "birth_date",
    "role": "role",
    "city": "city",
    "about": "about",
}


def _dumps(value) -> str:
    return json.dumps(value, ensure_ascii=False)


def _loads_objects(raw) -> List[Dict[str, Any]]:
    try:
        value = json.loads(raw or "[]")
    except ValueError:
        return []
    return [item for item in value if isinstance(item, dict)] if isinstance(value, list) else []


def _loads_dict(raw) -> Optional[Dict[str, Any]]:
    try:
        value = json.loads(raw) if raw else None
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def _user_record(row) -> Dict[str, Any]:
    return {key: getattr(row, column) for key, column in USER_COLUMNS.items()}


def _user_values(user: Dict[str, Any]) -> Dict[str, Any]:
    values = {column: user.get(key) for key, column in USER_COLUMNS.items() if key in user}
    if "login" in user:
        values["login_key"] = login_key(user["login"])
    if "email" in user:
        values["email"] = normalize_email(user["email"])
    return values


def _raw_card(row, comments: Iterable[Dict[str, Any]] = ()) -> Dict[str, Any]:
    return {
        "title": row.title,
        "description": row.description,
        "images": _loads_objects(row.images_json),
        "checklist": _loads_objects(row.checklist_json),
        "createdBy": row.created_by,
        "isFavorite": row.is_favorite,
        "comments": list(comments),
        "createdAt": row.created_at_ms,
        "status": row.status,
        "urgency": row.urgency,
        "doingStartedAt": row.doing_started_at_ms,
        "doingTotalMs": row.doing_total_ms,
    }


def _card_values(user_id: str, card: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "user_id": user_id,
        "id": card["id"],
        "title": card["title"],
        "description": card["description"],
        "images_json": _dumps(compact_card_images(card["images"])),
        "checklist_json": _dumps(card["checklist"]),
        "created_by": card["createdBy"],
        "is_favorite": bool(card["isFavorite"]),
        "created_at_ms": card["createdAt"],
        "status": card["status"],
        "urgency": card["urgency"],
        "doing_started_at_ms": card["doingStartedAt"],
        "doing_total_ms": card["doingTotalMs"],
    }


def _raw_comment(row) -> Dict[str, Any]:
    return {
        "id": row.id,
        "text": row.text,
        "images": _loads_objects(row.images_json),
        "createdAt": row.created_at_ms,
        "updatedAt": row.updated_at_ms,
        "author": row.author,
    }


def _comment_values(user_id: str, card_id: str, comment: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "user_id": user_id,
        "card_id": card_id,
        "id": comment["id"],
        "author": comment.get("author"),
        "text": comment.get("text") or "",
        "images_json": _dumps(compact_card_images(comment.get("images") or [])),
        "created_at_ms": comment["createdAt"],
        "updated_at_ms": comment["updatedAt"],
    }


def _raw_archive(row) -> Dict[str, Any]:
    raw = _raw_comment(row)
    raw.update({
        "archiveId": row.archive_id,
        "cardId": row.card_id,
        "archiveReason": row.archive_reason,
        "archivedAt": row.archived_at_ms,
    })
    return raw


def _history_values(user_id: str, entry: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "user_id": user_id,
        "id": entry["id"],
        "at_ms": entry["at"],
        "text": entry["text"],
        "card_id": entry.get("cardId"),
        "kind": entry.get("kind"),
        "meta_json": _dumps(entry["meta"]) if entry.get("meta") else None,
    }


def _raw_history(row) -> Dict[str, Any]:
    return {
        "id": row.id,
        "at": row.at_ms,
        "text": row.text,
        "cardId": row.card_id,
        "kind": row.kind,
        "meta": _loads_dict(row.meta_json),
    }


@dataclass
class _SqlMutation:
    session: AsyncSession
    user_id: str
    now: int
    base_version: int
    changed: bool = True
    version: int = 0


class SqlBoardStore(BoardStore):
    backend = "sql"

    def __init__(
        self,
        database_url: str,
        media: MediaStore,
        clock: Clock = now_ms,
        media_quota_bytes: int = 160 * 1024 * 1024,
        echo: bool = False,
    ):
        super().__init__(media, clock, media_quota_bytes)
        self.engine = build_engine(database_url, echo=echo)
        self.session_factory = build_session_factory(self.engine)
        self._ready = False

    async def startup(self) -> None:
        await super().startup()
        await init_db(self.engine)
        self._ready = True
        storage_logger.info(f"[sql-store] schema ready ({self.engine.dialect.name})")

    async def shutdown(self) -> None:
        self._ready = False
        await self.engine.dispose()

    # --- transactions ---------------------------------------------------------------

    @asynccontextmanager
    async def _read(self):
        async with self.session_factory() as session:
            yield session

    async def _lock_version(self, session: AsyncSession, user_id: str) -> int:
        row = (
            await session.execute(
                select(versions_t.c.version).where(versions_t.c.user_id == user_id).with_for_update()
            )
        ).first()
        if row is None:
            await session.execute(insert(versions_t).values(user_id=user_id, version=0, updated_at_ms=self.clock()))
            return 0
        return int(row.version)

    @asynccontextmanager
    async def _write(self, user_id: str, reason: str, expected_version: Optional[int] = None):
        """One transaction: lock version, check it, yield, prune, bump, commit."""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    current = await self._lock_version(session, user_id)
                    if expected_version is not None and expected_version != current:
                        raise BoardVersionConflict(current)
                    before = await self._linked_media_ids(session, user_id)
                    mutation = _SqlMutation(session, user_id, self.clock(), current)
                    yield mutation
                    if mutation.changed:
                        await self._prune_history(session, user_id)
                        await self._prune_archive(session, user_id)
                        await self._prune_unlinked_media_files(session, user_id)
                        mutation.version = current + 1
                        await session.execute(
                            update(versions_t)
                            .where(versions_t.c.user_id == user_id)
                            .values(version=mutation.version, updated_at_ms=mutation.now)
                        )
                        after = await self._linked_media_ids(session, user_id)
                    else:
                        mutation.version = current
                        after = before
        except SQLAlchemyError:
            storage_logger.exception(f"[sql-store] {reason} failed for user {user_id}, rolled back")
            raise
        self.release_detached_media(before, after, reason)

    # --- media links -------------------------------------------------------------------

    async def _linked_media_ids(self, session: AsyncSession, user_id: str) -> Set[str]:
        rows = await session.execute(select(links_t.c.media_id).where(links_t.c.user_id == user_id).distinct())
        return set(rows.scalars())

    async def _replace_links(self, session: AsyncSession, user_id: str, owner_kind: str, card_id: str, comment_id: str, images) -> None:
        await self._delete_links(session, user_id, owner_kind, card_id, [comment_id])
        media_ids = collect_media_ids_from_images(images)
        if media_ids:
            await session.execute(insert(links_t), [
                {"user_id": user_id, "media_id": media_id, "owner_kind": owner_kind, "card_id": card_id, "comment_id": comment_id}
                for media_id in sorted(media_ids)
            ])

    async def _delete_links(self, session: AsyncSession, user_id: str, owner_kind: str, card_id: str, comment_ids: Optional[List[str]] = None) -> None:
        stmt = delete(links_t).where(
            links_t.c.user_id == user_id,
            links_t.c.owner_kind == owner_kind,
            links_t.c.card_id == card_id,
        )
        if comment_ids is not None:
            stmt = stmt.where(links_t.c.comment_id.in_(comment_ids))
        await session.execute(stmt)

    async def _prune_unlinked_media_files(self, session: AsyncSession, user_id: str) -> None:
        stmt = delete(media_files_t).where(
            media_files_t.c.user_id == user_id,
            media_files_t.c.media_id.not_in(select(links_t.c.media_id).where(links_t.c.user_id == user_id)),
        )
        protected = self.media.grace.active_ids()
        if protected:
            stmt = stmt.where(media_files_t.c.media_id.not_in(sorted(protected)))
        await session.execute(stmt)

    # --- pruning ---------------------------------------------------------------------------

    async def _prune_history(self, session: AsyncSession, user_id: str) -> None:
        stale = (
            await session.execute(
                select(history_t.c.id)
                .where(history_t.c.user_id == user_id)
                .order_by(history_t.c.at_ms.desc(), history_t.c.id.desc())
                .offset(MAX_HISTORY_ENTRIES)
            )
        ).scalars().all()
        if stale:
            await session.execute(delete(history_t).where(history_t.c.user_id == user_id, history_t.c.id.in_(stale)))

    async def _prune_archive(self, session: AsyncSession, user_id: str) -> None:
        stale = (
            await session.execute(
                select(archive_t.c.archive_id, archive_t.c.card_id)
                .where(archive_t.c.user_id == user_id)
                .order_by(archive_t.c.archived_at_ms.desc(), archive_t.c.archive_id.desc())
                .offset(MAX_ARCHIVED_COMMENTS_PER_USER)
            )
        ).all()
        if not stale:
            return
        await session.execute(delete(archive_t).where(archive_t.c.archive_id.in_([row.archive_id for row in stale])))
        await session.execute(
            delete(links_t).where(
                links_t.c.user_id == user_id,
                links_t.c.owner_kind == "comment_archive",
                links_t.c.comment_id.in_([f"a:{row.archive_id}" for row in stale]),
            )
        )
        storage_logger.info(f"[sql-store] archive of {user_id}: evicted {len(stale)} entries")

    # --- users and sessions ----------------------------------------------------------------

    async def create_user(self, user: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    key = login_key(user["login"])
                    if (await session.execute(select(users_t.c.id).where(users_t.c.login_key == key))).first():
                        raise ApiError(status.HTTP_409_CONFLICT, "LOGIN_TAKEN")
                    email = normalize_email(user["email"])
                    if (await session.execute(select(users_t.c.id).where(users_t.c.email == email))).first():
                        raise ApiError(status.HTTP_409_CONFLICT, "EMAIL_TAKEN")
                    await session.execute(insert(users_t).values(**_user_values(user)))
                    await session.execute(
                        insert(versions_t).values(user_id=user["id"], version=0, updated_at_ms=user["createdAt"])
                    )
        except IntegrityError as exc:
            # Параллельная регистрация с тем же логином или почтой
            raise ApiError(status.HTTP_409_CONFLICT, "LOGIN_TAKEN") from exc
        return dict(user)

    async def _find_user(self, condition) -> Optional[Dict[str, Any]]:
        async with self._read() as session:
            row = (await session.execute(select(users_t).where(condition))).first()
        return _user_record(row) if row else None

    async def get_user(self, user_id):
        return await self._find_user(users_t.c.id == user_id)

    async def find_user_by_login_key(self, key):
        return await self._find_user(users_t.c.login_key == key)

    async def find_user_by_email(self, email):
        return await self._find_user(users_t.c.email == normalize_email(email))

    async def update_user(self, user_id, updates):
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    if "login" in updates:
                        taken = (
                            await session.execute(
                                select(users_t.c.id).where(
                                    users_t.c.login_key == login_key(updates["login"]),
                                    users_t.c.id != user_id,
                                )
                            )
                        ).first()
                        if taken:
                            raise ApiError(status.HTTP_409_CONFLICT, "LOGIN_TAKEN")
                    values = _user_values(updates)
                    if values:
                        await session.execute(update(users_t).where(users_t.c.id == user_id).values(**values))
                    row = (await session.execute(select(users_t).where(users_t.c.id == user_id))).first()
        except IntegrityError as exc:
            raise ApiError(status.HTTP_409_CONFLICT, "LOGIN_TAKEN") from exc
        if row is None:
            raise ApiError(status.HTTP_401_UNAUTHORIZED, "UNAUTHORIZED")
        return _user_record(row)

    async def create_session(self, session_record):
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(delete(sessions_t).where(sessions_t.c.expires_at_ms <= self.clock()))
                await session.execute(insert(sessions_t).values(
                    id=session_record["id"],
                    user_id=session_record["userId"],
                    created_at_ms=session_record["createdAt"],
                    expires_at_ms=session_record["expiresAt"],
                ))

    async def get_session(self, session_id):
        async with self._read() as session:
            row = (
                await session.execute(
                    select(sessions_t).where(sessions_t.c.id == session_id, sessions_t.c.expires_at_ms > self.clock())
                )
            ).first()
        if row is None:
            return None
        return {"id": row.id, "userId": row.user_id, "createdAt": row.created_at_ms, "expiresAt": row.expires_at_ms}

    async def delete_session(self, session_id):
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(delete(sessions_t).where(sessions_t.c.id == session_id))
        return bool(result.rowcount)

    # --- board state --------------------------------------------------------------------------

    async def _load_state(self, session: AsyncSession, user_id: str) -> Dict[str, Any]:
        comments_by_card: Dict[str, List[Dict[str, Any]]] = {}
        for row in await session.execute(select(comments_t).where(comments_t.c.user_id == user_id)):
            comments_by_card.setdefault(row.card_id, []).append(_raw_comment(row))

        cards = {
            row.id: _raw_card(row, comments_by_card.get(row.id, ()))
            for row in await session.execute(select(cards_t).where(cards_t.c.user_id == user_id))
        }
        columns: Dict[str, List[str]] = {column_id: [] for column_id in COLUMN_IDS}
        column_rows = await session.execute(
            select(columns_t).where(columns_t.c.user_id == user_id).order_by(columns_t.c.column_id, columns_t.c.sort_index)
        )
        for row in column_rows:
            columns.setdefault(row.column_id, []).append(row.card_id)
        floating = {
            row.card_id: {"x": row.x, "y": row.y, "swayOffsetMs": row.sway_offset_ms}
            for row in await session.execute(select(floating_t).where(floating_t.c.user_id == user_id))
        }
        history_rows = await session.execute(
            select(history_t)
            .where(history_t.c.user_id == user_id)
            .order_by(history_t.c.at_ms.desc(), history_t.c.id.desc())
            .limit(MAX_HISTORY_ENTRIES)
        )
        raw = {
            "cardsById": cards,
            "columns": columns,
            "floatingById": floating,
            "history": [_raw_history(row) for row in history_rows],
        }
        return sanitize_board_state(raw, self.media)

    async def _current_version(self, session: AsyncSession, user_id: str) -> int:
        version = (await session.execute(select(versions_t.c.version).where(versions_t.c.user_id == user_id))).scalar()
        return int(version or 0)

    async def read_board(self, user_id):
        async with self._read() as session:
            state = await self._load_state(session, user_id)
            version = await self._current_version(session, user_id)
        return state, version

    async def get_version(self, user_id):
        async with self._read() as session:
            return await self._current_version(session, user_id)

    async def board_etag(self, user_id):
        return board_version_etag(await self.get_version(user_id))

    @log_function()
    async def write_board(self, user_id, raw_state, expected_version=None):
        state = sanitize_board_state(raw_state, self.media, persist_data_urls=True, owner_user_id=user_id)
        if state is None:
            raise bad_request("INVALID_BOARD_STATE")
        async with self._write(user_id, "board-replace", expected_version) as m:
            previous = await self._load_state(m.session, user_id)
            await self._replace_state(m.session, user_id, previous, state)
        return {"state": state, "version": m.version, "updatedAt": m.now}

    async def _replace_state(self, session: AsyncSession, user_id: str, previous: Dict[str, Any], state: Dict[str, Any]) -> None:
        """Write only the rows that differ between ``previous`` and ``state``."""
        previous_cards = previous["cardsById"]
        next_cards = state["cardsById"]

        for card_id in previous_cards.keys() - next_cards.keys():
            await self._delete_card_rows(session, user_id, card_id)

        for card_id, card in next_cards.items():
            old = previous_cards.get(card_id)
            values = _card_values(user_id, card)
            if old is None:
                await session.execute(insert(cards_t).values(**values))
                await self._replace_links(session, user_id, "card", card_id, "", card["images"])
            else:
                old_values = _card_values(user_id, old)
                if values != old_values:
                    await session.execute(
                        update(cards_t).where(cards_t.c.user_id == user_id, cards_t.c.id == card_id).values(**values)
                    )
                if values["images_json"] != old_values["images_json"]:
                    await self._replace_links(session, user_id, "card", card_id, "", card["images"])
            await self._sync_comments(session, user_id, card_id, old["comments"] if old else [], card["comments"])

        changed_columns = [
            column_id for column_id in COLUMN_IDS if previous["columns"][column_id] != state["columns"][column_id]
        ]
        if changed_columns:
            await session.execute(
                delete(columns_t).where(columns_t.c.user_id == user_id, columns_t.c.column_id.in_(changed_columns))
            )
            rows = [
                {"user_id": user_id, "card_id": card_id, "column_id": column_id, "sort_index": index}
                for column_id in changed_columns
                for index, card_id in enumerate(state["columns"][column_id])
            ]
            if rows:
                await session.execute(insert(columns_t), rows)

        previous_floating = previous["floatingById"]
        next_floating = state["floatingById"]
        stale_pins = [card_id for card_id, pin in previous_floating.items() if next_floating.get(card_id) != pin]
        if stale_pins:
            await session.execute(
                delete(floating_t).where(floating_t.c.user_id == user_id, floating_t.c.card_id.in_(stale_pins))
            )
        new_pins = [
            {"user_id": user_id, "card_id": card_id, "x": pin["x"], "y": pin["y"], "sway_offset_ms": pin["swayOffsetMs"]}
            for card_id, pin in next_floating.items()
            if previous_floating.get(card_id) != pin
        ]
        if new_pins:
            # Сироты получили позицию при чтении, но строки в таблице у них может не быть
            await session.execute(
                delete(floating_t).where(
                    floating_t.c.user_id == user_id, floating_t.c.card_id.in_([row["card_id"] for row in new_pins])
                )
            )
            await session.execute(insert(floating_t), new_pins)

        previous_history = {entry["id"] for entry in previous["history"]}
        next_history = {entry["id"] for entry in state["history"]}
        removed_history = previous_history - next_history
        if removed_history:
            await session.execute(
                delete(history_t).where(history_t.c.user_id == user_id, history_t.c.id.in_(sorted(removed_history)))
            )
        added_history = [_history_values(user_id, entry) for entry in state["history"] if entry["id"] not in previous_history]
        if added_history:
            await session.execute(insert(history_t), added_history)

    async def _sync_comments(self, session: AsyncSession, user_id: str, card_id: str, old_comments, new_comments) -> None:
        old_by_id = {comment["id"]: comment for comment in old_comments}
        new_ids = {comment["id"] for comment in new_comments}
        removed = sorted(old_by_id.keys() - new_ids)
        if removed:
            await session.execute(
                delete(comments_t).where(
                    comments_t.c.user_id == user_id, comments_t.c.card_id == card_id, comments_t.c.id.in_(removed)
                )
            )
            await self._delete_links(session, user_id, "comment", card_id, removed)
        for comment in new_comments:
            values = _comment_values(user_id, card_id, comment)
            old = old_by_id.get(comment["id"])
            if old is None:
                await session.execute(insert(comments_t).values(**values))
            elif values != _comment_values(user_id, card_id, old):
                await session.execute(
                    update(comments_t)
                    .where(comments_t.c.user_id == user_id, comments_t.c.card_id == card_id, comments_t.c.id == comment["id"])
                    .values(**values)
                )
            else:
                continue
            await self._replace_links(session, user_id, "comment", card_id, comment["id"], comment["images"])

    # --- card rows -------------------------------------------------------------------------------

    async def _card_row(self, session: AsyncSession, user_id: str, card_id: str):
        return (
            await session.execute(select(cards_t).where(cards_t.c.user_id == user_id, cards_t.c.id == card_id))
        ).first()

    async def _card_comments(self, session: AsyncSession, user_id: str, card_id: str) -> List[Dict[str, Any]]:
        rows = await session.execute(
            select(comments_t)
            .where(comments_t.c.user_id == user_id, comments_t.c.card_id == card_id)
            .order_by(comments_t.c.created_at_ms, comments_t.c.id)
        )
        return sanitize_comments([_raw_comment(row) for row in rows], self.media, enforce_max=False)

    async def _card(self, session: AsyncSession, user_id: str, row, with_comments: bool = True) -> Dict[str, Any]:
        comments = await self._card_comments(session, user_id, row.id) if with_comments else ()
        return sanitize_card(row.id, _raw_card(row, comments), self.media)

    async def _position(self, session: AsyncSession, user_id: str, card_id: str) -> Tuple[Optional[str], int]:
        row = (
            await session.execute(
                select(columns_t.c.column_id, columns_t.c.sort_index).where(
                    columns_t.c.user_id == user_id, columns_t.c.card_id == card_id
                )
            )
        ).first()
        return (row.column_id, int(row.sort_index)) if row else (None, -1)

    async def _column_length(self, session: AsyncSession, user_id: str, column_id: str) -> int:
        return int((
            await session.execute(
                select(func.count()).select_from(columns_t).where(
                    columns_t.c.user_id == user_id, columns_t.c.column_id == column_id
                )
            )
        ).scalar() or 0)

    async def _shift_column(self, session: AsyncSession, user_id: str, column_id: str, start: int, delta: int) -> None:
        """Move every position ``>= start`` by ``delta`` without breaking uniqueness midway."""
        in_column = (columns_t.c.user_id == user_id, columns_t.c.column_id == column_id)
        await session.execute(
            update(columns_t)
            .where(*in_column, columns_t.c.sort_index >= start)
            .values(sort_index=columns_t.c.sort_index + SHIFT_OFFSET + delta)
        )
        await session.execute(
            update(columns_t)
            .where(*in_column, columns_t.c.sort_index >= SHIFT_OFFSET // 2)
            .values(sort_index=columns_t.c.sort_index - SHIFT_OFFSET)
        )

    async def _detach(self, session: AsyncSession, user_id: str, card_id: str) -> Tuple[Optional[str], int]:
        column_id, index = await self._position(session, user_id, card_id)
        if column_id:
            await session.execute(delete(columns_t).where(columns_t.c.user_id == user_id, columns_t.c.card_id == card_id))
            await self._shift_column(session, user_id, column_id, index + 1, -1)
        await session.execute(delete(floating_t).where(floating_t.c.user_id == user_id, floating_t.c.card_id == card_id))
        return column_id, index

    async def _attach(self, session: AsyncSession, user_id: str, column_id: str, card_id: str, index: Optional[int]) -> int:
        length = await self._column_length(session, user_id, column_id)
        position = length if index is None else clamp_index(index, 0, length)
        await self._shift_column(session, user_id, column_id, position, 1)
        await session.execute(
            insert(columns_t).values(user_id=user_id, card_id=card_id, column_id=column_id, sort_index=position)
        )
        return position

    async def _insert_history(self, session: AsyncSession, user_id: str, entry: Dict[str, Any]) -> None:
        await session.execute(insert(history_t).values(**_history_values(user_id, entry)))

    async def _delete_card_rows(self, session: AsyncSession, user_id: str, card_id: str) -> None:
        await session.execute(
            delete(comments_t).where(comments_t.c.user_id == user_id, comments_t.c.card_id == card_id)
        )
        await self._delete_links(session, user_id, "comment", card_id)
        await self._delete_links(session, user_id, "card", card_id)
        await session.execute(delete(cards_t).where(cards_t.c.user_id == user_id, cards_t.c.id == card_id))

    # --- cards -------------------------------------------------------------------------------------

    async def get_card(self, user_id, card_id):
        async with self._read() as session:
            row = await self._card_row(session, user_id, card_id)
            if row is None:
                raise card_not_found()
            card = await self._card(session, user_id, row)
            column_id, index = await self._position(session, user_id, card_id)
            pin = (
                await session.execute(
                    select(floating_t).where(floating_t.c.user_id == user_id, floating_t.c.card_id == card_id)
                )
            ).first()
            version = await self._current_version(session, user_id)
        card["status"] = column_id or ("freedom" if pin else "queue")
        return {
            "card": card,
            "columnId": column_id,
            "index": index,
            "floating": {"x": pin.x, "y": pin.y, "swayOffsetMs": pin.sway_offset_ms} if pin else None,
            "version": version,
        }

    @log_function()
    async def create_card(self, user, title, description, images, urgency, column_id, index):
        user_id = user["id"]
        title, description = card_text_fields(title, description)
        async with self._write(user_id, "card-create") as m:
            card_images = sanitize_card_images(images, self.media, persist_data_urls=True, owner_user_id=user_id)
            existing_ids = (await m.session.execute(select(cards_t.c.id).where(cards_t.c.user_id == user_id))).scalars()
            card_id = next_sequential_card_id(existing_ids)
            card = new_card(card_id, title, description, card_images, urgency, column_id, user.get("login"), m.now)
            await m.session.execute(insert(cards_t).values(**_card_values(user_id, card)))
            await self._replace_links(m.session, user_id, "card", card_id, "", card_images)
            position = await self._attach(m.session, user_id, column_id, card_id, index if index is not None else 0)
            await self._insert_history(m.session, user_id, make_history_entry(
                "create", create_history_text(title, column_id), m.now, card_id=card_id, title=title, to_column=column_id
            ))
        return {"card": card, "columnId": column_id, "index": position, "updatedAt": m.now, "version": m.version}

    async def _move_locked(self, m: _SqlMutation, card_id: str, to_column: str, to_index: Optional[int]) -> Dict[str, Any]:
        row = await self._card_row(m.session, m.user_id, card_id)
        if row is None:
            raise card_not_found(card_id)
        card = await self._card(m.session, m.user_id, row)
        from_column, _ = await self._detach(m.session, m.user_id, card_id)
        position = await self._attach(m.session, m.user_id, to_column, card_id, to_index)
        delta = apply_doing_transition(card, from_column, to_column, m.now)
        card["status"] = to_column
        await m.session.execute(
            update(cards_t)
            .where(cards_t.c.user_id == m.user_id, cards_t.c.id == card_id)
            .values(status=to_column, doing_started_at_ms=card["doingStartedAt"], doing_total_ms=card["doingTotalMs"])
        )
        await self._insert_history(m.session, m.user_id, make_history_entry(
            "move",
            move_history_text(card["title"], from_column, to_column, delta),
            m.now,
            card_id=card_id,
            title=card["title"],
            from_column=from_column,
            to_column=to_column,
            doing_delta_ms=delta,
        ))
        return {"card": card, "fromColumnId": from_column, "toColumnId": to_column, "toIndex": position}

    @log_function()
    async def move_card(self, user_id, card_id, to_column, to_index):
        async with self._write(user_id, "card-move") as m:
            result = await self._move_locked(m, card_id, to_column, to_index)
        return {**result, "updatedAt": m.now, "version": m.version}

    @log_function()
    async def patch_card(self, user_id, card_id, patch):
        async with self._write(user_id, "card-patch") as m:
            row = await self._card_row(m.session, user_id, card_id)
            if row is None:
                raise card_not_found()
            card = await self._card(m.session, user_id, row)
            patch_scalar_fields(card, patch)
            if "images" in patch:
                card["images"] = sanitize_card_images(patch["images"], self.media, persist_data_urls=True, owner_user_id=user_id)
            if "checklist" in patch:
                card["checklist"] = sanitize_checklist(patch["checklist"])
            await m.session.execute(
                update(cards_t).where(cards_t.c.user_id == user_id, cards_t.c.id == card_id).values(**_card_values(user_id, card))
            )
            if "images" in patch:
                await self._replace_links(m.session, user_id, "card", card_id, "", card["images"])
            column_id, index = await self._position(m.session, user_id, card_id)
        return {"card": card, "columnId": column_id, "index": index, "updatedAt": m.now, "version": m.version}

    async def _delete_locked(self, m: _SqlMutation, card_id: str) -> Dict[str, Any]:
        row = await self._card_row(m.session, m.user_id, card_id)
        card = await self._card(m.session, m.user_id, row)
        archived = await self._archive_rows(m.session, m.user_id, card_id, card["comments"], "card-delete", m.now)
        from_column, _ = await self._detach(m.session, m.user_id, card_id)
        await self._delete_card_rows(m.session, m.user_id, card_id)
        delta = pending_doing_delta(card, from_column, m.now)
        await self._insert_history(m.session, m.user_id, make_history_entry(
            "delete",
            delete_history_text(card["title"], from_column, delta),
            m.now,
            title=card["title"],
            from_column=from_column,
            doing_delta_ms=delta,
        ))
        return {"cardId": card_id, "fromColumnId": from_column, "archivedComments": len(archived)}

    @log_function()
    async def delete_card(self, user_id, card_id):
        async with self._write(user_id, "card-delete") as m:
            if await self._card_row(m.session, user_id, card_id) is None:
                raise repeated_delete()
            deleted = await self._delete_locked(m, card_id)
        return {
            "deletedId": card_id,
            "fromColumnId": deleted["fromColumnId"],
            "archivedComments": deleted["archivedComments"],
            "updatedAt": m.now,
            "version": m.version,
        }

    @log_function()
    async def bulk_move_cards(self, user_id, moves, continue_on_error):
        async with self._write(user_id, "cards-bulk-move") as m:
            async def apply(index, operation):
                card_id, to_column, to_index = parse_bulk_move(operation)
                result = await self._move_locked(m, card_id, to_column, to_index)
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
        async with self._write(user_id, "cards-bulk-delete") as m:
            async def apply(index, raw_id):
                card_id = normalize_card_id(raw_id) if isinstance(raw_id, (str, int)) and not isinstance(raw_id, bool) else None
                if not card_id:
                    raise bad_request("INVALID_CARD_ID")
                if await self._card_row(m.session, user_id, card_id) is None:
                    raise card_not_found()
                deleted = await self._delete_locked(m, card_id)
                return {"cardId": card_id, "fromColumnId": deleted["fromColumnId"]}

            deleted, errors = await run_bulk(dedupe_card_ids(card_ids), continue_on_error, apply)
            m.changed = bool(deleted)
        return {**bulk_result("deleted", deleted, errors), "updatedAt": m.now, "version": m.version}

    # --- comments -----------------------------------------------------------------------------------

    async def _require_card(self, session: AsyncSession, user_id: str, card_id: str) -> None:
        if await self._card_row(session, user_id, card_id) is None:
            raise card_not_found()

    async def _comment(self, session: AsyncSession, user_id: str, card_id: str, comment_id: str) -> Optional[Dict[str, Any]]:
        row = (
            await session.execute(
                select(comments_t).where(
                    comments_t.c.user_id == user_id, comments_t.c.card_id == card_id, comments_t.c.id == comment_id
                )
            )
        ).first()
        return sanitize_comment_entry(_raw_comment(row), self.media) if row else None

    async def _archive_rows(self, session: AsyncSession, user_id: str, card_id: str, comments, reason: str, now: int) -> List[Dict[str, Any]]:
        archived = []
        reason = sanitize_comment_archive_reason(reason)
        for comment in comments:
            values = _comment_values(user_id, card_id, comment)
            values.update({"archived_at_ms": now, "archive_reason": reason})
            result = await session.execute(insert(archive_t).values(**values))
            archive_id = int(result.inserted_primary_key[0])
            await self._replace_links(session, user_id, "comment_archive", card_id, f"a:{archive_id}", comment.get("images"))
            archived.append(archive_entry(comment, card_id, reason, now, archive_id))
        return archived

    async def _remove_comments(self, session: AsyncSession, user_id: str, card_id: str, comment_ids: List[str]) -> None:
        await session.execute(
            delete(comments_t).where(
                comments_t.c.user_id == user_id, comments_t.c.card_id == card_id, comments_t.c.id.in_(comment_ids)
            )
        )
        await self._delete_links(session, user_id, "comment", card_id, comment_ids)

    async def _apply_overflow(self, session: AsyncSession, user_id: str, card_id: str, now: int) -> Tuple[int, int]:
        """Archive the oldest comments beyond the cap; returns ``(live, archived)`` counts."""
        comments = await self._card_comments(session, user_id, card_id)
        kept, overflow = split_overflow(comments)
        if overflow:
            await self._archive_rows(session, user_id, card_id, overflow, "overflow", now)
            await self._remove_comments(session, user_id, card_id, [comment["id"] for comment in overflow])
        return len(kept), len(overflow)

    async def _insert_comment(self, session: AsyncSession, user_id: str, card_id: str, comment: Dict[str, Any]) -> None:
        await session.execute(insert(comments_t).values(**_comment_values(user_id, card_id, comment)))
        await self._replace_links(session, user_id, "comment", card_id, comment["id"], comment["images"])

    async def list_comments(self, user_id, card_id):
        async with self._read() as session:
            await self._require_card(session, user_id, card_id)
            comments = await self._card_comments(session, user_id, card_id)
            version = await self._current_version(session, user_id)
        return comments, version

    @log_function()
    async def add_comment(self, user, card_id, text, images):
        user_id = user["id"]
        async with self._write(user_id, "comment-create") as m:
            await self._require_card(m.session, user_id, card_id)
            comment = build_new_comment(text, images, user.get("login"), m.now, self.media, user_id)
            await self._insert_comment(m.session, user_id, card_id, comment)
            live, overflow = await self._apply_overflow(m.session, user_id, card_id, m.now)
        return {"comment": comment, "commentsCount": live, "archivedCount": overflow, "updatedAt": m.now, "version": m.version}

    @log_function()
    async def edit_comment(self, user, card_id, comment_id, patch):
        user_id = user["id"]
        async with self._write(user_id, "comment-edit") as m:
            await self._require_card(m.session, user_id, card_id)
            current = await self._comment(m.session, user_id, card_id, comment_id)
            if current is None:
                raise comment_not_found()
            ensure_comment_author(current, user.get("login"))
            comment = apply_comment_edit(current, patch, m.now, self.media, user_id)
            await m.session.execute(
                update(comments_t)
                .where(comments_t.c.user_id == user_id, comments_t.c.card_id == card_id, comments_t.c.id == comment_id)
                .values(**_comment_values(user_id, card_id, comment))
            )
            await self._replace_links(m.session, user_id, "comment", card_id, comment_id, comment["images"])
        return {"comment": comment, "updatedAt": m.now, "version": m.version}

    @log_function()
    async def delete_comment(self, user, card_id, comment_id):
        user_id = user["id"]
        async with self._write(user_id, "comment-delete") as m:
            await self._require_card(m.session, user_id, card_id)
            comment = await self._comment(m.session, user_id, card_id, comment_id)
            if comment is None:
                raise repeated_delete()
            ensure_comment_author(comment, user.get("login"))
            archived = await self._archive_rows(m.session, user_id, card_id, [comment], "delete", m.now)
            await self._remove_comments(m.session, user_id, card_id, [comment_id])
            count = (
                await m.session.execute(
                    select(func.count()).select_from(comments_t).where(
                        comments_t.c.user_id == user_id, comments_t.c.card_id == card_id
                    )
                )
            ).scalar()
        return {
            "deletedId": comment_id,
            "archiveId": archived[0]["archiveId"],
            "commentsCount": int(count or 0),
            "updatedAt": m.now,
            "version": m.version,
        }

    @log_function()
    async def archive_comments(self, user_id, card_id, comment_ids, reason):
        wanted = sorted(set(comment_ids))
        async with self._write(user_id, f"comment-archive-{reason}") as m:
            await self._require_card(m.session, user_id, card_id)
            comments = [
                comment
                for comment in await self._card_comments(m.session, user_id, card_id)
                if comment["id"] in wanted
            ]
            archived = await self._archive_rows(m.session, user_id, card_id, comments, reason, m.now)
            if comments:
                await self._remove_comments(m.session, user_id, card_id, [comment["id"] for comment in comments])
            m.changed = bool(comments)
        return archived

    async def list_archived_comments(self, user_id, card_id, reason, order, offset, limit):
        conditions = [archive_t.c.user_id == user_id, archive_t.c.card_id == card_id]
        if reason is not None:
            conditions.append(archive_t.c.archive_reason == reason)
        ordering = (
            (archive_t.c.archived_at_ms.asc(), archive_t.c.archive_id.asc())
            if order == "asc"
            else (archive_t.c.archived_at_ms.desc(), archive_t.c.archive_id.desc())
        )
        async with self._read() as session:
            rows = await session.execute(
                select(archive_t).where(*conditions).order_by(*ordering).offset(offset).limit(limit)
            )
            entries = [entry for entry in (sanitize_archived_comment(_raw_archive(row)) for row in rows) if entry]
            total = (
                await session.execute(select(func.count()).select_from(archive_t).where(*conditions))
            ).scalar()
        return entries, int(total or 0)

    @log_function()
    async def restore_archived_comment(self, user, card_id, archive_id):
        user_id = user["id"]
        async with self._write(user_id, "comment-restore") as m:
            await self._require_card(m.session, user_id, card_id)
            row = (
                await m.session.execute(
                    select(archive_t).where(
                        archive_t.c.user_id == user_id,
                        archive_t.c.card_id == card_id,
                        archive_t.c.archive_id == archive_id,
                    )
                )
            ).first()
            entry = sanitize_archived_comment(_raw_archive(row)) if row else None
            if entry is None:
                raise archived_comment_not_found()
            taken = (
                await m.session.execute(
                    select(comments_t.c.id).where(comments_t.c.user_id == user_id, comments_t.c.card_id == card_id)
                )
            ).scalars().all()
            comment = restored_comment(entry, taken, m.now)
            await self._insert_comment(m.session, user_id, card_id, comment)
            await m.session.execute(delete(archive_t).where(archive_t.c.archive_id == archive_id))
            await self._delete_links(m.session, user_id, "comment_archive", card_id, [f"a:{archive_id}"])
            live, overflow = await self._apply_overflow(m.session, user_id, card_id, m.now)
        return {"comment": comment, "commentsCount": live, "archivedCount": overflow, "updatedAt": m.now, "version": m.version}

    # --- history ----------------------------------------------------------------------------------------

    async def append_history(self, user_id, entry):
        sanitized = sanitize_history_entry(entry)
        if sanitized is None:
            raise bad_request("INVALID_HISTORY_ENTRY")
        async with self._write(user_id, "history-append") as m:
            await m.session.execute(
                delete(history_t).where(history_t.c.user_id == user_id, history_t.c.id == sanitized["id"])
            )
            await self._insert_history(m.session, user_id, sanitized)
        return {"entry": sanitized, "updatedAt": m.now, "version": m.version}

    async def list_history(self, user_id, kind, order, offset, limit):
        conditions = [history_t.c.user_id == user_id]
        if kind is not None:
            conditions.append(history_t.c.kind == kind)
        ordering = (
            (history_t.c.at_ms.asc(), history_t.c.id.asc())
            if order == "asc"
            else (history_t.c.at_ms.desc(), history_t.c.id.desc())
        )
        async with self._read() as session:
            rows = await session.execute(select(history_t).where(*conditions).order_by(*ordering).offset(offset).limit(limit))
            entries = [entry for entry in (sanitize_history_entry(_raw_history(row)) for row in rows) if entry]
            total = (await session.execute(select(func.count()).select_from(history_t).where(*conditions))).scalar()
        return entries, int(total or 0)

    async def clear_history(self, user_id):
        async with self._write(user_id, "history-clear") as m:
            result = await m.session.execute(delete(history_t).where(history_t.c.user_id == user_id))
        return {"deletedCount": int(result.rowcount or 0), "updatedAt": m.now, "version": m.version}

    async def delete_history_entry(self, user_id, entry_id):
        async with self._write(user_id, "history-delete") as m:
            result = await m.session.execute(
                delete(history_t).where(history_t.c.user_id == user_id, history_t.c.id == entry_id)
            )
            if not result.rowcount:
                raise repeated_delete()
        return {"deletedId": entry_id, "updatedAt": m.now, "version": m.version}

    # --- media -------------------------------------------------------------------------------------------

    async def _record_media_file(self, user_id: str, persisted: PersistedMedia, created_at: int) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                exists = (
                    await session.execute(
                        select(media_files_t.c.media_id).where(
                            media_files_t.c.user_id == user_id, media_files_t.c.media_id == persisted.media_id
                        )
                    )
                ).first()
                values = {"mime": persisted.mime, "size": persisted.size, "updated_at_ms": self.clock()}
                if exists:
                    await session.execute(
                        update(media_files_t)
                        .where(media_files_t.c.user_id == user_id, media_files_t.c.media_id == persisted.media_id)
                        .values(**values)
                    )
                else:
                    await session.execute(insert(media_files_t).values(
                        user_id=user_id, media_id=persisted.media_id, created_at_ms=created_at, **values
                    ))

    async def media_usage(self, user_id):
        usage: Dict[str, int] = {}
        async with self._read() as session:
            for table in (cards_t, comments_t, archive_t):
                raw_images = await session.execute(select(table.c.images_json).where(table.c.user_id == user_id))
                for raw in raw_images.scalars():
                    add_media_usage_from_images(_loads_objects(raw), usage)
            files = await session.execute(
                select(media_files_t.c.media_id, media_files_t.c.size).where(media_files_t.c.user_id == user_id)
            )
            for row in files:
                if row.media_id in usage:
                    usage[row.media_id] = int(row.size or 0)
        return usage

    async def referenced_media_ids(self) -> Optional[Set[str]]:
        if not self._ready:
            return None
        async with self._read() as session:
            rows = await session.execute(select(links_t.c.media_id).distinct())
            return set(rows.scalars())
