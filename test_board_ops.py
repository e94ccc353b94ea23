import pytest

from src.core.errors import ApiError
from src.core.limits import REPEATED_DELETE_ERROR_TEXT
from src.services.board_ops import (
    bulk_result,
    dedupe_card_ids,
    delete_card_in_state,
    move_card_in_state,
    new_card,
    page_info,
    parse_bulk_move,
    parse_bulk_operations,
    parse_column_id,
    parse_expected_version,
    parse_target_index,
    parse_urgency,
    run_bulk,
)
from src.services.sanitizer import default_board_state

HOUR = 60 * 60 * 1000


def board_with(*cards):
    state = default_board_state()
    for card_id, column_id in cards:
        state["cardsById"][card_id] = new_card(card_id, f"Title {card_id}", "", [], "white", column_id, "alice", 0)
        state["columns"][column_id].append(card_id)
    return state


def error_code(callable_, *args):
    with pytest.raises(ApiError) as exc_info:
        callable_(*args)
    return exc_info.value.detail["error"]


class TestRequestParsing:
    """Тесты разбора входных данных"""

    def test_column(self):
        assert parse_column_id("doing") == "doing"
        assert parse_column_id(None, default="queue") == "queue"
        assert error_code(parse_column_id, "backlog") == "INVALID_COLUMN"
        assert error_code(parse_column_id, None) == "INVALID_COLUMN"

    def test_index(self):
        assert parse_target_index(None) is None
        assert parse_target_index("2") == 2
        assert error_code(parse_target_index, "x") == "INVALID_INDEX"
        assert error_code(parse_target_index, True) == "INVALID_INDEX"

    def test_urgency(self):
        assert parse_urgency(None) == "white"
        assert parse_urgency("red") == "red"
        with pytest.raises(ApiError) as exc_info:
            parse_urgency("blue")
        assert exc_info.value.detail == {"error": "INVALID_URGENCY", "allowed": ["white", "yellow", "pink", "red"]}

    def test_expected_version(self):
        assert parse_expected_version(None) is None
        assert parse_expected_version("") is None
        assert parse_expected_version("3") == 3
        assert error_code(parse_expected_version, -1) == "INVALID_BOARD_VERSION"
        assert error_code(parse_expected_version, "abc") == "INVALID_BOARD_VERSION"

    def test_bulk_operations(self):
        assert error_code(parse_bulk_operations, [], "INVALID_MOVES") == "INVALID_MOVES"
        assert error_code(parse_bulk_operations, "P-1", "INVALID_CARD_IDS") == "INVALID_CARD_IDS"
        assert error_code(parse_bulk_operations, list(range(201)), "INVALID_MOVES") == "TOO_MANY_OPERATIONS"

    def test_bulk_move(self):
        assert parse_bulk_move({"cardId": " P-1 ", "toColumnId": "done"}) == ("P-1", "done", None)
        assert error_code(parse_bulk_move, {"toColumnId": "done"}) == "INVALID_CARD_ID"
        assert error_code(parse_bulk_move, "P-1") == "INVALID_MOVE"

    def test_dedupe_keeps_invalid_ids(self):
        assert dedupe_card_ids(["P-1", "P-2", "P-1", None, True]) == ["P-1", "P-2", None, True]


class TestDoingTimer:
    """Тесты таймера колонки «Делаем»"""

    def test_create_doing_done_scenario(self):
        """Создание → «Делаем» → «Сделано» копит время в doingTotalMs"""
        state = board_with(("P-1", "queue"))

        entered = move_card_in_state(state, "P-1", "doing", 0, 1000)
        card = entered["card"]
        assert card["doingStartedAt"] == 1000
        assert card["status"] == "doing"
        assert state["history"][0]["text"].endswith("(таймер запущен)")

        left = move_card_in_state(state, "P-1", "done", None, 1000 + HOUR + 61_000)
        card = left["card"]
        assert card["doingStartedAt"] is None
        assert card["doingTotalMs"] == HOUR + 61_000
        assert left["fromColumnId"] == "doing"
        assert state["history"][0]["text"] == (
            'Карточка "Title P-1" перемещена: "Делаем" → "Сделано" (таймер +01:01:01)'
        )
        assert state["history"][0]["meta"]["doingDeltaMs"] == HOUR + 61_000
        assert state["columns"] == {"queue": [], "doing": [], "review": [], "done": ["P-1"]}

    def test_move_within_doing_keeps_timer(self):
        state = board_with(("P-1", "doing"), ("P-2", "doing"))
        state["cardsById"]["P-1"]["doingStartedAt"] = 500

        result = move_card_in_state(state, "P-1", "doing", 5, 2000)

        assert result["toIndex"] == 1
        assert result["card"]["doingStartedAt"] == 500
        assert state["columns"]["doing"] == ["P-2", "P-1"]

    def test_floating_card_moves_into_column(self):
        state = board_with()
        state["cardsById"]["F-1"] = new_card("F-1", "Free", "", [], "white", "queue", None, 0)
        state["floatingById"]["F-1"] = {"x": 1, "y": 2, "swayOffsetMs": 0}

        result = move_card_in_state(state, "F-1", "review", None, 10)

        assert result["fromColumnId"] is None
        assert state["floatingById"] == {}
        assert state["columns"]["review"] == ["F-1"]
        assert '"Очередь" → "Проверка"' in state["history"][0]["text"]

    def test_move_missing_card(self):
        with pytest.raises(ApiError) as exc_info:
            move_card_in_state(board_with(), "P-9", "done", None, 0)
        assert exc_info.value.status_code == 404
        assert exc_info.value.detail == {"error": "CARD_NOT_FOUND", "cardId": "P-9"}

    def test_delete_from_doing_reports_elapsed_time(self):
        state = board_with(("P-1", "doing"))
        state["cardsById"]["P-1"]["doingStartedAt"] = 0

        result = delete_card_in_state(state, "P-1", 5000)

        assert result["deletedId"] == "P-1"
        assert "P-1" not in state["cardsById"]
        assert state["history"][0]["kind"] == "delete"
        assert state["history"][0]["text"] == 'Карточка "Title P-1" удалена из "Делаем" (таймер +00:00:05)'

    def test_repeated_delete(self):
        with pytest.raises(ApiError) as exc_info:
            delete_card_in_state(board_with(), "P-1", 0)
        assert exc_info.value.status_code == 404
        assert exc_info.value.detail["error"] == REPEATED_DELETE_ERROR_TEXT


class TestBulk:
    @pytest.mark.asyncio
    async def test_continue_on_error(self):
        async def apply(index, operation):
            if operation == "bad":
                raise ApiError(404, "CARD_NOT_FOUND")
            return {"cardId": operation}

        done, errors = await run_bulk(["P-1", "bad", "P-2"], True, apply)

        assert done == [{"cardId": "P-1"}, {"cardId": "P-2"}]
        assert errors == [{"index": 1, "error": "CARD_NOT_FOUND", "cardId": "bad"}]
        assert bulk_result("moved", done, errors)["partial"] is True

    @pytest.mark.asyncio
    async def test_first_error_aborts(self):
        async def apply(index, operation):
            raise ApiError(400, "INVALID_COLUMN")

        with pytest.raises(ApiError) as exc_info:
            await run_bulk([{"cardId": "P-3"}], False, apply)
        assert exc_info.value.detail == {"error": "INVALID_COLUMN", "index": 0, "cardId": "P-3"}


class TestPageInfo:
    def test_has_more(self):
        assert page_info(2, 0, 2, 5, "desc") == {
            "limit": 2, "offset": 0, "returned": 2, "hasMore": True, "nextOffset": 2, "order": "desc",
        }

    def test_last_page(self):
        info = page_info(2, 4, 1, 5, "asc")
        assert info["hasMore"] is False
        assert info["nextOffset"] is None
