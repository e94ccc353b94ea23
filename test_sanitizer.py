import pytest

from src.services.sanitizer import (
    build_favorites_entries,
    next_sequential_card_id,
    parse_archive_reason_filter,
    parse_history_kind_filter,
    sanitize_board_state,
    sanitize_card_images,
    sanitize_checklist,
    sanitize_comments,
    sanitize_history_entry,
    to_number,
)

PNG = "data:image/png;base64,iVBORw0KGgo="


def card(title="Card", **extra):
    value = {"title": title, "createdAt": 1000}
    value.update(extra)
    return value


def raw_board():
    return {
        "cardsById": {
            "P-1": card("One", urgency="red", comments=[{"id": "c1", "text": "hi", "createdAt": 5}]),
            "P-2": card("Two", isFavorite="yes", checklist=[{"id": "t1", "text": "todo", "done": 1, "createdAt": 2}]),
            "P-3": card("Three", images=[{"id": "img", "dataUrl": PNG, "createdAt": 3}]),
            "P-4": card("Four", status="review"),
            "bad": "not a card",
        },
        "columns": {
            "queue": ["P-1", "P-1", "missing"],
            "doing": ["P-2"],
            "review": "not a list",
            "extra": ["P-3"],
        },
        "floatingById": {"P-2": {"x": 1, "y": 2}, "P-3": {"x": "10", "y": 20.7, "swayOffsetMs": -5}},
        "history": [{"id": "h1", "at": 10, "text": "created", "kind": "CREATE", "meta": {"fromCol": "nowhere"}}],
    }


class TestBoardState:
    """Тесты нормализации доски"""

    def test_not_board_shaped(self):
        assert sanitize_board_state(None) is None
        assert sanitize_board_state({"cardsById": {}}) is None
        assert sanitize_board_state({"cardsById": [], "columns": {}}) is None

    def test_every_card_placed_exactly_once(self):
        """Каждая карточка ровно в одной колонке или на поле"""
        state = sanitize_board_state(raw_board())

        placements = []
        for ids in state["columns"].values():
            placements.extend(ids)
        placements.extend(state["floatingById"])
        assert sorted(placements) == sorted(state["cardsById"])
        assert set(state["columns"]) == {"queue", "doing", "review", "done"}

    def test_columns_and_floating(self):
        state = sanitize_board_state(raw_board())

        assert state["columns"]["queue"] == ["P-1"]
        assert state["columns"]["doing"] == ["P-2"]
        assert state["columns"]["review"] == []
        # Карточка из колонки не может одновременно висеть на поле
        assert "P-2" not in state["floatingById"]
        assert state["floatingById"]["P-3"] == {"x": 10, "y": 20, "swayOffsetMs": 0}
        # Неразмещенная карточка получает позицию по умолчанию
        assert state["floatingById"]["P-4"] == {"x": 292, "y": 124, "swayOffsetMs": 187}
        assert "bad" not in state["cardsById"]

    def test_status_is_derived_from_placement(self):
        state = sanitize_board_state(raw_board())
        statuses = {card_id: card["status"] for card_id, card in state["cardsById"].items()}
        assert statuses == {"P-1": "queue", "P-2": "doing", "P-3": "freedom", "P-4": "freedom"}

    def test_card_fields(self):
        state = sanitize_board_state(raw_board())
        one = state["cardsById"]["P-1"]
        two = state["cardsById"]["P-2"]

        assert one["urgency"] == "red"
        assert two["urgency"] == "white"
        assert two["isFavorite"] is True
        assert two["checklist"] == [{"id": "t1", "text": "todo", "done": False, "createdAt": 2}]
        assert one["comments"][0]["text"] == "hi"
        assert one["doingTotalMs"] == 0
        assert one["doingStartedAt"] is None

    def test_history(self):
        state = sanitize_board_state(raw_board())
        assert state["history"] == [
            {"id": "h1", "at": 10, "text": "created", "cardId": None, "kind": "create", "meta": {"fromCol": None}}
        ]

    def test_idempotent(self):
        """Повторная санитизация возвращает то же состояние"""
        once = sanitize_board_state(raw_board())
        assert sanitize_board_state(once) == once


class TestImages:
    def test_inline_image(self):
        images = sanitize_card_images([{"id": "a", "dataUrl": PNG, "name": " shot.png ", "createdAt": 1}])
        assert images[0]["dataUrl"] == PNG
        assert images[0]["mime"] == "image/png"
        assert images[0]["fileId"] is None
        assert images[0]["name"] == "shot.png"

    def test_media_reference(self):
        images = sanitize_card_images([{"id": "a", "dataUrl": "/api/v1/media/abc.webp", "createdAt": 1}])
        assert images[0]["fileId"] == "abc.webp"
        assert images[0]["mime"] == "image/webp"

    def test_duplicates_and_garbage_dropped(self):
        raw = [
            {"id": "a", "dataUrl": PNG, "createdAt": 1},
            {"id": "a", "dataUrl": PNG, "createdAt": 2},
            {"id": "b", "dataUrl": "data:text/html;base64,AAAA"},
            {"id": "c", "dataUrl": "/api/v1/media/../etc/passwd"},
            "junk",
        ]
        assert [image["id"] for image in sanitize_card_images(raw)] == ["a"]

    def test_count_limit(self):
        raw = [{"id": f"i{index}", "dataUrl": PNG, "createdAt": index} for index in range(12)]
        assert len(sanitize_card_images(raw)) == 8

    def test_total_size_limit(self):
        """Суммарный размер вложений ограничен 3 МБ"""
        raw = [{"id": f"i{index}", "dataUrl": PNG, "size": 900 * 1024, "createdAt": index} for index in range(5)]
        assert len(sanitize_card_images(raw)) == 3

    def test_persist_requires_media_store(self):
        with pytest.raises(ValueError):
            sanitize_card_images([{"id": "a", "dataUrl": PNG}], persist_data_urls=True)


class TestCommentsAndChecklist:
    def test_comments_sorted_and_deduplicated(self):
        raw = [
            {"id": "b", "text": "second", "createdAt": 2},
            {"id": "a", "text": "first", "createdAt": 1},
            {"id": "a", "text": "again", "createdAt": 3},
            {"id": "empty", "text": "  "},
        ]
        comments = sanitize_comments(raw)
        assert [comment["id"] for comment in comments] == ["a", "b"]
        assert comments[0]["updatedAt"] == 1

    def test_comment_limit_keeps_newest(self):
        raw = [{"id": f"c{index}", "text": "x", "createdAt": index} for index in range(205)]
        comments = sanitize_comments(raw)
        assert len(comments) == 200
        assert comments[0]["id"] == "c5"

    def test_checklist_limit(self):
        raw = [{"id": f"t{index}", "text": "item", "createdAt": index} for index in range(130)]
        assert len(sanitize_checklist(raw)) == 120

    def test_checklist_item_text_truncated(self):
        items = sanitize_checklist([{"id": "t", "text": "y" * 300, "createdAt": 1}])
        assert len(items[0]["text"]) == 220


class TestHelpers:
    def test_next_sequential_card_id(self):
        assert next_sequential_card_id([]) == "P-1"
        assert next_sequential_card_id(["P-2", "p-10", "custom", "P-x"]) == "P-11"

    def test_to_number(self):
        assert to_number("12.5") == 12.5
        assert to_number("nan") is None
        assert to_number("") is None
        assert to_number([1]) is None

    def test_history_entry_without_id(self):
        entry = sanitize_history_entry({"at": "15", "text": "x"})
        assert entry["at"] == 15
        assert entry["id"]
        assert "kind" not in entry

    def test_filters(self):
        assert parse_history_kind_filter("all") is None
        assert parse_history_kind_filter(" Move ") == "move"
        assert parse_archive_reason_filter("") is None
        with pytest.raises(ValueError):
            parse_history_kind_filter("rename")
        with pytest.raises(ValueError):
            parse_archive_reason_filter("unknown")


class TestFavorites:
    def test_board_order(self):
        state = sanitize_board_state({
            "cardsById": {
                "P-1": card("a", isFavorite=True),
                "P-2": card("b", isFavorite=True),
                "P-3": card("c", isFavorite=True),
                "P-4": card("d", isFavorite=True),
                "P-5": card("e"),
            },
            "columns": {"queue": ["P-5"], "doing": ["P-2"], "done": ["P-1"]},
            "floatingById": {"P-3": {"x": 0, "y": 50}, "P-4": {"x": 0, "y": 10}},
        })

        asc = build_favorites_entries(state, "asc")
        assert [entry["card"]["id"] for entry in asc] == ["P-2", "P-1", "P-4", "P-3"]
        assert asc[0]["status"] == "doing"
        assert asc[2]["floating"] == {"x": 0, "y": 10, "swayOffsetMs": 0}

        desc = build_favorites_entries(state, "desc")
        assert [entry["card"]["id"] for entry in desc] == ["P-3", "P-4", "P-1", "P-2"]

        freedom = build_favorites_entries(state, "asc", "freedom")
        assert [entry["card"]["id"] for entry in freedom] == ["P-4", "P-3"]
