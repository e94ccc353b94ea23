# Фиксированные лимиты доски, не настраиваемые через окружение

COLUMN_IDS = ("queue", "doing", "review", "done")
CARD_STATUSES = COLUMN_IDS + ("freedom",)
CARD_URGENCY_LEVELS = ("white", "yellow", "pink", "red")
DEFAULT_CARD_URGENCY = "white"

COLUMN_TITLES = {
    "queue": "Очередь",
    "doing": "Делаем",
    "review": "Проверка",
    "done": "Сделано",
}

HISTORY_KINDS = ("create", "move", "delete", "restore")
FAVORITES_STATUSES = ("all",) + CARD_STATUSES
COMMENT_ARCHIVE_REASONS = ("delete", "overflow", "card-delete", "unknown")

MAX_HISTORY_ENTRIES = 500
MAX_HISTORY_TEXT_LENGTH = 1000

MAX_CARD_TITLE_LENGTH = 512
MAX_CARD_DESCRIPTION_LENGTH = 5000
MAX_CARD_CREATOR_LENGTH = 64

MAX_CARD_COMMENTS = 200
MAX_COMMENT_TEXT_LENGTH = 4000
MAX_COMMENT_AUTHOR_LENGTH = 64
MAX_COMMENT_ID_LENGTH = 128
MAX_ARCHIVED_COMMENTS_PER_USER = 5000

MAX_CARD_CHECKLIST_ITEMS = 120
MAX_CHECKLIST_ITEM_TEXT_LENGTH = 220

MAX_CARD_IMAGES = 8
MAX_CARD_IMAGE_BYTES = 900 * 1024
MAX_CARD_IMAGES_TOTAL_BYTES = 3 * 1024 * 1024
MAX_IMAGE_NAME_LENGTH = 128
MAX_IMAGE_ID_LENGTH = 128
MAX_MEDIA_ID_LENGTH = 160

MAX_PROFILE_AVATAR_BYTES = 700 * 1024
MAX_PROFILE_NAME_LENGTH = 96
MAX_PROFILE_ROLE_LENGTH = 128
MAX_PROFILE_CITY_LENGTH = 128
MAX_PROFILE_ABOUT_LENGTH = 2000
MAX_PROFILE_ABOUT_EDIT_LENGTH = 150
MIN_PROFILE_AGE_YEARS = 16

MAX_BULK_OPERATIONS = 200

DEFAULT_PAGE_LIMIT = 100
MAX_PAGE_LIMIT = 500
MAX_PAGE_OFFSET = 1_000_000
DEFAULT_COMMENTS_PAGE_LIMIT = 200

MEDIA_GRACE_MIN_TTL_MS = 1000

MEDIA_ROUTE_PREFIX = "/api/v1/media/"

REPEATED_DELETE_ERROR_TEXT = "Ты реально пытаешься удалить удаленное второй раз?"
