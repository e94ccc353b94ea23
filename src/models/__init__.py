from src.models.user import User, Session
from src.models.card import Card, CardComment, CardCommentArchive
from src.models.board import BoardColumn, FloatingCard, BoardVersion
from src.models.history import HistoryEntry
from src.models.media import MediaFile, MediaLink
