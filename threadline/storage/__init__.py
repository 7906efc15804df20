"""Default persistence for conversations, messages and usage quotas."""
from threadline.storage.models import Conversation, StoredMessage
from threadline.storage.sqlite_store import SQLiteStore

__all__ = ["Conversation", "StoredMessage", "SQLiteStore"]
