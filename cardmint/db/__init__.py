from cardmint.db.database import get_session, init_db
from cardmint.db.operations import list_events, load_receipts, record_receipt

__all__ = [
    "get_session",
    "init_db",
    "list_events",
    "load_receipts",
    "record_receipt",
]
