"""
Modelos SQLAlchemy — exportar todos para que Alembic los detecte.
"""

from studysync.models.document import SyncDocument

__all__ = [
    "SyncDocument",
]
