"""Forward-only SQL migrations."""

from paysync.db.schema.migrate import migrate, schema_version

__all__ = ["migrate", "schema_version"]
