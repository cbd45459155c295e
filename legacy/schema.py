"""Store-level enforcement of the device identity columns.

Before the legacy migration, ``project``, ``slot`` and ``composite_id`` may
be NULL on ``devices_device``. Once every row is backfilled the columns are
made mandatory: PostgreSQL gets ``SET NOT NULL``; SQLite, which cannot alter
column nullability in place, gets guard triggers that abort any insert or
update leaving one of them NULL.
"""
from django.db import NotSupportedError

from devices.models import Device

IDENTITY_FIELDS = ("project", "slot", "composite_id")
SQLITE_TRIGGER_EVENTS = ("INSERT", "UPDATE")


def _table():
    return Device._meta.db_table


def _columns():
    return [Device._meta.get_field(name).column for name in IDENTITY_FIELDS]


def _trigger_name(event):
    return f"{_table()}_identity_required_{event.lower()}"


def _unsupported(connection):
    return NotSupportedError(f"Identity column enforcement is not implemented for {connection.vendor!r}.")


def enforce_identity_columns(connection):
    qn = connection.ops.quote_name
    with connection.cursor() as cursor:
        if connection.vendor == "postgresql":
            for column in _columns():
                cursor.execute(f"ALTER TABLE {qn(_table())} ALTER COLUMN {qn(column)} SET NOT NULL")
        elif connection.vendor == "sqlite":
            condition = " OR ".join(f"NEW.{qn(column)} IS NULL" for column in _columns())
            for event in SQLITE_TRIGGER_EVENTS:
                cursor.execute(
                    f"CREATE TRIGGER IF NOT EXISTS {qn(_trigger_name(event))} "
                    f"BEFORE {event} ON {qn(_table())} "
                    f"WHEN {condition} "
                    "BEGIN SELECT RAISE(ABORT, 'device identity columns must not be null'); END"
                )
        else:
            raise _unsupported(connection)


def relax_identity_columns(connection):
    qn = connection.ops.quote_name
    with connection.cursor() as cursor:
        if connection.vendor == "postgresql":
            for column in _columns():
                cursor.execute(f"ALTER TABLE {qn(_table())} ALTER COLUMN {qn(column)} DROP NOT NULL")
        elif connection.vendor == "sqlite":
            for event in SQLITE_TRIGGER_EVENTS:
                cursor.execute(f"DROP TRIGGER IF EXISTS {qn(_trigger_name(event))}")
        else:
            raise _unsupported(connection)


def identity_columns_enforced(connection):
    with connection.cursor() as cursor:
        if connection.vendor == "postgresql":
            cursor.execute(
                "SELECT COUNT(*) FROM information_schema.columns "
                "WHERE table_schema = current_schema() AND table_name = %s "
                "AND column_name = ANY(%s) AND is_nullable = 'NO'",
                [_table(), _columns()],
            )
            return cursor.fetchone()[0] == len(IDENTITY_FIELDS)
        if connection.vendor == "sqlite":
            names = [_trigger_name(event) for event in SQLITE_TRIGGER_EVENTS]
            cursor.execute(
                "SELECT COUNT(*) FROM sqlite_master WHERE type = 'trigger' AND name IN (%s, %s)",
                names,
            )
            return cursor.fetchone()[0] == len(names)
    raise _unsupported(connection)
