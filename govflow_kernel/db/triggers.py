"""
Module: govflow_kernel.db.triggers
Responsibility: Installing and removing database-level immutability triggers.
    This is the database complement to the ORM listeners in db/immutability.py.
Architecture position: Kernel > DB.  May import from db/ only.

Invariants enforced:
    - audit_events rows: no UPDATE, no DELETE.
    - decisions rows: no UPDATE, no DELETE.
    - action_dead_letters rows: no DELETE.

Failure modes:
    - The database aborts the statement (IntegrityError or OperationalError
      via SQLAlchemy) on any violation.

Audit relevance:
    Raw SQL, bulk operations and direct console access bypass the ORM
    listeners.  Both layers must be removed to tamper with the audit trail.
"""

from sqlalchemy import text
from sqlalchemy.engine import Engine

from govflow_kernel.logging_config import get_logger

logger = get_logger("db.triggers")

# (table, operation, trigger name)
PROTECTED_OPERATIONS = [
    ("audit_events", "UPDATE", "trg_audit_events_no_update"),
    ("audit_events", "DELETE", "trg_audit_events_no_delete"),
    ("decisions", "UPDATE", "trg_decisions_no_update"),
    ("decisions", "DELETE", "trg_decisions_no_delete"),
    ("action_dead_letters", "DELETE", "trg_action_dead_letters_no_delete"),
]

ALL_TRIGGER_NAMES = [name for _, _, name in PROTECTED_OPERATIONS]

_PG_FUNCTION = """
CREATE OR REPLACE FUNCTION govflow_reject_modification() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'IMMUTABILITY_VIOLATION: % on % is not allowed', TG_OP, TG_TABLE_NAME;
END;
$$ LANGUAGE plpgsql;
"""


def _sqlite_statements() -> list[str]:
    return [
        f"CREATE TRIGGER IF NOT EXISTS {name} BEFORE {op} ON {table} "
        f"BEGIN SELECT RAISE(ABORT, 'IMMUTABILITY_VIOLATION: {op} on {table} is not allowed'); END"
        for table, op, name in PROTECTED_OPERATIONS
    ]


def _postgres_statements() -> list[str]:
    statements = [_PG_FUNCTION]
    for table, op, name in PROTECTED_OPERATIONS:
        statements.append(f"DROP TRIGGER IF EXISTS {name} ON {table}")
        statements.append(
            f"CREATE TRIGGER {name} BEFORE {op} ON {table} "
            f"FOR EACH ROW EXECUTE FUNCTION govflow_reject_modification()"
        )
    return statements


def install_immutability_triggers(engine: Engine) -> None:
    """
    Install the append-only triggers for the current dialect.

    Preconditions: Tables must exist (call after create_all()).
    Postconditions: Every trigger in ALL_TRIGGER_NAMES exists (idempotent).
    """
    dialect = engine.dialect.name
    if dialect == "sqlite":
        statements = _sqlite_statements()
    elif dialect == "postgresql":
        statements = _postgres_statements()
    else:
        logger.warning("immutability_triggers_unsupported", extra={"dialect": dialect})
        return

    with engine.begin() as conn:
        for statement in statements:
            conn.execute(text(statement))
    logger.info(
        "immutability_triggers_installed",
        extra={"dialect": dialect, "count": len(ALL_TRIGGER_NAMES)},
    )


def uninstall_immutability_triggers(engine: Engine) -> None:
    """
    Remove the append-only triggers.

    WARNING: Only for test teardown and supervised data repair.  Re-install
    immediately afterwards.
    """
    dialect = engine.dialect.name
    with engine.begin() as conn:
        for table, _, name in PROTECTED_OPERATIONS:
            if dialect == "postgresql":
                conn.execute(text(f"DROP TRIGGER IF EXISTS {name} ON {table}"))
            elif dialect == "sqlite":
                conn.execute(text(f"DROP TRIGGER IF EXISTS {name}"))


def get_installed_triggers(engine: Engine) -> list[str]:
    """List the immutability triggers currently present in the database."""
    dialect = engine.dialect.name
    if dialect == "sqlite":
        sql = "SELECT name FROM sqlite_master WHERE type = 'trigger' ORDER BY name"
    elif dialect == "postgresql":
        sql = "SELECT tgname FROM pg_trigger WHERE NOT tgisinternal ORDER BY tgname"
    else:
        return []
    with engine.connect() as conn:
        names = [row[0] for row in conn.execute(text(sql))]
    return [name for name in names if name in ALL_TRIGGER_NAMES]


def triggers_installed(engine: Engine) -> bool:
    return set(get_installed_triggers(engine)) == set(ALL_TRIGGER_NAMES)
