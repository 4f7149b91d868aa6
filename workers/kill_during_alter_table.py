"""
Worker: killed during a run of ALTER TABLE statements.

Commits 100 rows, sends "altering" and then adds columns, backfills one,
renames ``value`` to ``amount``, creates a referencing table, drops a
column and builds an index, each statement committing on its own. The
kill lands somewhere in that sequence: every statement must be either
fully applied or absent.
"""

from workers.common import WorkerContext, main

ROWS = 100

MIGRATION = (
    "ALTER TABLE alter_test ADD COLUMN description TEXT DEFAULT 'none'",
    "ALTER TABLE alter_test ADD COLUMN score INTEGER DEFAULT 0",
    "UPDATE alter_test SET score = value * 2",
    "ALTER TABLE alter_test RENAME COLUMN value TO amount",
    """
    CREATE TABLE IF NOT EXISTS alter_ref (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        alter_id INTEGER NOT NULL REFERENCES alter_test (id),
        note TEXT
    )
    """,
    "INSERT INTO alter_ref (alter_id, note) SELECT id, 'ref-' || name FROM alter_test",
    "ALTER TABLE alter_test DROP COLUMN description",
    "CREATE INDEX IF NOT EXISTS idx_alter_test_name ON alter_test (name)",
)


def run(ctx: WorkerContext):
    db = ctx.open()

    db.query("""
        CREATE TABLE IF NOT EXISTS alter_test (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            value INTEGER NOT NULL
        )
    """)
    db.query("BEGIN")
    db.query_many("INSERT INTO alter_test (name, value) VALUES (?, ?)",
                  [(f"item-{i}", i * 10) for i in range(1, ROWS + 1)])
    db.query("COMMIT")

    ctx.send('altering')
    for step, statement in enumerate(MIGRATION):
        db.query(statement)
        ctx.send(f"altered:{step}")

    ctx.send('done')


if __name__ == '__main__':
    main(run)
