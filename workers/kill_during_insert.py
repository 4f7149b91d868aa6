"""
Worker: killed between single-row autocommit INSERTs.

Every row commits on its own. "inserting" goes out after every fifth row,
starting with the first, so at least one row has committed when the kill
lands.
"""

from workers.common import WorkerContext, main

ROWS = 500


def run(ctx: WorkerContext):
    db = ctx.open()

    db.query("""
        CREATE TABLE IF NOT EXISTS crash_test (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            value TEXT NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
    """)
    ctx.send('ready')

    for i in range(ROWS):
        db.query("INSERT INTO crash_test (value) VALUES (?)", (f"row-{i}-{'x' * 200}",))
        if i % 5 == 0:
            ctx.send('inserting')

    ctx.send('done')


if __name__ == '__main__':
    main(run)
