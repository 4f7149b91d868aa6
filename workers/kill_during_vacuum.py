"""
Worker: killed while VACUUM rebuilds the database.

Commits 1000 padded rows, deletes every even id so the file has free
pages to reclaim, then sends "vacuuming" and runs VACUUM. The delete has
committed; whatever VACUUM did must be invisible after recovery.
"""

from workers.common import WorkerContext, main

ROWS = 1000
PADDING = 'x' * 1000


def run(ctx: WorkerContext):
    db = ctx.open()

    db.query("""
        CREATE TABLE IF NOT EXISTS vacuum_test (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            value TEXT NOT NULL,
            padding TEXT NOT NULL
        )
    """)

    db.query("BEGIN")
    db.query_many("INSERT INTO vacuum_test (value, padding) VALUES (?, ?)",
                  [(f"row-{i}", PADDING) for i in range(ROWS)])
    db.query("COMMIT")

    db.query("DELETE FROM vacuum_test WHERE id % 2 = 0")
    ctx.send('deleted')

    ctx.send('vacuuming')
    db.query("VACUUM")
    ctx.send('vacuumed')


if __name__ == '__main__':
    main(run)
