"""
Worker: killed while closing the directory.

Loads 500 rows with 5KB padding, updates a third of them and builds an
index, then sends "closing" and closes. Close is best-effort and may be
interrupted; the directory must still reopen cleanly.
"""

from workers.common import WorkerContext, main

BATCHES = 10
ROWS_PER_BATCH = 50


def run(ctx: WorkerContext):
    db = ctx.open()

    db.query("""
        CREATE TABLE IF NOT EXISTS close_test (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            value TEXT NOT NULL,
            padding TEXT NOT NULL
        )
    """)

    padding = 'x' * 5000
    for batch in range(BATCHES):
        rows = [(f"row-{batch * ROWS_PER_BATCH + i}", padding) for i in range(ROWS_PER_BATCH)]
        db.query("BEGIN")
        db.query_many("INSERT INTO close_test (value, padding) VALUES (?, ?)", rows)
        db.query("COMMIT")

    db.query("UPDATE close_test SET value = 'updated-' || id WHERE id % 3 = 0")
    db.query("CREATE INDEX idx_close_test_value ON close_test (value)")
    ctx.send('loaded')

    ctx.send('closing')
    db.close()
    ctx.send('closed')


if __name__ == '__main__':
    main(run)
