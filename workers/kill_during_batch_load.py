"""
Worker: killed during one large multi-row INSERT.

Commits 10 baseline rows and records them in a metadata table, then
loads 5000 rows in a single transaction. The batch must be all or
nothing after recovery.
"""

from workers.common import WorkerContext, main

BASELINE_ROWS = 10
BATCH_ROWS = 5000


def run(ctx: WorkerContext):
    db = ctx.open()

    db.query("""
        CREATE TABLE IF NOT EXISTS batch_test (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            data TEXT NOT NULL
        )
    """)
    db.query("""
        CREATE TABLE IF NOT EXISTS batch_meta (
            table_name TEXT PRIMARY KEY,
            row_count INTEGER NOT NULL
        )
    """)

    db.query("BEGIN")
    db.query_many("INSERT INTO batch_test (name, data) VALUES (?, ?)",
                  [(f"baseline-{i}", f"baseline-data-{i}-{'B' * 80}") for i in range(BASELINE_ROWS)])
    db.query("INSERT OR REPLACE INTO batch_meta VALUES ('batch_test', ?)", (BASELINE_ROWS,))
    db.query("COMMIT")

    ctx.send('loading')

    db.query("BEGIN")
    db.query_many("INSERT INTO batch_test (name, data) VALUES (?, ?)",
                  [(f"batch-{i}", f"batch-data-{i}-{'X' * 80}") for i in range(BATCH_ROWS)])
    db.query("UPDATE batch_meta SET row_count = row_count + ? WHERE table_name = 'batch_test'",
             (BATCH_ROWS,))
    db.query("COMMIT")

    ctx.send('done')


if __name__ == '__main__':
    main(run)
