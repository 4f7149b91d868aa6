"""
Worker: killed during CREATE INDEX on a populated table.
"""

from workers.common import WorkerContext, main

BATCHES = 15
ROWS_PER_BATCH = 200


def run(ctx: WorkerContext):
    db = ctx.open()

    db.query("""
        CREATE TABLE IF NOT EXISTS indexed_data (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            value INTEGER NOT NULL,
            payload TEXT NOT NULL
        )
    """)

    for batch in range(BATCHES):
        rows = []
        for i in range(ROWS_PER_BATCH):
            value = batch * ROWS_PER_BATCH + i
            rows.append((value, f"payload-data-string-{value}-" * 10))
        db.query("BEGIN")
        db.query_many("INSERT INTO indexed_data (value, payload) VALUES (?, ?)", rows)
        db.query("COMMIT")
    ctx.send('data-inserted')

    ctx.send('creating-index')
    db.query("CREATE INDEX idx_indexed_data_value ON indexed_data (value)")
    db.query("CREATE INDEX idx_indexed_data_payload ON indexed_data (payload, value)")
    ctx.send('index-done')


if __name__ == '__main__':
    main(run)
