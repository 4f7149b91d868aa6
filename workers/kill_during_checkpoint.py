"""
Worker: killed while a checkpoint copies a large WAL into the database.

Automatic checkpoints are disabled so the WAL grows with every insert and
update across five indexed tables. Row counts are recorded in ckpt_meta,
then "checkpoint-starting" is sent and a TRUNCATE checkpoint runs.
"""

from workers.common import WorkerContext, main

TABLES = 5
ROWS_PER_TABLE = 400
BATCH_SIZE = 25
PAYLOAD = 'D' * 2000


def run(ctx: WorkerContext):
    db = ctx.open()
    db.query("PRAGMA wal_autocheckpoint = 0")
    ctx.send('ready')

    for t in range(TABLES):
        db.query(f"""
            CREATE TABLE IF NOT EXISTS ckpt_t{t} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                cycle INTEGER NOT NULL,
                seq INTEGER NOT NULL,
                tag TEXT NOT NULL,
                payload TEXT NOT NULL
            )
        """)
        db.query(f"CREATE INDEX IF NOT EXISTS idx_ckpt_t{t}_tag ON ckpt_t{t} (tag)")
        db.query(f"CREATE INDEX IF NOT EXISTS idx_ckpt_t{t}_cycle ON ckpt_t{t} (cycle)")
    db.query("""
        CREATE TABLE IF NOT EXISTS ckpt_meta (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            cycle INTEGER NOT NULL,
            table_name TEXT NOT NULL,
            row_count INTEGER NOT NULL
        )
    """)

    for t in range(TABLES):
        for batch in range(ROWS_PER_TABLE // BATCH_SIZE):
            rows = []
            for i in range(BATCH_SIZE):
                seq = batch * BATCH_SIZE + i
                rows.append((ctx.cycle, seq, f"tag_{ctx.cycle}_{t}_{seq}", PAYLOAD))
            db.query("BEGIN")
            db.query_many(f"INSERT INTO ckpt_t{t} (cycle, seq, tag, payload) VALUES (?, ?, ?, ?)", rows)
            db.query("COMMIT")

    for t in range(TABLES):
        db.query(f"UPDATE ckpt_t{t} SET payload = payload || '_UPD', tag = 'updated_' || tag "
                 f"WHERE cycle = ?", (ctx.cycle,))

    for t in range(TABLES):
        count = db.query(f"SELECT count(*) FROM ckpt_t{t} WHERE cycle = ?", (ctx.cycle,))[0][0]
        db.query("INSERT INTO ckpt_meta (cycle, table_name, row_count) VALUES (?, ?, ?)",
                 (ctx.cycle, f"ckpt_t{t}", count))
    ctx.send('data-loaded')

    ctx.send('checkpoint-starting')
    db.query("PRAGMA wal_checkpoint(TRUNCATE)")
    ctx.send('checkpoint-done')


if __name__ == '__main__':
    main(run)
