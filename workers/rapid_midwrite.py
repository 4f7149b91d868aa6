"""
Worker: one cycle of a rapid kill loop during heavy writes.

Each cycle inserts two rounds of rows with 2KB payloads, runs a large
UPDATE between them and a mass UPDATE and DELETE after them, reporting
progress every 10 rows. The coordinator kills it at a different point in
every cycle.
"""

from workers.common import WorkerContext, main

KINDS = ('alpha', 'beta', 'gamma', 'delta')
FIRST_ROUND = 300
SECOND_ROUND = 150
BIG_PAYLOAD = 'X' * 2000


def _insert(db, ctx: WorkerContext, seq: int, kind: str, counter: int, label: str):
    db.query(
        "INSERT INTO midwrite_test (uid, cycle, seq, kind, payload, counter, big_blob) "
        "VALUES (?, ?, ?, ?, ?, ?, ?)",
        (f"{ctx.cycle}:{seq}", ctx.cycle, seq, kind, f"c{ctx.cycle}-s{seq}-{label}", counter, BIG_PAYLOAD)
    )


def run(ctx: WorkerContext):
    db = ctx.open()
    ctx.send('ready')

    db.query("""
        CREATE TABLE IF NOT EXISTS midwrite_test (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            uid TEXT NOT NULL,
            cycle INTEGER NOT NULL,
            seq INTEGER NOT NULL,
            kind TEXT NOT NULL,
            payload TEXT NOT NULL,
            counter INTEGER DEFAULT 0,
            big_blob TEXT DEFAULT NULL
        )
    """)
    db.query("CREATE INDEX IF NOT EXISTS idx_midwrite_cycle ON midwrite_test (cycle)")
    db.query("CREATE INDEX IF NOT EXISTS idx_midwrite_kind ON midwrite_test (kind)")
    db.query("CREATE INDEX IF NOT EXISTS idx_midwrite_counter ON midwrite_test (counter)")
    ctx.send('schema-created')

    seq = 0
    for i in range(FIRST_ROUND):
        _insert(db, ctx, seq, KINDS[i % 4], i, 'round1')
        seq += 1
        if i % 10 == 0:
            ctx.send(f"row:{i}")
    ctx.send('inserts-done')

    db.query(
        "UPDATE midwrite_test SET counter = counter + ?, payload = payload || ? WHERE kind = ?",
        (ctx.cycle, f"-upd{ctx.cycle}", KINDS[ctx.cycle % 4])
    )
    ctx.send('big-update-done')

    for i in range(SECOND_ROUND):
        _insert(db, ctx, seq, KINDS[(i + 1) % 4], i + 1000, 'round2')
        seq += 1
        if i % 10 == 0:
            ctx.send(f"row2:{i}")
    ctx.send('inserts2-done')

    db.query("UPDATE midwrite_test SET counter = counter + 1")
    ctx.send('mass-update-done')

    if ctx.cycle > 0:
        db.query(
            "DELETE FROM midwrite_test WHERE id IN ("
            "SELECT id FROM midwrite_test WHERE cycle < ? AND seq > 250 ORDER BY id LIMIT 100)",
            (ctx.cycle,)
        )
    ctx.send('deletes-done')
    ctx.send('all-done')


if __name__ == '__main__':
    main(run)
