"""
Worker: a crash during the open that recovers from an earlier crash.

First run: automatic checkpoints off, 500 autocommit rows with 5KB
values, "inserting:<n>" after every fifth row. Killed partway, it leaves
a large WAL behind.

Phase "reopen": sends "opening" and opens the crashed directory, which
makes SQLite rebuild its WAL index from the log. It is killed during
that open. A third open, the verification, must still succeed.
"""

from workers.common import WorkerContext, main

ROWS = 500
VALUE = 'v' * 5000


def load(ctx: WorkerContext):
    db = ctx.open()
    db.query("PRAGMA wal_autocheckpoint = 0")

    db.query("""
        CREATE TABLE IF NOT EXISTS recovery_test (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            value TEXT NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
    """)
    ctx.send('ready')

    for i in range(ROWS):
        db.query("INSERT INTO recovery_test (value) VALUES (?)", (f"row-{i}-{VALUE}",))
        if i % 5 == 0:
            ctx.send(f"inserting:{i}")

    ctx.send('done')


def reopen(ctx: WorkerContext):
    ctx.send('opening')
    db = ctx.open()
    count = db.query("SELECT count(*) FROM recovery_test")[0][0]
    ctx.send('recovered')
    ctx.send({'rows': count})


def run(ctx: WorkerContext):
    if ctx.phase == 'reopen':
        reopen(ctx)
    else:
        load(ctx)


if __name__ == '__main__':
    main(run)
