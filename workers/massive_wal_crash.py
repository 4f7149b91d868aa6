"""
Worker: killed with several megabytes of uncheckpointed WAL.

Automatic checkpoints are off. Inserts 200 documents of 10KB, rewrites
all of them, inserts 200 more and rewrites everything again, reporting
each step. Every statement commits on its own, so the WAL ends up holding
several versions of most pages when the kill lands.
"""

from workers.common import WorkerContext, main

DOC_SIZE = 10000
FIRST_BATCH = 200
SECOND_BATCH = 200


def large_text(seed: int, size: int = DOC_SIZE) -> str:
    base = f"row-{seed}-" + 'A' * 200
    return (base * (size // len(base) + 1))[:size]


def run(ctx: WorkerContext):
    db = ctx.open()
    db.query("PRAGMA wal_autocheckpoint = 0")
    ctx.send('ready')

    db.query("""
        CREATE TABLE IF NOT EXISTS docs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            title TEXT NOT NULL,
            body TEXT NOT NULL
        )
    """)
    db.query("CREATE INDEX IF NOT EXISTS idx_docs_title ON docs (title)")
    ctx.send('schema-created')

    for i in range(FIRST_BATCH):
        db.query("INSERT INTO docs (title, body) VALUES (?, ?)", (f"title-{i}", large_text(i)))
    ctx.send('insert-1-done')

    db.query("UPDATE docs SET body = body || ? WHERE id <= ?", (' UPDATED-PASS-1', FIRST_BATCH))
    ctx.send('update-1-done')

    for i in range(FIRST_BATCH, FIRST_BATCH + SECOND_BATCH):
        db.query("INSERT INTO docs (title, body) VALUES (?, ?)", (f"title-{i}", large_text(i)))
    ctx.send('insert-2-done')

    db.query("UPDATE docs SET body = body || ?", (' UPDATED-PASS-2',))
    ctx.send('update-2-done')
    ctx.send('done')


if __name__ == '__main__':
    main(run)
