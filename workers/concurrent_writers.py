"""
Worker: one of several writers started against one directory at once.

Each writer waits for "go", opens the directory and appends 500 rows of
about 1KB tagged with its instance id and a sequence number, each row
committing on its own. The directory lock lets one writer in; the others
must be refused before writing anything. The writer that got in is
killed partway through its rows.
"""

from workers.common import WorkerContext, main

ROWS = 500
PADDING = 'D' * 1000


def run(ctx: WorkerContext):
    ctx.send('spawned')
    ctx.channel.wait_for('go', timeout=30)

    db = ctx.open()
    ctx.send('locked')

    db.query("""
        CREATE TABLE IF NOT EXISTS concurrent_test (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            uid TEXT NOT NULL,
            writer TEXT NOT NULL,
            seq INTEGER NOT NULL,
            data TEXT NOT NULL
        )
    """)
    ctx.send('table-ready')

    for seq in range(ROWS):
        db.query("INSERT INTO concurrent_test (uid, writer, seq, data) VALUES (?, ?, ?, ?)",
                 (f"{ctx.instance_id}:{seq}", ctx.instance_id, seq, f"{ctx.instance_id}-seq{seq}-{PADDING}"))
        if seq > 0 and seq % 50 == 0:
            ctx.send(f"writing:{seq}")

    ctx.send('done')


if __name__ == '__main__':
    main(run)
