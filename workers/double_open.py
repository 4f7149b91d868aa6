"""
Worker: one of several instances opening the same directory at once.

Every instance reports "spawned" and waits for the coordinator's "go", so
all of them attempt the guarded open together. With CRASHGUARD_STAGGER_MS
set, instance B waits that long after "go", C twice as long, and so on,
so later instances arrive while the first one is busy. The instance that
wins the lock writes rows tagged with its instance id and holds the
directory for a while; the others must be refused with the winner's PID
and write nothing.
"""

import os
import time

from workers.common import WorkerContext, main

HOLD_ENV = 'CRASHGUARD_HOLD_MS'
STAGGER_ENV = 'CRASHGUARD_STAGGER_MS'
ROWS = 200


def run(ctx: WorkerContext):
    ctx.send('spawned')
    ctx.channel.wait_for('go', timeout=30)

    position = max(ord(ctx.instance_id[:1] or 'A') - ord('A'), 0)
    stagger_ms = int(os.environ.get(STAGGER_ENV, '0'))
    if stagger_ms and position:
        time.sleep(position * stagger_ms / 1000.0)

    db = ctx.open()
    ctx.send('locked')

    db.query("""
        CREATE TABLE IF NOT EXISTS double_open_test (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            instance TEXT NOT NULL,
            value TEXT NOT NULL
        )
    """)

    db.query("BEGIN")
    for i in range(ROWS):
        db.query("INSERT INTO double_open_test (instance, value) VALUES (?, ?)",
                 (ctx.instance_id, f"row-{ctx.instance_id}-{i}-{'x' * 100}"))
    db.query("COMMIT")
    ctx.send('written')

    # Keep the lock long enough for every competitor to run into it
    time.sleep(int(os.environ.get(HOLD_ENV, '1000')) / 1000.0)

    db.close()
    ctx.send('done')


if __name__ == '__main__':
    main(run)
