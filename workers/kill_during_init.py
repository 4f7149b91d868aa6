"""
Worker: killed during or right after first-time initialization.

Reports "constructor-done" as soon as it is running, "init:<stage>" as
each initialization stage reaches disk, and "ready" once the directory is
open. With CRASHGUARD_DO_WRITE set it also writes a row. Then it idles
until killed.
"""

import time

from workers.common import WorkerContext, main

DO_WRITE_ENV = 'CRASHGUARD_DO_WRITE'
IDLE_SECONDS = 60


def run(ctx: WorkerContext):
    ctx.send('constructor-done')

    db = ctx.open(on_init_stage=lambda stage: ctx.send(f"init:{stage}"))
    ctx.send('ready')

    if ctx.env_flag(DO_WRITE_ENV):
        db.query("""
            CREATE TABLE IF NOT EXISTS init_test (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                cycle INTEGER NOT NULL,
                payload TEXT NOT NULL
            )
        """)
        ctx.send('schema-created')
        db.query("INSERT INTO init_test (cycle, payload) VALUES (?, ?)", (ctx.cycle, 'X' * 500))
        ctx.send('write-done')

    time.sleep(IDLE_SECONDS)


if __name__ == '__main__':
    main(run)
