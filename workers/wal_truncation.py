"""
Worker: builds the golden crashed directory for file-tampering scenarios.

Loads wal_test_main and checkpoints it into the database file, then keeps
committing small updates with automatic checkpoints disabled, so the WAL
holds only recent changes when the worker is killed on "main-updated".
"""

import hashlib

from workers.common import WorkerContext, main

ROWS = 200
PAYLOAD_BYTES = 2000
UPDATE_ROUNDS = 1000


def _payload(i: int) -> str:
    base = f"payload-{i}-" + 'X' * 100
    return (base * (PAYLOAD_BYTES // len(base) + 1))[:PAYLOAD_BYTES]


def run(ctx: WorkerContext):
    db = ctx.open()
    db.query("PRAGMA wal_autocheckpoint = 0")
    ctx.send('ready')

    db.query("""
        CREATE TABLE IF NOT EXISTS wal_test_main (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            data TEXT NOT NULL,
            checksum TEXT NOT NULL
        )
    """)
    db.query("CREATE INDEX IF NOT EXISTS idx_main_checksum ON wal_test_main (checksum)")
    ctx.send('schema-created')

    db.query("BEGIN")
    for i in range(ROWS):
        data = _payload(i)
        db.query("INSERT INTO wal_test_main (data, checksum) VALUES (?, ?)",
                 (data, hashlib.sha256(data.encode()).hexdigest()))
    db.query("COMMIT")
    ctx.send('main-inserted')

    db.query("PRAGMA wal_checkpoint(TRUNCATE)")
    ctx.send('checkpointed')

    for round_no in range(UPDATE_ROUNDS):
        row_id = round_no % ROWS + 1
        db.query("UPDATE wal_test_main SET checksum = ? WHERE id = ?",
                 (f"upd-{round_no}-{row_id}", row_id))
        if round_no == ROWS // 4:
            ctx.send('main-updated')

    ctx.send('updates-done')


if __name__ == '__main__':
    main(run)
