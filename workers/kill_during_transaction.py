"""
Worker: killed inside an explicit transaction that never commits.

Commits 10 baseline rows, then opens a transaction that inserts 20 rows,
updates every baseline row and deletes two of them. After sending
"in-transaction" it keeps inserting filler rows until it is killed.
After recovery exactly the 10 baseline rows must remain, unmodified.
"""

from workers.common import WorkerContext, main

BASELINE_ROWS = 10


def run(ctx: WorkerContext):
    db = ctx.open()

    db.query("""
        CREATE TABLE IF NOT EXISTS items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            value INTEGER NOT NULL
        )
    """)

    for i in range(1, BASELINE_ROWS + 1):
        db.query("INSERT INTO items (name, value) VALUES (?, ?)", (f"baseline-{i}", i * 10))
    ctx.send('baseline-committed')

    db.query("BEGIN")
    for i in range(11, 31):
        db.query("INSERT INTO items (name, value) VALUES (?, ?)", (f"txn-row-{i}", i * 100))
    db.query("UPDATE items SET value = value + 9999 WHERE name LIKE 'baseline-%'")
    db.query("DELETE FROM items WHERE name IN ('baseline-1', 'baseline-2')")

    ctx.send('in-transaction')

    for i in range(31, 200001):
        db.query("INSERT INTO items (name, value) VALUES (?, ?)", (f"txn-filler-{i}", i))

    # Only reached if the kill never came
    db.query("COMMIT")
    ctx.send('committed')


if __name__ == '__main__':
    main(run)
