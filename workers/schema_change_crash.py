"""
Worker: a schema migration killed on a directory that was itself killed.

First run: creates users, posts and comments with indexes, commits 20
users, 100 posts and 500 comments, sends "ready" and waits to be killed.

Phase "migrate": reopens the crashed directory, sends "migrating" and
alters all three tables, adds indexes and a new table, backfilling as it
goes. It is killed in the middle. The committed data and the original
columns must survive both kills.
"""

import time

from workers.common import WorkerContext, main

USERS = 20
POSTS = 100
COMMENTS = 500

MIGRATION = (
    "ALTER TABLE users ADD COLUMN bio TEXT DEFAULT ''",
    "ALTER TABLE posts ADD COLUMN published INTEGER DEFAULT 0",
    "CREATE INDEX IF NOT EXISTS idx_posts_published ON posts (published)",
    "UPDATE posts SET published = 1 WHERE id % 2 = 0",
    "ALTER TABLE comments ADD COLUMN score INTEGER DEFAULT 0",
    "UPDATE comments SET score = length(body)",
    """
    CREATE TABLE IF NOT EXISTS tags (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        post_id INTEGER NOT NULL REFERENCES posts (id),
        tag TEXT NOT NULL
    )
    """,
    "INSERT INTO tags (post_id, tag) SELECT id, 'tag-' || (id % 7) FROM posts",
    "CREATE INDEX IF NOT EXISTS idx_tags_tag ON tags (tag)",
)


def setup(ctx: WorkerContext):
    db = ctx.open()

    db.query("""
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            email TEXT NOT NULL UNIQUE
        )
    """)
    db.query("""
        CREATE TABLE IF NOT EXISTS posts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL REFERENCES users (id),
            title TEXT NOT NULL,
            body TEXT NOT NULL
        )
    """)
    db.query("""
        CREATE TABLE IF NOT EXISTS comments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            post_id INTEGER NOT NULL REFERENCES posts (id),
            body TEXT NOT NULL
        )
    """)
    db.query("CREATE INDEX IF NOT EXISTS idx_posts_user ON posts (user_id)")
    db.query("CREATE INDEX IF NOT EXISTS idx_comments_post ON comments (post_id)")

    db.query("BEGIN")
    db.query_many("INSERT INTO users (name, email) VALUES (?, ?)",
                  [(f"user-{i}", f"user-{i}@example.com") for i in range(1, USERS + 1)])
    db.query_many("INSERT INTO posts (user_id, title, body) VALUES (?, ?, ?)",
                  [(i % USERS + 1, f"post-{i}", f"body-{i}-{'p' * 200}") for i in range(POSTS)])
    db.query_many("INSERT INTO comments (post_id, body) VALUES (?, ?)",
                  [(i % POSTS + 1, f"comment-{i}-{'c' * 50}") for i in range(COMMENTS)])
    db.query("COMMIT")

    ctx.send('ready')
    # Held open until the coordinator kills it
    while True:
        time.sleep(1)


def migrate(ctx: WorkerContext):
    db = ctx.open()
    ctx.send('migrating')
    for step, statement in enumerate(MIGRATION):
        db.query(statement)
        ctx.send(f"migrated:{step}")
    ctx.send('done')


def run(ctx: WorkerContext):
    if ctx.phase == 'migrate':
        migrate(ctx)
    else:
        setup(ctx)


if __name__ == '__main__':
    main(run)
