import sqlite3
from typing import List

import numpy as np

LOOKUP_BATCH = 500


class FingerprintStore:
    def __init__(self, db_path: str = "hotlist.sqlite"):
        self.db_path = db_path

    # ---------- DB INIT ----------
    def init_db(self) -> None:
        conn = sqlite3.connect(self.db_path)
        cur = conn.cursor()

        cur.execute("""
            CREATE TABLE IF NOT EXISTS tracks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                file TEXT UNIQUE,
                class TEXT,
                fingercount INTEGER DEFAULT 0
            )
        """)

        cur.execute("""
            CREATE TABLE IF NOT EXISTS fingers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                track_id INTEGER,
                finger INTEGER,
                dt INTEGER,
                FOREIGN KEY(track_id) REFERENCES tracks(id)
            )
        """)

        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_fingers_finger ON fingers(finger)"
        )

        conn.commit()
        conn.close()

    # ---------- WRITE ----------
    def add_track(
        self,
        file: str,
        class_name: str,
        hashes: np.ndarray,
        times: np.ndarray,
    ) -> int:
        """
        Inserts or replaces a reference track and its fingerprints. Returns the track id.
        """
        if len(hashes) != len(times):
            raise ValueError("Hash and time arrays are misaligned")

        conn = sqlite3.connect(self.db_path)
        cur = conn.cursor()
        cur.execute(
            "INSERT OR IGNORE INTO tracks (file, class, fingercount) VALUES (?, ?, 0)",
            (file, class_name),
        )
        cur.execute("SELECT id FROM tracks WHERE file = ?", (file,))
        row = cur.fetchone()
        if row is None:
            conn.close()
            raise RuntimeError("Failed to resolve track id")
        track_id = int(row[0])

        cur.execute("DELETE FROM fingers WHERE track_id = ?", (track_id,))
        cur.executemany(
            "INSERT INTO fingers (track_id, finger, dt) VALUES (?, ?, ?)",
            [(track_id, int(h), int(t)) for h, t in zip(hashes, times)],
        )
        cur.execute(
            "UPDATE tracks SET class = ?, fingercount = ? WHERE id = ?",
            (class_name, len(hashes), track_id),
        )
        conn.commit()
        conn.close()
        return track_id

    # ---------- READ HELPERS ----------
    def lookup(self, hashes: List[int]) -> List[tuple[int, int, int]]:
        """Returns (track_id, finger, dt) rows for every stored copy of the given hashes."""
        unique = [int(h) for h in sorted(set(int(h) for h in hashes))]
        if not unique:
            return []

        rows: List[tuple[int, int, int]] = []
        conn = sqlite3.connect(self.db_path)
        cur = conn.cursor()
        for start in range(0, len(unique), LOOKUP_BATCH):
            batch = unique[start:start + LOOKUP_BATCH]
            placeholders = ",".join("?" for _ in batch)
            cur.execute(
                f"SELECT track_id, finger, dt FROM fingers WHERE finger IN ({placeholders})",
                batch,
            )
            rows.extend((int(r[0]), int(r[1]), int(r[2])) for r in cur.fetchall())
        conn.close()
        return rows

    def get_track(self, track_id: int) -> tuple[int, str, str] | None:
        conn = sqlite3.connect(self.db_path)
        cur = conn.cursor()
        cur.execute(
            "SELECT id, file, class FROM tracks WHERE id = ?",
            (int(track_id),),
        )
        row = cur.fetchone()
        conn.close()

        if row is None:
            return None
        return int(row[0]), str(row[1]), str(row[2])

    def count_tracks(self) -> int:
        conn = sqlite3.connect(self.db_path)
        cur = conn.cursor()
        cur.execute("SELECT COUNT(*) FROM tracks")
        count = int(cur.fetchone()[0])
        conn.close()
        return count
