#!/usr/bin/env python3
"""Wipe the provisioning database and show what was in it.

Every user re-provisions from scratch afterwards; on-chain state (Safes,
allowances) is untouched and will be picked up again from the chain.
"""
import os
import sqlite3

DB_PATH = os.path.join(os.path.dirname(__file__), "..", "data", "alphascope.db")
DB_PATH = os.path.abspath(DB_PATH)

if os.path.exists(DB_PATH):
    conn = sqlite3.connect(DB_PATH)
    print("=== BEFORE WIPE ===")
    for table in ("profiles", "clob_credentials"):
        try:
            count = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
        except sqlite3.OperationalError:
            count = "missing"
        print(f"  {table}: {count}")
    conn.close()
else:
    print("No database found.")

for suffix in ("", "-shm", "-wal", "-journal"):
    p = DB_PATH + suffix
    if os.path.exists(p):
        os.remove(p)
        print(f"Deleted: {p}")

print("\n✅ Provisioning database wiped.")
